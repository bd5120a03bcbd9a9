"""Tracking beacon and honeypot endpoints.

The beacon is requested by a snippet on the monitored site with the page
path in the query string. Each hit is classified and stored; the response
is a 1x1 transparent GIF so it can be embedded as an image.
"""

from __future__ import annotations

import base64
import logging
import sqlite3

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from crawlsense.classify import Classifier, honeypot_result
from crawlsense.config import StorageConfig
from crawlsense.models import ClassificationResult, RequestSignals, Visit
from crawlsense.signals import extract_signals
from crawlsense.storage import StorageBackend

logger = logging.getLogger(__name__)

PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
HONEYPOT_PATH = "/honeypot"

_NO_CACHE = {"Cache-Control": "no-store, no-cache"}


def _pixel() -> Response:
    return Response(content=PIXEL_GIF, media_type="image/gif", headers=_NO_CACHE)


def _signals(request: Request, path: str) -> RequestSignals:
    peer = request.client.host if request.client else None
    return extract_signals(request.headers, method=request.method, path=path, peer_ip=peer)


def _visit(
    request: Request,
    result: ClassificationResult,
    site_id: str,
    signals: RequestSignals,
) -> Visit:
    """Build the stored row, keeping the UA and referrer as sent."""
    return Visit.from_result(
        result,
        site_id=site_id,
        ip_address=signals.ip,
        user_agent=request.headers.get("user-agent", ""),
        referrer=request.headers.get("referer", ""),
        page_path=signals.path,
        method=signals.method,
    )


def create_tracking_router(
    classifier: Classifier,
    storage: StorageBackend,
    config: StorageConfig | None = None,
) -> APIRouter:
    """Create the router serving the tracking beacon and honeypot link.

    Args:
        classifier: Real-time classifier with its behavior store.
        storage: Where visits are persisted.
        config: Persistence options.

    Returns:
        A configured FastAPI APIRouter.
    """
    cfg = config or StorageConfig()
    router = APIRouter(tags=["tracking"])

    def durable_robots(signals: RequestSignals) -> bool:
        if not signals.ip or signals.path == "/robots.txt":
            return False
        try:
            return storage.had_recent_robots_access(
                signals.ip, signals.user_agent, cfg.durable_robots_window_minutes
            )
        except sqlite3.Error as exc:
            logger.warning("Durable robots lookup failed for %s: %s", signals.ip, exc)
            return False

    @router.api_route("/api/track", methods=["GET", "HEAD"])
    async def track(request: Request) -> Response:
        """Classify and record one page view."""
        site_id = request.query_params.get("siteId")
        if not site_id:
            return JSONResponse({"error": "siteId is required"}, status_code=400)

        signals = _signals(request, request.query_params.get("path") or "/")
        result = classifier.classify(signals, durable_robots_access=durable_robots(signals))

        if result.is_search_engine and not cfg.record_search_engines:
            return PlainTextResponse("ok", headers=_NO_CACHE)

        storage.save_visit(_visit(request, result, site_id, signals))
        return _pixel()

    @router.get("/api/track/honeypot")
    async def honeypot(request: Request) -> Response:
        """Record a hit on the link only markup-parsing agents follow."""
        site_id = request.query_params.get("siteId")
        if not site_id:
            return JSONResponse({"error": "not_found"}, status_code=404)

        signals = _signals(request, HONEYPOT_PATH)
        result = honeypot_result(signals.ip, signals.user_agent)
        try:
            storage.save_visit(_visit(request, result, site_id, signals))
        except sqlite3.Error as exc:
            logger.error("Failed to record honeypot hit on site %s: %s", site_id, exc)
            return JSONResponse({"error": "not_found"}, status_code=404)
        logger.info("Honeypot hit on site %s from %s", site_id, signals.ip or "unknown")
        return _pixel()

    return router
