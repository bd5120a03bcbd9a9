"""Visit listing endpoint for dashboards."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from crawlsense.storage import StorageBackend

LISTING_WINDOW_DAYS = 7


def create_visits_router(storage: StorageBackend) -> APIRouter:
    """Create the router listing a site's recent visits.

    Args:
        storage: Where visits are read from.

    Returns:
        A configured FastAPI APIRouter.
    """
    router = APIRouter(tags=["visits"])

    @router.get("/api/visits")
    async def list_visits(
        request: Request,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> JSONResponse:
        """Return recent visits and summary counts for a site."""
        site_id = request.query_params.get("siteId")
        if not site_id:
            return JSONResponse({"error": "siteId is required"}, status_code=400)

        since = datetime.now(UTC) - timedelta(days=LISTING_WINDOW_DAYS)
        visits = storage.get_recent_visits(site_id=site_id, limit=limit, since=since)
        return JSONResponse(
            {
                "visits": [v.model_dump(mode="json") for v in visits],
                "summary": storage.visit_summary(site_id, since),
            }
        )

    return router
