"""Batch mimicry endpoints: trigger a run, read the statistics."""

from __future__ import annotations

import json
import logging
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from crawlsense.mimic import MimicDeadlineExceeded, MimicDetector

logger = logging.getLogger(__name__)


class MimicRunRequest(BaseModel):
    """Body of POST /api/detect-mimic."""

    model_config = ConfigDict(populate_by_name=True)

    site_id: str | None = Field(default=None, alias="siteId")
    dry_run: bool = Field(default=False, alias="dryRun")
    visit_ids: list[str] | None = Field(default=None, alias="visitIds")


def create_mimic_router(detector: MimicDetector) -> APIRouter:
    """Create the router for the batch mimicry pass.

    Args:
        detector: The configured MimicDetector.

    Returns:
        A configured FastAPI APIRouter.
    """
    router = APIRouter(tags=["mimic"])

    @router.post("/api/detect-mimic")
    async def detect_mimic(request: Request) -> JSONResponse:
        """Re-score the site's recent non-human visits."""
        raw: Any = {}
        body = await request.body()
        if body:
            with suppress(json.JSONDecodeError):
                raw = json.loads(body)

        try:
            payload = MimicRunRequest.model_validate(raw if isinstance(raw, dict) else {})
        except ValidationError as exc:
            return JSONResponse(
                {"error": "invalid_request", "message": str(exc)}, status_code=400
            )

        if not payload.site_id:
            return JSONResponse({"error": "siteId is required"}, status_code=400)

        try:
            report = detector.run(
                payload.site_id, dry_run=payload.dry_run, visit_ids=payload.visit_ids
            )
        except MimicDeadlineExceeded as exc:
            logger.warning("%s", exc)
            return JSONResponse(
                {"error": "deadline_exceeded", "message": str(exc)}, status_code=504
            )

        return JSONResponse(report.to_response())

    @router.get("/api/detect-mimic")
    async def mimic_stats(request: Request) -> JSONResponse:
        """Return mimicry statistics for a site."""
        site_id = request.query_params.get("siteId")
        if not site_id:
            return JSONResponse({"error": "siteId is required"}, status_code=400)
        return JSONResponse(detector.stats(site_id))

    return router
