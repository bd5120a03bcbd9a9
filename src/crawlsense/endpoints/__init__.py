"""HTTP endpoints for tracking, mimicry analysis and visit listing."""

from crawlsense.endpoints.mimic import create_mimic_router
from crawlsense.endpoints.tracking import create_tracking_router
from crawlsense.endpoints.visits import create_visits_router

__all__ = ["create_mimic_router", "create_tracking_router", "create_visits_router"]
