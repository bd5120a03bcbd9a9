"""FastAPI server for crawlsense.

Wires the registry, behavior store, classifier, storage and mimicry
detector into the tracking, mimicry and visit routers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from crawlsense import __version__
from crawlsense.behavior_store import BehaviorStore
from crawlsense.classify import Classifier
from crawlsense.config import CrawlSenseConfig, load_config
from crawlsense.endpoints import create_mimic_router, create_tracking_router, create_visits_router
from crawlsense.mimic import MimicDetector
from crawlsense.ranges import load_range_overlay
from crawlsense.registry import CrawlerRegistry, default_registry
from crawlsense.storage import StorageBackend

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


class CrawlSenseServer:
    """Core server that owns the detection components and the FastAPI app.

    One instance holds one behavior store; several processes each keep
    their own, so rapid-access and robots-first signals are per process.
    """

    def __init__(self, config: CrawlSenseConfig | None = None) -> None:
        """Initialize the crawlsense server.

        Args:
            config: Optional configuration. If None, loads from crawlsense.yaml.
        """
        self.config = config or load_config()
        self.registry = _resolve_registry(self.config)
        self.store = BehaviorStore(self.config.behavior_store)
        self.classifier = Classifier(
            registry=self.registry, store=self.store, config=self.config.scoring
        )
        self.storage = StorageBackend(
            db_path=self.config.storage.database,
            log_path=self.config.storage.log_file,
        )
        self.detector = MimicDetector(self.storage, self.config.mimic)
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create and configure the FastAPI application.

        Returns:
            A configured FastAPI instance with all routers mounted.
        """

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
            self._startup()
            yield
            self._shutdown()

        app = FastAPI(
            title="crawlsense",
            version=__version__,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=lifespan,
        )

        @app.get("/health")
        async def health_check() -> dict[str, str]:
            return {"status": "ok"}

        app.include_router(
            create_tracking_router(self.classifier, self.storage, self.config.storage)
        )
        app.include_router(create_mimic_router(self.detector))
        app.include_router(create_visits_router(self.storage))
        return app

    def _startup(self) -> None:
        logger.info(
            "crawlsense %s started on %s:%d (registry v%s, %d crawlers)",
            __version__,
            self.config.server.host,
            self.config.server.port,
            self.registry.version,
            len(self.registry.crawlers),
        )

    def _shutdown(self) -> None:
        logger.info("crawlsense shutting down (%s)", self.store.sizes())


def _resolve_registry(config: CrawlSenseConfig) -> CrawlerRegistry:
    """Build the crawler registry, merging the range overlay if configured.

    Args:
        config: The crawlsense configuration.

    Returns:
        The default registry, or a copy extended with overlay ranges.
    """
    overlay_file = config.ranges.overlay_file
    if not overlay_file:
        return default_registry

    try:
        overlay = load_range_overlay(overlay_file)
    except FileNotFoundError:
        logger.warning("Range overlay '%s' not found, using built-in ranges", overlay_file)
        return default_registry

    logger.info(
        "Loaded %d extra IP ranges from %s",
        sum(len(c) for c in overlay.values()),
        overlay_file,
    )
    return default_registry.with_extra_ranges(overlay)


def create_app(config_path: str | None = None) -> FastAPI:
    """Create a crawlsense FastAPI application.

    This is the main entry point for ASGI servers like uvicorn.

    Args:
        config_path: Optional path to the crawlsense.yaml config file.

    Returns:
        A configured FastAPI application.
    """
    config = load_config(config_path)
    server = CrawlSenseServer(config)
    return server.app
