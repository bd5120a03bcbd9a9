"""Tests for the FastAPI server and its endpoints."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from httpx import ASGITransport, AsyncClient

from crawlsense.config import CrawlSenseConfig, RangesConfig, StorageConfig
from crawlsense.endpoints.tracking import PIXEL_GIF
from crawlsense.models import CrawlerType, DetectionMethod, Visit
from crawlsense.server import CrawlSenseServer

GPTBOT_UA = "Mozilla/5.0 (compatible; GPTBot/1.1; +https://openai.com/gptbot)"
GOOGLEBOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _config(tmp_path: Path, **storage: object) -> CrawlSenseConfig:
    return CrawlSenseConfig(
        storage=StorageConfig(database=str(tmp_path / "test.db"), log_file=None, **storage)
    )


@pytest.fixture()
def server(tmp_path: Path) -> CrawlSenseServer:
    return CrawlSenseServer(_config(tmp_path))


def _client(server: CrawlSenseServer) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=server.app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_endpoint(server: CrawlSenseServer) -> None:
    """The /health endpoint should return 200 OK."""
    async with _client(server) as client:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestTracking:
    """Tests for /api/track."""

    @pytest.mark.asyncio
    async def test_missing_site_id(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.get("/api/track")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_ai_crawler_recorded(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.get(
                "/api/track",
                params={"siteId": "site1", "path": "/pricing"},
                headers={
                    "User-Agent": GPTBOT_UA,
                    "X-Forwarded-For": "20.15.240.70",
                    "Referer": "https://Example.com/Docs",
                },
            )
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/gif"
        assert response.headers["cache-control"] == "no-store, no-cache"
        assert response.content == PIXEL_GIF

        [visit] = server.storage.get_recent_visits(site_id="site1")
        assert visit.crawler_name == "GPTBot"
        assert visit.detection_method == DetectionMethod.USER_AGENT_IP_RANGE
        assert visit.ip_address == "20.15.240.70"
        assert visit.page_path == "/pricing"
        assert visit.user_agent == GPTBOT_UA
        assert visit.referrer == "https://Example.com/Docs"

    @pytest.mark.asyncio
    async def test_head_request(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.head("/api/track", params={"siteId": "site1"})
        assert response.status_code == 200
        [visit] = server.storage.get_recent_visits(site_id="site1")
        assert visit.method == "HEAD"
        assert "head-method" in visit.behavior_reasons

    @pytest.mark.asyncio
    async def test_search_engine_not_recorded(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.get(
                "/api/track", params={"siteId": "site1"}, headers={"User-Agent": GOOGLEBOT_UA}
            )
        assert response.status_code == 200
        assert response.text == "ok"
        assert server.storage.count_visits("site1") == 0

    @pytest.mark.asyncio
    async def test_search_engine_recorded_when_enabled(self, tmp_path: Path) -> None:
        server = CrawlSenseServer(_config(tmp_path, record_search_engines=True))
        async with _client(server) as client:
            await client.get(
                "/api/track", params={"siteId": "site1"}, headers={"User-Agent": GOOGLEBOT_UA}
            )
        [visit] = server.storage.get_recent_visits(site_id="site1")
        assert visit.crawler_type == CrawlerType.SEARCH_ENGINE
        assert visit.crawler_name == "Googlebot"

    @pytest.mark.asyncio
    async def test_durable_robots_across_instances(self, tmp_path: Path) -> None:
        headers = {"User-Agent": GPTBOT_UA, "X-Forwarded-For": "198.51.100.20"}
        robots = {"siteId": "s", "path": "/robots.txt"}
        first = CrawlSenseServer(_config(tmp_path))
        async with _client(first) as client:
            await client.get("/api/track", params=robots, headers=headers)

        # A second instance has an empty behavior store but shares storage
        second = CrawlSenseServer(_config(tmp_path))
        async with _client(second) as client:
            await client.get("/api/track", params={"siteId": "s", "path": "/"}, headers=headers)

        latest = second.storage.get_recent_visits(site_id="s", limit=1)[0]
        assert latest.page_path == "/"
        assert latest.had_robots_access is True


class TestHoneypot:
    """Tests for /api/track/honeypot."""

    @pytest.mark.asyncio
    async def test_missing_site_id_is_404(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.get("/api/track/honeypot")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_hit_recorded(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.get(
                "/api/track/honeypot",
                params={"siteId": "site1"},
                headers={"User-Agent": BROWSER_UA},
            )
        assert response.status_code == 200
        assert response.content == PIXEL_GIF
        [visit] = server.storage.get_recent_visits(site_id="site1")
        assert visit.detection_method == DetectionMethod.HONEYPOT
        assert visit.crawler_name == "Unknown AI"
        assert visit.confidence == 99
        assert visit.total_score == 99
        assert visit.page_path == "/honeypot"
        assert visit.user_agent == BROWSER_UA

    @pytest.mark.asyncio
    async def test_storage_failure_is_404(
        self, server: CrawlSenseServer, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def failing_save(visit: Visit) -> None:
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(server.storage, "save_visit", failing_save)
        async with _client(server) as client:
            response = await client.get(
                "/api/track/honeypot",
                params={"siteId": "site1"},
                headers={"User-Agent": BROWSER_UA},
            )
        assert response.status_code == 404
        assert response.json() == {"error": "not_found"}


def _seed_burst(server: CrawlSenseServer) -> list[Visit]:
    start = datetime.now(UTC) - timedelta(hours=1)
    visits = [
        Visit(
            site_id="site1",
            visited_at=start + timedelta(minutes=i),
            ip_address="198.51.100.7",
            user_agent=BROWSER_UA,
            is_ai=True,
            crawler_name="Unknown AI (Suspicious)",
            crawler_type=CrawlerType.AI,
            detection_method=DetectionMethod.PATTERN_INFERENCE,
            confidence=60,
        )
        for i in range(5)
    ]
    for visit in visits:
        server.storage.save_visit(visit)
    return visits


class TestDetectMimic:
    """Tests for /api/detect-mimic."""

    @pytest.mark.asyncio
    async def test_missing_site_id(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.post("/api/detect-mimic", json={"dryRun": True})
            assert response.status_code == 400
            response = await client.post("/api/detect-mimic")
            assert response.status_code == 400
            response = await client.get("/api/detect-mimic")
            assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_dry_run(self, server: CrawlSenseServer) -> None:
        visits = _seed_burst(server)
        async with _client(server) as client:
            response = await client.post(
                "/api/detect-mimic", json={"siteId": "site1", "dryRun": True}
            )
        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 5
        assert body["mimic_detected"] == 5
        assert body["dryRun"] is True
        assert len(body["details"]) == 5
        assert body["details"][0]["ip_address"] == "198.51.100.7"
        stored = server.storage.get_visit(visits[0].id)
        assert stored is not None
        assert stored.mimic_score is None

    @pytest.mark.asyncio
    async def test_run_and_stats(self, server: CrawlSenseServer) -> None:
        _seed_burst(server)
        async with _client(server) as client:
            response = await client.post("/api/detect-mimic", json={"siteId": "site1"})
            assert response.status_code == 200
            assert response.json()["updated"] == 5
            assert "details" not in response.json()

            response = await client.get("/api/detect-mimic", params={"siteId": "site1"})
        assert response.status_code == 200
        body = response.json()
        assert body["stats"]["total_mimic"] == 5
        assert body["byIP"][0]["ip_address"] == "198.51.100.7"
        assert set(body) == {"stats", "byIP", "trend", "rotation", "periodic"}

    @pytest.mark.asyncio
    async def test_deadline_is_504(self, server: CrawlSenseServer) -> None:
        _seed_burst(server)
        ticks = iter(range(0, 10_000, 100))
        server.detector._clock = lambda: next(ticks)
        async with _client(server) as client:
            response = await client.post("/api/detect-mimic", json={"siteId": "site1"})
        assert response.status_code == 504
        assert response.json()["error"] == "deadline_exceeded"


class TestVisits:
    """Tests for /api/visits."""

    @pytest.mark.asyncio
    async def test_missing_site_id(self, server: CrawlSenseServer) -> None:
        async with _client(server) as client:
            response = await client.get("/api/visits")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_lists_visits(self, server: CrawlSenseServer) -> None:
        _seed_burst(server)
        async with _client(server) as client:
            response = await client.get("/api/visits", params={"siteId": "site1", "limit": 2})
        body = response.json()
        assert len(body["visits"]) == 2
        assert body["summary"]["total_visits"] == 5
        assert body["summary"]["unique_ips"] == 1


class TestRangeOverlay:
    """Tests for loading fetched ranges at startup."""

    def test_overlay_merged(self, tmp_path: Path) -> None:
        overlay = tmp_path / "ranges.yaml"
        overlay.write_text(yaml.dump({"PerplexityBot": ["203.0.113.0/24"]}))
        config = _config(tmp_path)
        config.ranges = RangesConfig(overlay_file=str(overlay))
        server = CrawlSenseServer(config)
        crawler = server.registry.match_ip("203.0.113.50")
        assert crawler is not None
        assert crawler.name == "PerplexityBot"

    def test_missing_overlay_uses_builtin(self, tmp_path: Path) -> None:
        config = _config(tmp_path)
        config.ranges = RangesConfig(overlay_file=str(tmp_path / "missing.yaml"))
        server = CrawlSenseServer(config)
        assert server.registry.match_ip("203.0.113.50") is None
