"""Storage layer for crawlsense visits.

Provides a SQLite backend for visit rows and JSON Lines logging for
streaming output. The batch mimicry pass reads windows of non-human
visits from here and writes its two verdict columns back.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from crawlsense.models import (
    CrawlerPurpose,
    CrawlerType,
    DetectionMethod,
    MimicVerdict,
    Visit,
)

logger = logging.getLogger(__name__)

_VISIT_COLUMNS = (
    "id",
    "site_id",
    "visited_at",
    "ip_address",
    "user_agent",
    "referrer",
    "page_path",
    "method",
    "session_id",
    "is_ai",
    "is_search_engine",
    "is_human",
    "crawler_name",
    "crawler_type",
    "purpose",
    "detection_method",
    "confidence",
    "total_score",
    "is_rapid",
    "had_robots_access",
    "is_html_only",
    "behavior_reasons",
    "mimic_score",
    "is_mimic",
)


def _ts(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class StorageBackend:
    """SQLite-based storage for visit rows.

    Handles persistence of Visit objects, the aggregate reads behind the
    dashboard endpoints, and the bulk write-back of mimicry verdicts.
    """

    def __init__(self, db_path: str | Path, log_path: str | Path | None = None) -> None:
        """Initialize the storage backend.

        Args:
            db_path: Path to the SQLite database file.
            log_path: Optional path for JSON Lines visit log.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path = Path(log_path) if log_path else None
        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Create database tables if they do not exist."""
        conn = self._connect()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS visits (
                id TEXT PRIMARY KEY,
                site_id TEXT NOT NULL,
                visited_at TEXT NOT NULL,
                ip_address TEXT NOT NULL DEFAULT '',
                user_agent TEXT NOT NULL DEFAULT '',
                referrer TEXT NOT NULL DEFAULT '',
                page_path TEXT NOT NULL DEFAULT '/',
                method TEXT NOT NULL DEFAULT 'GET',
                session_id TEXT NOT NULL DEFAULT '',
                is_ai INTEGER NOT NULL DEFAULT 0,
                is_search_engine INTEGER NOT NULL DEFAULT 0,
                is_human INTEGER NOT NULL DEFAULT 0,
                crawler_name TEXT NOT NULL DEFAULT 'Unknown',
                crawler_type TEXT NOT NULL DEFAULT 'unknown',
                purpose TEXT NOT NULL DEFAULT 'unknown',
                detection_method TEXT NOT NULL DEFAULT 'human-default',
                confidence INTEGER NOT NULL DEFAULT 0,
                total_score INTEGER NOT NULL DEFAULT 0,
                is_rapid INTEGER NOT NULL DEFAULT 0,
                had_robots_access INTEGER NOT NULL DEFAULT 0,
                is_html_only INTEGER NOT NULL DEFAULT 0,
                behavior_reasons TEXT NOT NULL DEFAULT '[]',
                mimic_score INTEGER,
                is_mimic INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_visits_site_time ON visits(site_id, visited_at);
            CREATE INDEX IF NOT EXISTS idx_visits_ip ON visits(ip_address);
            CREATE INDEX IF NOT EXISTS idx_visits_human ON visits(site_id, is_human);
        """)
        conn.close()

    def _connect(self) -> sqlite3.Connection:
        """Open a connection to the SQLite database.

        Returns:
            A sqlite3.Connection instance.
        """
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    # -- writes --------------------------------------------------------------

    def save_visit(self, visit: Visit) -> None:
        """Persist a Visit to the database and visit log.

        Args:
            visit: The Visit to store.
        """
        placeholders = ", ".join("?" for _ in _VISIT_COLUMNS)
        conn = self._connect()
        conn.execute(
            f"INSERT OR REPLACE INTO visits ({', '.join(_VISIT_COLUMNS)}) "
            f"VALUES ({placeholders})",
            _visit_to_params(visit),
        )
        conn.commit()
        conn.close()

        self._log_visit(visit)

    def apply_mimic_verdicts(self, verdicts: Iterable[MimicVerdict]) -> tuple[int, list[str]]:
        """Write mimicry verdicts back to their visit rows.

        All rows are written in one transaction. If that transaction fails,
        rows are retried one at a time so a single bad row cannot sink the
        batch; the IDs that still fail are returned.

        Args:
            verdicts: Verdicts to persist.

        Returns:
            A tuple of (rows updated, IDs that failed to update).
        """
        params = [(v.score, int(v.is_mimic), v.visit_id) for v in verdicts]
        if not params:
            return 0, []

        sql = "UPDATE visits SET mimic_score = ?, is_mimic = ? WHERE id = ?"
        conn = self._connect()
        try:
            with conn:
                cursor = conn.executemany(sql, params)
            return cursor.rowcount, []
        except sqlite3.Error as exc:
            logger.warning("Bulk mimic update failed, retrying row by row: %s", exc)
        finally:
            conn.close()

        updated = 0
        failed: list[str] = []
        for row in params:
            conn = self._connect()
            try:
                with conn:
                    updated += conn.execute(sql, row).rowcount
            except sqlite3.Error as exc:
                logger.warning("Failed to update mimic verdict for visit %s: %s", row[2], exc)
                failed.append(row[2])
            finally:
                conn.close()
        return updated, failed

    def prune(self, older_than_days: int, now: datetime | None = None) -> int:
        """Delete visits older than the retention window.

        Args:
            older_than_days: Age in days beyond which visits are deleted.
            now: Reference time; defaults to the current time.

        Returns:
            The number of deleted rows.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=older_than_days)
        conn = self._connect()
        cursor = conn.execute("DELETE FROM visits WHERE visited_at < ?", (_ts(cutoff),))
        conn.commit()
        conn.close()
        return cursor.rowcount

    # -- reads ---------------------------------------------------------------

    def get_visit(self, visit_id: str) -> Visit | None:
        """Retrieve a single visit by ID.

        Args:
            visit_id: The visit ID to look up.

        Returns:
            The matching Visit, or None if not found.
        """
        conn = self._connect()
        row = conn.execute("SELECT * FROM visits WHERE id = ?", (visit_id,)).fetchone()
        conn.close()

        if row is None:
            return None
        return _row_to_visit(row)

    def get_recent_visits(
        self,
        site_id: str | None = None,
        limit: int = 50,
        since: datetime | None = None,
    ) -> list[Visit]:
        """Retrieve the most recent visits.

        Args:
            site_id: Restrict to one site; all sites if None.
            limit: Maximum number of visits to return.
            since: Only visits at or after this time.

        Returns:
            List of Visit instances, most recent first.
        """
        clauses, params = _site_window(site_id, since)
        conn = self._connect()
        rows = conn.execute(
            f"SELECT * FROM visits {clauses} ORDER BY visited_at DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        conn.close()
        return [_row_to_visit(row) for row in rows]

    def count_visits(self, site_id: str | None = None) -> int:
        """Return the number of stored visits.

        Returns:
            Visit count as an integer.
        """
        clauses, params = _site_window(site_id, None)
        conn = self._connect()
        result = conn.execute(f"SELECT COUNT(*) FROM visits {clauses}", params).fetchone()
        conn.close()
        return result[0] if result else 0

    def get_nonhuman_visits(
        self, site_id: str, since: datetime, limit: int = 5000
    ) -> list[Visit]:
        """Retrieve visits already flagged non-human within a window.

        Args:
            site_id: The site to read.
            since: Start of the window.
            limit: Maximum number of rows, most recent first.

        Returns:
            List of Visit instances.
        """
        conn = self._connect()
        rows = conn.execute(
            """SELECT * FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_human = 0
               ORDER BY visited_at DESC LIMIT ?""",
            (site_id, _ts(since), limit),
        ).fetchall()
        conn.close()
        return [_row_to_visit(row) for row in rows]

    def had_recent_robots_access(
        self,
        ip_address: str,
        user_agent: str,
        within_minutes: int,
        now: datetime | None = None,
    ) -> bool:
        """Check for a recent non-human /robots.txt fetch by the same IP and UA.

        This is the durable counterpart of the in-memory robots flag and
        sees fetches handled by other server instances. The UA is compared
        case-insensitively.
        """
        if not ip_address or within_minutes <= 0:
            return False
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=within_minutes)
        conn = self._connect()
        row = conn.execute(
            """SELECT 1 FROM visits
               WHERE ip_address = ? AND lower(user_agent) = ? AND crawler_type != 'human'
                 AND page_path = '/robots.txt' AND visited_at > ?
               LIMIT 1""",
            (ip_address, user_agent.lower(), _ts(cutoff)),
        ).fetchone()
        conn.close()
        return row is not None

    def get_visit_times(self, site_id: str, since: datetime) -> list[tuple[str, datetime]]:
        """Return (ip, visited_at) for non-human visits, oldest first."""
        conn = self._connect()
        rows = conn.execute(
            """SELECT ip_address, visited_at FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_human = 0
               ORDER BY ip_address, visited_at ASC""",
            (site_id, _ts(since)),
        ).fetchall()
        conn.close()
        return [(row["ip_address"], datetime.fromisoformat(row["visited_at"])) for row in rows]

    # -- aggregates ----------------------------------------------------------

    def mimic_summary(self, site_id: str, since: datetime) -> dict[str, Any]:
        """Aggregate counts of mimic visits in a window."""
        conn = self._connect()
        row = conn.execute(
            """SELECT COUNT(*) AS total_mimic,
                      COUNT(DISTINCT ip_address) AS unique_ips,
                      MAX(visited_at) AS last_detected,
                      AVG(mimic_score) AS avg_score
               FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_mimic = 1""",
            (site_id, _ts(since)),
        ).fetchone()
        conn.close()
        return {
            "total_mimic": row["total_mimic"] or 0,
            "unique_ips": row["unique_ips"] or 0,
            "last_detected": row["last_detected"],
            "avg_score": float(row["avg_score"] or 0.0),
        }

    def top_mimic_ips(self, site_id: str, since: datetime, limit: int = 10) -> list[dict[str, Any]]:
        """Return the IPs with the most mimic visits in a window."""
        conn = self._connect()
        rows = conn.execute(
            """SELECT ip_address,
                      COUNT(*) AS visit_count,
                      MAX(mimic_score) AS max_score,
                      MIN(visited_at) AS first_visit,
                      MAX(visited_at) AS last_visit
               FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_mimic = 1
               GROUP BY ip_address
               ORDER BY visit_count DESC, ip_address ASC
               LIMIT ?""",
            (site_id, _ts(since), limit),
        ).fetchall()
        conn.close()
        return [
            {
                "ip_address": row["ip_address"],
                "visit_count": row["visit_count"],
                "max_score": row["max_score"] or 0,
                "first_visit": row["first_visit"],
                "last_visit": row["last_visit"],
            }
            for row in rows
        ]

    def mimic_trend(self, site_id: str, since: datetime) -> list[dict[str, Any]]:
        """Return daily mimic visit counts in a window, oldest day first."""
        conn = self._connect()
        rows = conn.execute(
            """SELECT substr(visited_at, 1, 10) AS date, COUNT(*) AS count
               FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_mimic = 1
               GROUP BY date
               ORDER BY date ASC""",
            (site_id, _ts(since)),
        ).fetchall()
        conn.close()
        return [{"date": row["date"], "count": row["count"]} for row in rows]

    def ua_rotation(
        self, site_id: str, since: datetime, min_distinct: int = 5, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Return non-human UAs seen from more than ``min_distinct`` IPs."""
        conn = self._connect()
        rows = conn.execute(
            """SELECT user_agent,
                      COUNT(DISTINCT ip_address) AS unique_ips,
                      COUNT(*) AS total_visits
               FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_human = 0 AND user_agent != ''
               GROUP BY user_agent
               HAVING COUNT(DISTINCT ip_address) > ?
               ORDER BY unique_ips DESC
               LIMIT ?""",
            (site_id, _ts(since), min_distinct, limit),
        ).fetchall()
        conn.close()
        return [
            {
                "user_agent": row["user_agent"][:80],
                "unique_ips": row["unique_ips"],
                "total_visits": row["total_visits"],
            }
            for row in rows
        ]

    def ip_rotation(
        self, site_id: str, since: datetime, min_distinct: int = 5, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Return non-human IPs that sent more than ``min_distinct`` UAs."""
        conn = self._connect()
        rows = conn.execute(
            """SELECT ip_address,
                      COUNT(DISTINCT user_agent) AS unique_uas,
                      COUNT(*) AS total_visits
               FROM visits
               WHERE site_id = ? AND visited_at >= ? AND is_human = 0 AND ip_address != ''
               GROUP BY ip_address
               HAVING COUNT(DISTINCT user_agent) > ?
               ORDER BY unique_uas DESC
               LIMIT ?""",
            (site_id, _ts(since), min_distinct, limit),
        ).fetchall()
        conn.close()
        return [
            {
                "ip_address": row["ip_address"],
                "unique_uas": row["unique_uas"],
                "total_visits": row["total_visits"],
            }
            for row in rows
        ]

    def visit_summary(self, site_id: str, since: datetime) -> dict[str, Any]:
        """Summary counts of all visits for a site in a window."""
        conn = self._connect()
        row = conn.execute(
            """SELECT COUNT(*) AS total_visits,
                      COUNT(DISTINCT session_id) AS unique_sessions,
                      COUNT(DISTINCT ip_address) AS unique_ips,
                      MIN(visited_at) AS first_visit,
                      MAX(visited_at) AS last_visit
               FROM visits
               WHERE site_id = ? AND visited_at >= ?""",
            (site_id, _ts(since)),
        ).fetchone()
        crawler_rows = conn.execute(
            """SELECT crawler_name, COUNT(*) AS visit_count
               FROM visits
               WHERE site_id = ? AND visited_at >= ?
               GROUP BY crawler_name
               ORDER BY visit_count DESC, crawler_name ASC""",
            (site_id, _ts(since)),
        ).fetchall()
        conn.close()
        return {
            "total_visits": row["total_visits"] or 0,
            "unique_sessions": row["unique_sessions"] or 0,
            "unique_ips": row["unique_ips"] or 0,
            "first_visit": row["first_visit"],
            "last_visit": row["last_visit"],
            "crawlers": [
                {"crawler_name": r["crawler_name"], "visit_count": r["visit_count"]}
                for r in crawler_rows
            ],
        }

    def _log_visit(self, visit: Visit) -> None:
        """Append a visit to the JSON Lines log file.

        Args:
            visit: The visit to log.
        """
        if self.log_path is None:
            return
        try:
            with open(self.log_path, "a") as f:
                f.write(visit.model_dump_json() + "\n")
        except OSError as exc:
            logger.warning("Failed to write visit log: %s", exc)


def _site_window(site_id: str | None, since: datetime | None) -> tuple[str, tuple[Any, ...]]:
    """Build a WHERE clause for optional site and start-time filters."""
    clauses: list[str] = []
    params: list[Any] = []
    if site_id is not None:
        clauses.append("site_id = ?")
        params.append(site_id)
    if since is not None:
        clauses.append("visited_at >= ?")
        params.append(_ts(since))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, tuple(params)


def _visit_to_params(visit: Visit) -> tuple[Any, ...]:
    """Flatten a Visit into INSERT parameters in column order."""
    return (
        visit.id,
        visit.site_id,
        _ts(visit.visited_at),
        visit.ip_address,
        visit.user_agent,
        visit.referrer,
        visit.page_path,
        visit.method,
        visit.session_id,
        int(visit.is_ai),
        int(visit.is_search_engine),
        int(visit.is_human),
        visit.crawler_name,
        visit.crawler_type.value,
        visit.purpose.value,
        visit.detection_method.value,
        visit.confidence,
        visit.total_score,
        int(visit.is_rapid),
        int(visit.had_robots_access),
        int(visit.is_html_only),
        json.dumps(visit.behavior_reasons),
        visit.mimic_score,
        int(visit.is_mimic),
    )


def _row_to_visit(row: sqlite3.Row) -> Visit:
    """Convert a database row to a Visit.

    Args:
        row: A sqlite3.Row from the visits table.

    Returns:
        A populated Visit instance.
    """
    return Visit(
        id=row["id"],
        site_id=row["site_id"],
        visited_at=datetime.fromisoformat(row["visited_at"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        referrer=row["referrer"],
        page_path=row["page_path"],
        method=row["method"],
        session_id=row["session_id"],
        is_ai=bool(row["is_ai"]),
        is_search_engine=bool(row["is_search_engine"]),
        is_human=bool(row["is_human"]),
        crawler_name=row["crawler_name"],
        crawler_type=CrawlerType(row["crawler_type"]),
        purpose=CrawlerPurpose(row["purpose"]),
        detection_method=DetectionMethod(row["detection_method"]),
        confidence=row["confidence"],
        total_score=row["total_score"],
        is_rapid=bool(row["is_rapid"]),
        had_robots_access=bool(row["had_robots_access"]),
        is_html_only=bool(row["is_html_only"]),
        behavior_reasons=json.loads(row["behavior_reasons"]),
        mimic_score=row["mimic_score"],
        is_mimic=bool(row["is_mimic"]),
    )
