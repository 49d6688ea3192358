from __future__ import annotations

import json
import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from secscan.errors import PersistenceError, ScanNotFoundError, UploadError
from secscan.models import (
    PaginatedResult,
    Scan,
    ScanErrorEntry,
    ScanStatus,
    SeverityCounts,
    Tool,
)
from secscan.ports import ArtifactStore, Repository, ScanErrorRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_SUMMARY_DAYS = 7

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS security_scans (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    triggered_at TEXT NOT NULL,
    tool TEXT NOT NULL,
    mode TEXT,
    target TEXT,
    image TEXT,
    path TEXT,
    status TEXT NOT NULL,
    critical INTEGER NOT NULL DEFAULT 0,
    high INTEGER NOT NULL DEFAULT 0,
    medium INTEGER NOT NULL DEFAULT 0,
    low INTEGER NOT NULL DEFAULT 0,
    findings_total INTEGER NOT NULL DEFAULT 0,
    artifact_url TEXT,
    raw_format TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    source TEXT,
    commit_sha TEXT,
    branch TEXT,
    metadata_json TEXT
);

CREATE TABLE IF NOT EXISTS security_scan_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    scan_id TEXT NOT NULL,
    tool TEXT,
    phase TEXT,
    message TEXT NOT NULL,
    details_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    FOREIGN KEY (scan_id) REFERENCES security_scans(id)
);

CREATE INDEX IF NOT EXISTS idx_scans_tenant_triggered ON security_scans(tenant_id, triggered_at DESC);
CREATE INDEX IF NOT EXISTS idx_scan_errors_scan ON security_scan_errors(tenant_id, scan_id);
"""

SCAN_COLUMNS = (
    "id, tenant_id, triggered_at, tool, mode, target, image, path, status, "
    "critical, high, medium, low, findings_total, artifact_url, raw_format, "
    "duration_ms, source, commit_sha, branch, metadata_json"
)


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    with _transaction(db_path, "initialize database") as conn:
        conn.executescript(SCHEMA_SQL)
    LOGGER.info("SQLite initialized at %s", db_path)


@contextmanager
def _transaction(db_path: str, action: str) -> Iterator[sqlite3.Connection]:
    try:
        conn = connect(db_path)
    except (sqlite3.Error, OSError) as exc:
        raise PersistenceError(f"{action} failed: {exc}") from exc
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise PersistenceError(f"{action} failed: {exc}") from exc
    finally:
        conn.close()


def _to_json_text(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _row_to_scan(row: sqlite3.Row) -> Scan:
    metadata = row["metadata_json"]
    return Scan(
        id=row["id"],
        tenant_id=row["tenant_id"],
        triggered_at=row["triggered_at"],
        tool=Tool(row["tool"]),
        mode=row["mode"],
        target=row["target"],
        image=row["image"],
        path=row["path"],
        status=ScanStatus(row["status"]),
        counts=SeverityCounts(
            critical=row["critical"],
            high=row["high"],
            medium=row["medium"],
            low=row["low"],
            total=row["findings_total"],
        ),
        artifact_url=row["artifact_url"],
        raw_format=row["raw_format"],
        duration_ms=row["duration_ms"] or 0,
        source=row["source"],
        commit_sha=row["commit_sha"],
        branch=row["branch"],
        metadata=json.loads(metadata) if metadata else None,
    )


def _filter_clause(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    clause = ""
    params: list[Any] = []
    for key, value in (filters or {}).items():
        if value in (None, ""):
            continue
        if key in ("tool", "status"):
            clause += f" AND {key} = ?"
            params.append(getattr(value, "value", value))
        elif key == "branch":
            clause += " AND branch = ?"
            params.append(value)
        elif key == "target":
            escaped = str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            clause += " AND (target LIKE ? ESCAPE '\\' OR image LIKE ? ESCAPE '\\' OR path LIKE ? ESCAPE '\\')"
            params.extend([f"%{escaped}%"] * 3)
        else:
            LOGGER.debug("Ignoring unsupported scan filter %s", key)
    return clause, params


class SQLiteScanRepository(Repository):
    def __init__(self, db_path: str):
        self.db_path = db_path
        init_db(db_path)

    def save(self, scan: Scan) -> None:
        with _transaction(self.db_path, f"save scan {scan.id}") as conn:
            conn.execute(
                f"""
                INSERT INTO security_scans ({SCAN_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    mode = excluded.mode,
                    status = excluded.status,
                    critical = excluded.critical,
                    high = excluded.high,
                    medium = excluded.medium,
                    low = excluded.low,
                    findings_total = excluded.findings_total,
                    artifact_url = excluded.artifact_url,
                    raw_format = excluded.raw_format,
                    duration_ms = excluded.duration_ms
                """,
                (
                    scan.id,
                    scan.tenant_id,
                    scan.triggered_at,
                    scan.tool.value,
                    scan.mode,
                    scan.target,
                    scan.image,
                    scan.path,
                    scan.status.value,
                    scan.counts.critical,
                    scan.counts.high,
                    scan.counts.medium,
                    scan.counts.low,
                    scan.counts.total,
                    scan.artifact_url,
                    scan.raw_format,
                    scan.duration_ms,
                    scan.source,
                    scan.commit_sha,
                    scan.branch,
                    _to_json_text(scan.metadata),
                ),
            )
        LOGGER.debug("Persisted scan %s status=%s", scan.id, scan.status.value)

    def get(self, tenant: str, scan_id: str) -> Scan | None:
        with _transaction(self.db_path, f"load scan {scan_id}") as conn:
            row = conn.execute(
                f"SELECT {SCAN_COLUMNS} FROM security_scans WHERE tenant_id = ? AND id = ? LIMIT 1",
                (tenant, scan_id),
            ).fetchone()
        return _row_to_scan(row) if row else None

    def latest(self, tenant: str, limit: int) -> list[Scan]:
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        with _transaction(self.db_path, "list latest scans") as conn:
            rows = conn.execute(
                f"SELECT {SCAN_COLUMNS} FROM security_scans WHERE tenant_id = ? "
                "ORDER BY triggered_at DESC, id DESC LIMIT ?",
                (tenant, limit),
            ).fetchall()
        return [_row_to_scan(row) for row in rows]

    def cursor(self, tenant: str, cursor_time: str, cursor_id: str, limit: int) -> list[Scan]:
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        with _transaction(self.db_path, "list scans by cursor") as conn:
            rows = conn.execute(
                f"""
                SELECT {SCAN_COLUMNS} FROM security_scans
                WHERE tenant_id = ?
                  AND (triggered_at < ? OR (triggered_at = ? AND id < ?))
                ORDER BY triggered_at DESC, id DESC
                LIMIT ?
                """,
                (tenant, cursor_time, cursor_time, cursor_id, limit),
            ).fetchall()
        return [_row_to_scan(row) for row in rows]

    def paginate(self, tenant: str, page: int, page_size: int, filters: dict[str, Any] | None = None) -> PaginatedResult:
        page = max(page, 1)
        if page_size <= 0:
            page_size = DEFAULT_PAGE_SIZE
        clause, params = _filter_clause(filters)
        with _transaction(self.db_path, "paginate scans") as conn:
            rows = conn.execute(
                f"SELECT {SCAN_COLUMNS} FROM security_scans WHERE tenant_id = ?{clause} "
                "ORDER BY triggered_at DESC, id DESC LIMIT ? OFFSET ?",
                [tenant, *params, page_size, (page - 1) * page_size],
            ).fetchall()
        return PaginatedResult(
            data=[_row_to_scan(row) for row in rows],
            page=page,
            page_size=page_size,
            total=self.count(tenant, filters),
        )

    def count(self, tenant: str, filters: dict[str, Any] | None = None) -> int:
        clause, params = _filter_clause(filters)
        with _transaction(self.db_path, "count scans") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS value FROM security_scans WHERE tenant_id = ?{clause}",
                [tenant, *params],
            ).fetchone()
        return int(row["value"])

    def summary(self, tenant: str, since_days: int) -> dict[str, int]:
        if since_days <= 0:
            since_days = DEFAULT_SUMMARY_DAYS
        cutoff = (datetime.now(timezone.utc) - timedelta(days=since_days)).replace(microsecond=0).isoformat()
        with _transaction(self.db_path, "summarize scans") as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_scans,
                       COALESCE(SUM(critical), 0) AS critical,
                       COALESCE(SUM(high), 0) AS high,
                       COALESCE(SUM(medium), 0) AS medium,
                       COALESCE(SUM(low), 0) AS low
                FROM security_scans
                WHERE tenant_id = ? AND triggered_at >= ?
                """,
                (tenant, cutoff),
            ).fetchone()
        return {key: int(row[key]) for key in ("total_scans", "critical", "high", "medium", "low")}

    def update_status(self, tenant: str, scan_id: str, status: ScanStatus) -> None:
        with _transaction(self.db_path, f"update status of {scan_id}") as conn:
            cursor = conn.execute(
                "UPDATE security_scans SET status = ? WHERE tenant_id = ? AND id = ?",
                (ScanStatus(status).value, tenant, scan_id),
            )
            updated = cursor.rowcount
        if updated == 0:
            raise ScanNotFoundError(f"scan {scan_id} not found for tenant {tenant}")

    def update_result(
        self,
        tenant: str,
        scan_id: str,
        status: ScanStatus,
        artifact_url: str | None,
        counts: SeverityCounts,
    ) -> None:
        with _transaction(self.db_path, f"update result of {scan_id}") as conn:
            cursor = conn.execute(
                """
                UPDATE security_scans
                SET status = ?, critical = ?, high = ?, medium = ?, low = ?, findings_total = ?, artifact_url = ?
                WHERE tenant_id = ? AND id = ?
                """,
                (
                    ScanStatus(status).value,
                    counts.critical,
                    counts.high,
                    counts.medium,
                    counts.low,
                    counts.total,
                    artifact_url,
                    tenant,
                    scan_id,
                ),
            )
            updated = cursor.rowcount
        if updated == 0:
            raise ScanNotFoundError(f"scan {scan_id} not found for tenant {tenant}")

    def update_counts(self, tenant: str, scan_id: str, counts: SeverityCounts) -> None:
        with _transaction(self.db_path, f"update counts of {scan_id}") as conn:
            cursor = conn.execute(
                """
                UPDATE security_scans
                SET critical = ?, high = ?, medium = ?, low = ?, findings_total = ?
                WHERE tenant_id = ? AND id = ?
                """,
                (counts.critical, counts.high, counts.medium, counts.low, counts.total, tenant, scan_id),
            )
            updated = cursor.rowcount
        if updated == 0:
            raise ScanNotFoundError(f"scan {scan_id} not found for tenant {tenant}")


class SQLiteScanErrorRepository(ScanErrorRepository):
    def __init__(self, db_path: str):
        self.db_path = db_path
        init_db(db_path)

    def save(self, entry: ScanErrorEntry) -> None:
        with _transaction(self.db_path, f"record error for {entry.scan_id}") as conn:
            cursor = conn.execute(
                """
                INSERT INTO security_scan_errors (tenant_id, scan_id, tool, phase, message, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.tenant_id or "-",
                    entry.scan_id or "-",
                    entry.tool or "-",
                    entry.phase or "-",
                    entry.message.strip() or "-",
                    _to_json_text(entry.details or {}),
                    entry.created_at,
                ),
            )
            entry.id = cursor.lastrowid

    def list_by_scan(self, tenant: str, scan_id: str, limit: int) -> list[ScanErrorEntry]:
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        with _transaction(self.db_path, f"list errors for {scan_id}") as conn:
            rows = conn.execute(
                """
                SELECT id, tenant_id, scan_id, tool, phase, message, details_json, created_at
                FROM security_scan_errors
                WHERE tenant_id = ? AND scan_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (tenant, scan_id, limit),
            ).fetchall()
        return [
            ScanErrorEntry(
                id=row["id"],
                tenant_id=row["tenant_id"],
                scan_id=row["scan_id"],
                tool=row["tool"],
                phase=row["phase"],
                message=row["message"],
                details=json.loads(row["details_json"] or "{}"),
                created_at=row["created_at"],
            )
            for row in rows
        ]


class LocalArtifactStore(ArtifactStore):
    """Keeps artifacts under a directory; stands in for an object store."""

    def __init__(self, root_dir: str | Path, base_url: str | None = None):
        self.root_dir = Path(root_dir)
        self.base_url = base_url.rstrip("/") if base_url else None

    def _destination(self, key: str) -> Path:
        root = self.root_dir.resolve()
        destination = (root / key).resolve()
        if root not in destination.parents:
            raise UploadError(f"artifact key escapes the store: {key}")
        return destination

    def upload(self, local_path: str, key: str) -> str:
        source = Path(local_path)
        if not source.is_file():
            raise UploadError(f"artifact {local_path} does not exist")
        destination = self._destination(key)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise UploadError(f"copy of {local_path} to {destination} failed: {exc}") from exc
        LOGGER.info("Stored artifact %s", key)
        if self.base_url:
            return f"{self.base_url}/{key}"
        return destination.as_uri()
