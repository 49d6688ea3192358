from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from secscan.errors import (
    ConfigurationError,
    InvalidTransitionError,
    NormalizationError,
    PersistenceError,
    ScannerError,
    ScanNotFoundError,
    UploadError,
)
from secscan.models import (
    PaginatedResult,
    RunRequest,
    Scan,
    ScanErrorEntry,
    ScanOutcome,
    ScanStatus,
    SeverityCounts,
    Tool,
    TriggerScanCommand,
    utc_now_iso,
)
from secscan.normalizer import parse_severity_counts
from secscan.ports import ArtifactStore, Repository, Runner, ScanErrorRepository
from secscan.scanners import RunContext, resolve_mode

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
DEFAULT_SUMMARY_DAYS = 7


def artifact_key(tenant: str, tool: Tool, local_path: str) -> str:
    return f"{tenant}/{tool.value}/{Path(local_path).name}"


def new_scan_id(tool: Tool) -> str:
    return f"{uuid.uuid4()}-{tool.value}"


def _clamp(limit: int | None, default: int = DEFAULT_LIMIT) -> int:
    if not limit or limit <= 0:
        return default
    return min(limit, MAX_LIMIT)


class ScanHandle:
    """A scan running on its own thread. The record is already persisted as RUNNING."""

    def __init__(self, scan_id: str, tenant_id: str, future: Future, context: RunContext):
        self.scan_id = scan_id
        self.tenant_id = tenant_id
        self._future = future
        self._context = context

    def cancel(self) -> None:
        self._context.cancel()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> ScanOutcome:
        return self._future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        return self._future.exception(timeout)


class ScanService:
    """Trigger and retry scans, and read them back per tenant.

    Every attempt follows the same path: RUNNING record, runner, normalizer,
    artifact upload, then one final upsert. Any infrastructure failure on that
    path leaves the record in ERROR before the exception reaches the caller.
    Concurrent retries of the same scan id are not serialized.
    """

    def __init__(
        self,
        repository: Repository,
        runner: Runner,
        artifacts: ArtifactStore,
        errors: ScanErrorRepository | None = None,
        clock: Callable[[], str] = utc_now_iso,
        default_timeout: float | None = None,
    ):
        self.repository = repository
        self.runner = runner
        self.artifacts = artifacts
        self.errors = errors
        self.clock = clock
        self.default_timeout = default_timeout

    # ---------------------------------------------------------------------
    # use cases
    # ---------------------------------------------------------------------

    def trigger_scan(self, cmd: TriggerScanCommand, context: RunContext | None = None) -> ScanOutcome:
        scan = self._create(cmd)
        return self._run_attempt(scan, context or RunContext(self.default_timeout), "trigger")

    def start_trigger(self, cmd: TriggerScanCommand, timeout: float | None = None) -> ScanHandle:
        scan = self._create(cmd)
        return self._spawn(scan, "trigger", timeout)

    def retry_scan(self, tenant: str, scan_id: str, context: RunContext | None = None) -> ScanOutcome:
        scan = self._reopen(tenant, scan_id)
        return self._run_attempt(scan, context or RunContext(self.default_timeout), "retry")

    def start_retry(self, tenant: str, scan_id: str, timeout: float | None = None) -> ScanHandle:
        scan = self._reopen(tenant, scan_id)
        return self._spawn(scan, "retry", timeout)

    def update_status(self, tenant: str, scan_id: str, status: ScanStatus | str) -> None:
        """Move a RUNNING scan to ``status``. Finished scans only re-enter RUNNING through retry."""
        status = ScanStatus(status)
        current = self.get(tenant, scan_id)
        if current.status is status:
            return
        self._require_running(current, status)
        self.repository.update_status(tenant, scan_id, status)
        LOGGER.info("Scan %s status set to %s", scan_id, status.value)

    def mark_done(self, tenant: str, outcome: ScanOutcome) -> None:
        if not outcome.status.is_terminal:
            raise InvalidTransitionError(f"scan {outcome.id} is still {outcome.status.value}")
        self._require_running(self.get(tenant, outcome.id), outcome.status)
        self.repository.update_result(tenant, outcome.id, outcome.status, outcome.artifact_url, outcome.counts)
        LOGGER.info("Scan %s marked %s", outcome.id, outcome.status.value)

    # ---------------------------------------------------------------------
    # read accessors
    # ---------------------------------------------------------------------

    def latest(self, tenant: str, limit: int = DEFAULT_LIMIT) -> list[Scan]:
        return self.repository.latest(tenant, _clamp(limit))

    def get(self, tenant: str, scan_id: str) -> Scan:
        scan = self.repository.get(tenant, scan_id)
        if scan is None:
            raise ScanNotFoundError(f"scan {scan_id} not found for tenant {tenant}")
        return scan

    def cursor(self, tenant: str, cursor_time: str | datetime, cursor_id: str, limit: int = DEFAULT_LIMIT) -> list[Scan]:
        if isinstance(cursor_time, datetime):
            if cursor_time.tzinfo is None:
                cursor_time = cursor_time.replace(tzinfo=timezone.utc)
            cursor_time = cursor_time.astimezone(timezone.utc).replace(microsecond=0).isoformat()
        return self.repository.cursor(tenant, cursor_time, cursor_id, _clamp(limit))

    def paginate(
        self,
        tenant: str,
        page: int = 1,
        page_size: int = DEFAULT_LIMIT,
        filters: dict[str, Any] | None = None,
    ) -> PaginatedResult:
        return self.repository.paginate(tenant, max(page or 1, 1), _clamp(page_size), filters or {})

    def summary(self, tenant: str, days: int = DEFAULT_SUMMARY_DAYS) -> dict[str, int]:
        if not days or days <= 0:
            days = DEFAULT_SUMMARY_DAYS
        return self.repository.summary(tenant, days)

    def list_errors(self, tenant: str, scan_id: str, limit: int = DEFAULT_LIMIT) -> list[ScanErrorEntry]:
        if self.errors is None:
            return []
        return self.errors.list_by_scan(tenant, scan_id, _clamp(limit))

    # ---------------------------------------------------------------------
    # internals
    # ---------------------------------------------------------------------

    def _create(self, cmd: TriggerScanCommand) -> Scan:
        try:
            tool = Tool.parse(cmd.tool)
        except ValueError as exc:
            raise ConfigurationError(str(exc), tool=str(cmd.tool)) from None
        request = RunRequest(tool=tool, mode=cmd.mode, image=cmd.image, path=cmd.path, target=cmd.target)
        self.runner.validate(request)
        scan = Scan(
            id=new_scan_id(tool),
            tenant_id=cmd.tenant_id,
            triggered_at=self.clock(),
            tool=tool,
            mode=resolve_mode(request),
            target=cmd.target,
            image=cmd.image,
            path=cmd.path,
            status=ScanStatus.RUNNING,
            source=cmd.source,
            commit_sha=cmd.commit_sha,
            branch=cmd.branch,
            metadata=cmd.metadata,
        )
        self._persist(self.repository.save, scan, action=f"create scan {scan.id}")
        LOGGER.info("Scan %s created tenant=%s tool=%s", scan.id, scan.tenant_id, tool.value)
        return scan

    def _reopen(self, tenant: str, scan_id: str) -> Scan:
        scan = self.get(tenant, scan_id)
        scan.begin_attempt()
        self._persist(self.repository.update_status, tenant, scan_id, ScanStatus.RUNNING, action=f"reopen scan {scan_id}")
        LOGGER.info("Scan %s reopened for retry tenant=%s tool=%s", scan_id, tenant, scan.tool.value)
        return scan

    def _require_running(self, scan: Scan, target: ScanStatus) -> None:
        if scan.status.is_terminal:
            raise InvalidTransitionError(
                f"scan {scan.id} is {scan.status.value}, cannot move to {target.value} outside retry",
                tool=scan.tool.value,
            )

    def _persist(self, operation: Callable[..., Any], *args: Any, action: str) -> Any:
        try:
            return operation(*args)
        except PersistenceError:
            raise
        except ScanNotFoundError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"{action} failed: {exc}") from exc

    def _spawn(self, scan: Scan, phase: str, timeout: float | None) -> ScanHandle:
        context = RunContext(timeout or self.default_timeout)
        future: Future = Future()

        def work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._run_attempt(scan, context, phase))
            except Exception as exc:  # noqa: BLE001
                future.set_exception(exc)

        threading.Thread(target=work, name=f"scan-{scan.id}").start()
        return ScanHandle(scan.id, scan.tenant_id, future, context)

    def _run_attempt(self, scan: Scan, context: RunContext, phase: str) -> ScanOutcome:
        try:
            result = self.runner.run(scan.run_request(), context)
        except Exception as exc:  # noqa: BLE001
            self._abort(scan, phase, exc)
            raise

        try:
            counts = parse_severity_counts(result.tool, result.local_artifact_path)
        except NormalizationError as exc:
            Path(result.local_artifact_path).unlink(missing_ok=True)
            self._abort(scan, phase, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            Path(result.local_artifact_path).unlink(missing_ok=True)
            error = NormalizationError(f"parsing {result.local_artifact_path} failed: {exc}", tool=scan.tool.value)
            self._abort(scan, phase, error)
            raise error from exc

        key = artifact_key(scan.tenant_id, scan.tool, result.local_artifact_path)
        try:
            url = self.artifacts.upload_and_cleanup(result.local_artifact_path, key)
        except UploadError as exc:
            self._abort(scan, phase, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            error = UploadError(f"upload of {key} failed: {exc}", tool=scan.tool.value)
            self._abort(scan, phase, error)
            raise error from exc

        status = ScanStatus.FAILED if result.failed else ScanStatus.SUCCESS
        scan.finish(status, counts, url, result.raw_format, result.duration_ms)
        try:
            self._persist(self.repository.save, scan, action=f"finish scan {scan.id}")
        except PersistenceError as exc:
            self._abort(scan, phase, exc)
            raise

        LOGGER.info(
            "Scan %s finished status=%s exit_code=%s total=%s artifact=%s",
            scan.id,
            status.value,
            result.exit_code,
            counts.total,
            url,
        )
        return ScanOutcome.from_scan(scan)

    def _abort(self, scan: Scan, phase: str, exc: Exception) -> None:
        if isinstance(exc, ScannerError) and not exc.tool:
            exc.tool = scan.tool.value
        LOGGER.error("Scan %s %s failed tenant=%s: %s", scan.id, phase, scan.tenant_id, exc)
        # an ERROR record carries no counts or artifact, including after a retry
        scan.status = ScanStatus.ERROR
        scan.counts = SeverityCounts()
        scan.artifact_url = None
        try:
            self.repository.update_result(scan.tenant_id, scan.id, ScanStatus.ERROR, None, scan.counts)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not mark scan %s as error", scan.id)
        self._record_error(scan, phase, exc)

    def _record_error(self, scan: Scan, phase: str, exc: Exception) -> None:
        if self.errors is None:
            return
        details: dict[str, Any] = {"status": ScanStatus.ERROR.value, "type": type(exc).__name__}
        if isinstance(exc, ScannerError):
            details["exit_code"] = exc.exit_code
            if exc.output:
                details["output"] = exc.output[-4000:]
        entry = ScanErrorEntry(
            tenant_id=scan.tenant_id,
            scan_id=scan.id,
            tool=scan.tool.value,
            phase=phase,
            message=str(exc),
            details=details,
        )
        try:
            self.errors.save(entry)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not record error for scan %s", scan.id)
