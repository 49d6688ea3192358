from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from secscan.errors import UploadError
from secscan.models import (
    PaginatedResult,
    RunRequest,
    RunResult,
    Scan,
    ScanErrorEntry,
    ScanStatus,
    SeverityCounts,
)

LOGGER = logging.getLogger(__name__)


class Repository(ABC):
    @abstractmethod
    def save(self, scan: Scan) -> None:
        """Insert the scan, or overwrite the mutable fields of an existing id."""

    @abstractmethod
    def get(self, tenant: str, scan_id: str) -> Scan | None: ...

    @abstractmethod
    def latest(self, tenant: str, limit: int) -> list[Scan]: ...

    @abstractmethod
    def cursor(self, tenant: str, cursor_time: str, cursor_id: str, limit: int) -> list[Scan]: ...

    @abstractmethod
    def paginate(self, tenant: str, page: int, page_size: int, filters: dict[str, Any] | None = None) -> PaginatedResult: ...

    @abstractmethod
    def count(self, tenant: str, filters: dict[str, Any] | None = None) -> int: ...

    @abstractmethod
    def summary(self, tenant: str, since_days: int) -> dict[str, int]: ...

    @abstractmethod
    def update_status(self, tenant: str, scan_id: str, status: ScanStatus) -> None: ...

    @abstractmethod
    def update_result(
        self,
        tenant: str,
        scan_id: str,
        status: ScanStatus,
        artifact_url: str | None,
        counts: SeverityCounts,
    ) -> None: ...

    @abstractmethod
    def update_counts(self, tenant: str, scan_id: str, counts: SeverityCounts) -> None: ...


class ScanErrorRepository(ABC):
    @abstractmethod
    def save(self, entry: ScanErrorEntry) -> None: ...

    @abstractmethod
    def list_by_scan(self, tenant: str, scan_id: str, limit: int) -> list[ScanErrorEntry]: ...


class Runner(ABC):
    @abstractmethod
    def run(self, request: RunRequest, context: Any = None) -> RunResult: ...

    def validate(self, request: RunRequest) -> None:
        """Reject a request that can never run, before anything is persisted."""


class ArtifactStore(ABC):
    @abstractmethod
    def upload(self, local_path: str, key: str) -> str:
        """Store the file under ``key`` and return its URL. Raises UploadError."""

    def upload_and_cleanup(self, local_path: str, key: str) -> str:
        """Upload, then delete the local file whether or not the upload worked."""
        try:
            return self.upload(local_path, key)
        except UploadError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise UploadError(f"upload of {key} failed: {exc}") from exc
        finally:
            try:
                Path(local_path).unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Failed to remove local artifact %s: %s", local_path, exc)
