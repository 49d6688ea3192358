from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from secscan.errors import InvalidTransitionError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Tool(str, Enum):
    """Supported scanner variants. Values are the identifiers stored on records."""

    TRIVY = "trivy"
    GITLEAKS = "gitleaks"
    ZAP = "zap"
    NUCLEI = "nuclei"
    SQLMAP = "sqlmap"

    @classmethod
    def parse(cls, value: "Tool | str") -> "Tool":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported tool: {value}") from None


class ScanStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.RUNNING


class ScanMode(str, Enum):
    IMAGE = "image"
    REPO = "repo"
    URL = "url"


@dataclass
class SeverityCounts:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    total: int = 0

    def add(self, severity: str) -> bool:
        """Increment the bucket for ``severity``; returns False when it has no bucket."""
        if severity in ("critical", "high", "medium", "low"):
            setattr(self, severity, getattr(self, severity) + 1)
            return True
        return False

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SeverityCounts":
        data = data or {}
        return cls(
            critical=int(data.get("critical", 0) or 0),
            high=int(data.get("high", 0) or 0),
            medium=int(data.get("medium", 0) or 0),
            low=int(data.get("low", 0) or 0),
            total=int(data.get("total", 0) or 0),
        )


@dataclass
class RunRequest:
    tool: Tool
    mode: str | None = None
    image: str | None = None
    path: str | None = None
    target: str | None = None


@dataclass
class RunResult:
    tool: Tool
    local_artifact_path: str
    raw_format: str
    exit_code: int
    duration_ms: int
    failed: bool = False
    output: str = ""


@dataclass
class TriggerScanCommand:
    tenant_id: str
    tool: Tool | str
    mode: str | None = None
    image: str | None = None
    path: str | None = None
    target: str | None = None
    source: str | None = None
    commit_sha: str | None = None
    branch: str | None = None
    metadata: Any = None


@dataclass
class Scan:
    id: str
    tenant_id: str
    triggered_at: str
    tool: Tool
    mode: str | None = None
    target: str | None = None
    image: str | None = None
    path: str | None = None
    status: ScanStatus = ScanStatus.RUNNING
    counts: SeverityCounts = field(default_factory=SeverityCounts)
    artifact_url: str | None = None
    raw_format: str | None = None
    duration_ms: int = 0
    source: str | None = None
    commit_sha: str | None = None
    branch: str | None = None
    metadata: Any = None

    def run_request(self) -> RunRequest:
        return RunRequest(tool=self.tool, mode=self.mode, image=self.image, path=self.path, target=self.target)

    def begin_attempt(self) -> None:
        self.status = ScanStatus.RUNNING

    def finish(
        self,
        status: ScanStatus,
        counts: SeverityCounts,
        artifact_url: str,
        raw_format: str,
        duration_ms: int,
    ) -> None:
        if self.status is not ScanStatus.RUNNING:
            raise InvalidTransitionError(f"scan {self.id} is {self.status.value}, cannot complete", tool=self.tool.value)
        if not status.is_terminal:
            raise InvalidTransitionError(f"scan {self.id} cannot complete as {status.value}", tool=self.tool.value)
        self.status = status
        self.counts = counts
        self.artifact_url = artifact_url
        self.raw_format = raw_format
        self.duration_ms = duration_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "triggered_at": self.triggered_at,
            "tool": self.tool.value,
            "mode": self.mode,
            "target": self.target,
            "image": self.image,
            "path": self.path,
            "status": self.status.value,
            "counts": self.counts.to_dict(),
            "artifact_url": self.artifact_url,
            "raw_format": self.raw_format,
            "duration_ms": self.duration_ms,
            "source": self.source,
            "commit_sha": self.commit_sha,
            "branch": self.branch,
            "metadata": self.metadata,
        }


@dataclass
class ScanOutcome:
    id: str
    status: ScanStatus
    counts: SeverityCounts
    artifact_url: str | None
    raw_format: str | None
    duration_ms: int

    @classmethod
    def from_scan(cls, scan: Scan) -> "ScanOutcome":
        return cls(
            id=scan.id,
            status=scan.status,
            counts=scan.counts,
            artifact_url=scan.artifact_url,
            raw_format=scan.raw_format,
            duration_ms=scan.duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "counts": self.counts.to_dict(),
            "artifact_url": self.artifact_url,
            "raw_format": self.raw_format,
            "duration_ms": self.duration_ms,
        }


@dataclass
class PaginatedResult:
    data: list[Scan]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return int(math.ceil(self.total / self.page_size))

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [scan.to_dict() for scan in self.data],
            "page": self.page,
            "page_size": self.page_size,
            "total": self.total,
            "total_pages": self.total_pages,
        }


@dataclass
class ScanErrorEntry:
    tenant_id: str
    scan_id: str
    message: str
    tool: str | None = None
    phase: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
