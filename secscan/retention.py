from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any

from secscan.models import Tool

LOGGER = logging.getLogger(__name__)

# Artifacts and session dirs are always named after the tool that produced them.
ARTIFACT_PREFIXES = tuple(f"{tool.value}-" for tool in Tool)


def _is_expired(path: Path, cutoff_ts: float) -> bool:
    try:
        return path.stat().st_mtime < cutoff_ts
    except FileNotFoundError:
        return False


def sweep_artifacts(path: Path, cutoff_ts: float, dry_run: bool = False) -> int:
    """Remove scanner leftovers older than ``cutoff_ts``; anything else in the directory is kept."""
    removed = 0
    if not path.is_dir():
        return removed

    for child in path.iterdir():
        if not child.name.startswith(ARTIFACT_PREFIXES) or not _is_expired(child, cutoff_ts):
            continue
        try:
            if not dry_run:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink(missing_ok=True)
            removed += 1
        except OSError as exc:
            LOGGER.warning("Retention cleanup failed for %s: %s", child, exc)
    return removed


def apply_retention(settings: dict[str, Any], dry_run: bool = False) -> dict[str, int | bool]:
    retention = settings.get("retention", {})
    if not bool(retention.get("enabled", True)):
        return {"artifacts_removed": 0, "dry_run": dry_run}

    artifact_hours = float(retention.get("artifact_hours", 24))
    artifact_dir = Path(str(settings.get("paths", {}).get("artifact_dir", "temp")))
    removed = sweep_artifacts(artifact_dir, time.time() - artifact_hours * 3600, dry_run=dry_run)
    if removed:
        LOGGER.info("Retention removed %s stale artifact(s) from %s", removed, artifact_dir)
    return {"artifacts_removed": removed, "dry_run": dry_run}
