from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml

from secscan.errors import ConfigurationError, ScannerError, ScanNotFoundError
from secscan.models import ScanStatus, Tool, TriggerScanCommand, utc_now_iso
from secscan.retention import apply_retention
from secscan.scanners import ToolRunner
from secscan.service import ScanService
from secscan.storage import LocalArtifactStore, SQLiteScanErrorRepository, SQLiteScanRepository

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID_ARGS = 2
EXIT_SCAN_FAILED = 3
EXIT_SCAN_ERROR = 4


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_yaml(path: str) -> dict[str, Any]:
    if not Path(path).exists():
        LOGGER.info("Settings file %s not found, using defaults", path)
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def resolve_settings(path: str) -> dict[str, Any]:
    settings = load_yaml(path)
    settings.setdefault("paths", {})
    settings.setdefault("artifacts", {})
    settings.setdefault("scanners", {})
    settings.setdefault("execution", {})
    settings.setdefault("retention", {})
    settings["paths"].setdefault("db_path", os.getenv("SECSCAN_DB_PATH", "data/security_scans.db"))
    settings["paths"].setdefault("artifact_dir", os.getenv("SECSCAN_ARTIFACT_DIR", "temp"))
    settings["artifacts"].setdefault("store_dir", os.getenv("SECSCAN_ARTIFACT_STORE_DIR", "data/artifacts"))
    settings["artifacts"].setdefault("base_url", os.getenv("SECSCAN_ARTIFACT_BASE_URL") or None)
    for tool in Tool:
        settings["scanners"].setdefault(tool.value, {})
    timeout = os.getenv("SECSCAN_SCAN_TIMEOUT_SECONDS")
    settings["execution"].setdefault("timeout_seconds", int(timeout) if timeout else 3600)
    settings["retention"].setdefault("enabled", True)
    settings["retention"].setdefault("artifact_hours", 24)
    return settings


def build_service(settings: dict[str, Any]) -> ScanService:
    db_path = settings["paths"]["db_path"]
    timeout = settings["execution"].get("timeout_seconds")
    return ScanService(
        repository=SQLiteScanRepository(db_path),
        runner=ToolRunner.from_settings(settings),
        artifacts=LocalArtifactStore(settings["artifacts"]["store_dir"], settings["artifacts"].get("base_url")),
        errors=SQLiteScanErrorRepository(db_path),
        default_timeout=float(timeout) if timeout else None,
    )


def _parse_metadata(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multi-tenant security scan orchestrator")
    parser.add_argument("--settings", default=os.getenv("SECSCAN_SETTINGS", "config/settings.yaml"), help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    trigger = sub.add_parser("trigger", help="Run a scanner and record the result")
    trigger.add_argument("--tenant", required=True)
    trigger.add_argument("--tool", required=True, choices=[tool.value for tool in Tool])
    trigger.add_argument("--mode", choices=["image", "repo", "url"], help="Defaults to the kind of target given")
    trigger.add_argument("--image", help="Container image reference")
    trigger.add_argument("--path", help="Filesystem path or repository checkout")
    trigger.add_argument("--target", help="Target URL")
    trigger.add_argument("--source", help="Where the scan request came from (ci, manual, ...)")
    trigger.add_argument("--commit-sha")
    trigger.add_argument("--branch")
    trigger.add_argument("--metadata", help="Opaque JSON stored with the scan")
    trigger.add_argument("--timeout", type=float, help="Kill the scanner after this many seconds")

    retry = sub.add_parser("retry", help="Re-run a stored scan in place")
    retry.add_argument("--tenant", required=True)
    retry.add_argument("--id", required=True)
    retry.add_argument("--timeout", type=float)

    latest = sub.add_parser("latest", help="Most recent scans")
    latest.add_argument("--tenant", required=True)
    latest.add_argument("--limit", type=int, default=20)
    latest.add_argument("--cursor-time", help="Continue after this trigger time")
    latest.add_argument("--cursor-id", help="Continue after this scan id")

    get = sub.add_parser("get", help="One scan by id")
    get.add_argument("--tenant", required=True)
    get.add_argument("--id", required=True)

    page = sub.add_parser("page", help="Offset pagination with filters")
    page.add_argument("--tenant", required=True)
    page.add_argument("--page", type=int, default=1)
    page.add_argument("--page-size", type=int, default=20)
    page.add_argument("--tool", choices=[tool.value for tool in Tool])
    page.add_argument("--status", choices=[status.value for status in ScanStatus])
    page.add_argument("--target")
    page.add_argument("--branch")

    summary = sub.add_parser("summary", help="Severity totals over the last N days")
    summary.add_argument("--tenant", required=True)
    summary.add_argument("--days", type=int, default=7)

    errors = sub.add_parser("errors", help="Recorded failures of a scan")
    errors.add_argument("--tenant", required=True)
    errors.add_argument("--id", required=True)
    errors.add_argument("--limit", type=int, default=20)

    cleanup = sub.add_parser("cleanup", help="Remove stale local artifacts")
    cleanup.add_argument("--dry-run", action="store_true")
    return parser


def _exit_code_for(status: ScanStatus) -> int:
    if status is ScanStatus.SUCCESS:
        return EXIT_OK
    if status is ScanStatus.FAILED:
        return EXIT_SCAN_FAILED
    return EXIT_SCAN_ERROR


def execute(args: argparse.Namespace, settings: dict[str, Any]) -> tuple[Any, int]:
    if args.command == "cleanup":
        return apply_retention(settings, dry_run=args.dry_run), EXIT_OK

    service = build_service(settings)
    if args.command == "trigger":
        command = TriggerScanCommand(
            tenant_id=args.tenant,
            tool=args.tool,
            mode=args.mode,
            image=args.image,
            path=args.path,
            target=args.target,
            source=args.source,
            commit_sha=args.commit_sha,
            branch=args.branch,
            metadata=_parse_metadata(args.metadata),
        )
        handle = service.start_trigger(command, timeout=args.timeout)
        LOGGER.info("Scan %s started", handle.scan_id)
        outcome = _wait(handle)
        return outcome.to_dict(), _exit_code_for(outcome.status)
    if args.command == "retry":
        handle = service.start_retry(args.tenant, args.id, timeout=args.timeout)
        outcome = _wait(handle)
        return outcome.to_dict(), _exit_code_for(outcome.status)
    if args.command == "latest":
        if args.cursor_time and args.cursor_id:
            scans = service.cursor(args.tenant, args.cursor_time, args.cursor_id, args.limit)
        else:
            scans = service.latest(args.tenant, args.limit)
        return [scan.to_dict() for scan in scans], EXIT_OK
    if args.command == "get":
        return service.get(args.tenant, args.id).to_dict(), EXIT_OK
    if args.command == "page":
        filters = {"tool": args.tool, "status": args.status, "target": args.target, "branch": args.branch}
        result = service.paginate(args.tenant, args.page, args.page_size, {k: v for k, v in filters.items() if v})
        return result.to_dict(), EXIT_OK
    if args.command == "summary":
        return service.summary(args.tenant, args.days), EXIT_OK
    if args.command == "errors":
        return [entry.to_dict() for entry in service.list_errors(args.tenant, args.id, args.limit)], EXIT_OK
    raise ValueError(f"Unknown command: {args.command}")


def _wait(handle):
    try:
        return handle.result()
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted, cancelling scan %s", handle.scan_id)
        handle.cancel()
        return handle.result()


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    settings = resolve_settings(args.settings)

    try:
        payload, exit_code = execute(args, settings)
    except (ValueError, ConfigurationError, ScanNotFoundError) as exc:
        LOGGER.error("Invalid arguments: %s", exc)
        return EXIT_INVALID_ARGS
    except ScannerError as exc:
        LOGGER.error("Scan failed: %s", exc)
        payload = {"error": str(exc), "type": type(exc).__name__, "generated_at": utc_now_iso()}
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return EXIT_SCAN_ERROR

    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
