from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable

from secscan.errors import NormalizationError
from secscan.models import SeverityCounts, Tool

LOGGER = logging.getLogger(__name__)

Parser = Callable[[Path], SeverityCounts]

PARSERS: dict[Tool, Parser] = {}

# info-level findings have no bucket of their own
SEVERITY_MAP = {
    "critical": "critical",
    "high": "high",
    "medium": "medium",
    "low": "low",
    "info": "low",
    "informational": "low",
}

SARIF_LEVEL_MAP = {
    "error": "high",
    "warning": "medium",
    "note": "low",
}

_ZAP_RISK = re.compile(r"risk\s*:?\s*(high|medium|low|informational|info)")
_ZAP_CLASS = re.compile(r"class\s*=\s*\"(?:risk|severity)-(high|medium|low|informational|info)\"")
_ZAP_LEVEL = re.compile(r"risk\s*level\s*:?\s*(high|medium|low|informational|info)")

_SQLMAP_SUMMARY = re.compile(
    r"(?:identified|resumed) the following injection point\(s\)[^\n]*\n---\n(.*?)\n---", re.DOTALL
)
_SQLMAP_TECHNIQUE = re.compile(r"^[ \t]+Type:[ \t]*\S", re.MULTILINE)


def register_parser(tool: Tool) -> Callable[[Parser], Parser]:
    def decorator(func: Parser) -> Parser:
        PARSERS[tool] = func
        return func

    return decorator


def parse_severity_counts(tool: Tool | str, artifact_path: str | Path) -> SeverityCounts:
    """Classify a raw tool artifact into severity buckets.

    Unknown tools yield zero counts rather than an error so that adding a tool
    to the runner before its parser exists does not break persisted scans.
    """
    try:
        variant = Tool.parse(tool)
    except ValueError:
        LOGGER.warning("No severity parser for tool %s", tool)
        return SeverityCounts()
    parser = PARSERS.get(variant)
    if parser is None:
        LOGGER.warning("No severity parser for tool %s", variant.value)
        return SeverityCounts()
    return parser(Path(artifact_path))


def _read_text(path: Path, tool: Tool) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise NormalizationError(f"cannot read artifact {path}: {exc}", tool=tool.value) from exc


def _load_json(path: Path, tool: Tool, text: str | None = None) -> Any:
    if text is None:
        text = _read_text(path, tool)
    try:
        return json.loads(text)
    except (ValueError, RecursionError) as exc:
        raise NormalizationError(f"malformed report {path}: {exc}", tool=tool.value) from exc


@register_parser(Tool.NUCLEI)
def parse_nuclei_jsonl(path: Path) -> SeverityCounts:
    counts = SeverityCounts()
    for line in _read_text(path, Tool.NUCLEI).splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except (ValueError, RecursionError):
            LOGGER.debug("Skipping malformed nuclei line in %s", path)
            continue
        if not isinstance(item, dict):
            continue
        info = item.get("info") or {}
        severity = str(info.get("severity") or "").lower() if isinstance(info, dict) else ""
        bucket = SEVERITY_MAP.get(severity)
        if bucket:
            counts.add(bucket)
        counts.total += 1
    return counts


def _sarif_severity(result: dict[str, Any]) -> str:
    properties = result.get("properties")
    if isinstance(properties, dict):
        if "severity" in properties:
            value = properties["severity"]
        else:
            value = properties.get("Severity")
        if isinstance(value, str) and value:
            return value.lower()
    return SARIF_LEVEL_MAP.get(str(result.get("level") or "").lower(), "")


@register_parser(Tool.TRIVY)
def parse_trivy_sarif(path: Path) -> SeverityCounts:
    document = _load_json(path, Tool.TRIVY)
    if not isinstance(document, dict):
        raise NormalizationError(f"SARIF report {path} is not an object", tool=Tool.TRIVY.value)
    runs = document.get("runs") or []
    if not isinstance(runs, list):
        raise NormalizationError(f"SARIF report {path} has no runs array", tool=Tool.TRIVY.value)
    counts = SeverityCounts()
    for run in runs:
        if not isinstance(run, dict):
            continue
        results = run.get("results") or []
        if not isinstance(results, list):
            raise NormalizationError(f"SARIF run in {path} has no results array", tool=Tool.TRIVY.value)
        for result in results:
            if not isinstance(result, dict):
                continue
            counts.add(_sarif_severity(result))
            counts.total += 1
    return counts


@register_parser(Tool.GITLEAKS)
def parse_gitleaks_json(path: Path) -> SeverityCounts:
    # gitleaks does not grade its findings
    document = _load_json(path, Tool.GITLEAKS)
    if not isinstance(document, list):
        raise NormalizationError(f"gitleaks report {path} is not an array", tool=Tool.GITLEAKS.value)
    return SeverityCounts(total=len(document))


@register_parser(Tool.SQLMAP)
def parse_sqlmap_json(path: Path) -> SeverityCounts:
    """Best-effort count of injection points; every hit is graded high.

    The sqlmap CLI prints a console log rather than JSON; its injection summary
    lists one ``Type:`` line per working technique. JSON documents (from the
    sqlmap API or a wrapper) are read for ``vulnerabilities`` and ``results``.
    """
    text = _read_text(path, Tool.SQLMAP)
    if not text.lstrip().startswith("{"):
        return _count_sqlmap_console(text)
    document = _load_json(path, Tool.SQLMAP, text)
    if not isinstance(document, dict):
        raise NormalizationError(f"sqlmap report {path} is not an object", tool=Tool.SQLMAP.value)
    counts = SeverityCounts()
    vulnerabilities = document.get("vulnerabilities")
    if isinstance(vulnerabilities, list):
        counts.high += len(vulnerabilities)
        counts.total += len(vulnerabilities)
    results = document.get("results")
    if isinstance(results, list):
        for item in results:
            if not isinstance(item, dict):
                continue
            nested = item.get("vulnerabilities")
            if isinstance(nested, list):
                counts.high += len(nested)
                counts.total += len(nested)
                continue
            status = item.get("status")
            if isinstance(status, str) and ("possible" in status.lower() or "vulnerable" in status.lower()):
                counts.high += 1
                counts.total += 1
    return counts


def _count_sqlmap_console(text: str) -> SeverityCounts:
    counts = SeverityCounts()
    for block in _SQLMAP_SUMMARY.findall(text.replace("\r\n", "\n")):
        found = len(_SQLMAP_TECHNIQUE.findall(block))
        counts.high += found
        counts.total += found
    return counts


def _count_levels(levels: list[str]) -> SeverityCounts:
    counts = SeverityCounts()
    for level in levels:
        if counts.add(SEVERITY_MAP[level]):
            counts.total += 1
    return counts


@register_parser(Tool.ZAP)
def parse_zap_html(path: Path) -> SeverityCounts:
    """Count risk labels in a rendered ZAP report.

    Classic templates print ``Risk: High``; newer ones use ``risk-high`` /
    ``severity-high`` classes or ``Risk Level: High``. The first heuristic that
    finds anything wins, so a document is never counted twice.
    """
    document = _read_text(path, Tool.ZAP).lower()
    counts = _count_levels(_ZAP_RISK.findall(document))
    if counts.total:
        return counts
    counts = _count_levels(_ZAP_CLASS.findall(document))
    if counts.total:
        return counts
    counts = _count_levels(_ZAP_LEVEL.findall(document))
    if counts.total:
        return counts
    return SeverityCounts()
