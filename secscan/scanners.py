from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Iterator

from secscan.errors import ConfigurationError, ExecutionError
from secscan.models import RunRequest, RunResult, ScanMode, Tool
from secscan.ports import Runner

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.2
KILL_GRACE_SECONDS = 5

# Exit codes that mean "the tool found something" rather than "the tool broke".
DEFAULT_FINDINGS_EXIT_CODES: dict[Tool, frozenset[int]] = {
    Tool.TRIVY: frozenset({1}),
    Tool.ZAP: frozenset({2}),
    Tool.NUCLEI: frozenset({1}),
    Tool.GITLEAKS: frozenset(),
    Tool.SQLMAP: frozenset(),
}

DEFAULT_BINARIES: dict[Tool, str] = {
    Tool.TRIVY: "trivy",
    Tool.GITLEAKS: "gitleaks",
    Tool.ZAP: "zap-baseline.py",
    Tool.NUCLEI: "nuclei",
    Tool.SQLMAP: "sqlmap",
}


class RunContext:
    """Cancellation and deadline for one unit of work.

    The runner polls the context while the subprocess is alive; cancelling it
    (or passing the deadline) kills the process.
    """

    def __init__(self, timeout: float | None = None, cancel_event: threading.Event | None = None):
        self._cancel_event = cancel_event or threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


@dataclass
class Invocation:
    command: list[str]
    artifact_path: Path
    raw_format: str
    cwd: str | None = None
    artifact_from_stdout: bool = False


@dataclass
class ToolSpec:
    extension: str
    build: Callable[["ToolRunner", RunRequest, Path, Path | None], Invocation]
    needs_session_dir: bool = False


@dataclass
class CommandOutput:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def combined(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def _kill_process_group(process: subprocess.Popen) -> None:
    # the scanner runs as a session leader, so this also reaches the children it forked
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as exc:
        LOGGER.warning("Could not kill process group %s: %s", process.pid, exc)
        process.kill()


def run_command(
    command: list[str],
    context: RunContext | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> CommandOutput:
    LOGGER.info("Executing command: %s", " ".join(command))
    context = context or RunContext()
    try:
        process = subprocess.Popen(
            command,
            cwd=cwd,
            env=env or os.environ.copy(),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        raise ExecutionError(f"failed to start {command[0]}: {exc}") from exc

    while True:
        try:
            stdout, stderr = process.communicate(timeout=POLL_INTERVAL_SECONDS)
            return CommandOutput(process.returncode, stdout or "", stderr or "")
        except subprocess.TimeoutExpired:
            if context.cancelled or context.expired:
                reason = "cancelled" if context.cancelled else "timed out"
                _kill_process_group(process)
                try:
                    stdout, stderr = process.communicate(timeout=KILL_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    LOGGER.warning("%s still holds its output pipes after kill", command[0])
                    stdout, stderr = "", ""
                output = CommandOutput(process.returncode, stdout or "", stderr or "")
                raise ExecutionError(f"{command[0]} {reason}", exit_code=process.returncode, output=output.combined)


def resolve_mode(request: RunRequest) -> str:
    if request.mode:
        return request.mode
    if request.image:
        return ScanMode.IMAGE.value
    if request.path:
        return ScanMode.REPO.value
    return ScanMode.URL.value


def _require(request: RunRequest, attribute: str) -> str:
    value = getattr(request, attribute)
    if not value:
        raise ConfigurationError(f"{request.tool.value} scan requires a {attribute}", tool=request.tool.value)
    return value


def _build_trivy(runner: "ToolRunner", request: RunRequest, artifact: Path, session_dir: Path | None) -> Invocation:
    mode = resolve_mode(request)
    if mode == ScanMode.IMAGE.value:
        subcommand, subject = "image", _require(request, "image")
    elif mode == ScanMode.REPO.value:
        subcommand, subject = "fs", _require(request, "path")
    else:
        raise ConfigurationError(f"trivy does not support mode {mode}", tool=request.tool.value)
    command = [
        runner.binary(Tool.TRIVY),
        subcommand,
        "--scanners",
        "vuln",
        "--severity",
        "HIGH,CRITICAL",
        "--format",
        "sarif",
        "-o",
        str(artifact),
        subject,
    ]
    return Invocation(command=command, artifact_path=artifact, raw_format="sarif")


def _build_gitleaks(runner: "ToolRunner", request: RunRequest, artifact: Path, session_dir: Path | None) -> Invocation:
    source = _require(request, "path")
    # leaks are reported through the artifact; keep the exit code for real failures
    command = [
        runner.binary(Tool.GITLEAKS),
        "detect",
        f"--source={source}",
        "--report-format=json",
        f"--report-path={artifact}",
        "--no-banner",
        "--exit-code",
        "0",
    ]
    return Invocation(command=command, artifact_path=artifact, raw_format="json")


def _build_zap(runner: "ToolRunner", request: RunRequest, artifact: Path, session_dir: Path | None) -> Invocation:
    target = _require(request, "target")
    command = [
        runner.binary(Tool.ZAP),
        "-t",
        target,
        "-r",
        str(artifact),
        "-I",
        "-m",
        "5",
        "-d",
        "-z",
        f"-dir {session_dir}",
    ]
    return Invocation(command=command, artifact_path=artifact, raw_format="html", cwd=str(session_dir))


def _build_nuclei(runner: "ToolRunner", request: RunRequest, artifact: Path, session_dir: Path | None) -> Invocation:
    target = _require(request, "target")
    command = [
        runner.binary(Tool.NUCLEI),
        "-u",
        target,
        "-severity",
        "critical,high,medium",
        "-jsonl",
        "-o",
        str(artifact),
        "-rl",
        "50",
        "-c",
        "50",
        "-irr",
    ]
    return Invocation(command=command, artifact_path=artifact, raw_format="jsonl")


def _build_sqlmap(runner: "ToolRunner", request: RunRequest, artifact: Path, session_dir: Path | None) -> Invocation:
    target = _require(request, "target")
    # sqlmap has no report file; its console log on stdout is the artifact
    command = [runner.binary(Tool.SQLMAP), "-u", target, "--batch", "--disable-coloring"]
    return Invocation(command=command, artifact_path=artifact, raw_format="json", artifact_from_stdout=True)


TOOL_SPECS: dict[Tool, ToolSpec] = {
    Tool.TRIVY: ToolSpec(extension="sarif", build=_build_trivy),
    Tool.GITLEAKS: ToolSpec(extension="json", build=_build_gitleaks),
    Tool.ZAP: ToolSpec(extension="html", build=_build_zap, needs_session_dir=True),
    Tool.NUCLEI: ToolSpec(extension="jsonl", build=_build_nuclei),
    Tool.SQLMAP: ToolSpec(extension="json", build=_build_sqlmap),
}


@contextmanager
def session_directory(tool: Tool, parent: Path) -> Iterator[Path]:
    """Private working directory for one invocation, removed on every exit path."""
    parent.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"{tool.value}-session-", dir=parent))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        LOGGER.debug("Removed session directory %s", path)


def artifact_basename(tool: Tool, extension: str) -> str:
    return f"{tool.value}-{uuid.uuid4().hex[:16]}.{extension}"


class ToolRunner(Runner):
    """Runs one scanner subprocess per request and hands back the local artifact."""

    def __init__(
        self,
        artifact_dir: str | Path = "temp",
        binaries: dict[Tool, str] | None = None,
        findings_exit_codes: dict[Tool, frozenset[int]] | None = None,
        env: dict[str, str] | None = None,
    ):
        self.artifact_dir = Path(artifact_dir)
        self.binaries = {**DEFAULT_BINARIES, **(binaries or {})}
        self.findings_exit_codes = {**DEFAULT_FINDINGS_EXIT_CODES, **(findings_exit_codes or {})}
        self.env = env

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "ToolRunner":
        binaries: dict[Tool, str] = {}
        exit_codes: dict[Tool, frozenset[int]] = {}
        for name, options in (settings.get("scanners") or {}).items():
            tool = Tool.parse(name)
            options = options or {}
            if options.get("binary"):
                binaries[tool] = str(options["binary"])
            if options.get("findings_exit_codes") is not None:
                exit_codes[tool] = frozenset(int(code) for code in options["findings_exit_codes"])
        return cls(
            artifact_dir=settings.get("paths", {}).get("artifact_dir", "temp"),
            binaries=binaries,
            findings_exit_codes=exit_codes,
        )

    def binary(self, tool: Tool) -> str:
        return self.binaries[tool]

    def is_failure(self, tool: Tool, exit_code: int) -> bool:
        if exit_code == 0:
            return False
        return exit_code not in self.findings_exit_codes.get(tool, frozenset())

    def spec_for(self, tool: Tool | str) -> tuple[Tool, ToolSpec]:
        try:
            variant = Tool.parse(tool)
        except ValueError as exc:
            raise ConfigurationError(str(exc), tool=str(tool)) from None
        spec = TOOL_SPECS.get(variant)
        if spec is None:
            raise ConfigurationError(f"Unsupported tool: {variant.value}", tool=variant.value)
        return variant, spec

    def build_invocation(self, request: RunRequest, session_dir: Path | None = None) -> Invocation:
        tool, spec = self.spec_for(request.tool)
        artifact = (self.artifact_dir / artifact_basename(tool, spec.extension)).resolve()
        return spec.build(self, replace(request, tool=tool), artifact, session_dir)

    def validate(self, request: RunRequest) -> None:
        # builders only assemble argv, so a dry build has no side effects
        self.build_invocation(request, self.artifact_dir)

    def run(self, request: RunRequest, context: RunContext | None = None) -> RunResult:
        tool, spec = self.spec_for(request.tool)
        self.validate(request)

        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        if spec.needs_session_dir:
            with session_directory(tool, self.artifact_dir) as session_dir:
                return self._execute(tool, self.build_invocation(request, session_dir), context)
        return self._execute(tool, self.build_invocation(request), context)

    def _execute(self, tool: Tool, invocation: Invocation, context: RunContext | None) -> RunResult:
        if not command_exists(invocation.command[0]):
            raise ExecutionError(f"{invocation.command[0]} not found in PATH", tool=tool.value)

        started = time.monotonic()
        try:
            result = run_command(invocation.command, context=context, cwd=invocation.cwd, env=self.env)
        except ExecutionError as exc:
            exc.tool = tool.value
            invocation.artifact_path.unlink(missing_ok=True)
            raise
        duration_ms = int((time.monotonic() - started) * 1000)

        if invocation.artifact_from_stdout and result.stdout.strip():
            invocation.artifact_path.write_text(result.stdout, encoding="utf-8")

        failed = self.is_failure(tool, result.exit_code)
        if not invocation.artifact_path.exists():
            raise ExecutionError(
                f"{tool.value} produced no artifact at {invocation.artifact_path}",
                tool=tool.value,
                exit_code=result.exit_code,
                output=result.combined,
            )
        if failed:
            LOGGER.warning(
                "%s exited with unclassified code %s: %s", tool.value, result.exit_code, result.combined[-2000:]
            )

        return RunResult(
            tool=tool,
            local_artifact_path=str(invocation.artifact_path),
            raw_format=invocation.raw_format,
            exit_code=result.exit_code,
            duration_ms=duration_ms,
            failed=failed,
            output=result.combined,
        )
