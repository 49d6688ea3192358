import threading
import time
from pathlib import Path

import pytest

from secscan.errors import ConfigurationError, ExecutionError
from secscan.models import RunRequest, ScanMode, Tool
from secscan.scanners import (
    DEFAULT_BINARIES,
    DEFAULT_FINDINGS_EXIT_CODES,
    TOOL_SPECS,
    CommandOutput,
    RunContext,
    ToolRunner,
    resolve_mode,
)


def _artifact_from(command):
    for index, arg in enumerate(command):
        if arg.startswith("--report-path="):
            return arg.split("=", 1)[1]
        if arg in ("-o", "-r"):
            return command[index + 1]
    return None


@pytest.fixture
def fake_commands(monkeypatch):
    """Record commands instead of running them; the fake writes an artifact where the tool would."""
    seen = []
    state = {"exit_code": 0, "write": True, "stdout": ""}

    def fake_run_command(command, context=None, cwd=None, env=None):
        seen.append({"command": command, "cwd": cwd})
        artifact = _artifact_from(command)
        if artifact and state["write"]:
            Path(artifact).write_text("[]", encoding="utf-8")
        return CommandOutput(state["exit_code"], state["stdout"], "")

    monkeypatch.setattr("secscan.scanners.command_exists", lambda name: True)
    monkeypatch.setattr("secscan.scanners.run_command", fake_run_command)
    return seen, state


def test_every_tool_is_configured():
    assert set(TOOL_SPECS) == set(Tool)
    assert set(DEFAULT_BINARIES) == set(Tool)
    assert set(DEFAULT_FINDINGS_EXIT_CODES) == set(Tool)


def test_resolve_mode_from_target_fields():
    assert resolve_mode(RunRequest(tool=Tool.TRIVY, image="alpine:3.19")) == ScanMode.IMAGE.value
    assert resolve_mode(RunRequest(tool=Tool.TRIVY, path="/src")) == ScanMode.REPO.value
    assert resolve_mode(RunRequest(tool=Tool.NUCLEI, target="https://example.com")) == ScanMode.URL.value
    assert resolve_mode(RunRequest(tool=Tool.TRIVY, mode="repo", image="alpine")) == "repo"


def test_trivy_image_command(tmp_path, fake_commands):
    seen, _ = fake_commands
    runner = ToolRunner(artifact_dir=tmp_path)
    result = runner.run(RunRequest(tool=Tool.TRIVY, image="alpine:3.19"))

    command = seen[0]["command"]
    assert command[:2] == ["trivy", "image"]
    assert command[command.index("--format") + 1] == "sarif"
    assert command[command.index("--severity") + 1] == "HIGH,CRITICAL"
    assert command[-1] == "alpine:3.19"
    assert result.raw_format == "sarif"
    assert Path(result.local_artifact_path).name.startswith("trivy-")
    assert result.local_artifact_path.endswith(".sarif")


def test_trivy_repo_mode_scans_filesystem(tmp_path, fake_commands):
    seen, _ = fake_commands
    ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.TRIVY, mode="repo", path="/src/app"))
    command = seen[0]["command"]
    assert command[1] == "fs"
    assert command[-1] == "/src/app"


def test_gitleaks_command(tmp_path, fake_commands):
    seen, _ = fake_commands
    result = ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.GITLEAKS, path="/src/app"))
    command = seen[0]["command"]
    assert command[:2] == ["gitleaks", "detect"]
    assert "--source=/src/app" in command
    assert "--report-format=json" in command
    assert f"--report-path={result.local_artifact_path}" in command
    assert result.raw_format == "json"


def test_nuclei_command(tmp_path, fake_commands):
    seen, _ = fake_commands
    result = ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.NUCLEI, target="https://example.com"))
    command = seen[0]["command"]
    assert command[command.index("-u") + 1] == "https://example.com"
    assert command[command.index("-severity") + 1] == "critical,high,medium"
    assert "-jsonl" in command
    assert command[command.index("-rl") + 1] == "50"
    assert command[command.index("-c") + 1] == "50"
    assert "-irr" in command
    assert result.raw_format == "jsonl"


def test_zap_runs_in_private_session_dir(tmp_path, fake_commands):
    seen, _ = fake_commands
    result = ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.ZAP, target="https://example.com"))
    call = seen[0]
    command = call["command"]
    assert command[0] == "zap-baseline.py"
    assert command[command.index("-t") + 1] == "https://example.com"
    assert command[command.index("-z") + 1] == f"-dir {call['cwd']}"
    assert Path(call["cwd"]).name.startswith("zap-session-")
    assert not Path(call["cwd"]).exists()
    assert Path(result.local_artifact_path).exists()
    assert result.raw_format == "html"


def test_sqlmap_artifact_comes_from_stdout(tmp_path, fake_commands):
    seen, state = fake_commands
    state["stdout"] = '{"vulnerabilities": []}'
    result = ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.SQLMAP, target="https://example.com?id=1"))
    assert seen[0]["command"][:3] == ["sqlmap", "-u", "https://example.com?id=1"]
    assert "--batch" in seen[0]["command"]
    assert Path(result.local_artifact_path).read_text(encoding="utf-8") == '{"vulnerabilities": []}'


@pytest.mark.parametrize(
    "tool, exit_code, failed",
    [
        (Tool.TRIVY, 0, False),
        (Tool.TRIVY, 1, False),
        (Tool.TRIVY, 2, True),
        (Tool.ZAP, 2, False),
        (Tool.ZAP, 1, True),
        (Tool.NUCLEI, 1, False),
        (Tool.GITLEAKS, 1, True),
    ],
)
def test_exit_code_classification(tmp_path, fake_commands, tool, exit_code, failed):
    _, state = fake_commands
    state["exit_code"] = exit_code
    request = RunRequest(tool=tool, image="alpine", path="/src", target="https://example.com")
    result = ToolRunner(artifact_dir=tmp_path).run(request)
    assert result.exit_code == exit_code
    assert result.failed is failed


def test_findings_exit_codes_are_configurable(tmp_path, fake_commands):
    _, state = fake_commands
    state["exit_code"] = 7
    runner = ToolRunner(artifact_dir=tmp_path, findings_exit_codes={Tool.GITLEAKS: frozenset({7})})
    assert runner.run(RunRequest(tool=Tool.GITLEAKS, path="/src")).failed is False


def test_missing_artifact_is_an_execution_error(tmp_path, fake_commands):
    _, state = fake_commands
    state["write"] = False
    with pytest.raises(ExecutionError) as info:
        ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.NUCLEI, target="https://example.com"))
    assert info.value.tool == "nuclei"
    assert "produced no artifact" in str(info.value)


def test_missing_binary(tmp_path, monkeypatch):
    monkeypatch.setattr("secscan.scanners.command_exists", lambda name: False)
    with pytest.raises(ExecutionError) as info:
        ToolRunner(artifact_dir=tmp_path).run(RunRequest(tool=Tool.TRIVY, image="alpine"))
    assert "not found in PATH" in str(info.value)


def test_unsupported_tool_has_no_side_effects(tmp_path, monkeypatch):
    def explode(*args, **kwargs):
        raise AssertionError("no process should be started")

    monkeypatch.setattr("secscan.scanners.run_command", explode)
    artifact_dir = tmp_path / "artifacts"
    with pytest.raises(ConfigurationError):
        ToolRunner(artifact_dir=artifact_dir).run(RunRequest(tool="burp", target="https://example.com"))
    assert not artifact_dir.exists()


def test_missing_target_field_is_a_configuration_error(tmp_path, monkeypatch):
    monkeypatch.setattr("secscan.scanners.command_exists", lambda name: True)
    artifact_dir = tmp_path / "artifacts"
    with pytest.raises(ConfigurationError):
        ToolRunner(artifact_dir=artifact_dir).run(RunRequest(tool=Tool.NUCLEI))
    with pytest.raises(ConfigurationError):
        ToolRunner(artifact_dir=artifact_dir).run(RunRequest(tool=Tool.TRIVY, mode="url", target="https://x"))
    assert not artifact_dir.exists()


def test_from_settings_overrides_binaries_and_exit_codes(tmp_path):
    settings = {
        "paths": {"artifact_dir": str(tmp_path)},
        "scanners": {
            "trivy": {"binary": "/opt/trivy/bin/trivy"},
            "gitleaks": {"findings_exit_codes": [1]},
            "zap": None,
        },
    }
    runner = ToolRunner.from_settings(settings)
    assert runner.binary(Tool.TRIVY) == "/opt/trivy/bin/trivy"
    assert runner.binary(Tool.ZAP) == "zap-baseline.py"
    assert runner.is_failure(Tool.GITLEAKS, 1) is False
    assert runner.artifact_dir == tmp_path


def test_from_settings_rejects_unknown_scanner():
    with pytest.raises(ValueError):
        ToolRunner.from_settings({"scanners": {"burp": {}}})


# real subprocesses below; the scripts stand in for the scanner binaries


def test_trivy_findings_exit_code_with_real_process(tmp_path, fake_scanner, fixtures_dir):
    binary = fake_scanner("trivy", fixture="trivy.sarif", exit_code=1)
    runner = ToolRunner(artifact_dir=tmp_path / "artifacts", binaries={Tool.TRIVY: binary})
    result = runner.run(RunRequest(tool=Tool.TRIVY, image="alpine:3.19"))
    assert result.exit_code == 1
    assert result.failed is False
    assert Path(result.local_artifact_path).read_bytes() == (fixtures_dir / "trivy.sarif").read_bytes()
    assert result.duration_ms >= 0


def test_zap_session_dir_removed_after_failure(tmp_path, fake_scanner):
    binary = fake_scanner("zap", fixture="zap.html", exit_code=3)
    artifact_dir = tmp_path / "artifacts"
    runner = ToolRunner(artifact_dir=artifact_dir, binaries={Tool.ZAP: binary})
    result = runner.run(RunRequest(tool=Tool.ZAP, target="https://example.com"))
    assert result.failed is True
    session = Path((artifact_dir / "cwd.txt").read_text(encoding="utf-8").strip())
    assert session.name.startswith("zap-session-")
    assert not session.exists()
    assert [p.name for p in artifact_dir.iterdir() if p.is_dir()] == []


def test_cancel_kills_the_process_and_removes_session(tmp_path, fake_scanner):
    binary = fake_scanner("zap", body='pwd > "$CWD_MARK"\nexec sleep 30\n')
    artifact_dir = tmp_path / "artifacts"
    marker = tmp_path / "cwd.txt"
    runner = ToolRunner(
        artifact_dir=artifact_dir,
        binaries={Tool.ZAP: binary},
        env={"CWD_MARK": str(marker), "PATH": "/usr/bin:/bin"},
    )
    context = RunContext()
    timer = threading.Timer(0.5, context.cancel)
    timer.start()
    try:
        with pytest.raises(ExecutionError) as info:
            runner.run(RunRequest(tool=Tool.ZAP, target="https://example.com"), context)
    finally:
        timer.cancel()
    assert "cancelled" in str(info.value)
    assert info.value.tool == "zap"
    assert not Path(marker.read_text(encoding="utf-8").strip()).exists()
    assert list(artifact_dir.iterdir()) == []


def test_timeout_kills_the_process(tmp_path, fake_scanner):
    binary = fake_scanner("nuclei", body="exec sleep 30\n")
    runner = ToolRunner(artifact_dir=tmp_path / "artifacts", binaries={Tool.NUCLEI: binary})
    with pytest.raises(ExecutionError) as info:
        runner.run(RunRequest(tool=Tool.NUCLEI, target="https://example.com"), RunContext(timeout=0.5))
    assert "timed out" in str(info.value)
    assert list((tmp_path / "artifacts").iterdir()) == []


def test_timeout_reaches_children_holding_the_pipes(tmp_path, fake_scanner):
    binary = fake_scanner("nuclei", body="sleep 30\n")
    runner = ToolRunner(artifact_dir=tmp_path / "artifacts", binaries={Tool.NUCLEI: binary})
    started = time.monotonic()
    with pytest.raises(ExecutionError) as info:
        runner.run(RunRequest(tool=Tool.NUCLEI, target="https://example.com"), RunContext(timeout=0.5))
    assert "timed out" in str(info.value)
    assert time.monotonic() - started < 5


def test_cancel_reaches_children_holding_the_pipes(tmp_path, fake_scanner):
    binary = fake_scanner("nuclei", body="sleep 30 &\nwait\n")
    runner = ToolRunner(artifact_dir=tmp_path / "artifacts", binaries={Tool.NUCLEI: binary})
    context = RunContext()
    timer = threading.Timer(0.5, context.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(ExecutionError) as info:
            runner.run(RunRequest(tool=Tool.NUCLEI, target="https://example.com"), context)
    finally:
        timer.cancel()
    assert "cancelled" in str(info.value)
    assert time.monotonic() - started < 5
