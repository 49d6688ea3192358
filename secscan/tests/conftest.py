from pathlib import Path

import pytest

FIXTURES = Path(__file__).parent / "fixtures"

# Finds the report path the way each scanner is told about it, copies a fixture
# there and records the working directory next to it.
_COPY_REPORT = """out=""
prev=""
for arg in "$@"; do
  case "$arg" in --report-path=*) out="${{arg#--report-path=}}" ;; esac
  if [ "$prev" = "-o" ] || [ "$prev" = "-r" ]; then out="$arg"; fi
  prev="$arg"
done
pwd > "$(dirname "$out")/cwd.txt"
cp "{fixture}" "$out"
exit {exit_code}
"""


@pytest.fixture
def fixtures_dir():
    return FIXTURES


@pytest.fixture
def fake_scanner(tmp_path):
    """Write an executable shell script that stands in for a scanner binary.

    With ``fixture`` the script copies that report to the artifact path it was
    given; otherwise ``body`` is used verbatim.
    """

    def make(name, fixture=None, exit_code=0, body=None):
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        if body is None:
            body = _COPY_REPORT.format(fixture=FIXTURES / fixture, exit_code=exit_code)
        script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        script.chmod(0o755)
        return str(script)

    return make
