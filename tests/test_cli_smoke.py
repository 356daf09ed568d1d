import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "pileupcall", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "PileupCall" in cp.stdout or "pileupcall" in cp.stdout.lower()
