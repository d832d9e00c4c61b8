import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "asmreadcheck", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "asmreadcheck" in cp.stdout.lower()
    assert "scan" in cp.stdout
