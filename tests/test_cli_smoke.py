import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "gmmrecal", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "gmmrecal" in cp.stdout.lower()
    for cmd in ("recalibrate", "apply", "make-toy-data", "quickstart"):
        assert cmd in cp.stdout


def test_cli_version() -> None:
    from gmmrecal import __version__

    cp = subprocess.run(
        [sys.executable, "-m", "gmmrecal", "--version"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert __version__ in cp.stdout
