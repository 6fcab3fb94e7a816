import shlex
import socket
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def python_command(code: str) -> str:
    """Shell command running ``code`` with the current interpreter."""
    return shlex.join([sys.executable, "-c", code])


def listening_server(port: int) -> str:
    return python_command(
        "import socket, time\n"
        "s = socket.socket()\n"
        "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
        f"s.bind(('127.0.0.1', {port}))\n"
        "s.listen()\n"
        "time.sleep(60)\n"
    )


def touch_and_exit(marker: Path, code: int = 0) -> str:
    return python_command(
        f"import pathlib, sys; pathlib.Path({str(marker)!r}).touch(); sys.exit({code})"
    )


@pytest.fixture
def tmp_status_dir(tmp_path, monkeypatch):
    """Set up temporary launch status directory."""
    monkeypatch.setenv("LAUNCHER_STATUS_DIR", str(tmp_path / "launches"))
    return tmp_path / "launches"


@pytest.fixture
def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
