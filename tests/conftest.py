"""Shared pytest setup: serial port selection for hardware tests."""

import os
from pathlib import Path

import pytest

ENV_FILE = Path(__file__).parent.parent / ".env"


def _read_env_file(path: Path) -> None:
    """Export KEY=VALUE lines from path without overriding the environment."""
    if not path.exists():
        return
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


# PETWANT_SERIAL_PORT may live in .env on the Pi
_read_env_file(ENV_FILE)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register --serial-port for the e2e tests."""
    parser.addoption(
        "--serial-port",
        action="store",
        default=None,
        help="UART the feeder main board is wired to, e.g. /dev/serial0 or /dev/ttyUSB0",
    )


@pytest.fixture
def serial_port(request: pytest.FixtureRequest) -> str | None:
    """Serial port from --serial-port, else PETWANT_SERIAL_PORT, else None."""
    return request.config.getoption("--serial-port") or os.environ.get("PETWANT_SERIAL_PORT")
