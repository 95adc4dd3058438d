import os
import socket
import sys
from pathlib import Path

import pytest
from loguru import logger

from tests.toolkit import FakeTool
from uprof_exporter.core.config import Settings
from uprof_exporter.core.measurements import FULL


@pytest.fixture
def full_values():
    return [float(i) for i in range(1, len(FULL) + 1)]


@pytest.fixture
def compact_values():
    return [12.5, 8.25, 4.25, 31.0, 7.5, 2.0]


@pytest.fixture
def settings(tmp_path):
    return Settings(output_path=str(tmp_path / "uprof" / "uprof_metrics.csv"), interval=0.01)


@pytest.fixture
def compact_settings(tmp_path):
    return Settings(
        output_path=str(tmp_path / "uprof_metrics.csv"), profile="compact", interval=0.01
    )


@pytest.fixture
def fake_tool(settings):
    Path(settings.output_path).parent.mkdir(parents=True, exist_ok=True)
    return FakeTool(settings.output_path)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep node name and exporter overrides from the host out of tests."""
    monkeypatch.delenv("NODE_NAME", raising=False)
    for name in list(os.environ):
        if name.startswith("UPROF_EXPORTER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _block_network(request, monkeypatch):
    """Block outbound network access for all tests unless marked with @pytest.mark.network."""
    if request.node.get_closest_marker("network"):
        return

    def deny(*_args, **_kwargs):  # pragma: no cover - defensive
        raise RuntimeError(
            "Network access is disabled during tests. Use -k network to enable."
        )

    # Block high-level socket helpers
    monkeypatch.setattr(socket, "create_connection", deny, raising=True)

    # Block low-level connect on socket objects
    try:
        monkeypatch.setattr(socket.socket, "connect", deny, raising=True)
    except Exception:
        # Some platforms may not allow attribute patching; best-effort
        pass


@pytest.fixture(autouse=True)
def _restore_logging():
    """CLI commands replace loguru's sinks; put the default stderr sink back."""
    yield
    logger.remove()
    logger.add(sys.stderr)
