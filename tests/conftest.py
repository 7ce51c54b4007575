import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from fastapi.testclient import TestClient  # noqa: E402

from src.orbitmate.api.main import create_app  # noqa: E402
from src.orbitmate.config import Settings  # noqa: E402
from src.orbitmate.infrastructure.message_store import InMemoryMessageStore  # noqa: E402
from src.orbitmate.services.broadcast_hub import BroadcastHub  # noqa: E402
from src.orbitmate.services.telemetry_logger import TelemetryLogger  # noqa: E402

from tests.utils import FakeAdapter, RecordingMirror, make_registry  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(default_provider="fake", ai_log_dir=str(tmp_path / "logs"))


@pytest.fixture
def store():
    return InMemoryMessageStore()


@pytest.fixture
def telemetry(tmp_path):
    logger = TelemetryLogger(tmp_path / "logs")
    logger.open()
    yield logger
    logger.close()


@pytest.fixture
def mirror():
    return RecordingMirror()


@pytest.fixture
def hub(mirror):
    return BroadcastHub(mirror=mirror)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def app(settings, store, telemetry, hub, fake_adapter):
    return create_app(settings, store=store, providers=make_registry(fake_adapter), telemetry=telemetry, hub=hub)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
