import os
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from constants import NAMESPACE, RELEASE_PREFIX, OWNER_DEPLOYMENT, MAX_DYNAMIC_SERVERS


def pytest_configure(config):
    """Set up environment variables before any modules are imported."""
    os.environ["FILESIM_NAMESPACE"] = NAMESPACE
    os.environ["FILESIM_RELEASE_PREFIX"] = RELEASE_PREFIX
    os.environ["FILESIM_OWNER_DEPLOYMENT"] = OWNER_DEPLOYMENT
    os.environ["MAX_DYNAMIC_SERVERS"] = str(MAX_DYNAMIC_SERVERS)
    os.environ["DISCOVERY_INTERVAL"] = "1"
    os.environ["HEALTH_INTERVAL"] = "0.5"
    os.environ["HEALTH_PROBE_TIMEOUT"] = "0.5"
    os.environ["BROADCAST_SEND_TIMEOUT"] = "0.5"


@pytest.fixture
def fake_kube():
    """In-memory kubernetes API patched in for every client factory."""
    from fakes import FakeKube

    fake = FakeKube()
    with (
        patch("control_api.k8s.k8s_core_client", return_value=fake),
        patch("control_api.k8s.k8s_app_client", return_value=fake),
        patch("control_api.k8s.k8s_batch_client", return_value=fake),
    ):
        yield fake


@pytest.fixture
def discovery(fake_kube):
    from control_api.discovery import Discovery

    return Discovery()


@pytest.fixture
def manager(discovery):
    from control_api.server.manager import ServerManager

    return ServerManager(discovery)


@pytest.fixture
def fake_connector():
    """TCP connector that always succeeds without touching the network."""

    async def _connect(host, port):
        writer = MagicMock()
        writer.close = MagicMock()
        writer.wait_closed = AsyncMock()
        return asyncio.StreamReader(), writer

    return _connect


@pytest.fixture
def mock_client_session():
    """Mock aiohttp ClientSession for testing."""

    def _session_factory(mock_response):
        mock_session = MagicMock()
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        mock_cm = MagicMock()
        mock_cm.__aenter__ = AsyncMock(return_value=mock_response)
        mock_cm.__aexit__ = AsyncMock(return_value=None)
        mock_session.get = MagicMock(return_value=mock_cm)
        mock_session.post = MagicMock(return_value=mock_cm)
        mock_session.delete = MagicMock(return_value=mock_cm)

        return mock_session

    return _session_factory


@pytest.fixture
def mock_response():
    """Mock response from the API."""

    def _response(status=200, payload=None, text=""):
        mock_resp = AsyncMock()
        mock_resp.status = status
        mock_resp.json = AsyncMock(return_value=payload)
        mock_resp.text = AsyncMock(return_value=text)
        mock_resp.raise_for_status = MagicMock()
        return mock_resp

    return _response
