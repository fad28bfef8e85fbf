import pytest
from unittest.mock import AsyncMock, patch
from fakes import descriptor
from control_api import endpoints
from control_api.config import settings
from control_api.constants import LABEL_COMPONENT
from control_api.exceptions import ConflictError


def data(fake_kube):
    return fake_kube.config_maps[settings.endpoints_config_map].data


@pytest.mark.asyncio
async def test_upsert_creates_missing_config_map(fake_kube):
    await endpoints.upsert(descriptor("ftp", service_name="file-sim-ftp", port=21, external_port=30021))

    config_map = fake_kube.config_maps[settings.endpoints_config_map]
    assert config_map.metadata.labels[LABEL_COMPONENT] == "service-discovery"
    assert data(fake_kube)["FTP_FTP"] == f"file-sim-ftp.{settings.namespace}.svc.cluster.local:21"
    assert data(fake_kube)["FTP_FTP_NODEPORT"] == "30021"
    assert data(fake_kube)["SERVER_COUNT"] == "1"
    assert "UPDATED_AT" in data(fake_kube)


@pytest.mark.asyncio
async def test_remove_entries(fake_kube):
    ftp = descriptor("ftp", external_port=30021)
    nas = descriptor("nas-input-1", "NFS", port=2049)
    await endpoints.upsert(ftp)
    await endpoints.upsert(nas)
    assert data(fake_kube)["SERVER_COUNT"] == "2"

    await endpoints.remove(ftp)
    assert "FTP_FTP" not in data(fake_kube)
    assert "FTP_FTP_NODEPORT" not in data(fake_kube)
    assert "NFS_NAS_INPUT_1" in data(fake_kube)
    assert data(fake_kube)["SERVER_COUNT"] == "1"

    fake_kube.calls.clear()
    await endpoints.remove(ftp)
    assert fake_kube.mutations == []


@pytest.mark.asyncio
async def test_conflict_is_retried(fake_kube):
    await endpoints.upsert(descriptor("ftp"))
    with patch(
        "control_api.endpoints.k8s.replace_config_map",
        AsyncMock(side_effect=[ConflictError("the object has been modified"), None]),
    ) as replace:
        await endpoints.upsert(descriptor("sftp", "SFTP", port=22))
    assert replace.await_count == 2


@pytest.mark.asyncio
async def test_rebuild_only_ready_servers(fake_kube):
    await endpoints.upsert(descriptor("stale"))
    await endpoints.rebuild(
        [
            descriptor("ftp"),
            descriptor("sftp", "SFTP", port=22, pod_ready=False, pod_phase="Pending"),
        ]
    )
    assert "FTP_FTP" in data(fake_kube)
    assert "FTP_STALE" not in data(fake_kube)
    assert "SFTP_SFTP" not in data(fake_kube)
    assert data(fake_kube)["SERVER_COUNT"] == "1"


@pytest.mark.asyncio
async def test_rebuild_skipped_when_unchanged(fake_kube):
    servers = [descriptor("ftp", external_port=30021)]
    await endpoints.rebuild(servers)
    fake_kube.calls.clear()
    await endpoints.rebuild(servers)
    assert fake_kube.mutations == []
