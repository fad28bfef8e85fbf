import pytest
from fakes import api_error, static_server
from kubernetes.client import V1Deployment, V1DeploymentSpec, V1LabelSelector, V1ObjectMeta, V1PodTemplateSpec, V1PodSpec, V1Container
from control_api.config import settings
from control_api.constants import ANNOTATION_SERVER_NAME, APP_NAME, LABEL_APP_NAME, LABEL_COMPONENT
from control_api.discovery import detect_protocol, parse_static_name
from control_api.exceptions import NotFoundError, OrchestrationUnavailable
from constants import STATIC_NAS_NAME


def seed_static_servers(fake_kube):
    fake_kube.add_static_server(
        *static_server("ftp", "ftp", 21, node_port=30021, env={"FTP_USER": "ftpuser", "FTP_PASS": "ftppass"})
    )
    fake_kube.add_static_server(
        *static_server("sftp", "sftp", 22, node_port=30022, args=["sftpuser:sftppass:1000:1000"])
    )
    fake_kube.add_static_server(*static_server(STATIC_NAS_NAME, "nas", 2049, node_port=32150, sub_path="input"))


@pytest.mark.parametrize(
    "deployment_name,expected",
    [
        ("file-sim-file-simulator-nas-input-1", "nas-input-1"),
        ("file-sim-file-simulator-nas-output-3", "nas-output-3"),
        ("file-sim-file-simulator-nas-backup", "nas-backup"),
        ("file-sim-file-simulator-sftp", "sftp"),
        ("file-sim-file-simulator-ftp", "ftp"),
        ("file-sim-file-simulator-webdav", "webdav"),
        ("something-else", "something-else"),
    ],
)
def test_parse_static_name(deployment_name, expected):
    assert parse_static_name(deployment_name) == expected


@pytest.mark.parametrize(
    "value,expected",
    [
        ("sftp", "SFTP"),
        ("ftp", "FTP"),
        ("file-sim-nas-input-1", "NFS"),
        ("webdav", "WebDAV"),
        ("http", "HTTP"),
        ("management", "Management"),
        ("kafka", None),
        (None, None),
    ],
)
def test_detect_protocol(value, expected):
    assert detect_protocol(value) == expected


@pytest.mark.asyncio
async def test_discovers_static_servers(fake_kube, discovery):
    seed_static_servers(fake_kube)
    servers = {server.name: server for server in await discovery.discover_servers(refresh=True)}

    assert set(servers) == {"ftp", "sftp", STATIC_NAS_NAME}
    assert servers["ftp"].protocol == "FTP"
    assert servers["ftp"].credentials.username == "ftpuser"
    assert servers["sftp"].credentials.password == "sftppass"
    assert servers[STATIC_NAS_NAME].protocol == "NFS"
    assert servers[STATIC_NAS_NAME].directory == "input"
    assert servers[STATIC_NAS_NAME].host_directory == f"{settings.host_base_path}\\input"
    for server in servers.values():
        assert not server.is_dynamic
        assert server.managed_by == "platform-template"
        assert server.pod_ready
        assert server.pod_phase == "Running"
    assert servers["sftp"].external_port == 30022
    assert servers["sftp"].node_ports == (30022,)


@pytest.mark.asyncio
async def test_control_plane_is_not_listed(fake_kube, discovery):
    servers = await discovery.discover_servers(refresh=True)
    assert settings.owner_deployment in fake_kube.deployments
    assert servers == ()


@pytest.mark.asyncio
async def test_names_unique_case_insensitive(fake_kube, discovery):
    seed_static_servers(fake_kube)
    deployment, service = static_server("sftp-2", "sftp", 22)
    deployment.metadata.annotations = {ANNOTATION_SERVER_NAME: "SFTP"}
    fake_kube.add_static_server(deployment, service)

    servers = await discovery.discover_servers(refresh=True)
    names = [server.name.lower() for server in servers]
    assert len(names) == len(set(names))
    assert len(servers) == 3


@pytest.mark.asyncio
async def test_workload_without_service_is_excluded(fake_kube, discovery):
    deployment, _ = static_server("webdav", "webdav", 80)
    fake_kube.deployments[deployment.metadata.name] = deployment
    assert await discovery.discover_servers(refresh=True) == ()


@pytest.mark.asyncio
async def test_unknown_protocol_is_skipped(fake_kube, discovery):
    labels = {LABEL_APP_NAME: APP_NAME, LABEL_COMPONENT: "kafka"}
    fake_kube.deployments["kafka"] = V1Deployment(
        metadata=V1ObjectMeta(name="kafka", labels=labels),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"app": "kafka"}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=labels),
                spec=V1PodSpec(containers=[V1Container(name="kafka")]),
            ),
        ),
    )
    assert await discovery.discover_servers(refresh=True) == ()


@pytest.mark.asyncio
async def test_unreachable_api_keeps_previous_snapshot(fake_kube, discovery):
    seed_static_servers(fake_kube)
    previous = await discovery.discover_servers(refresh=True)
    assert len(previous) == 3

    fake_kube.fail["list_namespaced_pod"] = api_error(503, "Service Unavailable")
    assert await discovery.discover_servers(refresh=True) is previous
    assert discovery.failures == 1
    with pytest.raises(OrchestrationUnavailable):
        await discovery.refresh()
    assert discovery.failures == 2
    assert discovery.snapshot is previous

    del fake_kube.fail["list_namespaced_pod"]
    await discovery.refresh()
    assert discovery.failures == 0


def test_backoff_is_capped(discovery):
    assert discovery.next_delay() == settings.discovery_interval
    discovery.failures = 3
    assert discovery.next_delay() == min(settings.discovery_interval * 8, settings.discovery_max_backoff)
    discovery.failures = 30
    assert discovery.next_delay() == settings.discovery_max_backoff


@pytest.mark.asyncio
async def test_get_server(fake_kube, discovery):
    seed_static_servers(fake_kube)
    server = await discovery.get_server(STATIC_NAS_NAME.upper(), refresh=True)
    assert server.name == STATIC_NAS_NAME
    with pytest.raises(NotFoundError):
        await discovery.get_server("missing")


@pytest.mark.asyncio
async def test_get_server_with_refresh_fails_when_api_down(fake_kube, discovery):
    seed_static_servers(fake_kube)
    await discovery.refresh()

    fake_kube.fail["list_namespaced_deployment"] = api_error(503, "Service Unavailable")
    with pytest.raises(OrchestrationUnavailable):
        await discovery.get_server(STATIC_NAS_NAME, refresh=True)
    with pytest.raises(OrchestrationUnavailable):
        await discovery.get_server("missing", refresh=True)
    # Read paths still serve the last good snapshot.
    assert (await discovery.get_server(STATIC_NAS_NAME)).name == STATIC_NAS_NAME
    assert len(await discovery.discover_servers(refresh=True)) == 3
