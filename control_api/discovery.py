"""
Discovery: rebuilds the list of protocol servers from the cluster.
"""

import asyncio
import traceback
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from loguru import logger
from kubernetes.client import V1Container, V1Deployment, V1Pod, V1Service
from control_api.config import settings
from control_api.constants import (
    ANNOTATION_DIRECTORY,
    ANNOTATION_SERVER_NAME,
    APP_SELECTOR,
    CONTROL_PLANE_COMPONENT,
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    MANAGED_BY_CONTROL_PLANE,
    PROTOCOL_MAPPINGS,
)
from control_api.exceptions import NotFoundError
from control_api.server.schemas import ServerCredentials, ServerDescriptor
import control_api.k8s as k8s


def detect_protocol(value: Optional[str]) -> Optional[str]:
    """
    Substring match against the protocol table, most specific keys first.
    """
    if not value:
        return None
    value = value.lower()
    for key, protocol in PROTOCOL_MAPPINGS:
        if key in value:
            return protocol
    return None


def parse_static_name(deployment_name: str) -> str:
    """
    Derive a server name from a template-managed deployment name, e.g.
    file-sim-file-simulator-nas-input-1 -> nas-input-1, file-sim-file-simulator-sftp -> sftp
    """
    parts = deployment_name.split("-")
    for idx, part in enumerate(parts[:-1]):
        if part != "nas":
            continue
        kind = parts[idx + 1]
        if kind == "backup":
            return "nas-backup"
        if idx + 2 < len(parts) and parts[idx + 2].isdigit():
            return f"nas-{kind}-{parts[idx + 2]}"
    for key, _ in PROTOCOL_MAPPINGS:
        if any(part.lower() == key for part in parts):
            return key
    return deployment_name


def _env(container: V1Container) -> Dict[str, str]:
    return {var.name: var.value for var in container.env or [] if var.value is not None}


def extract_credentials(protocol: str, deployment: V1Deployment) -> Optional[ServerCredentials]:
    """
    Pull the connection credentials out of the first container's env/args.
    """
    containers = deployment.spec.template.spec.containers or []
    if not containers:
        return None
    container = containers[0]
    env = _env(container)
    args = container.args or []
    if protocol == "FTP":
        if not env.get("FTP_USER"):
            return None
        return ServerCredentials(
            username=env["FTP_USER"],
            password=env.get("FTP_PASS", ""),
            note="FTP credentials from deployment environment",
        )
    if protocol == "SFTP":
        for arg in args:
            parts = arg.split(":")
            if len(parts) >= 2:
                return ServerCredentials(
                    username=parts[0], password=parts[1], note="SFTP credentials from container args"
                )
        return None
    if protocol == "SMB":
        for flag, value in zip(args, args[1:]):
            parts = value.split(";")
            if flag == "-u" and len(parts) >= 2:
                return ServerCredentials(
                    username=parts[0], password=parts[1], note="SMB credentials from container args"
                )
        return None
    if protocol == "S3":
        if not env.get("MINIO_ROOT_USER"):
            return None
        return ServerCredentials(
            username=env["MINIO_ROOT_USER"],
            password=env.get("MINIO_ROOT_PASSWORD", ""),
            note="MinIO root credentials from deployment environment",
        )
    if protocol == "WebDAV":
        if env.get("USERNAME"):
            return ServerCredentials(
                username=env["USERNAME"],
                password=env.get("PASSWORD", ""),
                note="WebDAV credentials from deployment environment",
            )
        return ServerCredentials(note="WebDAV (no credentials found)")
    if protocol == "HTTP":
        return ServerCredentials(note="HTTP server (read-only, no authentication)")
    if protocol == "Management":
        return ServerCredentials(
            username="admin", password="admin123", note="FileBrowser UI credentials"
        )
    if protocol == "NFS":
        return ServerCredentials(note="NFS uses anonymous access (no authentication required)")
    return None


def _sub_paths(containers, volume_name: Optional[str] = None) -> List[str]:
    return [
        mount.sub_path
        for container in containers or []
        for mount in container.volume_mounts or []
        if mount.sub_path and (volume_name is None or mount.name == volume_name)
    ]


def resolve_directory(protocol: str, name: str, deployment: V1Deployment) -> Optional[str]:
    """
    Relative directory on the shared volume ("" is the volume root, None means the
    server does not use the shared volume).
    """
    annotations = deployment.metadata.annotations or {}
    if ANNOTATION_DIRECTORY in annotations:
        return annotations[ANNOTATION_DIRECTORY]
    pod_spec = deployment.spec.template.spec
    if protocol == "NFS":
        sub_paths = _sub_paths(pod_spec.init_containers, "windows-data") or _sub_paths(
            pod_spec.containers
        )
        if sub_paths:
            return sub_paths[0]
        for preset in ("input", "output", "backup"):
            if preset in name:
                return preset
        return ""
    if protocol in ("FTP", "SFTP"):
        sub_paths = _sub_paths(pod_spec.containers, "data")
        return sub_paths[0] if sub_paths else ""
    if protocol == "S3":
        return None
    return ""


def host_directory(directory: Optional[str]) -> Optional[str]:
    if directory is None:
        return None
    if not directory:
        return settings.host_base_path
    return "\\".join([settings.host_base_path] + directory.split("/"))


def is_dynamic(deployment: V1Deployment) -> bool:
    labels = deployment.metadata.labels or {}
    if labels.get(LABEL_MANAGED_BY) == MANAGED_BY_CONTROL_PLANE:
        return True
    return any(
        ref.kind == "Deployment" and ref.name == settings.owner_deployment
        for ref in deployment.metadata.owner_references or []
    )


def find_service(deployment: V1Deployment, services: List[V1Service]) -> Optional[V1Service]:
    """
    Service whose selector matches the pod template; same-named service first,
    then the most specific selector.
    """
    template_labels = deployment.spec.template.metadata.labels or {}
    matches = [
        service
        for service in services
        if k8s.selector_matches(service.spec.selector, template_labels)
    ]
    if not matches:
        return None
    for service in matches:
        if service.metadata.name == deployment.metadata.name:
            return service
    return max(matches, key=lambda service: len(service.spec.selector))


def find_pod(deployment: V1Deployment, pods: List[V1Pod]) -> Optional[V1Pod]:
    """
    Pick the pod to report on, preferring live over terminating and ready over not.
    """
    match_labels = deployment.spec.selector.match_labels if deployment.spec.selector else None
    candidates = [pod for pod in pods if k8s.selector_matches(match_labels, pod.metadata.labels)]
    if not candidates:
        return None
    return sorted(
        candidates,
        key=lambda pod: (
            pod.metadata.deletion_timestamp is not None,
            not k8s.is_pod_ready(pod),
            pod.metadata.name,
        ),
    )[0]


def build_descriptor(
    deployment: V1Deployment, services: List[V1Service], pods: List[V1Pod]
) -> Optional[ServerDescriptor]:
    """
    Turn one deployment (plus its service and pod) into a descriptor, or None when it
    is not a protocol server we can expose.
    """
    labels = deployment.metadata.labels or {}
    deployment_name = deployment.metadata.name
    if labels.get(LABEL_COMPONENT) == CONTROL_PLANE_COMPONENT or "control-api" in deployment_name:
        return None
    protocol = detect_protocol(labels.get(LABEL_COMPONENT)) or detect_protocol(deployment_name)
    if not protocol:
        logger.debug(f"Skipping deployment {deployment_name}: unknown protocol")
        return None
    service = find_service(deployment, services)
    if not service:
        logger.warning(f"No service found for deployment {deployment_name}, excluding it")
        return None

    dynamic = is_dynamic(deployment)
    annotations = deployment.metadata.annotations or {}
    if dynamic and labels.get(LABEL_INSTANCE):
        name = labels[LABEL_INSTANCE]
    else:
        name = annotations.get(ANNOTATION_SERVER_NAME) or parse_static_name(deployment_name)

    replicas = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    pod = find_pod(deployment, pods)
    if pod:
        phase = (pod.status.phase if pod.status else None) or "Unknown"
        ready = k8s.is_pod_ready(pod) and pod.metadata.deletion_timestamp is None
    else:
        phase = "Stopped" if replicas == 0 else "Pending"
        ready = False

    ports = service.spec.ports or []
    directory = resolve_directory(protocol, name, deployment)
    return ServerDescriptor(
        name=name,
        protocol=protocol,
        pod_name=pod.metadata.name if pod else "",
        deployment_name=deployment_name,
        service_name=service.metadata.name,
        cluster_address=service.spec.cluster_ip or "",
        port=ports[0].port if ports else 0,
        external_port=ports[0].node_port if ports else None,
        node_ports=tuple(port.node_port for port in ports if port.node_port),
        pod_phase=phase,
        pod_ready=ready,
        replicas=replicas,
        is_dynamic=dynamic,
        managed_by=MANAGED_BY_CONTROL_PLANE if dynamic else "platform-template",
        directory=directory,
        host_directory=host_directory(directory),
        credentials=extract_credentials(protocol, deployment),
    )


class Discovery:
    """
    Holds the latest snapshot of servers, refreshed by a background loop.

    The snapshot is an immutable tuple swapped by reference, so readers never see
    a half-built list. When the API is unreachable the previous snapshot is kept.
    """

    def __init__(self, on_refresh: Optional[Callable[[Tuple[ServerDescriptor, ...]], Awaitable]] = None):
        self._snapshot: Tuple[ServerDescriptor, ...] = ()
        self._on_refresh = on_refresh
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self.failures = 0
        self.refreshed_at: Optional[datetime] = None

    @property
    def snapshot(self) -> Tuple[ServerDescriptor, ...]:
        return self._snapshot

    async def refresh(self) -> Tuple[ServerDescriptor, ...]:
        """
        Read the cluster and replace the snapshot, raising when the API can't be read.
        """
        async with self._lock:
            try:
                deployments, services, pods = await asyncio.gather(
                    k8s.list_deployments(APP_SELECTOR),
                    k8s.list_services(APP_SELECTOR),
                    k8s.list_pods(APP_SELECTOR),
                )
            except Exception:
                self.failures += 1
                raise
            logger.debug(
                f"Found {len(deployments)} deployments, {len(services)} services, {len(pods)} pods"
            )
            descriptors = []
            for deployment in deployments:
                try:
                    descriptor = build_descriptor(deployment, services, pods)
                except Exception as exc:
                    logger.error(
                        f"Failed to build descriptor for deployment {deployment.metadata.name}: {exc}"
                    )
                    continue
                if descriptor:
                    descriptors.append(descriptor)

            # Template-managed servers win name clashes.
            descriptors.sort(key=lambda d: (d.is_dynamic, d.name))
            seen = set()
            unique = []
            for descriptor in descriptors:
                key = descriptor.name.lower()
                if key in seen:
                    logger.warning(
                        f"Duplicate server name {descriptor.name} from service "
                        f"{descriptor.service_name}, dropping it"
                    )
                    continue
                seen.add(key)
                unique.append(descriptor)
            self._snapshot = tuple(unique)
            self.failures = 0
            self.refreshed_at = datetime.now(timezone.utc)
            logger.info(f"Discovered {len(self._snapshot)} protocol servers")
            return self._snapshot

    async def discover_servers(self, refresh: bool = False) -> Tuple[ServerDescriptor, ...]:
        """
        Return the current snapshot, optionally reading through to the cluster first;
        a failed read falls back to the last good snapshot.
        """
        if refresh:
            try:
                return await self.refresh()
            except Exception as exc:
                logger.warning(f"Discovery refresh failed, serving previous snapshot: {exc}")
        return self._snapshot

    def find(self, name: str) -> Optional[ServerDescriptor]:
        wanted = name.lower()
        for server in self._snapshot:
            if server.name.lower() == wanted:
                return server
        return None

    async def get_server(self, name: str, refresh: bool = False) -> ServerDescriptor:
        """
        Look a server up; with refresh the cluster is read first and a failed read
        raises instead of falling back to the previous snapshot.
        """
        if refresh:
            await self.refresh()
        server = self.find(name)
        if not server:
            raise NotFoundError(f"Server '{name}' not found")
        return server

    def request_refresh(self) -> None:
        """
        Wake the loop for an early cycle, without waiting for it.
        """
        self._wakeup.set()

    def next_delay(self) -> float:
        if not self.failures:
            return settings.discovery_interval
        return min(
            settings.discovery_interval * 2**self.failures, settings.discovery_max_backoff
        )

    async def run(self, stop: asyncio.Event) -> None:
        """
        Refresh loop, runs until the stop event is set (or the task is cancelled).
        """
        while not stop.is_set():
            try:
                snapshot = await self.refresh()
                if self._on_refresh:
                    await self._on_refresh(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    f"Discovery cycle failed (attempt {self.failures}), keeping previous snapshot: "
                    f"{exc}\n{traceback.format_exc()}"
                )
            delay = self.next_delay()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
