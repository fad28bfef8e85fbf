"""
Per-protocol resource builders for dynamic servers.

Each builder receives the validated request, the owner reference and the port
allocation, and returns the (deployment, service) pair to create.
"""

from typing import Callable, Dict, Optional, Tuple
from kubernetes.client import (
    V1Capabilities,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1Job,
    V1JobSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1OwnerReference,
    V1PersistentVolumeClaimVolumeSource,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1SecurityContext,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)
from control_api.config import settings
from control_api.constants import (
    ANNOTATION_DIRECTORY,
    APP_NAME,
    LABEL_APP_NAME,
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_PART_OF,
    MANAGED_BY_CONTROL_PLANE,
    NAS_DIRECTORY_PRESETS,
    PART_OF,
)
from control_api.server.schemas import (
    CreateFtpServerRequest,
    CreateNasServerRequest,
    CreateSftpServerRequest,
)

SMALL_RESOURCES = V1ResourceRequirements(
    requests={"memory": "64Mi", "cpu": "50m"},
    limits={"memory": "256Mi", "cpu": "200m"},
)
NAS_RESOURCES = V1ResourceRequirements(
    requests={"memory": "128Mi", "cpu": "100m"},
    limits={"memory": "512Mi", "cpu": "500m"},
)

# Service ports exposed by each dynamic protocol (first one is the primary port).
PRIMARY_PORTS = {"ftp": 21, "sftp": 22, "nas": 2049}


def resource_name(protocol: str, name: str) -> str:
    return f"{settings.release_prefix}-{protocol}-{name}"


def server_labels(protocol: str, name: str) -> Dict[str, str]:
    return {
        LABEL_APP_NAME: APP_NAME,
        LABEL_COMPONENT: protocol,
        LABEL_MANAGED_BY: MANAGED_BY_CONTROL_PLANE,
        LABEL_INSTANCE: name,
        LABEL_PART_OF: PART_OF,
    }


def selector_labels(name: str) -> Dict[str, str]:
    return {LABEL_APP_NAME: APP_NAME, LABEL_INSTANCE: name}


def resolve_nas_directory(directory: str) -> str:
    """
    Map the input/output/backup presets onto their dynamic subdirectories.
    """
    return NAS_DIRECTORY_PRESETS.get(directory.lower(), directory)


def _metadata(
    protocol: str, name: str, owner_reference: V1OwnerReference, directory: Optional[str]
) -> V1ObjectMeta:
    return V1ObjectMeta(
        name=resource_name(protocol, name),
        namespace=settings.namespace,
        labels=server_labels(protocol, name),
        annotations={ANNOTATION_DIRECTORY: directory or ""},
        owner_references=[owner_reference],
    )


def _deployment(
    protocol: str,
    name: str,
    owner_reference: V1OwnerReference,
    directory: Optional[str],
    pod_spec: V1PodSpec,
) -> V1Deployment:
    return V1Deployment(
        metadata=_metadata(protocol, name, owner_reference, directory),
        spec=V1DeploymentSpec(
            replicas=1,
            selector=V1LabelSelector(match_labels=selector_labels(name)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=server_labels(protocol, name)),
                spec=pod_spec,
            ),
        ),
    )


def _service(
    protocol: str,
    name: str,
    owner_reference: V1OwnerReference,
    directory: Optional[str],
    ports,
) -> V1Service:
    return V1Service(
        metadata=_metadata(protocol, name, owner_reference, directory),
        spec=V1ServiceSpec(
            type="NodePort",
            selector=selector_labels(name),
            ports=ports,
        ),
    )


def _data_volume() -> V1Volume:
    return V1Volume(
        name="data",
        persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(claim_name=settings.pvc_name),
    )


def build_ftp(
    request: CreateFtpServerRequest,
    owner_reference: V1OwnerReference,
    passive_ports: Optional[Tuple[int, int]] = None,
) -> Tuple[V1Deployment, V1Service]:
    """
    vsftpd with passive mode ports exposed 1:1 as NodePorts.
    """
    passive_start, passive_end = passive_ports
    passive_range = range(passive_start, passive_end + 1)
    container = V1Container(
        name="vsftpd",
        image="fauria/vsftpd:latest",
        image_pull_policy="IfNotPresent",
        ports=[V1ContainerPort(container_port=21, protocol="TCP", name="ftp")]
        + [
            V1ContainerPort(container_port=port, protocol="TCP", name=f"passive-{port}")
            for port in passive_range
        ],
        env=[
            V1EnvVar(name="FTP_USER", value=request.username),
            V1EnvVar(name="FTP_PASS", value=request.password),
            V1EnvVar(name="LOG_STDOUT", value="YES"),
            V1EnvVar(name="LOCAL_UMASK", value="022"),
            V1EnvVar(name="PASV_ADDRESS", value=settings.passive_address),
            V1EnvVar(name="PASV_MIN_PORT", value=str(passive_start)),
            V1EnvVar(name="PASV_MAX_PORT", value=str(passive_end)),
        ],
        volume_mounts=[
            V1VolumeMount(
                name="data",
                mount_path=f"/home/vsftpd/{request.username}",
                sub_path=request.directory or None,
            )
        ],
        security_context=V1SecurityContext(privileged=True),
        resources=SMALL_RESOURCES,
    )
    deployment = _deployment(
        "ftp",
        request.name,
        owner_reference,
        request.directory,
        V1PodSpec(containers=[container], volumes=[_data_volume()]),
    )
    service = _service(
        "ftp",
        request.name,
        owner_reference,
        request.directory,
        [V1ServicePort(name="ftp", port=21, target_port=21, protocol="TCP", node_port=request.node_port)]
        + [
            V1ServicePort(
                name=f"passive-{port}", port=port, target_port=port, protocol="TCP", node_port=port
            )
            for port in passive_range
        ],
    )
    return deployment, service


def build_sftp(
    request: CreateSftpServerRequest,
    owner_reference: V1OwnerReference,
    passive_ports: Optional[Tuple[int, int]] = None,
) -> Tuple[V1Deployment, V1Service]:
    container = V1Container(
        name="sftp",
        image="atmoz/sftp:latest",
        image_pull_policy="IfNotPresent",
        args=[f"{request.username}:{request.password}:{request.uid}:{request.gid}"],
        ports=[V1ContainerPort(container_port=22, protocol="TCP", name="sftp")],
        volume_mounts=[
            V1VolumeMount(
                name="data",
                mount_path=f"/home/{request.username}/data",
                sub_path=request.directory or None,
            )
        ],
        security_context=V1SecurityContext(capabilities=V1Capabilities(add=["SYS_CHROOT"])),
        resources=SMALL_RESOURCES,
    )
    deployment = _deployment(
        "sftp",
        request.name,
        owner_reference,
        request.directory,
        V1PodSpec(containers=[container], volumes=[_data_volume()]),
    )
    service = _service(
        "sftp",
        request.name,
        owner_reference,
        request.directory,
        [V1ServicePort(name="sftp", port=22, target_port=22, protocol="TCP", node_port=request.node_port)],
    )
    return deployment, service


def build_nas(
    request: CreateNasServerRequest,
    owner_reference: V1OwnerReference,
    passive_ports: Optional[Tuple[int, int]] = None,
) -> Tuple[V1Deployment, V1Service]:
    """
    NFS cannot export the windows-backed mount directly, so an init container copies
    the PVC subdirectory into an emptyDir which the NFS server exports.
    """
    directory = resolve_nas_directory(request.directory)
    sync_script = "\n".join(
        [
            "set -e",
            f"echo '=== NAS {request.name} init container, syncing windows data ==='",
            "apk add --no-cache rsync",
            "mkdir -p /nfs-data",
            "rsync -av /windows-mount/ /nfs-data/",
            "ls -la /nfs-data | head -20",
        ]
    )
    pod_spec = V1PodSpec(
        init_containers=[
            V1Container(
                name="sync-windows-data",
                image="alpine:3.19",
                image_pull_policy="IfNotPresent",
                command=["sh", "-c"],
                args=[sync_script],
                volume_mounts=[
                    V1VolumeMount(
                        name="windows-data",
                        mount_path="/windows-mount",
                        sub_path=directory,
                        read_only=True,
                    ),
                    V1VolumeMount(name="nfs-export", mount_path="/nfs-data"),
                ],
                security_context=V1SecurityContext(
                    run_as_non_root=False, allow_privilege_escalation=False
                ),
            )
        ],
        containers=[
            V1Container(
                name="nfs-server",
                image="erichough/nfs-server:latest",
                image_pull_policy="IfNotPresent",
                ports=[
                    V1ContainerPort(container_port=2049, protocol="TCP", name="nfs"),
                    V1ContainerPort(container_port=111, protocol="TCP", name="rpcbind"),
                ],
                env=[
                    V1EnvVar(name="NFS_EXPORT_0", value=f"/data *({request.export_options},fsid=0)"),
                    V1EnvVar(name="NFS_DISABLE_VERSION_3", value="false"),
                    V1EnvVar(name="NFS_LOG_LEVEL", value="DEBUG"),
                ],
                volume_mounts=[V1VolumeMount(name="nfs-export", mount_path="/data")],
                security_context=V1SecurityContext(
                    privileged=True,
                    capabilities=V1Capabilities(add=["SYS_ADMIN", "DAC_READ_SEARCH"]),
                ),
                resources=NAS_RESOURCES,
            )
        ],
        volumes=[
            V1Volume(
                name="windows-data",
                persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(
                    claim_name=settings.pvc_name
                ),
            ),
            V1Volume(name="nfs-export", empty_dir=V1EmptyDirVolumeSource(size_limit="500Mi")),
        ],
    )
    deployment = _deployment("nas", request.name, owner_reference, directory, pod_spec)
    service = _service(
        "nas",
        request.name,
        owner_reference,
        directory,
        [V1ServicePort(name="nfs", port=2049, target_port=2049, protocol="TCP", node_port=request.node_port)],
    )
    return deployment, service


SPEC_BUILDERS: Dict[str, Callable[..., Tuple[V1Deployment, V1Service]]] = {
    "ftp": build_ftp,
    "sftp": build_sftp,
    "nas": build_nas,
}


def build_cleanup_job(name: str, directory: str, owner_reference: V1OwnerReference) -> V1Job:
    """
    One-shot job removing a server's subdirectory from the shared PVC.
    """
    return V1Job(
        metadata=V1ObjectMeta(
            generate_name=f"{settings.release_prefix}-cleanup-{name}-",
            namespace=settings.namespace,
            labels={
                LABEL_APP_NAME: APP_NAME,
                LABEL_COMPONENT: "data-cleanup",
                LABEL_MANAGED_BY: MANAGED_BY_CONTROL_PLANE,
                LABEL_INSTANCE: name,
            },
            owner_references=[owner_reference],
        ),
        spec=V1JobSpec(
            backoff_limit=1,
            ttl_seconds_after_finished=300,
            template=V1PodTemplateSpec(
                spec=V1PodSpec(
                    restart_policy="Never",
                    containers=[
                        V1Container(
                            name="cleanup",
                            image="alpine:3.19",
                            command=["rm", "-rf", f"/data/{directory}"],
                            volume_mounts=[V1VolumeMount(name="data", mount_path="/data")],
                        )
                    ],
                    volumes=[_data_volume()],
                )
            ),
        ),
    )
