"""
Application-wide settings.
"""

import os
from functools import lru_cache
from typing import Any
from pydantic_settings import BaseSettings
from kubernetes import client
from kubernetes.config import load_kube_config, load_incluster_config


def create_kubernetes_client(cls: Any = client.CoreV1Api):
    """
    Create a k8s client.
    """
    try:
        if os.getenv("KUBERNETES_SERVICE_HOST") is not None:
            load_incluster_config()
        else:
            load_kube_config(config_file=os.getenv("KUBECONFIG"))
        return cls()
    except Exception as exc:
        raise Exception(f"Failed to create Kubernetes client: {str(exc)}")


@lru_cache(maxsize=1)
def k8s_core_client():
    return create_kubernetes_client()


@lru_cache(maxsize=1)
def k8s_app_client():
    return create_kubernetes_client(cls=client.AppsV1Api)


@lru_cache(maxsize=1)
def k8s_batch_client():
    return create_kubernetes_client(cls=client.BatchV1Api)


class Settings(BaseSettings):
    namespace: str = os.getenv("FILESIM_NAMESPACE", "file-simulator")
    release_prefix: str = os.getenv("FILESIM_RELEASE_PREFIX", "file-sim-file-simulator")
    pvc_name: str = os.getenv(
        "FILESIM_PVC_NAME",
        f"{os.getenv('FILESIM_RELEASE_PREFIX', 'file-sim-file-simulator')}-pvc",
    )
    endpoints_config_map: str = os.getenv(
        "FILESIM_ENDPOINTS_CONFIGMAP",
        f"{os.getenv('FILESIM_RELEASE_PREFIX', 'file-sim-file-simulator')}-endpoints",
    )
    owner_deployment: str = os.getenv(
        "FILESIM_OWNER_DEPLOYMENT",
        f"{os.getenv('FILESIM_RELEASE_PREFIX', 'file-sim-file-simulator')}-control-api",
    )
    passive_address: str = os.getenv("FTP_PASSIVE_ADDRESS", "file-simulator.local")
    debug: bool = os.getenv("DEBUG", "false").lower() == "true"

    # Kubernetes API access.
    k8s_request_timeout: float = float(os.getenv("K8S_REQUEST_TIMEOUT", "10"))

    # Background loops.
    discovery_interval: float = float(os.getenv("DISCOVERY_INTERVAL", "5"))
    discovery_max_backoff: float = float(os.getenv("DISCOVERY_MAX_BACKOFF", "60"))
    health_interval: float = float(os.getenv("HEALTH_INTERVAL", "5"))
    health_probe_timeout: float = float(os.getenv("HEALTH_PROBE_TIMEOUT", "5"))
    health_concurrency: int = int(os.getenv("HEALTH_CONCURRENCY", "16"))
    broadcast_send_timeout: float = float(os.getenv("BROADCAST_SEND_TIMEOUT", "5"))

    # Limits on dynamic servers.
    max_dynamic_servers: int = int(os.getenv("MAX_DYNAMIC_SERVERS", "20"))
    node_port_min: int = int(os.getenv("NODE_PORT_MIN", "30000"))
    node_port_max: int = int(os.getenv("NODE_PORT_MAX", "32767"))
    ftp_passive_port_start: int = int(os.getenv("FTP_PASSIVE_PORT_START", "30200"))
    ftp_passive_ports_per_server: int = int(os.getenv("FTP_PASSIVE_PORTS_PER_SERVER", "5"))
    ftp_passive_slots: int = int(os.getenv("FTP_PASSIVE_SLOTS", "20"))

    # Where the shared PVC lives on the windows host, for display purposes only.
    host_base_path: str = os.getenv("FILESIM_HOST_BASE_PATH", "C:\\simulator-data")


settings = Settings()
