"""
Service-discovery aggregate: a ConfigMap mapping every server to its in-cluster endpoint,
so other workloads can resolve servers without talking to the kubernetes API.
"""

import backoff
from typing import Callable, Dict, Iterable
from loguru import logger
from kubernetes.client import V1ConfigMap, V1ObjectMeta
from control_api.config import settings
from control_api.constants import (
    APP_NAME,
    LABEL_APP_NAME,
    LABEL_COMPONENT,
    LABEL_MANAGED_BY,
    MANAGED_BY_CONTROL_PLANE,
)
from control_api.exceptions import ConflictError, NotFoundError
from control_api.server.schemas import ServerDescriptor
from control_api.util import endpoint_key, now_str
import control_api.k8s as k8s

METADATA_KEYS = ("UPDATED_AT", "SERVER_COUNT")


def entries_for(descriptor: ServerDescriptor) -> Dict[str, str]:
    key = endpoint_key(descriptor.protocol, descriptor.name)
    entries = {
        key: f"{descriptor.service_name}.{settings.namespace}.svc.cluster.local:{descriptor.port}"
    }
    if descriptor.external_port:
        entries[f"{key}_NODEPORT"] = str(descriptor.external_port)
    return entries


def _stamp(data: Dict[str, str]) -> Dict[str, str]:
    data["SERVER_COUNT"] = str(
        sum(1 for key in data if key not in METADATA_KEYS and not key.endswith("_NODEPORT"))
    )
    data["UPDATED_AT"] = now_str()
    return data


def _new_config_map(data: Dict[str, str]) -> V1ConfigMap:
    return V1ConfigMap(
        metadata=V1ObjectMeta(
            name=settings.endpoints_config_map,
            namespace=settings.namespace,
            labels={
                LABEL_APP_NAME: APP_NAME,
                LABEL_COMPONENT: "service-discovery",
                LABEL_MANAGED_BY: MANAGED_BY_CONTROL_PLANE,
            },
        ),
        data=data,
    )


@backoff.on_exception(
    backoff.constant,
    ConflictError,
    jitter=None,
    interval=0.2,
    max_tries=5,
)
async def _mutate(change: Callable[[Dict[str, str]], bool]) -> None:
    """
    Read-modify-replace with resourceVersion concurrency; a 409 retries the whole
    read-modify cycle. The change callable returns False when nothing changed.
    """
    try:
        config_map = await k8s.read_config_map(settings.endpoints_config_map)
    except NotFoundError:
        data = {}
        if change(data) is False:
            return
        await k8s.create_config_map(_new_config_map(_stamp(data)))
        logger.info(f"Created endpoints configmap {settings.endpoints_config_map}")
        return
    data = dict(config_map.data or {})
    if change(data) is False:
        return
    config_map.data = _stamp(data)
    await k8s.replace_config_map(config_map)


async def upsert(descriptor: ServerDescriptor) -> None:
    entries = entries_for(descriptor)

    def _change(data):
        data.update(entries)

    await _mutate(_change)
    logger.debug(f"Upserted endpoint entries for {descriptor.name}: {list(entries)}")


async def remove(descriptor: ServerDescriptor) -> None:
    key = endpoint_key(descriptor.protocol, descriptor.name)

    def _change(data):
        if key not in data and f"{key}_NODEPORT" not in data:
            return False
        data.pop(key, None)
        data.pop(f"{key}_NODEPORT", None)

    await _mutate(_change)
    logger.debug(f"Removed endpoint entries for {descriptor.name}")


async def rebuild(descriptors: Iterable[ServerDescriptor]) -> None:
    """
    Rewrite the map from the ready servers of a snapshot (skipped when unchanged).
    """
    wanted = {}
    for descriptor in descriptors:
        if descriptor.pod_ready:
            wanted.update(entries_for(descriptor))

    def _change(data):
        current = {key: value for key, value in data.items() if key not in METADATA_KEYS}
        if current == wanted:
            return False
        data.clear()
        data.update(wanted)

    await _mutate(_change)
