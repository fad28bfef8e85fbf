"""
Helper for kubernetes interactions.

The kubernetes client is synchronous, so every call is pushed to a worker thread and
carries a request timeout; ApiExceptions are translated into control plane errors.
"""

import asyncio
from functools import partial
from loguru import logger
from typing import Any, Callable, List, Optional
from kubernetes.client import (
    V1DeleteOptions,
    V1Deployment,
    V1Job,
    V1OwnerReference,
    V1Pod,
    V1Service,
    V1ConfigMap,
)
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from control_api.config import settings, k8s_core_client, k8s_app_client, k8s_batch_client
from control_api.exceptions import (
    ConflictError,
    FileSimError,
    NotFoundError,
    OrchestrationUnavailable,
    ValidationError,
)


def translate_api_error(exc: Exception, action: str) -> FileSimError:
    """
    Map a kubernetes client failure onto the control plane error taxonomy.
    """
    if isinstance(exc, ApiException):
        body = exc.body if isinstance(exc.body, str) else (exc.body or b"").decode(errors="ignore")
        detail = f"{action} failed: ({exc.status}) {exc.reason}"
        if exc.status == 404:
            return NotFoundError(detail)
        if exc.status == 409:
            return ConflictError(detail)
        if exc.status == 422:
            if "already allocated" in body or "port is already" in body:
                return ConflictError(f"{action} failed: port already allocated")
            return ValidationError(f"{detail}: {body}")
        if not exc.status or exc.status >= 500 or exc.status == 429:
            return OrchestrationUnavailable(detail)
        return FileSimError(f"{detail}: {body}")
    if isinstance(exc, (Urllib3HTTPError, OSError, TimeoutError)):
        return OrchestrationUnavailable(f"{action} failed, kubernetes API unreachable: {exc}")
    return FileSimError(f"{action} failed: {exc}")


async def _call(action: str, fn: Callable, *args, **kwargs) -> Any:
    """
    Run a blocking client call in a thread, with a request timeout.
    """
    kwargs.setdefault("_request_timeout", settings.k8s_request_timeout)
    try:
        return await asyncio.to_thread(partial(fn, *args, **kwargs))
    except FileSimError:
        raise
    except (ApiException, Urllib3HTTPError, OSError, TimeoutError) as exc:
        raise translate_api_error(exc, action) from exc


def is_pod_ready(pod: V1Pod) -> bool:
    """
    Check the pod's Ready condition.
    """
    for condition in (pod.status.conditions if pod.status else None) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def selector_matches(selector: Optional[dict], labels: Optional[dict]) -> bool:
    """
    Equality based label selector match, an empty selector matches nothing.
    """
    if not selector:
        return False
    labels = labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


def label_selector(labels: dict) -> str:
    return ",".join(f"{key}={value}" for key, value in labels.items())


async def list_deployments(selector: str) -> List[V1Deployment]:
    result = await _call(
        "list deployments",
        k8s_app_client().list_namespaced_deployment,
        namespace=settings.namespace,
        label_selector=selector,
    )
    return list(result.items)


async def list_services(selector: str) -> List[V1Service]:
    result = await _call(
        "list services",
        k8s_core_client().list_namespaced_service,
        namespace=settings.namespace,
        label_selector=selector,
    )
    return list(result.items)


async def list_pods(selector: str) -> List[V1Pod]:
    result = await _call(
        "list pods",
        k8s_core_client().list_namespaced_pod,
        namespace=settings.namespace,
        label_selector=selector,
    )
    return list(result.items)


async def read_deployment(name: str) -> V1Deployment:
    return await _call(
        f"read deployment {name}",
        k8s_app_client().read_namespaced_deployment,
        name=name,
        namespace=settings.namespace,
    )


async def create_deployment(deployment: V1Deployment) -> V1Deployment:
    return await _call(
        f"create deployment {deployment.metadata.name}",
        k8s_app_client().create_namespaced_deployment,
        namespace=settings.namespace,
        body=deployment,
    )


async def create_service(service: V1Service) -> V1Service:
    return await _call(
        f"create service {service.metadata.name}",
        k8s_core_client().create_namespaced_service,
        namespace=settings.namespace,
        body=service,
    )


async def delete_deployment(name: str, missing_ok: bool = True) -> bool:
    """
    Delete a deployment, pods are removed before the deployment itself (foreground).
    """
    try:
        await _call(
            f"delete deployment {name}",
            k8s_app_client().delete_namespaced_deployment,
            name=name,
            namespace=settings.namespace,
            body=V1DeleteOptions(propagation_policy="Foreground"),
        )
    except NotFoundError:
        if not missing_ok:
            raise
        logger.debug(f"Deployment {name} already gone")
        return False
    return True


async def delete_service(name: str, missing_ok: bool = True) -> bool:
    try:
        await _call(
            f"delete service {name}",
            k8s_core_client().delete_namespaced_service,
            name=name,
            namespace=settings.namespace,
        )
    except NotFoundError:
        if not missing_ok:
            raise
        logger.debug(f"Service {name} already gone")
        return False
    return True


async def delete_pod(name: str, grace_period_seconds: int = 5) -> bool:
    try:
        await _call(
            f"delete pod {name}",
            k8s_core_client().delete_namespaced_pod,
            name=name,
            namespace=settings.namespace,
            grace_period_seconds=grace_period_seconds,
        )
    except NotFoundError:
        logger.debug(f"Pod {name} already gone")
        return False
    return True


async def scale_deployment(name: str, replicas: int):
    """
    Set the desired replica count through the scale subresource.
    """
    return await _call(
        f"scale deployment {name}",
        k8s_app_client().patch_namespaced_deployment_scale,
        name=name,
        namespace=settings.namespace,
        body={"spec": {"replicas": replicas}},
    )


async def read_config_map(name: str) -> V1ConfigMap:
    return await _call(
        f"read configmap {name}",
        k8s_core_client().read_namespaced_config_map,
        name=name,
        namespace=settings.namespace,
    )


async def replace_config_map(config_map: V1ConfigMap) -> V1ConfigMap:
    return await _call(
        f"replace configmap {config_map.metadata.name}",
        k8s_core_client().replace_namespaced_config_map,
        name=config_map.metadata.name,
        namespace=settings.namespace,
        body=config_map,
    )


async def create_config_map(config_map: V1ConfigMap) -> V1ConfigMap:
    return await _call(
        f"create configmap {config_map.metadata.name}",
        k8s_core_client().create_namespaced_config_map,
        namespace=settings.namespace,
        body=config_map,
    )


async def create_job(job: V1Job) -> V1Job:
    return await _call(
        f"create job {job.metadata.name}",
        k8s_batch_client().create_namespaced_job,
        namespace=settings.namespace,
        body=job,
    )


async def get_owner_reference(deployment_name: str) -> V1OwnerReference:
    """
    Build an owner reference pointing at the control plane deployment.
    """
    owner = await read_deployment(deployment_name)
    return V1OwnerReference(
        api_version="apps/v1",
        kind="Deployment",
        name=owner.metadata.name,
        uid=owner.metadata.uid,
        controller=False,
        block_owner_deletion=False,
    )
