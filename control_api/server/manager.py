"""
Lifecycle management of dynamic servers: create, delete, stop, start, restart.

The cluster is the source of truth; nothing here is persisted. Name collisions that
slip past the snapshot check are settled by the API's create-if-absent semantics.
"""

import asyncio
import traceback
from typing import Awaitable, Dict, Optional, Tuple, Union
import pydantic
from loguru import logger
from kubernetes.client import V1OwnerReference, V1Service
from control_api.config import settings
from control_api.discovery import Discovery, host_directory
from control_api.exceptions import (
    ConflictError,
    CreationFailed,
    FileSimError,
    InvalidStateError,
    NotFoundError,
    ServerNotControllableError,
    ValidationError,
)
from control_api.server import guard
from control_api.server.schemas import (
    CreateServerRequest,
    ServerCredentials,
    ServerDescriptor,
)
from control_api.server.specs import (
    SPEC_BUILDERS,
    build_cleanup_job,
    resolve_nas_directory,
    selector_labels,
)
import control_api.endpoints as endpoints
import control_api.k8s as k8s

PROTOCOL_NAMES = {"ftp": "FTP", "sftp": "SFTP", "nas": "NFS"}

_request_adapter = pydantic.TypeAdapter(CreateServerRequest)


def parse_request(protocol: str, config: Union[dict, pydantic.BaseModel]):
    """
    Validate a create request for the given protocol tag.
    """
    protocol = (protocol or "").lower()
    if protocol not in SPEC_BUILDERS:
        raise ValidationError(f"Unsupported protocol: {protocol}")
    if isinstance(config, pydantic.BaseModel):
        config = config.model_dump(by_alias=False)
    try:
        return _request_adapter.validate_python({**config, "protocol": protocol})
    except pydantic.ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ValidationError(f"Invalid {protocol} server request: {errors}")


class ServerManager:
    def __init__(self, discovery: Discovery):
        self.discovery = discovery
        self._pending: Dict[str, Tuple[int, ...]] = {}
        self._owner_reference: Optional[V1OwnerReference] = None

    async def get_owner_reference(self) -> V1OwnerReference:
        """
        Owner reference to the control plane deployment, looked up once.
        """
        if self._owner_reference is None:
            try:
                self._owner_reference = await k8s.get_owner_reference(settings.owner_deployment)
            except NotFoundError as exc:
                raise CreationFailed(
                    f"Control plane deployment {settings.owner_deployment} not found, "
                    "refusing to create unowned resources"
                ) from exc
            logger.info(
                f"Using deployment {self._owner_reference.name} ({self._owner_reference.uid}) as owner"
            )
        return self._owner_reference

    def is_server_name_available(self, name: str) -> bool:
        return not guard.is_name_taken(name, self.discovery.snapshot, self._pending)

    async def create_server(self, protocol: str, config) -> ServerDescriptor:
        """
        Create deployment, then service, then the endpoints entry; anything created
        before a failure is deleted again before the error surfaces.
        """
        request = parse_request(protocol, config)
        key = request.name.lower()
        # Claimed before the first await, so a concurrent create of the same name conflicts.
        guard.check_name_available(request.name, self.discovery.snapshot, self._pending)
        self._pending[key] = ()
        try:
            # Servers created moments ago are not in the background snapshot yet.
            snapshot = await self.discovery.refresh()
            others = {name: ports for name, ports in self._pending.items() if name != key}
            passive_ports = guard.check_create(
                request,
                snapshot,
                pending=others,
                reserved=[port for ports in others.values() for port in ports],
            )
            self._pending[key] = guard.requested_ports(request, passive_ports)
            owner_reference = await self.get_owner_reference()
            deployment, service = SPEC_BUILDERS[request.protocol](
                request, owner_reference, passive_ports
            )
            created = []
            try:
                await self._apply(
                    created, "deployment", deployment.metadata.name, k8s.create_deployment(deployment)
                )
                created_service = await self._apply(
                    created, "service", service.metadata.name, k8s.create_service(service)
                )
                descriptor = self._descriptor(request, deployment.metadata.name, created_service)
                await self._apply(created, "endpoints", descriptor, endpoints.upsert(descriptor))
            except BaseException as exc:
                if created:
                    await asyncio.shield(self._rollback(request.name, created))
                if isinstance(exc, asyncio.CancelledError):
                    raise
                # Deployment 409 (create race) or service port clash.
                if not created or (isinstance(exc, ConflictError) and len(created) == 1):
                    raise
                raise CreationFailed(f"Failed to create {request.protocol} server {request.name}: {exc}") from exc
        finally:
            self._pending.pop(key, None)
        logger.success(
            f"Created {descriptor.protocol} server {descriptor.name} "
            f"(service={descriptor.service_name}, nodePort={descriptor.external_port})"
        )
        self.discovery.request_refresh()
        return descriptor

    @staticmethod
    async def _apply(created: list, kind: str, resource, call: Awaitable):
        """
        Run one create step and record it in `created` once it succeeded.

        The kubernetes call runs in a worker thread that a cancellation can't stop,
        so a cancelled caller still waits for the call to settle; otherwise a
        resource created after the rollback would be left behind.
        """
        task = asyncio.ensure_future(call)
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                await asyncio.wait({task})
            if not task.cancelled() and task.exception() is None:
                created.append((kind, resource))
            raise
        created.append((kind, resource))
        return result

    async def _rollback(self, name: str, created) -> None:
        """
        Delete whatever a failed create left behind, newest first.
        """
        logger.warning(f"Rolling back partial creation of {name}: {[kind for kind, _ in created]}")
        for kind, resource in reversed(created):
            try:
                if kind == "endpoints":
                    await endpoints.remove(resource)
                elif kind == "service":
                    await k8s.delete_service(resource)
                else:
                    await k8s.delete_deployment(resource)
            except Exception as exc:
                logger.error(
                    f"Rollback of {kind} {resource} failed: {exc}\n{traceback.format_exc()}"
                )

    @staticmethod
    def _descriptor(request, deployment_name: str, service: V1Service) -> ServerDescriptor:
        ports = service.spec.ports or []
        if request.protocol == "nas":
            directory = resolve_nas_directory(request.directory)
            credentials = ServerCredentials(note="NFS uses anonymous access (no authentication required)")
        else:
            directory = request.directory or ""
            credentials = ServerCredentials(
                username=request.username,
                password=request.password,
                note=f"{PROTOCOL_NAMES[request.protocol]} credentials",
            )
        return ServerDescriptor(
            name=request.name,
            protocol=PROTOCOL_NAMES[request.protocol],
            deployment_name=deployment_name,
            service_name=service.metadata.name,
            cluster_address=service.spec.cluster_ip or "",
            port=ports[0].port if ports else 0,
            external_port=ports[0].node_port if ports else None,
            node_ports=tuple(port.node_port for port in ports if port.node_port),
            pod_phase="Pending",
            replicas=1,
            is_dynamic=True,
            managed_by="control-plane",
            directory=directory,
            host_directory=host_directory(directory),
            credentials=credentials,
        )

    async def _controllable(self, name: str) -> ServerDescriptor:
        server = await self.discovery.get_server(name, refresh=True)
        if not server.is_dynamic:
            raise ServerNotControllableError(
                f"Server '{server.name}' is not dynamic and cannot be controlled via this API"
            )
        return server

    async def delete_server(self, name: str, delete_data: bool = False) -> bool:
        """
        Delete a dynamic server; unknown names succeed without doing anything.
        """
        try:
            server = await self._controllable(name)
        except NotFoundError:
            logger.info(f"Server {name} does not exist, nothing to delete")
            return False
        await k8s.delete_service(server.service_name)
        await k8s.delete_deployment(server.deployment_name)
        try:
            await endpoints.remove(server)
        except FileSimError as exc:
            logger.warning(f"Failed to remove endpoint entries for {server.name}: {exc}")
        if delete_data:
            if server.directory:
                job = build_cleanup_job(server.name, server.directory, await self.get_owner_reference())
                await k8s.create_job(job)
                logger.info(f"Launched data cleanup for {server.name}: {server.directory}")
            else:
                logger.warning(
                    f"Server {server.name} uses the shared volume root, not deleting any data"
                )
        logger.success(f"Deleted server {server.name}")
        self.discovery.request_refresh()
        return True

    async def stop_server(self, name: str) -> bool:
        server = await self._controllable(name)
        if server.replicas == 0:
            logger.info(f"Server {server.name} is already stopped")
            return False
        await k8s.scale_deployment(server.deployment_name, 0)
        logger.success(f"Stopped server {server.name}")
        self.discovery.request_refresh()
        return True

    async def start_server(self, name: str) -> bool:
        server = await self._controllable(name)
        if server.replicas >= 1:
            logger.info(f"Server {server.name} is already running")
            return False
        await k8s.scale_deployment(server.deployment_name, 1)
        logger.success(f"Started server {server.name}")
        self.discovery.request_refresh()
        return True

    async def restart_server(self, name: str) -> int:
        """
        Delete the server's pods and let the deployment recreate them.
        """
        server = await self._controllable(name)
        if server.replicas == 0:
            raise InvalidStateError(f"Server '{server.name}' is stopped, start it instead")
        pods = await k8s.list_pods(k8s.label_selector(selector_labels(server.name)))
        for pod in pods:
            await k8s.delete_pod(pod.metadata.name, grace_period_seconds=5)
        logger.success(f"Restarted server {server.name} ({len(pods)} pod(s) deleted)")
        self.discovery.request_refresh()
        return len(pods)
