"""
Name, port and quota checks for dynamic server creation.

Everything in here is pure: it looks at a discovery snapshot (plus names with a
creation in flight) and either returns or raises, it never touches the cluster.
"""

from typing import Iterable, Optional, Set, Tuple
from loguru import logger
from control_api.config import settings
from control_api.exceptions import ConflictError, QuotaExceededError, ValidationError
from control_api.server.schemas import CreateFtpServerRequest, ServerDescriptor
from control_api.util import stable_hash


def is_name_taken(
    name: str, snapshot: Iterable[ServerDescriptor], pending: Iterable[str] = ()
) -> bool:
    """
    Case-insensitive name lookup across static and dynamic servers.
    """
    wanted = name.lower()
    if any(other.lower() == wanted for other in pending):
        return True
    return any(server.name.lower() == wanted for server in snapshot)


def check_name_available(
    name: str, snapshot: Iterable[ServerDescriptor], pending: Iterable[str] = ()
) -> None:
    if is_name_taken(name, snapshot, pending):
        raise ConflictError(f"Server name '{name}' is already in use")


def used_node_ports(
    snapshot: Iterable[ServerDescriptor], reserved: Iterable[int] = ()
) -> Set[int]:
    """
    NodePorts held by discovered servers plus those reserved by creations in flight.
    """
    ports = set(reserved)
    for server in snapshot:
        ports.update(server.node_ports)
        if server.external_port:
            ports.add(server.external_port)
    return ports


def check_node_port(
    port: Optional[int], snapshot: Iterable[ServerDescriptor], reserved: Iterable[int] = ()
) -> None:
    """
    Explicit NodePorts must be inside the configured range and unused.
    """
    if port is None:
        return
    if not settings.node_port_min <= port <= settings.node_port_max:
        raise ValidationError(
            f"NodePort {port} outside allowed range {settings.node_port_min}-{settings.node_port_max}"
        )
    if port in used_node_ports(snapshot, reserved):
        raise ConflictError(f"NodePort {port} is already in use")


def check_quota(snapshot: Iterable[ServerDescriptor], pending_count: int = 0) -> None:
    dynamic_count = sum(1 for server in snapshot if server.is_dynamic) + pending_count
    if dynamic_count >= settings.max_dynamic_servers:
        raise QuotaExceededError(
            f"Maximum of {settings.max_dynamic_servers} dynamic servers reached"
        )


def allocate_passive_ports(
    request: CreateFtpServerRequest,
    snapshot: Iterable[ServerDescriptor],
    reserved: Iterable[int] = (),
) -> Tuple[int, int]:
    """
    Pick the passive port range for an FTP server.

    Explicit ranges are only checked; otherwise a slot is derived from the name and
    the first slot (starting there) with no allocated port wins.
    """
    used = used_node_ports(snapshot, reserved)
    if request.node_port:
        used.add(request.node_port)
    if request.passive_port_start is not None:
        start = request.passive_port_start
        end = request.passive_port_end or start + settings.ftp_passive_ports_per_server - 1
        if end > settings.node_port_max or start < settings.node_port_min:
            raise ValidationError(f"Passive port range {start}-{end} outside NodePort range")
        clash = sorted(used.intersection(range(start, end + 1)))
        if clash:
            raise ConflictError(f"Passive ports already in use: {clash}")
        return start, end

    per_server = settings.ftp_passive_ports_per_server
    slots = settings.ftp_passive_slots
    preferred = stable_hash(request.name) % slots
    for offset in range(slots):
        slot = (preferred + offset) % slots
        start = settings.ftp_passive_port_start + slot * per_server
        end = start + per_server - 1
        if not used.intersection(range(start, end + 1)):
            logger.debug(f"Allocated passive ports {start}-{end} for {request.name} (slot {slot})")
            return start, end
    raise ConflictError("No free FTP passive port range available")


def requested_ports(request, passive_ports: Optional[Tuple[int, int]]) -> Tuple[int, ...]:
    """
    NodePorts a create request will hold once its service exists.
    """
    ports = [request.node_port] if request.node_port else []
    if passive_ports:
        ports.extend(range(passive_ports[0], passive_ports[1] + 1))
    return tuple(ports)


def check_create(
    request,
    snapshot: Tuple[ServerDescriptor, ...],
    pending: Iterable[str] = (),
    reserved: Iterable[int] = (),
) -> Optional[Tuple[int, int]]:
    """
    Run every pre-mutation check for a create request, returning the passive port
    range for FTP servers (None otherwise).

    `pending` are names and `reserved` the NodePorts of other creations in flight.
    """
    pending = list(pending)
    reserved = set(reserved)
    check_name_available(request.name, snapshot, pending)
    check_node_port(request.node_port, snapshot, reserved)
    check_quota(snapshot, len(pending))
    if isinstance(request, CreateFtpServerRequest):
        return allocate_passive_ports(request, snapshot, reserved)
    return None
