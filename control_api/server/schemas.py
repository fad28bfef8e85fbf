"""
Server descriptors, status records and creation requests.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Tuple, Union
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from control_api.constants import DEFAULT_NFS_EXPORT_OPTIONS, NAME_PATTERN


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ServerCredentials(CamelModel):
    username: Optional[str] = None
    password: Optional[str] = None
    note: Optional[str] = None


class ServerDescriptor(CamelModel):
    """
    One observed server instance, rebuilt from the cluster every discovery cycle.
    """

    name: str
    protocol: str
    pod_name: str = ""
    deployment_name: str = ""
    service_name: str
    cluster_address: str
    port: int
    external_port: Optional[int] = None
    node_ports: Tuple[int, ...] = ()
    pod_phase: str
    pod_ready: bool = False
    replicas: int = 1
    is_dynamic: bool = False
    managed_by: Literal["platform-template", "control-plane"] = "platform-template"
    directory: Optional[str] = None
    host_directory: Optional[str] = None
    credentials: Optional[ServerCredentials] = None
    discovered_at: datetime = Field(default_factory=utcnow)


class ServerStatus(ServerDescriptor):
    is_healthy: bool
    health_message: Optional[str] = None
    latency_ms: Optional[int] = None
    checked_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_descriptor(cls, descriptor: ServerDescriptor, **kwargs) -> "ServerStatus":
        return cls(**descriptor.model_dump(), **kwargs)


class ServerStatusUpdate(CamelModel):
    """
    Broadcast envelope, always the full state of every server.
    """

    servers: Tuple[ServerStatus, ...] = ()
    timestamp: datetime = Field(default_factory=utcnow)

    @computed_field(alias="totalServers")
    @property
    def total_servers(self) -> int:
        return len(self.servers)

    @computed_field(alias="healthyServers")
    @property
    def healthy_servers(self) -> int:
        return sum(1 for server in self.servers if server.is_healthy)


class CreateServerBase(CamelModel):
    name: str = Field(min_length=3, max_length=32, pattern=NAME_PATTERN)
    node_port: Optional[int] = Field(default=None, ge=1, le=65535)


def _check_relative_directory(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if ".." in value:
        raise ValueError("Directory must not contain '..' path traversal")
    if value.startswith("/"):
        raise ValueError("Directory must be relative (not start with '/')")
    return value


class CreateFtpServerRequest(CreateServerBase):
    protocol: Literal["ftp"] = "ftp"
    username: str = Field(min_length=3, max_length=32)
    password: str = Field(min_length=8)
    passive_port_start: Optional[int] = Field(default=None, ge=30000, le=32700)
    passive_port_end: Optional[int] = Field(default=None, ge=30000, le=32767)
    directory: Optional[str] = Field(default=None, max_length=256)

    check_directory = field_validator("directory")(_check_relative_directory)

    @model_validator(mode="after")
    def _passive_range(self):
        if self.passive_port_end is not None and self.passive_port_start is None:
            raise ValueError("PassivePortEnd requires PassivePortStart")
        if (
            self.passive_port_start is not None
            and self.passive_port_end is not None
            and self.passive_port_end <= self.passive_port_start
        ):
            raise ValueError("PassivePortEnd must be greater than PassivePortStart")
        return self


class CreateSftpServerRequest(CreateServerBase):
    protocol: Literal["sftp"] = "sftp"
    username: str = Field(min_length=3, max_length=32)
    password: str = Field(min_length=8)
    uid: int = Field(default=1000, ge=1, le=65534)
    gid: int = Field(default=1000, ge=1, le=65534)
    directory: Optional[str] = Field(default=None, max_length=256)

    check_directory = field_validator("directory")(_check_relative_directory)


class CreateNasServerRequest(CreateServerBase):
    protocol: Literal["nas"] = "nas"
    directory: str = Field(min_length=1, max_length=256)
    export_options: str = Field(default=DEFAULT_NFS_EXPORT_OPTIONS, min_length=1, max_length=512)

    check_directory = field_validator("directory")(_check_relative_directory)


CreateServerRequest = Annotated[
    Union[CreateFtpServerRequest, CreateSftpServerRequest, CreateNasServerRequest],
    Field(discriminator="protocol"),
]
