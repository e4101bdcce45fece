"""Type definitions for dbhost."""

from typing import Literal, TypedDict

Engine = Literal["postgresql", "mysql"]
InstanceStatus = Literal[
    "pending", "running", "stopping", "stopped", "terminating", "terminated"
]
Action = Literal[
    "create_user", "delete_user", "change_password", "grant_privileges", "list_users"
]

ENGINES: tuple[str, ...] = ("postgresql", "mysql")
STATUSES: tuple[str, ...] = (
    "pending",
    "running",
    "stopping",
    "stopped",
    "terminating",
    "terminated",
)
DEFAULT_PORTS = {"postgresql": 5432, "mysql": 3306}
INSTANCE_TYPES = ["t3.micro", "t3.small", "t3.medium", "t3.large"]


class PortRule(TypedDict, total=False):
    port: int
    protocol: Literal["tcp", "udp"]
    description: str


class NetworkConfig(TypedDict, total=False):
    vpc_id: str
    subnet_id: str
    security_group_ids: list[str]
    public_ip: str | None
    private_ip: str | None
    ports: list[PortRule]


class DatabaseUser(TypedDict, total=False):
    """Database login tracked on an instance."""

    username: str
    password: str  # never leaves the store, see store.public_view
    privileges: list[str]
    created_at: str
    pending: bool  # recorded although the create dispatch failed


class ManagedInstance(TypedDict, total=False):
    """Instance record stored in <instance_id>.instance.json files."""

    instance_id: str
    owner: str
    name: str
    engine: Engine
    engine_version: str
    instance_type: str
    region: str
    port: int
    master_username: str
    master_password: str
    database_users: list[DatabaseUser]
    network: NetworkConfig
    key_pair_name: str
    tags: dict[str, str]
    status: InstanceStatus
    created_at: str
    launch_time: str | None
    termination_time: str | None
    last_status_check: str | None


class ProviderInstance(TypedDict):
    """Authoritative instance state as reported by EC2."""

    instance_id: str
    state: str
    instance_type: str
    public_ip: str | None
    private_ip: str | None
    launch_time: str | None


class CommandResult(TypedDict):
    """Status and output of one dispatched command batch."""

    command_id: str
    instance_id: str
    status: str
    message: str
    is_complete: bool
    stdout: str
    stderr: str
    started_at: str | None
    ended_at: str | None


class AgentInfo(TypedDict, total=False):
    instance_id: str
    ping_status: str
    agent_version: str
    platform: str
    last_ping: str | None
