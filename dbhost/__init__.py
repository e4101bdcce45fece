"""dbhost - database hosting on AWS EC2, managed through SSM."""

from .bootscript import plan_boot
from .commands import dispatch, fetch_result
from .config import Settings, load_settings
from .errors import (
    AgentNotReady,
    CommandNotFound,
    DbHostError,
    InstanceNotFound,
    InstanceNotRunning,
    InvalidTransition,
    NotConfigured,
    ProviderAPIError,
    UnsupportedEngine,
    UnsupportedOperation,
    ValidationError,
)
from .instances import DISPATCH_FAILURE_POLICY, InstanceManager
from .lifecycle import reconcile, start_instance, stop_instance, terminate_instance
from .providers import AWSProvider
from .readiness import agent_diagnostics, await_ready
from .sqlcmd import generate
from .store import InstanceStore, public_view
from .types import CommandResult, DatabaseUser, Engine, InstanceStatus, ManagedInstance
from .utils import error, log, setup_logging, warn

__all__ = [
    "AWSProvider",
    "InstanceManager",
    "InstanceStore",
    "Settings",
    "load_settings",
    "plan_boot",
    "await_ready",
    "agent_diagnostics",
    "dispatch",
    "fetch_result",
    "generate",
    "reconcile",
    "start_instance",
    "stop_instance",
    "terminate_instance",
    "public_view",
    "DISPATCH_FAILURE_POLICY",
    "log",
    "warn",
    "error",
    "setup_logging",
    "CommandResult",
    "DatabaseUser",
    "Engine",
    "InstanceStatus",
    "ManagedInstance",
    "AgentNotReady",
    "CommandNotFound",
    "DbHostError",
    "InstanceNotFound",
    "InstanceNotRunning",
    "InvalidTransition",
    "NotConfigured",
    "ProviderAPIError",
    "UnsupportedEngine",
    "UnsupportedOperation",
    "ValidationError",
]
