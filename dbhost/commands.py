"""Send shell command batches through SSM and read back their results."""

import time
from typing import Callable

from .errors import CommandNotFound, InstanceNotRunning, ProviderAPIError
from .providers import AWSProvider
from .readiness import await_ready
from .types import CommandResult, ManagedInstance
from .utils import log

COMPLETE_STATUSES = {"Success", "Failed", "Cancelled", "TimedOut"}

STATUS_MESSAGES = {
    "Pending": "Command is queued and has not reached the instance yet",
    "InProgress": "Command is running on the instance",
    "Delayed": "Delivery to the instance was delayed, the agent will retry",
    "Cancelling": "Command is being cancelled",
    "Success": "Command completed successfully",
    "Failed": "Command failed, check stderr",
    "Cancelled": "Command was cancelled",
    "TimedOut": "Command exceeded its execution timeout",
}

DEFAULT_TIMEOUT = 600


def dispatch(
    provider: AWSProvider,
    instance: ManagedInstance,
    commands: list[str],
    *,
    max_attempts: int = 20,
    poll_interval: float = 15.0,
    timeout: int = DEFAULT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Send all commands as one SSM request and return without waiting.

    The commands share a single shell script on the host, in list order.

    :param instance: Instance record, its last known status must be running
    :param commands: Shell command lines
    :param timeout: Execution timeout in seconds, enforced by the agent
    :return: SSM CommandId
    :raises InstanceNotRunning: Record status is not running
    :raises AgentNotReady: Propagated from await_ready, nothing was sent
    """
    instance_id = instance["instance_id"]
    status = instance.get("status", "pending")
    if status != "running":
        raise InstanceNotRunning(instance_id, status)
    if not commands:
        raise ValueError("No commands to dispatch")

    await_ready(provider, instance_id, max_attempts, poll_interval, sleep=sleep)

    command_id = provider.send_command(instance_id, commands, timeout)
    log(f"Dispatched {len(commands)} command(s) to '{instance_id}': '{command_id}'")
    return command_id


def fetch_result(
    provider: AWSProvider, command_id: str, instance_id: str
) -> CommandResult:
    """Read the status and output of a dispatched command batch.

    :raises CommandNotFound: SSM has no invocation for this pair (yet)
    """
    try:
        invocation = provider.get_command_invocation(command_id, instance_id)
    except ProviderAPIError as e:
        if e.code == "InvocationDoesNotExist":
            raise CommandNotFound(command_id, instance_id) from e
        raise

    status = invocation.get("Status", "Pending")
    return {
        "command_id": command_id,
        "instance_id": instance_id,
        "status": status,
        "message": STATUS_MESSAGES.get(
            status, invocation.get("StatusDetails") or f"Unknown status '{status}'"
        ),
        "is_complete": status in COMPLETE_STATUSES,
        "stdout": invocation.get("StandardOutputContent", ""),
        "stderr": invocation.get("StandardErrorContent", ""),
        "started_at": invocation.get("ExecutionStartDateTime") or None,
        "ended_at": invocation.get("ExecutionEndDateTime") or None,
    }
