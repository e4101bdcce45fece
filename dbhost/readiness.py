"""Wait for the SSM agent on a freshly launched instance to come online."""

import time
from typing import Callable

from .errors import AgentNotReady, ProviderAPIError
from .providers import AWSProvider
from .types import AgentInfo
from .utils import log, poll, warn

ONLINE = "Online"


def agent_status(provider: AWSProvider, instance_id: str) -> AgentInfo | None:
    """One registry lookup filtered to a single instance.

    :return: Agent info, or None if the instance has not registered yet
    """
    agents = provider.describe_agents(instance_id)
    for agent in agents:
        if agent["instance_id"] == instance_id:
            return agent
    return None


def await_ready(
    provider: AWSProvider,
    instance_id: str,
    max_attempts: int = 20,
    poll_interval: float = 15.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until the instance's SSM agent reports Online.

    Returns on the first online observation. Provider errors during a poll
    count as a failed attempt.

    :param max_attempts: Maximum number of registry polls
    :param poll_interval: Fixed seconds between polls
    :raises AgentNotReady: Agent not online after max_attempts polls
    """
    attempt = 0

    def _check() -> bool:
        nonlocal attempt
        attempt += 1
        agent = agent_status(provider, instance_id)
        if agent is None:
            log(f"SSM agent on '{instance_id}' not registered yet ({attempt}/{max_attempts})")
            return False
        if agent["ping_status"] != ONLINE:
            log(
                f"SSM agent on '{instance_id}' is {agent['ping_status']} "
                f"({attempt}/{max_attempts})"
            )
            return False
        return True

    ready = poll(
        _check,
        attempts=max_attempts,
        interval=poll_interval,
        retry_on=(ProviderAPIError,),
        sleep=sleep,
        label=f"ssm-ready {instance_id}",
    )
    if not ready:
        raise AgentNotReady(instance_id, max_attempts)
    log(f"SSM agent on '{instance_id}' is online")


def agent_diagnostics(provider: AWSProvider) -> list[AgentInfo]:
    """All registered agents and their ping state, for troubleshooting.

    Best effort: a failing lookup is logged and yields an empty list.
    """
    try:
        return provider.describe_agents()
    except Exception as e:
        warn(f"Could not list SSM agents: {e}")
        return []
