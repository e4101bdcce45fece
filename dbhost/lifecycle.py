"""Instance lifecycle: start/stop/terminate actions and reconciliation.

States: pending, running, stopping, stopped, terminating, terminated.
Actions only ever move an instance into a transitional state (pending,
stopping, terminating); the settled states are learnt from EC2 during
reconciliation.
"""

from .errors import InvalidTransition, ProviderAPIError
from .providers import AWSProvider
from .store import InstanceStore
from .types import ManagedInstance
from .utils import log, utcnow, warn

# EC2 instance-state-name -> local status
PROVIDER_STATES = {
    "pending": "pending",
    "running": "running",
    "stopping": "stopping",
    "stopped": "stopped",
    "shutting-down": "terminating",
    "terminated": "terminated",
}

# action -> (statuses that reject it, status set after the provider call)
TRANSITIONS = {
    "start": ({"running", "terminated"}, "pending"),
    "stop": ({"stopped", "terminated"}, "stopping"),
    "terminate": (set(), "terminating"),
}


def check_transition(action: str, status: str) -> str:
    """Validate an action against the current status.

    :return: The status the instance moves to
    :raises InvalidTransition: Action not allowed from ``status``
    """
    rejected, target = TRANSITIONS[action]
    if status in rejected:
        raise InvalidTransition(action, status)
    return target


def _apply(
    provider: AWSProvider, store: InstanceStore, instance_id: str, action: str
) -> ManagedInstance:
    current = store.load(instance_id)
    target = check_transition(action, current.get("status", "pending"))

    if action == "start":
        provider.start_instance(instance_id)
    elif action == "stop":
        provider.stop_instance(instance_id)
    else:
        provider.terminate_instance(instance_id)

    def _mutate(instance: ManagedInstance) -> None:
        instance["status"] = target
        if action == "terminate":
            instance["termination_time"] = utcnow()

    instance = store.update(instance_id, _mutate)
    log(f"Instance '{instance_id}': {action} initiated -> '{target}'")
    return instance


def start_instance(
    provider: AWSProvider, store: InstanceStore, instance_id: str
) -> ManagedInstance:
    return _apply(provider, store, instance_id, "start")


def stop_instance(
    provider: AWSProvider, store: InstanceStore, instance_id: str
) -> ManagedInstance:
    return _apply(provider, store, instance_id, "stop")


def terminate_instance(
    provider: AWSProvider, store: InstanceStore, instance_id: str
) -> ManagedInstance:
    """Terminate from any state; records the termination time."""
    return _apply(provider, store, instance_id, "terminate")


def reconcile(
    provider: AWSProvider, store: InstanceStore, instances: list[ManagedInstance]
) -> list[ManagedInstance]:
    """Refresh status and addresses from EC2 in one batched describe call.

    Records already terminated are not queried. A terminating record that
    EC2 no longer reports becomes terminated; other unreported records are
    left as they are. If EC2 cannot be reached the records are returned
    unchanged.

    :return: The same records, updated where EC2 reported them
    """
    tracked = [i["instance_id"] for i in instances if i.get("status") != "terminated"]
    if not tracked:
        return instances

    try:
        reported = provider.describe_instances(tracked)
    except ProviderAPIError as e:
        warn(f"Reconciliation skipped, serving last known state: {e}")
        return instances

    by_id = {r["instance_id"]: r for r in reported}
    checked_at = utcnow()
    refreshed = []
    for instance in instances:
        remote = by_id.get(instance["instance_id"])
        if remote is None and instance.get("status") == "terminating":
            # EC2 drops terminated instances from describe results after a while
            remote = {
                "state": "terminated",
                "public_ip": None,
                "private_ip": None,
                "launch_time": None,
            }
        elif remote is None:
            refreshed.append(instance)
            continue

        def _mutate(record: ManagedInstance, remote=remote) -> None:
            record["status"] = PROVIDER_STATES.get(remote["state"], record.get("status"))
            network = record.setdefault("network", {})
            network["public_ip"] = remote["public_ip"]
            network["private_ip"] = remote["private_ip"]
            if remote["launch_time"]:
                record["launch_time"] = remote["launch_time"]
            record["last_status_check"] = checked_at

        refreshed.append(store.update(instance["instance_id"], _mutate))
    return refreshed


def refresh_instance(
    provider: AWSProvider, store: InstanceStore, instance_id: str
) -> ManagedInstance:
    return reconcile(provider, store, [store.load(instance_id)])[0]
