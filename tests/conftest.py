"""Fixtures: an in-memory fake of AWSProvider, and a live instance for integration tests."""

from dataclasses import replace
from uuid import uuid4

import pytest

from dbhost.config import Settings, load_settings
from dbhost.errors import ProviderAPIError
from dbhost.instances import InstanceManager
from dbhost.store import InstanceStore

MAX_INSTANCE_RETRIES = 3


def pytest_addoption(parser):
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run integration tests against real AWS (uses .env settings)",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--live"):
        return
    skip = pytest.mark.skip(reason="needs --live")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


class FakeProvider:
    """Records calls and serves canned EC2/SSM/Logs responses."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.agents: dict[str, str] = {}
        self.agent_errors: list[Exception] = []
        self.states: dict[str, dict] = {}
        self.describe_error: Exception | None = None
        self.send_error: Exception | None = None
        self.invocations: dict[tuple[str, str], dict] = {}
        self.log_events: dict[str, list[dict]] = {}
        self.sent: list[tuple[str, list[str], int]] = []
        self._next = 0

    def _id(self, prefix: str) -> str:
        self._next += 1
        return f"{prefix}-{self._next:08d}"

    def describe_agents(self, instance_id=None):
        self.calls.append(("describe_agents", instance_id))
        if self.agent_errors:
            raise self.agent_errors.pop(0)
        return [
            {"instance_id": iid, "ping_status": status, "platform": "Ubuntu 22.04"}
            for iid, status in self.agents.items()
            if instance_id is None or iid == instance_id
        ]

    def send_command(self, instance_id, commands, timeout):
        self.calls.append(("send_command", instance_id))
        if self.send_error:
            raise self.send_error
        self.sent.append((instance_id, list(commands), timeout))
        return self._id("cmd")

    def get_command_invocation(self, command_id, instance_id):
        self.calls.append(("get_command_invocation", command_id, instance_id))
        if (command_id, instance_id) not in self.invocations:
            raise ProviderAPIError(
                "GetCommandInvocation", "InvocationDoesNotExist", "no invocation"
            )
        return self.invocations[(command_id, instance_id)]

    def describe_instances(self, instance_ids):
        self.calls.append(("describe_instances", tuple(instance_ids)))
        if self.describe_error:
            raise self.describe_error
        return [
            {
                "instance_id": iid,
                "state": self.states[iid]["state"],
                "instance_type": "t3.micro",
                "public_ip": self.states[iid].get("public_ip"),
                "private_ip": self.states[iid].get("private_ip"),
                "launch_time": self.states[iid].get("launch_time"),
            }
            for iid in instance_ids
            if iid in self.states
        ]

    def start_instance(self, instance_id):
        self.calls.append(("start_instance", instance_id))
        return {"InstanceId": instance_id}

    def stop_instance(self, instance_id):
        self.calls.append(("stop_instance", instance_id))
        return {"InstanceId": instance_id}

    def terminate_instance(self, instance_id):
        self.calls.append(("terminate_instance", instance_id))
        return {"InstanceId": instance_id}

    def create_security_group(self, vpc_id, group_name, engine, port):
        self.calls.append(("create_security_group", vpc_id, engine, port))
        return self._id("sg")

    def authorize_port(self, sg_id, port, protocol="tcp", description=None):
        self.calls.append(("authorize_port", sg_id, port, protocol))
        return True

    def launch_instance(self, **kwargs):
        self.calls.append(("launch_instance", kwargs))
        instance_id = self._id("i")
        self.states[instance_id] = {"state": "pending"}
        return instance_id

    def wait_until_running(self, instance_id):
        self.calls.append(("wait_until_running", instance_id))
        self.states[instance_id] = {"state": "running", "public_ip": "203.0.113.10"}

    def get_log_events(self, log_group, log_stream, start_ms=None, end_ms=None, limit=100):
        self.calls.append(("get_log_events", log_group, log_stream))
        if log_group not in self.log_events:
            raise ProviderAPIError("GetLogEvents", "ResourceNotFoundException", "no group")
        return self.log_events[log_group]

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        region="ap-south-1",
        vpc_id="vpc-123",
        subnet_id="subnet-123",
        key_pair_name="dbhost-key",
        data_dir=str(tmp_path / "data"),
        agent_attempts=3,
        agent_interval=0,
    )


@pytest.fixture
def store(settings):
    return InstanceStore(settings.data_dir)


@pytest.fixture
def manager(settings, provider, store):
    return InstanceManager(settings, provider=provider, store=store, sleep=lambda s: None)


@pytest.fixture
def make_instance(store, provider):
    """Save a record (and matching EC2 state) and return it."""

    def _make(engine="postgresql", status="running", instance_id="i-00000001", **extra):
        instance = {
            "instance_id": instance_id,
            "owner": "alice",
            "name": "orders",
            "engine": engine,
            "engine_version": "13" if engine == "postgresql" else "8.0",
            "instance_type": "t3.micro",
            "region": "ap-south-1",
            "port": 5432 if engine == "postgresql" else 3306,
            "master_username": "dbadmin",
            "master_password": "Master1!pw",
            "database_users": [],
            "network": {
                "vpc_id": "vpc-123",
                "subnet_id": "subnet-123",
                "security_group_ids": ["sg-1"],
                "public_ip": "203.0.113.10" if status == "running" else None,
                "private_ip": None,
                "ports": [],
            },
            "status": status,
            "created_at": "2026-01-01T00:00:00+00:00",
            "launch_time": None,
            "termination_time": None,
            "last_status_check": None,
            **extra,
        }
        store.save(instance)
        provider.states[instance_id] = {
            "state": status,
            "public_ip": instance["network"]["public_ip"],
        }
        provider.agents[instance_id] = "Online"
        return instance

    return _make


@pytest.fixture(scope="session")
def live_manager(request, tmp_path_factory):
    settings = replace(load_settings(), data_dir=str(tmp_path_factory.mktemp("live")))
    return InstanceManager(settings)


@pytest.fixture(scope="session")
def live_instance(live_manager):
    """Launch a real PostgreSQL instance, yield its ID, terminate on teardown.

    Retries up to MAX_INSTANCE_RETRIES times if the agent never comes online.
    """
    owner = f"test-{uuid4().hex[:8]}"
    instance_id = None

    for attempt in range(1, MAX_INSTANCE_RETRIES + 1):
        print(f"\n[INFO] Creating instance (attempt {attempt}/{MAX_INSTANCE_RETRIES})...")
        instance = live_manager.create_instance(
            owner, f"test-dbhost-{uuid4().hex[:8]}", "postgresql", "16", "dbadmin", "Test1!password"
        )
        instance_id = instance["instance_id"]
        try:
            live_manager.wait_until_ready(owner, instance_id)
            break
        except Exception:
            print(f"[WARN] Instance {instance_id} never became ready, terminating...")
            try:
                live_manager.terminate_instance(owner, instance_id)
            except Exception:
                pass
            instance_id = None
            if attempt == MAX_INSTANCE_RETRIES:
                pytest.fail(f"No ready instance after {MAX_INSTANCE_RETRIES} attempts")

    try:
        yield owner, instance_id
    finally:
        try:
            live_manager.terminate_instance(owner, instance_id)
        except Exception:
            pass
