"""Instance manager: the operations the outer layers call.

Composes the boot planner, provider, readiness tracker, dispatcher,
lifecycle and command generator around the instance store. Every action
on one instance runs under that instance's lock; different instances are
independent.
"""

import os
import re
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from . import lifecycle, logs, readiness
from .bootscript import plan_boot
from .commands import dispatch, fetch_result
from .config import Settings
from .errors import (
    AgentNotReady,
    InstanceNotRunning,
    ProviderAPIError,
    UnsupportedEngine,
    ValidationError,
)
from .providers import AWSProvider
from .sqlcmd import (
    DEFAULT_PRIVILEGES,
    generate,
    normalize_username,
    query_command,
    repair_privileges,
    validate_password,
    validate_privileges,
    validate_username,
)
from .store import InstanceStore, connection_string, public_view
from .types import (
    DEFAULT_PORTS,
    ENGINES,
    INSTANCE_TYPES,
    CommandResult,
    DatabaseUser,
    ManagedInstance,
    PortRule,
)
from .utils import log, utcnow, warn

RECORD_ANYWAY = "record_anyway"
REJECT_RECORD = "reject_record"

# What happens to the local user record when the create_user dispatch fails.
# PostgreSQL keeps the user as pending so retry_pending_users can replay the
# (idempotent) create; MySQL reports the failure and records nothing.
DISPATCH_FAILURE_POLICY = {
    "postgresql": RECORD_ANYWAY,
    "mysql": REJECT_RECORD,
}

AGENT_TEST_COMMANDS = ['echo "SSM Test: $(date)"', "whoami", "pwd"]
DATABASE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def instance_lock(instance_id: str) -> Iterator[None]:
    """Serialize lifecycle and command actions for one instance."""
    with _locks_guard:
        lock = _locks.setdefault(instance_id, threading.Lock())
    with lock:
        yield


def default_owner() -> str:
    return os.getenv("DBHOST_OWNER") or os.getenv("USER", "unknown")


def _is_master(instance: ManagedInstance, username: str) -> bool:
    engine = instance["engine"]
    return normalize_username(engine, username) == normalize_username(
        engine, instance["master_username"]
    )


def _find_user(instance: ManagedInstance, username: str) -> DatabaseUser | None:
    """Recorded user the engine would resolve ``username`` to, if any."""
    key = normalize_username(instance["engine"], username)
    for user in instance["database_users"]:
        if normalize_username(instance["engine"], user["username"]) == key:
            return user
    return None


def health_commands(engine: str, port: int) -> list[str]:
    """Post-boot check: is the engine up and listening on its port."""
    service = "postgresql" if engine == "postgresql" else "mysql"
    return [
        f"systemctl is-active {service}",
        f"ss -ltn | grep -q ':{port} ' && echo 'listening on {port}'",
        "tail -n 20 /var/log/dbhost/install.log",
    ]


class InstanceManager:
    """Entry point for instance, user and command operations.

    :param settings: Process configuration
    :param provider: AWS provider (built from settings if omitted)
    :param store: Instance store (settings.data_dir if omitted)
    :param sleep: Sleep used by readiness polling
    """

    def __init__(
        self,
        settings: Settings,
        provider: AWSProvider | None = None,
        store: InstanceStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.provider = provider or AWSProvider(settings)
        self.store = store or InstanceStore(settings.data_dir)
        self.sleep = sleep

    def _dispatch(self, instance: ManagedInstance, commands: list[str]) -> str:
        return dispatch(
            self.provider,
            instance,
            commands,
            max_attempts=self.settings.agent_attempts,
            poll_interval=self.settings.agent_interval,
            timeout=self.settings.command_timeout,
            sleep=self.sleep,
        )

    def _current(self, owner: str, instance_id: str) -> ManagedInstance:
        """Owned record refreshed from EC2 (best effort)."""
        self.store.load_owned(instance_id, owner)
        return lifecycle.refresh_instance(self.provider, self.store, instance_id)

    def _root_password(self, instance: ManagedInstance) -> str | None:
        return instance.get("master_password") or self.settings.default_db_password

    # Instances

    def create_instance(
        self,
        owner: str,
        name: str,
        engine: str,
        engine_version: str,
        master_username: str,
        master_password: str,
        *,
        instance_type: str = "t3.micro",
        port: int | None = None,
    ) -> ManagedInstance:
        """Plan the boot script, launch the VM and record it as pending."""
        if not 1 <= len(name) <= 50:
            raise ValidationError("Instance name must be 1-50 characters")
        if engine not in ENGINES:
            raise UnsupportedEngine(engine)
        if not engine_version:
            raise ValidationError("Database version is required")
        if instance_type not in INSTANCE_TYPES:
            raise ValidationError(
                f"Invalid instance type '{instance_type}'. Valid: {', '.join(INSTANCE_TYPES)}"
            )
        validate_username(master_username)
        validate_password(master_password)
        port = port or DEFAULT_PORTS[engine]
        if not 1 <= port <= 65535:
            raise ValidationError("Port must be between 1 and 65535")
        self.settings.require_launch_infrastructure()

        user_data = plan_boot(engine, engine_version, master_username, master_password, port)
        sg_id = self.provider.create_security_group(
            self.settings.vpc_id, f"dbhost-{engine}-{int(time.time() * 1000)}", engine, port
        )
        tags = {"Name": name, "DatabaseType": engine, "ManagedBy": "dbhost", "Owner": owner}
        instance_id = self.provider.launch_instance(
            name=name,
            instance_type=instance_type,
            user_data=user_data,
            security_group_id=sg_id,
            subnet_id=self.settings.subnet_id,
            key_pair_name=self.settings.key_pair_name,
            tags=tags,
        )

        instance: ManagedInstance = {
            "instance_id": instance_id,
            "owner": owner,
            "name": name,
            "engine": engine,
            "engine_version": engine_version,
            "instance_type": instance_type,
            "region": self.settings.region,
            "port": port,
            "master_username": master_username,
            "master_password": master_password,
            "database_users": [],
            "network": {
                "vpc_id": self.settings.vpc_id,
                "subnet_id": self.settings.subnet_id,
                "security_group_ids": [sg_id],
                "public_ip": None,
                "private_ip": None,
                "ports": [
                    {"port": 22, "protocol": "tcp", "description": "SSH access"},
                    {"port": port, "protocol": "tcp", "description": f"{engine} access"},
                ],
            },
            "key_pair_name": self.settings.key_pair_name,
            "tags": tags,
            "status": "pending",
            "created_at": utcnow(),
            "launch_time": None,
            "termination_time": None,
            "last_status_check": None,
        }
        self.store.save(instance)
        log(f"Instance '{name}' launched as '{instance_id}' ({engine} {engine_version})")
        return instance

    def wait_until_ready(self, owner: str, instance_id: str) -> str:
        """Wait for EC2 running and the SSM agent, then dispatch the post-boot check.

        :return: Command ID of the health check batch
        """
        self.store.load_owned(instance_id, owner)
        log(f"Waiting for '{instance_id}' to reach running...")
        self.provider.wait_until_running(instance_id)
        with instance_lock(instance_id):
            instance = lifecycle.refresh_instance(self.provider, self.store, instance_id)
            return self._dispatch(
                instance, health_commands(instance["engine"], instance["port"])
            )

    def get_instance(self, owner: str, instance_id: str) -> ManagedInstance:
        return self._current(owner, instance_id)

    def list_instances(
        self, owner: str, *, status: str | None = None, engine: str | None = None
    ) -> list[ManagedInstance]:
        instances = self.store.find(owner, engine=engine)
        instances = lifecycle.reconcile(self.provider, self.store, instances)
        if status is not None:
            instances = [i for i in instances if i.get("status") == status]
        return instances

    def start_instance(self, owner: str, instance_id: str) -> ManagedInstance:
        self.store.load_owned(instance_id, owner)
        with instance_lock(instance_id):
            return lifecycle.start_instance(self.provider, self.store, instance_id)

    def stop_instance(self, owner: str, instance_id: str) -> ManagedInstance:
        self.store.load_owned(instance_id, owner)
        with instance_lock(instance_id):
            return lifecycle.stop_instance(self.provider, self.store, instance_id)

    def terminate_instance(self, owner: str, instance_id: str) -> ManagedInstance:
        self.store.load_owned(instance_id, owner)
        with instance_lock(instance_id):
            return lifecycle.terminate_instance(self.provider, self.store, instance_id)

    def update_ports(
        self, owner: str, instance_id: str, ports: list[PortRule]
    ) -> ManagedInstance:
        """Open the given ports in the instance's security group and record them."""
        for rule in ports:
            if not 1 <= int(rule.get("port", 0)) <= 65535:
                raise ValidationError("Port must be between 1 and 65535")
            if rule.get("protocol", "tcp") not in ("tcp", "udp"):
                raise ValidationError("Protocol must be tcp or udp")
        instance = self.store.load_owned(instance_id, owner)
        with instance_lock(instance_id):
            for sg_id in instance["network"].get("security_group_ids", [])[:1]:
                for rule in ports:
                    self.provider.authorize_port(
                        sg_id,
                        int(rule["port"]),
                        rule.get("protocol", "tcp"),
                        rule.get("description"),
                    )

            def _mutate(record: ManagedInstance) -> None:
                record["network"]["ports"] = [
                    {
                        "port": int(r["port"]),
                        "protocol": r.get("protocol", "tcp"),
                        "description": r.get("description", ""),
                    }
                    for r in ports
                ]

            return self.store.update(instance_id, _mutate)

    def connection_info(self, owner: str, instance_id: str) -> dict:
        instance = self._current(owner, instance_id)
        if not instance["network"].get("public_ip"):
            raise InstanceNotRunning(instance_id, instance.get("status", "pending"))
        return {
            "host": instance["network"]["public_ip"],
            "port": instance["port"],
            "engine": instance["engine"],
            "master_username": instance["master_username"],
            "connection_string": connection_string(instance),
            "ssl_mode": "prefer" if instance["engine"] == "postgresql" else "PREFERRED",
            "users": public_view(instance)["database_users"],
        }

    # Database users

    def create_user(
        self,
        owner: str,
        instance_id: str,
        username: str,
        password: str,
        privileges: list[str] | None = None,
    ) -> dict:
        """Dispatch the create sequence and record the user.

        If the dispatch fails, DISPATCH_FAILURE_POLICY decides whether the
        user is still recorded (as pending) or the error is raised.

        :return: {"user": public user, "command_id": id or None, "queued": bool}
        """
        validate_username(username)
        validate_password(password)
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            if _is_master(instance, username):
                raise ValidationError(f"'{username}' is the master user")
            if _find_user(instance, username) is not None:
                raise ValidationError(f"Database user '{username}' already exists")
            username = normalize_username(instance["engine"], username)
            privileges = validate_privileges(
                instance["engine"], privileges or DEFAULT_PRIVILEGES
            )
            commands = generate(
                instance["engine"],
                "create_user",
                {
                    "username": username,
                    "password": password,
                    "privileges": privileges,
                    "master_password": self._root_password(instance),
                },
            )

            log(f"Creating database user '{username}' on '{instance_id}'")
            command_id = None
            dispatch_error = None
            try:
                command_id = self._dispatch(instance, commands)
            except (AgentNotReady, ProviderAPIError) as e:
                if DISPATCH_FAILURE_POLICY[instance["engine"]] == REJECT_RECORD:
                    raise
                warn(f"Dispatch failed, recording '{username}' as pending: {e}")
                dispatch_error = str(e)

            user = {
                "username": username,
                "password": password,
                "privileges": privileges,
                "created_at": utcnow(),
                "pending": command_id is None,
            }
            self.store.update(
                instance_id, lambda record: record["database_users"].append(user)
            )

        public_user = {k: v for k, v in user.items() if k != "password"}
        result = {"user": public_user, "command_id": command_id, "queued": command_id is None}
        if dispatch_error:
            result["error"] = dispatch_error
        return result

    def retry_pending_users(self, owner: str, instance_id: str) -> dict[str, str]:
        """Replay the create sequence for users recorded while dispatch failed.

        :return: username -> command ID
        """
        dispatched = {}
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            for user in instance["database_users"]:
                if not user.get("pending"):
                    continue
                commands = generate(
                    instance["engine"],
                    "create_user",
                    {
                        "username": user["username"],
                        "password": user["password"],
                        "privileges": user["privileges"],
                        "master_password": self._root_password(instance),
                    },
                )
                dispatched[user["username"]] = self._dispatch(instance, commands)

                def _mutate(record: ManagedInstance, username=user["username"]) -> None:
                    for u in record["database_users"]:
                        if u["username"] == username:
                            u["pending"] = False

                self.store.update(instance_id, _mutate)
        return dispatched

    def list_users(self, owner: str, instance_id: str) -> dict:
        instance = self.store.load_owned(instance_id, owner)
        return {
            "users": public_view(instance)["database_users"],
            "master_username": instance["master_username"],
            "engine": instance["engine"],
        }

    def list_remote_users(self, owner: str, instance_id: str) -> str:
        """Dispatch the engine's user listing query; read output via command_result."""
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            commands = generate(
                instance["engine"],
                "list_users",
                {"master_password": self._root_password(instance)},
            )
            return self._dispatch(instance, commands)

    def update_user(
        self,
        owner: str,
        instance_id: str,
        username: str,
        *,
        privileges: list[str] | None = None,
        password: str | None = None,
    ) -> dict:
        """Replace a user's privileges and/or password in one command batch."""
        validate_username(username)
        if password is not None:
            validate_password(password)
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            user = _find_user(instance, username)
            if user is None:
                raise ValidationError(f"Database user '{username}' not found")
            username = user["username"]
            params = {
                "username": username,
                "master_password": self._root_password(instance),
            }
            commands: list[str] = []
            if privileges:
                privileges = validate_privileges(instance["engine"], privileges)
                commands += generate(
                    instance["engine"], "grant_privileges", {**params, "privileges": privileges}
                )
            if password:
                commands += generate(
                    instance["engine"], "change_password", {**params, "password": password}
                )
            if not commands:
                return {"command_id": None, "user": username}

            command_id = self._dispatch(instance, commands)

            def _mutate(record: ManagedInstance) -> None:
                for u in record["database_users"]:
                    if u["username"] == username:
                        if privileges:
                            u["privileges"] = privileges
                        if password:
                            u["password"] = password

            self.store.update(instance_id, _mutate)
        return {"command_id": command_id, "user": username}

    def delete_user(self, owner: str, instance_id: str, username: str) -> str:
        """Dispatch the delete sequence, then drop the user from the record.

        Only users recorded on the instance can be deleted.
        """
        validate_username(username)
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            if _is_master(instance, username):
                raise ValidationError("Cannot delete master database user")
            user = _find_user(instance, username)
            if user is None:
                raise ValidationError(f"Database user '{username}' not found")
            username = user["username"]
            commands = generate(
                instance["engine"],
                "delete_user",
                {"username": username, "master_password": self._root_password(instance)},
            )
            command_id = self._dispatch(instance, commands)
            self.store.update(
                instance_id,
                lambda record: record.__setitem__(
                    "database_users",
                    [u for u in record["database_users"] if u["username"] != username],
                ),
            )
        return command_id

    def repair_user_privileges(self, owner: str, instance_id: str, username: str) -> str:
        """Re-apply a user's recorded privileges on existing and future objects."""
        validate_username(username)
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            user = _find_user(instance, username)
            if user is None:
                raise ValidationError(f"Database user '{username}' not found")
            commands = repair_privileges(
                instance["engine"],
                {
                    "username": user["username"],
                    "privileges": user["privileges"],
                    "master_password": self._root_password(instance),
                },
            )
            return self._dispatch(instance, commands)

    # Commands, agent and logs

    def execute_sql(
        self, owner: str, instance_id: str, sql: str, database: str | None = None
    ) -> str:
        if not sql.strip():
            raise ValidationError("Command is required")
        if database is not None and not DATABASE_NAME_RE.match(database):
            raise ValidationError(f"Invalid database name '{database}'")
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            command = query_command(
                instance["engine"],
                sql,
                database=database,
                master_username=instance["master_username"],
                master_password=instance.get("master_password"),
            )
            return self._dispatch(instance, [command])

    def command_result(
        self, owner: str, instance_id: str, command_id: str
    ) -> CommandResult:
        self.store.load_owned(instance_id, owner)
        return fetch_result(self.provider, command_id, instance_id)

    def agent_status(self, owner: str, instance_id: str) -> dict:
        self.store.load_owned(instance_id, owner)
        agent = readiness.agent_status(self.provider, instance_id)
        if agent is None:
            return {"registered": False, "online": False}
        return {
            "registered": True,
            "online": agent["ping_status"] == readiness.ONLINE,
            **agent,
        }

    def agent_diagnostics(self) -> list[dict]:
        return readiness.agent_diagnostics(self.provider)

    def test_agent(self, owner: str, instance_id: str) -> str:
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            return self._dispatch(instance, AGENT_TEST_COMMANDS)

    def instance_logs(
        self,
        owner: str,
        instance_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> dict:
        instance = self.store.load_owned(instance_id, owner)
        return logs.fetch_logs(
            self.provider,
            instance,
            start,
            end,
            limit,
            max_attempts=self.settings.agent_attempts,
            poll_interval=self.settings.agent_interval,
            timeout=self.settings.command_timeout,
            sleep=self.sleep,
        )

    def database_logs(self, owner: str, instance_id: str, lines: int = 50) -> str:
        """Dispatch the engine log tail and session listing; read via command_result."""
        if lines < 1:
            raise ValidationError("lines must be at least 1")
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            commands = logs.database_log_commands(
                instance["engine"],
                lines,
                master_username=instance["master_username"],
                master_password=instance.get("master_password"),
            )
            return self._dispatch(instance, commands)

    def system_logs(self, owner: str, instance_id: str, lines: int = 50) -> str:
        """Dispatch the OS log tails and resource summary; read via command_result."""
        if lines < 1:
            raise ValidationError("lines must be at least 1")
        with instance_lock(instance_id):
            instance = self._current(owner, instance_id)
            return self._dispatch(instance, logs.system_log_commands(lines))
