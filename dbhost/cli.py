#!/usr/bin/env python3
"""Provision and manage database hosts on AWS.

Prerequisites: AWS credentials, DBHOST_VPC_ID, DBHOST_SUBNET_ID and
DBHOST_KEY_PAIR_NAME set in the environment or a .env file.

Usage: uv run dbhost <noun> <verb> [options]

Examples:
    uv run dbhost instance create mydb postgresql 13 dbadmin 'S3cret!pw'
    uv run dbhost instance list
    uv run dbhost user create i-0abc appuser 'S3cret!pw' --privileges SELECT INSERT
    uv run dbhost command result i-0abc 3f2c...
"""

from datetime import datetime

import cyclopts
from rich import print, print_json

from .config import load_settings
from .errors import DbHostError
from .instances import InstanceManager, default_owner
from .store import public_view
from .utils import error, log, setup_logging

app = cyclopts.App(
    name="dbhost", help="Provision and manage database hosts on AWS", sort_key=None
)

instance_app = cyclopts.App(name="instance", help="Manage database instances", sort_key=1)
user_app = cyclopts.App(name="user", help="Manage database users", sort_key=2)
sql_app = cyclopts.App(name="sql", help="Run SQL on an instance", sort_key=3)
command_app = cyclopts.App(name="command", help="Inspect dispatched commands", sort_key=4)
agent_app = cyclopts.App(name="agent", help="Inspect the SSM agent", sort_key=5)
logs_app = cyclopts.App(name="logs", help="Read instance logs", sort_key=6)

app.command(instance_app)
app.command(user_app)
app.command(sql_app)
app.command(command_app)
app.command(agent_app)
app.command(logs_app)


def _manager() -> InstanceManager:
    return InstanceManager(load_settings())


def _print_command(command_id: str | None, instance_id: str) -> None:
    if command_id:
        print(f"  Command: {command_id}")
        print(f"  Check:   dbhost command result {instance_id} {command_id}")


@instance_app.command(name="create")
def create_instance(
    name: str,
    engine: str,
    engine_version: str,
    master_username: str,
    master_password: str,
    *,
    instance_type: str = "t3.micro",
    port: int | None = None,
    owner: str | None = None,
    wait: bool = False,
):
    """Launch an instance and install the database engine.

    :param name: Instance name
    :param engine: postgresql or mysql
    :param engine_version: Engine version (e.g. 13, 8.0)
    :param master_username: Master login created on the engine
    :param master_password: Master password
    :param instance_type: EC2 instance type (t3.micro, t3.small, t3.medium, t3.large)
    :param port: Database port (default: 5432 / 3306)
    :param owner: Owning user (default: DBHOST_OWNER or $USER)
    :param wait: Wait for the SSM agent and run a post-boot health check
    """
    m = _manager()
    owner = owner or default_owner()
    instance = m.create_instance(
        owner,
        name,
        engine,
        engine_version,
        master_username,
        master_password,
        instance_type=instance_type,
        port=port,
    )
    print(f"  Instance: {instance['instance_id']}")
    print(f"  Status:   {instance['status']}")
    if wait:
        command_id = m.wait_until_ready(owner, instance["instance_id"])
        log("Instance ready!")
        _print_command(command_id, instance["instance_id"])


@instance_app.command(name="wait")
def wait_instance(instance_id: str, *, owner: str | None = None):
    """Wait for running state and the SSM agent, then run the health check.

    :param instance_id: EC2 instance ID
    :param owner: Owning user
    """
    command_id = _manager().wait_until_ready(owner or default_owner(), instance_id)
    _print_command(command_id, instance_id)


@instance_app.command(name="list")
def list_instances(
    *,
    status: str | None = None,
    engine: str | None = None,
    owner: str | None = None,
):
    """List instances with live status from EC2.

    :param status: Only show instances in this status
    :param engine: Only show postgresql or mysql instances
    :param owner: Owning user
    """
    instances = _manager().list_instances(
        owner or default_owner(), status=status, engine=engine
    )
    if not instances:
        log("No instances found")
        return

    rows = [
        (
            i["instance_id"],
            i["name"],
            f"{i['engine']} {i['engine_version']}",
            (i.get("network") or {}).get("public_ip") or "N/A",
            i.get("status", "?"),
        )
        for i in instances
    ]
    headers = ("INSTANCE", "NAME", "ENGINE", "IP ADDRESS", "STATUS")
    widths = [max(len(str(r[c])) for r in [headers, *rows]) for c in range(len(headers))]
    print("  " + "  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    print("  " + "  ".join("-" * w for w in widths))
    for row in rows:
        print("  " + "  ".join(str(v).ljust(w) for v, w in zip(row, widths)))


@instance_app.command(name="show")
def show_instance(instance_id: str, *, owner: str | None = None):
    """Show an instance record (passwords redacted).

    :param instance_id: EC2 instance ID
    :param owner: Owning user
    """
    instance = _manager().get_instance(owner or default_owner(), instance_id)
    print_json(data=public_view(instance))


@instance_app.command(name="start")
def start_instance(instance_id: str, *, owner: str | None = None):
    """Start a stopped instance."""
    instance = _manager().start_instance(owner or default_owner(), instance_id)
    log(f"Instance start initiated ('{instance['status']}')")


@instance_app.command(name="stop")
def stop_instance(instance_id: str, *, owner: str | None = None):
    """Stop a running instance."""
    instance = _manager().stop_instance(owner or default_owner(), instance_id)
    log(f"Instance stop initiated ('{instance['status']}')")


@instance_app.command(name="terminate")
def terminate_instance(
    instance_id: str, *, owner: str | None = None, force: bool = False
):
    """Terminate an instance. The local record is kept as history.

    :param instance_id: EC2 instance ID
    :param owner: Owning user
    :param force: Skip confirmation prompt
    """
    if not force:
        confirm = input(f"Terminate instance '{instance_id}'? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return
    instance = _manager().terminate_instance(owner or default_owner(), instance_id)
    log(f"Instance termination initiated ('{instance['status']}')")


@instance_app.command(name="ports")
def update_ports(
    instance_id: str,
    ports: list[int],
    *,
    protocol: str = "tcp",
    owner: str | None = None,
):
    """Open ports in the instance's security group.

    :param instance_id: EC2 instance ID
    :param ports: Port numbers
    :param protocol: tcp or udp
    :param owner: Owning user
    """
    instance = _manager().update_ports(
        owner or default_owner(),
        instance_id,
        [{"port": p, "protocol": protocol} for p in ports],
    )
    print_json(data=instance["network"])


@instance_app.command(name="connection")
def connection_info(instance_id: str, *, owner: str | None = None):
    """Show host, port and connection string (no passwords)."""
    print_json(data=_manager().connection_info(owner or default_owner(), instance_id))


@user_app.command(name="create")
def create_user(
    instance_id: str,
    username: str,
    password: str,
    *,
    privileges: list[str] | None = None,
    owner: str | None = None,
):
    """Create a database user.

    :param instance_id: EC2 instance ID
    :param username: New username
    :param password: New user's password
    :param privileges: Privileges (default: SELECT INSERT UPDATE DELETE)
    :param owner: Owning user
    """
    result = _manager().create_user(
        owner or default_owner(), instance_id, username, password, privileges
    )
    if result["queued"]:
        log(f"User '{username}' recorded as pending: {result.get('error')}")
        print(f"  Retry: dbhost user retry {instance_id}")
    else:
        log(f"User '{username}' creation initiated")
    _print_command(result["command_id"], instance_id)


@user_app.command(name="list")
def list_users(instance_id: str, *, remote: bool = False, owner: str | None = None):
    """List database users.

    :param instance_id: EC2 instance ID
    :param remote: Query the engine itself instead of the local record
    :param owner: Owning user
    """
    m = _manager()
    owner = owner or default_owner()
    if remote:
        _print_command(m.list_remote_users(owner, instance_id), instance_id)
        return
    print_json(data=m.list_users(owner, instance_id))


@user_app.command(name="update")
def update_user(
    instance_id: str,
    username: str,
    *,
    privileges: list[str] | None = None,
    password: str | None = None,
    owner: str | None = None,
):
    """Replace a user's privileges and/or password.

    :param instance_id: EC2 instance ID
    :param username: Database user
    :param privileges: New privilege set
    :param password: New password
    :param owner: Owning user
    """
    result = _manager().update_user(
        owner or default_owner(),
        instance_id,
        username,
        privileges=privileges,
        password=password,
    )
    if result["command_id"] is None:
        log("Nothing to update")
    _print_command(result["command_id"], instance_id)


@user_app.command(name="delete")
def delete_user(instance_id: str, username: str, *, owner: str | None = None):
    """Revoke privileges and drop a database user."""
    command_id = _manager().delete_user(owner or default_owner(), instance_id, username)
    _print_command(command_id, instance_id)


@user_app.command(name="retry")
def retry_pending_users(instance_id: str, *, owner: str | None = None):
    """Re-dispatch creation of users recorded while the agent was unreachable."""
    dispatched = _manager().retry_pending_users(owner or default_owner(), instance_id)
    if not dispatched:
        log("No pending users")
    for username, command_id in dispatched.items():
        print(f"  {username}: {command_id}")


@user_app.command(name="repair")
def repair_user(instance_id: str, username: str, *, owner: str | None = None):
    """Re-grant a user's privileges on existing and future objects."""
    command_id = _manager().repair_user_privileges(
        owner or default_owner(), instance_id, username
    )
    _print_command(command_id, instance_id)


@sql_app.command(name="exec")
def execute_sql(
    instance_id: str,
    sql: str,
    *,
    database: str | None = None,
    owner: str | None = None,
):
    """Run one SQL statement as the database superuser/master.

    :param instance_id: EC2 instance ID
    :param sql: SQL statement
    :param database: Database to connect to
    :param owner: Owning user
    """
    command_id = _manager().execute_sql(
        owner or default_owner(), instance_id, sql, database
    )
    _print_command(command_id, instance_id)


@command_app.command(name="result")
def command_result(instance_id: str, command_id: str, *, owner: str | None = None):
    """Show status and output of a dispatched command."""
    result = _manager().command_result(owner or default_owner(), instance_id, command_id)
    colour = "green" if result["status"] == "Success" else "yellow"
    print(f"[{colour}]{result['status']}[/{colour}]: {result['message']}")
    if result["stdout"]:
        print(result["stdout"])
    if result["stderr"]:
        print(f"[red]{result['stderr']}[/red]")


@agent_app.command(name="status")
def agent_status(instance_id: str, *, owner: str | None = None):
    """Check whether the instance's SSM agent is registered and online."""
    print_json(data=_manager().agent_status(owner or default_owner(), instance_id))


@agent_app.command(name="diagnostics")
def agent_diagnostics():
    """List every SSM-registered instance and its ping status."""
    agents = _manager().agent_diagnostics()
    if not agents:
        log("No SSM agents registered")
    for agent in agents:
        print(f"  {agent['instance_id']}  {agent['ping_status']}  {agent.get('platform', '')}")


@agent_app.command(name="test")
def test_agent(instance_id: str, *, owner: str | None = None):
    """Dispatch a trivial command batch to test SSM connectivity."""
    command_id = _manager().test_agent(owner or default_owner(), instance_id)
    _print_command(command_id, instance_id)


@logs_app.command(name="show")
def show_logs(
    instance_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    owner: str | None = None,
):
    """Show CloudWatch log events, or dispatch a tail command if none exist.

    :param instance_id: EC2 instance ID
    :param start: Earliest event time
    :param end: Latest event time
    :param limit: Maximum events
    :param owner: Owning user
    """
    result = _manager().instance_logs(
        owner or default_owner(), instance_id, start, end, limit
    )
    if result.get("command_id"):
        _print_command(result["command_id"], instance_id)
        return
    for event in result["logs"]:
        print(f"  [{event['log_group']}] {event.get('message', '').rstrip()}")


@logs_app.command(name="database")
def database_logs(
    instance_id: str, *, lines: int = 50, owner: str | None = None
):
    """Tail the engine log and list active sessions.

    :param instance_id: EC2 instance ID
    :param lines: Log lines to tail
    :param owner: Owning user
    """
    command_id = _manager().database_logs(owner or default_owner(), instance_id, lines)
    _print_command(command_id, instance_id)


@logs_app.command(name="system")
def system_logs(instance_id: str, *, lines: int = 50, owner: str | None = None):
    """Tail syslog, cloud-init and install logs, plus disk and memory usage."""
    command_id = _manager().system_logs(owner or default_owner(), instance_id, lines)
    _print_command(command_id, instance_id)


def main():
    setup_logging()
    try:
        app()
    except DbHostError as e:
        error(str(e))


if __name__ == "__main__":
    main()
