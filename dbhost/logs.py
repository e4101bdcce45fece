"""Instance log retrieval.

CloudWatch Logs is read directly, with an SSM tail batch as fallback. The
database and system views are always command batches whose output is read
back with commands.fetch_result.
"""

from datetime import datetime

from .bootscript import INSTALL_LOG
from .commands import dispatch
from .errors import NotConfigured, ProviderAPIError, UnsupportedEngine
from .providers import AWSProvider
from .sqlcmd import MySQLCommands, PostgresCommands
from .types import ManagedInstance
from .utils import log


def log_groups(instance_id: str) -> list[str]:
    """CloudWatch log groups shipped per instance (stream name = instance ID)."""
    return [f"/aws/ec2/{instance_id}", INSTALL_LOG, "/var/log/syslog"]


def tail_commands(engine: str) -> list[str]:
    service = "postgresql" if engine == "postgresql" else "mysql"
    return [
        f"tail -n 50 {INSTALL_LOG}",
        "tail -n 50 /var/log/syslog",
        f"systemctl status {service} --no-pager",
    ]


def database_log_commands(
    engine: str,
    lines: int = 50,
    *,
    master_username: str | None = None,
    master_password: str | None = None,
) -> list[str]:
    """Engine log tail, service status and the current sessions."""
    if engine == "postgresql":
        return [
            f'tail -n {lines} /var/log/postgresql/postgresql-*.log || echo "No PostgreSQL logs found"',
            "systemctl status postgresql --no-pager",
            PostgresCommands().psql(
                "SELECT pid, usename, datname, state, query FROM pg_stat_activity;"
            ),
        ]
    if engine == "mysql":
        if not (master_username and master_password):
            raise NotConfigured("MySQL master credentials required to list sessions")
        return [
            f'tail -n {lines} /var/log/mysql/error.log || echo "No MySQL logs found"',
            "systemctl status mysql --no-pager",
            MySQLCommands(master_password, user=master_username).mysql("SHOW PROCESSLIST;"),
        ]
    raise UnsupportedEngine(engine)


def system_log_commands(lines: int = 50) -> list[str]:
    return [
        f"tail -n {lines} /var/log/syslog",
        f"tail -n {lines} /var/log/cloud-init-output.log",
        f"tail -n {lines} {INSTALL_LOG}",
        "df -h",
        "free -m",
        "uptime",
        "systemctl --failed --no-pager",
    ]


def _to_ms(value: datetime | None) -> int | None:
    return int(value.timestamp() * 1000) if value else None


def fetch_logs(
    provider: AWSProvider,
    instance: ManagedInstance,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    **dispatch_kwargs,
) -> dict:
    """Collect log events for an instance across its log groups.

    Groups that do not exist are skipped. When none of them can be read,
    a tail command batch is dispatched instead and its command ID returned,
    to be read with commands.fetch_result.

    :return: {"logs": [...], "total": n} or {"command_id": ..., "logs": []}
    """
    instance_id = instance["instance_id"]
    events: list[dict] = []
    failures = 0
    groups = log_groups(instance_id)
    for group in groups:
        try:
            for event in provider.get_log_events(
                group, instance_id, _to_ms(start), _to_ms(end), limit
            ):
                events.append({**event, "log_group": group})
        except ProviderAPIError as e:
            failures += 1
            log(f"Log group '{group}' not available: {e.code}")

    if failures == len(groups):
        log("CloudWatch logs not available, reading logs via SSM")
        command_id = dispatch(
            provider, instance, tail_commands(instance["engine"]), **dispatch_kwargs
        )
        return {"instance_id": instance_id, "command_id": command_id, "logs": [], "total": 0}

    events.sort(key=lambda e: e.get("timestamp", 0))
    return {"instance_id": instance_id, "logs": events[:limit], "total": len(events)}
