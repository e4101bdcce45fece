from dataclasses import replace

import pytest

from dbhost.errors import (
    AgentNotReady,
    InstanceNotFound,
    InstanceNotRunning,
    NotConfigured,
    ProviderAPIError,
    ValidationError,
)
from dbhost.instances import AGENT_TEST_COMMANDS, InstanceManager, health_commands


def _user(username="appuser", pending=False):
    return {
        "username": username,
        "password": "X1!aaaaa",
        "privileges": ["SELECT"],
        "created_at": "2026-01-01T00:00:00+00:00",
        "pending": pending,
    }


# Instances


def test_create_instance_records_pending_launch(manager, provider, store):
    instance = manager.create_instance(
        "alice", "orders", "postgresql", "13", "dbadmin", "Master1!pw"
    )

    assert instance["status"] == "pending"
    assert instance["port"] == 5432
    assert instance["network"]["security_group_ids"] == ["sg-00000001"]
    assert [p["port"] for p in instance["network"]["ports"]] == [22, 5432]
    assert store.load(instance["instance_id"])["owner"] == "alice"

    (_, sg_vpc, sg_engine, sg_port), = provider.called("create_security_group")
    assert (sg_vpc, sg_engine, sg_port) == ("vpc-123", "postgresql", 5432)
    (_, launch), = provider.called("launch_instance")
    assert "# >>> postgresql-13" in launch["user_data"]
    assert launch["tags"]["Owner"] == "alice"
    assert launch["subnet_id"] == "subnet-123"


def test_create_instance_custom_port(manager, provider):
    instance = manager.create_instance(
        "alice", "shop", "mysql", "8.0", "dbadmin", "Master1!pw", port=3307
    )
    (_, launch), = provider.called("launch_instance")
    assert instance["port"] == 3307
    assert "port = 3307" in launch["user_data"]


@pytest.mark.parametrize(
    "args,kwargs",
    [
        (("", "postgresql", "13", "dbadmin", "Master1!pw"), {}),
        (("orders", "postgresql", "13", "db", "Master1!pw"), {}),
        (("orders", "postgresql", "13", "dbadmin", "weak"), {}),
        (("orders", "postgresql", "13", "dbadmin", "Master1!pw"), {"instance_type": "m5.24xlarge"}),
        (("orders", "postgresql", "13", "dbadmin", "Master1!pw"), {"port": 70000}),
    ],
)
def test_create_instance_validates_before_launching(manager, provider, args, kwargs):
    with pytest.raises(ValidationError):
        manager.create_instance("alice", *args, **kwargs)
    assert provider.calls == []


def test_create_instance_needs_launch_infrastructure(settings, provider, store):
    manager = InstanceManager(
        replace(settings, subnet_id=None), provider=provider, store=store
    )
    with pytest.raises(NotConfigured) as exc:
        manager.create_instance("alice", "orders", "postgresql", "13", "dbadmin", "Master1!pw")
    assert "DBHOST_SUBNET_ID" in str(exc.value)
    assert provider.calls == []


def test_wait_until_ready_dispatches_health_check(manager, provider, store):
    instance = manager.create_instance(
        "alice", "orders", "postgresql", "13", "dbadmin", "Master1!pw"
    )
    instance_id = instance["instance_id"]
    provider.agents[instance_id] = "Online"

    command_id = manager.wait_until_ready("alice", instance_id)

    assert command_id.startswith("cmd-")
    assert provider.sent == [(instance_id, health_commands("postgresql", 5432), 600)]
    assert store.load(instance_id)["status"] == "running"


def test_instances_are_scoped_to_owner(manager, make_instance):
    make_instance()
    with pytest.raises(InstanceNotFound):
        manager.get_instance("mallory", "i-00000001")
    with pytest.raises(InstanceNotFound):
        manager.terminate_instance("mallory", "i-00000001")


def test_list_instances_reconciles_and_filters(manager, provider, make_instance):
    make_instance(instance_id="i-a", status="pending")
    make_instance(instance_id="i-b", status="running")
    make_instance(instance_id="i-c", owner="bob")
    provider.states["i-a"] = {"state": "running", "public_ip": "198.51.100.1"}

    everything = manager.list_instances("alice")
    running = manager.list_instances("alice", status="running")

    assert {i["instance_id"] for i in everything} == {"i-a", "i-b"}
    assert {i["instance_id"] for i in running} == {"i-a", "i-b"}
    assert manager.list_instances("alice", status="stopped") == []


def test_start_stop_terminate(manager, provider, make_instance):
    make_instance(status="running")
    assert manager.stop_instance("alice", "i-00000001")["status"] == "stopping"
    assert manager.terminate_instance("alice", "i-00000001")["status"] == "terminating"
    assert [c[0] for c in provider.calls] == ["stop_instance", "terminate_instance"]


def test_update_ports(manager, provider, make_instance):
    make_instance()
    instance = manager.update_ports(
        "alice", "i-00000001", [{"port": 6432, "protocol": "tcp", "description": "pgbouncer"}]
    )
    assert provider.called("authorize_port") == [("authorize_port", "sg-1", 6432, "tcp")]
    assert instance["network"]["ports"] == [
        {"port": 6432, "protocol": "tcp", "description": "pgbouncer"}
    ]


def test_update_ports_rejects_bad_protocol(manager, provider, make_instance):
    make_instance()
    with pytest.raises(ValidationError):
        manager.update_ports("alice", "i-00000001", [{"port": 80, "protocol": "icmp"}])
    assert provider.called("authorize_port") == []


def test_connection_info(manager, make_instance):
    make_instance(database_users=[_user()])
    info = manager.connection_info("alice", "i-00000001")
    assert info["host"] == "203.0.113.10"
    assert info["connection_string"] == "postgresql://dbadmin@203.0.113.10:5432/postgres"
    assert "password" not in info["users"][0]


def test_connection_info_needs_public_ip(manager, make_instance):
    make_instance(status="stopped")
    with pytest.raises(InstanceNotRunning):
        manager.connection_info("alice", "i-00000001")


# Database users


def test_create_user_dispatches_and_records(manager, provider, store, make_instance):
    make_instance()
    result = manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa", ["select"])

    assert result["command_id"].startswith("cmd-")
    assert result["queued"] is False
    assert result["user"]["privileges"] == ["SELECT"]
    assert "password" not in result["user"]
    (_, commands, _), = provider.sent
    assert len(commands) == 5

    (user,) = store.load("i-00000001")["database_users"]
    assert user["username"] == "appuser"
    assert user["pending"] is False


def test_create_user_defaults_privileges(manager, make_instance):
    make_instance()
    result = manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa")
    assert result["user"]["privileges"] == ["SELECT", "INSERT", "UPDATE", "DELETE"]


def test_create_user_rejects_master_and_duplicates(manager, provider, make_instance):
    make_instance(database_users=[_user()])
    with pytest.raises(ValidationError):
        manager.create_user("alice", "i-00000001", "dbadmin", "X1!aaaaa")
    with pytest.raises(ValidationError):
        manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa")
    assert provider.sent == []


def test_postgres_user_recorded_as_pending_when_agent_down(manager, provider, store, make_instance):
    make_instance(engine="postgresql")
    del provider.agents["i-00000001"]

    result = manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa")

    assert result["command_id"] is None
    assert result["queued"] is True
    assert "error" in result
    (user,) = store.load("i-00000001")["database_users"]
    assert user["pending"] is True


def test_mysql_user_not_recorded_when_agent_down(manager, provider, store, make_instance):
    make_instance(engine="mysql")
    del provider.agents["i-00000001"]

    with pytest.raises(AgentNotReady):
        manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa")
    assert store.load("i-00000001")["database_users"] == []


def test_mysql_user_not_recorded_when_send_fails(manager, provider, store, make_instance):
    make_instance(engine="mysql")
    provider.send_error = ProviderAPIError("SendCommand", "InvalidInstanceId", "gone")

    with pytest.raises(ProviderAPIError):
        manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa")
    assert store.load("i-00000001")["database_users"] == []


def test_create_user_on_stopped_instance(manager, provider, store, make_instance):
    make_instance(status="stopped")
    with pytest.raises(InstanceNotRunning):
        manager.create_user("alice", "i-00000001", "appuser", "X1!aaaaa")
    assert provider.sent == []
    assert store.load("i-00000001")["database_users"] == []


def test_retry_pending_users(manager, provider, store, make_instance):
    make_instance(database_users=[_user("appuser", pending=True), _user("reporter")])

    dispatched = manager.retry_pending_users("alice", "i-00000001")

    assert list(dispatched) == ["appuser"]
    assert len(provider.sent) == 1
    users = {u["username"]: u for u in store.load("i-00000001")["database_users"]}
    assert users["appuser"]["pending"] is False


def test_list_users_hides_passwords(manager, make_instance):
    make_instance(database_users=[_user()])
    result = manager.list_users("alice", "i-00000001")
    assert result["master_username"] == "dbadmin"
    assert result["users"][0]["username"] == "appuser"
    assert "password" not in result["users"][0]


def test_update_user_batches_privileges_and_password(manager, provider, store, make_instance):
    make_instance(database_users=[_user()])

    result = manager.update_user(
        "alice", "i-00000001", "appuser", privileges=["insert"], password="N3w!pass"
    )

    assert result["command_id"].startswith("cmd-")
    (_, commands, _), = provider.sent
    joined = " ".join(commands)
    assert "GRANT INSERT ON ALL TABLES" in joined
    assert "WITH PASSWORD 'N3w!pass'" in joined
    (user,) = store.load("i-00000001")["database_users"]
    assert user["privileges"] == ["INSERT"]
    assert user["password"] == "N3w!pass"


def test_update_unknown_user(manager, make_instance):
    make_instance()
    with pytest.raises(ValidationError):
        manager.update_user("alice", "i-00000001", "ghost", privileges=["SELECT"])


def test_delete_user(manager, provider, store, make_instance):
    make_instance(database_users=[_user()])

    command_id = manager.delete_user("alice", "i-00000001", "appuser")

    assert command_id.startswith("cmd-")
    (_, commands, _), = provider.sent
    assert "DROP ROLE IF EXISTS appuser;" in commands[-1]
    assert store.load("i-00000001")["database_users"] == []


def test_master_user_cannot_be_deleted(manager, provider, make_instance):
    make_instance()
    with pytest.raises(ValidationError):
        manager.delete_user("alice", "i-00000001", "dbadmin")
    assert provider.sent == []


def test_repair_user_privileges(manager, provider, make_instance):
    make_instance(database_users=[_user()])
    manager.repair_user_privileges("alice", "i-00000001", "appuser")
    (_, commands, _), = provider.sent
    assert any("ALTER DEFAULT PRIVILEGES" in c for c in commands)


def test_list_remote_users_mysql(manager, provider, make_instance):
    make_instance(engine="mysql")
    manager.list_remote_users("alice", "i-00000001")
    (_, commands, _), = provider.sent
    assert "FROM mysql.user" in commands[0]


# Commands, agent and logs


def test_execute_sql(manager, provider, make_instance):
    make_instance()
    manager.execute_sql("alice", "i-00000001", "SELECT 1;", database="shop")
    assert provider.sent[0][1] == ['sudo -u postgres psql -d shop -c "SELECT 1;"']


@pytest.mark.parametrize(
    "sql,database", [("   ", None), ("SELECT 1;", "shop; rm -rf /")]
)
def test_execute_sql_validation(manager, provider, make_instance, sql, database):
    make_instance()
    with pytest.raises(ValidationError):
        manager.execute_sql("alice", "i-00000001", sql, database=database)
    assert provider.sent == []


def test_command_result(manager, provider, make_instance):
    make_instance()
    provider.invocations[("cmd-1", "i-00000001")] = {
        "Status": "Success",
        "StandardOutputContent": " 1\n",
    }
    result = manager.command_result("alice", "i-00000001", "cmd-1")
    assert result["is_complete"] is True
    assert result["stdout"] == " 1\n"


def test_agent_status(manager, provider, make_instance):
    make_instance()
    assert manager.agent_status("alice", "i-00000001")["online"] is True
    provider.agents["i-00000001"] = "ConnectionLost"
    status = manager.agent_status("alice", "i-00000001")
    assert status["registered"] is True
    assert status["online"] is False
    del provider.agents["i-00000001"]
    assert manager.agent_status("alice", "i-00000001") == {
        "registered": False,
        "online": False,
    }


def test_test_agent(manager, provider, make_instance):
    make_instance()
    manager.test_agent("alice", "i-00000001")
    assert provider.sent[0][1] == AGENT_TEST_COMMANDS


def test_instance_logs_merges_groups_by_time(manager, provider, make_instance):
    make_instance()
    provider.log_events["/aws/ec2/i-00000001"] = [{"timestamp": 20, "message": "b"}]
    provider.log_events["/var/log/syslog"] = [{"timestamp": 10, "message": "a"}]

    result = manager.instance_logs("alice", "i-00000001")

    assert [e["message"] for e in result["logs"]] == ["a", "b"]
    assert result["logs"][0]["log_group"] == "/var/log/syslog"
    assert result["total"] == 2
    assert provider.sent == []


def test_instance_logs_falls_back_to_tail_command(manager, provider, make_instance):
    make_instance()

    result = manager.instance_logs("alice", "i-00000001")

    assert result["command_id"].startswith("cmd-")
    assert result["logs"] == []
    (_, commands, _), = provider.sent
    assert commands[0] == "tail -n 50 /var/log/dbhost/install.log"


@pytest.mark.parametrize("username", ["bob; DROP DATABASE postgres", "ghost"])
def test_delete_user_only_accepts_recorded_users(manager, provider, make_instance, username):
    make_instance(database_users=[_user()])
    with pytest.raises(ValidationError):
        manager.delete_user("alice", "i-00000001", username)
    assert provider.sent == []


def test_update_user_rejects_injected_username(manager, provider, make_instance):
    make_instance(database_users=[_user()])
    with pytest.raises(ValidationError):
        manager.update_user("alice", "i-00000001", "appuser; DROP TABLE x", password="N3w!pass")
    assert provider.sent == []


def test_postgres_usernames_differing_in_case_are_one_user(manager, provider, store, make_instance):
    make_instance(engine="postgresql")
    result = manager.create_user("alice", "i-00000001", "AppUser", "X1!aaaaa")
    assert result["user"]["username"] == "appuser"

    with pytest.raises(ValidationError):
        manager.create_user("alice", "i-00000001", "appuser", "Y2!bbbbb")
    with pytest.raises(ValidationError):
        manager.create_user("alice", "i-00000001", "DBAdmin", "Y2!bbbbb")
    assert len(store.load("i-00000001")["database_users"]) == 1
    assert len(provider.sent) == 1

    manager.delete_user("alice", "i-00000001", "APPUSER")
    assert "DROP ROLE IF EXISTS appuser;" in provider.sent[-1][1][-1]
    assert store.load("i-00000001")["database_users"] == []


def test_mysql_usernames_are_case_sensitive(manager, store, make_instance):
    make_instance(engine="mysql")
    manager.create_user("alice", "i-00000001", "AppUser", "X1!aaaaa")
    manager.create_user("alice", "i-00000001", "appuser", "Y2!bbbbb")
    assert [u["username"] for u in store.load("i-00000001")["database_users"]] == [
        "AppUser",
        "appuser",
    ]


def test_retry_marks_each_user_as_it_is_sent(manager, provider, store, make_instance):
    make_instance(database_users=[_user("first", pending=True), _user("second", pending=True)])
    send = provider.send_command

    def send_once(instance_id, commands, timeout):
        if provider.sent:
            raise ProviderAPIError("SendCommand", "Throttling", "slow down")
        return send(instance_id, commands, timeout)

    provider.send_command = send_once
    with pytest.raises(ProviderAPIError):
        manager.retry_pending_users("alice", "i-00000001")

    users = {u["username"]: u for u in store.load("i-00000001")["database_users"]}
    assert users["first"]["pending"] is False
    assert users["second"]["pending"] is True


def test_database_logs_postgres(manager, provider, make_instance):
    make_instance(engine="postgresql")
    command_id = manager.database_logs("alice", "i-00000001", lines=20)

    assert command_id.startswith("cmd-")
    (_, commands, _), = provider.sent
    assert commands[0].startswith("tail -n 20 /var/log/postgresql/")
    assert "pg_stat_activity" in commands[-1]


def test_database_logs_mysql_uses_master_login(manager, provider, make_instance):
    make_instance(engine="mysql")
    manager.database_logs("alice", "i-00000001")
    (_, commands, _), = provider.sent
    assert commands[0].startswith("tail -n 50 /var/log/mysql/error.log")
    assert commands[-1] == 'mysql -u dbadmin -p"Master1!pw" -e "SHOW PROCESSLIST;"'


def test_system_logs(manager, provider, make_instance):
    make_instance()
    manager.system_logs("alice", "i-00000001", lines=10)
    (_, commands, _), = provider.sent
    assert "tail -n 10 /var/log/cloud-init-output.log" in commands
    assert "tail -n 10 /var/log/dbhost/install.log" in commands
    assert {"df -h", "free -m"} <= set(commands)


def test_log_batches_reject_bad_line_count(manager, provider, make_instance):
    make_instance()
    with pytest.raises(ValidationError):
        manager.system_logs("alice", "i-00000001", lines=0)
    with pytest.raises(ValidationError):
        manager.database_logs("alice", "i-00000001", lines=-5)
    assert provider.sent == []
