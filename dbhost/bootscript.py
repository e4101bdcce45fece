"""Boot scripts (EC2 user data) for database instances.

A script is a preamble, one SSM agent block and one engine block, in that
order. Each block starts with a ``# >>> <name>`` marker line so the install
log and tests can tell them apart.
"""

from textwrap import dedent

from .errors import UnsupportedEngine
from .sqlcmd import MySQLCommands, PostgresCommands, shell_double_quote

INSTALL_LOG = "/var/log/dbhost/install.log"
SSM_DEB_URL = (
    "https://s3.amazonaws.com/ec2-downloads-windows/SSMAgent/latest/"
    "debian_amd64/amazon-ssm-agent.deb"
)
AGENT_MARKER = "# >>> ssm-agent"


def _preamble() -> str:
    return dedent(f"""
        #!/bin/bash
        set -u
        export DEBIAN_FRONTEND=noninteractive
        mkdir -p /var/log/dbhost
        log() {{ echo "$(date -u +%Y-%m-%dT%H:%M:%SZ): $*" >> {INSTALL_LOG}; }}
        log "Starting database host bootstrap"
    """).strip()


def agent_block() -> str:
    """Install, force-register and verify the SSM agent.

    snap is tried first (preinstalled on Ubuntu AMIs), the .deb package is
    the fallback. The agent is active under one of two unit names depending
    on which method succeeded.
    """
    return dedent(f"""
        {AGENT_MARKER}
        log "Installing SSM agent"
        if snap install amazon-ssm-agent --classic; then
            SSM_UNIT=snap.amazon-ssm-agent.amazon-ssm-agent.service
        else
            log "snap install failed, falling back to .deb package"
            curl -fsSL -o /tmp/amazon-ssm-agent.deb {SSM_DEB_URL}
            dpkg -i /tmp/amazon-ssm-agent.deb
            SSM_UNIT=amazon-ssm-agent
        fi
        systemctl stop "$SSM_UNIT" || true
        rm -f /var/lib/amazon/ssm/registration
        rm -rf /var/lib/amazon/ssm/Vault/Store/*
        systemctl enable "$SSM_UNIT"
        systemctl restart "$SSM_UNIT"
        sleep 5
        if systemctl is-active --quiet "$SSM_UNIT"; then
            log "SSM agent active ($SSM_UNIT)"
        else
            log "SSM agent NOT active ($SSM_UNIT)"
        fi
    """).strip()


def postgresql_block(
    version: str, master_username: str, master_password: str, port: int
) -> str:
    pg = PostgresCommands()
    literal = pg.sql_literal(master_password)
    conf_dir = f"/etc/postgresql/{version}/main"
    return "\n".join([
        f"# >>> postgresql-{version}",
        f'log "Installing PostgreSQL {version}"',
        "apt-get update",
        "apt-get install -y curl ca-certificates gnupg lsb-release",
        "install -d /usr/share/postgresql-common/pgdg",
        "curl -fsSL -o /usr/share/postgresql-common/pgdg/apt.postgresql.org.asc "
        "https://www.postgresql.org/media/keys/ACCC4CF8.asc",
        'echo "deb [signed-by=/usr/share/postgresql-common/pgdg/apt.postgresql.org.asc] '
        'http://apt.postgresql.org/pub/repos/apt $(lsb_release -cs)-pgdg main" '
        "> /etc/apt/sources.list.d/pgdg.list",
        "apt-get update",
        f"apt-get install -y postgresql-{version} postgresql-contrib",
        "systemctl enable postgresql",
        "systemctl start postgresql",
        pg.psql(f"ALTER USER postgres PASSWORD {literal};"),
        pg.psql(
            f"CREATE ROLE {master_username} WITH LOGIN CREATEDB;",
            tolerate=f"role {master_username} already exists",
        ),
        pg.psql(f"ALTER ROLE {master_username} WITH PASSWORD {literal};"),
        f"sed -i \"s/^#\\?listen_addresses = .*/listen_addresses = '*'/\" {conf_dir}/postgresql.conf",
        f'sed -i "s/^#\\?port = [0-9]*/port = {port}/" {conf_dir}/postgresql.conf',
        f'echo "host all all 0.0.0.0/0 scram-sha-256" >> {conf_dir}/pg_hba.conf',
        "systemctl restart postgresql",
        f'log "PostgreSQL {version} installation completed"',
    ])


def mysql_block(
    version: str, master_username: str, master_password: str, port: int
) -> str:
    # Ubuntu's root@localhost starts on auth_socket, so the first statement
    # runs without a password and switches root to password auth.
    root = MySQLCommands(master_password)
    literal = root.sql_literal(master_password)
    setup_sql = (
        f"ALTER USER 'root'@'localhost' IDENTIFIED WITH caching_sha2_password BY {literal}; "
        "FLUSH PRIVILEGES;"
    )
    return "\n".join([
        f"# >>> mysql-{version}",
        f'log "Installing MySQL {version}"',
        "apt-get update",
        f"apt-get install -y mysql-server-{version} || apt-get install -y mysql-server",
        "systemctl enable mysql",
        "systemctl start mysql",
        f'mysql -u root -e "{shell_double_quote(setup_sql)}"',
        root.mysql(
            f"CREATE USER IF NOT EXISTS {root.account(master_username)} IDENTIFIED BY {literal};"
        ),
        root.mysql(
            f"GRANT ALL PRIVILEGES ON *.* TO {root.account(master_username)} WITH GRANT OPTION;"
        ),
        root.mysql("FLUSH PRIVILEGES;"),
        "cat > /etc/mysql/mysql.conf.d/zz-dbhost.cnf <<'EOF'",
        "[mysqld]",
        "bind-address = 0.0.0.0",
        f"port = {port}",
        "EOF",
        "systemctl restart mysql",
        f'log "MySQL {version} installation completed"',
    ])


ENGINE_BLOCKS = {
    "postgresql": postgresql_block,
    "mysql": mysql_block,
}


def plan_boot(
    engine: str,
    engine_version: str,
    master_username: str,
    master_password: str,
    port: int,
) -> str:
    """Build the user-data script for a new database instance.

    :param engine: postgresql or mysql
    :param engine_version: Engine version (e.g. "13", "8.0")
    :param master_username: Application login created with full rights
    :param master_password: Password for the master login and superuser
    :param port: Port the engine listens on
    :return: Complete bash script
    :raises UnsupportedEngine: Engine not in ENGINE_BLOCKS
    """
    if engine not in ENGINE_BLOCKS:
        raise UnsupportedEngine(engine)
    engine_script = ENGINE_BLOCKS[engine](
        engine_version, master_username, master_password, port
    )
    return "\n\n".join([
        _preamble(),
        agent_block(),
        engine_script,
        'log "Bootstrap finished"',
    ]) + "\n"
