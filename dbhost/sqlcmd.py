"""Database user/privilege command generation.

Each engine has a small builder that turns structured arguments into shell
command lines run by the SSM agent (as root). Escaping happens in exactly
two places:

- ``sql_literal`` quotes a value as an SQL string literal for the engine.
- ``shell_double_quote`` makes a string safe inside a double-quoted shell
  argument by backslash-escaping ``"``, ``$``, backtick and ``\\``.

Identifiers (usernames, privilege keywords) are interpolated as-is; callers
run them through ``validate_username`` / ``validate_privileges`` first.

Command lists are meant to be dispatched as one batch. SSM runs them as a
single script without a transaction, so a failure part-way through can
leave partial state; ``repair_privileges`` produces an idempotent sequence
that re-applies grants on existing and future objects.
"""

import re

from .errors import NotConfigured, UnsupportedOperation, ValidationError

ACTIONS = ("create_user", "delete_user", "change_password", "grant_privileges", "list_users")

PRIVILEGES = {
    "postgresql": ("SELECT", "INSERT", "UPDATE", "DELETE", "TRUNCATE", "REFERENCES", "TRIGGER"),
    "mysql": ("SELECT", "INSERT", "UPDATE", "DELETE", "CREATE", "DROP", "ALTER", "INDEX"),
}
DEFAULT_PRIVILEGES = ["SELECT", "INSERT", "UPDATE", "DELETE"]

USERNAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]{2,15}$")
PASSWORD_SPECIALS = "@$!%*?&"
PASSWORD_RE = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)


def shell_double_quote(value: str) -> str:
    """Escape a string for use inside a double-quoted shell argument."""
    return re.sub(r'(["$`\\])', r"\\\1", value)


def validate_username(username: str) -> str:
    if not USERNAME_RE.match(username or ""):
        raise ValidationError(
            f"Invalid username '{username}': 3-16 characters, letters, digits or "
            "underscore, starting with a letter"
        )
    return username


def normalize_username(engine: str, username: str) -> str:
    """The name the engine actually stores for an unquoted identifier.

    PostgreSQL folds unquoted identifiers to lower case, so ``AppUser`` and
    ``appuser`` are one role. MySQL account names are case-sensitive.
    """
    return username.lower() if engine == "postgresql" else username


def validate_password(password: str) -> str:
    if not PASSWORD_RE.match(password or ""):
        raise ValidationError(
            "Password must be at least 8 characters with uppercase, lowercase, "
            f"number, and special character ({PASSWORD_SPECIALS})"
        )
    return password


def validate_privileges(engine: str, privileges: list[str]) -> list[str]:
    """Normalise privileges to upper case and check them against the engine vocabulary."""
    if engine not in PRIVILEGES:
        raise UnsupportedOperation(engine, "validate_privileges")
    if not privileges:
        raise ValidationError("At least one privilege is required")
    normalised = []
    for privilege in privileges:
        p = privilege.strip().upper()
        if p not in PRIVILEGES[engine]:
            raise ValidationError(
                f"Invalid {engine} privilege '{privilege}'. "
                f"Allowed: {', '.join(PRIVILEGES[engine])}"
            )
        if p not in normalised:
            normalised.append(p)
    return normalised


class PostgresCommands:
    """psql command lines run as the postgres OS user."""

    engine = "postgresql"
    schema = "public"

    def __init__(self, database: str | None = None):
        self.database = database

    @staticmethod
    def sql_literal(value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def psql(self, sql: str, *, tolerate: str | None = None) -> str:
        """One psql -c invocation. ``tolerate`` turns failure into a notice."""
        db = f" -d {self.database}" if self.database else ""
        cmd = f'sudo -u postgres psql{db} -c "{shell_double_quote(sql)}"'
        if tolerate:
            cmd += f' || echo "{shell_double_quote(tolerate)}"'
        return cmd

    def create_user(self, username: str, password: str, privileges: list[str]) -> list[str]:
        grants = ", ".join(privileges)
        return [
            self.psql(
                f"CREATE ROLE {username} WITH LOGIN;",
                tolerate=f"role {username} already exists",
            ),
            self.psql(f"ALTER ROLE {username} WITH PASSWORD {self.sql_literal(password)};"),
            self.psql(f"GRANT {grants} ON ALL TABLES IN SCHEMA {self.schema} TO {username};"),
            self.psql(f"GRANT USAGE ON SCHEMA {self.schema} TO {username};"),
            self.psql(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {self.schema} "
                f"GRANT {grants} ON TABLES TO {username};"
            ),
        ]

    def delete_user(self, username: str) -> list[str]:
        # A role still referenced by grants or default ACLs cannot be dropped.
        return [
            self.psql(
                f"REVOKE ALL PRIVILEGES ON ALL TABLES IN SCHEMA {self.schema} FROM {username};",
                tolerate=f"table privileges already revoked from {username}",
            ),
            self.psql(
                f"REVOKE USAGE ON SCHEMA {self.schema} FROM {username};",
                tolerate=f"schema usage already revoked from {username}",
            ),
            self.psql(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {self.schema} "
                f"REVOKE ALL ON TABLES FROM {username};",
                tolerate=f"default privileges already revoked from {username}",
            ),
            self.psql(f"DROP ROLE IF EXISTS {username};"),
        ]

    def change_password(self, username: str, password: str) -> list[str]:
        return [self.psql(f"ALTER ROLE {username} WITH PASSWORD {self.sql_literal(password)};")]

    def grant_privileges(self, username: str, privileges: list[str]) -> list[str]:
        grants = ", ".join(privileges)
        return [
            self.psql(f"REVOKE ALL PRIVILEGES ON ALL TABLES IN SCHEMA {self.schema} FROM {username};"),
            self.psql(f"GRANT {grants} ON ALL TABLES IN SCHEMA {self.schema} TO {username};"),
            self.psql(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {self.schema} "
                f"REVOKE ALL ON TABLES FROM {username};"
            ),
            self.psql(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {self.schema} "
                f"GRANT {grants} ON TABLES TO {username};"
            ),
        ]

    def repair_privileges(self, username: str, privileges: list[str]) -> list[str]:
        grants = ", ".join(privileges)
        return [
            self.psql(f"GRANT USAGE ON SCHEMA {self.schema} TO {username};"),
            self.psql(f"GRANT {grants} ON ALL TABLES IN SCHEMA {self.schema} TO {username};"),
            self.psql(f"GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA {self.schema} TO {username};"),
            self.psql(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {self.schema} "
                f"GRANT {grants} ON TABLES TO {username};"
            ),
            self.psql(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {self.schema} "
                f"GRANT USAGE, SELECT ON SEQUENCES TO {username};"
            ),
        ]

    def list_users(self) -> list[str]:
        return [self.psql("SELECT usename, usesuper, usecreatedb FROM pg_user;")]

    def query(self, sql: str) -> str:
        return self.psql(sql)


class MySQLCommands:
    """mysql client command lines authenticated with a password."""

    engine = "mysql"
    host = "%"

    def __init__(self, password: str, user: str = "root", database: str | None = None):
        self.user = user
        self.password = password
        self.database = database

    @staticmethod
    def sql_literal(value: str) -> str:
        return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"

    def account(self, username: str) -> str:
        return f"'{username}'@'{self.host}'"

    def mysql(self, sql: str) -> str:
        db = f" -D {self.database}" if self.database else ""
        return (
            f'mysql -u {self.user} -p"{shell_double_quote(self.password)}"{db} '
            f'-e "{shell_double_quote(sql)}"'
        )

    def create_user(self, username: str, password: str, privileges: list[str]) -> list[str]:
        account = self.account(username)
        return [
            self.mysql(f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {self.sql_literal(password)};"),
            self.mysql(f"GRANT {', '.join(privileges)} ON *.* TO {account};"),
            self.mysql("FLUSH PRIVILEGES;"),
        ]

    def delete_user(self, username: str) -> list[str]:
        # DROP USER removes the account's grants along with it
        return [
            self.mysql(f"DROP USER IF EXISTS {self.account(username)};"),
            self.mysql("FLUSH PRIVILEGES;"),
        ]

    def change_password(self, username: str, password: str) -> list[str]:
        return [
            self.mysql(f"ALTER USER {self.account(username)} IDENTIFIED BY {self.sql_literal(password)};"),
            self.mysql("FLUSH PRIVILEGES;"),
        ]

    def grant_privileges(self, username: str, privileges: list[str]) -> list[str]:
        account = self.account(username)
        return [
            self.mysql(f"REVOKE ALL PRIVILEGES, GRANT OPTION FROM {account};"),
            self.mysql(f"GRANT {', '.join(privileges)} ON *.* TO {account};"),
            self.mysql("FLUSH PRIVILEGES;"),
        ]

    def repair_privileges(self, username: str, privileges: list[str]) -> list[str]:
        return [
            self.mysql(f"GRANT {', '.join(privileges)} ON *.* TO {self.account(username)};"),
            self.mysql("FLUSH PRIVILEGES;"),
        ]

    def list_users(self) -> list[str]:
        return [self.mysql("SELECT User, Host FROM mysql.user;")]

    def query(self, sql: str) -> str:
        return self.mysql(sql)


def _builder(engine: str, action: str, params: dict):
    if engine == "postgresql":
        return PostgresCommands()
    if engine == "mysql":
        root_password = params.get("master_password")
        if not root_password:
            raise NotConfigured(f"MySQL root password required for '{action}'")
        return MySQLCommands(root_password)
    raise UnsupportedOperation(engine, action)


def generate(engine: str, action: str, params: dict) -> list[str]:
    """Build the ordered shell command list for a user-management action.

    :param engine: postgresql or mysql
    :param action: One of ACTIONS
    :param params: username, password, privileges, master_password as needed
    :return: Commands to dispatch as one batch
    :raises UnsupportedOperation: Unknown engine or action
    :raises ValidationError: Password missing for create_user or change_password
    """
    if action not in ACTIONS:
        raise UnsupportedOperation(engine, action)
    if action in ("create_user", "change_password") and not params.get("password"):
        raise ValidationError(f"Password is required for '{action}'")
    builder = _builder(engine, action, params)
    username = params.get("username")
    privileges = params.get("privileges") or DEFAULT_PRIVILEGES

    if action == "create_user":
        return builder.create_user(username, params["password"], privileges)
    elif action == "delete_user":
        return builder.delete_user(username)
    elif action == "change_password":
        return builder.change_password(username, params["password"])
    elif action == "grant_privileges":
        return builder.grant_privileges(username, privileges)
    else:
        return builder.list_users()


def repair_privileges(engine: str, params: dict) -> list[str]:
    """Idempotent re-grant on all existing and future objects for one user."""
    builder = _builder(engine, "repair_privileges", params)
    return builder.repair_privileges(
        params["username"], params.get("privileges") or DEFAULT_PRIVILEGES
    )


def query_command(
    engine: str,
    sql: str,
    *,
    database: str | None = None,
    master_username: str | None = None,
    master_password: str | None = None,
) -> str:
    """Shell command running one ad hoc SQL statement on the instance.

    PostgreSQL runs as the postgres superuser over the local socket; MySQL
    logs in as the master account.
    """
    if engine == "postgresql":
        return PostgresCommands(database=database).query(sql)
    if engine == "mysql":
        if not (master_username and master_password):
            raise NotConfigured("MySQL master credentials required to run SQL")
        return MySQLCommands(master_password, user=master_username, database=database).query(sql)
    raise UnsupportedOperation(engine, "query")
