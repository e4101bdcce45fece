"""Process configuration, loaded once at start-up and passed explicitly."""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .errors import NotConfigured

DEFAULT_REGION = "ap-south-1"
DEFAULT_INSTANCE_PROFILE = "EC2-SSM-Role"
DEFAULT_DATA_DIR = ".dbhost"


@dataclass(frozen=True)
class Settings:
    """AWS credentials, launch infrastructure and polling budgets.

    Credentials left as None fall through to boto3's default credential
    chain (environment, shared config, instance role).
    """

    region: str = DEFAULT_REGION
    aws_profile: str | None = None
    aws_access_key_id: str | None = field(default=None, repr=False)
    aws_secret_access_key: str | None = field(default=None, repr=False)
    vpc_id: str | None = None
    subnet_id: str | None = None
    key_pair_name: str | None = None
    ami_id: str | None = None
    instance_profile: str = DEFAULT_INSTANCE_PROFILE
    default_db_password: str | None = field(default=None, repr=False)
    data_dir: str = DEFAULT_DATA_DIR
    agent_attempts: int = 20
    agent_interval: float = 15.0
    command_timeout: int = 600

    def session_kwargs(self) -> dict:
        """:return: Keyword arguments for boto3.Session()"""
        kwargs: dict = {"region_name": self.region}
        if self.aws_profile:
            kwargs["profile_name"] = self.aws_profile
        if self.aws_access_key_id and self.aws_secret_access_key:
            kwargs["aws_access_key_id"] = self.aws_access_key_id
            kwargs["aws_secret_access_key"] = self.aws_secret_access_key
        return kwargs

    def require_launch_infrastructure(self) -> None:
        """Fail fast when the VPC, subnet or key pair used for launches is missing."""
        missing = [
            env
            for env, value in [
                ("DBHOST_VPC_ID", self.vpc_id),
                ("DBHOST_SUBNET_ID", self.subnet_id),
                ("DBHOST_KEY_PAIR_NAME", self.key_pair_name),
            ]
            if not value
        ]
        if missing:
            raise NotConfigured(
                f"AWS infrastructure not configured, set: {', '.join(missing)}"
            )


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """Build Settings from environment variables (after reading .env).

    :param env: Mapping to read instead of os.environ (tests)
    :return: Settings instance
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    def _int(name: str, default: int) -> int:
        value = env.get(name)
        if not value:
            return default
        try:
            return int(value)
        except ValueError:
            raise NotConfigured(f"{name} must be an integer, got '{value}'")

    def _float(name: str, default: float) -> float:
        value = env.get(name)
        if not value:
            return default
        try:
            return float(value)
        except ValueError:
            raise NotConfigured(f"{name} must be a number, got '{value}'")

    return Settings(
        region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or DEFAULT_REGION,
        aws_profile=env.get("AWS_PROFILE") or None,
        aws_access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
        aws_secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
        vpc_id=env.get("DBHOST_VPC_ID") or None,
        subnet_id=env.get("DBHOST_SUBNET_ID") or None,
        key_pair_name=env.get("DBHOST_KEY_PAIR_NAME") or None,
        ami_id=env.get("DBHOST_AMI_ID") or None,
        instance_profile=env.get("DBHOST_INSTANCE_PROFILE") or DEFAULT_INSTANCE_PROFILE,
        default_db_password=env.get("DBHOST_DEFAULT_DB_PASSWORD") or None,
        data_dir=env.get("DBHOST_DATA_DIR") or DEFAULT_DATA_DIR,
        agent_attempts=_int("DBHOST_AGENT_ATTEMPTS", 20),
        agent_interval=_float("DBHOST_AGENT_INTERVAL", 15.0),
        command_timeout=_int("DBHOST_COMMAND_TIMEOUT", 600),
    )
