import pytest

from dbhost.config import Settings, load_settings
from dbhost.errors import NotConfigured


def test_defaults_from_empty_environment():
    settings = load_settings({})
    assert settings.region == "ap-south-1"
    assert settings.instance_profile == "EC2-SSM-Role"
    assert settings.agent_attempts == 20
    assert settings.agent_interval == 15.0
    assert settings.command_timeout == 600
    assert settings.vpc_id is None


def test_reads_environment():
    settings = load_settings(
        {
            "AWS_REGION": "us-east-1",
            "AWS_PROFILE": "dev",
            "DBHOST_VPC_ID": "vpc-1",
            "DBHOST_SUBNET_ID": "subnet-1",
            "DBHOST_KEY_PAIR_NAME": "key",
            "DBHOST_AGENT_ATTEMPTS": "5",
            "DBHOST_AGENT_INTERVAL": "2.5",
            "DBHOST_DATA_DIR": "/tmp/dbhost",
        }
    )
    assert settings.region == "us-east-1"
    assert settings.agent_attempts == 5
    assert settings.agent_interval == 2.5
    assert settings.data_dir == "/tmp/dbhost"
    assert settings.session_kwargs() == {"region_name": "us-east-1", "profile_name": "dev"}
    settings.require_launch_infrastructure()


def test_bad_number_is_reported():
    with pytest.raises(NotConfigured) as exc:
        load_settings({"DBHOST_AGENT_ATTEMPTS": "lots"})
    assert "DBHOST_AGENT_ATTEMPTS" in str(exc.value)


def test_explicit_keys_go_to_session():
    settings = Settings(aws_access_key_id="AKIA", aws_secret_access_key="secret")
    assert settings.session_kwargs()["aws_access_key_id"] == "AKIA"
    assert "secret" not in repr(settings)


def test_missing_launch_infrastructure_lists_variables():
    with pytest.raises(NotConfigured) as exc:
        Settings(vpc_id="vpc-1").require_launch_infrastructure()
    assert "DBHOST_SUBNET_ID" in str(exc.value)
    assert "DBHOST_KEY_PAIR_NAME" in str(exc.value)
    assert "DBHOST_VPC_ID" not in str(exc.value)
