"""AWS provider: EC2 compute, SSM remote execution and CloudWatch Logs."""

from datetime import datetime, timezone
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ProviderAPIError
from .types import AgentInfo, ProviderInstance
from .utils import log

UBUNTU_AMI_PATTERN = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"
CANONICAL_OWNER = "099720109477"
RUN_SHELL_DOCUMENT = "AWS-RunShellScript"


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class AWSProvider:
    """Thin wrapper over the boto3 clients dbhost needs.

    Every boto3 failure is re-raised as ProviderAPIError so callers never
    have to know about botocore exception types.
    """

    def __init__(self, settings: Settings, session: Any = None):
        self.settings = settings
        self.region = settings.region
        self._session = session
        self._clients: dict[str, Any] = {}

    def _get_session(self):
        """Get boto3 session using settings."""
        if self._session is None:
            self._session = boto3.Session(**self.settings.session_kwargs())
        return self._session

    def _client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self._get_session().client(
                service, region_name=self.region
            )
        return self._clients[service]

    def _get_ec2_client(self):
        return self._client("ec2")

    def _get_ssm_client(self):
        return self._client("ssm")

    def _get_logs_client(self):
        return self._client("logs")

    def _call(self, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        try:
            return fn(**kwargs)
        except ClientError as e:
            err = e.response.get("Error", {})
            raise ProviderAPIError(
                operation, err.get("Code", "Unknown"), err.get("Message", str(e))
            ) from e
        except BotoCoreError as e:
            raise ProviderAPIError(operation, type(e).__name__, str(e)) from e

    def validate_auth(self) -> str:
        """Check credentials against STS.

        :return: AWS account ID
        """
        sts = self._client("sts")
        identity = self._call("GetCallerIdentity", sts.get_caller_identity)
        account_id = identity.get("Account", "unknown")
        log(f"AWS: region={self.region}  account={account_id}")
        return account_id

    def find_ami(self) -> str:
        """Return the configured AMI or the newest Ubuntu 22.04 image."""
        if self.settings.ami_id:
            return self.settings.ami_id
        ec2 = self._get_ec2_client()
        response = self._call(
            "DescribeImages",
            ec2.describe_images,
            Filters=[
                {"Name": "name", "Values": [UBUNTU_AMI_PATTERN]},
                {"Name": "state", "Values": ["available"]},
                {"Name": "architecture", "Values": ["x86_64"]},
            ],
            Owners=[CANONICAL_OWNER],
        )
        if not response["Images"]:
            raise ProviderAPIError(
                "DescribeImages", "NoImage", f"No AMI matching '{UBUNTU_AMI_PATTERN}'"
            )
        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def create_security_group(
        self, vpc_id: str, group_name: str, engine: str, port: int
    ) -> str:
        """Create a security group opening SSH and the database port.

        :param vpc_id: VPC to create the group in
        :param group_name: Unique group name
        :param engine: Engine name, used in rule descriptions
        :param port: Database listening port
        :return: Security group ID
        """
        ec2 = self._get_ec2_client()
        response = self._call(
            "CreateSecurityGroup",
            ec2.create_security_group,
            GroupName=group_name,
            Description=f"Security group for {engine} database",
            VpcId=vpc_id,
            TagSpecifications=[
                {
                    "ResourceType": "security-group",
                    "Tags": [
                        {"Key": "Name", "Value": group_name},
                        {"Key": "ManagedBy", "Value": "dbhost"},
                        {
                            "Key": "CreatedAt",
                            "Value": datetime.now(timezone.utc).isoformat(),
                        },
                    ],
                }
            ],
        )
        sg_id = response["GroupId"]
        self._call(
            "AuthorizeSecurityGroupIngress",
            ec2.authorize_security_group_ingress,
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": 22,
                    "ToPort": 22,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "SSH access"}],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [
                        {"CidrIp": "0.0.0.0/0", "Description": f"{engine} access"}
                    ],
                },
            ],
        )
        log(f"Created security group '{group_name}' ('{sg_id}')")
        return sg_id

    def authorize_port(
        self,
        sg_id: str,
        port: int,
        protocol: str = "tcp",
        description: str | None = None,
    ) -> bool:
        """Open a port to 0.0.0.0/0 in a security group.

        :return: False if an identical rule already existed
        """
        ec2 = self._get_ec2_client()
        sg = self._call(
            "DescribeSecurityGroups", ec2.describe_security_groups, GroupIds=[sg_id]
        )["SecurityGroups"][0]
        for rule in sg.get("IpPermissions", []):
            if (
                rule.get("IpProtocol") == protocol
                and rule.get("FromPort") == port
                and rule.get("ToPort") == port
            ):
                return False
        ip_range = {"CidrIp": "0.0.0.0/0"}
        if description:
            ip_range["Description"] = description
        self._call(
            "AuthorizeSecurityGroupIngress",
            ec2.authorize_security_group_ingress,
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": protocol,
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [ip_range],
                }
            ],
        )
        log(f"Opened {protocol} port {port} in security group '{sg_id}'")
        return True

    def launch_instance(
        self,
        *,
        name: str,
        instance_type: str,
        user_data: str,
        security_group_id: str,
        subnet_id: str,
        key_pair_name: str,
        tags: dict[str, str],
    ) -> str:
        """Run one instance with the given boot script.

        :return: EC2 instance ID
        """
        ec2 = self._get_ec2_client()
        ami_id = self.find_ami()
        log(f"Launching '{name}' ({instance_type}) from '{ami_id}'...")
        response = self._call(
            "RunInstances",
            ec2.run_instances,
            ImageId=ami_id,
            InstanceType=instance_type,
            KeyName=key_pair_name,
            MinCount=1,
            MaxCount=1,
            SecurityGroupIds=[security_group_id],
            SubnetId=subnet_id,
            # boto3 base64-encodes UserData for RunInstances
            UserData=user_data,
            IamInstanceProfile={"Name": self.settings.instance_profile},
            TagSpecifications=[
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
                }
            ],
        )
        return response["Instances"][0]["InstanceId"]

    def wait_until_running(self, instance_id: str) -> None:
        ec2 = self._get_ec2_client()
        waiter = ec2.get_waiter("instance_running")
        self._call("InstanceRunningWaiter", waiter.wait, InstanceIds=[instance_id])

    def describe_instances(self, instance_ids: list[str]) -> list[ProviderInstance]:
        """Fetch state and addresses for several instances in one call.

        IDs go in an ``instance-id`` filter rather than ``InstanceIds``, so
        instances EC2 no longer knows are left out instead of failing the
        whole batch with InvalidInstanceID.NotFound.
        """
        if not instance_ids:
            return []
        ec2 = self._get_ec2_client()
        response = self._call(
            "DescribeInstances",
            ec2.describe_instances,
            Filters=[{"Name": "instance-id", "Values": list(instance_ids)}],
        )
        instances: list[ProviderInstance] = []
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                instances.append(
                    {
                        "instance_id": instance["InstanceId"],
                        "state": instance["State"]["Name"],
                        "instance_type": instance.get("InstanceType", ""),
                        "public_ip": instance.get("PublicIpAddress"),
                        "private_ip": instance.get("PrivateIpAddress"),
                        "launch_time": _iso(instance.get("LaunchTime")),
                    }
                )
        return instances

    def start_instance(self, instance_id: str) -> dict:
        ec2 = self._get_ec2_client()
        response = self._call(
            "StartInstances", ec2.start_instances, InstanceIds=[instance_id]
        )
        return response["StartingInstances"][0]

    def stop_instance(self, instance_id: str) -> dict:
        ec2 = self._get_ec2_client()
        response = self._call(
            "StopInstances", ec2.stop_instances, InstanceIds=[instance_id]
        )
        return response["StoppingInstances"][0]

    def terminate_instance(self, instance_id: str) -> dict:
        ec2 = self._get_ec2_client()
        response = self._call(
            "TerminateInstances", ec2.terminate_instances, InstanceIds=[instance_id]
        )
        return response["TerminatingInstances"][0]

    def send_command(
        self, instance_id: str, commands: list[str], timeout: int
    ) -> str:
        """Submit a shell command batch through SSM.

        :param timeout: Execution timeout in seconds, enforced by the agent
        :return: SSM CommandId
        """
        ssm = self._get_ssm_client()
        response = self._call(
            "SendCommand",
            ssm.send_command,
            InstanceIds=[instance_id],
            DocumentName=RUN_SHELL_DOCUMENT,
            Parameters={
                "commands": list(commands),
                "executionTimeout": [str(timeout)],
            },
        )
        return response["Command"]["CommandId"]

    def get_command_invocation(self, command_id: str, instance_id: str) -> dict:
        ssm = self._get_ssm_client()
        return self._call(
            "GetCommandInvocation",
            ssm.get_command_invocation,
            CommandId=command_id,
            InstanceId=instance_id,
        )

    def describe_agents(self, instance_id: str | None = None) -> list[AgentInfo]:
        """List SSM-registered instances, optionally filtered to one handle."""
        ssm = self._get_ssm_client()
        kwargs: dict = {}
        if instance_id:
            kwargs["Filters"] = [{"Key": "InstanceIds", "Values": [instance_id]}]
        paginator = ssm.get_paginator("describe_instance_information")

        def _collect(**kw) -> list[dict]:
            items = []
            for page in paginator.paginate(**kw):
                items.extend(page.get("InstanceInformationList", []))
            return items

        items = self._call("DescribeInstanceInformation", _collect, **kwargs)
        return [
            {
                "instance_id": item.get("InstanceId", ""),
                "ping_status": item.get("PingStatus", "Unknown"),
                "agent_version": item.get("AgentVersion", ""),
                "platform": f"{item.get('PlatformName', '')} {item.get('PlatformVersion', '')}".strip(),
                "last_ping": _iso(item.get("LastPingDateTime")),
            }
            for item in items
        ]

    def get_log_events(
        self,
        log_group: str,
        log_stream: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
        limit: int = 100,
    ) -> list[dict]:
        logs = self._get_logs_client()
        kwargs: dict = {
            "logGroupName": log_group,
            "logStreamName": log_stream,
            "limit": limit,
            "startFromHead": True,
        }
        if start_ms is not None:
            kwargs["startTime"] = start_ms
        if end_ms is not None:
            kwargs["endTime"] = end_ms
        response = self._call("GetLogEvents", logs.get_log_events, **kwargs)
        return response.get("events", [])
