import time
import logging
from typing import Callable, Dict, List, Optional
from pydantic import BaseModel, Field
from botocore.exceptions import ClientError, BotoCoreError
from app.config import settings
from app.core.exceptions import (
    ConfigurationError, ToolExecutionError, UnreachableTargetError, aws_error
)
from app.modules.applications.remote_script import (
    ShellScript, container_control_script, deploy_script, diagnostic_script
)
from app.modules.credentials.schemas import AWSCredentials

logger = logging.getLogger(__name__)

FAILED_COMMAND_STATUSES = {
    "Failed", "Cancelled", "Cancelling", "TimedOut", "DeliveryTimedOut",
    "ExecutionTimedOut", "Undeliverable", "Terminated",
}

SSM_SETUP_GUIDANCE = (
    "To enable SSM:\n"
    "1. Attach an IAM instance profile that includes the AmazonSSMManagedInstanceCore policy\n"
    "2. Make sure the SSM agent is installed and running on the instance\n"
    "3. Allow outbound HTTPS (443) to the SSM endpoints from the instance"
)


class InstanceInfo(BaseModel):
    instance_id: str
    state: Optional[str] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    security_group_ids: List[str] = Field(default_factory=list)

    @property
    def security_group_id(self) -> Optional[str]:
        return self.security_group_ids[0] if self.security_group_ids else None


class RemoteExecutor:
    """
    Runs shell scripts on an EC2 instance through SSM Run Command.

    ``sleep`` and ``clock`` are injectable so polling can be driven in tests.
    """

    def __init__(
        self,
        credentials: AWSCredentials,
        region: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.region = region or credentials.region
        self.ec2 = credentials.client("ec2", self.region)
        self.ssm = credentials.client("ssm", self.region)
        self._sleep = sleep
        self._clock = clock

    def describe_instance(self, instance_id: str) -> InstanceInfo:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to describe instance {instance_id}", e)

        reservations = response.get("Reservations") or []
        if not reservations or not reservations[0].get("Instances"):
            raise ConfigurationError(f"Instance {instance_id} not found")
        instance = reservations[0]["Instances"][0]
        return InstanceInfo(
            instance_id=instance_id,
            state=(instance.get("State") or {}).get("Name"),
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
            security_group_ids=[g["GroupId"] for g in instance.get("SecurityGroups") or [] if g.get("GroupId")]
        )

    def verify_online(self, instance_id: str) -> None:
        """Raise UnreachableTargetError unless the instance is SSM-managed with an Online agent"""
        try:
            response = self.ssm.describe_instance_information(
                Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
            )
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to check SSM status for {instance_id}", e)

        info = response.get("InstanceInformationList") or []
        if not info:
            raise UnreachableTargetError(
                f"Instance {instance_id} is not managed by SSM",
                suggestion=SSM_SETUP_GUIDANCE
            )
        ping_status = info[0].get("PingStatus")
        if ping_status != "Online":
            raise UnreachableTargetError(
                f"SSM agent on instance {instance_id} is {ping_status or 'unknown'}",
                suggestion="Wait for the SSM agent to come online or restart it on the instance."
            )

    def run_script(
        self,
        instance_id: str,
        script: ShellScript,
        comment: str,
        timeout_seconds: Optional[int] = None,
        max_wait: Optional[float] = None
    ) -> str:
        """Send script and block until it finishes. Returns its stdout."""
        try:
            response = self.ssm.send_command(
                InstanceIds=[instance_id],
                DocumentName="AWS-RunShellScript",
                Parameters={"commands": script.commands},
                Comment=comment[:100],
                TimeoutSeconds=timeout_seconds or settings.ssm_command_timeout
            )
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to send command to {instance_id}", e)

        command_id = response["Command"]["CommandId"]
        logger.info(f"SSM command {command_id} sent to {instance_id}")
        return self._wait_for_command(command_id, instance_id, max_wait or settings.ssm_command_max_wait)

    def _wait_for_command(self, command_id: str, instance_id: str, max_wait: float) -> str:
        deadline = self._clock() + max_wait
        while True:
            self._sleep(settings.ssm_poll_interval)
            try:
                invocation = self.ssm.get_command_invocation(CommandId=command_id, InstanceId=instance_id)
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != "InvocationDoesNotExist":
                    raise aws_error(f"Failed to get status of command {command_id}", e)
                invocation = None
            except BotoCoreError as e:
                raise aws_error(f"Failed to get status of command {command_id}", e)

            if invocation is not None:
                status = invocation.get("Status")
                stdout = invocation.get("StandardOutputContent") or ""
                stderr = invocation.get("StandardErrorContent") or ""
                if status == "Success":
                    return stdout
                if status in FAILED_COMMAND_STATUSES:
                    raise ToolExecutionError(
                        f"Remote command {status}: {stderr.strip() or stdout.strip() or 'no output'}",
                        output=stdout + stderr,
                        exit_code=invocation.get("ResponseCode")
                    )

            if self._clock() >= deadline:
                raise ToolExecutionError(f"Remote command {command_id} did not finish within {int(max_wait)}s")

    def deploy_container(
        self,
        instance_id: str,
        image: str,
        container_name: str,
        port: int,
        environment: Optional[Dict[str, str]] = None,
        registry: Optional[str] = None
    ) -> str:
        script = deploy_script(image, container_name, port, environment, registry=registry, region=self.region)
        return self.run_script(instance_id, script, f"Deploy {image}")

    def diagnose(self, instance_id: str, container_name: str, port: int) -> str:
        script = diagnostic_script(instance_id, container_name, port)
        return self.run_script(instance_id, script, f"Diagnose {container_name}", timeout_seconds=300)

    def stop_container(self, instance_id: str, container_name: str) -> str:
        return self.run_script(instance_id, container_control_script("stop", container_name), f"Stop {container_name}")

    def start_container(self, instance_id: str, container_name: str) -> str:
        return self.run_script(instance_id, container_control_script("start", container_name), f"Start {container_name}")
