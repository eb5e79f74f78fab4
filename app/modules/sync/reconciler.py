import logging
from typing import Callable, Dict, Optional
from pydantic import BaseModel
from botocore.exceptions import ClientError, BotoCoreError
from app.core.exceptions import DriftError
from app.modules.credentials.schemas import AWSCredentials
from app.modules.deployments.schemas import DeploymentResponse, ResourceKind
from app.modules.deployments.tfvars import sanitize_bucket_name

logger = logging.getLogger(__name__)

BUCKET_MISSING_CODES = {"404", "NoSuchBucket", "NotFound"}


class ProbeResult(BaseModel):
    exists: bool
    state: Optional[str] = None
    error: Optional[str] = None


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _identifier(deployment: DeploymentResponse, *keys: str) -> Optional[str]:
    """First non-empty value among keys, looking in outputs before config"""
    outputs = deployment.outputs or {}
    config = deployment.config or {}
    for source in (outputs, config):
        for key in keys:
            value = source.get(key)
            if value:
                return str(value)
    return None


def _bucket_name(deployment: DeploymentResponse) -> Optional[str]:
    """Bucket name as Terraform created it; the requested name is sanitized the same way"""
    created = (deployment.outputs or {}).get("bucket_name")
    if created:
        return str(created)
    requested = (deployment.config or {}).get("bucket_name")
    return sanitize_bucket_name(str(requested)) if requested else None


def probe_s3(deployment: DeploymentResponse, credentials: AWSCredentials) -> ProbeResult:
    bucket_name = _bucket_name(deployment)
    if not bucket_name:
        raise DriftError(f"Deployment {deployment.id} has no bucket name to check")
    try:
        credentials.client("s3").head_bucket(Bucket=bucket_name)
    except ClientError as e:
        if _error_code(e) in BUCKET_MISSING_CODES:
            return ProbeResult(exists=False, error="Bucket not found in AWS")
        raise DriftError(f"Failed to check bucket {bucket_name}: {str(e)}")
    return ProbeResult(exists=True)


def probe_ec2(deployment: DeploymentResponse, credentials: AWSCredentials) -> ProbeResult:
    instance_id = _identifier(deployment, "instance_id")
    if not instance_id:
        raise DriftError(f"Deployment {deployment.id} has no instance ID to check")
    try:
        response = credentials.client("ec2").describe_instances(InstanceIds=[instance_id])
    except ClientError as e:
        if _error_code(e) == "InvalidInstanceID.NotFound":
            return ProbeResult(exists=False, error="Instance not found in AWS")
        raise DriftError(f"Failed to check instance {instance_id}: {str(e)}")

    reservations = response.get("Reservations") or []
    if not reservations or not reservations[0].get("Instances"):
        return ProbeResult(exists=False, error="Instance not found in AWS")
    state = (reservations[0]["Instances"][0].get("State") or {}).get("Name")
    if state == "terminated":
        return ProbeResult(exists=False, state=state, error="Instance is terminated")
    return ProbeResult(exists=True, state=state)


def probe_iam(deployment: DeploymentResponse, credentials: AWSCredentials) -> ProbeResult:
    username = _identifier(deployment, "username")
    if not username:
        raise DriftError(f"Deployment {deployment.id} has no IAM username to check")
    try:
        credentials.client("iam").get_user(UserName=username)
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return ProbeResult(exists=False, error="IAM user not found in AWS")
        raise DriftError(f"Failed to check IAM user {username}: {str(e)}")
    return ProbeResult(exists=True)


PROBES: Dict[ResourceKind, Callable[[DeploymentResponse, AWSCredentials], ProbeResult]] = {
    ResourceKind.EC2: probe_ec2,
    ResourceKind.S3: probe_s3,
    ResourceKind.IAM: probe_iam,
}

_missing = set(ResourceKind) - set(PROBES)
if _missing:
    raise RuntimeError(f"Resource kinds without a drift probe: {sorted(k.value for k in _missing)}")


class DriftReconciler:
    """Checks whether a deployment's resource still exists at the provider."""

    def __init__(self, probes: Optional[Dict[ResourceKind, Callable[..., ProbeResult]]] = None):
        self.probes = probes or PROBES

    def reconcile(self, deployment: DeploymentResponse, credentials: AWSCredentials) -> ProbeResult:
        """
        Probe the provider for the deployment's resource.

        Returns ``exists=False`` only when the provider says the resource is
        gone. Any other failure raises DriftError.
        """
        region = (deployment.config or {}).get("region")
        credentials = credentials.with_region(region)
        try:
            result = self.probes[ResourceKind(deployment.resource_type)](deployment, credentials)
        except BotoCoreError as e:
            raise DriftError(f"Failed to reach AWS for deployment {deployment.id}: {str(e)}")
        logger.debug(f"Probe for deployment {deployment.id}: exists={result.exists} state={result.state}")
        return result
