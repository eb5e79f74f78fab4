from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, Request
from app.config import settings
from app.core.dependencies import (
    get_current_user_id, check_record_owner, get_credential_service,
    get_notification_service, get_quota_service
)
from app.core.rate_limit import limiter
from app.database.supabase_client import get_supabase
from app.modules.credentials.service import CredentialService
from app.modules.deployments.schemas import (
    DeploymentResponse, DeploymentAck, DeploymentCreate, DeploymentStatus, ResourceKind,
    EC2DeploymentCreate, S3DeploymentCreate, IAMDeploymentCreate
)
from app.modules.deployments.service import DeploymentService
from app.modules.deployments.deployment_worker import deploy_resource_async, destroy_resource_async
from app.modules.notifications.service import NotificationService
from app.modules.organizations.service import QuotaService
from supabase import Client
from typing import List, Dict, Optional, Union

router = APIRouter(prefix="/deployments", tags=["deployments"])

ResourceRequest = Union[EC2DeploymentCreate, S3DeploymentCreate, IAMDeploymentCreate]


def get_deployment_service(supabase: Client = Depends(get_supabase)) -> DeploymentService:
    return DeploymentService(supabase)


def _accept_deployment(
    kind: ResourceKind,
    request_data: ResourceRequest,
    resource_name: str,
    user_data: Dict,
    background_tasks: BackgroundTasks,
    service: DeploymentService,
    credentials: CredentialService,
    quota: QuotaService,
    notifications: NotificationService
) -> DeploymentAck:
    """Persist a pending record and hand it to the background worker"""
    user_id = user_data["id"]
    account = credentials.get_account(request_data.aws_account_id, user_id)
    quota.require_deploy_quota(user_id)

    config = request_data.to_config(account.region or settings.aws_region)
    deployment = service.create_deployment(
        DeploymentCreate(
            aws_account_id=request_data.aws_account_id,
            resource_type=kind,
            resource_name=resource_name,
            config=config
        ),
        user_id
    )
    notifications.deployment_started(user_id, deployment.id, kind.value, resource_name, config.get("region"))

    background_tasks.add_task(
        deploy_resource_async,
        deployment_id=deployment.id,
        resource_type=kind.value,
        config=config,
        aws_account_id=request_data.aws_account_id,
        user_id=user_id
    )
    return DeploymentAck(
        deployment_id=deployment.id,
        status=DeploymentStatus.PENDING,
        message=f"{kind.value.upper()} deployment started"
    )


@router.post("/ec2", response_model=DeploymentAck, status_code=201)
@limiter.limit(settings.deploy_rate_limit)
async def deploy_ec2(
    request: Request,
    request_data: EC2DeploymentCreate,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    credentials: CredentialService = Depends(get_credential_service),
    quota: QuotaService = Depends(get_quota_service),
    notifications: NotificationService = Depends(get_notification_service)
):
    """Provision an EC2 instance"""
    return _accept_deployment(
        ResourceKind.EC2, request_data, request_data.instance_name, user_data,
        background_tasks, service, credentials, quota, notifications
    )


@router.post("/s3", response_model=DeploymentAck, status_code=201)
@limiter.limit(settings.deploy_rate_limit)
async def deploy_s3(
    request: Request,
    request_data: S3DeploymentCreate,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    credentials: CredentialService = Depends(get_credential_service),
    quota: QuotaService = Depends(get_quota_service),
    notifications: NotificationService = Depends(get_notification_service)
):
    """Provision an S3 bucket"""
    return _accept_deployment(
        ResourceKind.S3, request_data, request_data.bucket_name, user_data,
        background_tasks, service, credentials, quota, notifications
    )


@router.post("/iam", response_model=DeploymentAck, status_code=201)
@limiter.limit(settings.deploy_rate_limit)
async def deploy_iam(
    request: Request,
    request_data: IAMDeploymentCreate,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    credentials: CredentialService = Depends(get_credential_service),
    quota: QuotaService = Depends(get_quota_service),
    notifications: NotificationService = Depends(get_notification_service)
):
    """Provision an IAM user with a managed policy"""
    return _accept_deployment(
        ResourceKind.IAM, request_data, request_data.username, user_data,
        background_tasks, service, credentials, quota, notifications
    )


@router.get("", response_model=List[DeploymentResponse])
async def list_deployments(
    resource_type: Optional[ResourceKind] = None,
    status: Optional[DeploymentStatus] = None,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service)
):
    """List the current user's deployments"""
    return service.list_deployments(
        user_data["id"],
        resource_type=resource_type.value if resource_type else None,
        status=status.value if status else None
    )


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service)
):
    """Get deployment by ID"""
    deployment = service.get_deployment_by_id(deployment_id)
    check_record_owner(deployment.user_id, user_data, "Deployment not found")
    return deployment


@router.post("/{deployment_id}/destroy", response_model=DeploymentAck)
async def destroy_deployment(
    deployment_id: str,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service)
):
    """Tear down the cloud resources of a completed deployment"""
    deployment = service.get_deployment_by_id(deployment_id)
    check_record_owner(deployment.user_id, user_data, "Deployment not found")

    if deployment.status != DeploymentStatus.COMPLETED:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot destroy deployment with status '{deployment.status.value}'. Only completed deployments can be destroyed."
        )
    if not deployment.workspace_id:
        raise HTTPException(status_code=400, detail="No Terraform workspace found for this deployment")

    started = service.update_deployment_status(
        deployment_id,
        DeploymentStatus.DESTROYING,
        expected_status=DeploymentStatus.COMPLETED
    )
    if started is None:
        raise HTTPException(status_code=409, detail="Deployment is already being destroyed or has changed state")
    background_tasks.add_task(
        destroy_resource_async,
        deployment_id=deployment_id,
        workspace_id=deployment.workspace_id,
        aws_account_id=deployment.aws_account_id,
        region=(deployment.config or {}).get("region")
    )
    return DeploymentAck(
        deployment_id=deployment_id,
        status=DeploymentStatus.DESTROYING,
        message="Destroy started"
    )


@router.delete("/{deployment_id}", status_code=204)
async def delete_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service)
):
    """Delete the deployment record. Cloud resources are left as they are."""
    deployment = service.get_deployment_by_id(deployment_id)
    check_record_owner(deployment.user_id, user_data, "Deployment not found")
    service.delete_deployment(deployment_id)
