from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, Request
from app.config import settings
from app.core import process_registry
from app.core.dependencies import (
    get_current_user_id, check_record_owner, get_credential_service, get_quota_service
)
from app.core.exceptions import (
    OrchestrationError, ConfigurationError, CredentialError, UnreachableTargetError
)
from app.core.rate_limit import limiter
from app.database.supabase_client import get_supabase
from app.modules.applications import run_registry
from app.modules.applications.deployment_pipeline import (
    ApplicationPipeline, checkout_key, run_application_pipeline
)
from app.modules.applications.schemas import (
    ApplicationAck, ApplicationCreate, ApplicationProgress, ApplicationResponse,
    ApplicationStatus, CANCELLABLE_STATUSES, DiagnosticReport
)
from app.modules.applications.service import ApplicationService, CANCELLED_MESSAGE
from app.modules.applications.source_fetcher import SourceFetcher
from app.modules.credentials.service import CredentialService
from app.modules.organizations.service import QuotaService
from supabase import Client
from typing import List, Dict
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/applications", tags=["applications"])


def get_application_service(supabase: Client = Depends(get_supabase)) -> ApplicationService:
    return ApplicationService(supabase)


def get_pipeline(
    service: ApplicationService = Depends(get_application_service),
    credentials: CredentialService = Depends(get_credential_service)
) -> ApplicationPipeline:
    return ApplicationPipeline(service, credentials)


def _get_owned_application(service: ApplicationService, application_id: str, user_data: Dict) -> ApplicationResponse:
    application = service.get_application_by_id(application_id)
    check_record_owner(application.user_id, user_data, "Application not found")
    return application


def _as_http_error(e: OrchestrationError) -> HTTPException:
    detail = str(e)
    if e.suggestion:
        detail = f"{detail}. {e.suggestion}"
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=400, detail=detail)
    if isinstance(e, CredentialError):
        return HTTPException(status_code=400, detail=detail)
    if isinstance(e, UnreachableTargetError):
        return HTTPException(status_code=409, detail=detail)
    return HTTPException(status_code=502, detail=detail)


def _interrupt_run(application_id: str, new_version: int) -> None:
    """Supersede the run in flight and kill its git/docker/terraform subprocess"""
    run_registry.supersede(application_id, new_version)
    if process_registry.terminate(application_id):
        logger.info(f"Terminated running process for application {application_id}")


@router.post("", response_model=ApplicationAck, status_code=201)
@limiter.limit(settings.deploy_rate_limit)
async def create_application(
    request: Request,
    app_data: ApplicationCreate,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service),
    credentials: CredentialService = Depends(get_credential_service),
    quota: QuotaService = Depends(get_quota_service)
):
    """Create an application and start its first deployment"""
    user_id = user_data["id"]
    account = credentials.get_account(app_data.aws_account_id, user_id)
    quota.require_deploy_quota(user_id)

    application = service.create_application(app_data, user_id, account.region or settings.aws_region)
    background_tasks.add_task(run_application_pipeline, application.id, application.run_version)
    return ApplicationAck(
        application_id=application.id,
        status=application.status,
        message="Application deployment started"
    )


@router.get("", response_model=List[ApplicationResponse])
async def list_applications(
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service)
):
    """List the current user's applications"""
    return [application.public() for application in service.list_applications(user_data["id"])]


@router.get("/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service)
):
    return _get_owned_application(service, application_id, user_data).public()


@router.post("/{application_id}/deploy", response_model=ApplicationAck)
@limiter.limit(settings.deploy_rate_limit)
async def redeploy_application(
    request: Request,
    application_id: str,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service)
):
    """Start a fresh run. Any run still in flight is superseded."""
    _get_owned_application(service, application_id, user_data)
    version = service.reset_for_redeploy(application_id)
    _interrupt_run(application_id, version)
    background_tasks.add_task(run_application_pipeline, application_id, version)
    return ApplicationAck(
        application_id=application_id,
        status=ApplicationStatus.PENDING,
        message="Redeployment started"
    )


@router.post("/{application_id}/cancel", response_model=ApplicationAck)
async def cancel_application(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service)
):
    """Cancel an in-progress deployment"""
    application = _get_owned_application(service, application_id, user_data)
    if application.status not in CANCELLABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel deployment with status '{application.status.value}'"
        )

    previous_version = application.run_version
    version = service.mark_cancelled(application_id)
    _interrupt_run(application_id, version)
    SourceFetcher().cleanup(checkout_key(application_id, previous_version))
    return ApplicationAck(
        application_id=application_id,
        status=ApplicationStatus.FAILED,
        message=CANCELLED_MESSAGE
    )


@router.post("/{application_id}/stop", response_model=ApplicationResponse)
def stop_application(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service),
    pipeline: ApplicationPipeline = Depends(get_pipeline)
):
    """Stop a running application (scale to 0 on ECS, docker stop on EC2)"""
    application = _get_owned_application(service, application_id, user_data)
    if application.status != ApplicationStatus.RUNNING:
        raise HTTPException(status_code=400, detail="Only running applications can be stopped")
    try:
        return pipeline.set_running_state(application, running=False).public()
    except OrchestrationError as e:
        logger.error(f"Error stopping application {application_id}: {str(e)}")
        raise _as_http_error(e)


@router.post("/{application_id}/start", response_model=ApplicationResponse)
def start_application(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service),
    pipeline: ApplicationPipeline = Depends(get_pipeline)
):
    """Start a stopped application"""
    application = _get_owned_application(service, application_id, user_data)
    if application.status != ApplicationStatus.STOPPED:
        raise HTTPException(status_code=400, detail="Only stopped applications can be started")
    try:
        return pipeline.set_running_state(application, running=True).public()
    except OrchestrationError as e:
        logger.error(f"Error starting application {application_id}: {str(e)}")
        raise _as_http_error(e)


@router.get("/{application_id}/progress", response_model=ApplicationProgress)
async def get_progress(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service)
):
    application = _get_owned_application(service, application_id, user_data)
    return ApplicationProgress(
        id=application.id,
        status=application.status,
        deployment_logs=application.deployment_logs,
        error_message=application.error_message,
        url=application.url,
        last_deployed_at=application.last_deployed_at
    )


@router.post("/{application_id}/diagnose", response_model=DiagnosticReport)
def diagnose_application(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service),
    pipeline: ApplicationPipeline = Depends(get_pipeline)
):
    """Run the diagnostic script on the application's EC2 instance"""
    application = _get_owned_application(service, application_id, user_data)
    try:
        report = pipeline.diagnose(application)
    except OrchestrationError as e:
        logger.error(f"Diagnostics failed for application {application_id}: {str(e)}")
        raise _as_http_error(e)
    return DiagnosticReport(
        application_id=application_id,
        instance_id=application.ec2.instance_id,
        container_name=application.ec2.container_name or "",
        report=report
    )


@router.delete("/{application_id}", status_code=204)
async def delete_application(
    application_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ApplicationService = Depends(get_application_service)
):
    """Delete the application record. ECR/ECS/EC2 resources are left in place."""
    application = _get_owned_application(service, application_id, user_data)
    _interrupt_run(application_id, application.run_version + 1)
    service.delete_application(application_id)
