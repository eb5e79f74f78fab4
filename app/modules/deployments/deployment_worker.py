import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from app.core.exceptions import OrchestrationError
from app.modules.credentials.service import CredentialService
from app.modules.deployments.schemas import DeploymentStatus, DeletedBy, ResourceKind
from app.modules.deployments.service import DeploymentService
from app.modules.deployments.terraform_executor import WorkspaceExecutor
from app.modules.notifications.service import NotificationService
from app.modules.organizations.service import QuotaService

logger = logging.getLogger(__name__)


def _terraform_log(deployment_id: str):
    def log_callback(lines: List[str]):
        for line in lines:
            logger.debug(f"[{deployment_id}] {line}")
    return log_callback


def deploy_resource_async(
    deployment_id: str,
    resource_type: str,
    config: Dict[str, Any],
    aws_account_id: str,
    user_id: str,
    executor: Optional[WorkspaceExecutor] = None
):
    """
    Background worker: provision one resource and persist the outcome.
    Runs in the thread pool. Uses the service-role Supabase client so status updates bypass RLS.
    Never raises; every error path ends with the record in ``failed``.
    """
    from app.database.supabase_client import SupabaseClient
    client = SupabaseClient.get_service_client()
    deployment_service = DeploymentService(client)
    notifications = NotificationService(client)
    executor = executor or WorkspaceExecutor()
    resource_name = config.get("instance_name") or config.get("bucket_name") or config.get("username") or ""

    try:
        credentials = CredentialService(client).get_credentials(aws_account_id, config.get("region"))
        logger.info(f"Deploying {resource_type} resource {resource_name} for deployment {deployment_id}")

        result = executor.apply(
            ResourceKind(resource_type),
            config,
            credentials,
            user_id=user_id,
            log_callback=_terraform_log(deployment_id),
            run_key=deployment_id
        )

        deployment_service.update_deployment_status(
            deployment_id,
            DeploymentStatus.COMPLETED if result.success else DeploymentStatus.FAILED,
            terraform_output=result.output,
            outputs=result.outputs,
            error_log=None if result.success else result.error,
            workspace_id=result.workspace_id
        )

        if result.success:
            QuotaService(client).record_deployment(user_id)
            logger.info(f"Deployment {deployment_id} completed successfully")
        else:
            logger.error(f"Deployment {deployment_id} failed: {result.error}")
        notifications.deployment_finished(
            user_id, deployment_id, resource_type, resource_name, result.success, error=result.error
        )

    except Exception as e:
        logger.error(f"Deployment worker error: {str(e)}")
        message = str(e)
        if isinstance(e, OrchestrationError) and e.suggestion:
            message = f"{message}\n{e.suggestion}"
        try:
            deployment_service.update_deployment_status(
                deployment_id,
                DeploymentStatus.FAILED,
                error_log=message
            )
        except Exception as update_error:
            logger.error(f"Failed to update deployment status: {str(update_error)}")
        notifications.deployment_finished(user_id, deployment_id, resource_type, resource_name, False, error=message)


def destroy_resource_async(
    deployment_id: str,
    workspace_id: str,
    aws_account_id: str,
    region: Optional[str] = None,
    executor: Optional[WorkspaceExecutor] = None
):
    """
    Background worker: tear down a completed deployment from its workspace.
    Success marks the record destroyed and releases the workspace; failure keeps the workspace.
    """
    from app.database.supabase_client import SupabaseClient
    client = SupabaseClient.get_service_client()
    deployment_service = DeploymentService(client)
    executor = executor or WorkspaceExecutor()

    try:
        credentials = CredentialService(client).get_credentials(aws_account_id, region)
        result = executor.destroy(
            workspace_id,
            credentials,
            log_callback=_terraform_log(deployment_id),
            run_key=deployment_id
        )

        if result.success:
            deployment_service.update_deployment_status(
                deployment_id,
                DeploymentStatus.DESTROYED,
                terraform_output=result.output,
                deleted_by=DeletedBy.UI,
                deleted_at=datetime.utcnow()
            )
            executor.release(workspace_id)
            logger.info(f"Deployment {deployment_id} destroyed successfully")
        else:
            deployment_service.update_deployment_status(
                deployment_id,
                DeploymentStatus.DESTROY_FAILED,
                error_log=result.error
            )
            logger.warning(f"Destroy failed for deployment {deployment_id}; keeping workspace {workspace_id}")

    except Exception as e:
        logger.error(f"Destroy worker error: {str(e)}")
        try:
            deployment_service.update_deployment_status(
                deployment_id,
                DeploymentStatus.DESTROY_FAILED,
                error_log=str(e)
            )
        except Exception as update_error:
            logger.error(f"Failed to update deployment status: {str(update_error)}")
        logger.warning(f"Workspace {workspace_id} for deployment {deployment_id} was not released")
