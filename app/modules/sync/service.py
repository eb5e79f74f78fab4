from supabase import Client
from datetime import datetime
from typing import Optional
from app.config import settings
from app.core.exceptions import DriftError
from app.modules.credentials.service import CredentialService
from app.modules.deployments.schemas import DeploymentResponse, DeploymentStatus, DeletedBy
from app.modules.deployments.service import DeploymentService
from app.modules.sync.reconciler import DriftReconciler
from app.modules.sync.schemas import SyncResult, SyncSummary
import logging

logger = logging.getLogger(__name__)


class SyncService:
    """Reconciles completed deployment records with what actually exists in AWS."""

    def __init__(self, supabase: Client, reconciler: Optional[DriftReconciler] = None):
        self.deployments = DeploymentService(supabase)
        self.credentials = CredentialService(supabase)
        self.reconciler = reconciler or DriftReconciler()

    def sync_one(self, deployment: DeploymentResponse) -> SyncResult:
        """
        Probe one deployment and record the outcome.

        A missing resource moves the record to ``deleted_externally``. A probe
        that fails only stamps ``last_synced_at``.
        """
        if deployment.status != DeploymentStatus.COMPLETED:
            return SyncResult(
                deployment_id=deployment.id,
                resource_name=deployment.resource_name,
                resource_type=deployment.resource_type,
                status=deployment.status,
                deleted_by=deployment.deleted_by,
                message="Deployment not in completed state"
            )

        now = datetime.utcnow()
        try:
            credentials = self.credentials.get_credentials(deployment.aws_account_id)
            probe = self.reconciler.reconcile(deployment, credentials)
        except DriftError as e:
            logger.warning(f"Drift probe failed for deployment {deployment.id}: {str(e)}")
            self.deployments.update_deployment_status(
                deployment.id, expected_status=DeploymentStatus.COMPLETED, last_synced_at=now
            )
            return SyncResult(
                deployment_id=deployment.id,
                resource_name=deployment.resource_name,
                resource_type=deployment.resource_type,
                status=deployment.status,
                message=f"Could not verify resource: {str(e)}"
            )

        if probe.exists:
            self.deployments.update_deployment_status(
                deployment.id, expected_status=DeploymentStatus.COMPLETED, last_synced_at=now
            )
            return SyncResult(
                deployment_id=deployment.id,
                resource_name=deployment.resource_name,
                resource_type=deployment.resource_type,
                exists_in_aws=True,
                status=deployment.status,
                deleted_by=deployment.deleted_by,
                message="Resource exists in AWS"
            )

        logger.info(f"Deployment {deployment.id} ({deployment.resource_name}) was deleted outside the platform")
        updated = self.deployments.update_deployment_status(
            deployment.id,
            DeploymentStatus.DELETED_EXTERNALLY,
            expected_status=DeploymentStatus.COMPLETED,
            deleted_by=DeletedBy.AWS_CONSOLE,
            deleted_at=now,
            error_log=probe.error or "Resource not found in AWS",
            last_synced_at=now
        )
        if updated is None:
            # Destroyed or otherwise changed while the probe was running
            current = self.deployments.get_deployment_by_id(deployment.id)
            logger.info(f"Deployment {deployment.id} moved to {current.status.value} during sync; leaving it as is")
            return SyncResult(
                deployment_id=deployment.id,
                resource_name=deployment.resource_name,
                resource_type=deployment.resource_type,
                status=current.status,
                deleted_by=current.deleted_by,
                message=f"Deployment changed to {current.status.value} during sync"
            )
        return SyncResult(
            deployment_id=deployment.id,
            resource_name=deployment.resource_name,
            resource_type=deployment.resource_type,
            exists_in_aws=False,
            status=DeploymentStatus.DELETED_EXTERNALLY,
            deleted_by=DeletedBy.AWS_CONSOLE,
            message="Resource deleted from AWS Console"
        )

    def _sync_many(self, deployments) -> SyncSummary:
        summary = SyncSummary()
        for deployment in deployments:
            try:
                result = self.sync_one(deployment)
            except Exception as e:
                logger.error(f"Error syncing deployment {deployment.id}: {str(e)}")
                summary.errors += 1
                continue
            summary.results.append(result)
            summary.total_checked += 1
            if result.exists_in_aws is False:
                summary.deleted_externally += 1
        return summary

    def sync_all(self, user_id: Optional[str] = None) -> SyncSummary:
        """Sync every completed deployment (of one user, or all users)"""
        summary = self._sync_many(self.deployments.list_syncable(user_id))
        summary.message = f"Checked {summary.total_checked} deployments, found {summary.deleted_externally} deleted externally"
        return summary

    def auto_sync(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> SyncSummary:
        """Sync the completed deployments that have not been checked recently"""
        stale = self.deployments.list_stale(
            settings.auto_sync_stale_after_seconds,
            limit or settings.auto_sync_batch_size,
            user_id=user_id
        )
        summary = self._sync_many(stale)
        summary.message = f"Synced {summary.total_checked} deployments, found {summary.deleted_externally} deleted externally"
        return summary
