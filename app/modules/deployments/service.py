from supabase import Client
from app.modules.deployments.schemas import DeploymentCreate, DeploymentResponse, DeploymentStatus
from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta
from enum import Enum
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)


class DeploymentService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_deployment(self, deployment_data: DeploymentCreate, user_id: str) -> DeploymentResponse:
        """Create a new deployment record in pending state"""
        try:
            result = self.supabase.table("deployments").insert({
                "user_id": user_id,
                "aws_account_id": deployment_data.aws_account_id,
                "resource_type": deployment_data.resource_type.value,
                "resource_name": deployment_data.resource_name,
                "config": deployment_data.config,
                "status": DeploymentStatus.PENDING.value,
                "created_at": datetime.utcnow().isoformat()
            }).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create deployment")

            return DeploymentResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_deployment_by_id(self, deployment_id: str) -> DeploymentResponse:
        """Get deployment by ID"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("id", deployment_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Deployment not found")

            return DeploymentResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def update_deployment_status(
        self,
        deployment_id: str,
        status: Optional[DeploymentStatus] = None,
        expected_status: Optional[DeploymentStatus] = None,
        **fields: Any
    ) -> Optional[DeploymentResponse]:
        """
        Update status and any other columns passed as keyword arguments.
        Datetime values are serialized; ``None`` values are written as null.
        With ``expected_status`` the write only applies while the record is
        still in that status, and None means it did not apply. Otherwise None
        may be returned if the update succeeded but the row was not returned.
        """
        try:
            update_data: Dict[str, Any] = {"updated_at": datetime.utcnow().isoformat()}
            if status is not None:
                update_data["status"] = DeploymentStatus(status).value
            for key, value in fields.items():
                if isinstance(value, datetime):
                    value = value.isoformat()
                elif isinstance(value, Enum):
                    value = value.value
                update_data[key] = value

            query = self.supabase.table("deployments")\
                .update(update_data)\
                .eq("id", deployment_id)
            if expected_status is not None:
                query = query.eq("status", DeploymentStatus(expected_status).value)
            result = query.execute()

            if result.data and len(result.data) > 0:
                return DeploymentResponse(**result.data[0])
            if expected_status is not None:
                return None
            # Empty response can happen (e.g. PostgREST config); assume update succeeded
            try:
                return self.get_deployment_by_id(deployment_id)
            except HTTPException:
                return None
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_deployments(
        self,
        user_id: str,
        resource_type: Optional[str] = None,
        status: Optional[str] = None
    ) -> List[DeploymentResponse]:
        """List a user's deployments, newest first"""
        try:
            query = self.supabase.table("deployments")\
                .select("*")\
                .eq("user_id", user_id)
            if resource_type:
                query = query.eq("resource_type", resource_type)
            if status:
                query = query.eq("status", status)
            result = query.order("created_at", desc=True).execute()

            return [DeploymentResponse(**deployment) for deployment in result.data]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_syncable(self, user_id: Optional[str] = None) -> List[DeploymentResponse]:
        """Completed deployments, optionally scoped to one user"""
        try:
            query = self.supabase.table("deployments")\
                .select("*")\
                .eq("status", DeploymentStatus.COMPLETED.value)
            if user_id:
                query = query.eq("user_id", user_id)
            result = query.order("created_at", desc=True).execute()
            return [DeploymentResponse(**deployment) for deployment in result.data]
        except Exception as e:
            logger.error(f"Error listing deployments to sync: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_stale(self, stale_after_seconds: int, limit: int, user_id: Optional[str] = None) -> List[DeploymentResponse]:
        """Completed deployments never synced or last synced before the cutoff, oldest sync first"""
        cutoff = datetime.utcnow() - timedelta(seconds=stale_after_seconds)
        stale = []
        for deployment in self.list_syncable(user_id):
            synced = deployment.last_synced_at
            if synced is not None and synced.tzinfo is not None:
                synced = synced.replace(tzinfo=None) - (synced.utcoffset() or timedelta(0))
            if synced is None or synced < cutoff:
                stale.append((synced or datetime.min, deployment))
        stale.sort(key=lambda pair: pair[0])
        return [deployment for _, deployment in stale[:limit]]

    def delete_deployment(self, deployment_id: str) -> None:
        """Remove the record only; cloud resources are not touched"""
        try:
            self.supabase.table("deployments")\
                .delete()\
                .eq("id", deployment_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error deleting deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
