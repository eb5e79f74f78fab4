from supabase import Client
from typing import Optional, Dict, Any
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"deployment_started", "deployment_success", "deployment_failed", "system"}
PRIORITIES = {"low", "medium", "high", "urgent"}


class NotificationService:
    """Best-effort notification sink. Failures are logged, never raised."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        priority: str = "medium",
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        if type not in NOTIFICATION_TYPES:
            type = "system"
        if priority not in PRIORITIES:
            priority = "medium"
        try:
            self.supabase.table("notifications").insert({
                "user_id": user_id,
                "type": type,
                "title": title,
                "message": message,
                "priority": priority,
                "data": data or {},
                "read": False,
                "created_at": datetime.utcnow().isoformat()
            }).execute()
            return True
        except Exception as e:
            logger.warning(f"Failed to create notification for user {user_id}: {e}")
            return False

    def deployment_started(self, user_id: str, deployment_id: str, resource_type: str, resource_name: str, region: Optional[str] = None) -> bool:
        where = f" in {region}" if region else ""
        return self.notify(
            user_id,
            "deployment_started",
            f"{resource_type.upper()} Deployment Started",
            f'Starting deployment of {resource_type.upper()} resource "{resource_name}"{where}',
            priority="low",
            data={"deployment_id": deployment_id, "resource_name": resource_name, "resource_type": resource_type}
        )

    def deployment_finished(
        self,
        user_id: str,
        deployment_id: str,
        resource_type: str,
        resource_name: str,
        success: bool,
        error: Optional[str] = None
    ) -> bool:
        if success:
            title = f"{resource_type.upper()} Deployment Successful"
            message = f'{resource_type.upper()} resource "{resource_name}" has been deployed successfully'
        else:
            title = f"{resource_type.upper()} Deployment Failed"
            message = f'Failed to deploy {resource_type.upper()} resource "{resource_name}". {error or "Unknown error"}'
        return self.notify(
            user_id,
            "deployment_success" if success else "deployment_failed",
            title,
            message,
            priority="medium" if success else "high",
            data={"deployment_id": deployment_id, "resource_name": resource_name, "resource_type": resource_type}
        )
