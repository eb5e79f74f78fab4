from supabase import Client
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)


class QuotaService:
    """
    Pass/fail deployment quota gate backed by the organizations table.
    Users without an organization are not limited.
    """

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _get_organization(self, user_id: str):
        result = self.supabase.table("organization_members")\
            .select("organization_id")\
            .eq("user_id", user_id)\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        org_result = self.supabase.table("organizations")\
            .select("*")\
            .eq("id", result.data[0]["organization_id"])\
            .maybe_single()\
            .execute()
        return org_result.data if org_result else None

    def can_deploy(self, user_id: str) -> bool:
        try:
            org = self._get_organization(user_id)
        except Exception as e:
            logger.warning(f"Quota lookup failed for user {user_id}, allowing deployment: {e}")
            return True
        if not org:
            return True
        limit = (org.get("limits") or {}).get("max_deployments_per_month")
        used = (org.get("usage") or {}).get("deployments_this_month", 0)
        if limit is None:
            return True
        return used < limit

    def require_deploy_quota(self, user_id: str) -> None:
        if not self.can_deploy(user_id):
            raise HTTPException(status_code=403, detail="Monthly deployment limit reached for your organization")

    def record_deployment(self, user_id: str) -> None:
        """Increment usage counters. Best-effort."""
        try:
            org = self._get_organization(user_id)
            if not org:
                return
            usage = dict(org.get("usage") or {})
            usage["deployments"] = usage.get("deployments", 0) + 1
            usage["deployments_this_month"] = usage.get("deployments_this_month", 0) + 1
            self.supabase.table("organizations")\
                .update({"usage": usage})\
                .eq("id", org["id"])\
                .execute()
        except Exception as e:
            logger.warning(f"Failed to record deployment usage for user {user_id}: {e}")
