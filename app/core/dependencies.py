"""
Core dependencies for route protection and record ownership checks
"""

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.database.supabase_client import get_supabase
from app.modules.auth.service import AuthService
from app.modules.credentials.service import CredentialService
from app.modules.notifications.service import NotificationService
from app.modules.organizations.service import QuotaService
from supabase import Client
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_auth_service(supabase: Client = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    token = credentials.credentials
    user_data = auth_service.get_current_user(token)
    return user_data


def is_super_user(user_data: dict) -> bool:
    """Check if user is a super user from app_metadata"""
    # app_metadata is set server-side and cannot be modified by users
    app_metadata = user_data.get("app_metadata") or {}
    return app_metadata.get("type") == "super_user"


def check_record_owner(record_user_id: str, user_data: dict, detail: str = "Not found") -> dict:
    """Allow the record owner or a super user. Others get 404 so foreign ids are not disclosed."""
    if is_super_user(user_data) or record_user_id == user_data["id"]:
        return user_data
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def get_credential_service(supabase: Client = Depends(get_supabase)) -> CredentialService:
    return CredentialService(supabase)


def get_notification_service(supabase: Client = Depends(get_supabase)) -> NotificationService:
    return NotificationService(supabase)


def get_quota_service(supabase: Client = Depends(get_supabase)) -> QuotaService:
    return QuotaService(supabase)
