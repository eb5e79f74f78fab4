from fastapi import APIRouter, Depends, HTTPException, Request
from app.config import settings
from app.core.dependencies import get_current_user_id, check_record_owner, is_super_user
from app.core.exceptions import CredentialError
from app.core.rate_limit import limiter
from app.database.supabase_client import get_supabase
from app.modules.sync.schemas import SyncResult, SyncSummary
from app.modules.sync.service import SyncService
from supabase import Client
from typing import Dict
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_sync_service(supabase: Client = Depends(get_supabase)) -> SyncService:
    return SyncService(supabase)


@router.post("/deployment/{deployment_id}", response_model=SyncResult)
@limiter.limit(settings.sync_rate_limit)
def sync_deployment(
    request: Request,
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Check one deployment against AWS"""
    deployment = sync_service.deployments.get_deployment_by_id(deployment_id)
    check_record_owner(deployment.user_id, user_data, "Deployment not found")
    try:
        return sync_service.sync_one(deployment)
    except CredentialError as e:
        logger.error(f"Cannot sync deployment {deployment_id}: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/all", response_model=SyncSummary)
@limiter.limit(settings.sync_rate_limit)
def sync_all(
    request: Request,
    user_data: Dict = Depends(get_current_user_id),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Check every completed deployment of the current user"""
    return sync_service.sync_all(user_data["id"])


@router.post("/auto", response_model=SyncSummary)
@limiter.limit(settings.sync_rate_limit)
def auto_sync(
    request: Request,
    user_data: Dict = Depends(get_current_user_id),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Check a small batch of deployments that were not synced recently. Super users sweep all tenants."""
    user_id = None if is_super_user(user_data) else user_data["id"]
    return sync_service.auto_sync(user_id)
