from fastapi import APIRouter, Depends
from app.modules.auth.schemas import CurrentUser
from app.core.dependencies import get_current_user_id, is_super_user
from typing import Dict

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=CurrentUser)
async def get_me(user_data: Dict = Depends(get_current_user_id)):
    """Return the user resolved from the bearer token"""
    return CurrentUser(**user_data, is_super_user=is_super_user(user_data))
