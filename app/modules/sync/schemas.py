from pydantic import BaseModel, Field
from typing import Optional, List
from app.modules.deployments.schemas import DeploymentStatus, DeletedBy, ResourceKind


class SyncResult(BaseModel):
    deployment_id: str
    resource_name: Optional[str] = None
    resource_type: ResourceKind
    exists_in_aws: Optional[bool] = None  # None when the probe could not decide
    status: DeploymentStatus
    deleted_by: Optional[DeletedBy] = None
    message: str


class SyncSummary(BaseModel):
    total_checked: int = 0
    deleted_externally: int = 0
    errors: int = 0
    results: List[SyncResult] = Field(default_factory=list)
    message: Optional[str] = None
