from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime
from enum import Enum
import re


class ResourceKind(str, Enum):
    EC2 = "ec2"
    S3 = "s3"
    IAM = "iam"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    DESTROY_FAILED = "destroy_failed"
    DELETED_EXTERNALLY = "deleted_externally"


class DeletedBy(str, Enum):
    UI = "ui"
    AWS_CONSOLE = "aws_console"
    UNKNOWN = "unknown"


REGION_PATTERN = re.compile(r"^[a-z]{2}-[a-z]+-\d$")
INSTANCE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
INSTANCE_TYPE_PATTERN = re.compile(r"^[a-z0-9]+\.[a-z0-9]+$")
AMI_PATTERN = re.compile(r"^ami-[a-f0-9]{8,17}$")
BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
IAM_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9+=,.@_-]+$")

MIN_ROOT_VOLUME_GB = 8
MAX_ROOT_VOLUME_GB = 16384


def _validate_region(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not REGION_PATTERN.match(value):
        raise ValueError("Invalid AWS region format")
    return value


class EC2DeploymentCreate(BaseModel):
    aws_account_id: str
    instance_name: str
    instance_type: str
    ami_id: str
    key_name: str
    region: Optional[str] = None
    availability_zone: Optional[str] = None
    vpc_id: Optional[str] = None
    subnet_id: Optional[str] = None
    assign_public_ip: bool = True
    security_group_ids: List[str] = Field(default_factory=list)
    root_volume_size: int = 20
    root_volume_type: str = "gp3"
    enable_ebs_encryption: bool = True
    iam_role: Optional[str] = None
    user_data: Optional[str] = None
    shutdown_behavior: Literal["stop", "terminate"] = "stop"
    enable_monitoring: bool = False

    @field_validator("instance_name")
    @classmethod
    def check_instance_name(cls, v: str) -> str:
        v = v.strip()
        if not 3 <= len(v) <= 50:
            raise ValueError("Instance name must be 3-50 characters")
        if not INSTANCE_NAME_PATTERN.match(v):
            raise ValueError("Instance name can only contain letters, numbers, hyphens, and underscores")
        return v

    @field_validator("instance_type")
    @classmethod
    def check_instance_type(cls, v: str) -> str:
        v = v.strip()
        if not INSTANCE_TYPE_PATTERN.match(v):
            raise ValueError("Invalid instance type format")
        return v

    @field_validator("ami_id")
    @classmethod
    def check_ami_id(cls, v: str) -> str:
        v = v.strip()
        if not AMI_PATTERN.match(v):
            raise ValueError("Invalid AMI ID format")
        return v

    @field_validator("key_name")
    @classmethod
    def check_key_name(cls, v: str) -> str:
        v = v.strip()
        if not 1 <= len(v) <= 255:
            raise ValueError("Key name must be 1-255 characters")
        return v

    @field_validator("root_volume_size")
    @classmethod
    def check_root_volume_size(cls, v: int) -> int:
        if not MIN_ROOT_VOLUME_GB <= v <= MAX_ROOT_VOLUME_GB:
            raise ValueError(f"Volume size must be between {MIN_ROOT_VOLUME_GB} and {MAX_ROOT_VOLUME_GB} GB")
        return v

    @field_validator("region")
    @classmethod
    def check_region(cls, v: Optional[str]) -> Optional[str]:
        return _validate_region(v)

    def to_config(self, default_region: str) -> Dict[str, Any]:
        config = self.model_dump(exclude={"aws_account_id"})
        config["region"] = self.region or default_region
        return config


class BucketTag(BaseModel):
    key: str
    value: str


class S3DeploymentCreate(BaseModel):
    aws_account_id: str
    bucket_name: str
    region: Optional[str] = None
    is_public: bool = False
    versioning: bool = False
    encryption: bool = True
    encryption_type: Literal["SSE-S3", "SSE-KMS"] = "SSE-S3"
    kms_key_id: Optional[str] = None
    static_website_hosting: bool = False
    index_document: str = "index.html"
    error_document: str = "error.html"
    tags: List[BucketTag] = Field(default_factory=list)

    @field_validator("bucket_name")
    @classmethod
    def check_bucket_name(cls, v: str) -> str:
        v = v.strip()
        if not 3 <= len(v) <= 63:
            raise ValueError("Bucket name must be 3-63 characters")
        if ".." in v or v.startswith("-") or v.endswith("-"):
            raise ValueError("Bucket name cannot contain consecutive dots or start/end with hyphens")
        if not BUCKET_NAME_PATTERN.match(v):
            raise ValueError("Invalid bucket name format")
        return v

    @field_validator("region")
    @classmethod
    def check_region(cls, v: Optional[str]) -> Optional[str]:
        return _validate_region(v)

    def to_config(self, default_region: str) -> Dict[str, Any]:
        config = self.model_dump(exclude={"aws_account_id"})
        config["region"] = self.region or default_region
        return config


class IAMDeploymentCreate(BaseModel):
    aws_account_id: str
    username: str
    permissions: Literal["read-only", "power-user", "admin"]

    @field_validator("username")
    @classmethod
    def check_username(cls, v: str) -> str:
        v = v.strip()
        if not 1 <= len(v) <= 64:
            raise ValueError("Username must be 1-64 characters")
        if not IAM_USERNAME_PATTERN.match(v):
            raise ValueError("Invalid IAM username format")
        return v

    def to_config(self, default_region: str) -> Dict[str, Any]:
        return {"username": self.username, "permissions": self.permissions, "region": default_region}


class DeploymentCreate(BaseModel):
    """Record fields persisted when a resource request is accepted"""
    aws_account_id: str
    resource_type: ResourceKind
    resource_name: str
    config: Dict[str, Any]


class DeploymentResponse(BaseModel):
    id: str
    user_id: str
    aws_account_id: str
    resource_type: ResourceKind
    resource_name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    status: DeploymentStatus
    terraform_output: Optional[str] = None
    outputs: Optional[Dict[str, Any]] = None
    error_log: Optional[str] = None
    workspace_id: Optional[str] = None
    deleted_by: Optional[DeletedBy] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeploymentAck(BaseModel):
    deployment_id: str
    status: DeploymentStatus
    message: Optional[str] = None


class ExecutionResult(BaseModel):
    """Outcome of one Terraform workspace operation"""
    success: bool
    output: str = ""
    error: Optional[str] = None
    workspace_id: Optional[str] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    already_exists: bool = False
