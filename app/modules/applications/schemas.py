from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, List
from datetime import datetime
from enum import Enum
import re


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    CLONING = "cloning"
    BUILDING = "building"
    PUSHING = "pushing"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    ERROR = "error"


CANCELLABLE_STATUSES = {
    ApplicationStatus.PENDING,
    ApplicationStatus.CLONING,
    ApplicationStatus.BUILDING,
    ApplicationStatus.PUSHING,
    ApplicationStatus.DEPLOYING,
}


class DeploymentMethod(str, Enum):
    GITHUB = "github"
    DOCKER = "docker"


class DeploymentTarget(str, Enum):
    ECS = "ecs"
    EC2 = "ec2"


class RuntimeCategory(str, Enum):
    NODEJS = "nodejs"
    REACT = "react"
    NEXTJS = "nextjs"
    PYTHON = "python"
    STATIC = "static"


APP_TYPE_AUTO = "auto"
APP_TYPES = [c.value for c in RuntimeCategory] + [APP_TYPE_AUTO]
APP_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9 _-]*$")


class GithubSource(BaseModel):
    repo_url: str
    branch: str = "main"
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    app_type: str = APP_TYPE_AUTO
    token: Optional[str] = Field(default=None, repr=False)
    is_private: bool = False

    @field_validator("repo_url")
    @classmethod
    def check_repo_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("https://", "http://", "git@")):
            raise ValueError("Repository URL must be an http(s) or ssh git URL")
        return v

    @field_validator("app_type")
    @classmethod
    def check_app_type(cls, v: str) -> str:
        if v not in APP_TYPES:
            raise ValueError(f"app_type must be one of {', '.join(APP_TYPES)}")
        return v


class DockerSource(BaseModel):
    image: str
    registry: str = "dockerhub"
    tag: str = "latest"

    @property
    def reference(self) -> str:
        """Image reference with tag, unless the image already pins one"""
        last = self.image.rsplit("/", 1)[-1]
        if ":" in last or "@" in last:
            return self.image
        return f"{self.image}:{self.tag or 'latest'}"


class RuntimeConfig(BaseModel):
    port: int = 3000
    cpu: str = "512"
    memory: str = "1024"
    environment_variables: Dict[str, str] = Field(default_factory=dict)

    @field_validator("port")
    @classmethod
    def check_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v


class EC2Target(BaseModel):
    instance_id: Optional[str] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    container_name: Optional[str] = None


class AWSResources(BaseModel):
    ecr_repository: Optional[str] = None
    ecr_image_uri: Optional[str] = None
    ecs_cluster: Optional[str] = None
    ecs_service: Optional[str] = None
    task_definition: Optional[str] = None
    task_definition_arn: Optional[str] = None
    security_group_id: Optional[str] = None


class ApplicationCreate(BaseModel):
    aws_account_id: str
    name: str
    region: Optional[str] = None
    deployment_method: DeploymentMethod
    deployment_target: DeploymentTarget = DeploymentTarget.ECS
    github: Optional[GithubSource] = None
    docker: Optional[DockerSource] = None
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    ec2: Optional[EC2Target] = None
    aws: Optional[AWSResources] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        v = v.strip()
        if not 1 <= len(v) <= 100:
            raise ValueError("Application name must be 1-100 characters")
        if not APP_NAME_PATTERN.match(v):
            raise ValueError("Application name can only contain letters, numbers, spaces, hyphens, and underscores")
        return v

    @model_validator(mode="after")
    def validate_source_and_target(self):
        if self.deployment_method == DeploymentMethod.GITHUB:
            if not self.github:
                raise ValueError("github configuration is required for github deployments")
            if self.docker:
                raise ValueError("docker configuration is not allowed for github deployments")
        else:
            if not self.docker:
                raise ValueError("docker configuration is required for docker deployments")
            if self.github:
                raise ValueError("github configuration is not allowed for docker deployments")
        if self.deployment_target == DeploymentTarget.EC2 and not (self.ec2 and self.ec2.instance_id):
            raise ValueError("EC2 instance ID is required for EC2 deployment")
        return self


class ApplicationResponse(BaseModel):
    id: str
    user_id: str
    aws_account_id: str
    name: str
    region: Optional[str] = None
    deployment_method: DeploymentMethod
    deployment_target: DeploymentTarget
    github: Optional[GithubSource] = None
    docker: Optional[DockerSource] = None
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    ec2: EC2Target = Field(default_factory=EC2Target)
    aws: AWSResources = Field(default_factory=AWSResources)
    status: ApplicationStatus
    url: Optional[str] = None
    deployment_logs: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    last_deployed_at: Optional[datetime] = None
    run_version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("ec2", "aws", "runtime", mode="before")
    @classmethod
    def null_to_default(cls, v):
        return {} if v is None else v

    def public(self) -> "ApplicationResponse":
        """Copy safe to return to clients (no repository token)"""
        if self.github and self.github.token:
            return self.model_copy(update={"github": self.github.model_copy(update={"token": None})})
        return self


class ApplicationProgress(BaseModel):
    id: str
    status: ApplicationStatus
    deployment_logs: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    url: Optional[str] = None
    last_deployed_at: Optional[datetime] = None


class ApplicationAck(BaseModel):
    application_id: str
    status: ApplicationStatus
    message: Optional[str] = None


class DiagnosticReport(BaseModel):
    application_id: str
    instance_id: str
    container_name: str
    report: str
