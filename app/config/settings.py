from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Used by background workers (RLS bypass)

    # AWS defaults (tenant credentials come from the aws_accounts table)
    aws_region: str = "us-east-1"

    # Fernet key used to decrypt stored AWS account credentials
    credentials_encryption_key: Optional[str] = None

    # Terraform
    terraform_binary: str = "terraform"
    terraform_workspace_dir: str = "./terraform/workspaces"
    terraform_template_dir: Optional[str] = None  # Defaults to the bundled app/modules/deployments/terraform
    terraform_init_timeout: int = 300
    terraform_apply_timeout: int = 1800
    terraform_destroy_timeout: int = 1800

    # Source checkout / container build
    git_binary: str = "git"
    docker_binary: str = "docker"
    clone_scratch_dir: str = "./temp/repos"
    clone_timeout: int = 180
    clone_progress_interval: float = 10.0
    build_progress_interval: float = 15.0
    docker_build_timeout: int = 1800
    docker_push_timeout: int = 1800

    # Application delivery
    resource_name_prefix: str = "radynamics"
    ecs_cluster_name: str = "radynamics-cluster"
    ecs_execution_role_arn: Optional[str] = None  # Lets Fargate tasks pull from ECR and write awslogs
    internal_domain: str = "radynamics.local"
    ssm_command_timeout: int = 600
    ssm_command_max_wait: int = 300
    ssm_poll_interval: float = 5.0

    # Drift reconciliation
    sync_scheduler_enabled: bool = False
    sync_interval_seconds: int = 300
    auto_sync_batch_size: int = 10
    auto_sync_stale_after_seconds: int = 300

    # App
    app_name: str = "radynamics-orchestrator"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"
    deploy_rate_limit: str = "10/minute"
    sync_rate_limit: str = "20/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
