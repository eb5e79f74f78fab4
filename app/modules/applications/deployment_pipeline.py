"""
Application delivery pipeline.

One run takes an application record from ``pending`` to ``running`` (or
``failed``): clone, detect, build, publish, then deploy to ECS or to an EC2
instance over SSM. Runs are keyed by (application_id, run_version); before
every stage the run re-checks that it is still the current one and stops
silently if a redeploy or cancel has superseded it.
"""
import re
import time
import threading
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from app.config import settings
from app.core.exceptions import ConfigurationError, OrchestrationError, ToolExecutionError
from app.modules.applications import run_registry
from app.modules.applications.build_manifest import defaults_for, write_dockerfile
from app.modules.applications.cluster_control import ClusterControl
from app.modules.applications.container_toolchain import DockerCLI, RegistryAdapter
from app.modules.applications.remote_execution import RemoteExecutor
from app.modules.applications.remote_script import container_name_for
from app.modules.applications.schemas import (
    APP_TYPE_AUTO, ApplicationResponse, ApplicationStatus, DeploymentMethod,
    DeploymentTarget, DockerSource, RuntimeCategory
)
from app.modules.applications.service import ApplicationService
from app.modules.applications.source_fetcher import SourceFetcher, detect_runtime
from app.modules.credentials.schemas import AWSCredentials
from app.modules.credentials.service import CredentialService
from app.modules.deployments.terraform_executor import WorkspaceExecutor

logger = logging.getLogger(__name__)

ERROR_OUTPUT_LINES = 20


class RunSuperseded(Exception):
    """The run is no longer the current one for its application."""
    pass


def checkout_key(application_id: str, version: int) -> str:
    return f"{application_id}-{version}"


def clone_progress_message(elapsed: int) -> str:
    if elapsed < 30:
        return f"Clone in progress... {elapsed}s elapsed"
    if elapsed < 60:
        return f"Large repository detected... {elapsed}s elapsed (this may take a while)"
    if elapsed < 120:
        return f"Very large repository... {elapsed}s elapsed (consider using Docker deployment for faster results)"
    return f"Still cloning... {elapsed}s elapsed (repository is very large)"


def build_progress_message(elapsed: int) -> str:
    return f"Build in progress... {elapsed}s elapsed"


def ecs_container_name(app_name: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", app_name.lower())


def strip_pull_prefix(image: str) -> str:
    image = image.strip()
    if image.startswith("docker pull "):
        image = image[len("docker pull "):].strip()
    return image


class ProgressTicker:
    """
    Emits an elapsed-seconds callback every ``interval`` seconds on a daemon
    thread until stopped. Callback errors are logged and the ticker keeps going.
    """

    def __init__(self, interval: float, emit: Callable[[int], None], clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._emit = emit
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at = 0.0

    @property
    def elapsed(self) -> int:
        return int(self._clock() - self._started_at)

    def start(self) -> "ProgressTicker":
        self._started_at = self._clock()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self._emit(self.elapsed)
            except Exception as e:
                logger.warning(f"Progress update failed: {str(e)}")

    def __enter__(self) -> "ProgressTicker":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False


class ApplicationPipeline:
    def __init__(
        self,
        app_service: ApplicationService,
        credential_service: CredentialService,
        fetcher: Optional[SourceFetcher] = None,
        docker: Optional[DockerCLI] = None,
        executor: Optional[WorkspaceExecutor] = None,
        registry_factory=RegistryAdapter,
        cluster_factory=ClusterControl,
        remote_factory=RemoteExecutor
    ):
        self.app_service = app_service
        self.credential_service = credential_service
        self.fetcher = fetcher or SourceFetcher()
        self.docker = docker or DockerCLI()
        self.executor = executor or WorkspaceExecutor()
        self.registry_factory = registry_factory
        self.cluster_factory = cluster_factory
        self.remote_factory = remote_factory
        self._write_lock = threading.Lock()

    # Run bookkeeping

    def _guard(self, application_id: str, version: int) -> ApplicationResponse:
        """Fresh record, or RunSuperseded if a newer run owns the application"""
        if not run_registry.is_current(application_id, version):
            raise RunSuperseded()
        app = self.app_service.get_application_by_id(application_id)
        if app.run_version != version:
            run_registry.supersede(application_id, app.run_version)
            raise RunSuperseded()
        return app

    def _set_status(self, app_id: str, version: int, status: ApplicationStatus, *messages: str) -> ApplicationResponse:
        self._guard(app_id, version)
        self._write(app_id, version, list(messages), status=status)
        logger.info(f"Application {app_id} -> {status.value}")
        return self.app_service.get_application_by_id(app_id)

    def _log(self, app_id: str, version: int, *messages: str) -> None:
        self._guard(app_id, version)
        self._write(app_id, version, list(messages))

    def _write(self, app_id: str, version: int, messages: List[str], status: Optional[ApplicationStatus] = None, **fields) -> None:
        """Append log lines (and status) only while the record still belongs to this run"""
        with self._write_lock:
            written = self.app_service.append_logs(app_id, messages, status=status, expected_version=version, **fields)
        if not written:
            raise RunSuperseded()

    def _merge(self, app_id: str, version: int, section: str, values: Dict[str, Any]) -> None:
        with self._write_lock:
            merged = self.app_service.merge_section(app_id, section, values, expected_version=version)
        if not merged:
            raise RunSuperseded()

    def _ticker_log(self, app_id: str, version: int, format_message: Callable[[int], str]) -> Callable[[int], None]:
        def emit(elapsed: int):
            if not run_registry.is_current(app_id, version):
                return
            with self._write_lock:
                self.app_service.append_logs(app_id, [format_message(elapsed)], expected_version=version)
        return emit

    def run(self, application_id: str, version: int) -> None:
        """Drive one run. Never raises."""
        if not run_registry.begin(application_id, version):
            logger.info(f"Run {version} for application {application_id} is already superseded")
            return

        try:
            app = self._guard(application_id, version)
            credentials = self.credential_service.get_credentials(app.aws_account_id, app.region)
            if app.deployment_method == DeploymentMethod.GITHUB:
                self._deploy_from_github(app, version, credentials)
            else:
                self._deploy_from_docker(app, version, credentials)
        except RunSuperseded:
            logger.info(f"Run {version} for application {application_id} was superseded; stopping")
        except Exception as e:
            logger.error(f"Application deployment error for {application_id}: {str(e)}")
            self._fail(application_id, version, e)
        finally:
            self.fetcher.cleanup(checkout_key(application_id, version))
            run_registry.finish(application_id, version)

    def _fail(self, application_id: str, version: int, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        lines = [f"ERROR: {message}"]
        if isinstance(error, OrchestrationError) and error.suggestion:
            lines.append(error.suggestion)
        if isinstance(error, ToolExecutionError) and error.output:
            tail = [line for line in error.output.strip().splitlines() if line.strip()][-ERROR_OUTPUT_LINES:]
            lines.extend(tail)
        try:
            self._guard(application_id, version)
            self._write(application_id, version, lines, status=ApplicationStatus.FAILED, error_message=message)
        except RunSuperseded:
            logger.info(f"Not recording failure of superseded run {version} for application {application_id}")
        except Exception as update_error:
            logger.error(f"Failed to update application status: {str(update_error)}")

    # Sources

    def _deploy_from_github(self, app: ApplicationResponse, version: int, credentials: AWSCredentials) -> None:
        source = app.github
        if source is None:
            raise ConfigurationError("GitHub source configuration is missing")

        self._set_status(
            app.id, version, ApplicationStatus.CLONING,
            f"Cloning repository: {source.repo_url}",
            f"Branch: {source.branch}"
        )
        ticker = ProgressTicker(settings.clone_progress_interval, self._ticker_log(app.id, version, clone_progress_message))
        with ticker:
            try:
                repo_path = self.fetcher.clone(
                    checkout_key(app.id, version),
                    source.repo_url,
                    source.branch or "main",
                    token=source.token,
                    run_key=app.id
                )
            except OrchestrationError as e:
                self._log(app.id, version, f"Clone failed after {ticker.elapsed}s: {str(e)}")
                raise
        self._log(app.id, version, f"Repository cloned successfully in {ticker.elapsed}s")

        category = self._resolve_category(app, version, repo_path)
        defaults = defaults_for(category)
        start_command = source.start_command or defaults.start_command
        port = app.runtime.port

        self._set_status(
            app.id, version, ApplicationStatus.BUILDING,
            f"Building Docker image for {category.value} application",
            f"Start command: {start_command}",
            f"Port: {port}"
        )
        write_dockerfile(repo_path, category, start_command, port)
        image = f"{settings.resource_name_prefix}-{app.id}"
        with ProgressTicker(settings.build_progress_interval, self._ticker_log(app.id, version, build_progress_message)):
            self.docker.build(repo_path, image, "latest", run_key=app.id)
        local_image = f"{image}:latest"
        self._log(app.id, version, f"Docker image built successfully: {local_image}")

        if app.deployment_target == DeploymentTarget.EC2:
            # The instance pulls from ECR with its own role
            self._set_status(app.id, version, ApplicationStatus.DEPLOYING, "Publishing image for EC2 deployment")
            image_uri, registry_host = self._publish(app, version, credentials, local_image)
            self._deploy_to_ec2(app, version, credentials, image_uri, registry=registry_host)
        else:
            self._set_status(app.id, version, ApplicationStatus.PUSHING, "Pushing image to ECR")
            image_uri, _ = self._publish(app, version, credentials, local_image)
            self._deploy_to_ecs(app, version, credentials, image_uri)

    def _resolve_category(self, app: ApplicationResponse, version: int, repo_path: Path) -> RuntimeCategory:
        app_type = app.github.app_type if app.github else APP_TYPE_AUTO
        if app_type == APP_TYPE_AUTO:
            category = detect_runtime(repo_path)
            self._log(app.id, version, f"Detected app type: {category.value}")
        else:
            category = RuntimeCategory(app_type)
            self._log(app.id, version, f"Using specified app type: {category.value}")
        return category

    def _deploy_from_docker(self, app: ApplicationResponse, version: int, credentials: AWSCredentials) -> None:
        source = app.docker
        if source is None:
            raise ConfigurationError("Docker source configuration is missing")
        reference = DockerSource(image=strip_pull_prefix(source.image), registry=source.registry, tag=source.tag).reference
        self._log(app.id, version, f"Deploying Docker image: {reference}")

        if app.deployment_target == DeploymentTarget.EC2:
            self._deploy_to_ec2(app, version, credentials, reference)
        else:
            self._deploy_to_ecs(app, version, credentials, reference)

    def _publish(self, app: ApplicationResponse, version: int, credentials: AWSCredentials, local_image: str) -> Tuple[str, str]:
        """Push the local image to the application's ECR repository. Returns (image uri, registry host)."""
        repository_name = f"{settings.resource_name_prefix}/{app.id}"
        registry = self.registry_factory(credentials, app.region)
        registry.ensure_repository(repository_name)
        auth = registry.get_authorization()
        self.docker.login(auth)

        image_uri = f"{registry.repository_uri(auth.account_id, repository_name)}:latest"
        self.docker.tag(local_image, image_uri)
        self._guard(app.id, version)
        self.docker.push(image_uri, run_key=app.id)

        self._merge(app.id, version, "aws", {
            "ecr_repository": repository_name,
            "ecr_image_uri": image_uri,
        })
        self._log(app.id, version, f"Image pushed to ECR: {image_uri}")
        return image_uri, auth.registry_host

    # Destinations

    def _deploy_to_ecs(self, app: ApplicationResponse, version: int, credentials: AWSCredentials, image_uri: str) -> None:
        cluster_name = settings.ecs_cluster_name
        app = self._set_status(app.id, version, ApplicationStatus.DEPLOYING, f"Deploying to ECS cluster: {cluster_name}")
        cluster = self.cluster_factory(credentials, app.region)
        cluster.ensure_cluster(cluster_name)

        family = f"{settings.resource_name_prefix}-{app.id}"
        task_definition = cluster.register_task_definition(
            family,
            ecs_container_name(app.name),
            image_uri,
            app.runtime.port,
            cpu=app.runtime.cpu,
            memory=app.runtime.memory,
            environment=app.runtime.environment_variables,
            execution_role_arn=settings.ecs_execution_role_arn
        )
        task_definition_arn = task_definition.get("taskDefinitionArn")
        self._merge(app.id, version, "aws", {
            "ecs_cluster": cluster_name,
            "task_definition": family,
            "task_definition_arn": task_definition_arn,
        })
        self._log(app.id, version, f"Task definition registered: {task_definition_arn or family}")

        if app.aws.ecs_service:
            self._guard(app.id, version)
            cluster.update_service(cluster_name, app.aws.ecs_service, task_definition_arn or family)
            self._log(app.id, version, f"ECS service {app.aws.ecs_service} updated")

        self._mark_running(app.id, version, f"http://app-{app.id}.{settings.internal_domain}")

    def _deploy_to_ec2(
        self,
        app: ApplicationResponse,
        version: int,
        credentials: AWSCredentials,
        image: str,
        registry: Optional[str] = None
    ) -> None:
        instance_id = app.ec2.instance_id
        if not instance_id:
            raise ConfigurationError("EC2 instance ID is required for EC2 deployment")
        app = self._set_status(app.id, version, ApplicationStatus.DEPLOYING, f"Deploying to EC2 instance: {instance_id}")
        remote = self.remote_factory(credentials, app.region)
        port = app.runtime.port

        instance = remote.describe_instance(instance_id)
        self._merge(app.id, version, "ec2", {
            "public_ip": instance.public_ip,
            "private_ip": instance.private_ip,
        })
        self._log(
            app.id, version,
            f"Instance: {instance_id} ({instance.state or 'unknown'})",
            f"Public IP: {instance.public_ip or 'none'}"
        )

        security_group_id = instance.security_group_id
        if security_group_id:
            rule = self.executor.apply_idempotent_rule(
                security_group_id, port, credentials, f"Docker app port {port}", run_key=app.id
            )
            if rule.success and rule.already_exists:
                self._log(app.id, version, f"Port {port} already open in security group {security_group_id}")
            elif rule.success:
                self._log(app.id, version, f"Opened port {port} in security group {security_group_id}")
            else:
                self._log(app.id, version, f"WARNING: Could not auto-open port {port}: {rule.error}")

        remote.verify_online(instance_id)
        self._log(app.id, version, "SSM agent is online")

        container_name = container_name_for(image)
        self._guard(app.id, version)
        output = remote.deploy_container(
            instance_id,
            image,
            container_name,
            port,
            environment=app.runtime.environment_variables,
            registry=registry
        )
        self._log(app.id, version, *self._tail(output))

        self._merge(app.id, version, "ec2", {"container_name": container_name})
        if security_group_id:
            self._merge(app.id, version, "aws", {"security_group_id": security_group_id})

        host = instance.public_ip or instance.private_ip
        self._mark_running(app.id, version, f"http://{host}:{port}" if host else None)

    @staticmethod
    def _tail(output: str) -> List[str]:
        lines = [line for line in (output or "").strip().splitlines() if line.strip()]
        return lines[-ERROR_OUTPUT_LINES:] or ["Remote command completed"]

    def _mark_running(self, app_id: str, version: int, url: Optional[str]) -> None:
        self._guard(app_id, version)
        messages = ["Deployment completed successfully!"]
        if url:
            messages.append(f"Application URL: {url}")
        self._write(
            app_id, version, messages,
            status=ApplicationStatus.RUNNING,
            url=url,
            last_deployed_at=datetime.utcnow(),
            error_message=None
        )
        logger.info(f"Application {app_id} is running at {url}")

    # Lifecycle operations outside a run

    def set_running_state(self, app: ApplicationResponse, running: bool) -> ApplicationResponse:
        """Stop or start an application in place. Raises ConfigurationError if the target is not set up."""
        credentials = self.credential_service.get_credentials(app.aws_account_id, app.region)
        action = "started" if running else "stopped"

        if app.deployment_target == DeploymentTarget.EC2:
            if not app.ec2.instance_id or not app.ec2.container_name:
                raise ConfigurationError("Application has no deployed container to control")
            remote = self.remote_factory(credentials, app.region)
            remote.verify_online(app.ec2.instance_id)
            if running:
                remote.start_container(app.ec2.instance_id, app.ec2.container_name)
            else:
                remote.stop_container(app.ec2.instance_id, app.ec2.container_name)
        else:
            if not app.aws.ecs_service:
                raise ConfigurationError("No ECS service found for this application")
            cluster = self.cluster_factory(credentials, app.region)
            cluster_name = app.aws.ecs_cluster or settings.ecs_cluster_name
            if running:
                cluster.start_service(cluster_name, app.aws.ecs_service)
            else:
                cluster.stop_service(cluster_name, app.aws.ecs_service)

        status = ApplicationStatus.RUNNING if running else ApplicationStatus.STOPPED
        with self._write_lock:
            self.app_service.append_logs(app.id, [f"Application {action}"], status=status)
        return self.app_service.get_application_by_id(app.id)

    def diagnose(self, app: ApplicationResponse) -> str:
        if app.deployment_target != DeploymentTarget.EC2:
            raise ConfigurationError("Diagnostics are only available for EC2 deployments")
        if not app.ec2.instance_id:
            raise ConfigurationError("EC2 instance ID is required for diagnostics")
        credentials = self.credential_service.get_credentials(app.aws_account_id, app.region)
        remote = self.remote_factory(credentials, app.region)
        remote.verify_online(app.ec2.instance_id)
        container_name = app.ec2.container_name or (container_name_for(app.docker.image) if app.docker else "app")
        return remote.diagnose(app.ec2.instance_id, container_name, app.runtime.port)


def run_application_pipeline(application_id: str, version: int, pipeline: Optional[ApplicationPipeline] = None):
    """
    Background worker entry point. Uses the service-role Supabase client so
    status updates bypass RLS.
    """
    if pipeline is None:
        from app.database.supabase_client import SupabaseClient
        client = SupabaseClient.get_service_client()
        pipeline = ApplicationPipeline(ApplicationService(client), CredentialService(client))
    pipeline.run(application_id, version)
