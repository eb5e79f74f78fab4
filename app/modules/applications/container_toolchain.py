import base64
import subprocess
import logging
from pathlib import Path
from typing import Optional, List
from pydantic import BaseModel, Field
from botocore.exceptions import ClientError, BotoCoreError
from app.config import settings
from app.core import process_registry
from app.core.exceptions import ToolExecutionError, aws_error
from app.modules.credentials.schemas import AWSCredentials

logger = logging.getLogger(__name__)


class RegistryAuth(BaseModel):
    username: str
    password: str = Field(repr=False)
    proxy_endpoint: str

    @property
    def account_id(self) -> str:
        return self.proxy_endpoint.replace("https://", "").split(".")[0]

    @property
    def registry_host(self) -> str:
        return self.proxy_endpoint.replace("https://", "")


class DockerCLI:
    """Thin wrapper over the docker binary. Every failure surfaces as ToolExecutionError with its output."""

    def __init__(self, docker_binary: Optional[str] = None):
        self.docker_binary = docker_binary or settings.docker_binary

    def _run(
        self,
        args: List[str],
        timeout: int,
        cwd: Optional[Path] = None,
        stdin: Optional[str] = None,
        run_key: Optional[str] = None
    ) -> str:
        cmd = [self.docker_binary] + args
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdin=subprocess.PIPE if stdin is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise ToolExecutionError(f"Failed to start docker: {str(e)}")

        if run_key:
            process_registry.register(run_key, proc)
        try:
            output, _ = proc.communicate(input=stdin, timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            output, _ = proc.communicate()
            raise ToolExecutionError(f"docker {args[0]} timed out after {timeout}s", output=output or "")
        finally:
            if run_key:
                process_registry.unregister(run_key, proc)

        if proc.returncode != 0:
            raise ToolExecutionError(
                f"docker {args[0]} failed with exit code {proc.returncode}",
                output=output or "",
                exit_code=proc.returncode
            )
        return output or ""

    def build(self, context_dir: Path, image: str, tag: str = "latest", run_key: Optional[str] = None) -> str:
        logger.info(f"Building Docker image: {image}:{tag}")
        return self._run(["build", "-t", f"{image}:{tag}", "."], settings.docker_build_timeout, cwd=context_dir, run_key=run_key)

    def tag(self, source: str, target: str) -> None:
        logger.info(f"Tagging image: {source} -> {target}")
        self._run(["tag", source, target], 60)

    def push(self, image: str, run_key: Optional[str] = None) -> str:
        logger.info(f"Pushing image: {image}")
        return self._run(["push", image], settings.docker_push_timeout, run_key=run_key)

    def login(self, auth: RegistryAuth) -> None:
        """Log in with the password on stdin so it never shows up in the process list"""
        self._run(
            ["login", "--username", auth.username, "--password-stdin", auth.proxy_endpoint],
            120,
            stdin=auth.password
        )
        logger.info(f"Logged into registry {auth.registry_host}")


class RegistryAdapter:
    """ECR repository management and push authorization."""

    def __init__(self, credentials: AWSCredentials, region: Optional[str] = None):
        self.region = region or credentials.region
        self.client = credentials.client("ecr", self.region)

    def ensure_repository(self, repository_name: str) -> dict:
        """Describe the repository, creating it if it does not exist"""
        try:
            existing = self.client.describe_repositories(repositoryNames=[repository_name])
            logger.info(f"Repository {repository_name} already exists")
            return existing["repositories"][0]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "RepositoryNotFoundException":
                raise aws_error(f"Failed to describe ECR repository {repository_name}", e)

        try:
            response = self.client.create_repository(
                repositoryName=repository_name,
                imageScanningConfiguration={"scanOnPush": False},
                imageTagMutability="MUTABLE"
            )
        except ClientError as e:
            raise aws_error(f"Failed to create ECR repository {repository_name}", e)
        logger.info(f"Created ECR repository: {repository_name}")
        return response["repository"]

    def get_authorization(self) -> RegistryAuth:
        try:
            response = self.client.get_authorization_token()
        except (ClientError, BotoCoreError) as e:
            raise aws_error("Failed to get ECR auth token", e)
        data = response["authorizationData"][0]
        username, password = base64.b64decode(data["authorizationToken"]).decode("utf-8").split(":", 1)
        return RegistryAuth(username=username, password=password, proxy_endpoint=data["proxyEndpoint"])

    def repository_uri(self, account_id: str, repository_name: str) -> str:
        return f"{account_id}.dkr.ecr.{self.region}.amazonaws.com/{repository_name}"

