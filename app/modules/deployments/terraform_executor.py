import subprocess
import os
import json
import shutil
import uuid
import logging
import threading
from typing import Dict, Any, Optional, Callable, List
from pathlib import Path
from app.config import settings
from app.core import process_registry
from app.core.exceptions import OrchestrationError, ToolExecutionError, ConfigurationError
from app.modules.credentials.schemas import AWSCredentials
from app.modules.deployments.schemas import ResourceKind, ExecutionResult
from app.modules.deployments.tfvars import build_variables, render_tfvars, security_group_rule_variables

logger = logging.getLogger(__name__)

LogCallback = Callable[[List[str]], None]

TEMPLATE_FILES = {
    ResourceKind.EC2: "ec2.tf",
    ResourceKind.S3: "s3.tf",
    ResourceKind.IAM: "iam.tf",
}
SECURITY_GROUP_RULE_TEMPLATE = "security-group-rule.tf"
ALREADY_EXISTS_MARKERS = ("already exists", "InvalidPermission.Duplicate")

missing = set(ResourceKind) - set(TEMPLATE_FILES)
if missing:
    raise RuntimeError(f"No Terraform template for resource kinds: {sorted(k.value for k in missing)}")
del missing


class WorkspaceExecutor:
    """
    Runs Terraform in an isolated per-record workspace directory.

    A workspace is ``<workspace_dir>/<uuid4>`` holding ``main.tf`` (copied
    template), ``terraform.tfvars`` and the local state. It is kept after
    apply so destroy can reuse it, and removed only by ``release``.
    """

    def __init__(
        self,
        workspace_dir: Optional[str] = None,
        template_dir: Optional[str] = None,
        terraform_binary: Optional[str] = None
    ):
        self.workspace_dir = Path(workspace_dir or settings.terraform_workspace_dir)
        self.template_dir = Path(template_dir or settings.terraform_template_dir or Path(__file__).parent / "terraform")
        self.terraform_binary = terraform_binary or settings.terraform_binary

    def workspace_path(self, workspace_id: str) -> Path:
        return self.workspace_dir / workspace_id

    def _get_terraform_env(self, credentials: AWSCredentials) -> dict:
        """Process environment plus the tenant's AWS keys. Keys never go on the command line."""
        env = os.environ.copy()
        env.update(credentials.as_env())
        env.pop("AWS_SESSION_TOKEN", None)
        env["TF_IN_AUTOMATION"] = "1"
        return env

    def _prepare_workspace(self, template_name: str, variables: Dict[str, Any]) -> str:
        template = self.template_dir / template_name
        if not template.is_file():
            raise ConfigurationError(f"Terraform template not found: {template}")
        workspace_id = str(uuid.uuid4())
        path = self.workspace_path(workspace_id)
        path.mkdir(parents=True, exist_ok=False)
        shutil.copyfile(template, path / "main.tf")
        (path / "terraform.tfvars").write_text(render_tfvars(variables))
        logger.info(f"Created Terraform workspace {workspace_id} from {template_name}")
        return workspace_id

    def _run(
        self,
        args: List[str],
        cwd: Path,
        env: dict,
        timeout: int,
        log_callback: Optional[LogCallback] = None,
        run_key: Optional[str] = None
    ) -> str:
        """Run one terraform command, streaming merged stdout/stderr. Returns the captured output."""
        cmd = [self.terraform_binary] + args
        lines: List[str] = []
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
                bufsize=1,
            )
        except OSError as e:
            raise ToolExecutionError(f"Failed to start terraform: {str(e)}", output=str(e))

        if run_key:
            process_registry.register(run_key, proc)

        def stream_output():
            for line in iter(proc.stdout.readline, ''):
                lines.append(line)
                if log_callback and line.strip():
                    log_callback([line.rstrip()])

        stream_thread = threading.Thread(target=stream_output, daemon=True)
        stream_thread.start()
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            stream_thread.join(timeout=5)
            raise ToolExecutionError(
                f"terraform {args[0]} timed out after {timeout}s",
                output="".join(lines)
            )
        finally:
            if run_key:
                process_registry.unregister(run_key, proc)
        stream_thread.join(timeout=5)

        output = "".join(lines)
        if proc.returncode != 0:
            raise ToolExecutionError(
                f"terraform {args[0]} failed with exit code {proc.returncode}",
                output=output,
                exit_code=proc.returncode
            )
        return output

    def _read_outputs(self, path: Path, env: dict) -> Dict[str, Any]:
        """Flatten ``terraform output -json`` into name -> value."""
        try:
            result = subprocess.run(
                [self.terraform_binary, "output", "-json"],
                cwd=str(path),
                capture_output=True,
                text=True,
                env=env,
                timeout=60
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Failed to read Terraform outputs: {str(e)}")
            return {}
        if result.returncode != 0 or not result.stdout:
            logger.warning(f"terraform output exited with {result.returncode}")
            return {}
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Failed to parse Terraform outputs")
            return {}
        flat = {}
        for key, entry in (raw or {}).items():
            if isinstance(entry, dict) and "value" in entry:
                flat[key] = entry["value"]
            else:
                flat[key] = entry
        return flat

    def _init_and_apply(
        self,
        path: Path,
        env: dict,
        log_callback: Optional[LogCallback],
        run_key: Optional[str]
    ) -> str:
        if log_callback:
            log_callback(["Initializing Terraform..."])
        init_output = self._run(
            ["init", "-input=false"], path, env, settings.terraform_init_timeout, log_callback, run_key
        )
        if log_callback:
            log_callback(["Applying Terraform plan..."])
        apply_output = self._run(
            ["apply", "-auto-approve", "-input=false"], path, env, settings.terraform_apply_timeout, log_callback, run_key
        )
        return init_output + apply_output

    def apply(
        self,
        resource_kind: ResourceKind,
        config: Dict[str, Any],
        credentials: AWSCredentials,
        user_id: Optional[str] = None,
        log_callback: Optional[LogCallback] = None,
        run_key: Optional[str] = None
    ) -> ExecutionResult:
        """
        Provision one resource in a fresh workspace.

        The workspace id is returned whether or not apply succeeded, since a
        failed apply can still leave partial state behind.
        """
        kind = ResourceKind(resource_kind)
        workspace_id = None
        try:
            variables = build_variables(kind, config, credentials.region, user_id)
            workspace_id = self._prepare_workspace(TEMPLATE_FILES[kind], variables)
            path = self.workspace_path(workspace_id)
            env = self._get_terraform_env(credentials.with_region(variables.get("aws_region")))
            output = self._init_and_apply(path, env, log_callback, run_key)
            outputs = self._read_outputs(path, env)
            logger.info(f"Terraform apply completed in workspace {workspace_id}")
            return ExecutionResult(success=True, output=output, workspace_id=workspace_id, outputs=outputs)
        except ToolExecutionError as e:
            logger.error(f"Terraform apply failed in workspace {workspace_id}: {str(e)}")
            return ExecutionResult(success=False, output=e.output, error=e.output or str(e), workspace_id=workspace_id)
        except (OrchestrationError, OSError, KeyError) as e:
            logger.error(f"Terraform apply could not run: {str(e)}")
            return ExecutionResult(success=False, error=str(e), workspace_id=workspace_id)

    def destroy(
        self,
        workspace_id: str,
        credentials: AWSCredentials,
        log_callback: Optional[LogCallback] = None,
        run_key: Optional[str] = None
    ) -> ExecutionResult:
        """Destroy everything tracked by an existing workspace's state."""
        path = self.workspace_path(workspace_id) if workspace_id else None
        if not path or not path.is_dir():
            error = f"Workspace {workspace_id} not found"
            logger.error(error)
            return ExecutionResult(success=False, error=error, workspace_id=workspace_id)
        env = self._get_terraform_env(credentials)
        try:
            if not (path / ".terraform").is_dir():
                self._run(["init", "-input=false"], path, env, settings.terraform_init_timeout, log_callback, run_key)
            if log_callback:
                log_callback(["Destroying Terraform resources..."])
            output = self._run(
                ["destroy", "-auto-approve", "-input=false"],
                path, env, settings.terraform_destroy_timeout, log_callback, run_key
            )
            logger.info(f"Terraform destroy completed in workspace {workspace_id}")
            return ExecutionResult(success=True, output=output, workspace_id=workspace_id)
        except ToolExecutionError as e:
            logger.error(f"Terraform destroy failed in workspace {workspace_id}: {str(e)}")
            return ExecutionResult(success=False, output=e.output, error=e.output or str(e), workspace_id=workspace_id)

    def apply_idempotent_rule(
        self,
        security_group_id: str,
        port: int,
        credentials: AWSCredentials,
        description: str = "Application port",
        run_key: Optional[str] = None
    ) -> ExecutionResult:
        """
        Open an inbound TCP port on a security group.

        A rule that already exists counts as success with ``already_exists``.
        The scratch workspace is released afterwards either way; the rule is
        not tracked for destroy.
        """
        workspace_id = None
        try:
            variables = security_group_rule_variables(credentials.region, security_group_id, port, description)
            workspace_id = self._prepare_workspace(SECURITY_GROUP_RULE_TEMPLATE, variables)
            path = self.workspace_path(workspace_id)
            output = self._init_and_apply(path, self._get_terraform_env(credentials), None, run_key)
            logger.info(f"Opened port {port} on security group {security_group_id}")
            return ExecutionResult(success=True, output=output, workspace_id=workspace_id)
        except ToolExecutionError as e:
            combined = f"{e.output}\n{str(e)}"
            if any(marker in combined for marker in ALREADY_EXISTS_MARKERS):
                logger.info(f"Port {port} already open on security group {security_group_id}")
                return ExecutionResult(success=True, output=e.output, workspace_id=workspace_id, already_exists=True)
            logger.error(f"Failed to open port {port} on {security_group_id}: {str(e)}")
            return ExecutionResult(success=False, output=e.output, error=e.output or str(e), workspace_id=workspace_id)
        except (OrchestrationError, OSError) as e:
            logger.error(f"Failed to open port {port} on {security_group_id}: {str(e)}")
            return ExecutionResult(success=False, error=str(e), workspace_id=workspace_id)
        finally:
            if workspace_id:
                self.release(workspace_id)

    def release(self, workspace_id: str) -> bool:
        """Remove a workspace directory. Returns False if nothing was removed."""
        path = self.workspace_path(workspace_id)
        if not path.is_dir():
            return False
        try:
            shutil.rmtree(path)
            logger.info(f"Released Terraform workspace {workspace_id}")
            return True
        except OSError as e:
            logger.warning(f"Failed to release workspace {workspace_id}: {str(e)}")
            return False
