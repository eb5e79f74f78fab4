"""
Tests for the application delivery pipeline. All external tools are mocked;
records live in the in-memory Supabase fake so status order can be checked.
"""

import json
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.config import settings
from app.core.exceptions import (
    ConfigurationError, CredentialError, ToolExecutionError, UnreachableTargetError
)
from app.modules.applications import run_registry
from app.modules.applications.container_toolchain import RegistryAuth
from app.modules.applications.deployment_pipeline import (
    ApplicationPipeline,
    ProgressTicker,
    clone_progress_message,
    ecs_container_name,
    strip_pull_prefix,
)
from app.modules.applications.remote_execution import InstanceInfo
from app.modules.applications.schemas import ApplicationStatus
from app.modules.applications.service import ApplicationService, CANCELLED_MESSAGE
from app.modules.credentials.schemas import AWSCredentials
from app.modules.deployments.schemas import ExecutionResult
from tests.factories import make_application_row

REGISTRY_HOST = "123456789012.dkr.ecr.us-east-1.amazonaws.com"


@pytest.fixture
def env(fake_supabase, tmp_path):
    service = ApplicationService(fake_supabase)
    credentials = AWSCredentials(access_key_id="AKIATEST", secret_access_key="secret")
    credential_service = MagicMock()
    credential_service.get_credentials.return_value = credentials

    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "package.json").write_text(json.dumps({"dependencies": {"express": "4.18.0"}}))
    fetcher = MagicMock()
    fetcher.clone.return_value = repo

    executor = MagicMock()
    executor.apply_idempotent_rule.return_value = ExecutionResult(success=True)

    registry = MagicMock()
    registry.get_authorization.return_value = RegistryAuth(
        username="AWS", password="pw", proxy_endpoint=f"https://{REGISTRY_HOST}"
    )
    registry.repository_uri.side_effect = lambda account, name: f"{account}.dkr.ecr.us-east-1.amazonaws.com/{name}"

    cluster = MagicMock()
    cluster.register_task_definition.return_value = {"taskDefinitionArn": "arn:aws:ecs:us-east-1:123456789012:task-definition/app:1"}

    remote = MagicMock()
    remote.describe_instance.return_value = InstanceInfo(
        instance_id="i-0123", state="running", public_ip="54.1.2.3", private_ip="10.0.0.5", security_group_ids=["sg-1"]
    )
    remote.deploy_container.return_value = "SUCCESS: Container running on port 8080\n"

    docker = MagicMock()
    pipeline = ApplicationPipeline(
        service,
        credential_service,
        fetcher=fetcher,
        docker=docker,
        executor=executor,
        registry_factory=lambda creds, region: registry,
        cluster_factory=lambda creds, region: cluster,
        remote_factory=lambda creds, region: remote,
    )
    return SimpleNamespace(
        supabase=fake_supabase, service=service, credentials=credentials, fetcher=fetcher, docker=docker,
        executor=executor, registry=registry, cluster=cluster, remote=remote, pipeline=pipeline, repo=repo,
    )


def add_application(env, **overrides):
    row = make_application_row(**overrides)
    env.supabase.tables.setdefault("applications", []).append(row)
    return row


def stored(env):
    return env.supabase.tables["applications"][0]


def docker_ec2_overrides(**extra):
    overrides = {
        "deployment_method": "docker",
        "deployment_target": "ec2",
        "github": None,
        "docker": {"image": "docker pull nginx", "registry": "dockerhub", "tag": "1.25"},
        "ec2": {"instance_id": "i-0123"},
        "runtime": {"port": 8080, "cpu": "512", "memory": "1024", "environment_variables": {"MODE": "prod"}},
    }
    overrides.update(extra)
    return overrides


class TestGithubToEcs:
    def test_stage_order_and_outcome(self, env):
        row = add_application(env)

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        assert env.supabase.statuses("applications") == ["cloning", "building", "pushing", "deploying", "running"]
        assert record["url"] == f"http://app-{row['id']}.{settings.internal_domain}"
        assert record["aws"]["ecr_image_uri"] == f"{REGISTRY_HOST}/{settings.resource_name_prefix}/{row['id']}:latest"
        assert record["aws"]["task_definition"] == f"{settings.resource_name_prefix}-{row['id']}"
        assert record["aws"]["task_definition_arn"].endswith("task-definition/app:1")
        assert record["last_deployed_at"]
        logs = "\n".join(record["deployment_logs"])
        assert "Detected app type: nodejs" in logs
        assert "Deployment completed successfully!" in logs
        assert record["deployment_logs"][0].endswith("Application created")

    def test_build_push_and_task_definition(self, env):
        row = add_application(env, runtime={"port": 3000, "cpu": "256", "memory": "512", "environment_variables": {"A": "1"}})

        env.pipeline.run(row["id"], 0)

        image = f"{settings.resource_name_prefix}-{row['id']}"
        env.docker.build.assert_called_once_with(env.repo, image, "latest", run_key=row["id"])
        assert (env.repo / "Dockerfile").is_file()
        uri = f"{REGISTRY_HOST}/{settings.resource_name_prefix}/{row['id']}:latest"
        env.docker.tag.assert_called_once_with(f"{image}:latest", uri)
        env.docker.push.assert_called_once_with(uri, run_key=row["id"])
        args, kwargs = env.cluster.register_task_definition.call_args
        assert args[1] == "storefront-api"
        assert kwargs == {
            "cpu": "256", "memory": "512", "environment": {"A": "1"},
            "execution_role_arn": settings.ecs_execution_role_arn,
        }
        env.cluster.ensure_cluster.assert_called_once_with(settings.ecs_cluster_name)
        env.cluster.update_service.assert_not_called()
        env.fetcher.cleanup.assert_called_once_with(f"{row['id']}-0")

    def test_task_definition_gets_execution_role(self, env, monkeypatch):
        role = "arn:aws:iam::123456789012:role/ecsTaskExecutionRole"
        monkeypatch.setattr(settings, "ecs_execution_role_arn", role)
        row = add_application(env)

        env.pipeline.run(row["id"], 0)

        assert env.cluster.register_task_definition.call_args.kwargs["execution_role_arn"] == role

    def test_existing_service_is_rolled(self, env):
        row = add_application(env, aws={"ecs_service": "storefront"})

        env.pipeline.run(row["id"], 0)

        env.cluster.update_service.assert_called_once()
        assert env.cluster.update_service.call_args.args[1] == "storefront"

    def test_specified_app_type(self, env):
        github = {"repo_url": "https://github.com/acme/site", "branch": "main", "app_type": "static"}
        row = add_application(env, github=github)

        env.pipeline.run(row["id"], 0)

        assert any("Using specified app type: static" in line for line in stored(env)["deployment_logs"])
        assert "nginx" in (env.repo / "Dockerfile").read_text()


class TestEc2Destination:
    def test_docker_image_to_ec2(self, env):
        row = add_application(env, **docker_ec2_overrides())

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        assert env.supabase.statuses("applications") == ["deploying", "running"]
        assert record["url"] == "http://54.1.2.3:8080"
        assert record["ec2"]["container_name"] == "nginx-app"
        assert record["ec2"]["public_ip"] == "54.1.2.3"
        assert record["aws"]["security_group_id"] == "sg-1"
        env.executor.apply_idempotent_rule.assert_called_once_with(
            "sg-1", 8080, env.credentials, "Docker app port 8080", run_key=row["id"]
        )
        env.remote.deploy_container.assert_called_once_with(
            "i-0123", "nginx:1.25", "nginx-app", 8080, environment={"MODE": "prod"}, registry=None
        )
        env.docker.push.assert_not_called()
        env.fetcher.clone.assert_not_called()

    def test_github_to_ec2_skips_pushing_status(self, env):
        row = add_application(env, deployment_target="ec2", ec2={"instance_id": "i-0123"})

        env.pipeline.run(row["id"], 0)

        assert "pushing" not in env.supabase.statuses("applications")
        assert env.supabase.statuses("applications")[-1] == "running"
        assert env.remote.deploy_container.call_args.kwargs["registry"] == REGISTRY_HOST

    def test_port_rule_failure_is_only_a_warning(self, env):
        env.executor.apply_idempotent_rule.return_value = ExecutionResult(success=False, error="UnauthorizedOperation")
        row = add_application(env, **docker_ec2_overrides())

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        assert record["status"] == "running"
        assert any("WARNING: Could not auto-open port 8080" in line for line in record["deployment_logs"])

    def test_port_already_open(self, env):
        env.executor.apply_idempotent_rule.return_value = ExecutionResult(success=True, already_exists=True)
        row = add_application(env, **docker_ec2_overrides())

        env.pipeline.run(row["id"], 0)

        assert any("already open" in line for line in stored(env)["deployment_logs"])

    def test_unreachable_instance_fails_run(self, env):
        env.remote.verify_online.side_effect = UnreachableTargetError(
            "Instance i-0123 is not managed by SSM", suggestion="To enable SSM: attach a profile"
        )
        row = add_application(env, **docker_ec2_overrides())

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        assert record["status"] == "failed"
        assert record["error_message"] == "Instance i-0123 is not managed by SSM"
        assert "ERROR: Instance i-0123 is not managed by SSM" in "\n".join(record["deployment_logs"])
        assert "running" not in env.supabase.statuses("applications")
        env.remote.deploy_container.assert_not_called()


class TestFailures:
    def test_clone_failure(self, env):
        env.fetcher.clone.side_effect = CredentialError("Authentication failed", suggestion="Check your GitHub token")
        row = add_application(env)

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        logs = "\n".join(record["deployment_logs"])
        assert record["status"] == "failed"
        assert "Clone failed after" in logs
        assert "ERROR: Authentication failed" in logs
        assert "Check your GitHub token" in logs
        env.docker.build.assert_not_called()
        env.fetcher.cleanup.assert_called_once_with(f"{row['id']}-0")

    def test_build_output_tail_is_logged(self, env):
        env.docker.build.side_effect = ToolExecutionError(
            "docker build failed with exit code 1", output="Step 3/7\nnpm ERR! missing script: build\n", exit_code=1
        )
        row = add_application(env)

        env.pipeline.run(row["id"], 0)

        logs = stored(env)["deployment_logs"]
        assert stored(env)["status"] == "failed"
        assert any(line.endswith("npm ERR! missing script: build") for line in logs)

    def test_missing_instance_id(self, env):
        row = add_application(env, **docker_ec2_overrides(ec2={}))

        env.pipeline.run(row["id"], 0)

        assert stored(env)["status"] == "failed"
        assert "EC2 instance ID is required" in stored(env)["error_message"]


class TestRunVersioning:
    def test_superseded_run_writes_nothing(self, env):
        row = add_application(env)
        run_registry.supersede(row["id"], 1)

        env.pipeline.run(row["id"], 0)

        assert env.supabase.updates == []
        env.fetcher.clone.assert_not_called()

    def test_persisted_version_wins(self, env):
        row = add_application(env, run_version=2)

        env.pipeline.run(row["id"], 0)

        assert env.supabase.updates == []
        assert run_registry.current_version(row["id"]) == 2

    def test_cancel_during_build_stops_run(self, env):
        row = add_application(env)

        def cancel_while_building(*args, **kwargs):
            version = env.service.mark_cancelled(row["id"])
            run_registry.supersede(row["id"], version)

        env.docker.build.side_effect = cancel_while_building

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        assert record["status"] == "failed"
        assert record["error_message"] == CANCELLED_MESSAGE
        assert record["deployment_logs"][-1].endswith(CANCELLED_MESSAGE)
        assert "running" not in env.supabase.statuses("applications")
        env.docker.push.assert_not_called()
        env.fetcher.cleanup.assert_called_once_with(f"{row['id']}-0")

    def test_cancel_between_check_and_status_write(self, env):
        row = add_application(env)
        append_logs = env.service.append_logs

        def cancel_before_building(application_id, messages, status=None, **kwargs):
            if status == ApplicationStatus.BUILDING:
                env.service.mark_cancelled(application_id)
            return append_logs(application_id, messages, status=status, **kwargs)

        env.service.append_logs = cancel_before_building

        env.pipeline.run(row["id"], 0)

        record = stored(env)
        assert record["status"] == "failed"
        assert record["error_message"] == CANCELLED_MESSAGE
        assert record["run_version"] == 1
        assert record["deployment_logs"][-1].endswith(CANCELLED_MESSAGE)
        assert "building" not in env.supabase.statuses("applications")
        env.docker.build.assert_not_called()

    def test_stale_write_is_dropped(self, env):
        row = add_application(env, run_version=1)

        written = env.service.append_logs(row["id"], ["late line"], status=ApplicationStatus.RUNNING, expected_version=0)

        assert written is False
        assert stored(env)["status"] == "pending"
        assert env.supabase.updates == []
        assert env.service.update_application(row["id"], status=ApplicationStatus.RUNNING, expected_version=0) is None
        assert stored(env)["status"] == "pending"

    def test_redeploy_resets_log(self, env):
        row = add_application(env, status="failed", error_message="boom", deployment_logs=["a", "b", "ERROR: boom"])

        version = env.service.reset_for_redeploy(row["id"])

        record = stored(env)
        assert version == 1
        assert record["status"] == "pending"
        assert record["error_message"] == ""
        assert len(record["deployment_logs"]) == 1
        assert record["deployment_logs"][0].endswith("Redeployment initiated")


class TestLifecycleOperations:
    def test_stop_ecs_requires_service(self, env):
        row = add_application(env, status="running")
        app = env.service.get_application_by_id(row["id"])

        with pytest.raises(ConfigurationError):
            env.pipeline.set_running_state(app, running=False)

    def test_stop_and_start_ecs(self, env):
        row = add_application(env, status="running", aws={"ecs_service": "storefront", "ecs_cluster": "shared"})
        app = env.service.get_application_by_id(row["id"])

        stopped = env.pipeline.set_running_state(app, running=False)
        started = env.pipeline.set_running_state(stopped, running=True)

        env.cluster.stop_service.assert_called_once_with("shared", "storefront")
        env.cluster.start_service.assert_called_once_with("shared", "storefront")
        assert stopped.status.value == "stopped"
        assert started.status.value == "running"

    def test_stop_ec2_container(self, env):
        row = add_application(env, **docker_ec2_overrides(status="running", ec2={"instance_id": "i-0123", "container_name": "nginx-app"}))
        app = env.service.get_application_by_id(row["id"])

        env.pipeline.set_running_state(app, running=False)

        env.remote.stop_container.assert_called_once_with("i-0123", "nginx-app")
        assert stored(env)["status"] == "stopped"

    def test_diagnose(self, env):
        env.remote.diagnose.return_value = "=== DIAGNOSTIC REPORT ==="
        row = add_application(env, **docker_ec2_overrides(ec2={"instance_id": "i-0123", "container_name": "nginx-app"}))
        app = env.service.get_application_by_id(row["id"])

        assert env.pipeline.diagnose(app) == "=== DIAGNOSTIC REPORT ==="
        env.remote.diagnose.assert_called_once_with("i-0123", "nginx-app", 8080)

    def test_diagnose_requires_ec2(self, env):
        row = add_application(env)

        with pytest.raises(ConfigurationError):
            env.pipeline.diagnose(env.service.get_application_by_id(row["id"]))


class TestHelpers:
    @pytest.mark.parametrize("elapsed,fragment", [
        (10, "Clone in progress... 10s elapsed"),
        (40, "Large repository detected"),
        (90, "Very large repository"),
        (150, "Still cloning... 150s elapsed"),
    ])
    def test_clone_progress_message(self, elapsed, fragment):
        assert fragment in clone_progress_message(elapsed)

    def test_ecs_container_name(self):
        assert ecs_container_name("Storefront API_v2") == "storefront-api-v2"

    def test_strip_pull_prefix(self):
        assert strip_pull_prefix("  docker pull nginx:1.25 ") == "nginx:1.25"
        assert strip_pull_prefix("nginx") == "nginx"

    def test_ticker_survives_emit_errors(self):
        calls = []
        done = threading.Event()

        def emit(elapsed):
            calls.append(elapsed)
            if len(calls) == 1:
                raise RuntimeError("storage unavailable")
            done.set()

        with ProgressTicker(0.01, emit):
            assert done.wait(timeout=5)

        count = len(calls)
        time.sleep(0.05)
        assert len(calls) == count
