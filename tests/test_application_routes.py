"""
Route tests for /applications. The background pipeline and source cleanup
are patched; the pipeline dependency is replaced for stop/start/diagnose.
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.dependencies import get_current_user_id
from app.core.exceptions import ConfigurationError, UnreachableTargetError
from app.database.supabase_client import get_supabase
from app.modules.applications import run_registry
from app.modules.applications.routes import get_pipeline, router
from app.modules.applications.schemas import ApplicationResponse
from tests.factories import make_application_row


@pytest.fixture
def pipeline():
    return MagicMock()


@pytest.fixture
def client(fake_supabase, user_data, aws_account, no_rate_limit, pipeline):
    app = FastAPI()
    app.dependency_overrides[get_current_user_id] = lambda: user_data
    app.dependency_overrides[get_supabase] = lambda: fake_supabase
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.include_router(router, prefix="/api/v1")
    return TestClient(app)


@pytest.fixture
def run_pipeline():
    with patch("app.modules.applications.routes.run_application_pipeline") as worker:
        yield worker


@pytest.fixture
def fetcher():
    with patch("app.modules.applications.routes.SourceFetcher") as fetcher_class:
        yield fetcher_class.return_value


def add_application(fake_supabase, **overrides):
    row = make_application_row(**overrides)
    fake_supabase.tables.setdefault("applications", []).append(row)
    return row


def stored(fake_supabase):
    return fake_supabase.tables["applications"][0]


GITHUB_REQUEST = {
    "aws_account_id": "acct-1",
    "name": "Storefront API",
    "deployment_method": "github",
    "github": {"repo_url": "https://github.com/acme/storefront", "token": "ghp_secret"},
}


class TestCreate:
    def test_github_application_is_scheduled(self, client, fake_supabase, run_pipeline):
        response = client.post("/api/v1/applications", json=GITHUB_REQUEST)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        record = stored(fake_supabase)
        assert record["id"] == body["application_id"]
        assert record["region"] == "us-east-1"
        assert record["run_version"] == 0
        assert record["deployment_logs"][0].endswith("Application created")
        run_pipeline.assert_called_once_with(record["id"], 0)

    def test_docker_source_with_github_section_is_rejected(self, client, fake_supabase, run_pipeline):
        response = client.post("/api/v1/applications", json={
            **GITHUB_REQUEST,
            "deployment_method": "docker",
            "docker": {"image": "nginx"},
        })

        assert response.status_code == 422
        assert fake_supabase.tables.get("applications", []) == []
        run_pipeline.assert_not_called()

    def test_ec2_target_requires_instance(self, client, run_pipeline):
        response = client.post("/api/v1/applications", json={
            "aws_account_id": "acct-1",
            "name": "web",
            "deployment_method": "docker",
            "deployment_target": "ec2",
            "docker": {"image": "nginx"},
        })

        assert response.status_code == 422
        run_pipeline.assert_not_called()

    def test_invalid_name(self, client, run_pipeline):
        response = client.post("/api/v1/applications", json={**GITHUB_REQUEST, "name": "bad/name"})

        assert response.status_code == 422

    def test_foreign_account_is_not_found(self, client, fake_supabase, run_pipeline):
        fake_supabase.tables["aws_accounts"][0]["user_id"] = "someone-else"

        response = client.post("/api/v1/applications", json=GITHUB_REQUEST)

        assert response.status_code == 404
        run_pipeline.assert_not_called()


class TestRead:
    def test_token_is_hidden(self, client, fake_supabase):
        github = {"repo_url": "https://github.com/acme/storefront", "branch": "main", "token": "ghp_secret"}
        row = add_application(fake_supabase, github=github)

        single = client.get(f"/api/v1/applications/{row['id']}")
        listing = client.get("/api/v1/applications")

        assert single.status_code == 200
        assert single.json()["github"]["token"] is None
        assert listing.json()[0]["github"]["token"] is None
        assert stored(fake_supabase)["github"]["token"] == "ghp_secret"

    def test_foreign_application_is_not_found(self, client, fake_supabase):
        row = add_application(fake_supabase, user_id="someone-else")

        response = client.get(f"/api/v1/applications/{row['id']}")

        assert response.status_code == 404

    def test_super_user_sees_foreign_application(self, client, fake_supabase, user_data):
        user_data["app_metadata"] = {"type": "super_user"}
        row = add_application(fake_supabase, user_id="someone-else")

        assert client.get(f"/api/v1/applications/{row['id']}").status_code == 200

    def test_progress(self, client, fake_supabase):
        row = add_application(fake_supabase, status="building", deployment_logs=["a", "b"])

        body = client.get(f"/api/v1/applications/{row['id']}/progress").json()

        assert body["status"] == "building"
        assert body["deployment_logs"] == ["a", "b"]


class TestRedeployAndCancel:
    def test_redeploy_resets_and_supersedes(self, client, fake_supabase, run_pipeline):
        row = add_application(fake_supabase, status="failed", error_message="boom", run_version=3,
                              deployment_logs=["old", "ERROR: boom"])
        run_registry.begin(row["id"], 3)

        response = client.post(f"/api/v1/applications/{row['id']}/deploy")

        assert response.status_code == 200
        record = stored(fake_supabase)
        assert record["status"] == "pending"
        assert record["run_version"] == 4
        assert len(record["deployment_logs"]) == 1
        assert record["deployment_logs"][0].endswith("Redeployment initiated")
        assert not run_registry.is_current(row["id"], 3)
        run_pipeline.assert_called_once_with(row["id"], 4)

    def test_cancel_in_progress(self, client, fake_supabase, fetcher):
        row = add_application(fake_supabase, status="building", run_version=1)
        run_registry.begin(row["id"], 1)

        response = client.post(f"/api/v1/applications/{row['id']}/cancel")

        assert response.status_code == 200
        record = stored(fake_supabase)
        assert record["status"] == "failed"
        assert record["error_message"] == "Deployment cancelled by user"
        assert record["deployment_logs"][-1].endswith("Deployment cancelled by user")
        assert record["run_version"] == 2
        assert not run_registry.is_current(row["id"], 1)
        fetcher.cleanup.assert_called_once_with(f"{row['id']}-1")

    @pytest.mark.parametrize("status", ["running", "stopped", "failed"])
    def test_cancel_requires_in_progress_status(self, client, fake_supabase, fetcher, status):
        row = add_application(fake_supabase, status=status)

        response = client.post(f"/api/v1/applications/{row['id']}/cancel")

        assert response.status_code == 400
        assert stored(fake_supabase)["status"] == status
        fetcher.cleanup.assert_not_called()


class TestStopStart:
    def test_stop_running_application(self, client, fake_supabase, pipeline):
        row = add_application(fake_supabase, status="running")
        pipeline.set_running_state.return_value = ApplicationResponse(**{**row, "status": "stopped"})

        response = client.post(f"/api/v1/applications/{row['id']}/stop")

        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        assert pipeline.set_running_state.call_args.kwargs == {"running": False}

    def test_stop_requires_running(self, client, fake_supabase, pipeline):
        row = add_application(fake_supabase, status="building")

        response = client.post(f"/api/v1/applications/{row['id']}/stop")

        assert response.status_code == 400
        pipeline.set_running_state.assert_not_called()

    def test_start_requires_stopped(self, client, fake_supabase, pipeline):
        row = add_application(fake_supabase, status="running")

        response = client.post(f"/api/v1/applications/{row['id']}/start")

        assert response.status_code == 400

    def test_missing_service_is_a_bad_request(self, client, fake_supabase, pipeline):
        row = add_application(fake_supabase, status="stopped")
        pipeline.set_running_state.side_effect = ConfigurationError("No ECS service found for this application")

        response = client.post(f"/api/v1/applications/{row['id']}/start")

        assert response.status_code == 400
        assert "No ECS service" in response.json()["detail"]


class TestDiagnose:
    def test_report(self, client, fake_supabase, pipeline):
        row = add_application(fake_supabase, deployment_target="ec2",
                              ec2={"instance_id": "i-0123", "container_name": "web-app"})
        pipeline.diagnose.return_value = "=== DIAGNOSTIC REPORT ==="

        body = client.post(f"/api/v1/applications/{row['id']}/diagnose").json()

        assert body == {
            "application_id": row["id"],
            "instance_id": "i-0123",
            "container_name": "web-app",
            "report": "=== DIAGNOSTIC REPORT ===",
        }

    def test_unreachable_instance_is_a_conflict(self, client, fake_supabase, pipeline):
        row = add_application(fake_supabase, deployment_target="ec2", ec2={"instance_id": "i-0123"})
        pipeline.diagnose.side_effect = UnreachableTargetError(
            "Instance i-0123 is not managed by SSM", suggestion="Attach an instance profile"
        )

        response = client.post(f"/api/v1/applications/{row['id']}/diagnose")

        assert response.status_code == 409
        assert response.json()["detail"] == "Instance i-0123 is not managed by SSM. Attach an instance profile"


def test_delete_supersedes_run(client, fake_supabase):
    row = add_application(fake_supabase, status="deploying", run_version=2)
    run_registry.begin(row["id"], 2)

    response = client.delete(f"/api/v1/applications/{row['id']}")

    assert response.status_code == 204
    assert fake_supabase.tables["applications"] == []
    assert not run_registry.is_current(row["id"], 2)
