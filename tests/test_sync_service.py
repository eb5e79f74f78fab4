"""
SyncService and /sync route tests with a stubbed reconciler.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.dependencies import get_current_user_id
from app.core.exceptions import CredentialError, DriftError
from app.database.supabase_client import get_supabase
from app.modules.credentials.schemas import AWSCredentials
from app.modules.sync.reconciler import ProbeResult
from app.modules.sync.routes import router
from app.modules.sync.scheduler import run_auto_sync
from app.modules.sync.service import SyncService
from tests.factories import make_deployment_row


@pytest.fixture
def reconciler():
    stub = MagicMock()
    stub.reconcile.return_value = ProbeResult(exists=True)
    return stub


@pytest.fixture
def service(fake_supabase, reconciler):
    sync = SyncService(fake_supabase, reconciler=reconciler)
    sync.credentials = MagicMock()
    sync.credentials.get_credentials.return_value = AWSCredentials(access_key_id="AKIATEST", secret_access_key="secret")
    return sync


def add_deployment(fake_supabase, **overrides):
    row = make_deployment_row(**overrides)
    fake_supabase.tables.setdefault("deployments", []).append(row)
    return row


def row_by_id(fake_supabase, deployment_id):
    return next(row for row in fake_supabase.tables["deployments"] if row["id"] == deployment_id)


def load(service, row):
    return service.deployments.get_deployment_by_id(row["id"])


class TestSyncOne:
    def test_existing_resource_only_stamps_sync_time(self, service, fake_supabase):
        row = add_deployment(fake_supabase)

        result = service.sync_one(load(service, row))

        stored = row_by_id(fake_supabase, row["id"])
        assert result.exists_in_aws is True
        assert stored["status"] == "completed"
        assert stored["last_synced_at"]
        assert stored.get("deleted_by") is None

    def test_missing_resource_is_marked_deleted_externally(self, service, fake_supabase, reconciler):
        reconciler.reconcile.return_value = ProbeResult(exists=False, error="Bucket not found in AWS")
        row = add_deployment(fake_supabase)

        result = service.sync_one(load(service, row))

        stored = row_by_id(fake_supabase, row["id"])
        assert result.exists_in_aws is False
        assert result.status.value == "deleted_externally"
        assert stored["status"] == "deleted_externally"
        assert stored["deleted_by"] == "aws_console"
        assert stored["deleted_at"]
        assert stored["error_log"] == "Bucket not found in AWS"

    def test_probe_error_leaves_status_alone(self, service, fake_supabase, reconciler):
        reconciler.reconcile.side_effect = DriftError("Failed to check bucket team-assets: AccessDenied")
        row = add_deployment(fake_supabase)

        result = service.sync_one(load(service, row))

        stored = row_by_id(fake_supabase, row["id"])
        assert result.exists_in_aws is None
        assert "Could not verify resource" in result.message
        assert stored["status"] == "completed"
        assert stored["last_synced_at"]
        assert [set(payload) for _, payload in fake_supabase.updates] == [{"updated_at", "last_synced_at"}]

    def test_destroy_during_drift_check_keeps_ui_deletion(self, service, fake_supabase, reconciler):
        row = add_deployment(fake_supabase)

        def destroyed_mid_check(deployment, credentials):
            stored = row_by_id(fake_supabase, row["id"])
            stored.update({"status": "destroyed", "deleted_by": "ui"})
            return ProbeResult(exists=False, error="Bucket not found in AWS")

        reconciler.reconcile.side_effect = destroyed_mid_check

        result = service.sync_one(load(service, row))

        stored = row_by_id(fake_supabase, row["id"])
        assert stored["status"] == "destroyed"
        assert stored["deleted_by"] == "ui"
        assert result.exists_in_aws is None
        assert result.status.value == "destroyed"

    def test_non_completed_deployment_is_skipped(self, service, fake_supabase, reconciler):
        row = add_deployment(fake_supabase, status="failed")

        result = service.sync_one(load(service, row))

        assert result.message == "Deployment not in completed state"
        assert fake_supabase.updates == []
        reconciler.reconcile.assert_not_called()


class TestSweeps:
    def test_sync_all_counts_and_isolates_errors(self, service, fake_supabase, reconciler):
        gone = add_deployment(fake_supabase, resource_name="gone")
        broken = add_deployment(fake_supabase, resource_name="broken")
        add_deployment(fake_supabase, resource_name="fine")
        add_deployment(fake_supabase, resource_name="old", status="destroyed")

        def reconcile(deployment, credentials):
            if deployment.id == broken["id"]:
                raise RuntimeError("unexpected")
            return ProbeResult(exists=deployment.id != gone["id"])

        reconciler.reconcile.side_effect = reconcile

        summary = service.sync_all("user-1")

        assert summary.total_checked == 2
        assert summary.deleted_externally == 1
        assert summary.errors == 1
        assert row_by_id(fake_supabase, gone["id"])["status"] == "deleted_externally"
        assert summary.message == "Checked 2 deployments, found 1 deleted externally"

    def test_sync_all_is_scoped_to_user(self, service, fake_supabase, reconciler):
        add_deployment(fake_supabase)
        add_deployment(fake_supabase, user_id="someone-else")

        assert service.sync_all("user-1").total_checked == 1
        assert service.sync_all().total_checked == 2

    def test_auto_sync_picks_stale_records_first(self, service, fake_supabase, reconciler):
        now = datetime.utcnow()
        fresh = add_deployment(fake_supabase, last_synced_at=now.isoformat())
        never = add_deployment(fake_supabase, last_synced_at=None)
        old = add_deployment(fake_supabase, last_synced_at=(now - timedelta(days=2)).isoformat())

        summary = service.auto_sync(limit=5)

        checked = [result.deployment_id for result in summary.results]
        assert checked == [never["id"], old["id"]]
        assert fresh["id"] not in checked

    def test_auto_sync_respects_limit(self, service, fake_supabase):
        for _ in range(3):
            add_deployment(fake_supabase)

        assert service.auto_sync(limit=2).total_checked == 2


class TestRoutes:
    @pytest.fixture
    def client(self, fake_supabase, user_data, no_rate_limit, service):
        app = FastAPI()
        app.dependency_overrides[get_current_user_id] = lambda: user_data
        app.dependency_overrides[get_supabase] = lambda: fake_supabase
        app.include_router(router, prefix="/api/v1")
        with patch("app.modules.sync.routes.SyncService", return_value=service):
            yield TestClient(app)

    def test_sync_one(self, client, fake_supabase):
        row = add_deployment(fake_supabase)

        response = client.post(f"/api/v1/sync/deployment/{row['id']}")

        assert response.status_code == 200
        assert response.json()["exists_in_aws"] is True

    def test_foreign_deployment_is_not_found(self, client, fake_supabase):
        row = add_deployment(fake_supabase, user_id="someone-else")

        assert client.post(f"/api/v1/sync/deployment/{row['id']}").status_code == 404

    def test_undecryptable_credentials(self, client, fake_supabase, service):
        service.credentials.get_credentials.side_effect = CredentialError("Failed to decrypt AWS credentials")
        row = add_deployment(fake_supabase)

        response = client.post(f"/api/v1/sync/deployment/{row['id']}")

        assert response.status_code == 400

    def test_sync_all(self, client, fake_supabase):
        add_deployment(fake_supabase)
        add_deployment(fake_supabase, user_id="someone-else")

        body = client.post("/api/v1/sync/all").json()

        assert body["total_checked"] == 1

    def test_super_user_auto_sync_covers_all_tenants(self, client, fake_supabase, user_data):
        user_data["app_metadata"] = {"type": "super_user"}
        add_deployment(fake_supabase)
        add_deployment(fake_supabase, user_id="someone-else")

        body = client.post("/api/v1/sync/auto").json()

        assert body["total_checked"] == 2


def test_scheduled_sweep_uses_service_client():
    with patch("app.modules.sync.scheduler.SupabaseClient") as supabase_client, \
            patch("app.modules.sync.scheduler.SyncService") as sync_service:
        sync_service.return_value.auto_sync.return_value = MagicMock(total_checked=1, deleted_externally=0, errors=0)

        run_auto_sync()

    sync_service.assert_called_once_with(supabase_client.get_service_client.return_value)
    sync_service.return_value.auto_sync.assert_called_once_with()
