"""
Tests for the HTTP routes.

The app is built with in-memory collaborators on ``app.state``; the
lifespan is not entered, so no database or Graph access is needed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from admin_sync import AdminUserSync
from api import create_app, build_scheduler
from entitlements import EntitlementService
from helpers import FakeDB, FakeDirectory, InMemoryEntitlementStore, InMemoryLock, member
from role_scopes import ALL_SCOPES
from scheduler import ADMIN_USER_SYNC_TASK, SchedulerService


@pytest.fixture
def store():
    return InMemoryEntitlementStore([
        {"user_id": "existing", "email": "existing@example.com", "display_name": "Existing", "roles": ["form-creator"]},
    ])


@pytest.fixture
def directory():
    return FakeDirectory(
        members=[member("m1"), member("existing")],
        users=[member("new-user", "New User", "new@example.com"), member("existing")],
    )


@pytest.fixture
def app(store, directory, test_config):
    application = create_app()
    db = FakeDB()
    application.state.db = db
    application.state.entitlements = EntitlementService(directory=directory, store=store, db=db)
    application.state.admin_sync = AdminUserSync(
        directory=directory, store=store, db=db, lock=InMemoryLock(), config=test_config,
    )
    application.state.lock_store = MagicMock()
    application.state.scheduler = None
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


class TestHealth:

    def test_healthy(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_unhealthy_database(self, app, client):
        app.state.db = MagicMock()
        app.state.db.health_check.return_value = {"status": "unhealthy", "error": "connection refused"}
        resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"


class TestUserRoutes:

    def test_list_users(self, client):
        resp = client.get("/users")
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "success"
        assert [u["user_id"] for u in body["entities"]] == ["existing"]

    def test_get_user(self, client):
        resp = client.get("/users/existing")
        assert resp.status_code == 200
        assert resp.json()["entity"]["roles"] == ["form-creator"]

    def test_get_missing_user_is_404(self, client):
        resp = client.get("/users/nobody")
        assert resp.status_code == 404
        assert resp.json()["detail"]["error_code"] == "ENT_3001"

    def test_add_user_looks_up_email(self, client, store):
        resp = client.post("/users", json={"email": "new@example.com", "roles": ["admin"]})
        assert resp.status_code == 200
        assert resp.json()["entity"]["id"] == "new-user"
        assert store.records["new-user"]["scopes"] == list(ALL_SCOPES)
        assert store.records["new-user"]["display_name"] == "New User"

    def test_add_user_unknown_email_is_404(self, client):
        resp = client.post("/users", json={"email": "ghost@example.com", "roles": ["admin"]})
        assert resp.status_code == 404
        assert resp.json()["detail"]["error_code"] == "DIR_2001"

    def test_add_existing_user_is_409(self, client):
        resp = client.post("/users", json={"email": "existing@example.com", "roles": ["admin"]})
        assert resp.status_code == 409

    def test_add_user_invalid_roles_is_400(self, client):
        resp = client.post("/users", json={"email": "new@example.com", "roles": ["superuser"]})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error_code"] == "ENT_3003"

    def test_update_user_replaces_roles(self, client, store):
        resp = client.put("/users/existing", json={"roles": ["admin"]})
        assert resp.status_code == 200
        assert resp.json()["entity"] == {"id": "existing"}
        assert store.records["existing"]["roles"] == ["admin"]
        assert store.records["existing"]["scopes"] == list(ALL_SCOPES)

    def test_update_user_missing_from_directory(self, client):
        resp = client.put("/users/m1", json={"roles": ["admin"]})
        assert resp.status_code == 404
        assert resp.json()["detail"]["error_code"] == "DIR_2001"

    def test_delete_user(self, client, store):
        resp = client.delete("/users/existing")
        assert resp.status_code == 200
        assert "existing" not in store.records

    def test_delete_missing_user_is_404(self, client):
        assert client.delete("/users/nobody").status_code == 404

    def test_roles(self, client):
        resp = client.get("/roles")
        assert resp.status_code == 200
        assert [r["name"] for r in resp.json()["roles"]] == ["admin", "form-creator"]


class TestMigrationRoute:

    def test_migrate_defaults_to_form_creator(self, client, store):
        resp = client.post("/users/migrate")
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Migration completed"
        assert body["status"] == "completed"
        assert body["summary"] == {"total": 2, "successful": 1, "failed": 0, "skipped": 1}
        assert store.records["m1"]["roles"] == ["form-creator"]

    def test_migrate_with_roles(self, client, store):
        resp = client.post("/users/migrate", json={"roles": ["admin"]})
        assert resp.status_code == 200
        assert store.records["m1"]["roles"] == ["admin"]

    def test_migrate_invalid_roles_is_400(self, client):
        resp = client.post("/users/migrate", json={"roles": ["form-publisher"]})
        assert resp.status_code == 400

    def test_unexpected_failure_is_500(self, app, client):
        app.state.admin_sync = MagicMock()
        app.state.admin_sync.migrate_users_from_group.side_effect = RuntimeError("boom")
        resp = client.post("/users/migrate")
        assert resp.status_code == 500
        assert resp.json()["detail"]["error_code"] == "ENT_3004"


class TestSchedulerRoutes:

    def test_trigger_without_scheduler_is_500(self, client):
        resp = client.post("/scheduler/sync-admin-users")
        assert resp.status_code == 500
        assert resp.json()["detail"]["message"] == "Scheduler service not available."

    def test_trigger_runs_admin_sync(self, app, client):
        sync = AsyncMock()
        scheduler = SchedulerService()
        scheduler.schedule_task(ADMIN_USER_SYNC_TASK, "0 * * * *", sync)
        app.state.scheduler = scheduler

        resp = client.post("/scheduler/sync-admin-users")

        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "message": "Admin user sync triggered successfully"}
        sync.assert_awaited_once()

    def test_trigger_failure_is_500(self, app, client):
        scheduler = MagicMock()
        scheduler.trigger_task = AsyncMock(return_value=False)
        app.state.scheduler = scheduler

        resp = client.post("/scheduler/sync-admin-users")

        assert resp.status_code == 500
        assert resp.json()["detail"]["error_code"] == "SCHED_4002"

    def test_status_when_disabled(self, client):
        assert client.get("/scheduler/status").json() == {"enabled": False, "started": False, "tasks": {}}

    def test_status_lists_tasks(self, app, client):
        scheduler = SchedulerService()
        scheduler.schedule_task(ADMIN_USER_SYNC_TASK, "0 * * * *", AsyncMock())
        app.state.scheduler = scheduler

        body = client.get("/scheduler/status").json()

        assert body["enabled"] is True
        assert body["tasks"][ADMIN_USER_SYNC_TASK]["cron_expression"] == "0 * * * *"

    def test_locks(self, app, client):
        app.state.lock_store.list_locks.return_value = [
            {"lock_name": "admin-user-sync", "lock_id": "a1", "created_at": None, "expires_at": None, "expired": False},
        ]
        body = client.get("/scheduler/locks").json()
        assert body["count"] == 1
        assert body["locks"][0]["lock_name"] == "admin-user-sync"


class TestBuildScheduler:

    def test_registers_sync_and_sweep(self, test_config):
        admin_sync = MagicMock()
        scheduler = build_scheduler(admin_sync, MagicMock(), test_config)
        assert set(scheduler.tasks) == {"admin-user-sync", "expired-lock-sweep"}

    def test_returns_none_when_everything_disabled(self, test_config):
        test_config.admin_user_sync.enabled = False
        test_config.lock.sweep_enabled = False
        assert build_scheduler(MagicMock(), MagicMock(), test_config) is None


class TestGlobalExceptionHandler:

    def test_unhandled_error_uses_registry_code(self, app):
        app.state.entitlements = MagicMock()
        app.state.entitlements.get_all_users.side_effect = KeyError("unexpected")
        client = TestClient(app, raise_server_exceptions=False)

        resp = client.get("/users")

        assert resp.status_code == 500
        assert resp.json()["detail"]["error_code"] == "SYS_1001"
