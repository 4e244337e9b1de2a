from datetime import datetime, timedelta, timezone

import pytest

from mcpdeploy.core.errors import DeploymentError, ErrorCode
from mcpdeploy.modules.deployments.schemas import DeploymentStatus, HealthStatus
from tests.fakes import USER_ID


def deployment_row(**overrides):
    row = {
        "id": "dep-1",
        "user_id": USER_ID,
        "deployment_name": "weather",
        "server_template_id": "tmpl-weather",
        "status": "pending",
    }
    row.update(overrides)
    return row


class TestDeploymentRows:
    def test_insert_and_get(self, deployment_service, fake_db):
        created = deployment_service.insert_deployment(deployment_row())
        assert created.id == "dep-1"
        assert created.created_at is not None
        assert deployment_service.get_deployment("dep-1").deployment_name == "weather"
        assert deployment_service.get_deployment("missing") is None

    def test_duplicate_name_for_same_user_is_name_taken(self, deployment_service):
        deployment_service.insert_deployment(deployment_row())
        with pytest.raises(DeploymentError) as exc_info:
            deployment_service.insert_deployment(deployment_row(id="dep-2"))
        assert exc_info.value.code == ErrorCode.DEPLOYMENT_NAME_TAKEN.value
        assert exc_info.value.status_code == 409

    def test_same_name_for_other_user_is_allowed(self, deployment_service):
        deployment_service.insert_deployment(deployment_row())
        deployment_service.insert_deployment(deployment_row(id="dep-2", user_id="someone-else"))
        assert deployment_service.deployment_name_exists(USER_ID, "weather")
        assert not deployment_service.deployment_name_exists(USER_ID, "weather-2")

    def test_rename_into_taken_name(self, deployment_service):
        deployment_service.insert_deployment(deployment_row())
        deployment_service.insert_deployment(deployment_row(id="dep-2", deployment_name="forecast"))
        with pytest.raises(DeploymentError) as exc_info:
            deployment_service.update_deployment("dep-2", {"deployment_name": "weather"})
        assert exc_info.value.code == ErrorCode.DEPLOYMENT_NAME_TAKEN.value

    def test_update_missing_is_404(self, deployment_service):
        with pytest.raises(DeploymentError) as exc_info:
            deployment_service.update_deployment("missing", {"environment": "staging"})
        assert exc_info.value.status_code == 404

    def test_update_writes_change_log(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row())
        deployment_service.update_deployment("dep-1", {"environment": "staging"})
        logs = fake_db.rows("deployment_logs")
        assert logs[-1]["message"] == "Deployment updated"
        assert logs[-1]["metadata"]["changes"] == ["environment"]

    def test_storage_failure_is_wrapped(self, deployment_service, fake_db):
        fake_db.fail("deployments", "select")
        with pytest.raises(DeploymentError) as exc_info:
            deployment_service.get_deployment("dep-1")
        assert exc_info.value.code == ErrorCode.GET_FAILED.value

    def test_active_deployments_exclude_stopped(self, deployment_service, fake_db):
        fake_db.seed(
            "deployments",
            deployment_row(id="a", deployment_name="a", status="running", created_at="2026-01-01T00:00:00+00:00"),
            deployment_row(id="b", deployment_name="b", status="failed", created_at="2026-01-02T00:00:00+00:00"),
            deployment_row(id="c", deployment_name="c", status="building", created_at="2026-01-03T00:00:00+00:00"),
        )
        assert [d.id for d in deployment_service.get_user_active_deployments(USER_ID)] == ["c", "a"]
        assert [d.id for d in deployment_service.list_deployments(USER_ID)] == ["c", "b", "a"]


class TestStatusTransitions:
    def test_forward_move_logs_status_change(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row())
        updated = deployment_service.update_deployment_status("dep-1", DeploymentStatus.BUILDING)
        assert updated.status == "building"
        log = fake_db.rows("deployment_logs")[-1]
        assert log["message"] == "Deployment status changed to: building"
        assert log["metadata"]["from"] == "pending"
        assert log["metadata"]["new_status"] == "building"

    def test_failed_records_error_message_and_error_log(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row(status="building"))
        updated = deployment_service.update_deployment_status("dep-1", "failed", reason="Build crashed")
        assert updated.error_message == "Build crashed"
        assert fake_db.rows("deployment_logs")[-1]["log_level"] == "error"

    def test_backward_move_rejected(self, deployment_service):
        deployment_service.insert_deployment(deployment_row(status="running"))
        with pytest.raises(DeploymentError) as exc_info:
            deployment_service.update_deployment_status("dep-1", "building")
        assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION.value

    def test_explicit_restart(self, deployment_service):
        deployment_service.insert_deployment(deployment_row(status="failed"))
        updated = deployment_service.update_deployment_status("dep-1", "deploying", explicit=True)
        assert updated.status == "deploying"

    def test_same_status_without_extra_is_noop(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row(status="running"))
        deployment_service.update_deployment_status("dep-1", "running")
        assert fake_db.rows("deployment_logs") == []

    def test_log_write_failure_keeps_saved_status(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row(status="building"))
        fake_db.fail("deployment_logs", "insert")
        updated = deployment_service.update_deployment_status("dep-1", "deploying")
        assert updated.status == "deploying"
        assert fake_db.rows("deployments")[0]["status"] == "deploying"

    def test_log_write_failure_keeps_saved_update(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row())
        fake_db.fail("deployment_logs", "insert")
        updated = deployment_service.update_deployment("dep-1", {"environment": "staging"})
        assert updated.environment == "staging"


class TestDelete:
    def test_removes_children_then_parent(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row())
        fake_db.seed("deployment_logs", {"deployment_id": "dep-1", "message": "x"})
        fake_db.seed("health_checks", {"deployment_id": "dep-1", "status": "healthy"})
        fake_db.seed("health_checks", {"deployment_id": "other", "status": "healthy"})

        assert deployment_service.delete_deployment("dep-1") is True
        assert fake_db.rows("deployments") == []
        assert fake_db.rows("deployment_logs") == []
        assert [row["deployment_id"] for row in fake_db.rows("health_checks")] == ["other"]

    def test_child_failure_keeps_parent(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row())
        fake_db.fail("health_checks", "delete")
        with pytest.raises(DeploymentError) as exc_info:
            deployment_service.delete_deployment("dep-1")
        assert exc_info.value.code == ErrorCode.DELETE_FAILED.value
        assert exc_info.value.details["table"] == "health_checks"
        assert len(fake_db.rows("deployments")) == 1
        assert ("api_usage", "delete") not in fake_db.executed


class TestLogs:
    def test_logs_newest_first_with_limit(self, deployment_service, fake_db):
        fake_db.seed(
            "deployment_logs",
            {"deployment_id": "dep-1", "log_level": "info", "message": "one", "created_at": "2026-01-01T00:00:01+00:00"},
            {"deployment_id": "dep-1", "log_level": "info", "message": "two", "created_at": "2026-01-01T00:00:02+00:00"},
            {"deployment_id": "dep-1", "log_level": "info", "message": "three", "created_at": "2026-01-01T00:00:03+00:00"},
        )
        assert [log.message for log in deployment_service.get_deployment_logs("dep-1", 2)] == ["three", "two"]

    def test_try_add_log_reports_failure(self, deployment_service, fake_db):
        fake_db.fail("deployment_logs", "insert")
        result = deployment_service.try_add_deployment_log("dep-1", "info", "hello")
        assert not result.ok
        assert "Failed to add deployment log" in result.error


class TestHealthChecks:
    def test_sync_uses_newest_checked_at(self, deployment_service, fake_db):
        deployment_service.insert_deployment(deployment_row(status="running"))
        newer = datetime(2026, 1, 1, 12, 0, 10, tzinfo=timezone.utc)
        older = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        deployment_service.record_health_check("dep-1", HealthStatus.HEALTHY, 120, 200, checked_at=newer)
        # Slower probe that started earlier lands last
        deployment_service.record_health_check("dep-1", HealthStatus.UNHEALTHY, None, None, "timeout", checked_at=older)

        latest = deployment_service.sync_health_status("dep-1")
        assert latest.status == HealthStatus.HEALTHY
        row = fake_db.rows("deployments")[0]
        assert row["health_status"] == "healthy"
        assert row["last_health_check"] == newer.isoformat()

    def test_sync_without_checks(self, deployment_service):
        deployment_service.insert_deployment(deployment_row())
        assert deployment_service.sync_health_status("dep-1") is None

    def test_running_deployments_need_health_url(self, deployment_service, fake_db):
        fake_db.seed(
            "deployments",
            deployment_row(id="a", deployment_name="a", status="running", health_check_url="https://a/health"),
            deployment_row(id="b", deployment_name="b", status="running"),
            deployment_row(id="c", deployment_name="c", status="failed", health_check_url="https://c/health"),
        )
        assert [d.id for d in deployment_service.list_running_deployments()] == ["a"]


class TestRailwayProjects:
    def test_save_upserts_per_user(self, deployment_service, fake_db):
        assert deployment_service.get_user_railway_project(USER_ID) is None
        deployment_service.save_user_railway_project(USER_ID, "proj-1", "mcp-11111111")
        deployment_service.save_user_railway_project(USER_ID, "proj-2", "mcp-11111111")
        rows = fake_db.rows("railway_projects")
        assert len(rows) == 1
        assert deployment_service.get_user_railway_project(USER_ID)["railway_project_id"] == "proj-2"


class TestTrials:
    def test_links_only_approved_applications(self, deployment_service, fake_db):
        fake_db.seed(
            "trial_applications",
            {"id": "app-ok", "status": "approved"},
            {"id": "app-pending", "status": "pending"},
        )
        fake_db.seed(
            "deployment_trials",
            {"id": "trial-1", "trial_application_id": "app-ok", "deployment_id": None, "converted": False},
        )

        pending = deployment_service.link_deployment_to_trial("dep-1", "app-pending")
        assert not pending.ok
        assert "not approved" in pending.error

        missing = deployment_service.link_deployment_to_trial("dep-1", "app-missing")
        assert not missing.ok

        linked = deployment_service.link_deployment_to_trial("dep-1", "app-ok")
        assert linked.ok
        assert fake_db.rows("deployment_trials")[0]["deployment_id"] == "dep-1"
        assert deployment_service.is_trial_deployment("dep-1")

    def test_second_active_trial_is_refused(self, deployment_service, fake_db):
        fake_db.seed("trial_applications", {"id": "app-ok", "status": "approved"})
        fake_db.seed(
            "deployment_trials",
            {"id": "trial-1", "trial_application_id": "app-old", "deployment_id": "dep-1", "converted": False},
            {"id": "trial-2", "trial_application_id": "app-ok", "deployment_id": None, "converted": False},
        )
        result = deployment_service.link_deployment_to_trial("dep-1", "app-ok")
        assert not result.ok
        assert "already has an active trial" in result.error

    def test_trial_info_days_remaining(self, deployment_service, fake_db):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        fake_db.seed("deployment_trials", {
            "id": "trial-1",
            "deployment_id": "dep-1",
            "trial_application_id": "app-ok",
            "trial_start": (now - timedelta(days=4)).isoformat(),
            "trial_end": (now + timedelta(days=2, hours=3)).isoformat(),
            "converted": False,
        })
        trial = deployment_service.get_trial_info("dep-1", now=now)
        assert trial.days_remaining == 3
        assert not trial.is_expired
        assert trial.conversion_eligible

        expired = deployment_service.get_trial_info("dep-1", now=now + timedelta(days=10))
        assert expired.days_remaining == 0
        assert expired.is_expired
        assert not expired.conversion_eligible

    def test_no_trial(self, deployment_service):
        assert deployment_service.get_trial_info("dep-1") is None
