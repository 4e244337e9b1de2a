from supabase import Client
from postgrest.exceptions import APIError
from mcpdeploy.core.audit import BestEffortResult
from mcpdeploy.core.errors import DeploymentError, ErrorCode
from mcpdeploy.modules.deployments.schemas import (
    DeploymentLogResponse,
    DeploymentResponse,
    DeploymentStatus,
    DeploymentTrialResponse,
    DeploymentWithLogs,
    HealthCheckResponse,
    HealthStatus,
    LogLevel,
)
from mcpdeploy.modules.deployments.state_machine import ACTIVE_STATUSES, ensure_transition
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
import math
import logging

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

# Child tables removed before the parent deployment row
DEPLOYMENT_CHILD_TABLES = ("deployment_logs", "health_checks", "api_usage")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_value(status: Union[DeploymentStatus, HealthStatus, LogLevel, str]) -> str:
    return status.value if hasattr(status, "value") else status


class DeploymentService:
    """Persistence for deployments and their logs, health checks and trial links."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def get_deployment(self, deployment_id: str) -> Optional[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("id", deployment_id)\
                .maybe_single()\
                .execute()
            if result is None or not result.data:
                return None
            return DeploymentResponse(**result.data)
        except Exception as e:
            logger.error(f"Error getting deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to get deployment: {str(e)}", ErrorCode.GET_FAILED, 500)

    def get_deployment_or_404(self, deployment_id: str) -> DeploymentResponse:
        deployment = self.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentError(
                f"Deployment not found: {deployment_id}", ErrorCode.DEPLOYMENT_NOT_FOUND, 404
            )
        return deployment

    def get_deployment_with_logs(self, deployment_id: str) -> Optional[DeploymentWithLogs]:
        deployment = self.get_deployment(deployment_id)
        if deployment is None:
            return None
        return DeploymentWithLogs(
            **deployment.model_dump(),
            logs=self.get_deployment_logs(deployment_id, 100),
            health_checks=self.get_latest_health_checks(deployment_id, 10),
        )

    def deployment_name_exists(self, user_id: str, deployment_name: str) -> bool:
        try:
            result = self.supabase.table("deployments")\
                .select("id")\
                .eq("user_id", user_id)\
                .eq("deployment_name", deployment_name)\
                .limit(1)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error checking deployment name '{deployment_name}': {str(e)}")
            raise DeploymentError(f"Failed to check deployment name: {str(e)}", ErrorCode.GET_FAILED, 500)

    def insert_deployment(self, deployment_data: Dict[str, Any]) -> DeploymentResponse:
        """Insert a deployment row. A (user_id, deployment_name) clash raises DEPLOYMENT_NAME_TAKEN."""
        try:
            now = _now()
            result = self.supabase.table("deployments").insert({
                **deployment_data,
                "created_at": now,
                "updated_at": now,
            }).execute()
            if not result.data:
                raise DeploymentError("Failed to create deployment", ErrorCode.CREATE_FAILED, 500)
            return DeploymentResponse(**result.data[0])
        except DeploymentError:
            raise
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DeploymentError(
                    f"Deployment name already taken: {deployment_data.get('deployment_name')}",
                    ErrorCode.DEPLOYMENT_NAME_TAKEN,
                    409,
                )
            logger.error(f"Error creating deployment: {str(e)}")
            raise DeploymentError(f"Failed to create deployment: {str(e)}", ErrorCode.CREATE_FAILED, 500)
        except Exception as e:
            logger.error(f"Error creating deployment: {str(e)}")
            raise DeploymentError(f"Failed to create deployment: {str(e)}", ErrorCode.CREATE_FAILED, 500)

    def update_deployment(self, deployment_id: str, update_data: Dict[str, Any], log_changes: bool = True) -> DeploymentResponse:
        try:
            result = self.supabase.table("deployments")\
                .update({**update_data, "updated_at": _now()})\
                .eq("id", deployment_id)\
                .execute()
            if not result.data:
                raise DeploymentError(
                    f"Deployment not found: {deployment_id}", ErrorCode.DEPLOYMENT_NOT_FOUND, 404
                )
            deployment = DeploymentResponse(**result.data[0])
        except DeploymentError:
            raise
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DeploymentError(
                    f"Deployment name already taken: {update_data.get('deployment_name')}",
                    ErrorCode.DEPLOYMENT_NAME_TAKEN,
                    409,
                )
            logger.error(f"Error updating deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to update deployment: {str(e)}", ErrorCode.UPDATE_FAILED, 500)
        except Exception as e:
            logger.error(f"Error updating deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to update deployment: {str(e)}", ErrorCode.UPDATE_FAILED, 500)

        if log_changes:
            self.try_add_deployment_log(
                deployment_id,
                LogLevel.INFO,
                "Deployment updated",
                {"action": "update", "changes": sorted(update_data.keys())},
            ).log_if_failed(f"update log for {deployment_id}")
        return deployment

    def update_deployment_status(
        self,
        deployment_id: str,
        status: Union[DeploymentStatus, str],
        reason: Optional[str] = None,
        explicit: bool = False,
        extra: Optional[Dict[str, Any]] = None,
        current: Optional[DeploymentResponse] = None,
    ) -> DeploymentResponse:
        """
        Move a deployment to ``status`` through the transition table and write
        the matching log entry. Backward moves need ``explicit``.
        """
        target = DeploymentStatus(status)
        if current is None:
            current = self.get_deployment_or_404(deployment_id)
        ensure_transition(current.status, target, explicit, deployment_id)
        if current.status == target.value and not extra:
            return current

        update_data = dict(extra or {})
        update_data["status"] = target.value
        if target == DeploymentStatus.FAILED and reason and "error_message" not in update_data:
            update_data["error_message"] = reason
        deployment = self.update_deployment(deployment_id, update_data, log_changes=False)

        level = LogLevel.ERROR if target in (DeploymentStatus.FAILED, DeploymentStatus.CRASHED) else LogLevel.INFO
        self.try_add_deployment_log(
            deployment_id,
            level,
            f"Deployment status changed to: {target.value}" + (f" ({reason})" if reason else ""),
            {
                "action": "status_change",
                "from": current.status,
                "new_status": target.value,
                "reason": reason,
                "explicit": explicit,
            },
        ).log_if_failed(f"status change log for {deployment_id}")
        return deployment

    def delete_deployment(self, deployment_id: str) -> bool:
        """Delete child rows, then the deployment. A failed child delete aborts before the parent."""
        for table in DEPLOYMENT_CHILD_TABLES:
            try:
                self.supabase.table(table)\
                    .delete()\
                    .eq("deployment_id", deployment_id)\
                    .execute()
            except Exception as e:
                logger.error(f"Error deleting {table} rows for deployment {deployment_id}: {str(e)}")
                raise DeploymentError(
                    f"Failed to delete {table} for deployment: {str(e)}",
                    ErrorCode.DELETE_FAILED,
                    500,
                    {"table": table, "deployment_id": deployment_id},
                )
        try:
            self.supabase.table("deployments")\
                .delete()\
                .eq("id", deployment_id)\
                .execute()
            return True
        except Exception as e:
            logger.error(f"Error deleting deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to delete deployment: {str(e)}", ErrorCode.DELETE_FAILED, 500)

    def list_deployments(self, user_id: str) -> List[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("user_id", user_id)\
                .order("created_at", desc=True)\
                .execute()
            return [DeploymentResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing deployments for user {user_id}: {str(e)}")
            raise DeploymentError(f"Failed to list deployments: {str(e)}", ErrorCode.LIST_FAILED, 500)

    def get_user_active_deployments(self, user_id: str) -> List[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("user_id", user_id)\
                .in_("status", list(ACTIVE_STATUSES))\
                .order("created_at", desc=True)\
                .execute()
            return [DeploymentResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing active deployments for user {user_id}: {str(e)}")
            raise DeploymentError(f"Failed to get active deployments: {str(e)}", ErrorCode.LIST_FAILED, 500)

    def list_running_deployments(self) -> List[DeploymentResponse]:
        """Deployments the health loop should probe."""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("status", DeploymentStatus.RUNNING.value)\
                .execute()
            return [DeploymentResponse(**row) for row in (result.data or []) if row.get("health_check_url")]
        except Exception as e:
            logger.error(f"Error listing running deployments: {str(e)}")
            raise DeploymentError(f"Failed to list running deployments: {str(e)}", ErrorCode.LIST_FAILED, 500)

    def find_by_railway_deployment_id(self, railway_deployment_id: str) -> Optional[DeploymentResponse]:
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("railway_deployment_id", railway_deployment_id)\
                .limit(1)\
                .execute()
            return DeploymentResponse(**result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"Error finding deployment by Railway id {railway_deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to get deployment: {str(e)}", ErrorCode.GET_FAILED, 500)

    # Railway project per user

    def get_user_railway_project(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            result = self.supabase.table("railway_projects")\
                .select("*")\
                .eq("user_id", user_id)\
                .limit(1)\
                .execute()
            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"Error getting Railway project for user {user_id}: {str(e)}")
            raise DeploymentError(f"Failed to get Railway project: {str(e)}", ErrorCode.GET_FAILED, 500)

    def save_user_railway_project(self, user_id: str, railway_project_id: str, project_name: str) -> Dict[str, Any]:
        """Point the user's row at ``railway_project_id``, creating the row if needed."""
        try:
            row = {
                "user_id": user_id,
                "railway_project_id": railway_project_id,
                "project_name": project_name,
                "updated_at": _now(),
            }
            result = self.supabase.table("railway_projects")\
                .upsert(row, on_conflict="user_id")\
                .execute()
            return result.data[0] if result.data else row
        except Exception as e:
            logger.error(f"Error saving Railway project for user {user_id}: {str(e)}")
            raise DeploymentError(f"Failed to save Railway project: {str(e)}", ErrorCode.UPDATE_FAILED, 500)

    # Logs

    def add_deployment_log(
        self,
        deployment_id: str,
        level: Union[LogLevel, str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DeploymentLogResponse:
        try:
            result = self.supabase.table("deployment_logs").insert({
                "deployment_id": deployment_id,
                "log_level": _status_value(level),
                "message": message,
                "metadata": metadata or {},
                "created_at": _now(),
            }).execute()
            if not result.data:
                raise DeploymentError("Failed to add deployment log", ErrorCode.LOG_ADD_FAILED, 500)
            return DeploymentLogResponse(**result.data[0])
        except DeploymentError:
            raise
        except Exception as e:
            logger.error(f"Error adding log for deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to add deployment log: {str(e)}", ErrorCode.LOG_ADD_FAILED, 500)

    def try_add_deployment_log(
        self,
        deployment_id: str,
        level: Union[LogLevel, str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BestEffortResult:
        """Log write that must not mask the outcome of the operation being logged."""
        try:
            self.add_deployment_log(deployment_id, level, message, metadata)
            return BestEffortResult(ok=True)
        except DeploymentError as e:
            return BestEffortResult(ok=False, error=e.message)

    def get_deployment_logs(self, deployment_id: str, limit: int = 100) -> List[DeploymentLogResponse]:
        try:
            result = self.supabase.table("deployment_logs")\
                .select("*")\
                .eq("deployment_id", deployment_id)\
                .order("created_at", desc=True)\
                .limit(limit)\
                .execute()
            return [DeploymentLogResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error getting logs for deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to get deployment logs: {str(e)}", ErrorCode.GET_FAILED, 500)

    # Health checks

    def record_health_check(
        self,
        deployment_id: str,
        status: Union[HealthStatus, str],
        response_time_ms: Optional[int] = None,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
        checked_at: Optional[datetime] = None,
    ) -> HealthCheckResponse:
        try:
            result = self.supabase.table("health_checks").insert({
                "deployment_id": deployment_id,
                "status": _status_value(status),
                "response_time_ms": response_time_ms,
                "status_code": status_code,
                "error_message": error_message,
                "checked_at": (checked_at or datetime.now(timezone.utc)).isoformat(),
            }).execute()
            if not result.data:
                raise DeploymentError("Failed to record health check", ErrorCode.HEALTH_CHECK_FAILED, 500)
            return HealthCheckResponse(**result.data[0])
        except DeploymentError:
            raise
        except Exception as e:
            logger.error(f"Error recording health check for deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to record health check: {str(e)}", ErrorCode.HEALTH_CHECK_FAILED, 500)

    def get_latest_health_checks(self, deployment_id: str, limit: int = 10) -> List[HealthCheckResponse]:
        try:
            result = self.supabase.table("health_checks")\
                .select("*")\
                .eq("deployment_id", deployment_id)\
                .order("checked_at", desc=True)\
                .limit(limit)\
                .execute()
            return [HealthCheckResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error getting health checks for deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to get health checks: {str(e)}", ErrorCode.GET_FAILED, 500)

    def get_latest_health_check(self, deployment_id: str) -> Optional[HealthCheckResponse]:
        checks = self.get_latest_health_checks(deployment_id, 1)
        return checks[0] if checks else None

    def sync_health_status(self, deployment_id: str) -> Optional[HealthCheckResponse]:
        """
        Copy the newest health check (by checked_at) onto the deployment row.
        Re-reading instead of using the caller's probe keeps concurrent probes
        ordered by checked_at rather than by write order.
        """
        latest = self.get_latest_health_check(deployment_id)
        if latest is None:
            return None
        self.update_deployment(
            deployment_id,
            {"health_status": latest.status.value, "last_health_check": latest.checked_at.isoformat()},
            log_changes=False,
        )
        return latest

    # Trials

    def link_deployment_to_trial(self, deployment_id: str, trial_application_id: str) -> BestEffortResult:
        """Attach a deployment to an approved trial. Failures are returned, not raised."""
        try:
            application = self.supabase.table("trial_applications")\
                .select("id, status")\
                .eq("id", trial_application_id)\
                .maybe_single()\
                .execute()
            if application is None or not application.data:
                return BestEffortResult(ok=False, error=f"Trial application not found: {trial_application_id}")
            if application.data.get("status") != "approved":
                return BestEffortResult(
                    ok=False,
                    error=f"Trial application {trial_application_id} is not approved ({application.data.get('status')})",
                )

            active = self.supabase.table("deployment_trials")\
                .select("id")\
                .eq("deployment_id", deployment_id)\
                .eq("converted", False)\
                .limit(1)\
                .execute()
            if active.data:
                return BestEffortResult(ok=False, error=f"Deployment {deployment_id} already has an active trial")

            result = self.supabase.table("deployment_trials")\
                .update({"deployment_id": deployment_id})\
                .eq("trial_application_id", trial_application_id)\
                .eq("converted", False)\
                .execute()
            if not result.data:
                return BestEffortResult(ok=False, error=f"No open trial for application {trial_application_id}")
            logger.info(f"Linked deployment {deployment_id} to trial application {trial_application_id}")
            return BestEffortResult(ok=True)
        except Exception as e:
            logger.error(f"Error linking deployment {deployment_id} to trial {trial_application_id}: {str(e)}")
            return BestEffortResult(ok=False, error=str(e))

    def is_trial_deployment(self, deployment_id: str) -> bool:
        try:
            result = self.supabase.table("deployment_trials")\
                .select("id")\
                .eq("deployment_id", deployment_id)\
                .limit(1)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error checking trial status for deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to check trial status: {str(e)}", ErrorCode.GET_FAILED, 500)

    def get_trial_info(self, deployment_id: str, now: Optional[datetime] = None) -> Optional[DeploymentTrialResponse]:
        try:
            result = self.supabase.table("deployment_trials")\
                .select("*, trial_applications(id, status, applied_at, mcp_server_type)")\
                .eq("deployment_id", deployment_id)\
                .maybe_single()\
                .execute()
        except Exception as e:
            logger.error(f"Error getting trial info for deployment {deployment_id}: {str(e)}")
            raise DeploymentError(f"Failed to fetch trial information: {str(e)}", ErrorCode.GET_FAILED, 500)
        if result is None or not result.data:
            return None

        trial = DeploymentTrialResponse(**result.data)
        now = now or datetime.now(timezone.utc)
        days_remaining = 0
        if trial.trial_end is not None:
            trial_end = trial.trial_end
            if trial_end.tzinfo is None:
                trial_end = trial_end.replace(tzinfo=timezone.utc)
            seconds_left = (trial_end - now).total_seconds()
            days_remaining = max(0, math.ceil(seconds_left / 86400))
        trial.days_remaining = days_remaining
        trial.is_expired = days_remaining <= 0
        trial.conversion_eligible = days_remaining > 0 and not trial.converted
        return trial
