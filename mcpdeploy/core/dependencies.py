"""
Route dependencies: current user, admin checks, deployment access and the
process-wide collaborators created at startup (stored on app.state).
"""

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from mcpdeploy.database.supabase_client import get_supabase
from mcpdeploy.core.resilience import CircuitBreakerRegistry
from mcpdeploy.modules.auth.service import AuthService
from mcpdeploy.modules.deployments.health_monitor import HealthMonitor
from mcpdeploy.modules.deployments.orchestrator import DeploymentOrchestrator
from supabase import Client
from typing import Optional
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_auth_service(supabase: Client = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    return auth_service.get_current_user(credentials.credentials)


def is_super_user(user_data: dict) -> bool:
    # app_metadata is set server-side and cannot be modified by users
    return (user_data.get("app_metadata") or {}).get("type") == "super_user"


def is_admin(user_data: dict, supabase: Client) -> bool:
    if is_super_user(user_data):
        return True
    try:
        result = supabase.table("user_roles")\
            .select("role")\
            .eq("user_id", user_data["id"])\
            .eq("role", "admin")\
            .limit(1)\
            .execute()
        return bool(result.data)
    except Exception as e:
        logger.error(f"Error checking admin role for user {user_data.get('id')}: {e}")
        return False


def require_admin_access(
    user_data: dict = Depends(get_current_user_id),
    supabase: Client = Depends(get_supabase)
) -> dict:
    if not is_admin(user_data, supabase):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user_data


def check_deployment_access(deployment_id: str, user_data: dict, supabase: Client) -> dict:
    """Allow the deployment owner or an admin."""
    result = supabase.table("deployments")\
        .select("id, user_id")\
        .eq("id", deployment_id)\
        .maybe_single()\
        .execute()
    if result is None or not result.data:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Deployment not found"
        )
    if result.data.get("user_id") == user_data["id"] or is_admin(user_data, supabase):
        return user_data
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You must be the deployment owner or an admin to access it"
    )


# Startup-built collaborators

def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.breakers


def get_health_monitor(request: Request) -> Optional[HealthMonitor]:
    return getattr(request.app.state, "health_monitor", None)


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return request.app.state.orchestrator
