from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from mcpdeploy.database.supabase_client import get_supabase
from mcpdeploy.core.audit import AuditService
from mcpdeploy.core.dependencies import get_breakers, get_health_monitor, require_admin_access
from mcpdeploy.core.resilience import CircuitBreakerRegistry
from supabase import Client
from typing import Any, Dict, Literal
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class CircuitBreakerResetRequest(BaseModel):
    service: Literal["railway", "supabase", "all"] = "all"


def get_audit_service(supabase: Client = Depends(get_supabase)) -> AuditService:
    return AuditService(supabase)


@router.get("/circuit-breakers")
async def get_circuit_breakers(
    user_data: Dict = Depends(require_admin_access),
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> Dict[str, Any]:
    return {"breakers": breakers.get_states()}


@router.post("/circuit-breakers/reset")
async def reset_circuit_breakers(
    request: CircuitBreakerResetRequest,
    user_data: Dict = Depends(require_admin_access),
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
    audit: AuditService = Depends(get_audit_service),
) -> Dict[str, Any]:
    """Force one breaker (or all) back to CLOSED."""
    try:
        states = breakers.reset(request.service)
    except KeyError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Circuit breaker '{request.service}' reset by {user_data['id']}")
    audit.record(
        user_data["id"], "circuit_breaker.reset", "circuit_breaker", request.service
    ).log_if_failed("circuit_breaker.reset")
    return {"success": True, "reset": request.service, "breakers": states}


@router.get("/health-monitor")
async def get_health_monitor_status(
    user_data: Dict = Depends(require_admin_access),
    monitor=Depends(get_health_monitor),
) -> Dict[str, Any]:
    if monitor is None:
        return {"enabled": False, "monitored": []}
    return {"enabled": monitor.enabled, "monitored": monitor.get_monitoring_status()}
