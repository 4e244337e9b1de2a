from fastapi import APIRouter, Depends, HTTPException, Query, status
from mcpdeploy.database.supabase_client import get_supabase
from mcpdeploy.modules.deployments.schemas import (
    DeploymentCreate,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentTrialResponse,
    DeploymentUpdate,
    DeploymentWithLogs,
    HealthCheckResponse,
    OrchestrationResult,
    RestartRequest,
    RestartResponse,
)
from mcpdeploy.modules.deployments.service import DeploymentService
from mcpdeploy.modules.deployments.orchestrator import DeploymentOrchestrator
from mcpdeploy.core.dependencies import check_deployment_access, get_current_user_id, get_orchestrator
from supabase import Client
from typing import Any, Dict, List

router = APIRouter(prefix="/deployments", tags=["deployments"])


def get_deployment_service(supabase: Client = Depends(get_supabase)) -> DeploymentService:
    return DeploymentService(supabase)


@router.post("", response_model=DeploymentResponse, status_code=status.HTTP_201_CREATED)
async def create_deployment(
    deployment: DeploymentCreate,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Create a pending deployment record after validating its configuration"""
    return await orchestrator.create_deployment(deployment, user_data["id"])


@router.post("/deploy", response_model=OrchestrationResult)
async def deploy_server(
    deployment: DeploymentCreate,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Create the record and provision it on Railway. Provider failures return success=false."""
    return await orchestrator.deploy_server(deployment, user_data["id"])


@router.get("", response_model=List[DeploymentResponse])
async def list_deployments(
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
):
    return service.list_deployments(user_data["id"])


@router.get("/active", response_model=List[DeploymentResponse])
async def list_active_deployments(
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
):
    return service.get_user_active_deployments(user_data["id"])


@router.get("/{deployment_id}", response_model=DeploymentWithLogs)
async def get_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase),
):
    """Deployment with its latest logs and health checks (owner or admin)"""
    check_deployment_access(deployment_id, user_data, supabase)
    deployment = service.get_deployment_with_logs(deployment_id)
    if deployment is None:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return deployment


@router.patch("/{deployment_id}", response_model=DeploymentResponse)
async def update_deployment(
    deployment_id: str,
    update: DeploymentUpdate,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    supabase: Client = Depends(get_supabase),
):
    check_deployment_access(deployment_id, user_data, supabase)
    return await orchestrator.update_deployment(deployment_id, update)


@router.delete("/{deployment_id}")
async def delete_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    supabase: Client = Depends(get_supabase),
):
    check_deployment_access(deployment_id, user_data, supabase)
    await orchestrator.delete_deployment(deployment_id, user_data["id"])
    return {"success": True, "id": deployment_id}


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    limit: int = Query(100, ge=1, le=500),
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase),
):
    """
    Poll for deployment logs.
    Returns current logs and deployment status.
    """
    check_deployment_access(deployment_id, user_data, supabase)
    deployment = service.get_deployment_or_404(deployment_id)
    return DeploymentLogsResponse(
        deployment_id=deployment.id,
        logs=service.get_deployment_logs(deployment_id, limit),
        status=deployment.status,
        has_more=deployment.status in ["pending", "validating", "building", "deploying"],
    )


@router.get("/{deployment_id}/health")
async def get_deployment_health(
    deployment_id: str,
    limit: int = Query(10, ge=1, le=100),
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase),
) -> Dict[str, Any]:
    check_deployment_access(deployment_id, user_data, supabase)
    deployment = service.get_deployment_or_404(deployment_id)
    return {
        "deployment_id": deployment.id,
        "health_status": deployment.health_status,
        "last_health_check": deployment.last_health_check,
        "checks": service.get_latest_health_checks(deployment_id, limit),
    }


@router.post("/{deployment_id}/health", response_model=HealthCheckResponse)
async def run_health_check(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    supabase: Client = Depends(get_supabase),
):
    """Probe the deployment now and store the result"""
    check_deployment_access(deployment_id, user_data, supabase)
    return await orchestrator.perform_health_check(deployment_id)


@router.post("/{deployment_id}/restart", response_model=RestartResponse)
async def restart_deployment(
    deployment_id: str,
    request: RestartRequest = RestartRequest(),
    user_data: Dict = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    supabase: Client = Depends(get_supabase),
):
    check_deployment_access(deployment_id, user_data, supabase)
    return await orchestrator.restart_deployment(deployment_id, request.force_rebuild, user_data["id"])


@router.get("/{deployment_id}/trial", response_model=DeploymentTrialResponse)
async def get_deployment_trial(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase),
):
    check_deployment_access(deployment_id, user_data, supabase)
    trial = service.get_trial_info(deployment_id)
    if trial is None:
        raise HTTPException(status_code=404, detail="No trial linked to this deployment")
    return trial
