from fastapi import APIRouter, Depends, HTTPException
from mcpdeploy.database.supabase_client import get_supabase
from mcpdeploy.modules.server_templates.schemas import (
    ServerTemplate,
    TemplateValidationRequest,
    TemplateValidationResponse,
)
from mcpdeploy.modules.server_templates.service import ServerTemplateService
from mcpdeploy.modules.server_templates.transport import TransportResolver
from mcpdeploy.modules.deployments.orchestrator import DeploymentOrchestrator
from mcpdeploy.core.dependencies import get_current_user_id, get_orchestrator
from supabase import Client
from typing import Any, Dict, List, Optional

router = APIRouter(prefix="/server-templates", tags=["server-templates"])


def get_server_template_service(supabase: Client = Depends(get_supabase)) -> ServerTemplateService:
    return ServerTemplateService(supabase)


@router.get("", response_model=List[ServerTemplate])
async def list_server_templates(
    search: Optional[str] = None,
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    limit: int = 50,
    user_data: Dict = Depends(get_current_user_id),
    service: ServerTemplateService = Depends(get_server_template_service),
):
    """Active templates visible to the caller, optionally searched and filtered."""
    if search or category or featured is not None:
        return service.search_templates(search or "", category, featured, user_data["id"], limit)
    return service.list_templates(user_data["id"])


@router.get("/categories", response_model=List[str])
async def list_template_categories(
    user_data: Dict = Depends(get_current_user_id),
    service: ServerTemplateService = Depends(get_server_template_service),
):
    return service.get_template_categories(user_data["id"])


@router.get("/transports")
async def list_transport_types() -> List[Dict[str, Any]]:
    return TransportResolver().get_supported_transport_types()


@router.get("/{template_id}", response_model=ServerTemplate)
async def get_server_template(
    template_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: ServerTemplateService = Depends(get_server_template_service),
):
    template = service.get_template(template_id)
    if template is None or not template.is_accessible_by(user_data["id"]):
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@router.post("/{template_id}/validate", response_model=TemplateValidationResponse)
async def validate_server_config(
    template_id: str,
    request: TemplateValidationRequest,
    user_data: Dict = Depends(get_current_user_id),
    service: ServerTemplateService = Depends(get_server_template_service),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Check a configuration against the template without creating anything."""
    template = service.get_template(template_id)
    if template is None or not template.is_accessible_by(user_data["id"]):
        raise HTTPException(status_code=404, detail="Template not found")
    result = orchestrator.validate_config(template, request.server_config)
    return TemplateValidationResponse(valid=result.valid, errors=result.errors)
