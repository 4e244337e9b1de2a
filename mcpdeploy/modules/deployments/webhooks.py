"""
Railway deployment webhooks.

The body is signed with HMAC-SHA256 using RAILWAY_WEBHOOK_SECRET and the
signature arrives as ``x-railway-signature: sha256=<hex>``. A request without
a signature is always rejected. When no secret is configured the signature is
not checked (local development).
"""

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from supabase import Client

from mcpdeploy.config import settings
from mcpdeploy.core.errors import DeploymentError
from mcpdeploy.database.supabase_client import get_service_supabase
from mcpdeploy.modules.deployments.schemas import DeploymentStatus, LogLevel
from mcpdeploy.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_deployment_service(supabase: Client = Depends(get_service_supabase)) -> DeploymentService:
    return DeploymentService(supabase)


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature:
        return False
    if not secret:
        logger.warning("RAILWAY_WEBHOOK_SECRET not configured, skipping signature verification")
        return True
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def _resolve_deployment_id(service: DeploymentService, data: Dict[str, Any]) -> Optional[str]:
    if data.get("deployment_id"):
        return data["deployment_id"]
    railway_deployment_id = data.get("railway_deployment_id")
    if railway_deployment_id:
        deployment = service.find_by_railway_deployment_id(railway_deployment_id)
        if deployment is not None:
            return deployment.id
    return None


def handle_deployment_event(service: DeploymentService, event_type: str, data: Dict[str, Any]) -> bool:
    """Apply one webhook event. Returns False when the event was ignored."""
    deployment_id = _resolve_deployment_id(service, data)
    if deployment_id is None:
        logger.info(f"Webhook {event_type} has no matching deployment, ignoring")
        return False

    railway_deployment_id = data.get("railway_deployment_id")
    metadata = {"railway_deployment_id": railway_deployment_id, "webhook_event": event_type}

    if event_type == "deployment.started":
        extra = {"railway_deployment_id": railway_deployment_id} if railway_deployment_id else None
        service.update_deployment_status(deployment_id, DeploymentStatus.DEPLOYING, "Railway deployment started", extra=extra)
        service.try_add_deployment_log(
            deployment_id, LogLevel.INFO, "Railway deployment started", metadata
        ).log_if_failed(f"webhook log for {deployment_id}")
    elif event_type == "deployment.completed":
        extra = {"deployed_at": datetime.now(timezone.utc).isoformat()}
        if data.get("service_url"):
            extra["service_url"] = data["service_url"]
        service.update_deployment_status(deployment_id, DeploymentStatus.RUNNING, "Railway deployment completed", extra=extra)
        service.try_add_deployment_log(
            deployment_id,
            LogLevel.INFO,
            "Railway deployment completed successfully",
            {**metadata, "service_url": data.get("service_url")},
        ).log_if_failed(f"webhook log for {deployment_id}")
    elif event_type == "deployment.failed":
        error_message = data.get("error_message") or "Railway deployment failed"
        service.update_deployment_status(
            deployment_id, DeploymentStatus.FAILED, error_message, extra={"error_message": error_message}
        )
        service.try_add_deployment_log(
            deployment_id,
            LogLevel.ERROR,
            f"Railway deployment failed: {error_message}",
            {**metadata, "error_message": error_message},
        ).log_if_failed(f"webhook log for {deployment_id}")
    else:
        logger.info(f"Unhandled webhook event type: {event_type}")
        return False
    return True


@router.post("/railway")
async def railway_webhook(
    request: Request,
    service: DeploymentService = Depends(get_webhook_deployment_service),
):
    body = await request.body()
    if not verify_webhook_signature(body, request.headers.get("x-railway-signature"), settings.railway_webhook_secret):
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": {"code": "INVALID_SIGNATURE", "message": "Invalid webhook signature"}},
        )

    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("webhook body must be an object")
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": {"code": "INVALID_PAYLOAD", "message": "Webhook body is not valid JSON"}},
        )

    event_type = payload.get("type", "")
    try:
        applied = handle_deployment_event(service, event_type, payload.get("data") or {})
    except DeploymentError as e:
        if e.status_code == 409:
            # Out-of-order event for a deployment that has already moved on
            logger.warning(f"Ignoring webhook {event_type}: {e.message}")
            applied = False
        else:
            logger.error(f"Failed to process Railway webhook {event_type}: {e.message}")
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": {"code": "WEBHOOK_PROCESSING_ERROR", "message": "Failed to process webhook"}},
            )

    return {
        "success": True,
        "data": {"processed": applied, "event_type": event_type},
        "meta": {"timestamp": datetime.now(timezone.utc).isoformat(), "request_id": str(uuid.uuid4())},
    }
