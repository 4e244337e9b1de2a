import logging
from typing import Optional

from supabase import create_client, Client
from mcpdeploy.config import settings
from mcpdeploy.core.errors import DeploymentError, ErrorCode

logger = logging.getLogger(__name__)

_anon_client: Optional[Client] = None
_service_client: Optional[Client] = None


def _connect(key: Optional[str], role: str) -> Client:
    if not settings.supabase_url or not key:
        raise DeploymentError(
            f"Supabase {role} credentials are not configured",
            ErrorCode.MISSING_CONFIG,
            500,
            {"role": role},
        )
    logger.info(f"Connecting Supabase {role} client to {settings.supabase_url}")
    return create_client(settings.supabase_url, key)


def get_supabase() -> Client:
    """Request-scoped reads, subject to row level security."""
    global _anon_client
    if _anon_client is None:
        _anon_client = _connect(settings.supabase_key, "anon")
    return _anon_client


def get_service_supabase() -> Client:
    """Service-role client for the orchestrator, health monitor and webhooks.

    Falls back to the anon client when no service role key is set.
    """
    global _service_client
    if _service_client is None:
        if not settings.supabase_service_role_key:
            logger.warning("SUPABASE_SERVICE_ROLE_KEY not set; background writes use the anon client")
            return get_supabase()
        _service_client = _connect(settings.supabase_service_role_key, "service_role")
    return _service_client
