"""
Audit trail for privileged actions.

Writes are best-effort: the caller gets a BestEffortResult back, logs it if it
failed and carries on. An audit failure never changes the outcome of the action
being audited.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from supabase import Client
import logging

logger = logging.getLogger(__name__)


@dataclass
class BestEffortResult:
    ok: bool
    error: Optional[str] = None

    def log_if_failed(self, action: str):
        if not self.ok:
            logger.warning(f"Best-effort step '{action}' failed: {self.error}")


class AuditService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BestEffortResult:
        try:
            self.supabase.table("audit_logs").insert({
                "actor_id": actor_id,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "metadata": metadata or {},
                "created_at": datetime.now(timezone.utc).isoformat(),
            }).execute()
            return BestEffortResult(ok=True)
        except Exception as e:
            logger.error(f"Error writing audit log for {action} on {resource_type} {resource_id}: {str(e)}")
            return BestEffortResult(ok=False, error=str(e))
