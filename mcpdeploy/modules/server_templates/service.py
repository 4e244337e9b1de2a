from supabase import Client
from mcpdeploy.modules.server_templates.schemas import ServerTemplate
from mcpdeploy.modules.adapters.base import ValidationResult
from mcpdeploy.modules.adapters.generic import GenericServerValidator
from mcpdeploy.core.errors import DeploymentError, ErrorCode
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class ServerTemplateService:
    """Read model over server_templates. Not-found is None, never an exception."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _active_templates(self, category: Optional[str] = None, featured: Optional[bool] = None) -> List[ServerTemplate]:
        try:
            query = self.supabase.table("server_templates")\
                .select("*")\
                .eq("is_active", True)
            if category:
                query = query.eq("category", category)
            if featured is not None:
                query = query.eq("is_featured", featured)
            result = query\
                .order("is_featured", desc=True)\
                .order("display_name")\
                .execute()
            return [ServerTemplate(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing server templates: {str(e)}")
            raise DeploymentError(f"Failed to list templates: {str(e)}", ErrorCode.LIST_FAILED, 500)

    def list_templates(self, user_id: Optional[str] = None) -> List[ServerTemplate]:
        """Active templates visible to ``user_id``; public ones only when no user is given."""
        logger.info(f"Listing server templates for user {user_id}")
        return [t for t in self._active_templates() if t.is_accessible_by(user_id)]

    def get_template(self, template_id: str) -> Optional[ServerTemplate]:
        try:
            result = self.supabase.table("server_templates")\
                .select("*")\
                .eq("id", template_id)\
                .maybe_single()\
                .execute()
            if result is None or not result.data:
                return None
            return ServerTemplate(**result.data)
        except Exception as e:
            logger.error(f"Error getting server template {template_id}: {str(e)}")
            raise DeploymentError(f"Failed to get template: {str(e)}", ErrorCode.GET_FAILED, 500)

    def can_user_access_template(self, user_id: str, template_id: str) -> bool:
        template = self.get_template(template_id)
        if template is None:
            return False
        return template.is_accessible_by(user_id)

    def get_templates_by_category(self, category: str, user_id: Optional[str] = None) -> List[ServerTemplate]:
        return [t for t in self._active_templates(category=category) if t.is_accessible_by(user_id)]

    def get_featured_templates(self, user_id: Optional[str] = None) -> List[ServerTemplate]:
        return [t for t in self._active_templates(featured=True) if t.is_accessible_by(user_id)]

    def get_template_categories(self, user_id: Optional[str] = None) -> List[str]:
        return sorted({t.category for t in self.list_templates(user_id)})

    def search_templates(
        self,
        search_term: str = "",
        category: Optional[str] = None,
        featured: Optional[bool] = None,
        user_id: Optional[str] = None,
        limit: int = 20,
    ) -> List[ServerTemplate]:
        """Case-insensitive match on display name, description or an exact tag."""
        term = (search_term or "").strip().lower()
        matches = []
        for template in self._active_templates(category=category, featured=featured):
            if not template.is_accessible_by(user_id):
                continue
            if term:
                haystack = f"{template.display_name} {template.description or ''}".lower()
                if term not in haystack and term not in [tag.lower() for tag in template.tags]:
                    continue
            matches.append(template)
            if len(matches) >= limit:
                break
        return matches

    def validate_env_vars(self, template_id: str, config: dict) -> ValidationResult:
        template = self.get_template(template_id)
        if template is None:
            return ValidationResult(valid=False, errors=["Template not found"])
        return GenericServerValidator().validate_config(config, template)
