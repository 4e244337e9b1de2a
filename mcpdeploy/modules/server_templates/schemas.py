from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


class TransportType(str, Enum):
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"
    HTTP = "http"


class EnvVarType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    URL = "url"
    ENUM = "enum"
    TEXTAREA = "textarea"


class EnvVarValidation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    required: bool = False
    min_length: Optional[int] = Field(default=None, alias="minLength")
    max_length: Optional[int] = Field(default=None, alias="maxLength")
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None


class EnvVarSchema(BaseModel):
    name: str
    display_name: str
    description: Optional[str] = None
    type: EnvVarType = EnvVarType.STRING
    validation: Optional[EnvVarValidation] = None
    options: Optional[List[str]] = None  # enum values
    default: Optional[Any] = None
    sensitive: bool = False
    placeholder: Optional[str] = None
    help_text: Optional[str] = None

    @property
    def is_required(self) -> bool:
        return bool(self.validation and self.validation.required)


class ServerTemplate(BaseModel):
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    category: str = "general"
    github_repo: str = ""
    github_branch: str = "main"
    required_env_vars: List[EnvVarSchema] = []
    optional_env_vars: List[EnvVarSchema] = []
    port: int = 3000
    healthcheck_path: str = "/health"
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    min_memory_mb: int = 512
    min_cpu_cores: float = 0.5
    default_transport_type: Optional[TransportType] = None
    icon_url: Optional[str] = None
    documentation_url: Optional[str] = None
    example_config: Optional[Dict[str, Any]] = None
    tags: List[str] = []
    is_active: bool = True
    is_featured: bool = False
    requires_approval: bool = False
    allowed_user_ids: List[str] = []
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_public(self) -> bool:
        return len(self.allowed_user_ids) == 0

    def is_accessible_by(self, user_id: Optional[str]) -> bool:
        if self.is_public:
            return True
        return user_id is not None and user_id in self.allowed_user_ids


class TemplateValidationRequest(BaseModel):
    server_config: Dict[str, Any]


class TemplateValidationResponse(BaseModel):
    valid: bool
    errors: List[str]
