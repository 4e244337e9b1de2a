from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from mcpdeploy.modules.server_templates.schemas import TransportType


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    REMOVED = "removed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class AdvancedConfig(BaseModel):
    port: Optional[int] = None
    region: Optional[str] = None
    healthcheck_path: Optional[str] = None
    build_command: Optional[str] = None
    start_command: Optional[str] = None


class DeploymentCreate(BaseModel):
    deployment_name: str = Field(min_length=1, max_length=100)
    server_template_id: str
    server_config: Dict[str, Any] = {}
    railway_project_id: Optional[str] = None
    transport_type: Optional[TransportType] = None
    environment: str = "production"
    advanced_config: Optional[AdvancedConfig] = None
    is_trial: bool = False
    trial_application_id: Optional[str] = None


class DeploymentUpdate(BaseModel):
    deployment_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    server_config: Optional[Dict[str, Any]] = None
    advanced_config: Optional[Dict[str, Any]] = None
    environment: Optional[str] = None


class DeploymentResponse(BaseModel):
    id: str
    user_id: str
    deployment_name: str
    server_template_id: Optional[str] = None
    server_config: Optional[Dict[str, Any]] = None
    environment: Optional[str] = None
    advanced_config: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    health_status: Optional[str] = None
    railway_project_id: Optional[str] = None
    railway_service_id: Optional[str] = None
    railway_deployment_id: Optional[str] = None
    railway_environment_id: Optional[str] = None
    service_url: Optional[str] = None
    health_check_url: Optional[str] = None
    error_message: Optional[str] = None
    last_health_check: Optional[datetime] = None
    deployed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def transport_type(self) -> Optional[str]:
        return (self.advanced_config or {}).get("transport_type")


class DeploymentLogResponse(BaseModel):
    id: Optional[str] = None
    deployment_id: str
    log_level: str
    message: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class HealthCheckResponse(BaseModel):
    id: Optional[str] = None
    deployment_id: str
    status: HealthStatus
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    checked_at: datetime

    class Config:
        from_attributes = True


class DeploymentWithLogs(DeploymentResponse):
    logs: List[DeploymentLogResponse] = []
    health_checks: List[HealthCheckResponse] = []


class DeploymentTrialResponse(BaseModel):
    id: str
    deployment_id: Optional[str] = None
    trial_application_id: Optional[str] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    converted: bool = False
    trial_applications: Optional[Dict[str, Any]] = None
    days_remaining: int = 0
    is_expired: bool = True
    conversion_eligible: bool = False

    class Config:
        from_attributes = True


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    logs: List[DeploymentLogResponse]
    status: Optional[str] = None
    has_more: bool = False


class OrchestrationResult(BaseModel):
    success: bool
    deployment_id: Optional[str] = None
    service_url: Optional[str] = None
    health_check_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class RestartRequest(BaseModel):
    force_rebuild: bool = False


class RestartResponse(BaseModel):
    success: bool
    deployment_id: str
    error: Optional[str] = None
