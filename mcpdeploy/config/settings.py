from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Background monitor writes bypass RLS

    # Railway
    railway_api_key: str = ""
    railway_api_url: str = "https://backboard.railway.app/graphql/v2"
    railway_webhook_secret: Optional[str] = None
    railway_request_timeout: float = 30.0

    # Retry policy for idempotent provider calls
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0

    # Circuit breakers, one per downstream dependency
    railway_breaker_failure_threshold: int = 5
    railway_breaker_recovery_timeout: float = 60.0
    supabase_breaker_failure_threshold: int = 3
    supabase_breaker_recovery_timeout: float = 30.0

    # Deployment wait / monitor
    deployment_wait_timeout: float = 300.0
    deployment_poll_interval: float = 5.0
    deployment_monitor_interval: float = 30.0
    deployment_monitor_max_attempts: int = 30

    # Health reconciliation
    health_check_enabled: bool = False  # Run the reconcile-all scheduler on startup
    health_check_interval: float = 120.0
    health_check_timeout: float = 20.0
    health_check_max_failures: int = 3
    health_check_degraded_latency_ms: int = 2000

    # App
    app_name: str = "mcp-deploy-core"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )


settings = Settings()
