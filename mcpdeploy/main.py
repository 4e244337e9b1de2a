import asyncio
import logging
import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from mcpdeploy.config import settings
from mcpdeploy.core.audit import AuditService
from mcpdeploy.core.errors import DeploymentError
from mcpdeploy.core.resilience import CircuitBreakerRegistry, RetryConfig
from mcpdeploy.database.supabase_client import get_service_supabase
from mcpdeploy.modules.adapters.factory import create_default_adapter_factory
from mcpdeploy.modules.deployments.health_monitor import HealthMonitor
from mcpdeploy.modules.deployments.orchestrator import DeploymentOrchestrator
from mcpdeploy.modules.deployments.service import DeploymentService
from mcpdeploy.modules.railway.client import RailwayClient
from mcpdeploy.modules.server_templates.service import ServerTemplateService
from mcpdeploy.modules.admin import routes as admin_routes
from mcpdeploy.modules.deployments import routes as deployments_routes
from mcpdeploy.modules.deployments import webhooks as webhooks_routes
from mcpdeploy.modules.server_templates import routes as server_templates_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.state.settings = settings
app.state.breakers = CircuitBreakerRegistry.from_settings(settings)
app.state.adapter_factory = create_default_adapter_factory()
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DeploymentError)
async def deployment_error_handler(request: Request, exc: DeploymentError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed [{exc.code}]: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].extend([
                    (b"X-Content-Type-Options", b"nosniff"),
                    (b"X-Frame-Options", b"DENY"),
                    (b"X-XSS-Protection", b"1; mode=block"),
                ])
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include module routes
app.include_router(server_templates_routes.router, prefix="/api/v1")
app.include_router(deployments_routes.router, prefix="/api/v1")
app.include_router(webhooks_routes.router, prefix="/api/v1")
app.include_router(admin_routes.router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")
    supabase = get_service_supabase()
    deployment_service = DeploymentService(supabase)
    http_client = httpx.AsyncClient()
    app.state.http_client = http_client

    railway_client = None
    if settings.railway_api_key:
        railway_client = RailwayClient(
            settings.railway_api_key,
            http_client,
            app.state.breakers.railway,
            retry_config=RetryConfig.from_settings(settings),
            base_url=settings.railway_api_url,
            timeout=settings.railway_request_timeout,
            wait_timeout=settings.deployment_wait_timeout,
            poll_interval=settings.deployment_poll_interval,
        )
    else:
        logger.warning("RAILWAY_API_KEY not set; deployments to Railway are disabled")
    app.state.railway_client = railway_client

    health_monitor = HealthMonitor.from_settings(settings, deployment_service, http_client, app.state.breakers)
    app.state.health_monitor = health_monitor
    app.state.orchestrator = DeploymentOrchestrator(
        deployment_service=deployment_service,
        template_service=ServerTemplateService(supabase),
        adapter_factory=app.state.adapter_factory,
        breakers=app.state.breakers,
        railway=railway_client,
        health_monitor=health_monitor,
        audit=AuditService(supabase),
        monitor_interval=settings.deployment_monitor_interval,
        monitor_max_attempts=settings.deployment_monitor_max_attempts,
    )

    app.state.health_scheduler = None
    if settings.health_check_enabled:
        app.state.health_scheduler = asyncio.create_task(health_monitor.scheduler_loop())
        logger.info(f"Health scheduler started - will check running deployments every {settings.health_check_interval}s")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")
    scheduler = getattr(app.state, "health_scheduler", None)
    if scheduler is not None:
        scheduler.cancel()
    if getattr(app.state, "orchestrator", None) is not None:
        await app.state.orchestrator.shutdown()
    if getattr(app.state, "health_monitor", None) is not None:
        await app.state.health_monitor.shutdown()
    if getattr(app.state, "http_client", None) is not None:
        await app.state.http_client.aclose()


@app.get("/")
async def root():
    return {"message": "Welcome to mcp-deploy-core", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
async def ready():
    """Readiness probe: not ready while any circuit breaker is open."""
    states = app.state.breakers.get_states()
    open_breakers = [name for name, state in states.items() if state["state"] == "OPEN"]
    if open_breakers:
        return JSONResponse(status_code=503, content={"status": "degraded", "open_circuit_breakers": open_breakers})
    return {"status": "ready"}
