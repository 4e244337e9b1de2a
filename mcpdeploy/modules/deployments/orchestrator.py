"""
Deployment orchestration: turns a DeploymentCreate request into a Railway
service and keeps the deployment row in step with what Railway reports.

Persistence goes through the supabase breaker and Railway calls go through
the client (which owns the railway breaker and retry policy). Trial linking,
audit writes and cleanup are best-effort and never change the outcome of the
operation they belong to.
"""

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from mcpdeploy.core.audit import AuditService, BestEffortResult
from mcpdeploy.core.errors import DeploymentError, ErrorCode
from mcpdeploy.core.resilience import CircuitBreakerRegistry
from mcpdeploy.modules.adapters.base import (
    DeploymentConfig,
    TemplateRuntimeConfig,
    ValidationResult,
    build_health_check_url,
)
from mcpdeploy.modules.adapters.factory import ServerAdapterFactory
from mcpdeploy.modules.adapters.generic import GenericServerValidator
from mcpdeploy.modules.deployments.health_monitor import HealthMonitor
from mcpdeploy.modules.deployments.schemas import (
    DeploymentCreate,
    DeploymentResponse,
    DeploymentUpdate,
    DeploymentStatus,
    HealthCheckResponse,
    LogLevel,
    OrchestrationResult,
    RestartResponse,
)
from mcpdeploy.modules.deployments.service import DeploymentService
from mcpdeploy.modules.deployments.state_machine import is_regression
from mcpdeploy.modules.railway.client import RailwayClient
from mcpdeploy.modules.railway.schemas import DeployConfig, RailwayProject
from mcpdeploy.modules.server_templates.schemas import ServerTemplate
from mcpdeploy.modules.server_templates.service import ServerTemplateService
from mcpdeploy.modules.server_templates.transport import TransportResolver

logger = logging.getLogger(__name__)

PRODUCTION_ENVIRONMENT = "production"
SERVICE_NAME_PREFIX = "mcpgtm-"
MAX_NAME_ATTEMPTS = 25

# Railway deployment status -> local status
BUILDING_STATES = ("INITIALIZING", "BUILDING", "WAITING", "QUEUED")
DEPLOYING_STATES = ("DEPLOYING",)
RUNNING_STATES = ("SUCCESS", "ACTIVE")
FAILED_STATES = ("FAILED", "CRASHED", "COMPLETED", "SKIPPED")
REMOVED_STATES = ("REMOVED", "SLEEPING")


def build_service_name(deployment_name: str, now_ms: Optional[int] = None) -> str:
    """``mcpgtm-<sanitized name, max 25>-<last 8 digits of ms timestamp>``, at most 50 chars."""
    sanitized = re.sub(r"[^a-z0-9-]+", "-", deployment_name.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")[:25].strip("-") or "server"
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{SERVICE_NAME_PREFIX}{sanitized}-{str(now_ms)[-8:]}"[:50]


def build_project_name(user_id: str) -> str:
    return f"mcp-{user_id.replace('-', '')[:8]}"


def _raise_if_invalid(validation: ValidationResult):
    if not validation.valid:
        raise DeploymentError(
            f"Configuration validation failed: {'; '.join(validation.errors)}",
            ErrorCode.VALIDATION_FAILED,
            400,
            {"errors": validation.errors, "warnings": validation.warnings},
        )


class DeploymentOrchestrator:
    def __init__(
        self,
        deployment_service: DeploymentService,
        template_service: ServerTemplateService,
        adapter_factory: ServerAdapterFactory,
        breakers: CircuitBreakerRegistry,
        railway: Optional[RailwayClient] = None,
        transport_resolver: Optional[TransportResolver] = None,
        generic_validator: Optional[GenericServerValidator] = None,
        health_monitor: Optional[HealthMonitor] = None,
        audit: Optional[AuditService] = None,
        monitor_interval: float = 30,
        monitor_max_attempts: int = 30,
        monitor_in_background: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.deployments = deployment_service
        self.templates = template_service
        self.adapter_factory = adapter_factory
        self.breakers = breakers
        self.railway = railway
        self.transport_resolver = transport_resolver or TransportResolver()
        self.generic_validator = generic_validator or GenericServerValidator()
        self.health_monitor = health_monitor
        self.audit = audit
        self.monitor_interval = monitor_interval
        self.monitor_max_attempts = monitor_max_attempts
        self.monitor_in_background = monitor_in_background
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()

    async def _db(self, func, *args, **kwargs):
        return await self.breakers.supabase.call(func, *args, **kwargs)

    def _require_railway(self) -> RailwayClient:
        if self.railway is None:
            raise DeploymentError("Railway API key is not configured", ErrorCode.MISSING_CONFIG, 500)
        return self.railway

    async def _log(self, deployment_id: str, level: LogLevel, message: str, metadata: Optional[Dict[str, Any]] = None):
        try:
            result = await self._db(self.deployments.try_add_deployment_log, deployment_id, level, message, metadata)
        except DeploymentError as e:
            result = BestEffortResult(ok=False, error=e.message)
        result.log_if_failed(f"deployment log for {deployment_id}")

    def _audit(self, actor_id: Optional[str], action: str, deployment_id: str, metadata: Optional[Dict[str, Any]] = None):
        if self.audit is None:
            return
        self.audit.record(actor_id, action, "deployment", deployment_id, metadata).log_if_failed(action)

    # Validation

    def validate_config(self, template: ServerTemplate, config: Dict[str, Any]) -> ValidationResult:
        """Registered adapter for the template name if there is one, otherwise the generic validator."""
        if self.adapter_factory.is_supported(template.name):
            adapter = self.adapter_factory.create_adapter(template.name)
            logger.info(f"Validating config for '{template.name}' with {type(adapter).__name__}")
            return adapter.validate_config(config, template.required_env_vars, template.optional_env_vars)
        return self.generic_validator.validate_config(config, template)

    def transform_config(self, template: ServerTemplate, config: Dict[str, Any]) -> DeploymentConfig:
        if self.adapter_factory.is_supported(template.name):
            adapter = self.adapter_factory.create_adapter(template.name)
            return adapter.transform_config(config, TemplateRuntimeConfig.from_template(template))
        return self.generic_validator.transform_config(config, template)

    # Creation

    async def create_deployment(self, deployment: DeploymentCreate, user_id: str) -> DeploymentResponse:
        created, _ = await self._create(deployment, user_id)
        return created

    async def _create(self, deployment: DeploymentCreate, user_id: str) -> Tuple[DeploymentResponse, ServerTemplate]:
        template = await self._db(self.templates.get_template, deployment.server_template_id)
        if template is None:
            raise DeploymentError(
                f"Template not found: {deployment.server_template_id}", ErrorCode.TEMPLATE_NOT_FOUND, 404
            )
        if not template.is_accessible_by(user_id):
            raise DeploymentError(
                f"Access denied to template: {template.name}", ErrorCode.TEMPLATE_ACCESS_DENIED, 403
            )

        _raise_if_invalid(self.validate_config(template, deployment.server_config))

        transport = self.transport_resolver.resolve_transport_type(
            template=template,
            user_selection=deployment.transport_type,
            deployment_name=deployment.deployment_name,
        )
        advanced_config = deployment.advanced_config.model_dump(exclude_none=True) if deployment.advanced_config else {}
        advanced_config["transport_type"] = transport.value

        data = {
            "user_id": user_id,
            "server_template_id": template.id,
            "server_config": deployment.server_config,
            "environment": deployment.environment,
            "advanced_config": advanced_config,
            "status": DeploymentStatus.PENDING.value,
        }
        if deployment.railway_project_id:
            data["railway_project_id"] = deployment.railway_project_id

        created = await self._insert_with_unique_name(user_id, deployment.deployment_name, data)
        logger.info(f"Deployment {created.id} created as '{created.deployment_name}' for user {user_id}")
        await self._log(created.id, LogLevel.INFO, "Deployment created", {
            "action": "create",
            "template": template.name,
            "transport_type": transport.value,
            "requested_name": deployment.deployment_name,
        })

        if deployment.is_trial and deployment.trial_application_id:
            try:
                link = await self._db(
                    self.deployments.link_deployment_to_trial, created.id, deployment.trial_application_id
                )
            except DeploymentError as e:
                link = BestEffortResult(ok=False, error=e.message)
            link.log_if_failed("trial link")
            if not link.ok:
                await self._log(created.id, LogLevel.WARN, "Failed to link deployment to trial", {
                    "action": "trial_link",
                    "code": ErrorCode.TRIAL_LINK_FAILED.value,
                    "trial_application_id": deployment.trial_application_id,
                    "error": link.error,
                })

        self._audit(user_id, "deployment.create", created.id, {"template": template.name})
        return created, template

    async def update_deployment(self, deployment_id: str, update: DeploymentUpdate) -> DeploymentResponse:
        """Apply a partial update. A new server_config is validated against the deployment's template."""
        update_data = update.model_dump(exclude_unset=True, exclude_none=True)
        if not update_data:
            return await self._db(self.deployments.get_deployment_or_404, deployment_id)

        if "server_config" in update_data:
            current = await self._db(self.deployments.get_deployment_or_404, deployment_id)
            template = await self._db(self.templates.get_template, current.server_template_id)
            if template is None:
                raise DeploymentError(
                    f"Template not found: {current.server_template_id}", ErrorCode.TEMPLATE_NOT_FOUND, 404
                )
            _raise_if_invalid(self.validate_config(template, update_data["server_config"]))
        return await self._db(self.deployments.update_deployment, deployment_id, update_data)

    async def _insert_with_unique_name(self, user_id: str, requested_name: str, data: Dict[str, Any]) -> DeploymentResponse:
        """
        First free name among ``name``, ``name-2``, ``name-3``... The exists
        check only skips known names; the unique index decides, and a clash on
        insert moves on to the next suffix.
        """
        suffix = 1
        name = requested_name
        for _ in range(MAX_NAME_ATTEMPTS):
            if not await self._db(self.deployments.deployment_name_exists, user_id, name):
                try:
                    return await self._db(self.deployments.insert_deployment, {**data, "deployment_name": name})
                except DeploymentError as e:
                    if e.code != ErrorCode.DEPLOYMENT_NAME_TAKEN.value:
                        raise
                    logger.info(f"Deployment name '{name}' taken concurrently for user {user_id}, trying next suffix")
            suffix += 1
            name = f"{requested_name}-{suffix}"

        raise DeploymentError(
            f"Could not find a free deployment name for '{requested_name}'",
            ErrorCode.NAME_CONFLICT,
            409,
            {"requested_name": requested_name, "attempts": MAX_NAME_ATTEMPTS},
        )

    # Full deployment

    async def deploy_server(self, deployment: DeploymentCreate, user_id: str) -> OrchestrationResult:
        """
        Create the record, then provision on Railway. Input errors (missing
        template, access, validation) raise. Provider failures after the record
        exists mark it failed and come back as ``success=False``.
        """
        created, template = await self._create(deployment, user_id)
        deployment_id = created.id

        try:
            railway = self._require_railway()
            await self._set_status(deployment_id, DeploymentStatus.VALIDATING, "Validating configuration")
            await self._log(deployment_id, LogLevel.INFO, "Configuration validated", {"template": template.name})

            await self._set_status(deployment_id, DeploymentStatus.BUILDING, "Provisioning Railway service")
            project = await self._setup_railway_project(deployment_id, user_id, deployment.railway_project_id)

            environments = await railway.get_environments(project.id)
            environment = next((e for e in environments if e.name == PRODUCTION_ENVIRONMENT), None)
            if environment is None:
                raise DeploymentError(
                    f"Production environment not found in Railway project {project.id}",
                    ErrorCode.PROVIDER_ERROR,
                    502,
                )
            await self._db(self.deployments.update_deployment, deployment_id, {
                "railway_project_id": project.id,
                "railway_environment_id": environment.id,
            }, False)

            deploy_config = self.transform_config(template, deployment.server_config)
            env_vars = dict(deploy_config.environment_variables)
            env_vars["TRANSPORT_TYPE"] = created.transport_type or self.transport_resolver.resolve_transport_type(template).value
            env_vars["PORT"] = str(deploy_config.port)
            env_vars["NODE_ENV"] = "production"

            service_name = build_service_name(created.deployment_name)
            service = await railway.create_service_from_github(project.id, environment.id, DeployConfig(
                service_name=service_name,
                github_repo=template.github_repo,
                branch=template.github_branch or "main",
                environment_variables=env_vars,
            ))
            await self._db(self.deployments.update_deployment, deployment_id, {"railway_service_id": service.id}, False)
            await self._log(deployment_id, LogLevel.INFO, f"Railway service created: {service_name}", {
                "railway_service_id": service.id,
                "env_var_count": len(env_vars),
            })

            domain = await railway.generate_service_domain(environment.id, service.id)
            service_url = f"https://{domain.domain}"
            health_check_url = build_health_check_url(service_url, deploy_config.health_check_path)

            railway_deployments = await railway.get_service_deployments(service.id, environment.id, 1)
            if not railway_deployments:
                await self._sleep(2)
                railway_deployments = await railway.get_service_deployments(service.id, environment.id, 1)
            if not railway_deployments:
                raise DeploymentError(
                    f"No Railway deployment found for service {service.id}",
                    ErrorCode.DEPLOY_FAILED,
                    502,
                )
            railway_deployment = railway_deployments[0]

            await self._set_status(deployment_id, DeploymentStatus.DEPLOYING, "Railway deployment started", extra={
                "railway_deployment_id": railway_deployment.id,
                "service_url": service_url,
                "health_check_url": health_check_url,
            })
        except Exception as e:
            message = e.message if isinstance(e, DeploymentError) else str(e)
            code = e.code if isinstance(e, DeploymentError) else ErrorCode.PROVIDER_ERROR.value
            logger.error(f"Deployment {deployment_id} failed: {message}")
            await self._mark_failed(deployment_id, message, code)
            await self.cleanup_failed_deployment(deployment_id)
            return OrchestrationResult(success=False, deployment_id=deployment_id, error=message, error_code=code)

        self._audit(user_id, "deployment.deploy", deployment_id, {"railway_deployment_id": railway_deployment.id})
        self._start_monitor(deployment_id)
        return OrchestrationResult(
            success=True,
            deployment_id=deployment_id,
            service_url=service_url,
            health_check_url=health_check_url,
        )

    async def _setup_railway_project(
        self, deployment_id: str, user_id: str, requested_project_id: Optional[str] = None
    ) -> RailwayProject:
        """Reuse the requested or the user's saved project while it still exists, else create one."""
        railway = self._require_railway()
        if requested_project_id:
            project = await railway.get_project(requested_project_id)
            if project is not None:
                return project
            logger.warning(f"Requested Railway project {requested_project_id} not found, falling back")

        saved = await self._db(self.deployments.get_user_railway_project, user_id)
        if saved and saved.get("railway_project_id"):
            project = await railway.get_project(saved["railway_project_id"])
            if project is not None:
                logger.info(f"Reusing Railway project {project.id} for user {user_id}")
                return project
            logger.warning(f"Saved Railway project {saved['railway_project_id']} no longer exists, creating a new one")

        name = build_project_name(user_id)
        project = await railway.create_project(name, f"MCP servers for user {user_id.replace('-', '')[:8]}")
        await self._db(self.deployments.save_user_railway_project, user_id, project.id, project.name)
        await self._log(deployment_id, LogLevel.INFO, f"Railway project created: {project.name}", {
            "railway_project_id": project.id,
        })
        return project

    async def _set_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        reason: Optional[str] = None,
        explicit: bool = False,
        extra: Optional[Dict[str, Any]] = None,
    ) -> DeploymentResponse:
        return await self._db(
            self.deployments.update_deployment_status,
            deployment_id,
            status,
            reason=reason,
            explicit=explicit,
            extra=extra,
        )

    async def _advance(self, deployment_id: str, status: DeploymentStatus, reason: str, extra: Optional[Dict[str, Any]] = None):
        """Forward-only update used while following Railway; backward moves are ignored."""
        current = await self._db(self.deployments.get_deployment_or_404, deployment_id)
        if is_regression(current.status, status):
            logger.debug(f"Ignoring {current.status} -> {status.value} for deployment {deployment_id}")
            return current
        if current.status == status.value and not extra:
            return current
        return await self._db(
            self.deployments.update_deployment_status,
            deployment_id,
            status,
            reason=reason,
            extra=extra,
            current=current,
        )

    async def _mark_failed(self, deployment_id: str, message: str, code: Optional[str] = None):
        try:
            await self._set_status(deployment_id, DeploymentStatus.FAILED, message, extra={"error_message": message})
        except DeploymentError as e:
            logger.error(f"Could not mark deployment {deployment_id} failed ({code}): {e.message}")

    # Monitoring

    def _start_monitor(self, deployment_id: str):
        if not self.monitor_in_background:
            return
        task = asyncio.create_task(self._monitor_in_background(deployment_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _monitor_in_background(self, deployment_id: str):
        try:
            await self.monitor_deployment(deployment_id)
        except Exception as e:
            logger.error(f"Background monitoring of deployment {deployment_id} failed: {str(e)}")

    async def monitor_deployment(self, deployment_id: str) -> DeploymentStatus:
        """
        Poll Railway until the deployment is running or has failed, mirroring
        progress onto the row. Returns the final local status.
        """
        railway = self._require_railway()
        deployment = await self._db(self.deployments.get_deployment_or_404, deployment_id)
        if not deployment.railway_deployment_id:
            raise DeploymentError(
                f"Deployment {deployment_id} has no Railway deployment to monitor",
                ErrorCode.MONITOR_FAILED,
                400,
            )
        railway_deployment_id = deployment.railway_deployment_id
        logger.info(f"Monitoring Railway deployment {railway_deployment_id} for deployment {deployment_id}")

        for attempt in range(1, self.monitor_max_attempts + 1):
            try:
                remote = await railway.get_deployment(railway_deployment_id)
            except DeploymentError as e:
                if e.code not in (ErrorCode.CIRCUIT_BREAKER_OPEN.value, ErrorCode.RETRY_EXHAUSTED.value):
                    raise
                logger.warning(f"Monitoring attempt {attempt} for {deployment_id} could not reach Railway: {e.message}")
                await self._sleep(self.monitor_interval)
                continue

            if remote is None:
                await self._mark_failed(deployment_id, "Railway deployment not found", ErrorCode.MONITOR_FAILED.value)
                return DeploymentStatus.FAILED

            status = remote.status.upper()
            logger.debug(f"Railway deployment {railway_deployment_id} status {status} (attempt {attempt})")

            if status in BUILDING_STATES:
                await self._advance(deployment_id, DeploymentStatus.BUILDING, f"Railway status {status}")
            elif status in DEPLOYING_STATES:
                await self._advance(deployment_id, DeploymentStatus.DEPLOYING, f"Railway status {status}")
            elif status in RUNNING_STATES:
                extra = {"deployed_at": datetime.now(timezone.utc).isoformat()}
                if remote.url and not deployment.service_url:
                    extra["service_url"] = f"https://{remote.url}"
                await self._advance(deployment_id, DeploymentStatus.RUNNING, "Railway deployment succeeded", extra)
                await self._after_running(deployment_id)
                return DeploymentStatus.RUNNING
            elif status in FAILED_STATES:
                await self._mark_failed(deployment_id, f"Railway deployment {status.lower()}", ErrorCode.DEPLOY_FAILED.value)
                return DeploymentStatus.FAILED
            elif status in REMOVED_STATES:
                await self._mark_failed(deployment_id, f"Railway deployment {status.lower()}", ErrorCode.DEPLOY_REMOVED.value)
                return DeploymentStatus.FAILED
            else:
                logger.warning(f"Unknown Railway status '{status}' for deployment {deployment_id}")

            await self._sleep(self.monitor_interval)

        await self._mark_failed(
            deployment_id,
            f"Deployment monitoring timed out after {self.monitor_max_attempts} attempts",
            ErrorCode.MONITOR_TIMEOUT.value,
        )
        return DeploymentStatus.FAILED

    async def _after_running(self, deployment_id: str):
        if self.health_monitor is None:
            return
        try:
            await self.health_monitor.perform_health_check(deployment_id)
        except DeploymentError as e:
            logger.warning(f"Initial health check for deployment {deployment_id} failed: {e.message}")
        await self.health_monitor.start_monitoring(deployment_id)

    async def perform_health_check(self, deployment_id: str) -> HealthCheckResponse:
        if self.health_monitor is None:
            raise DeploymentError("Health monitoring is not configured", ErrorCode.HEALTH_CHECK_FAILED, 503)
        return await self.health_monitor.perform_health_check(deployment_id)

    # Restart, cleanup, delete

    async def restart_deployment(
        self, deployment_id: str, force_rebuild: bool = False, actor_id: Optional[str] = None
    ) -> RestartResponse:
        deployment = await self._db(self.deployments.get_deployment, deployment_id)
        if deployment is None or not deployment.railway_service_id:
            return RestartResponse(
                success=False,
                deployment_id=deployment_id,
                error="Deployment not found or not deployed to Railway",
            )

        try:
            railway = self._require_railway()
            environment_id = deployment.railway_environment_id
            if not environment_id and deployment.railway_project_id:
                environments = await railway.get_environments(deployment.railway_project_id)
                environment_id = next((e.id for e in environments if e.name == PRODUCTION_ENVIRONMENT), None)
            if not environment_id:
                raise DeploymentError(
                    f"No Railway environment recorded for deployment {deployment_id}",
                    ErrorCode.PROVIDER_ERROR,
                    400,
                )

            if self.health_monitor is not None:
                self.health_monitor.stop_monitoring(deployment_id)
            await self._set_status(
                deployment_id,
                DeploymentStatus.DEPLOYING,
                "Restart requested" + (" with rebuild" if force_rebuild else ""),
                explicit=True,
            )
            remote = await railway.trigger_deployment(deployment.railway_service_id, environment_id)
            extra = {"railway_environment_id": environment_id, "error_message": None}
            if remote is not None:
                extra["railway_deployment_id"] = remote.id
            await self._db(self.deployments.update_deployment, deployment_id, extra, False)
        except Exception as e:
            message = e.message if isinstance(e, DeploymentError) else str(e)
            logger.error(f"Restart of deployment {deployment_id} failed: {message}")
            await self._log(deployment_id, LogLevel.ERROR, f"Restart failed: {message}", {"action": "restart"})
            return RestartResponse(success=False, deployment_id=deployment_id, error=message)

        await self._log(deployment_id, LogLevel.INFO, "Deployment restart triggered", {
            "action": "restart",
            "force_rebuild": force_rebuild,
        })
        self._audit(actor_id, "deployment.restart", deployment_id, {"force_rebuild": force_rebuild})
        if remote is not None:
            self._start_monitor(deployment_id)
        return RestartResponse(success=True, deployment_id=deployment_id)

    async def cleanup_failed_deployment(self, deployment_id: str) -> BestEffortResult:
        """Cancel the Railway deployment of a failed record, if one was created."""
        try:
            deployment = await self._db(self.deployments.get_deployment, deployment_id)
            if deployment is None or not deployment.railway_deployment_id or self.railway is None:
                return BestEffortResult(ok=True)
            await self.railway.cancel_deployment(deployment.railway_deployment_id)
            await self._log(deployment_id, LogLevel.INFO, "Cancelled failed Railway deployment", {
                "railway_deployment_id": deployment.railway_deployment_id,
            })
            return BestEffortResult(ok=True)
        except Exception as e:
            logger.error(f"Cleanup of deployment {deployment_id} failed: {str(e)}")
            result = BestEffortResult(ok=False, error=str(e))
            result.log_if_failed("cleanup")
            return result

    async def delete_deployment(self, deployment_id: str, actor_id: Optional[str] = None) -> bool:
        await self._db(self.deployments.get_deployment_or_404, deployment_id)
        if self.health_monitor is not None:
            self.health_monitor.stop_monitoring(deployment_id)
        await self._db(self.deployments.delete_deployment, deployment_id)
        logger.info(f"Deployment {deployment_id} deleted by {actor_id}")
        self._audit(actor_id, "deployment.delete", deployment_id)
        return True

    async def shutdown(self):
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
