from typing import Any, Dict
from mcpdeploy.modules.adapters.base import (
    DeploymentConfig,
    TemplateRuntimeConfig,
    ValidationResult,
    as_env_value,
    build_health_check_url,
    is_empty,
    validate_schema,
)
from mcpdeploy.modules.server_templates.schemas import ServerTemplate
import logging

logger = logging.getLogger(__name__)


class GenericServerValidator:
    """
    Schema-driven validation and env var mapping for any server type.

    Used whenever no adapter is registered for a template, so onboarding a new
    server type only needs a server_templates row.
    """

    def validate_config(self, config: Dict[str, Any], template: ServerTemplate) -> ValidationResult:
        logger.info(
            f"Validating config for template '{template.name}' with generic validator "
            f"({len(template.required_env_vars)} required, {len(template.optional_env_vars)} optional vars)"
        )
        errors = validate_schema(config, template.required_env_vars, template.optional_env_vars)
        result = ValidationResult.from_errors(errors)
        logger.info(f"Generic validation for '{template.name}' finished: valid={result.valid}, errors={len(errors)}")
        return result

    def transform_config(self, config: Dict[str, Any], template: ServerTemplate) -> DeploymentConfig:
        runtime = TemplateRuntimeConfig.from_template(template)
        env = {key: as_env_value(value) for key, value in config.items() if not is_empty(value)}
        env["PORT"] = str(runtime.port)
        env["HEALTHCHECK_PATH"] = runtime.healthcheck_path
        env["NODE_ENV"] = "production"
        return DeploymentConfig(
            environment_variables=env,
            port=runtime.port,
            health_check_path=runtime.healthcheck_path,
            build_command=runtime.build_command,
            start_command=runtime.start_command,
            memory_mb=runtime.min_memory_mb,
            cpu_cores=runtime.min_cpu_cores,
        )

    def get_health_check_url(self, base_url: str, healthcheck_path: str) -> str:
        return build_health_check_url(base_url, healthcheck_path)

    async def validate_server_connection(self, config: Dict[str, Any], template: ServerTemplate) -> ValidationResult:
        logger.debug(f"Skipping connection validation for template '{template.name}'")
        return ValidationResult(
            valid=True,
            warnings=["Connection validation not implemented for this server type"],
        )
