"""
Shared pieces of the adapter set: result types, the per-field schema checks
used by every adapter and by the generic validator, and health URL building.
"""

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import AnyUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from mcpdeploy.modules.server_templates.schemas import EnvVarSchema, EnvVarType, ServerTemplate

_url_adapter = TypeAdapter(AnyUrl)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[str], warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(valid=len(errors) == 0, errors=list(errors), warnings=list(warnings or []))


@dataclass
class TemplateRuntimeConfig:
    """Sizing and process settings an adapter needs from the template."""
    port: int = 3000
    healthcheck_path: str = "/health"
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    min_memory_mb: int = 512
    min_cpu_cores: float = 0.5

    @classmethod
    def from_template(cls, template: ServerTemplate) -> "TemplateRuntimeConfig":
        return cls(
            port=template.port or 3000,
            healthcheck_path=template.healthcheck_path or "/health",
            build_command=template.build_command,
            start_command=template.start_command,
            min_memory_mb=template.min_memory_mb or 512,
            min_cpu_cores=template.min_cpu_cores or 0.5,
        )


@dataclass
class DeploymentConfig:
    environment_variables: Dict[str, str]
    port: int
    health_check_path: str
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    memory_mb: int = 512
    cpu_cores: float = 0.5


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def as_env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def is_url(value: Any) -> bool:
    try:
        _url_adapter.validate_python(str(value))
        return True
    except PydanticValidationError:
        return False


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def validate_field(value: Any, schema: EnvVarSchema) -> List[str]:
    """
    Check one present value against its schema entry.

    A type failure is reported alone. Otherwise every violated constraint
    (pattern, length, range, enum) is reported.
    """
    errors: List[str] = []
    label = schema.display_name or schema.name
    rules = schema.validation

    if schema.type == EnvVarType.NUMBER:
        if _parse_number(value) is None:
            return [f"{label} must be a number"]
    elif schema.type == EnvVarType.URL:
        if not is_url(value):
            return [f"{label} must be a valid URL"]
    elif schema.type == EnvVarType.BOOLEAN:
        if not isinstance(value, bool) and value not in ("true", "false"):
            return [f"{label} must be true or false"]

    text = as_env_value(value)
    if rules is not None:
        if rules.pattern:
            try:
                if not re.search(rules.pattern, text):
                    errors.append(f"{label} format is invalid")
            except re.error:
                errors.append(f"{label} has an invalid validation pattern")

        if rules.min_length and len(text) < rules.min_length:
            errors.append(f"{label} must be at least {rules.min_length} characters")
        if rules.max_length and len(text) > rules.max_length:
            errors.append(f"{label} must be at most {rules.max_length} characters")

        if schema.type == EnvVarType.NUMBER:
            number = _parse_number(value)
            if rules.min is not None and number < rules.min:
                errors.append(f"{label} must be at least {_format_bound(rules.min)}")
            if rules.max is not None and number > rules.max:
                errors.append(f"{label} must be at most {_format_bound(rules.max)}")

    if schema.type == EnvVarType.ENUM and schema.options and value not in schema.options:
        errors.append(f"{label} must be one of: {', '.join(schema.options)}")

    return errors


def validate_schema(
    config: Dict[str, Any],
    required_vars: Iterable[EnvVarSchema],
    optional_vars: Iterable[EnvVarSchema] = (),
) -> List[str]:
    """Collect every violation across both schema lists. Optional entries are checked only when present."""
    errors: List[str] = []
    for schema in required_vars:
        value = config.get(schema.name)
        if is_empty(value):
            if schema.is_required:
                errors.append(f"{schema.display_name or schema.name} is required")
            continue
        errors.extend(validate_field(value, schema))

    for schema in optional_vars:
        value = config.get(schema.name)
        if not is_empty(value):
            errors.extend(validate_field(value, schema))
    return errors


def build_health_check_url(base_url: str, healthcheck_path: str) -> str:
    """Join with exactly one slash between base and path."""
    base = (base_url or "").rstrip("/")
    path = (healthcheck_path or "").lstrip("/")
    return f"{base}/{path}"


class ServerAdapter(ABC):
    """Strategy for one server type: validation, env var mapping and health URL."""

    server_type: str = ""
    default_port: int = 3000

    def get_server_type(self) -> str:
        return self.server_type

    def get_default_port(self) -> int:
        return self.default_port

    def validate_config(
        self,
        config: Dict[str, Any],
        required_vars: List[EnvVarSchema],
        optional_vars: List[EnvVarSchema],
    ) -> ValidationResult:
        declared = {schema.name for schema in list(required_vars) + list(optional_vars)}
        errors = self.validate_server_specific(config, declared)
        errors.extend(validate_schema(config, required_vars, optional_vars))
        return ValidationResult.from_errors(errors)

    @abstractmethod
    def validate_server_specific(self, config: Dict[str, Any], declared: set) -> List[str]:
        """Checks this server type needs on fields the template schema does not declare."""

    @abstractmethod
    def transform_config(self, config: Dict[str, Any], runtime: TemplateRuntimeConfig) -> DeploymentConfig:
        ...

    def get_health_check_url(self, base_url: str, healthcheck_path: str) -> str:
        return build_health_check_url(base_url, healthcheck_path)

    async def validate_server_connection(self, config: Dict[str, Any]) -> ValidationResult:
        return ValidationResult(valid=True)

    def _deployment_config(
        self,
        environment_variables: Dict[str, str],
        config: Dict[str, Any],
        handled_keys: Iterable[str],
        runtime: TemplateRuntimeConfig,
    ) -> DeploymentConfig:
        handled = set(handled_keys)
        env = dict(environment_variables)
        for key, value in config.items():
            if key in handled or is_empty(value):
                continue
            env[key.upper()] = as_env_value(value)
        env["PORT"] = str(runtime.port)
        env["HEALTHCHECK_PATH"] = runtime.healthcheck_path
        return DeploymentConfig(
            environment_variables=env,
            port=runtime.port,
            health_check_path=runtime.healthcheck_path,
            build_command=runtime.build_command,
            start_command=runtime.start_command,
            memory_mb=runtime.min_memory_mb,
            cpu_cores=runtime.min_cpu_cores,
        )
