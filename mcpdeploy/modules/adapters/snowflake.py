from typing import Any, Dict, List
from mcpdeploy.modules.adapters.base import (
    DeploymentConfig,
    ServerAdapter,
    TemplateRuntimeConfig,
    as_env_value,
    is_empty,
)

# (config key, label used in error messages)
SNOWFLAKE_FIELDS = (
    ("SNOWFLAKE_ACCOUNT", "account"),
    ("SNOWFLAKE_USERNAME", "username"),
    ("SNOWFLAKE_PASSWORD", "password"),
    ("SNOWFLAKE_WAREHOUSE", "warehouse"),
    ("SNOWFLAKE_DATABASE", "database"),
    ("SNOWFLAKE_SCHEMA", "schema"),
)


class SnowflakeAdapter(ServerAdapter):
    server_type = "snowflake-mcp"
    default_port = 3002

    def validate_server_specific(self, config: Dict[str, Any], declared: set) -> List[str]:
        errors = []
        for key, label in SNOWFLAKE_FIELDS:
            if key not in declared and is_empty(config.get(key)):
                errors.append(f"Snowflake {label} is required")
        account = config.get("SNOWFLAKE_ACCOUNT")
        # Account identifiers carry the region, e.g. xy12345.us-east-1
        if not is_empty(account) and "." not in str(account):
            errors.append("Snowflake account must include region (e.g., account.region)")
        return errors

    def transform_config(self, config: Dict[str, Any], runtime: TemplateRuntimeConfig) -> DeploymentConfig:
        keys = [key for key, _ in SNOWFLAKE_FIELDS]
        env = {key: as_env_value(config[key]) for key in keys if not is_empty(config.get(key))}
        return self._deployment_config(env, config, keys, runtime)
