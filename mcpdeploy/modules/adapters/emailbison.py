from typing import Any, Dict, List
from mcpdeploy.modules.adapters.base import (
    DeploymentConfig,
    ServerAdapter,
    TemplateRuntimeConfig,
    is_url,
    as_env_value,
    is_empty,
)


class EmailBisonAdapter(ServerAdapter):
    server_type = "emailbison-mcp"
    default_port = 3000

    def validate_server_specific(self, config: Dict[str, Any], declared: set) -> List[str]:
        errors = []
        api_key = config.get("api_key")
        base_url = config.get("base_url")
        if "api_key" not in declared:
            if is_empty(api_key):
                errors.append("EmailBison API key is required")
            elif len(str(api_key)) < 10:
                errors.append("Invalid API key format")
        if "base_url" not in declared:
            if is_empty(base_url):
                errors.append("EmailBison base URL is required")
            elif not is_url(base_url):
                errors.append("Invalid base URL format")
        return errors

    def transform_config(self, config: Dict[str, Any], runtime: TemplateRuntimeConfig) -> DeploymentConfig:
        env = {}
        if not is_empty(config.get("api_key")):
            env["EMAILBISON_API_KEY"] = as_env_value(config["api_key"])
        if not is_empty(config.get("base_url")):
            env["EMAILBISON_BASE_URL"] = as_env_value(config["base_url"])
        return self._deployment_config(env, config, ("api_key", "base_url"), runtime)
