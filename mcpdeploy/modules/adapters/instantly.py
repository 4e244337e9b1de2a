from typing import Any, Dict, List
from mcpdeploy.modules.adapters.base import (
    DeploymentConfig,
    ServerAdapter,
    TemplateRuntimeConfig,
    as_env_value,
    is_empty,
)

MIN_API_KEY_LENGTH = 20


class InstantlyAdapter(ServerAdapter):
    server_type = "instantly-mcp"
    default_port = 3001

    def validate_server_specific(self, config: Dict[str, Any], declared: set) -> List[str]:
        if "INSTANTLY_API_KEY" in declared:
            return []
        api_key = config.get("INSTANTLY_API_KEY")
        if is_empty(api_key):
            return ["Instantly API key is required"]
        if len(str(api_key)) < MIN_API_KEY_LENGTH:
            return ["Invalid Instantly API key format"]
        return []

    def transform_config(self, config: Dict[str, Any], runtime: TemplateRuntimeConfig) -> DeploymentConfig:
        env = {}
        if not is_empty(config.get("INSTANTLY_API_KEY")):
            env["INSTANTLY_API_KEY"] = as_env_value(config["INSTANTLY_API_KEY"])
        return self._deployment_config(env, config, ("INSTANTLY_API_KEY",), runtime)
