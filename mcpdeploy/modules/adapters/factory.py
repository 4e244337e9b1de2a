from typing import Callable, Dict, List, Optional
from mcpdeploy.modules.adapters.base import ServerAdapter
from mcpdeploy.modules.adapters.emailbison import EmailBisonAdapter
from mcpdeploy.modules.adapters.instantly import InstantlyAdapter
from mcpdeploy.modules.adapters.snowflake import SnowflakeAdapter

AdapterConstructor = Callable[[], ServerAdapter]


class UnsupportedServerTypeError(LookupError):
    pass


class ServerAdapterFactory:
    """Template name -> adapter constructor. Built once at startup and injected."""

    def __init__(self, adapters: Optional[Dict[str, AdapterConstructor]] = None):
        self._adapters: Dict[str, AdapterConstructor] = dict(adapters or {})

    def register_adapter(self, template_name: str, constructor: AdapterConstructor):
        self._adapters[template_name] = constructor

    def unregister_adapter(self, template_name: str) -> bool:
        return self._adapters.pop(template_name, None) is not None

    def create_adapter(self, template_name: str) -> ServerAdapter:
        constructor = self._adapters.get(template_name)
        if constructor is None:
            supported = ", ".join(sorted(self._adapters)) or "none"
            raise UnsupportedServerTypeError(
                f"No adapter found for server template: {template_name} (supported: {supported})"
            )
        return constructor()

    def get_supported_types(self) -> List[str]:
        return list(self._adapters)

    def is_supported(self, template_name: str) -> bool:
        return template_name in self._adapters


def create_default_adapter_factory() -> ServerAdapterFactory:
    return ServerAdapterFactory({
        "emailbison-mcp": EmailBisonAdapter,
        "instantly-mcp": InstantlyAdapter,
        "snowflake-mcp": SnowflakeAdapter,
    })
