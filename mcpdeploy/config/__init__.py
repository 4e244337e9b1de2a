from mcpdeploy.config.settings import settings

__all__ = ["settings"]
