from mcpdeploy.modules.server_templates.schemas import ServerTemplate, TransportType
from typing import Any, Dict, List, Optional, Union
import logging

logger = logging.getLogger(__name__)

SYSTEM_DEFAULT_TRANSPORT = TransportType.SSE

_DISPLAY_NAMES = {
    TransportType.SSE: "Server-Sent Events",
    TransportType.STREAMABLE_HTTP: "Streamable HTTP",
    TransportType.HTTP: "HTTP",
}

_METADATA = {
    TransportType.SSE: {
        "reliability": "high",
        "recommended_for": ["mcp-connections", "real-time-streaming", "production-systems"],
    },
    TransportType.STREAMABLE_HTTP: {
        "reliability": "medium",
        "recommended_for": ["testing", "development", "fallback-option"],
    },
    TransportType.HTTP: {
        "reliability": "low",
        "recommended_for": ["simple-request-response", "legacy-clients"],
    },
}


class TransportResolver:
    """
    Picks the connection transport for a deployment.

    First match wins: explicit user selection, then the template's
    default_transport_type, then the system default (SSE).
    """

    def resolve_transport_type(
        self,
        template: Optional[ServerTemplate] = None,
        user_selection: Optional[Union[TransportType, str]] = None,
        deployment_name: Optional[str] = None,
    ) -> TransportType:
        if user_selection:
            transport = TransportType(user_selection)
            logger.info(f"Using user-selected transport '{transport.value}' for deployment {deployment_name}")
            return transport

        if template is not None and template.default_transport_type:
            transport = TransportType(template.default_transport_type)
            logger.info(
                f"Using template '{template.name}' default transport '{transport.value}' for deployment {deployment_name}"
            )
            return transport

        logger.info(f"Using system default transport '{SYSTEM_DEFAULT_TRANSPORT.value}' for deployment {deployment_name}")
        return SYSTEM_DEFAULT_TRANSPORT

    @staticmethod
    def get_transport_metadata(transport: Union[TransportType, str]) -> Dict[str, Any]:
        return dict(_METADATA.get(TransportType(transport), {"reliability": "medium", "recommended_for": []}))

    def get_supported_transport_types(self) -> List[Dict[str, Any]]:
        """SSE first as the preferred option."""
        return [
            {
                "type": transport.value,
                "display_name": _DISPLAY_NAMES[transport],
                "metadata": self.get_transport_metadata(transport),
            }
            for transport in (TransportType.SSE, TransportType.STREAMABLE_HTTP, TransportType.HTTP)
        ]
