import pytest

from mcpdeploy.modules.server_templates.schemas import ServerTemplate, TransportType
from mcpdeploy.modules.server_templates.transport import TransportResolver
from tests.fakes import emailbison_template_row, generic_template_row


@pytest.fixture
def resolver():
    return TransportResolver()


def test_user_selection_wins(resolver):
    template = ServerTemplate(**generic_template_row())
    assert resolver.resolve_transport_type(template, "http", "weather") == TransportType.HTTP


def test_template_default_used_without_selection(resolver):
    template = ServerTemplate(**generic_template_row())
    assert resolver.resolve_transport_type(template, None, "weather") == TransportType.STREAMABLE_HTTP


def test_system_default_is_sse(resolver):
    template = ServerTemplate(**emailbison_template_row())
    assert resolver.resolve_transport_type(template) == TransportType.SSE
    assert resolver.resolve_transport_type(None) == TransportType.SSE


def test_unknown_selection_is_rejected(resolver):
    with pytest.raises(ValueError):
        resolver.resolve_transport_type(None, "websocket")


def test_supported_types_list_sse_first(resolver):
    supported = resolver.get_supported_transport_types()
    assert [t["type"] for t in supported] == ["sse", "streamable-http", "http"]
    assert supported[0]["display_name"] == "Server-Sent Events"
    assert supported[0]["metadata"]["reliability"] == "high"


def test_metadata_is_a_copy(resolver):
    metadata = resolver.get_transport_metadata("sse")
    metadata["reliability"] = "none"
    assert resolver.get_transport_metadata(TransportType.SSE)["reliability"] == "high"
