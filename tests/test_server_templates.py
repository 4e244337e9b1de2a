import pytest

from mcpdeploy.core.errors import DeploymentError, ErrorCode
from tests.fakes import USER_ID, OTHER_USER_ID, emailbison_template_row, generic_template_row


@pytest.fixture
def seeded(fake_db):
    fake_db.seed(
        "server_templates",
        emailbison_template_row(),
        generic_template_row(),
        generic_template_row(id="tmpl-private", name="private-mcp", display_name="Private", allowed_user_ids=[OTHER_USER_ID]),
        generic_template_row(id="tmpl-retired", name="retired-mcp", display_name="Retired", is_active=False),
    )
    return fake_db


def test_list_hides_inactive_and_restricted(template_service, seeded):
    names = [t.name for t in template_service.list_templates(USER_ID)]
    assert names == ["emailbison-mcp", "weather-mcp"]


def test_allowlisted_user_sees_private_template(template_service, seeded):
    names = {t.name for t in template_service.list_templates(OTHER_USER_ID)}
    assert "private-mcp" in names


def test_get_template_missing_is_none(template_service, seeded):
    assert template_service.get_template("nope") is None
    assert template_service.get_template("tmpl-weather").port == 8080


def test_can_user_access_template(template_service, seeded):
    assert template_service.can_user_access_template(USER_ID, "tmpl-weather")
    assert not template_service.can_user_access_template(USER_ID, "tmpl-private")
    assert template_service.can_user_access_template(OTHER_USER_ID, "tmpl-private")
    assert not template_service.can_user_access_template(USER_ID, "nope")


def test_categories_are_distinct_and_sorted(template_service, seeded):
    assert template_service.get_template_categories(USER_ID) == ["data", "email"]


def test_featured(template_service, seeded):
    assert [t.name for t in template_service.get_featured_templates(USER_ID)] == ["emailbison-mcp"]


def test_search_matches_text_and_tags(template_service, seeded):
    assert [t.name for t in template_service.search_templates("CAMPAIGNS", user_id=USER_ID)] == ["emailbison-mcp"]
    assert [t.name for t in template_service.search_templates("outreach", user_id=USER_ID)] == ["emailbison-mcp"]
    assert [t.name for t in template_service.search_templates("", category="data", user_id=USER_ID)] == ["weather-mcp"]
    assert len(template_service.search_templates("", user_id=USER_ID, limit=1)) == 1


def test_validate_env_vars(template_service, seeded):
    assert template_service.validate_env_vars("tmpl-weather", {"WEATHER_API_KEY": "abcdefgh"}).valid
    result = template_service.validate_env_vars("nope", {})
    assert result.errors == ["Template not found"]


def test_storage_failure_is_wrapped(template_service, fake_db):
    fake_db.fail("server_templates", "select")
    with pytest.raises(DeploymentError) as exc_info:
        template_service.list_templates(USER_ID)
    assert exc_info.value.code == ErrorCode.LIST_FAILED.value
