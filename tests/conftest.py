import pytest

from mcpdeploy.core.resilience import CircuitBreaker, CircuitBreakerRegistry, counts_as_failure
from mcpdeploy.modules.deployments.service import DeploymentService
from mcpdeploy.modules.server_templates.service import ServerTemplateService
from tests.fakes import FakeSupabase, SleepRecorder


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def breakers():
    return CircuitBreakerRegistry({
        "railway": CircuitBreaker("railway", failure_threshold=5, recovery_timeout=60, is_failure=counts_as_failure),
        "supabase": CircuitBreaker("supabase", failure_threshold=3, recovery_timeout=30, is_failure=counts_as_failure),
    })


@pytest.fixture
def deployment_service(fake_db):
    return DeploymentService(fake_db)


@pytest.fixture
def template_service(fake_db):
    return ServerTemplateService(fake_db)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()
