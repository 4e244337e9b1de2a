"""
Railway GraphQL client.

Every request carries a fresh X-Request-Id for log correlation and passes
through the shared Railway circuit breaker. Reads and variable upserts are
also retried with backoff; mutations that provision something (projects,
services, domains, deploys) are attempted once so a lost response can never
double-provision.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from mcpdeploy.core.errors import DeploymentTimeoutError, ErrorCode, DeploymentError, ProviderApiError
from mcpdeploy.core.resilience import CircuitBreaker, RetryConfig, with_retry
from mcpdeploy.modules.railway.schemas import (
    DeployConfig,
    RailwayDeployment,
    RailwayDomain,
    RailwayEnvironment,
    RailwayProject,
    RailwayService,
)

logger = logging.getLogger(__name__)

DEFAULT_RAILWAY_API_URL = "https://backboard.railway.app/graphql/v2"

PROJECT_FIELDS = "id name description createdAt updatedAt teamId isPublic"
SERVICE_FIELDS = "id name projectId templateServiceId createdAt updatedAt"


class RailwayClient:
    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        breaker: CircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
        base_url: str = DEFAULT_RAILWAY_API_URL,
        timeout: float = 30.0,
        wait_timeout: float = 300.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not api_key:
            raise DeploymentError("Railway API key is required", ErrorCode.MISSING_CONFIG, 500)
        self.api_key = api_key
        self.http = http_client
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()
        self.base_url = base_url
        self.timeout = timeout
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    async def _post(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request_id = str(uuid.uuid4())
        started = time.monotonic()
        logger.debug(f"Railway API request {request_id} initiated (query length {len(query)})")
        try:
            response = await self.http.post(
                self.base_url,
                json={"query": query, "variables": variables or {}},
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "X-Request-Id": request_id,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Railway API request {request_id} timed out: {e}")
            raise ProviderApiError(f"Railway API request timed out: {e}", 504) from e
        except httpx.HTTPError as e:
            logger.error(f"Railway API request {request_id} failed: {e}")
            raise ProviderApiError(f"Railway API request failed: {e}", 503) from e

        duration_ms = int((time.monotonic() - started) * 1000)
        if response.is_error:
            logger.error(
                f"Railway API request {request_id} HTTP {response.status_code} after {duration_ms}ms: {response.text[:500]}"
            )
            raise ProviderApiError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                response.status_code,
                response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderApiError("Railway API returned invalid JSON", 502, response.text) from e

        errors = payload.get("errors")
        if errors:
            message = errors[0].get("message") or "Unknown GraphQL error"
            status_code = 404 if "not found" in message.lower() else 400
            logger.error(f"Railway API request {request_id} GraphQL errors after {duration_ms}ms: {errors}")
            raise ProviderApiError(message, status_code, errors)

        data = payload.get("data")
        if not data:
            logger.error(f"Railway API request {request_id} returned no data")
            raise ProviderApiError("No data returned from Railway API", 500)

        logger.info(f"Railway API request {request_id} completed in {duration_ms}ms")
        return data

    async def _execute(self, query: str, variables: Optional[Dict[str, Any]] = None, retry: bool = False) -> Dict[str, Any]:
        async def attempt():
            return await self.breaker.call(self._post, query, variables)

        if retry:
            return await with_retry(attempt, self.retry_config, sleep=self._sleep)
        return await attempt()

    # Projects

    async def get_projects(self) -> List[RailwayProject]:
        query = f"query GetProjects {{ projects {{ edges {{ node {{ {PROJECT_FIELDS} }} }} }} }}"
        data = await self._execute(query, retry=True)
        return [RailwayProject.model_validate(edge["node"]) for edge in data["projects"]["edges"]]

    async def get_project(self, project_id: str) -> Optional[RailwayProject]:
        query = f"query GetProject($projectId: String!) {{ project(id: $projectId) {{ {PROJECT_FIELDS} }} }}"
        try:
            data = await self._execute(query, {"projectId": project_id}, retry=True)
        except ProviderApiError as e:
            if e.status_code == 404:
                logger.warning(f"Railway project {project_id} not found")
                return None
            raise
        project = data.get("project")
        return RailwayProject.model_validate(project) if project else None

    async def create_project(self, name: str, description: Optional[str] = None) -> RailwayProject:
        logger.info(f"Creating Railway project '{name}'")
        query = f"mutation CreateProject($input: ProjectCreateInput!) {{ projectCreate(input: $input) {{ {PROJECT_FIELDS} }} }}"
        data = await self._execute(query, {"input": {"name": name, "description": description}})
        project = RailwayProject.model_validate(data["projectCreate"])
        logger.info(f"Railway project created: {project.id} ({project.name})")
        return project

    # Services

    async def get_services(self, project_id: str) -> List[RailwayService]:
        query = (
            "query GetServices($projectId: String!) { project(id: $projectId) { services { edges { node "
            "{ id name templateServiceId createdAt updatedAt } } } } }"
        )
        data = await self._execute(query, {"projectId": project_id}, retry=True)
        return [
            RailwayService.model_validate({**edge["node"], "projectId": project_id})
            for edge in data["project"]["services"]["edges"]
        ]

    async def get_service(self, service_id: str) -> Optional[RailwayService]:
        query = f"query GetService($serviceId: String!) {{ service(id: $serviceId) {{ {SERVICE_FIELDS} }} }}"
        try:
            data = await self._execute(query, {"serviceId": service_id}, retry=True)
        except ProviderApiError as e:
            if e.status_code == 404:
                logger.warning(f"Railway service {service_id} not found")
                return None
            raise
        service = data.get("service")
        return RailwayService.model_validate(service) if service else None

    async def create_service(self, project_id: str, service_name: str, image: str = "node:18-alpine") -> RailwayService:
        """Service backed by a container image."""
        query = f"mutation CreateService($input: ServiceCreateInput!) {{ serviceCreate(input: $input) {{ {SERVICE_FIELDS} }} }}"
        data = await self._execute(query, {
            "input": {"projectId": project_id, "name": service_name, "source": {"image": image}}
        })
        return RailwayService.model_validate(data["serviceCreate"])

    async def create_service_from_github(self, project_id: str, environment_id: str, config: DeployConfig) -> RailwayService:
        """Create a service from a GitHub repo, then upsert its variables as one collection."""
        logger.info(
            f"Creating service '{config.service_name}' from {config.github_repo}@{config.branch} in project {project_id}"
        )
        query = "mutation ServiceCreate($input: ServiceCreateInput!) { serviceCreate(input: $input) { id name projectId } }"
        data = await self._execute(query, {
            "input": {
                "projectId": project_id,
                "name": config.service_name,
                "source": {"repo": config.github_repo},
                "branch": config.branch or "main",
            }
        })
        service = RailwayService.model_validate(data["serviceCreate"])
        if config.environment_variables:
            await self.upsert_variables(project_id, environment_id, service.id, config.environment_variables)
        return service

    async def upsert_variables(self, project_id: str, environment_id: str, service_id: str, variables: Dict[str, str]) -> bool:
        logger.info(f"Setting {len(variables)} environment variables on service {service_id}")
        query = "mutation VariableCollectionUpsert($input: VariableCollectionUpsertInput!) { variableCollectionUpsert(input: $input) }"
        data = await self._execute(query, {
            "input": {
                "projectId": project_id,
                "environmentId": environment_id,
                "serviceId": service_id,
                "variables": variables,
            }
        }, retry=True)
        return bool(data.get("variableCollectionUpsert"))

    # Environments

    async def get_environments(self, project_id: str) -> List[RailwayEnvironment]:
        query = (
            "query GetEnvironments($projectId: String!) { project(id: $projectId) { environments "
            "{ edges { node { id name isEphemeral } } } } }"
        )
        data = await self._execute(query, {"projectId": project_id}, retry=True)
        return [
            RailwayEnvironment.model_validate({**edge["node"], "projectId": project_id})
            for edge in data["project"]["environments"]["edges"]
        ]

    async def create_environment(self, project_id: str, name: str) -> RailwayEnvironment:
        query = (
            "mutation CreateEnvironment($input: EnvironmentCreateInput!) { environmentCreate(input: $input) "
            "{ id name projectId isEphemeral } }"
        )
        data = await self._execute(query, {"input": {"projectId": project_id, "name": name}})
        return RailwayEnvironment.model_validate(data["environmentCreate"])

    # Domains and deployments

    async def generate_service_domain(self, environment_id: str, service_id: str) -> RailwayDomain:
        query = (
            "mutation ServiceDomainCreate($environmentId: String!, $serviceId: String!) { serviceDomainCreate("
            "input: { environmentId: $environmentId, serviceId: $serviceId }) { id domain } }"
        )
        data = await self._execute(query, {"environmentId": environment_id, "serviceId": service_id})
        return RailwayDomain.model_validate(data["serviceDomainCreate"])

    async def trigger_deployment(self, service_id: str, environment_id: str) -> Optional[RailwayDeployment]:
        """Redeploy the service instance and return its newest deployment, if visible yet."""
        logger.info(f"Triggering deployment for service {service_id} in environment {environment_id}")
        query = (
            "mutation ServiceInstanceDeploy($environmentId: String!, $serviceId: String!) "
            "{ serviceInstanceDeploy(environmentId: $environmentId, serviceId: $serviceId) }"
        )
        await self._execute(query, {"environmentId": environment_id, "serviceId": service_id})
        deployments = await self.get_service_deployments(service_id, environment_id, limit=1)
        return deployments[0] if deployments else None

    async def get_deployment(self, deployment_id: str) -> Optional[RailwayDeployment]:
        query = "query GetDeployment($id: String!) { deployment(id: $id) { id status createdAt updatedAt staticUrl } }"
        try:
            data = await self._execute(query, {"id": deployment_id}, retry=True)
        except ProviderApiError as e:
            if e.status_code == 404:
                return None
            raise
        deployment = data.get("deployment")
        return RailwayDeployment.model_validate(deployment) if deployment else None

    async def get_service_deployments(self, service_id: str, environment_id: str, limit: int = 1) -> List[RailwayDeployment]:
        query = (
            "query GetServiceDeployments($input: DeploymentListInput!, $first: Int!) { deployments(input: $input, first: $first) "
            "{ edges { node { id status createdAt updatedAt staticUrl } } } }"
        )
        data = await self._execute(
            query,
            {"input": {"serviceId": service_id, "environmentId": environment_id}, "first": limit},
            retry=True,
        )
        return [
            RailwayDeployment.model_validate({**edge["node"], "serviceId": service_id, "environmentId": environment_id})
            for edge in data["deployments"]["edges"]
        ]

    async def get_deployment_logs(self, deployment_id: str, limit: int = 100) -> str:
        query = (
            "query DeploymentLogs($deploymentId: String!, $limit: Int) { "
            "buildLogs(deploymentId: $deploymentId, limit: $limit) { message } "
            "deploymentLogs(deploymentId: $deploymentId, limit: $limit) { message } }"
        )
        data = await self._execute(query, {"deploymentId": deployment_id, "limit": limit}, retry=True)
        sections = []
        for key in ("buildLogs", "deploymentLogs"):
            lines = [entry.get("message", "") for entry in (data.get(key) or [])]
            if lines:
                sections.append("\n".join(lines))
        return "\n---\n".join(sections)

    async def cancel_deployment(self, deployment_id: str) -> bool:
        logger.info(f"Cancelling Railway deployment {deployment_id}")
        query = "mutation CancelDeployment($deploymentId: String!) { deploymentCancel(id: $deploymentId) }"
        data = await self._execute(query, {"deploymentId": deployment_id})
        return bool(data.get("deploymentCancel"))

    async def wait_for_deployment(
        self,
        deployment_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> RailwayDeployment:
        """
        Poll until the deployment reaches SUCCESS, FAILED, CRASHED or REMOVED.

        Raises DeploymentTimeoutError when ``timeout`` seconds pass first. A
        terminal failure status is returned, not raised.
        """
        timeout = self.wait_timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        started = self._clock()
        logger.info(f"Waiting for Railway deployment {deployment_id} (timeout {timeout}s)")

        while self._clock() - started < timeout:
            deployment = await self.get_deployment(deployment_id)
            if deployment is None:
                raise ProviderApiError(f"Deployment {deployment_id} not found", 404)
            if deployment.is_terminal:
                logger.info(f"Railway deployment {deployment_id} finished with status {deployment.status}")
                return deployment
            logger.debug(f"Railway deployment {deployment_id} status {deployment.status}")
            await self._sleep(poll_interval)

        raise DeploymentTimeoutError(
            f"Deployment {deployment_id} did not finish within {timeout}s",
            {"deployment_id": deployment_id, "timeout_seconds": timeout},
        )
