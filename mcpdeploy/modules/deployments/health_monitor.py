"""
Health reconciliation for running deployments.

Each probe is one HTTP GET against the deployment's health_check_url. The
result is stored as a health_checks row and the deployment's health_status is
then re-derived from the newest row by checked_at. Probing runs either per
deployment (start_monitoring) or as a sweep over every running deployment
(reconcile_all / scheduler_loop).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from mcpdeploy.core.errors import DeploymentError, ErrorCode
from mcpdeploy.core.resilience import CircuitBreakerRegistry
from mcpdeploy.modules.adapters.base import build_health_check_url
from mcpdeploy.modules.deployments.schemas import (
    DeploymentResponse,
    DeploymentStatus,
    HealthCheckResponse,
    HealthStatus,
)
from mcpdeploy.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)


class HealthPolicy:
    """Maps an HTTP probe outcome to a HealthStatus."""

    def __init__(self, degraded_latency_ms: int = 2000):
        self.degraded_latency_ms = degraded_latency_ms

    def classify(self, status_code: Optional[int], response_time_ms: Optional[int]) -> HealthStatus:
        if status_code is None or status_code >= 500:
            return HealthStatus.UNHEALTHY
        if status_code >= 400:
            return HealthStatus.DEGRADED
        if response_time_ms is not None and response_time_ms > self.degraded_latency_ms:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY


@dataclass
class ProbeResult:
    status: HealthStatus
    status_code: Optional[int]
    response_time_ms: Optional[int]
    error_message: Optional[str]
    checked_at: datetime


class HealthMonitor:
    def __init__(
        self,
        deployment_service: DeploymentService,
        http_client: httpx.AsyncClient,
        breakers: CircuitBreakerRegistry,
        policy: Optional[HealthPolicy] = None,
        interval: float = 120,
        timeout: float = 20,
        max_failures: int = 3,
        enabled: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.deployments = deployment_service
        self.http = http_client
        self.breakers = breakers
        self.policy = policy or HealthPolicy()
        self.interval = interval
        self.timeout = timeout
        self.max_failures = max_failures
        self.enabled = enabled
        self._sleep = sleep
        self._clock = clock

        self._tasks: Dict[str, asyncio.Task] = {}
        self._failures: Dict[str, int] = {}
        self._last_checks: Dict[str, datetime] = {}

    @classmethod
    def from_settings(cls, settings, deployment_service, http_client, breakers) -> "HealthMonitor":
        return cls(
            deployment_service,
            http_client,
            breakers,
            policy=HealthPolicy(settings.health_check_degraded_latency_ms),
            interval=settings.health_check_interval,
            timeout=settings.health_check_timeout,
            max_failures=settings.health_check_max_failures,
        )

    async def _db(self, func, *args, **kwargs):
        return await self.breakers.supabase.call(func, *args, **kwargs)

    async def probe(self, url: str) -> ProbeResult:
        """GET ``url`` once and classify it. Network errors are results, not exceptions."""
        started = self._clock()
        checked_at = datetime.now(timezone.utc)
        try:
            response = await self.http.get(url, timeout=self.timeout)
        except httpx.TimeoutException:
            elapsed = int((self._clock() - started) * 1000)
            return ProbeResult(
                HealthStatus.UNHEALTHY, None, elapsed,
                f"Health check timed out after {self.timeout}s", checked_at,
            )
        except httpx.HTTPError as e:
            elapsed = int((self._clock() - started) * 1000)
            return ProbeResult(
                HealthStatus.UNHEALTHY, None, elapsed,
                f"Health check request failed: {str(e) or type(e).__name__}", checked_at,
            )

        elapsed = int((self._clock() - started) * 1000)
        status = self.policy.classify(response.status_code, elapsed)
        error_message = None
        if response.status_code >= 400:
            error_message = f"HTTP {response.status_code}"
        elif status == HealthStatus.DEGRADED:
            error_message = f"Slow response: {elapsed}ms"
        return ProbeResult(status, response.status_code, elapsed, error_message, checked_at)

    def _health_url(self, deployment: DeploymentResponse) -> str:
        if deployment.health_check_url:
            return deployment.health_check_url
        if deployment.service_url:
            return build_health_check_url(deployment.service_url, "/health")
        raise DeploymentError(
            f"Deployment {deployment.id} has no service URL to probe",
            ErrorCode.HEALTH_CHECK_FAILED,
            400,
        )

    async def perform_health_check(self, deployment_id: str) -> HealthCheckResponse:
        """Probe, store the check, re-derive health_status and apply the failure policy."""
        check, _ = await self._run_check(deployment_id)
        return check

    async def _run_check(self, deployment_id: str):
        deployment = await self._db(self.deployments.get_deployment_or_404, deployment_id)
        url = self._health_url(deployment)
        result = await self.probe(url)
        logger.info(
            f"Health check for deployment {deployment_id}: {result.status.value} "
            f"(status_code={result.status_code}, {result.response_time_ms}ms)"
        )

        check = await self._db(
            self.deployments.record_health_check,
            deployment_id,
            result.status,
            result.response_time_ms,
            result.status_code,
            result.error_message,
            result.checked_at,
        )
        await self._db(self.deployments.sync_health_status, deployment_id)
        self._last_checks[deployment_id] = result.checked_at
        stop = await self._apply_failure_policy(deployment, result)
        return check, stop

    async def _apply_failure_policy(self, deployment: DeploymentResponse, result: ProbeResult) -> bool:
        """Returns True when monitoring of this deployment should stop."""
        if result.status != HealthStatus.UNHEALTHY:
            self._failures[deployment.id] = 0
            if result.status == HealthStatus.HEALTHY and deployment.status == DeploymentStatus.FAILED.value:
                await self._db(
                    self.deployments.update_deployment_status,
                    deployment.id,
                    DeploymentStatus.RUNNING,
                    reason="Health check recovered",
                    explicit=True,
                    current=deployment,
                )
                logger.info(f"Deployment {deployment.id} recovered to running after a healthy probe")
            return False

        failures = self._failures.get(deployment.id, 0) + 1
        self._failures[deployment.id] = failures
        logger.warning(
            f"Deployment {deployment.id} failed health check ({failures}/{self.max_failures}): {result.error_message}"
        )
        if failures < self.max_failures or deployment.status != DeploymentStatus.RUNNING.value:
            return False

        await self._db(
            self.deployments.update_deployment_status,
            deployment.id,
            DeploymentStatus.FAILED,
            reason=f"Health check failed {failures} consecutive times: {result.error_message}",
            current=deployment,
        )
        self._failures.pop(deployment.id, None)
        logger.error(f"Deployment {deployment.id} marked failed after {failures} consecutive failed health checks")
        return True

    # Per-deployment monitoring

    async def start_monitoring(self, deployment_id: str) -> bool:
        if not self.enabled:
            logger.debug(f"Health monitoring disabled, not monitoring {deployment_id}")
            return False
        deployment = await self._db(self.deployments.get_deployment, deployment_id)
        if deployment is None or deployment.status != DeploymentStatus.RUNNING.value:
            logger.info(f"Not monitoring deployment {deployment_id}: not running")
            return False
        if not (deployment.health_check_url or deployment.service_url):
            logger.info(f"Not monitoring deployment {deployment_id}: no service URL")
            return False

        self.stop_monitoring(deployment_id)
        self._failures[deployment_id] = 0
        self._tasks[deployment_id] = asyncio.create_task(self._monitor_loop(deployment_id))
        logger.info(f"Started health monitoring for deployment {deployment_id} every {self.interval}s")
        return True

    async def _monitor_loop(self, deployment_id: str):
        while True:
            stop = False
            try:
                _, stop = await self._run_check(deployment_id)
            except DeploymentError as e:
                logger.error(f"Health monitoring error for deployment {deployment_id}: {e.message}")
                stop = e.status_code == 404
            except Exception as e:
                logger.error(f"Health monitoring error for deployment {deployment_id}: {str(e)}")
            if stop:
                break
            await self._sleep(self.interval)

        if self._tasks.get(deployment_id) is asyncio.current_task():
            self._tasks.pop(deployment_id, None)
        logger.info(f"Stopped health monitoring for deployment {deployment_id}")

    def stop_monitoring(self, deployment_id: str) -> bool:
        task = self._tasks.pop(deployment_id, None)
        self._failures.pop(deployment_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def is_monitoring(self, deployment_id: str) -> bool:
        task = self._tasks.get(deployment_id)
        return task is not None and not task.done()

    def get_monitoring_status(self) -> List[Dict[str, Any]]:
        return [
            {
                "deployment_id": deployment_id,
                "last_check": self._last_checks.get(deployment_id),
                "consecutive_failures": self._failures.get(deployment_id, 0),
            }
            for deployment_id in self._tasks
        ]

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        self._tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Health monitor shut down ({len(tasks)} monitors cancelled)")

    # Sweep over all running deployments

    async def reconcile_all(self) -> Dict[str, int]:
        """One pass over every running deployment. One failing probe does not stop the sweep."""
        deployments = await self._db(self.deployments.list_running_deployments)
        summary = {"checked": 0, "healthy": 0, "degraded": 0, "unhealthy": 0, "errors": 0}
        for deployment in deployments:
            try:
                check = await self.perform_health_check(deployment.id)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Error reconciling health for deployment {deployment.id}: {str(e)}")
                continue
            summary["checked"] += 1
            if check.status.value in summary:
                summary[check.status.value] += 1
        logger.info(f"Health reconciliation finished: {summary}")
        return summary

    async def scheduler_loop(self):
        """Background task that periodically reconciles running deployments"""
        while True:
            try:
                await self.reconcile_all()
            except Exception as e:
                logger.error(f"Error in health scheduler loop: {str(e)}")

            await self._sleep(self.interval)
