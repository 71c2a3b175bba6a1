"""Experiment manager wiring launchers, monitors, stop handlers and the sweeper."""

from typing import List, Optional

from loguru import logger

from .launcher import (
    FAILURE_WORKLOAD_TYPE,
    TRAFFIC_WORKLOAD_TYPE,
    FailureInjectionLauncher,
    TrafficJobLauncher,
)
from .lifecycle import ExpirySweeper, StopHandler
from .models import (
    ExperimentKind,
    ExperimentRecord,
    ExperimentStatus,
    LaunchResult,
    NetworkDelayTarget,
    StopResult,
    TrafficTarget,
)
from .monitor import Clock, MonitorSupervisor, utcnow
from .registry import JobRegistry
from .runtime import ContainerRuntime
from .settings import (
    DEFAULT_MAX_VUS,
    FAILURE_STOP_GRACE_SECONDS,
    MONITOR_DRAIN_TIMEOUT,
    PLATFORM_NAME,
    TRAFFIC_STOP_GRACE_SECONDS,
)

EXPERIMENT_WORKLOAD_TYPES = (TRAFFIC_WORKLOAD_TYPE, FAILURE_WORKLOAD_TYPE)


class ExperimentManager:
    """Single owner of the registry and every component that touches it.

    Testability hooks:
    - ``runtime`` is injected; tests pass ``FakeRuntime`` instead of ``DockerRuntime``.
    - ``clock`` can be replaced to drive expiry deterministically.
    - launcher settings (images, network, scripts path) are forwarded as keyword overrides.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        registry: Optional[JobRegistry] = None,
        platform_name: str = PLATFORM_NAME,
        traffic_stop_grace: int = TRAFFIC_STOP_GRACE_SECONDS,
        failure_stop_grace: int = FAILURE_STOP_GRACE_SECONDS,
        drain_timeout: float = MONITOR_DRAIN_TIMEOUT,
        clock: Clock = utcnow,
        traffic_options: Optional[dict] = None,
        failure_options: Optional[dict] = None,
    ):
        self.runtime = runtime
        self.registry = registry if registry is not None else JobRegistry()
        self.platform_name = platform_name
        self.drain_timeout = drain_timeout
        self.supervisor = MonitorSupervisor(self.registry, runtime, clock=clock)
        self.traffic_launcher = TrafficJobLauncher(
            runtime,
            self.registry,
            self.supervisor,
            platform_name=platform_name,
            clock=clock,
            **(traffic_options or {}),
        )
        self.failure_launcher = FailureInjectionLauncher(
            runtime,
            self.registry,
            self.supervisor,
            platform_name=platform_name,
            clock=clock,
            **(failure_options or {}),
        )
        self.traffic_stopper = StopHandler(
            self.registry,
            runtime,
            workload_type=TRAFFIC_WORKLOAD_TYPE,
            grace_seconds=traffic_stop_grace,
            display_name="Traffic generation",
            clock=clock,
        )
        self.failure_stopper = StopHandler(
            self.registry,
            runtime,
            workload_type=FAILURE_WORKLOAD_TYPE,
            grace_seconds=failure_stop_grace,
            display_name="Failure simulation",
            clock=clock,
        )
        self.sweeper = ExpirySweeper(self.registry, clock=clock)

    # Traffic jobs

    async def start_traffic(
        self,
        target_url: str,
        rps: int,
        duration_seconds: int,
        max_vus: Optional[int] = None,
    ) -> LaunchResult:
        target = TrafficTarget(
            target_url=target_url,
            rps=rps,
            duration_seconds=duration_seconds,
            max_vus=max_vus or DEFAULT_MAX_VUS,
        )
        return await self.traffic_launcher.launch(target)

    async def stop_traffic(self, job_id: str) -> StopResult:
        return await self.traffic_stopper.stop(job_id)

    def list_traffic_jobs(self) -> List[ExperimentRecord]:
        return self._records_of(ExperimentKind.TRAFFIC_JOB)

    def get_traffic_job(self, job_id: str) -> Optional[ExperimentRecord]:
        record = self.registry.get(job_id)
        if record is None or record.kind is not ExperimentKind.TRAFFIC_JOB:
            return None
        return record

    # Failure injection

    async def apply_network_delay(
        self,
        container_name: str,
        delay_ms: int,
        duration_seconds: int,
        jitter_ms: int = 0,
    ) -> LaunchResult:
        target = NetworkDelayTarget(
            container_name=container_name,
            delay_ms=delay_ms,
            duration_seconds=duration_seconds,
            jitter_ms=jitter_ms,
        )
        return await self.failure_launcher.launch(target)

    async def stop_failure(self, failure_id: str) -> StopResult:
        return await self.failure_stopper.stop(failure_id)

    def list_active_failures(self) -> List[ExperimentRecord]:
        """Reconcile expired failures, then list every failure-injection record."""
        self.sweeper.sweep()
        return self._records_of(ExperimentKind.NETWORK_DELAY)

    async def list_available_containers(self) -> List[str]:
        """Names of running platform containers that can be targeted by failure injection."""
        containers = await self.runtime.list_containers(
            filters={"label": [f"platform={self.platform_name}"], "status": "running"},
        )
        names = []
        for container in containers:
            if container.labels.get("type") in EXPERIMENT_WORKLOAD_TYPES:
                continue
            names.extend(name.lstrip("/") for name in container.names)
        return names

    # Lifecycle

    def count_active(self) -> int:
        return sum(1 for record in self.registry.list_all() if record.status is ExperimentStatus.ACTIVE)

    async def wait_for(self, experiment_id: str, timeout: float = 5.0) -> Optional[ExperimentRecord]:
        return await self.supervisor.wait_for(experiment_id, timeout=timeout)

    async def shutdown(self) -> List[str]:
        abandoned = await self.supervisor.shutdown(self.drain_timeout)
        await self.runtime.close()
        logger.info(f"Experiment manager shut down ({len(abandoned)} monitor(s) abandoned)")
        return abandoned

    def _records_of(self, kind: ExperimentKind) -> List[ExperimentRecord]:
        # Most recent first, like the job listing in the API.
        records = [record for record in self.registry.list_all() if record.kind is kind]
        return sorted(records, key=lambda record: record.started_at, reverse=True)
