"""Launch orchestrators for traffic jobs and failure injections."""

import uuid
from datetime import datetime
from typing import Dict, Generic, List, Optional, TypeVar

from loguru import logger

from .exceptions import ImageNotFoundError, RuntimeClientError, RuntimeUnavailableError
from .models import (
    ContainerSpec,
    ErrorKind,
    ExperimentKind,
    ExperimentRecord,
    LaunchResult,
    NetworkDelayTarget,
    OutcomeStatus,
    TrafficTarget,
)
from .monitor import Clock, MonitorSupervisor, utcnow
from .registry import JobRegistry
from .runtime import ContainerRuntime
from .settings import (
    DOCKER_NETWORK_NAME,
    IPROUTE2_IMAGE,
    K6_IMAGE,
    K6_PROMETHEUS_RW_SERVER_URL,
    K6_SCRIPTS_PATH,
    PLATFORM_NAME,
    PUMBA_IMAGE,
)

TRAFFIC_WORKLOAD_TYPE = "traffic-job"
FAILURE_WORKLOAD_TYPE = "pumba-failure"
DOCKER_SOCKET = "/var/run/docker.sock"

LAUNCH_FAILURE_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.IMAGE_UNAVAILABLE: "Workload image could not be inspected or pulled",
    ErrorKind.CONTAINER_CREATE_FAILED: "Workload container could not be created",
    ErrorKind.CONTAINER_START_FAILED: "Workload container could not be started",
    ErrorKind.RUNTIME_UNAVAILABLE: "Container runtime is unavailable",
}

TargetT = TypeVar("TargetT", TrafficTarget, NetworkDelayTarget)


class ExperimentLauncher(Generic[TargetT]):
    """Shared launch sequence: ensure images, create, start, register, monitor.

    The call returns once the container has started. Nothing is written to the
    registry unless the container is running.
    """

    kind: ExperimentKind
    id_prefix: str
    workload_type: str

    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: JobRegistry,
        supervisor: MonitorSupervisor,
        *,
        platform_name: str = PLATFORM_NAME,
        clock: Clock = utcnow,
    ):
        self.runtime = runtime
        self.registry = registry
        self.supervisor = supervisor
        self.platform_name = platform_name
        self._clock = clock

    def new_id(self) -> str:
        return f"{self.id_prefix}-{uuid.uuid4().hex}"

    def labels(self) -> Dict[str, str]:
        return {"platform": self.platform_name, "type": self.workload_type}

    def required_images(self, target: TargetT) -> List[str]:
        raise NotImplementedError

    def build_spec(self, experiment_id: str, target: TargetT) -> ContainerSpec:
        raise NotImplementedError

    def build_record(
        self, experiment_id: str, target: TargetT, container_id: str, started_at: datetime
    ) -> ExperimentRecord:
        raise NotImplementedError

    def started_result(self, record: ExperimentRecord) -> LaunchResult:
        raise NotImplementedError

    async def ensure_image(self, image: str) -> None:
        try:
            await self.runtime.inspect_image(image)
            return
        except ImageNotFoundError:
            logger.info(f"Pulling image {image}...")
        async for event in self.runtime.pull_image(image):
            status = event.get("status")
            if status:
                logger.debug(f"Pull: {status}")
        logger.info(f"Image {image} pulled successfully")

    async def launch(self, target: TargetT) -> LaunchResult:
        experiment_id = self.new_id()
        phase = ErrorKind.IMAGE_UNAVAILABLE
        container_id = None
        try:
            for image in self.required_images(target):
                await self.ensure_image(image)
            spec = self.build_spec(experiment_id, target)
            phase = ErrorKind.CONTAINER_CREATE_FAILED
            container_id = await self.runtime.create_container(spec)
            phase = ErrorKind.CONTAINER_START_FAILED
            await self.runtime.start_container(container_id)
        except RuntimeClientError as exc:
            error_kind = ErrorKind.RUNTIME_UNAVAILABLE if isinstance(exc, RuntimeUnavailableError) else phase
            return await self._failed(experiment_id, container_id, error_kind, exc)
        except Exception as exc:
            logger.opt(exception=exc).debug(f"Unexpected error while launching {experiment_id}")
            return await self._failed(experiment_id, container_id, phase, exc)

        record = self.build_record(experiment_id, target, container_id, self._clock())
        self.registry.upsert(record)
        self.supervisor.spawn(record)
        return self.started_result(record)

    async def _failed(
        self,
        experiment_id: str,
        container_id: Optional[str],
        error_kind: ErrorKind,
        exc: Exception,
    ) -> LaunchResult:
        if container_id:
            await self._discard(experiment_id, container_id)
        logger.error(f"Failed to launch {self.kind.value} {experiment_id} ({error_kind.value}): {exc}")
        return LaunchResult(
            experiment_id=experiment_id,
            status=OutcomeStatus.FAILED,
            message=LAUNCH_FAILURE_MESSAGES[error_kind],
            error_kind=error_kind,
            detail=f"{type(exc).__name__}: {exc}",
        )

    async def _discard(self, experiment_id: str, container_id: str) -> None:
        try:
            await self.runtime.remove_container(container_id, force=True)
        except Exception as exc:
            logger.warning(f"Could not remove container of failed launch {experiment_id}: {exc}")


class TrafficJobLauncher(ExperimentLauncher[TrafficTarget]):
    """Run k6 load generators against a target URL."""

    kind = ExperimentKind.TRAFFIC_JOB
    id_prefix = "k6-job"
    workload_type = TRAFFIC_WORKLOAD_TYPE

    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: JobRegistry,
        supervisor: MonitorSupervisor,
        *,
        image: str = K6_IMAGE,
        scripts_path: str = K6_SCRIPTS_PATH,
        network_name: str = DOCKER_NETWORK_NAME,
        prometheus_url: str = K6_PROMETHEUS_RW_SERVER_URL,
        **kwargs,
    ):
        super().__init__(runtime, registry, supervisor, **kwargs)
        self.image = image
        self.scripts_path = scripts_path
        self.network_name = network_name
        self.prometheus_url = prometheus_url

    def required_images(self, target: TrafficTarget) -> List[str]:
        return [self.image]

    def build_spec(self, experiment_id: str, target: TrafficTarget) -> ContainerSpec:
        labels = self.labels()
        labels["generator"] = "k6"
        return ContainerSpec(
            name=experiment_id,
            image=self.image,
            command=["run", "-o", "experimental-prometheus-rw", "/scripts/load-test.js"],
            environment={
                "TARGET_URL": target.target_url,
                "RPS": str(target.rps),
                "DURATION": f"{target.duration_seconds}s",
                "VUS": str(target.vus),
                "MAX_VUS": str(target.max_vus),
                "K6_PROMETHEUS_RW_SERVER_URL": self.prometheus_url,
            },
            binds=[f"{self.scripts_path}:/scripts:ro"],
            network_mode=self.network_name,
            labels=labels,
        )

    def build_record(
        self, experiment_id: str, target: TrafficTarget, container_id: str, started_at: datetime
    ) -> ExperimentRecord:
        return ExperimentRecord.for_traffic_job(
            experiment_id, target, container_id=container_id, started_at=started_at
        )

    def started_result(self, record: ExperimentRecord) -> LaunchResult:
        target = record.target
        logger.info(
            f"Started traffic generation job {record.id} targeting {target.target_url} "
            f"at {target.rps} RPS for {target.duration_seconds}s"
        )
        return LaunchResult(
            experiment_id=record.id,
            status=OutcomeStatus.STARTED,
            message=f"Traffic generation started with {target.rps} RPS for {target.duration_seconds}s",
        )


class FailureInjectionLauncher(ExperimentLauncher[NetworkDelayTarget]):
    """Inject network delay into matching containers with Pumba."""

    kind = ExperimentKind.NETWORK_DELAY
    id_prefix = "pumba-delay"
    workload_type = FAILURE_WORKLOAD_TYPE

    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: JobRegistry,
        supervisor: MonitorSupervisor,
        *,
        image: str = PUMBA_IMAGE,
        tc_image: str = IPROUTE2_IMAGE,
        docker_socket: str = DOCKER_SOCKET,
        **kwargs,
    ):
        super().__init__(runtime, registry, supervisor, **kwargs)
        self.image = image
        self.tc_image = tc_image
        self.docker_socket = docker_socket

    def required_images(self, target: NetworkDelayTarget) -> List[str]:
        # Pumba runs tc from a helper image inside the target's network namespace.
        return [self.image, self.tc_image]

    def build_spec(self, experiment_id: str, target: NetworkDelayTarget) -> ContainerSpec:
        command = [
            "--log-level", "info",
            "netem",
            "--duration", f"{target.duration_seconds}s",
            "--tc-image", self.tc_image,
            "delay",
            "--time", str(target.delay_ms),
        ]
        if target.jitter_ms > 0:
            command.extend(["--jitter", str(target.jitter_ms)])
        command.append(target.container_pattern)

        labels = self.labels()
        labels["failure-type"] = ExperimentKind.NETWORK_DELAY.value
        return ContainerSpec(
            name=experiment_id,
            image=self.image,
            command=command,
            environment={
                "DELAY_MS": str(target.delay_ms),
                "JITTER_MS": str(target.jitter_ms),
                "DURATION": f"{target.duration_seconds}s",
                "TARGET_PATTERN": target.container_pattern,
            },
            binds=[f"{self.docker_socket}:{DOCKER_SOCKET}:ro"],
            network_mode="host",
            labels=labels,
            privileged=True,
        )

    def build_record(
        self, experiment_id: str, target: NetworkDelayTarget, container_id: str, started_at: datetime
    ) -> ExperimentRecord:
        return ExperimentRecord.for_network_delay(
            experiment_id, target, container_id=container_id, started_at=started_at
        )

    def started_result(self, record: ExperimentRecord) -> LaunchResult:
        target = record.target
        logger.info(
            f"Applied network delay of {target.delay_ms}ms (jitter: {target.jitter_ms}ms) "
            f"to container {target.container_name} for {target.duration_seconds}s"
        )
        return LaunchResult(
            experiment_id=record.id,
            status=OutcomeStatus.ACTIVE,
            message=(
                f"Network delay of {target.delay_ms}ms applied to {target.container_name} "
                f"for {target.duration_seconds}s"
            ),
        )
