"""Stop handling and expiry reconciliation for experiment records."""

from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from loguru import logger

from .exceptions import ContainerNotFoundError, RuntimeClientError
from .models import ContainerSummary, ErrorKind, ExperimentStatus, OutcomeStatus, StopResult
from .monitor import Clock, utcnow
from .registry import JobRegistry
from .runtime import ContainerRuntime


class StopHandler:
    """Stop the container behind an experiment id and finalize its record.

    Stop is idempotent: once the container is gone the id no longer resolves
    and the handler answers ``not_found``.
    """

    def __init__(
        self,
        registry: JobRegistry,
        runtime: ContainerRuntime,
        *,
        workload_type: str,
        grace_seconds: int,
        display_name: str = "Experiment",
        clock: Clock = utcnow,
    ):
        self.registry = registry
        self.runtime = runtime
        self.workload_type = workload_type
        self.grace_seconds = grace_seconds
        self.display_name = display_name
        self._clock = clock

    async def stop(self, experiment_id: str) -> StopResult:
        try:
            container = await self._find_container(experiment_id)
        except RuntimeClientError as exc:
            logger.error(f"Failed to look up {experiment_id}: {exc}")
            return self._error(experiment_id, exc)

        if container is None:
            return StopResult(
                experiment_id=experiment_id,
                status=OutcomeStatus.NOT_FOUND,
                message=f"{self.display_name} not found",
            )

        # A monitor that sees the exit caused by this stop records "stopped", not "failed".
        self.registry.update_if_status(
            experiment_id,
            ExperimentStatus.ACTIVE,
            lambda record: replace(record, stop_requested=True),
        )
        try:
            await self._terminate(container)
        except RuntimeClientError as exc:
            self.registry.update_if_status(
                experiment_id,
                ExperimentStatus.ACTIVE,
                lambda record: replace(record, stop_requested=False),
            )
            logger.error(f"Failed to stop {experiment_id}: {exc}")
            return self._error(experiment_id, exc)

        finished_at = self._clock()
        finalized = self.registry.update_if_status(
            experiment_id,
            ExperimentStatus.ACTIVE,
            lambda record: replace(record, status=ExperimentStatus.STOPPED, finished_at=finished_at),
        )
        if not finalized:
            logger.debug(f"{experiment_id} was already finalized before stop completed")
        logger.info(f"Stopped {self.display_name.lower()} {experiment_id}")
        return StopResult(
            experiment_id=experiment_id,
            status=OutcomeStatus.STOPPED,
            message=f"{self.display_name} stopped",
        )

    async def _find_container(self, experiment_id: str) -> Optional[ContainerSummary]:
        containers = await self.runtime.list_containers(
            all=True,
            filters={"name": experiment_id, "label": [f"type={self.workload_type}"]},
        )
        # The engine's name filter is a substring match; only an exact name counts.
        return next((c for c in containers if c.has_name(experiment_id)), None)

    async def _terminate(self, container: ContainerSummary) -> None:
        try:
            await self.runtime.stop_container(container.id, self.grace_seconds)
        except ContainerNotFoundError:
            logger.debug(f"Container {container.id} vanished before stop")
            return
        try:
            await self.runtime.remove_container(container.id, force=True)
        except ContainerNotFoundError:
            logger.debug(f"Container {container.id} was already removed")

    def _error(self, experiment_id: str, exc: RuntimeClientError) -> StopResult:
        return StopResult(
            experiment_id=experiment_id,
            status=OutcomeStatus.ERROR,
            message=f"Failed to stop {self.display_name.lower()}",
            error_kind=ErrorKind.STOP_FAILED,
            detail=str(exc),
        )


class ExpirySweeper:
    """Mark expired records completed without asking the runtime.

    Only records that declare ``expires_at`` are swept; the time-boxed workload
    is assumed to have terminated on its own once the TTL has passed.
    """

    def __init__(self, registry: JobRegistry, *, clock: Clock = utcnow):
        self.registry = registry
        self._clock = clock

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self._clock()
        swept = []
        for record in self.registry.list_all():
            if record.status is not ExperimentStatus.ACTIVE or not record.is_expired(now):
                continue
            completed = self.registry.update_if_status(
                record.id,
                ExperimentStatus.ACTIVE,
                lambda current: replace(current, status=ExperimentStatus.COMPLETED, finished_at=now),
            )
            if completed:
                swept.append(record.id)
        if swept:
            logger.info(f"Marked {len(swept)} expired experiment(s) completed: {', '.join(swept)}")
        return swept
