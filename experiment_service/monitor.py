"""Completion monitors for launched experiment containers."""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from loguru import logger

from .exceptions import ContainerNotFoundError, MonitorAlreadyRunningError, RuntimeClientError
from .models import ErrorKind, ExperimentRecord, ExperimentStatus
from .registry import JobRegistry
from .runtime import ContainerRuntime
from .settings import MONITOR_DRAIN_TIMEOUT

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def finalize_on_exit(record: ExperimentRecord, exit_code: int, finished_at: datetime) -> ExperimentRecord:
    """Terminal value for a record whose container exited with ``exit_code``."""
    if record.stop_requested:
        return replace(record, status=ExperimentStatus.STOPPED, finished_at=finished_at)
    if exit_code == 0:
        return replace(record, status=ExperimentStatus.COMPLETED, finished_at=finished_at)
    return replace(
        record,
        status=ExperimentStatus.FAILED,
        finished_at=finished_at,
        error=f"Exit code: {exit_code}",
        error_kind=ErrorKind.NONZERO_EXIT,
    )


class MonitorSupervisor:
    """Owns one completion monitor task per launched container.

    Monitors are not cancelled by Stop; they end when the runtime reports the
    container's exit. The supervisor keeps every in-flight task so shutdown can
    drain them and report which experiments were abandoned.
    """

    def __init__(self, registry: JobRegistry, runtime: ContainerRuntime, *, clock: Clock = utcnow):
        self.registry = registry
        self.runtime = runtime
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    def spawn(self, record: ExperimentRecord) -> asyncio.Task:
        if not record.container_id:
            raise ValueError(f"Experiment {record.id} has no container to monitor")
        if record.id in self._tasks:
            raise MonitorAlreadyRunningError(record.id)
        task = asyncio.create_task(
            self._monitor(record.id, record.container_id),
            name=f"monitor-{record.id}",
        )
        self._tasks[record.id] = task
        task.add_done_callback(lambda t, experiment_id=record.id: self._on_done(experiment_id, t))
        return task

    def in_flight(self) -> List[str]:
        return [experiment_id for experiment_id, task in self._tasks.items() if not task.done()]

    async def wait_for(self, experiment_id: str, timeout: float = 5.0) -> Optional[ExperimentRecord]:
        """Await the monitor of an experiment (or timeout) and return its current record."""
        task = self._tasks.get(experiment_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        return self.registry.get(experiment_id)

    async def drain(self, timeout: float = MONITOR_DRAIN_TIMEOUT) -> List[str]:
        """Wait up to ``timeout`` for all monitors; return the ids still running."""
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        return self.in_flight()

    async def shutdown(self, timeout: float = MONITOR_DRAIN_TIMEOUT) -> List[str]:
        """Drain monitors, then cancel the rest. Returns the abandoned experiment ids."""
        remaining = await self.drain(timeout)
        if not remaining:
            return []
        logger.warning(
            f"Abandoning {len(remaining)} completion monitor(s); containers keep running unmonitored: "
            f"{', '.join(remaining)}"
        )
        tasks = [self._tasks[experiment_id] for experiment_id in remaining if experiment_id in self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        return remaining

    async def _monitor(self, experiment_id: str, container_id: str) -> None:
        try:
            exit_code = await self.runtime.wait_for_exit(container_id)
        except RuntimeClientError as exc:
            logger.warning(f"Error monitoring experiment {experiment_id}: {exc}")
            return

        finished_at = self._clock()
        finalized = self.registry.update_if_status(
            experiment_id,
            ExperimentStatus.ACTIVE,
            lambda record: finalize_on_exit(record, exit_code, finished_at),
        )
        current = self.registry.get(experiment_id)
        if finalized and current is not None:
            logger.info(f"Experiment {experiment_id} finished with status {current.status.value} (exit code {exit_code})")
        else:
            logger.debug(f"Experiment {experiment_id} exited with code {exit_code}; record was already finalized")

        try:
            await self.runtime.remove_container(container_id)
        except ContainerNotFoundError:
            logger.debug(f"Container for experiment {experiment_id} was already removed")
        except RuntimeClientError as exc:
            logger.warning(f"Failed to remove container for experiment {experiment_id}: {exc}")

    def _on_done(self, experiment_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(experiment_id) is task:
            del self._tasks[experiment_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Completion monitor for experiment {experiment_id} crashed")
