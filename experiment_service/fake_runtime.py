"""An in-memory container runtime used for fast orchestration tests.

It keeps containers as plain objects, lets tests decide when and how each one
exits, and records every call so tests can assert which operations were made.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from .exceptions import ContainerNotFoundError, ImageNotFoundError, RuntimeClientError
from .models import ContainerSpec, ContainerSummary
from .runtime import ContainerRuntime

STOP_EXIT_CODE = 137


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    state: str = "created"
    exit_code: Optional[int] = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)

    def summary(self) -> ContainerSummary:
        return ContainerSummary(
            id=self.id,
            names=[f"/{self.spec.name}"],
            labels=dict(self.spec.labels),
            state=self.state,
        )


class FakeRuntime(ContainerRuntime):
    """Deterministic stand-in for a container engine."""

    def __init__(self, images: Iterable[str] = (), *, pull_events: int = 2):
        self.images = set(images)
        self.containers: Dict[str, FakeContainer] = {}
        self.calls: List[Tuple[str, Any]] = []
        self._pull_events = pull_events
        self._failures: Dict[str, Exception] = {}

    # Test controls

    def fail_next(self, operation: str, error: Optional[Exception] = None) -> None:
        """Make the next call to ``operation`` raise ``error``."""
        self._failures[operation] = error or RuntimeClientError(operation, "injected failure")

    def add_container(self, name: str, labels: Optional[Dict[str, str]] = None, state: str = "running") -> str:
        """Register a container that was not created through the orchestrator."""
        container = FakeContainer(
            id=uuid.uuid4().hex,
            spec=ContainerSpec(name=name, image="external", labels=dict(labels or {})),
            state=state,
        )
        self.containers[container.id] = container
        return container.id

    def finish(self, name_or_id: str, exit_code: int = 0) -> None:
        """Simulate the workload inside a running container exiting."""
        container = self._resolve(name_or_id)
        if container.state != "running":
            return
        container.state = "exited"
        container.exit_code = exit_code
        container.exited.set()

    def container_by_name(self, name: str) -> Optional[FakeContainer]:
        for container in self.containers.values():
            if container.spec.name == name:
                return container
        return None

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    # ContainerRuntime

    async def inspect_image(self, image: str) -> None:
        self._record("inspect_image", image)
        if image not in self.images:
            raise ImageNotFoundError(image)

    async def pull_image(self, image: str) -> AsyncIterator[Dict[str, Any]]:
        self._record("pull_image", image)
        for index in range(self._pull_events):
            await asyncio.sleep(0)
            yield {"status": f"Downloading layer {index + 1}/{self._pull_events}", "id": image}
        self.images.add(image)
        yield {"status": f"Downloaded newer image for {image}"}

    async def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec)
        if spec.image not in self.images:
            raise RuntimeClientError("create_container", f"No such image: {spec.image}")
        if self.container_by_name(spec.name) is not None:
            raise RuntimeClientError("create_container", f"Conflict. The container name /{spec.name} is already in use")
        container = FakeContainer(id=uuid.uuid4().hex, spec=spec)
        self.containers[container.id] = container
        return container.id

    async def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        container = self._get(container_id, "start_container")
        container.state = "running"

    async def wait_for_exit(self, container_id: str) -> int:
        self._record("wait_for_exit", container_id)
        container = self._get(container_id, "wait_for_exit")
        await container.exited.wait()
        return container.exit_code if container.exit_code is not None else 1

    async def stop_container(self, container_id: str, grace_seconds: int) -> None:
        self._record("stop_container", (container_id, grace_seconds))
        container = self._get(container_id, "stop_container")
        await asyncio.sleep(0)
        self.finish(container_id, STOP_EXIT_CODE)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        self._record("remove_container", (container_id, force))
        container = self._get(container_id, "remove_container")
        if container.state == "running" and not force:
            raise RuntimeClientError(
                "remove_container",
                f"You cannot remove a running container {container_id}. Stop the container before attempting removal or force remove",
            )
        if container.state == "running":
            self.finish(container_id, STOP_EXIT_CODE)
        del self.containers[container_id]

    async def list_containers(
        self,
        *,
        all: bool = False,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[ContainerSummary]:
        self._record("list_containers", filters)
        filters = filters or {}
        matches = []
        for container in self.containers.values():
            if not all and container.state != "running":
                continue
            if not _matches(container, filters):
                continue
            matches.append(container.summary())
        return matches

    def _record(self, operation: str, argument: Any) -> None:
        self.calls.append((operation, argument))
        failure = self._failures.pop(operation, None)
        if failure is not None:
            raise failure

    def _get(self, container_id: str, operation: str) -> FakeContainer:
        container = self.containers.get(container_id)
        if container is None:
            raise ContainerNotFoundError(operation, container_id)
        return container

    def _resolve(self, name_or_id: str) -> FakeContainer:
        container = self.containers.get(name_or_id) or self.container_by_name(name_or_id)
        if container is None:
            raise ContainerNotFoundError("finish", name_or_id)
        return container


def _matches(container: FakeContainer, filters: Dict[str, Any]) -> bool:
    # Mirrors Docker's list filters: name is a regex search, labels are "key" or "key=value".
    name = filters.get("name")
    if name and not re.search(name, container.spec.name):
        return False
    status = filters.get("status")
    if status and container.state != status:
        return False
    labels = filters.get("label") or []
    if isinstance(labels, str):
        labels = [labels]
    for label in labels:
        key, _, value = label.partition("=")
        if key not in container.spec.labels:
            return False
        if value and container.spec.labels[key] != value:
            return False
    return True
