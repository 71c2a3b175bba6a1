"""Capability interface for container runtimes."""

from typing import Any, AsyncIterator, Dict, List, Optional

from .models import ContainerSpec, ContainerSummary


class ContainerRuntime:
    """Minimal interface the orchestration engine needs from a container engine.

    Implementations raise ``RuntimeClientError`` subclasses from
    ``experiment_service.exceptions``; engine-specific exceptions never leak.
    """

    async def inspect_image(self, image: str) -> None:
        """Return when the image exists locally, raise ``ImageNotFoundError`` otherwise."""
        raise NotImplementedError

    def pull_image(self, image: str) -> AsyncIterator[Dict[str, Any]]:
        """Pull an image, yielding the engine's progress events."""
        raise NotImplementedError

    async def create_container(self, spec: ContainerSpec) -> str:
        raise NotImplementedError

    async def start_container(self, container_id: str) -> None:
        raise NotImplementedError

    async def wait_for_exit(self, container_id: str) -> int:
        """Suspend until the container exits and return its exit code."""
        raise NotImplementedError

    async def stop_container(self, container_id: str, grace_seconds: int) -> None:
        raise NotImplementedError

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        raise NotImplementedError

    async def list_containers(
        self,
        *,
        all: bool = False,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[ContainerSummary]:
        raise NotImplementedError

    async def close(self) -> None:
        """Release client resources; optional for implementations."""
        return None
