"""Container runtime backed by the Docker Engine API."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from loguru import logger

from .exceptions import (
    ContainerNotFoundError,
    ContainerRemovalInProgressError,
    ImageNotFoundError,
    RuntimeClientError,
    RuntimeUnavailableError,
)
from .models import ContainerSpec, ContainerSummary
from .runtime import ContainerRuntime
from .settings import DOCKER_HOST, RUNTIME_WAIT_POLL_SECONDS, RUNTIME_WAIT_THREADS

_END_OF_STREAM = object()


class DockerRuntime(ContainerRuntime):
    """Drive the Docker daemon through docker-py's low-level API client.

    docker-py is blocking, so every call runs in a worker thread. Waiting for
    a container to exit can take as long as the workload itself; those calls
    get their own executor so they never starve short calls on the default one.
    """

    def __init__(
        self,
        base_url: str = DOCKER_HOST,
        *,
        wait_threads: int = RUNTIME_WAIT_THREADS,
        wait_poll_seconds: float = RUNTIME_WAIT_POLL_SECONDS,
        client: Optional[docker.DockerClient] = None,
    ):
        self.base_url = base_url
        self.wait_poll_seconds = wait_poll_seconds
        self._client = client
        self._closed = threading.Event()
        self._wait_executor = ThreadPoolExecutor(
            max_workers=wait_threads,
            thread_name_prefix="docker-wait",
        )

    @property
    def client(self) -> docker.DockerClient:
        # Connect lazily: docker-py negotiates the API version on construction.
        if self._client is None:
            self._client = docker.DockerClient(base_url=self.base_url)
        return self._client

    async def inspect_image(self, image: str) -> None:
        await self._run("inspect_image", lambda api: api.inspect_image(image), image=image)
        logger.debug(f"Image {image} already exists")

    async def pull_image(self, image: str) -> AsyncIterator[Dict[str, Any]]:
        stream = await self._run(
            "pull_image",
            lambda api: api.pull(image, stream=True, decode=True),
            image=image,
        )
        while True:
            event = await self._run("pull_image", lambda api: next(stream, _END_OF_STREAM), image=image)
            if event is _END_OF_STREAM:
                break
            if isinstance(event, dict) and event.get("error"):
                raise RuntimeClientError("pull_image", f"{image}: {event['error']}")
            yield event

    async def create_container(self, spec: ContainerSpec) -> str:
        def _create(api: docker.APIClient) -> Dict[str, Any]:
            host_config = api.create_host_config(
                binds=spec.binds or None,
                network_mode=spec.network_mode,
                privileged=spec.privileged,
                auto_remove=False,
            )
            return api.create_container(
                image=spec.image,
                name=spec.name,
                command=spec.command or None,
                environment=spec.environment or None,
                labels=spec.labels or None,
                host_config=host_config,
            )

        response = await self._run("create_container", _create, image=spec.image)
        container_id = response["Id"]
        for warning in response.get("Warnings") or []:
            logger.warning(f"Docker warning while creating {spec.name}: {warning}")
        return container_id

    async def start_container(self, container_id: str) -> None:
        await self._run("start_container", lambda api: api.start(container_id), container_id=container_id)

    async def wait_for_exit(self, container_id: str) -> int:
        def _wait(api: docker.APIClient) -> Dict[str, Any]:
            # Bounded requests, so a closed runtime releases its wait threads.
            while not self._closed.is_set():
                try:
                    return api.wait(container_id, timeout=self.wait_poll_seconds)
                except requests.exceptions.RequestException as exc:
                    if not _is_read_timeout(exc):
                        raise
            raise RuntimeClientError("wait_for_exit", f"runtime closed while waiting for {container_id}")

        response = await self._run(
            "wait_for_exit",
            _wait,
            container_id=container_id,
            executor=self._wait_executor,
        )
        return int(response.get("StatusCode", 1))

    async def stop_container(self, container_id: str, grace_seconds: int) -> None:
        await self._run(
            "stop_container",
            lambda api: api.stop(container_id, timeout=grace_seconds),
            container_id=container_id,
        )

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await self._run(
            "remove_container",
            lambda api: api.remove_container(container_id, force=force),
            container_id=container_id,
        )

    async def list_containers(
        self,
        *,
        all: bool = False,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[ContainerSummary]:
        entries = await self._run("list_containers", lambda api: api.containers(all=all, filters=filters))
        return [
            ContainerSummary(
                id=entry["Id"],
                names=list(entry.get("Names") or []),
                labels=dict(entry.get("Labels") or {}),
                state=entry.get("State", ""),
            )
            for entry in entries
        ]

    async def close(self) -> None:
        self._closed.set()
        self._wait_executor.shutdown(wait=False, cancel_futures=True)
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None

    async def _run(
        self,
        operation: str,
        call: Callable[[docker.APIClient], Any],
        *,
        image: Optional[str] = None,
        container_id: Optional[str] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> Any:
        def _invoke() -> Any:
            try:
                return call(self.client.api)
            except (DockerException, requests.exceptions.RequestException) as exc:
                raise _translate_error(operation, exc, image=image, container_id=container_id) from exc

        if executor is None:
            return await asyncio.to_thread(_invoke)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, _invoke)


def _is_read_timeout(exc: requests.exceptions.RequestException) -> bool:
    # Over the unix socket adapter a read timeout surfaces as a ConnectionError.
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return True
    return isinstance(exc, requests.exceptions.ConnectionError) and "timed out" in str(exc).lower()


def _is_removal_in_progress(exc: APIError) -> bool:
    # 409 Conflict: "removal of container ... is already in progress"
    explanation = str(exc.explanation or "")
    return exc.status_code == 409 and "already in progress" in explanation


def _translate_error(
    operation: str,
    exc: Exception,
    *,
    image: Optional[str] = None,
    container_id: Optional[str] = None,
) -> RuntimeClientError:
    if operation == "inspect_image" and isinstance(exc, (ImageNotFound, NotFound)):
        return ImageNotFoundError(image or "<unknown>", exc)
    if isinstance(exc, NotFound) and container_id:
        return ContainerNotFoundError(operation, container_id, exc)
    if isinstance(exc, APIError) and container_id and _is_removal_in_progress(exc):
        return ContainerRemovalInProgressError(operation, container_id, exc)
    if isinstance(exc, APIError):
        return RuntimeClientError(operation, str(exc.explanation or exc), exc)
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return RuntimeUnavailableError(operation, f"cannot reach Docker daemon: {exc}", exc)
    if isinstance(exc, DockerException) and not isinstance(exc, APIError):
        # docker-py raises a bare DockerException when it cannot connect at construction time
        return RuntimeUnavailableError(operation, str(exc), exc)
    return RuntimeClientError(operation, str(exc), exc)
