import asyncio
import os
import subprocess
import sys
import textwrap
import time
from pathlib import Path
from unittest.mock import MagicMock

import docker
import pytest
import requests
from docker.errors import APIError, ImageNotFound, NotFound

from experiment_service.docker_runtime import DockerRuntime
from experiment_service.exceptions import (
    ContainerNotFoundError,
    ContainerRemovalInProgressError,
    ImageNotFoundError,
    RuntimeClientError,
    RuntimeUnavailableError,
)
from experiment_service.models import ContainerSpec

PROJECT_ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture()
def docker_client():
    client = MagicMock(spec=docker.DockerClient)
    client.api = MagicMock()
    return client


@pytest.fixture()
def docker_runtime(docker_client):
    return DockerRuntime(client=docker_client, wait_threads=2)


@pytest.mark.asyncio
async def test_inspect_missing_image_raises_image_not_found(docker_runtime, docker_client):
    docker_client.api.inspect_image.side_effect = ImageNotFound("No such image: grafana/k6:0.54.0")
    with pytest.raises(ImageNotFoundError) as exc_info:
        await docker_runtime.inspect_image("grafana/k6:0.54.0")
    assert exc_info.value.image == "grafana/k6:0.54.0"


@pytest.mark.asyncio
async def test_inspect_other_api_error_is_generic(docker_runtime, docker_client):
    docker_client.api.inspect_image.side_effect = APIError("server error")
    with pytest.raises(RuntimeClientError) as exc_info:
        await docker_runtime.inspect_image("grafana/k6:0.54.0")
    assert not isinstance(exc_info.value, ImageNotFoundError)


@pytest.mark.asyncio
async def test_connection_error_is_runtime_unavailable(docker_runtime, docker_client):
    docker_client.api.inspect_image.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(RuntimeUnavailableError):
        await docker_runtime.inspect_image("grafana/k6:0.54.0")


@pytest.mark.asyncio
async def test_pull_streams_progress_events(docker_runtime, docker_client):
    docker_client.api.pull.return_value = iter([{"status": "Pulling fs layer"}, {"status": "Download complete"}])
    events = [event async for event in docker_runtime.pull_image("gaiaadm/pumba:0.10.0")]
    assert [e["status"] for e in events] == ["Pulling fs layer", "Download complete"]
    docker_client.api.pull.assert_called_once_with("gaiaadm/pumba:0.10.0", stream=True, decode=True)


@pytest.mark.asyncio
async def test_pull_error_event_raises(docker_runtime, docker_client):
    docker_client.api.pull.return_value = iter([{"error": "manifest unknown"}])
    with pytest.raises(RuntimeClientError):
        async for _ in docker_runtime.pull_image("gaiaadm/pumba:missing"):
            pass


@pytest.mark.asyncio
async def test_create_container_maps_spec(docker_runtime, docker_client):
    docker_client.api.create_host_config.return_value = {"NetworkMode": "host"}
    docker_client.api.create_container.return_value = {"Id": "abc123", "Warnings": []}
    spec = ContainerSpec(
        name="pumba-delay-1",
        image="gaiaadm/pumba:0.10.0",
        command=["netem"],
        environment={"DELAY_MS": "100"},
        binds=["/var/run/docker.sock:/var/run/docker.sock:ro"],
        network_mode="host",
        labels={"type": "pumba-failure"},
        privileged=True,
    )

    assert await docker_runtime.create_container(spec) == "abc123"
    docker_client.api.create_host_config.assert_called_once_with(
        binds=["/var/run/docker.sock:/var/run/docker.sock:ro"],
        network_mode="host",
        privileged=True,
        auto_remove=False,
    )
    docker_client.api.create_container.assert_called_once_with(
        image="gaiaadm/pumba:0.10.0",
        name="pumba-delay-1",
        command=["netem"],
        environment={"DELAY_MS": "100"},
        labels={"type": "pumba-failure"},
        host_config={"NetworkMode": "host"},
    )


@pytest.mark.asyncio
async def test_wait_returns_status_code(docker_runtime, docker_client):
    docker_client.api.wait.return_value = {"StatusCode": 3, "Error": None}
    assert await docker_runtime.wait_for_exit("abc123") == 3
    docker_client.api.wait.assert_called_once_with("abc123", timeout=docker_runtime.wait_poll_seconds)


@pytest.mark.asyncio
async def test_wait_retries_after_read_timeout(docker_runtime, docker_client):
    docker_client.api.wait.side_effect = [
        requests.exceptions.ReadTimeout("Read timed out."),
        requests.exceptions.ConnectionError("UnixHTTPConnectionPool: Read timed out."),
        {"StatusCode": 0, "Error": None},
    ]
    assert await docker_runtime.wait_for_exit("abc123") == 0
    assert docker_client.api.wait.call_count == 3


@pytest.mark.asyncio
async def test_wait_refused_connection_is_not_retried(docker_runtime, docker_client):
    docker_client.api.wait.side_effect = requests.exceptions.ConnectionError("Connection refused")
    with pytest.raises(RuntimeUnavailableError):
        await docker_runtime.wait_for_exit("abc123")
    assert docker_client.api.wait.call_count == 1


@pytest.mark.asyncio
async def test_wait_gives_up_once_closed(docker_client):
    runtime = DockerRuntime(client=docker_client, wait_threads=1, wait_poll_seconds=0.01)

    def still_running(container_id, timeout):
        time.sleep(timeout)
        raise requests.exceptions.ReadTimeout("Read timed out.")

    docker_client.api.wait.side_effect = still_running
    waiting = asyncio.create_task(runtime.wait_for_exit("abc123"))
    await asyncio.sleep(0.05)
    await runtime.close()

    with pytest.raises(RuntimeClientError, match="runtime closed"):
        await asyncio.wait_for(waiting, timeout=5)


def test_process_exits_with_running_container_after_close():
    # A wait on a container that never exits must not keep the interpreter alive.
    script = textwrap.dedent(
        """
        import asyncio
        import time
        from unittest.mock import MagicMock

        import requests

        from experiment_service.docker_runtime import DockerRuntime

        def still_running(container_id, timeout):
            time.sleep(timeout)
            raise requests.exceptions.ReadTimeout("Read timed out.")

        async def main():
            client = MagicMock()
            client.api.wait.side_effect = still_running
            runtime = DockerRuntime(client=client, wait_poll_seconds=0.2)
            asyncio.ensure_future(runtime.wait_for_exit("abc123"))
            await asyncio.sleep(0.1)
            await runtime.close()
            print("closed")

        asyncio.run(main())
        """
    )
    completed = subprocess.run(
        [sys.executable, "-c", script],
        cwd=PROJECT_ROOT,
        env={**os.environ, "PYTHONPATH": str(PROJECT_ROOT)},
        capture_output=True,
        text=True,
        timeout=15,
    )
    assert completed.returncode == 0, completed.stderr
    assert "closed" in completed.stdout


@pytest.mark.asyncio
async def test_remove_missing_container_raises_container_not_found(docker_runtime, docker_client):
    docker_client.api.remove_container.side_effect = NotFound("No such container: abc123")
    with pytest.raises(ContainerNotFoundError) as exc_info:
        await docker_runtime.remove_container("abc123", force=True)
    assert exc_info.value.container_id == "abc123"


@pytest.mark.asyncio
async def test_stop_passes_grace_window(docker_runtime, docker_client):
    await docker_runtime.stop_container("abc123", 5)
    docker_client.api.stop.assert_called_once_with("abc123", timeout=5)


@pytest.mark.asyncio
async def test_list_containers_builds_summaries(docker_runtime, docker_client):
    docker_client.api.containers.return_value = [
        {"Id": "abc123", "Names": ["/k6-job-1"], "Labels": {"type": "traffic-job"}, "State": "running"},
    ]
    containers = await docker_runtime.list_containers(all=True, filters={"name": "k6-job-1"})
    assert containers[0].id == "abc123"
    assert containers[0].has_name("k6-job-1")
    assert containers[0].labels == {"type": "traffic-job"}
    docker_client.api.containers.assert_called_once_with(all=True, filters={"name": "k6-job-1"})


@pytest.mark.asyncio
async def test_close_releases_client(docker_runtime, docker_client):
    await docker_runtime.close()
    docker_client.close.assert_called_once()


@pytest.mark.asyncio
async def test_concurrent_removal_counts_as_gone(docker_runtime, docker_client):
    docker_client.api.remove_container.side_effect = APIError(
        "409 Client Error: Conflict",
        response=MagicMock(status_code=409),
        explanation="removal of container abc123 is already in progress",
    )
    with pytest.raises(ContainerNotFoundError) as exc_info:
        await docker_runtime.remove_container("abc123", force=True)
    assert isinstance(exc_info.value, ContainerRemovalInProgressError)


@pytest.mark.asyncio
async def test_other_conflicts_stay_generic(docker_runtime, docker_client):
    docker_client.api.remove_container.side_effect = APIError(
        "409 Client Error: Conflict",
        response=MagicMock(status_code=409),
        explanation="You cannot remove a running container abc123",
    )
    with pytest.raises(RuntimeClientError) as exc_info:
        await docker_runtime.remove_container("abc123")
    assert not isinstance(exc_info.value, ContainerNotFoundError)
