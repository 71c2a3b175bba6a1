import asyncio

import pytest

from experiment_service.exceptions import RuntimeClientError, RuntimeUnavailableError
from experiment_service.fake_runtime import FakeRuntime
from experiment_service.models import ErrorKind, ExperimentStatus, OutcomeStatus
from experiment_service.settings import IPROUTE2_IMAGE, K6_IMAGE, PUMBA_IMAGE


@pytest.mark.asyncio
async def test_traffic_container_spec(manager, runtime):
    result = await manager.start_traffic("http://service-a:8080/api/hello", rps=10, duration_seconds=5)
    assert result.status is OutcomeStatus.STARTED
    assert result.experiment_id.startswith("k6-job-")

    container = runtime.container_by_name(result.experiment_id)
    spec = container.spec
    assert container.state == "running"
    assert spec.image == K6_IMAGE
    assert spec.command == ["run", "-o", "experimental-prometheus-rw", "/scripts/load-test.js"]
    assert spec.environment["TARGET_URL"] == "http://service-a:8080/api/hello"
    assert spec.environment["RPS"] == "10"
    assert spec.environment["DURATION"] == "5s"
    assert spec.environment["VUS"] == "20"
    assert spec.environment["MAX_VUS"] == "100"
    assert spec.binds[0].endswith(":/scripts:ro")
    assert spec.labels["type"] == "traffic-job"
    assert spec.labels["generator"] == "k6"
    assert spec.labels["platform"] == manager.platform_name


@pytest.mark.asyncio
async def test_traffic_vus_capped_by_max_vus(manager, runtime):
    result = await manager.start_traffic("http://service-a", rps=400, duration_seconds=5, max_vus=150)
    env = runtime.container_by_name(result.experiment_id).spec.environment
    assert env["VUS"] == "150"
    assert env["MAX_VUS"] == "150"


@pytest.mark.asyncio
async def test_network_delay_container_spec(manager, runtime, clock):
    result = await manager.apply_network_delay("service-b", delay_ms=100, duration_seconds=5, jitter_ms=20)
    assert result.status is OutcomeStatus.ACTIVE
    assert result.experiment_id.startswith("pumba-delay-")

    spec = runtime.container_by_name(result.experiment_id).spec
    assert spec.image == PUMBA_IMAGE
    assert spec.command == [
        "--log-level", "info", "netem", "--duration", "5s", "--tc-image", IPROUTE2_IMAGE,
        "delay", "--time", "100", "--jitter", "20", "re2:^service-b$",
    ]
    assert spec.binds == ["/var/run/docker.sock:/var/run/docker.sock:ro"]
    assert spec.network_mode == "host"
    assert spec.privileged is True
    assert spec.labels["type"] == "pumba-failure"
    assert spec.labels["failure-type"] == "network-delay"
    assert spec.environment["TARGET_PATTERN"] == "re2:^service-b$"

    record = manager.registry.get(result.experiment_id)
    assert record.status is ExperimentStatus.ACTIVE
    assert (record.expires_at - record.started_at).total_seconds() == 5


@pytest.mark.asyncio
async def test_zero_jitter_omits_flag(manager, runtime):
    result = await manager.apply_network_delay("service-b", delay_ms=100, duration_seconds=5)
    assert "--jitter" not in runtime.container_by_name(result.experiment_id).spec.command


@pytest.mark.asyncio
async def test_present_image_skips_pull(manager, runtime):
    await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)
    await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)
    assert runtime.call_names().count("inspect_image") == 2
    assert "pull_image" not in runtime.call_names()


@pytest.mark.asyncio
async def test_missing_images_are_pulled(clock):
    from experiment_service.manager import ExperimentManager

    runtime = FakeRuntime()
    mgr = ExperimentManager(runtime, clock=clock)
    result = await mgr.apply_network_delay("service-b", delay_ms=10, duration_seconds=1)

    assert result.status is OutcomeStatus.ACTIVE
    pulled = [arg for name, arg in runtime.calls if name == "pull_image"]
    assert pulled == [PUMBA_IMAGE, IPROUTE2_IMAGE]
    assert {PUMBA_IMAGE, IPROUTE2_IMAGE} <= runtime.images
    await mgr.supervisor.shutdown(timeout=0)


@pytest.mark.asyncio
async def test_inspect_error_other_than_not_found_fails_launch(manager, runtime):
    runtime.fail_next("inspect_image", RuntimeClientError("inspect_image", "permission denied"))
    result = await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)

    assert result.status is OutcomeStatus.FAILED
    assert result.error_kind is ErrorKind.IMAGE_UNAVAILABLE
    assert "permission denied" in result.detail
    assert "permission denied" not in result.message
    assert "pull_image" not in runtime.call_names()
    assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_create_failure_leaves_no_record(manager, runtime):
    runtime.fail_next("create_container")
    result = await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)

    assert result.status is OutcomeStatus.FAILED
    assert result.error_kind is ErrorKind.CONTAINER_CREATE_FAILED
    assert result.experiment_id.startswith("k6-job-")
    assert manager.registry.get(result.experiment_id) is None
    assert manager.supervisor.in_flight() == []


@pytest.mark.asyncio
async def test_start_failure_removes_created_container(manager, runtime):
    runtime.fail_next("start_container")
    result = await manager.apply_network_delay("service-b", delay_ms=100, duration_seconds=5)

    assert result.error_kind is ErrorKind.CONTAINER_START_FAILED
    assert runtime.container_by_name(result.experiment_id) is None
    assert any(name == "remove_container" and arg[1] is True for name, arg in runtime.calls)
    assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_unexpected_start_error_is_reported_and_cleaned_up(manager, runtime):
    runtime.fail_next("start_container", OSError("socket closed"))
    result = await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)

    assert result.status is OutcomeStatus.FAILED
    assert result.error_kind is ErrorKind.CONTAINER_START_FAILED
    assert "socket closed" in result.detail
    assert "socket closed" not in result.message
    assert runtime.containers == {}
    assert len(manager.registry) == 0
    assert manager.supervisor.in_flight() == []


@pytest.mark.asyncio
async def test_unexpected_pull_error_fails_without_container(manager, runtime):
    runtime.images.discard(K6_IMAGE)
    runtime.fail_next("pull_image", ValueError("invalid JSON in progress stream"))
    result = await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)

    assert result.error_kind is ErrorKind.IMAGE_UNAVAILABLE
    assert "create_container" not in runtime.call_names()
    assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_unreachable_runtime_reported_as_unavailable(manager, runtime):
    runtime.fail_next("inspect_image", RuntimeUnavailableError("inspect_image", "connection refused"))
    result = await manager.start_traffic("http://service-a", rps=1, duration_seconds=1)
    assert result.error_kind is ErrorKind.RUNTIME_UNAVAILABLE
    assert result.message == "Container runtime is unavailable"


@pytest.mark.asyncio
async def test_concurrent_launches_have_distinct_ids(manager, runtime):
    results = await asyncio.gather(
        *[manager.apply_network_delay(f"service-{i}", delay_ms=100, duration_seconds=30) for i in range(20)]
    )
    ids = [result.experiment_id for result in results]
    assert len(set(ids)) == 20
    assert all(result.status is OutcomeStatus.ACTIVE for result in results)

    listed = {record.id: record for record in manager.list_active_failures()}
    for experiment_id in ids:
        assert listed[experiment_id].status is ExperimentStatus.ACTIVE
    assert sorted(manager.supervisor.in_flight()) == sorted(ids)
