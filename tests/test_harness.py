"""Tests for harness/service.py module.

The container runtime is replaced by an in-memory fake; readiness HTTP
calls are mocked with respx.
"""

from collections.abc import Sequence

import httpx
import pytest
import respx

from sdk_pipeline.errors import ReadinessTimeoutError, ServiceStartupError
from sdk_pipeline.harness import ServiceHarness, ServiceSpec, running_service
from sdk_pipeline.harness.runtime import ContainerRuntimeError
from sdk_pipeline.types import BuildRef, ServiceEndpoint

API = ServiceEndpoint(name="api", url="http://127.0.0.1:8080/v1")
FAUCET = ServiceEndpoint(name="faucet", url="http://127.0.0.1:8081")


class FakeRuntime:
    """In-memory stand-in for DockerRuntime."""

    def __init__(self, fail_start: bool = False, exits: bool = False) -> None:
        self.containers: dict[str, str] = {}
        self.removed: list[str] = []
        self.started: list[tuple[str, str]] = []
        self.fail_start = fail_start
        self.exits = exits

    def run_detached(
        self,
        image: str,
        name: str,
        ports: Sequence[tuple[int, int]],
        command: Sequence[str] = (),
    ) -> str:
        if self.fail_start:
            raise ContainerRuntimeError("pull access denied", exit_code=125)
        self.started.append((name, image))
        self.containers[name] = image
        return f"id-{len(self.started)}"

    def remove(self, name: str) -> bool:
        self.removed.append(name)
        return self.containers.pop(name, None) is not None

    def is_running(self, name: str) -> bool:
        return name in self.containers and not self.exits

    def logs(self, name: str) -> str:
        return f"logs of {name}"


@pytest.fixture
def spec() -> ServiceSpec:
    return ServiceSpec(
        image_repository="localhost:5000/tools",
        container_name="local-testnet",
        ports=((8080, 8080), (8081, 8081)),
        command=("aptos", "node", "run-local-testnet", "--with-faucet"),
        api=API,
        faucet=FAUCET,
    )


class TestServiceHarness:
    """Tests for ServiceHarness."""

    def test_start_uses_build_ref_image(self, spec):
        """The image tag is the build ref."""
        runtime = FakeRuntime()
        harness = ServiceHarness(spec, runtime=runtime)

        handle = harness.start(BuildRef("abc123"))

        assert runtime.started == [("local-testnet", "localhost:5000/tools:abc123")]
        assert handle.name == "local-testnet"
        assert handle.container_id == "id-1"
        assert handle.endpoints == [API, FAUCET]

    def test_stale_instance_removed_first(self, spec):
        """A leftover container with the same name is torn down before start."""
        runtime = FakeRuntime()
        runtime.containers["local-testnet"] = "localhost:5000/tools:old"
        harness = ServiceHarness(spec, runtime=runtime)

        harness.start(BuildRef("new"))

        assert runtime.removed == ["local-testnet"]
        assert runtime.containers["local-testnet"] == "localhost:5000/tools:new"

    def test_start_failure(self, spec):
        """A runtime failure becomes ServiceStartupError with the logs."""
        harness = ServiceHarness(spec, runtime=FakeRuntime(fail_start=True))

        with pytest.raises(ServiceStartupError) as exc_info:
            harness.start(BuildRef("abc"))

        assert "pull access denied" in str(exc_info.value)
        assert exc_info.value.logs == "logs of local-testnet"

    def test_stop_captures_logs(self, spec, tmp_path):
        """Logs are written to the log directory when requested."""
        runtime = FakeRuntime()
        harness = ServiceHarness(spec, runtime=runtime, log_dir=tmp_path / "logs")
        handle = harness.start(BuildRef("abc"))

        log_path = harness.stop(handle, capture_logs=True)

        assert log_path == tmp_path / "logs" / "local-testnet.log"
        assert log_path.read_text() == "logs of local-testnet"
        assert handle.log_path == log_path
        assert "local-testnet" not in runtime.containers

    def test_stop_without_logs(self, spec, tmp_path):
        """No log file is written unless requested."""
        harness = ServiceHarness(spec, runtime=FakeRuntime(), log_dir=tmp_path)
        handle = harness.start(BuildRef("abc"))
        assert harness.stop(handle) is None
        assert list(tmp_path.iterdir()) == []

    def test_ensure_running(self, spec):
        """An exited service raises ServiceStartupError."""
        harness = ServiceHarness(spec, runtime=FakeRuntime(exits=True))
        handle = harness.start(BuildRef("abc"))
        with pytest.raises(ServiceStartupError) as exc_info:
            harness.ensure_running(handle)
        assert exc_info.value.logs == "logs of local-testnet"


class TestWaitUntilReady:
    """Tests for ServiceHarness.wait_until_ready."""

    @respx.mock
    def test_both_endpoints_ready(self, spec):
        """Readiness results are stored on the handle."""
        respx.get(API.url).mock(return_value=httpx.Response(200))
        respx.get(FAUCET.url).mock(return_value=httpx.Response(200))
        harness = ServiceHarness(spec, runtime=FakeRuntime())
        handle = harness.start(BuildRef("abc"))

        results = harness.wait_until_ready(handle, total_timeout=5, poll_interval=0.01)

        assert [r.endpoint for r in results] == [API, FAUCET]
        assert handle.ready == results

    @respx.mock
    def test_service_exit_aborts_wait(self, spec):
        """A dead service aborts the wait instead of waiting for the deadline."""
        respx.get(API.url).mock(side_effect=httpx.ConnectError("refused"))
        respx.get(FAUCET.url).mock(side_effect=httpx.ConnectError("refused"))
        harness = ServiceHarness(spec, runtime=FakeRuntime(exits=True))
        handle = harness.start(BuildRef("abc"))

        with pytest.raises(ServiceStartupError):
            harness.wait_until_ready(handle, total_timeout=60, poll_interval=0.01)

    @respx.mock
    def test_timeout(self, spec):
        """A live service whose endpoint never answers times out."""
        respx.get(API.url).mock(return_value=httpx.Response(200))
        respx.get(FAUCET.url).mock(side_effect=httpx.ConnectError("refused"))
        harness = ServiceHarness(spec, runtime=FakeRuntime())
        handle = harness.start(BuildRef("abc"))

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            harness.wait_until_ready(handle, total_timeout=0.2, poll_interval=0.05)

        assert exc_info.value.endpoint == FAUCET


class TestRunningService:
    """Tests for the running_service context manager."""

    def test_stops_on_success(self, spec, tmp_path):
        """The service is removed after the block, without log capture."""
        runtime = FakeRuntime()
        harness = ServiceHarness(spec, runtime=runtime, log_dir=tmp_path)

        with running_service(harness, BuildRef("abc")) as handle:
            assert "local-testnet" in runtime.containers

        assert "local-testnet" not in runtime.containers
        assert handle.log_path is None

    def test_captures_logs_on_failure(self, spec, tmp_path):
        """Logs are captured and the error propagates when the block raises."""
        runtime = FakeRuntime()
        harness = ServiceHarness(spec, runtime=runtime, log_dir=tmp_path)

        with pytest.raises(RuntimeError, match="tests failed"):
            with running_service(harness, BuildRef("abc")) as handle:
                raise RuntimeError("tests failed")

        assert handle.log_path == tmp_path / "local-testnet.log"
        assert "local-testnet" not in runtime.containers

    def test_always_capture_logs(self, spec, tmp_path):
        """Logs can be captured on success too."""
        harness = ServiceHarness(spec, runtime=FakeRuntime(), log_dir=tmp_path)
        with running_service(harness, BuildRef("abc"), always_capture_logs=True) as handle:
            pass
        assert handle.log_path is not None
