"""Tests for release/service.py module.

Registries and the copier are in-memory fakes keyed by image reference.
"""

import threading

import pytest

from sdk_pipeline.errors import (
    AuthenticationError,
    CopyError,
    ReleaseError,
    SourceNotFoundError,
)
from sdk_pipeline.release.registry import RegistryError
from sdk_pipeline.release.service import release, release_images, wait_for_source
from sdk_pipeline.stages.retry import RetryPolicy
from sdk_pipeline.types import BuildRef, CopyStatus, ImageRef, ReleaseTarget

DIGEST = "sha256:" + "b" * 64
STAGING = "localhost:5000"
BUILD_REF = BuildRef("abc123")
SOURCE = ImageRef(registry=STAGING, repository="tools", tag="abc123")
TARGET = ReleaseTarget(registries=("registry-a.example", "registry-b.example"), tag_prefix="devnet")
NO_BACKOFF = RetryPolicy(max_attempts=3, backoff_base=0.0, backoff_max=0.0)


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRegistry:
    """Digest lookup over a dict of image reference to digest."""

    def __init__(self, images: dict[str, str] | None = None) -> None:
        self.images = dict(images or {})
        self.lookups: list[str] = []
        self.hidden_lookups = 0
        self.deny: set[str] = set()
        self._lock = threading.Lock()

    def get_digest(self, image: ImageRef) -> str | None:
        with self._lock:
            self.lookups.append(str(image))
            if image.registry in self.deny:
                raise AuthenticationError(image.registry)
            if self.hidden_lookups > 0 and image.registry == STAGING:
                self.hidden_lookups -= 1
                return None
            return self.images.get(str(image))


class FakeCopier:
    """Copier that writes into a FakeRegistry."""

    def __init__(self, registry: FakeRegistry) -> None:
        self.registry = registry
        self.copies: list[str] = []
        self.failures: dict[str, tuple[Exception, int | None]] = {}
        self._lock = threading.Lock()

    def fail(self, registry: str, error: Exception, times: int | None = None) -> None:
        """Fail copies to ``registry`` ``times`` times, or always when None."""
        self.failures[registry] = (error, times)

    def copy(self, source: ImageRef, destination: ImageRef) -> None:
        with self._lock:
            self.copies.append(str(destination))
            error, times = self.failures.get(destination.registry, (None, 0))
            if error is not None and (times is None or times > 0):
                if times is not None:
                    self.failures[destination.registry] = (error, times - 1)
                raise error
            self.registry.images[str(destination)] = self.registry.images[str(source)]


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry({str(SOURCE): DIGEST})


@pytest.fixture
def copier(registry) -> FakeCopier:
    return FakeCopier(registry)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _release(registry, copier, clock, max_wait=60.0):
    return release(
        SOURCE,
        TARGET,
        BUILD_REF,
        registry,
        copier,
        max_wait,
        copy_policy=NO_BACKOFF,
        clock=clock,
        sleep=clock.sleep,
    )


class TestWaitForSource:
    """Tests for wait_for_source function."""

    def test_available_immediately(self, registry, clock):
        """Returns the digest without sleeping."""
        assert wait_for_source(registry, SOURCE, 60, clock=clock, sleep=clock.sleep) == DIGEST
        assert clock.sleeps == []

    def test_appears_later(self, registry, clock):
        """Polls with exponential backoff until the image appears."""
        registry.hidden_lookups = 3
        digest = wait_for_source(
            registry, SOURCE, 600, poll_initial=10, poll_max=60, clock=clock, sleep=clock.sleep
        )
        assert digest == DIGEST
        assert clock.sleeps == [10, 20, 40]

    def test_never_appears(self, clock):
        """Raises SourceNotFoundError once the bound is reached."""
        with pytest.raises(SourceNotFoundError) as exc_info:
            wait_for_source(
                FakeRegistry(), SOURCE, 100, poll_initial=10, poll_max=60,
                clock=clock, sleep=clock.sleep,
            )
        assert exc_info.value.image == str(SOURCE)
        assert exc_info.value.waited >= 100
        assert sum(clock.sleeps) == 100

    def test_transient_errors_are_polled_through(self, clock):
        """Registry errors count as not visible yet."""

        class Flaky:
            calls = 0

            def get_digest(self, image):
                self.calls += 1
                if self.calls == 1:
                    raise RegistryError("502", image.registry)
                return DIGEST

        assert wait_for_source(Flaky(), SOURCE, 60, clock=clock, sleep=clock.sleep) == DIGEST

    def test_auth_error_propagates(self, registry, clock):
        """Rejected staging credentials are not waited out."""
        registry.deny.add(STAGING)
        with pytest.raises(AuthenticationError):
            wait_for_source(registry, SOURCE, 60, clock=clock, sleep=clock.sleep)
        assert clock.sleeps == []


class TestRelease:
    """Tests for release function."""

    def test_copies_to_every_registry(self, registry, copier, clock):
        """Every destination receives the same computed tag."""
        report = _release(registry, copier, clock)

        assert report.ok
        assert report.tag == "devnet_abc123"
        assert sorted(copier.copies) == [
            "registry-a.example/tools:devnet_abc123",
            "registry-b.example/tools:devnet_abc123",
        ]
        assert [o.status for o in report.outcomes] == [CopyStatus.COPIED, CopyStatus.COPIED]
        assert all(o.digest == DIGEST for o in report.outcomes)

    def test_rerun_is_idempotent(self, registry, copier, clock):
        """A second release reports unchanged destinations and copies nothing."""
        _release(registry, copier, clock)
        copier.copies.clear()

        report = _release(registry, copier, clock)

        assert report.ok
        assert copier.copies == []
        assert [o.status for o in report.outcomes] == [
            CopyStatus.UNCHANGED,
            CopyStatus.UNCHANGED,
        ]

    def test_stale_destination_is_overwritten(self, registry, copier, clock):
        """A destination holding another digest under the tag is copied again."""
        registry.images["registry-a.example/tools:devnet_abc123"] = "sha256:old"
        report = _release(registry, copier, clock)
        assert report.outcomes[0].status is CopyStatus.COPIED
        assert registry.images["registry-a.example/tools:devnet_abc123"] == DIGEST

    def test_auth_failure_does_not_stop_other_destinations(self, registry, copier, clock):
        """Registry A rejecting credentials still lets B succeed; A is not retried."""
        copier.fail("registry-a.example", AuthenticationError("registry-a.example"))

        report = _release(registry, copier, clock)

        a, b = report.outcomes
        assert a.status is CopyStatus.FAILED
        assert isinstance(a.error, AuthenticationError)
        assert a.attempts == 1
        assert b.status is CopyStatus.COPIED
        assert report.fatal is True
        assert report.succeeded == [b.destination]

    def test_transient_copy_failure_is_retried(self, registry, copier, clock):
        """A flaky copy succeeds on a later attempt."""
        copier.fail("registry-b.example", CopyError("registry-b.example", "reset"), times=1)

        report = _release(registry, copier, clock)

        assert report.ok
        assert report.outcomes[1].attempts == 2

    def test_copy_failure_exhausts(self, registry, copier, clock):
        """A destination failing every attempt is reported with its cause."""
        copier.fail("registry-b.example", CopyError("registry-b.example", "reset"))

        report = _release(registry, copier, clock)

        assert not report.ok
        failure = report.failures[0]
        assert failure.destination.registry == "registry-b.example"
        assert failure.attempts == 3
        assert isinstance(failure.error, CopyError)
        assert report.fatal is False


class TestReleaseImages:
    """Tests for release_images function."""

    def test_releases_every_repository(self, registry, copier, clock):
        """Each repository built for the ref is released."""
        registry.images[f"{STAGING}/faucet:abc123"] = "sha256:faucet"

        reports = release_images(
            ["tools", "faucet"], STAGING, TARGET, BUILD_REF, registry, copier, 60,
            copy_policy=NO_BACKOFF, clock=clock, sleep=clock.sleep,
        )

        assert [r.source.repository for r in reports] == ["tools", "faucet"]
        assert registry.images["registry-b.example/faucet:devnet_abc123"] == "sha256:faucet"

    def test_failure_raises_release_error(self, registry, copier, clock):
        """Any failed destination raises ReleaseError listing every outcome."""
        copier.fail("registry-a.example", AuthenticationError("registry-a.example"))

        with pytest.raises(ReleaseError) as exc_info:
            release_images(
                ["tools"], STAGING, TARGET, BUILD_REF, registry, copier, 60,
                copy_policy=NO_BACKOFF, stage="release", clock=clock, sleep=clock.sleep,
            )

        error = exc_info.value
        assert error.fatal is True
        assert error.stage == "release"
        assert "registry-a.example/tools:devnet_abc123" in str(error)
        outcomes = error.to_dict()["details"]["reports"][0]["outcomes"]
        assert [o["status"] for o in outcomes] == ["failed", "copied"]

    def test_stops_after_auth_failure(self, registry, copier, clock):
        """Later images are not attempted once credentials were rejected."""
        registry.images[f"{STAGING}/faucet:abc123"] = "sha256:faucet"
        copier.fail("registry-a.example", AuthenticationError("registry-a.example"))

        with pytest.raises(ReleaseError) as exc_info:
            release_images(
                ["tools", "faucet"], STAGING, TARGET, BUILD_REF, registry, copier, 60,
                copy_policy=NO_BACKOFF, clock=clock, sleep=clock.sleep,
            )

        assert len(exc_info.value.reports) == 1
        assert f"{STAGING}/faucet:abc123" not in registry.lookups

    def test_missing_image(self, registry, copier, clock):
        """An image that never appears raises SourceNotFoundError."""
        with pytest.raises(SourceNotFoundError):
            release_images(
                ["forge"], STAGING, TARGET, BUILD_REF, registry, copier, 30,
                copy_policy=NO_BACKOFF, clock=clock, sleep=clock.sleep,
            )
        assert copier.copies == []
