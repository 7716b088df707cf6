"""Image release copier.

Promotes an image built for a build ref from the staging registry to every
destination registry under ``<tag_prefix>_<build_ref>``:

1. wait (with exponential backoff, bounded) for the source image to appear;
2. compute the destination tag once;
3. copy to every destination concurrently, skipping destinations that
   already hold the same digest under that tag.

A failure on one destination does not stop the others; the report lists
every outcome. Authentication failures are never retried.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from sdk_pipeline.errors import (
    AuthenticationError,
    PipelineError,
    ReleaseError,
    SourceNotFoundError,
    StageExhaustedError,
)
from sdk_pipeline.release.registry import RegistryError
from sdk_pipeline.stages.retry import RetryPolicy, run_with_policy
from sdk_pipeline.types import (
    AttemptRecord,
    BuildRef,
    CopyStatus,
    ImageRef,
    ReleaseTarget,
    compute_tag,
)

logger = logging.getLogger(__name__)

# Source polling backoff (seconds)
SOURCE_POLL_INITIAL = 10.0
SOURCE_POLL_MAX = 60.0

DEFAULT_COPY_POLICY = RetryPolicy(max_attempts=3, backoff_base=5.0, backoff_max=30.0)


class DigestLookup(Protocol):
    """Anything that can resolve an image to its manifest digest."""

    def get_digest(self, image: ImageRef) -> str | None: ...


class ImageCopier(Protocol):
    """Anything that can copy an image between registries."""

    def copy(self, source: ImageRef, destination: ImageRef) -> None: ...


@dataclass
class CopyOutcome:
    """Outcome of releasing to one destination."""

    destination: ImageRef
    status: CopyStatus
    digest: str | None = None
    attempts: int = 0
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        """Whether the destination holds the released image."""
        return self.status is not CopyStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "destination": str(self.destination),
            "status": self.status.value,
            "digest": self.digest,
            "attempts": self.attempts,
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


@dataclass
class ReleaseReport:
    """Aggregate result of releasing one image."""

    source: ImageRef
    tag: str
    digest: str
    outcomes: list[CopyOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when every destination succeeded."""
        return all(o.ok for o in self.outcomes)

    @property
    def fatal(self) -> bool:
        """True when any destination rejected the credentials."""
        return any(isinstance(o.error, AuthenticationError) for o in self.outcomes)

    @property
    def succeeded(self) -> list[ImageRef]:
        """Destinations holding the released image."""
        return [o.destination for o in self.outcomes if o.ok]

    @property
    def failures(self) -> list[CopyOutcome]:
        """Failed destinations."""
        return [o for o in self.outcomes if not o.ok]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "source": str(self.source),
            "tag": self.tag,
            "digest": self.digest,
            "ok": self.ok,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def wait_for_source(
    registry: DigestLookup,
    source: ImageRef,
    max_wait_seconds: float,
    poll_initial: float = SOURCE_POLL_INITIAL,
    poll_max: float = SOURCE_POLL_MAX,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Wait until ``source`` exists; return its digest.

    Transient registry errors count as "not visible yet".

    Raises:
        SourceNotFoundError: If the image did not appear in time.
        AuthenticationError: If the registry rejected the credentials.
    """
    start = clock()
    interval = poll_initial

    while True:
        try:
            digest = registry.get_digest(source)
        except RegistryError as e:
            logger.warning("Lookup of %s failed, will retry: %s", source, e)
            digest = None

        if digest:
            logger.info("Source image %s available (%s)", source, digest)
            return digest

        elapsed = clock() - start
        if elapsed >= max_wait_seconds:
            raise SourceNotFoundError(str(source), elapsed)

        delay = min(interval, max_wait_seconds - elapsed)
        logger.info(
            "Image %s not found yet, waiting %.0fs (%.0f/%.0fs)",
            source,
            delay,
            elapsed,
            max_wait_seconds,
        )
        sleep(delay)
        interval = min(interval * 2, poll_max)


def _copy_to(
    source: ImageRef,
    digest: str,
    destination: ImageRef,
    registry: DigestLookup,
    copier: ImageCopier,
    policy: RetryPolicy,
    sleep: Callable[[float], None],
) -> CopyOutcome:
    try:
        existing = registry.get_digest(destination)
    except RegistryError as e:
        logger.warning("Could not inspect %s, copying anyway: %s", destination, e)
        existing = None
    except AuthenticationError as e:
        logger.error("Release to %s failed: %s", destination, e)
        return CopyOutcome(destination, CopyStatus.FAILED, error=e)

    if existing == digest:
        logger.info("%s already at %s, nothing to do", destination, digest)
        return CopyOutcome(destination, CopyStatus.UNCHANGED, digest=digest)

    attempts: list[AttemptRecord] = []
    try:
        outcome = run_with_policy(
            f"copy {destination}",
            lambda: copier.copy(source, destination),
            policy,
            sleep=sleep,
            on_attempt=attempts.append,
        )
    except AuthenticationError as e:
        logger.error("Release to %s failed: %s", destination, e)
        return CopyOutcome(destination, CopyStatus.FAILED, attempts=len(attempts), error=e)
    except StageExhaustedError as e:
        cause = e.last_cause if isinstance(e.last_cause, PipelineError) else e
        logger.error("Release to %s failed: %s", destination, cause)
        return CopyOutcome(
            destination, CopyStatus.FAILED, attempts=e.attempts, error=cause
        )

    logger.info("Copied %s to %s", source, destination)
    return CopyOutcome(
        destination, CopyStatus.COPIED, digest=digest, attempts=outcome.attempt_count
    )


def release(
    source: ImageRef,
    target: ReleaseTarget,
    build_ref: BuildRef,
    registry: DigestLookup,
    copier: ImageCopier,
    max_wait_seconds: float,
    copy_policy: RetryPolicy = DEFAULT_COPY_POLICY,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ReleaseReport:
    """Release ``source`` to every registry of ``target``.

    Re-running a release is safe: destinations that already hold the
    source digest under the computed tag are reported as unchanged.

    Args:
        source: Image in the staging registry.
        target: Destination registries and tag prefix.
        build_ref: Build the image was produced from.
        registry: Digest lookup for source and destinations.
        copier: Image copier.
        max_wait_seconds: Bound on waiting for the source image.
        copy_policy: Retry policy of each destination copy.
        clock: Monotonic clock (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        ReleaseReport with one outcome per destination, in target order.

    Raises:
        SourceNotFoundError: If the source never appeared.
        AuthenticationError: If the staging registry rejected the credentials.
    """
    digest = wait_for_source(registry, source, max_wait_seconds, clock=clock, sleep=sleep)
    tag = compute_tag(target.tag_prefix, build_ref)
    destinations = [source.with_registry(r, tag) for r in target.registries]

    logger.info(
        "Releasing %s as :%s to %d registr%s",
        source,
        tag,
        len(destinations),
        "y" if len(destinations) == 1 else "ies",
    )

    with ThreadPoolExecutor(
        max_workers=len(destinations), thread_name_prefix="release"
    ) as executor:
        futures = [
            executor.submit(
                _copy_to, source, digest, dst, registry, copier, copy_policy, sleep
            )
            for dst in destinations
        ]
        outcomes = [f.result() for f in futures]

    report = ReleaseReport(source=source, tag=tag, digest=digest, outcomes=outcomes)
    if report.ok:
        logger.info("Released %s to %d destination(s)", source, len(outcomes))
    else:
        logger.error(
            "Release of %s failed for %d of %d destination(s)",
            source,
            len(report.failures),
            len(outcomes),
        )
    return report


def release_images(
    repositories: Sequence[str],
    staging_registry: str,
    target: ReleaseTarget,
    build_ref: BuildRef,
    registry: DigestLookup,
    copier: ImageCopier,
    max_wait_seconds: float,
    copy_policy: RetryPolicy = DEFAULT_COPY_POLICY,
    stage: str | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ReleaseReport]:
    """Release every repository built for ``build_ref``.

    The wait budget is shared: later images only get what is left of
    ``max_wait_seconds``.

    Raises:
        ReleaseError: If any destination of any image failed.
        SourceNotFoundError: If an image never appeared.
        AuthenticationError: If the staging registry rejected the credentials.
    """
    start = clock()
    reports: list[ReleaseReport] = []

    for repository in repositories:
        source = ImageRef(
            registry=staging_registry, repository=repository, tag=build_ref.value
        )
        remaining = max(max_wait_seconds - (clock() - start), 0.0)
        report = release(
            source,
            target,
            build_ref,
            registry,
            copier,
            remaining,
            copy_policy=copy_policy,
            clock=clock,
            sleep=sleep,
        )
        reports.append(report)
        if report.fatal:
            # Credentials are shared by every image
            break

    if not all(r.ok for r in reports):
        raise ReleaseError(reports, stage=stage)
    return reports


__all__ = [
    "CopyOutcome",
    "DEFAULT_COPY_POLICY",
    "DigestLookup",
    "ImageCopier",
    "ReleaseReport",
    "release",
    "release_images",
    "wait_for_source",
]
