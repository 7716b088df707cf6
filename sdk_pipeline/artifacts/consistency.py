"""Artifact consistency checking.

This module handles:
- Normalizing generated and checked-in files (line endings, trailing
  whitespace, blank lines)
- Comparing single files and whole directory trees
- Rendering unified diffs for mismatches
- Aggregating results so any mismatch aborts the pipeline

The comparison mirrors ``git diff --ignore-space-at-eol --ignore-blank-lines``:
everything except trailing whitespace and blank lines must match exactly.
Neither side is ever written.
"""

from __future__ import annotations

import difflib
import hashlib
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sdk_pipeline.errors import ArtifactMismatchError

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

# Lines of context in unified diffs
DIFF_CONTEXT_LINES = 3


@dataclass(frozen=True)
class TrackedArtifact:
    """A generated artifact and its checked-in baseline.

    Attributes:
        name: Logical name, e.g. 'openapi-yaml'.
        generated: Freshly generated file or directory.
        baseline: File or directory checked into the repository.
        ignore_patterns: Regexes; matching lines are dropped before comparing.
        regenerate_hint: Command a maintainer runs to refresh the baseline.
    """

    name: str
    generated: Path
    baseline: Path
    ignore_patterns: tuple[str, ...] = ()
    regenerate_hint: str | None = None


@dataclass
class ConsistencyResult:
    """Outcome of comparing one artifact.

    Attributes:
        name: Logical artifact name.
        equal: Whether generated and baseline match after normalization.
        diff: Unified diff when unequal.
        differing_files: Relative paths (or names) that differ.
    """

    name: str
    equal: bool
    diff: str | None = None
    differing_files: list[str] = field(default_factory=list)


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def normalize_lines(
    text: str,
    ignore_patterns: Sequence[re.Pattern[str]] = (),
) -> list[str]:
    """Normalize text for comparison.

    Line endings are unified, trailing whitespace is stripped and blank lines
    are dropped. Lines matching any of ``ignore_patterns`` are dropped too.

    Args:
        text: Raw file content.
        ignore_patterns: Compiled patterns of lines to ignore.

    Returns:
        Normalized lines without line terminators.
    """
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    normalized = []
    for line in lines:
        stripped = line.rstrip()
        if not stripped:
            continue
        if any(p.search(stripped) for p in ignore_patterns):
            continue
        normalized.append(stripped)
    return normalized


def _read_text(path: Path) -> str:
    return path.read_bytes().decode("utf-8", errors="surrogateescape")


def _compare_file(
    generated: Path,
    baseline: Path,
    label: str,
    ignore_patterns: Sequence[re.Pattern[str]],
) -> str | None:
    """Compare two files; return a unified diff, or None when they match."""
    if compute_file_hash(generated) == compute_file_hash(baseline):
        return None

    gen_lines = normalize_lines(_read_text(generated), ignore_patterns)
    base_lines = normalize_lines(_read_text(baseline), ignore_patterns)
    if gen_lines == base_lines:
        return None

    diff = difflib.unified_diff(
        base_lines,
        gen_lines,
        fromfile=f"baseline/{label}",
        tofile=f"generated/{label}",
        n=DIFF_CONTEXT_LINES,
        lineterm="",
    )
    return "\n".join(diff)


def _relative_files(root: Path) -> set[str]:
    return {p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()}


def _compare_dirs(
    generated: Path,
    baseline: Path,
    ignore_patterns: Sequence[re.Pattern[str]],
) -> tuple[list[str], list[str]]:
    """Compare two directory trees; return (diff chunks, differing files)."""
    gen_files = _relative_files(generated)
    base_files = _relative_files(baseline)

    chunks: list[str] = []
    differing: list[str] = []

    for rel in sorted(gen_files | base_files):
        if rel not in base_files:
            chunks.append(f"Only in generated: {rel}")
            differing.append(rel)
        elif rel not in gen_files:
            chunks.append(f"Only in baseline: {rel}")
            differing.append(rel)
        else:
            diff = _compare_file(generated / rel, baseline / rel, rel, ignore_patterns)
            if diff is not None:
                chunks.append(diff)
                differing.append(rel)

    return chunks, differing


def compare(
    generated: Path,
    baseline: Path,
    name: str | None = None,
    ignore_patterns: Iterable[str] = (),
) -> ConsistencyResult:
    """Compare a generated artifact against its baseline.

    Both paths must be files, or both directories. A missing side, or a
    file compared against a directory, is reported as a mismatch.

    Args:
        generated: Freshly generated file or directory.
        baseline: Checked-in file or directory.
        name: Logical name (defaults to the baseline file name).
        ignore_patterns: Regexes of lines to drop before comparing.

    Returns:
        ConsistencyResult with a unified diff when unequal.
    """
    name = name or baseline.name
    patterns = [re.compile(p) for p in ignore_patterns]

    for label, path in (("generated", generated), ("baseline", baseline)):
        if not path.exists():
            logger.warning("Artifact %s: %s path missing: %s", name, label, path)
            return ConsistencyResult(
                name=name,
                equal=False,
                diff=f"Missing {label} artifact: {path}",
                differing_files=[path.name],
            )

    if generated.is_dir() != baseline.is_dir():
        return ConsistencyResult(
            name=name,
            equal=False,
            diff=f"Type mismatch: {generated} and {baseline} are not both directories",
            differing_files=[baseline.name],
        )

    if generated.is_dir():
        chunks, differing = _compare_dirs(generated, baseline, patterns)
    else:
        diff = _compare_file(generated, baseline, baseline.name, patterns)
        chunks = [diff] if diff is not None else []
        differing = [baseline.name] if diff is not None else []

    if not differing:
        logger.info("Artifact %s matches baseline", name)
        return ConsistencyResult(name=name, equal=True)

    logger.warning(
        "Artifact %s differs from baseline in %d file(s)", name, len(differing)
    )
    return ConsistencyResult(
        name=name,
        equal=False,
        diff="\n".join(chunks),
        differing_files=differing,
    )


def check_artifacts(
    artifacts: Sequence[TrackedArtifact],
    stage: str | None = None,
) -> list[ConsistencyResult]:
    """Compare every tracked artifact; fail if any of them differs.

    Every artifact is compared even after a mismatch so the error lists all
    of them at once.

    Args:
        artifacts: Tracked artifacts.
        stage: Stage name used in errors.

    Returns:
        One ConsistencyResult per artifact (all equal).

    Raises:
        ArtifactMismatchError: If any artifact differs from its baseline.
    """
    results = [
        compare(a.generated, a.baseline, name=a.name, ignore_patterns=a.ignore_patterns)
        for a in artifacts
    ]
    mismatched = [r for r in results if not r.equal]
    if mismatched:
        names = {r.name for r in mismatched}
        hints = [
            a.regenerate_hint for a in artifacts if a.name in names and a.regenerate_hint
        ]
        raise ArtifactMismatchError(mismatched, hints=hints, stage=stage)
    return results


__all__ = [
    "ConsistencyResult",
    "HASH_CHUNK_SIZE",
    "TrackedArtifact",
    "check_artifacts",
    "compare",
    "compute_file_hash",
    "normalize_lines",
]
