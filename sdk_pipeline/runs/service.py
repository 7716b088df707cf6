"""Run record service.

This module handles:
- Creating a record when a pipeline run starts
- Recording the outcome of every stage
- Closing the run with its exit code and failing stage
- Querying past runs
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from sdk_pipeline.runs.models import PipelineRun, StageRecord
from sdk_pipeline.types import BuildRef, RunStatus

if TYPE_CHECKING:
    from sdk_pipeline.errors import PipelineError
    from sdk_pipeline.pipeline.stages import StageResult

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a run record is not found."""

    def __init__(self, run_id: int, code: str = "run_not_found") -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


def start_run(session: Session, build_ref: BuildRef) -> PipelineRun:
    """Create a record for a run that is starting.

    Args:
        session: Database session.
        build_ref: Build the run verifies.

    Returns:
        The flushed PipelineRun (its ``id`` is assigned).
    """
    run = PipelineRun(build_ref=build_ref.value, status=RunStatus.RUNNING.value)
    session.add(run)
    session.flush()
    logger.debug("Created run record %d for %s", run.id, build_ref)
    return run


def record_stage(session: Session, run_id: int, result: StageResult) -> StageRecord:
    """Store the outcome of one stage.

    Args:
        session: Database session.
        run_id: ID of the run the stage belongs to.
        result: Stage result.

    Returns:
        The flushed StageRecord.
    """
    details = result.to_dict()
    record = StageRecord(
        run_id=run_id,
        name=result.stage,
        kind=result.kind.value,
        status=result.status.value,
        attempts=result.attempt_count,
        started_at=result.started_at,
        finished_at=result.finished_at,
        error_code=result.error.code if result.error else None,
        error_message=result.error.message if result.error else None,
        details={"attempts": details["attempts"], "error": details.get("error")},
    )
    session.add(record)
    session.flush()
    return record


def finish_run(
    session: Session,
    run_id: int,
    success: bool,
    exit_code: int,
    failed_stage: str | None = None,
    error: PipelineError | None = None,
) -> PipelineRun:
    """Close a run record.

    Raises:
        RunNotFoundError: If the run does not exist.
    """
    run = get_run(session, run_id)
    run.mark_finished(
        success,
        exit_code,
        failed_stage=failed_stage,
        error_code=error.code if error else None,
        error_message=error.message if error else None,
    )
    session.flush()
    return run


def get_run(session: Session, run_id: int) -> PipelineRun:
    """Get a run record by ID.

    Raises:
        RunNotFoundError: If run not found.
    """
    run = session.get(PipelineRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    build_ref: str | None = None,
    status: RunStatus | None = None,
    limit: int = 100,
) -> list[PipelineRun]:
    """List run records, newest first, with optional filters.

    Args:
        session: Database session.
        build_ref: Filter by build ref.
        status: Filter by status.
        limit: Maximum results to return.
    """
    stmt = select(PipelineRun)

    if build_ref is not None:
        stmt = stmt.where(PipelineRun.build_ref == build_ref)
    if status is not None:
        stmt = stmt.where(PipelineRun.status == status.value)

    stmt = stmt.order_by(PipelineRun.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "RunNotFoundError",
    "finish_run",
    "get_run",
    "list_runs",
    "record_stage",
    "start_run",
]
