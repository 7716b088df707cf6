"""Run record ORM models.

This module defines the PipelineRun and StageRecord models that keep a
history of pipeline runs and the outcome of each of their stages.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sdk_pipeline.db import Base
from sdk_pipeline.types import RunStatus


class PipelineRun(Base):
    """ORM model for one execution of the pipeline.

    Attributes:
        id: Primary key.
        build_ref: Build the run verified.
        status: Run status (running, succeeded, failed).
        started_at: Timestamp when the run started.
        finished_at: Timestamp when the run finished.
        exit_code: Process exit code reported for the run.
        failed_stage: Name of the stage that ended the run.
        error_code: Code of the error that ended the run.
        error_message: Message of the error that ended the run.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.RUNNING.value, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    failed_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    stages: Mapped[list["StageRecord"]] = relationship(
        "StageRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="StageRecord.id",
    )

    __table_args__ = (Index("ix_pipeline_runs_build_ref_status", "build_ref", "status"),)

    def __repr__(self) -> str:
        """Return string representation of PipelineRun."""
        return (
            f"<PipelineRun(id={self.id}, build_ref='{self.build_ref}', "
            f"status='{self.status}')>"
        )

    def mark_finished(
        self,
        success: bool,
        exit_code: int,
        failed_stage: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Record the terminal state of this run."""
        self.status = RunStatus.SUCCEEDED.value if success else RunStatus.FAILED.value
        self.finished_at = datetime.now()
        self.exit_code = exit_code
        self.failed_stage = failed_stage
        self.error_code = error_code
        self.error_message = error_message


class StageRecord(Base):
    """ORM model for the outcome of one stage of a run.

    Attributes:
        id: Primary key.
        run_id: Foreign key to PipelineRun.
        name: Stage name.
        kind: Stage kind.
        status: Terminal stage status.
        attempts: Number of attempts made.
        started_at: Timestamp when the stage started.
        finished_at: Timestamp when the stage finished.
        error_code: Code of the error if the stage failed.
        error_message: Message of the error if the stage failed.
        details: JSON with attempt records and error details.
    """

    __tablename__ = "stage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="stages")

    def __repr__(self) -> str:
        """Return string representation of StageRecord."""
        return (
            f"<StageRecord(id={self.id}, run_id={self.run_id}, "
            f"name='{self.name}', status='{self.status}')>"
        )


__all__ = ["PipelineRun", "StageRecord"]
