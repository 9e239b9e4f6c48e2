"""Database models for the translation orchestration service."""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from langloop.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def str_enum(enum_cls: type[enum.Enum]) -> Enum:
    """Enum column storing member values ('pending') rather than names."""
    return Enum(enum_cls, name=enum_cls.__name__.lower(), values_callable=lambda e: [m.value for m in e])


class TaskStatus(str, enum.Enum):
    """Status of a translation task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubtaskStatus(str, enum.Enum):
    """Status of a single language sub-task."""

    PENDING = "pending"
    TRANSLATING = "translating"
    TRANSLATION_COMPLETE = "translation_complete"
    LLM_VERIFYING = "llm_verifying"
    LLM_VERIFIED = "llm_verified"
    REVIEW_READY = "review_ready"
    REVIEW_QUEUED = "review_queued"
    REVIEW_ACTIVE = "review_active"
    REVIEW_COMPLETE = "review_complete"
    LLM_REVERIFYING = "llm_reverifying"
    ITERATION_COMPLETE = "iteration_complete"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubtaskStatus.FINALIZED, SubtaskStatus.FAILED)


ACTIVE_SUBTASK_STATUSES = tuple(s for s in SubtaskStatus if not s.is_terminal)


class FinalReason(str, enum.Enum):
    """Why a sub-task left the convergence loop."""

    THRESHOLD_MET = "threshold_met"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


class DeliveryOutcome(str, enum.Enum):
    """Outcome of one outbound webhook attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class ReviewBatchStatus(str, enum.Enum):
    """Lifecycle of a human review batch."""

    CREATED = "created"
    STUDY_CREATED = "study_created"
    PUBLISHED = "published"
    COMPLETED = "completed"


class Task(Base):
    """A translation request spanning several target languages."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[TaskStatus] = mapped_column(
        str_enum(TaskStatus), default=TaskStatus.PENDING, index=True
    )

    # Content
    source: Mapped[dict] = mapped_column(JSON)  # {"text", "title", "metadata"}
    guidelines: Mapped[dict] = mapped_column(JSON, default=dict)
    languages: Mapped[list] = mapped_column(JSON, default=list)

    # Convergence settings
    max_iterations: Mapped[int] = mapped_column(Integer, default=3)
    confidence_threshold: Mapped[float] = mapped_column(Float, default=4.5)

    progress: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    subtasks: Mapped[list["LanguageSubtask"]] = relationship(
        "LanguageSubtask",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LanguageSubtask.created_at",
    )
    deliveries: Mapped[list["DeliveryAttempt"]] = relationship(
        "DeliveryAttempt",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DeliveryAttempt.id",
    )
    studies: Mapped[list["ReviewStudy"]] = relationship(
        "ReviewStudy", cascade="all, delete-orphan", passive_deletes=True
    )
    batches: Mapped[list["ReviewBatch"]] = relationship(
        "ReviewBatch", cascade="all, delete-orphan", passive_deletes=True
    )


class LanguageSubtask(Base):
    """The per-language unit of work within a task."""

    __tablename__ = "language_subtasks"
    __table_args__ = (UniqueConstraint("task_id", "language", name="uq_subtask_task_language"),)

    id: Mapped[str] = mapped_column(String(80), primary_key=True)  # "{task_id}_{language}"
    task_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tasks.id", ondelete="CASCADE"), index=True
    )
    language: Mapped[str] = mapped_column(String(16))
    status: Mapped[SubtaskStatus] = mapped_column(
        str_enum(SubtaskStatus), default=SubtaskStatus.PENDING, index=True
    )

    current_iteration: Mapped[int] = mapped_column(Integer, default=0)
    max_iterations: Mapped[int] = mapped_column(Integer, default=3)
    confidence_threshold: Mapped[float] = mapped_column(Float, default=4.5)

    translated_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    review_batch_ids: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    task: Mapped["Task"] = relationship("Task", back_populates="subtasks")
    iterations: Mapped[list["Iteration"]] = relationship(
        "Iteration",
        back_populates="subtask",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Iteration.number",
    )


class Iteration(Base):
    """One verify -> review -> re-verify pass of a sub-task."""

    __tablename__ = "iterations"
    __table_args__ = (UniqueConstraint("subtask_id", "number", name="uq_iteration_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subtask_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("language_subtasks.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[int] = mapped_column(Integer)

    # {"score", "feedback", "confidence", "completed_at"}
    llm_verification: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # {"study_id", "score", "feedback", "reviewer_ids", "completed_at"}
    human_review: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    llm_reverification: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    combined_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    needs_another_iteration: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    final_reason: Mapped[Optional[FinalReason]] = mapped_column(str_enum(FinalReason), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    subtask: Mapped["LanguageSubtask"] = relationship("LanguageSubtask", back_populates="iterations")


class DeliveryAttempt(Base):
    """Append-only audit record of an outbound event delivery attempt."""

    __tablename__ = "delivery_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tasks.id", ondelete="CASCADE"), index=True
    )
    event_type: Mapped[str] = mapped_column(String(64))
    destination: Mapped[str] = mapped_column(Text)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    outcome: Mapped[DeliveryOutcome] = mapped_column(str_enum(DeliveryOutcome))
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    task: Mapped["Task"] = relationship("Task", back_populates="deliveries")


class ReviewBatch(Base):
    """A group of review-ready languages handed to the review marketplace."""

    __tablename__ = "review_batches"

    batch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tasks.id", ondelete="CASCADE"), index=True
    )
    languages: Mapped[list] = mapped_column(JSON, default=list)
    iteration_numbers: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[ReviewBatchStatus] = mapped_column(
        str_enum(ReviewBatchStatus), default=ReviewBatchStatus.CREATED
    )
    study_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReviewStudy(Base):
    """Maps an external review study back to its task (secondary index)."""

    __tablename__ = "review_studies"

    study_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    task_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tasks.id", ondelete="CASCADE"), index=True
    )
    batch_id: Mapped[str] = mapped_column(String(64))
    languages: Mapped[list] = mapped_column(JSON, default=list)
    iteration_numbers: Mapped[dict] = mapped_column(JSON, default=dict)
    study_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
