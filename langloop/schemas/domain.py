"""Typed in-memory domain model shared by the orchestrator and the store."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from langloop.db.models import (
    DeliveryOutcome,
    FinalReason,
    ReviewBatchStatus,
    SubtaskStatus,
    TaskStatus,
)


class SourceArticle(BaseModel):
    """Content to be translated."""

    text: str
    title: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EditorialGuidelines(BaseModel):
    """Editorial guidelines every translation is scored against."""

    model_config = ConfigDict(extra="allow")

    tone: Optional[str] = None
    style: Optional[str] = None
    target_audience: Optional[str] = None
    restrictions: list[str] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)


class VerificationResult(BaseModel):
    """Machine (LLM) verification of one translation."""

    score: float
    feedback: str = ""
    confidence: float
    completed_at: datetime


class HumanReviewResult(BaseModel):
    """Human review returned by the review marketplace."""

    study_id: Optional[str] = None
    score: float
    feedback: str = ""
    reviewer_ids: list[str] = Field(default_factory=list)
    completed_at: datetime


class Iteration(BaseModel):
    number: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    llm_verification: Optional[VerificationResult] = None
    human_review: Optional[HumanReviewResult] = None
    llm_reverification: Optional[VerificationResult] = None
    combined_score: Optional[float] = None
    needs_another_iteration: Optional[bool] = None
    final_reason: Optional[FinalReason] = None

    @property
    def final_score(self) -> Optional[float]:
        """Combined score when the iteration went through review, else the machine score."""
        if self.combined_score is not None:
            return self.combined_score
        if self.llm_verification is not None:
            return self.llm_verification.score
        return None


class LanguageSubtask(BaseModel):
    task_id: str
    language: str
    status: SubtaskStatus
    current_iteration: int = 0
    max_iterations: int
    confidence_threshold: float
    iterations: list[Iteration] = Field(default_factory=list)
    translated_text: Optional[str] = None
    review_batch_ids: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    processing_finished_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return subtask_id(self.task_id, self.language)

    @property
    def latest_iteration(self) -> Optional[Iteration]:
        return self.iterations[-1] if self.iterations else None


class DeliveryAttempt(BaseModel):
    event_type: str
    destination: str
    attempt: int
    outcome: DeliveryOutcome
    status_code: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime
    last_attempt_at: Optional[datetime] = None


class ReviewStudy(BaseModel):
    study_id: str
    task_id: str
    batch_id: str
    languages: list[str]
    iteration_numbers: dict[str, int] = Field(default_factory=dict)
    study_status: Optional[str] = None
    created_at: datetime


class ReviewBatch(BaseModel):
    batch_id: str
    task_id: str
    languages: list[str]
    iteration_numbers: dict[str, int] = Field(default_factory=dict)
    status: ReviewBatchStatus
    study_id: Optional[str] = None
    created_at: datetime


class Task(BaseModel):
    id: str
    status: TaskStatus
    source: SourceArticle
    guidelines: EditorialGuidelines
    languages: list[str]
    max_iterations: int
    confidence_threshold: float
    progress: int = 0
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    subtasks: dict[str, LanguageSubtask] = Field(default_factory=dict)
    delivery_log: list[DeliveryAttempt] = Field(default_factory=list)
    studies: dict[str, ReviewStudy] = Field(default_factory=dict)


def subtask_id(task_id: str, language: str) -> str:
    """Identifier of the sub-task for one language of a task."""
    return f"{task_id}_{language}"
