"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from langloop.schemas.domain import (
    DeliveryAttempt,
    EditorialGuidelines,
    Iteration,
    LanguageSubtask,
    SourceArticle,
    Task,
)


def normalize_language(lang: str) -> str:
    """Normalize language code to standard format."""
    return lang.lower().strip()


# ============== Task Schemas ==============


class TaskCreateRequest(BaseModel):
    """Request to create a new translation task."""

    source: SourceArticle = Field(..., description="Article to translate")
    guidelines: EditorialGuidelines = Field(
        default_factory=EditorialGuidelines, description="Editorial guidelines for every language"
    )
    languages: list[str] = Field(..., min_length=1, max_length=50, description="Destination language codes")
    max_iterations: Optional[int] = Field(
        None, ge=1, le=5, description="Human review rounds allowed per language (default 3)"
    )
    confidence_threshold: Optional[float] = Field(
        None, ge=1, le=5, description="Score (1-5) a language must reach to finalize (default 4.5)"
    )

    @field_validator("languages")
    @classmethod
    def normalize_languages(cls, v: list[str]) -> list[str]:
        languages = [normalize_language(lang) for lang in v]
        if not all(languages):
            raise ValueError("Language codes must not be empty")
        return languages


class TaskCreateResponse(BaseModel):
    """Response after creating a task."""

    task_id: str
    status: str
    languages: list[str]
    max_iterations: int
    confidence_threshold: float
    error: Optional[str] = None
    created_at: datetime


class SubtaskResponse(BaseModel):
    """State of one language of a task."""

    language: str
    status: str
    current_iteration: int
    max_iterations: int
    confidence_threshold: float
    translated_text: Optional[str] = None
    review_batch_ids: list[str] = []
    error: Optional[str] = None
    iterations: list[Iteration] = []
    processing_started_at: Optional[datetime] = None
    processing_finished_at: Optional[datetime] = None
    updated_at: datetime


class TaskResponse(BaseModel):
    """Full task state."""

    id: str
    status: str
    progress: int
    languages: list[str]
    max_iterations: int
    confidence_threshold: float
    source: SourceArticle
    guidelines: EditorialGuidelines
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    subtasks: list[SubtaskResponse] = []
    delivery_log: list[DeliveryAttempt] = []


class TaskListResponse(BaseModel):
    """List of tasks."""

    tasks: list[TaskResponse]
    total: int


class IterationEntry(BaseModel):
    number: int
    status: str
    llm_score: Optional[float] = None
    human_score: Optional[float] = None
    post_human_score: Optional[float] = None
    combined_score: Optional[float] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class IterationSummaryResponse(BaseModel):
    """Iteration history of one language."""

    task_id: str
    language: str
    status: str
    current_iteration: int
    max_iterations: int
    confidence_threshold: float
    final_score: Optional[float] = None
    final_reason: Optional[str] = None
    iterations: list[IterationEntry]


class RetriggerResponse(BaseModel):
    """Outcome of an operator retrigger."""

    task_id: str
    event: str
    language: Optional[str] = None
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


# ============== Webhook Schemas ==============


class WebhookAcceptedResponse(BaseModel):
    """Acknowledgement of a verified inbound event."""

    received: bool = True
    source: str
    event: str


# ============== Health & Misc Schemas ==============


class QueueStatsResponse(BaseModel):
    """Work log statistics."""

    processing_mode: str
    stream_length: int
    total_pending: int
    consumers: dict[str, int]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


def subtask_to_response(subtask: LanguageSubtask) -> SubtaskResponse:
    return SubtaskResponse(
        language=subtask.language,
        status=subtask.status.value,
        current_iteration=subtask.current_iteration,
        max_iterations=subtask.max_iterations,
        confidence_threshold=subtask.confidence_threshold,
        translated_text=subtask.translated_text,
        review_batch_ids=subtask.review_batch_ids,
        error=subtask.error,
        iterations=subtask.iterations,
        processing_started_at=subtask.processing_started_at,
        processing_finished_at=subtask.processing_finished_at,
        updated_at=subtask.updated_at,
    )


def task_to_response(task: Task) -> TaskResponse:
    """Convert a task aggregate to its response schema."""
    return TaskResponse(
        id=task.id,
        status=task.status.value,
        progress=task.progress,
        languages=task.languages,
        max_iterations=task.max_iterations,
        confidence_threshold=task.confidence_threshold,
        source=task.source,
        guidelines=task.guidelines,
        error=task.error,
        result=task.result,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
        subtasks=[subtask_to_response(task.subtasks[lang]) for lang in task.languages if lang in task.subtasks],
        delivery_log=task.delivery_log,
    )
