"""Webhook event envelope and per-event payload models.

Every event travels in the same envelope::

    {"event": "...", "taskId": "...", "subTaskId": "...", "timestamp": 1700000000000, "data": {...}}

``timestamp`` is POSIX milliseconds. ``data`` is validated against the model
registered for the event type in ``EVENT_DATA_MODELS`` when the event is
dispatched, not when it is received.
"""

import enum
import time
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr
from pydantic.alias_generators import to_camel

from langloop.db.models import FinalReason, SubtaskStatus, TaskStatus


class EventType(str, enum.Enum):
    """Closed set of event kinds the orchestrator understands."""

    TASK_CREATED = "task.created"
    SUBTASK_CREATED = "language_subtask.created"
    TRANSLATION_STARTED = "subtask.translation.started"
    TRANSLATION_COMPLETED = "subtask.translation.completed"
    LLM_VERIFICATION_STARTED = "subtask.llm_verification.started"
    LLM_VERIFICATION_COMPLETED = "subtask.llm_verification.completed"
    REVIEW_BATCH_CREATED = "review_batch.created"
    STUDY_CREATED = "prolific_study.created"
    STUDY_PUBLISHED = "prolific_study.published"
    REVIEW_RESULTS_RECEIVED = "prolific_results.received"
    LLM_REVERIFICATION_STARTED = "subtask.llm_reverification.started"
    LLM_REVERIFICATION_COMPLETED = "subtask.llm_reverification.completed"
    ITERATION_CONTINUING = "subtask.iteration.continuing"
    SUBTASK_FINALIZED = "subtask.finalized"
    TASK_COMPLETED = "task.completed"

    @classmethod
    def parse(cls, value: str) -> Optional["EventType"]:
        """Return the matching member, or None for event names we do not handle."""
        try:
            return cls(value)
        except ValueError:
            return None


class EventEnvelope(BaseModel):
    """Structural contract every inbound and outbound event must satisfy."""

    model_config = ConfigDict(populate_by_name=True)

    event: StrictStr = Field(min_length=1)
    task_id: StrictStr = Field(alias="taskId", min_length=1)
    sub_task_id: Optional[str] = Field(None, alias="subTaskId")
    timestamp: Union[StrictInt, StrictFloat]
    data: Any
    retry_count: int = Field(0, alias="_retryCount")

    def to_wire(self) -> dict[str, Any]:
        """Serialize with the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def now_ms() -> int:
    return int(time.time() * 1000)


def build_event(
    event_type: Union[EventType, str],
    task_id: str,
    data: Union[BaseModel, dict[str, Any]],
    sub_task_id: Optional[str] = None,
) -> EventEnvelope:
    """Create an envelope stamped with the current time."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
    return EventEnvelope(
        event=event_type.value if isinstance(event_type, EventType) else event_type,
        task_id=task_id,
        sub_task_id=sub_task_id,
        timestamp=now_ms(),
        data=data,
    )


# ============== Event payloads ==============


class EventData(BaseModel):
    """Base for ``data`` payloads: camelCase on the wire, tolerant of extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class TaskCreatedData(EventData):
    destination_languages: list[str]
    status: TaskStatus = TaskStatus.PENDING
    max_review_iterations: int
    confidence_threshold: float


class SubtaskCreatedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.PENDING
    parent_task_id: str
    current_iteration: int = 0
    max_iterations: int


class TranslationStartedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.TRANSLATING
    current_iteration: int = 1


class TranslationCompletedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.TRANSLATION_COMPLETE
    translated_text: str
    translation_time: int = 0  # milliseconds
    current_iteration: int = 1


class VerificationStartedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.LLM_VERIFYING
    current_iteration: int = 1
    verification_type: Literal["initial", "post_human"] = "initial"


class VerificationCompletedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.LLM_VERIFIED
    verification_score: float
    issues: list[str] = Field(default_factory=list)
    current_iteration: int = 1
    needs_human_review: bool


class ReviewBatchCreatedData(EventData):
    batch_id: str
    ready_languages: list[str]
    status: str = "created"
    prolific_study_id: Optional[str] = None
    iteration_numbers: dict[str, int] = Field(default_factory=dict)


class StudyCreatedData(EventData):
    batch_id: str
    prolific_study_id: str
    languages: list[str]
    status: str = "study_created"
    iteration_info: dict[str, dict[str, float]] = Field(default_factory=dict)


class StudyPublishedData(EventData):
    prolific_study_id: str
    public_url: Optional[str] = None
    estimated_completion_time: Optional[str] = None


class ReviewResult(EventData):
    score: float
    feedback: str = ""
    iteration: Optional[int] = None
    reviewer_ids: list[str] = Field(default_factory=list)


class ReviewResultsReceivedData(EventData):
    prolific_study_id: str
    completed_languages: list[str] = Field(default_factory=list)
    review_results: dict[str, ReviewResult]


class ReverificationStartedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.LLM_REVERIFYING
    current_iteration: int
    human_review_score: float
    verification_type: Literal["post_human"] = "post_human"


class ReverificationCompletedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.ITERATION_COMPLETE
    post_human_score: float
    current_iteration: int
    combined_score: float
    needs_another_iteration: bool
    max_iterations_reached: bool


class IterationContinuingData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.REVIEW_READY
    current_iteration: int
    iteration_history: list[dict[str, Any]] = Field(default_factory=list)
    needs_another_iteration: bool = True


class SubtaskFinalizedData(EventData):
    language: str
    status: SubtaskStatus = SubtaskStatus.FINALIZED
    final_score: Optional[float] = None
    total_iterations: int
    processing_time: int  # milliseconds
    completed_at: str
    final_reason: FinalReason


class IterationSummaryEntry(EventData):
    iterations: int
    final_score: Optional[float] = None
    reason: str


class TaskCompletedData(EventData):
    status: TaskStatus = TaskStatus.COMPLETED
    completed_languages: list[str]
    failed_languages: list[str] = Field(default_factory=list)
    total_processing_time: int  # milliseconds, slowest language
    average_score: float
    iteration_summary: dict[str, IterationSummaryEntry] = Field(default_factory=dict)
    completed_at: str


EVENT_DATA_MODELS: dict[EventType, type[EventData]] = {
    EventType.TASK_CREATED: TaskCreatedData,
    EventType.SUBTASK_CREATED: SubtaskCreatedData,
    EventType.TRANSLATION_STARTED: TranslationStartedData,
    EventType.TRANSLATION_COMPLETED: TranslationCompletedData,
    EventType.LLM_VERIFICATION_STARTED: VerificationStartedData,
    EventType.LLM_VERIFICATION_COMPLETED: VerificationCompletedData,
    EventType.REVIEW_BATCH_CREATED: ReviewBatchCreatedData,
    EventType.STUDY_CREATED: StudyCreatedData,
    EventType.STUDY_PUBLISHED: StudyPublishedData,
    EventType.REVIEW_RESULTS_RECEIVED: ReviewResultsReceivedData,
    EventType.LLM_REVERIFICATION_STARTED: ReverificationStartedData,
    EventType.LLM_REVERIFICATION_COMPLETED: ReverificationCompletedData,
    EventType.ITERATION_CONTINUING: IterationContinuingData,
    EventType.SUBTASK_FINALIZED: SubtaskFinalizedData,
    EventType.TASK_COMPLETED: TaskCompletedData,
}


# ============== Prolific study notifications ==============


class ProlificStudy(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: Literal["AWAITING_REVIEW", "COMPLETED", "ACTIVE", "DRAFT", "SCHEDULED"]
    name: Optional[str] = None


class ProlificStudyNotification(BaseModel):
    """Study status change posted by the review marketplace itself."""

    model_config = ConfigDict(extra="allow")

    event_type: Literal["study.status.change"]
    study: ProlificStudy
    timestamp: StrictStr
