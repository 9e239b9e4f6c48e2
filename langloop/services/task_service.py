"""Translation task orchestration.

The ``TaskService`` owns the per-language state machine::

    pending -> translating -> translation_complete -> llm_verifying -> llm_verified
      -> finalized                                  (machine score meets threshold)
      -> review_ready -> review_queued -> review_active -> review_complete
          -> llm_reverifying -> iteration_complete -> (review_ready | finalized)
    any active state -> failed

Each inbound event advances exactly one language by one compare-and-set
transition. When the guard fails the event is stale or a duplicate and the
handler does nothing, so replays never regress a status or duplicate an
iteration.
"""

import logging
import math
import time
from datetime import datetime
from typing import Any, Awaitable, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from langloop.config import Settings, get_settings
from langloop.db.models import (
    ACTIVE_SUBTASK_STATUSES,
    FinalReason,
    ReviewBatchStatus,
    SubtaskStatus,
    TaskStatus,
    utcnow,
)
from langloop.schemas import events as ev
from langloop.schemas.domain import (
    EditorialGuidelines,
    HumanReviewResult,
    Iteration,
    LanguageSubtask,
    SourceArticle,
    Task,
    VerificationResult,
    subtask_id,
)
from langloop.schemas.events import EventEnvelope, EventType, build_event
from langloop.services import iteration as convergence
from langloop.services.capabilities import Scorer, Translator
from langloop.services.delivery import DeliveryResult, EventEmitter
from langloop.services.errors import (
    CapabilityError,
    DeliveryError,
    RetriggerRejected,
    SubtaskNotFoundError,
    TaskNotFoundError,
)
from langloop.services.review_batches import ReviewBatcher
from langloop.services.task_store import TaskStore
from langloop.services.work_log import WorkItem, WorkLog, WorkStep

logger = logging.getLogger(__name__)

MIN_SCORE, MAX_SCORE = 1.0, 5.0
MIN_ITERATIONS, MAX_ITERATIONS = 1, 5

# Status of the first active language -> event that gets it moving again
RETRIGGER_EVENTS: dict[SubtaskStatus, EventType] = {
    SubtaskStatus.REVIEW_READY: EventType.REVIEW_BATCH_CREATED,
    SubtaskStatus.REVIEW_QUEUED: EventType.REVIEW_BATCH_CREATED,
    SubtaskStatus.LLM_VERIFYING: EventType.LLM_VERIFICATION_STARTED,
    SubtaskStatus.LLM_REVERIFYING: EventType.LLM_REVERIFICATION_STARTED,
    SubtaskStatus.TRANSLATING: EventType.TRANSLATION_STARTED,
}
FALLBACK_RETRIGGER_EVENT = "task.status.changed"


def _elapsed_ms(started: Optional[datetime], finished: Optional[datetime]) -> int:
    if not started or not finished:
        return 0
    return max(0, int((finished - started).total_seconds() * 1000))


def normalize_languages(languages: list[str]) -> list[str]:
    """Lower-case, strip and de-duplicate language codes keeping their order."""
    seen: list[str] = []
    for language in languages:
        code = language.strip().lower()
        if code and code not in seen:
            seen.append(code)
    return seen


class TaskService:
    """Drives translation tasks through translation, verification and review."""

    def __init__(
        self,
        store: TaskStore,
        emitter: EventEmitter,
        translator: Translator,
        scorer: Scorer,
        review_batcher: Optional[ReviewBatcher] = None,
        work_log: Optional[WorkLog] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.emitter = emitter
        self.translator = translator
        self.scorer = scorer
        self.review_batcher = review_batcher
        self.work_log = work_log
        self.settings = settings or get_settings()

    @property
    def uses_work_log(self) -> bool:
        return self.settings.processing_mode == "work_log" and self.work_log is not None

    async def _emit(
        self,
        event_type: Union[EventType, str],
        task_id: str,
        data: Union[BaseModel, dict[str, Any]],
        language: Optional[str] = None,
    ) -> DeliveryResult:
        event = build_event(
            event_type,
            task_id,
            data,
            sub_task_id=subtask_id(task_id, language) if language else None,
        )
        return await self.emitter.emit(event)

    async def _require_task(self, task_id: str) -> Task:
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    # ============== Task lifecycle ==============

    async def create_task(
        self,
        source: SourceArticle,
        guidelines: EditorialGuidelines,
        languages: list[str],
        max_iterations: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
    ) -> Task:
        """
        Create a task with one sub-task per language and announce it.

        Args:
            source: Article to translate
            guidelines: Editorial guidelines for every language
            languages: Target languages
            max_iterations: Human review rounds allowed per language (1-5)
            confidence_threshold: Score that finalizes a language (1-5)

        Returns:
            The created task

        Raises:
            ValueError: If the request is out of bounds
        """
        languages = normalize_languages(languages)
        if not languages:
            raise ValueError("At least one destination language is required")
        if not source.text.strip():
            raise ValueError("Source text must not be empty")

        if max_iterations is None:
            max_iterations = self.settings.default_max_iterations
        if confidence_threshold is None:
            confidence_threshold = self.settings.default_confidence_threshold
        if not MIN_ITERATIONS <= max_iterations <= MAX_ITERATIONS:
            raise ValueError(f"max_iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}")
        if not MIN_SCORE <= confidence_threshold <= MAX_SCORE:
            raise ValueError(f"confidence_threshold must be between {MIN_SCORE:g} and {MAX_SCORE:g}")

        task_id = str(uuid4())
        await self.store.create_task(
            task_id,
            source=source,
            guidelines=guidelines,
            languages=languages,
            max_iterations=max_iterations,
            confidence_threshold=confidence_threshold,
        )
        logger.info(f"Created task {task_id} for languages {languages}")

        data = ev.TaskCreatedData(
            destination_languages=languages,
            max_review_iterations=max_iterations,
            confidence_threshold=confidence_threshold,
        )
        try:
            result = await self._emit(EventType.TASK_CREATED, task_id, data)
        except DeliveryError as e:
            await self.store.update_task(task_id, error=str(e))
            raise

        if not result.delivered and not result.quota_exceeded:
            await self.store.update_task(task_id, error=f"Failed to emit task.created: {result.error}")

        return await self._require_task(task_id)

    async def get_task(self, task_id: str) -> Task:
        return await self._require_task(task_id)

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 50, offset: int = 0) -> list[Task]:
        return await self.store.list_tasks(status=status, limit=limit, offset=offset)

    async def delete_task(self, task_id: str) -> None:
        if not await self.store.delete_task(task_id):
            raise TaskNotFoundError(task_id)

    async def iteration_summary(self, task_id: str, language: str) -> dict[str, Any]:
        """Per-iteration scores and the final outcome for one language."""
        await self._require_task(task_id)
        subtask = await self.store.get_subtask(task_id, language.lower())
        if subtask is None:
            raise SubtaskNotFoundError(task_id, language)
        return {"task_id": task_id, **convergence.summarize(subtask)}

    async def handle_task_created(self, event: EventEnvelope, data: ev.TaskCreatedData) -> None:
        moved = await self.store.transition_task(
            event.task_id, [TaskStatus.PENDING], TaskStatus.PROCESSING, progress=10
        )
        if not moved:
            logger.info(f"Task {event.task_id} already started; ignoring duplicate task.created")
            return

        task = await self._require_task(event.task_id)
        for language in task.languages:
            subtask = task.subtasks[language]
            await self._emit(
                EventType.SUBTASK_CREATED,
                task.id,
                ev.SubtaskCreatedData(
                    language=language,
                    parent_task_id=task.id,
                    current_iteration=subtask.current_iteration,
                    max_iterations=subtask.max_iterations,
                ),
                language=language,
            )

    async def handle_subtask_created(self, event: EventEnvelope, data: ev.SubtaskCreatedData) -> None:
        moved = await self.store.transition(
            event.task_id,
            data.language,
            expected=[SubtaskStatus.PENDING],
            new_status=SubtaskStatus.TRANSLATING,
            fields={"current_iteration": 1, "processing_started_at": utcnow()},
        )
        if not moved:
            logger.info(f"Sub-task {data.language} of {event.task_id} already started")
            return

        await self._emit(
            EventType.TRANSLATION_STARTED,
            event.task_id,
            ev.TranslationStartedData(language=data.language, current_iteration=1),
            language=data.language,
        )

    # ============== Capability steps ==============

    async def _capability(self, name: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except CapabilityError:
            raise
        except Exception as e:
            raise CapabilityError(name, str(e)) from e

    async def _run_or_enqueue(self, task_id: str, language: str, step: WorkStep) -> None:
        """Run a capability step inline, or hand it to the work log."""
        if self.uses_work_log:
            item = WorkItem(
                task_id=task_id,
                step=step,
                max_retries=self.settings.work_log_max_retries,
                data={"language": language, "subTaskId": subtask_id(task_id, language)},
            )
            await self.work_log.enqueue(item)
            return

        runners = {
            WorkStep.TRANSLATE: self.run_translation,
            WorkStep.VERIFY: self.run_verification,
            WorkStep.REVIEW: self.run_reverification,
        }
        try:
            await runners[step](task_id, language)
        except CapabilityError as e:
            logger.error(f"{step.value} failed for {language} of task {task_id}: {e}")
            await self.fail_subtask(task_id, language, str(e))

    async def _load(self, task_id: str, language: str, expected: SubtaskStatus) -> Optional[tuple[Task, LanguageSubtask]]:
        task = await self.store.get_task(task_id)
        if task is None:
            logger.warning(f"Task {task_id} not found")
            return None
        subtask = task.subtasks.get(language)
        if subtask is None:
            logger.warning(f"Sub-task {language} of task {task_id} not found")
            return None
        if subtask.status != expected:
            logger.info(
                f"Sub-task {language} of task {task_id} is {subtask.status.value}, "
                f"expected {expected.value}; skipping"
            )
            return None
        return task, subtask

    async def run_translation(self, task_id: str, language: str) -> bool:
        """Translate one language and move it to ``translation_complete``."""
        loaded = await self._load(task_id, language, SubtaskStatus.TRANSLATING)
        if loaded is None:
            return False
        task, subtask = loaded

        started = time.monotonic()
        translated = await self._capability(
            "translation", self.translator.translate(task.source.text, task.guidelines, language)
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)

        moved = await self.store.transition(
            task_id,
            language,
            expected=[SubtaskStatus.TRANSLATING],
            new_status=SubtaskStatus.TRANSLATION_COMPLETE,
            fields={"translated_text": translated},
        )
        if moved:
            await self._emit(
                EventType.TRANSLATION_COMPLETED,
                task_id,
                ev.TranslationCompletedData(
                    language=language,
                    translated_text=translated,
                    translation_time=elapsed_ms,
                    current_iteration=subtask.current_iteration,
                ),
                language=language,
            )
        return moved

    async def run_verification(self, task_id: str, language: str) -> bool:
        """Score the translation against the guidelines with the full source as context."""
        loaded = await self._load(task_id, language, SubtaskStatus.LLM_VERIFYING)
        if loaded is None:
            return False
        task, subtask = loaded

        context = _source_context(task.source)
        result = await self._capability(
            "scoring", self.scorer.score(subtask.translated_text or "", task.guidelines, context)
        )
        score = result.normalized

        moved = await self.store.transition(
            task_id,
            language,
            expected=[SubtaskStatus.LLM_VERIFYING],
            new_status=SubtaskStatus.LLM_VERIFIED,
        )
        if moved:
            await self._emit(
                EventType.LLM_VERIFICATION_COMPLETED,
                task_id,
                ev.VerificationCompletedData(
                    language=language,
                    verification_score=score,
                    issues=result.findings,
                    current_iteration=subtask.current_iteration,
                    needs_human_review=score < subtask.confidence_threshold,
                ),
                language=language,
            )
        return moved

    async def run_reverification(self, task_id: str, language: str) -> bool:
        """Score again with the human feedback and close the current iteration."""
        loaded = await self._load(task_id, language, SubtaskStatus.LLM_REVERIFYING)
        if loaded is None:
            return False
        task, subtask = loaded

        current = subtask.latest_iteration
        if current is None or current.human_review is None:
            raise CapabilityError("scoring", f"iteration {subtask.current_iteration} has no human review")

        human = current.human_review
        context = (
            f"{_source_context(task.source)}\n\n"
            f"Human reviewer feedback (score {human.score:g}/5):\n{human.feedback or 'No written feedback.'}"
        )
        result = await self._capability(
            "scoring", self.scorer.score(subtask.translated_text or "", task.guidelines, context)
        )
        post_human = result.normalized
        combined = convergence.combine_scores(human.score, post_human)
        needs_more = convergence.needs_another_iteration(
            combined, subtask.confidence_threshold, subtask.current_iteration, subtask.max_iterations
        )
        now = utcnow()
        values: dict[str, Any] = {
            "llm_reverification": VerificationResult(
                score=post_human,
                feedback="\n".join(result.findings),
                confidence=min(post_human / MAX_SCORE, 1.0),
                completed_at=now,
            ),
            "combined_score": combined,
            "needs_another_iteration": needs_more,
            "completed_at": now,
        }
        if not needs_more:
            values["final_reason"] = convergence.final_reason(combined, subtask.confidence_threshold)

        moved = await self.store.transition(
            task_id,
            language,
            expected=[SubtaskStatus.LLM_REVERIFYING],
            new_status=SubtaskStatus.ITERATION_COMPLETE,
            update_iteration=(current.number, values),
        )
        if moved:
            await self._emit(
                EventType.LLM_REVERIFICATION_COMPLETED,
                task_id,
                ev.ReverificationCompletedData(
                    language=language,
                    post_human_score=post_human,
                    current_iteration=subtask.current_iteration,
                    combined_score=combined,
                    needs_another_iteration=needs_more,
                    max_iterations_reached=subtask.current_iteration >= subtask.max_iterations,
                ),
                language=language,
            )
        return moved

    async def fail_subtask(self, task_id: str, language: str, error: str) -> bool:
        """Move an active sub-task to ``failed`` and re-check task completion."""
        moved = await self.store.transition(
            task_id,
            language,
            expected=ACTIVE_SUBTASK_STATUSES,
            new_status=SubtaskStatus.FAILED,
            fields={"error": error, "processing_finished_at": utcnow()},
        )
        if moved:
            logger.error(f"Sub-task {language} of task {task_id} failed: {error}")
            await self.check_task_completion(task_id)
        return moved

    # ============== Event handlers ==============

    async def handle_translation_started(self, event: EventEnvelope, data: ev.TranslationStartedData) -> None:
        await self._run_or_enqueue(event.task_id, data.language, WorkStep.TRANSLATE)

    async def handle_translation_completed(self, event: EventEnvelope, data: ev.TranslationCompletedData) -> None:
        moved = await self.store.transition(
            event.task_id,
            data.language,
            expected=[SubtaskStatus.TRANSLATION_COMPLETE],
            new_status=SubtaskStatus.LLM_VERIFYING,
        )
        if not moved:
            logger.info(f"Ignoring stale translation.completed for {data.language} of {event.task_id}")
            return

        await self._emit(
            EventType.LLM_VERIFICATION_STARTED,
            event.task_id,
            ev.VerificationStartedData(language=data.language, current_iteration=data.current_iteration),
            language=data.language,
        )

    async def handle_verification_started(self, event: EventEnvelope, data: ev.VerificationStartedData) -> None:
        await self._run_or_enqueue(event.task_id, data.language, WorkStep.VERIFY)

    async def handle_verification_completed(self, event: EventEnvelope, data: ev.VerificationCompletedData) -> None:
        """Finalize on a passing machine score, otherwise queue the language for human review."""
        subtask = await self.store.get_subtask(event.task_id, data.language)
        if subtask is None:
            logger.warning(f"Sub-task {data.language} of task {event.task_id} not found")
            return

        now = utcnow()
        score = data.verification_score
        iteration = Iteration(
            number=max(subtask.current_iteration, 1),
            started_at=subtask.processing_started_at or now,
            llm_verification=VerificationResult(
                score=score,
                feedback="\n".join(data.issues),
                confidence=min(score / MAX_SCORE, 1.0),
                completed_at=now,
            ),
        )

        if score >= subtask.confidence_threshold:
            iteration.completed_at = now
            iteration.needs_another_iteration = False
            iteration.final_reason = FinalReason.THRESHOLD_MET
            moved = await self.store.transition(
                event.task_id,
                data.language,
                expected=[SubtaskStatus.LLM_VERIFIED],
                new_status=SubtaskStatus.FINALIZED,
                fields={"processing_finished_at": now},
                append_iteration=iteration,
            )
            if moved:
                await self._announce_finalized(event.task_id, data.language)
            return

        moved = await self.store.transition(
            event.task_id,
            data.language,
            expected=[SubtaskStatus.LLM_VERIFIED],
            new_status=SubtaskStatus.REVIEW_READY,
            append_iteration=iteration,
        )
        if moved:
            logger.info(
                f"{data.language} of task {event.task_id} scored {score:g} "
                f"(< {subtask.confidence_threshold:g}); needs human review"
            )
            await self._request_review(event.task_id)

    async def _request_review(self, task_id: str) -> None:
        if self.review_batcher is None:
            return
        await self.review_batcher.batch_ready(task_id)

    async def handle_review_batch_created(self, event: EventEnvelope, data: ev.ReviewBatchCreatedData) -> None:
        if self.review_batcher is None:
            logger.warning(f"No review batcher configured; ignoring batch {data.batch_id}")
            return
        try:
            await self.review_batcher.handle_batch_created(event, data)
        except CapabilityError as e:
            for language in data.ready_languages:
                await self.fail_subtask(event.task_id, language, str(e))

    async def handle_study_created(self, event: EventEnvelope, data: ev.StudyCreatedData) -> None:
        if self.review_batcher is None:
            return
        try:
            await self.review_batcher.handle_study_created(event, data)
        except CapabilityError as e:
            for language in data.languages:
                await self.fail_subtask(event.task_id, language, str(e))

    async def handle_study_published(self, event: EventEnvelope, data: ev.StudyPublishedData) -> None:
        if self.review_batcher is None:
            return
        await self.review_batcher.handle_study_published(event, data)

    async def handle_study_status(self, notification: ev.ProlificStudyNotification) -> None:
        if self.review_batcher is None:
            return
        await self.review_batcher.handle_study_status(notification)

    async def handle_review_results(self, event: EventEnvelope, data: ev.ReviewResultsReceivedData) -> None:
        """
        Record human reviews on the current iteration of each reviewed language.

        Results only count for the iteration their study was created for; a
        study whose batch is already completed has been applied before.
        """
        study = await self.store.get_study(data.prolific_study_id)
        if study is None:
            logger.warning(f"Review results for unmapped study {data.prolific_study_id} of task {event.task_id}")
            return
        batch = await self.store.get_batch(study.batch_id)
        if batch is not None and batch.status == ReviewBatchStatus.COMPLETED:
            logger.info(f"Ignoring duplicate review results for study {study.study_id}")
            return

        now = utcnow()
        for language, review in data.review_results.items():
            language = language.lower()
            subtask = await self.store.get_subtask(event.task_id, language)
            if subtask is None:
                logger.warning(f"Review results for unknown sub-task {language} of task {event.task_id}")
                continue
            reviewed = review.iteration if review.iteration is not None else study.iteration_numbers.get(language)
            if reviewed != subtask.current_iteration:
                logger.info(
                    f"Ignoring review of iteration {reviewed} for {language}; "
                    f"current iteration is {subtask.current_iteration}"
                )
                continue

            human = HumanReviewResult(
                study_id=data.prolific_study_id,
                score=review.score,
                feedback=review.feedback,
                reviewer_ids=review.reviewer_ids,
                completed_at=now,
            )
            moved = await self.store.transition(
                event.task_id,
                language,
                expected=[SubtaskStatus.REVIEW_READY, SubtaskStatus.REVIEW_QUEUED, SubtaskStatus.REVIEW_ACTIVE],
                new_status=SubtaskStatus.REVIEW_COMPLETE,
                update_iteration=(subtask.current_iteration, {"human_review": human}),
            )
            if not moved:
                logger.info(f"Ignoring duplicate review results for {language} of {event.task_id}")
                continue

            await self._emit(
                EventType.LLM_REVERIFICATION_STARTED,
                event.task_id,
                ev.ReverificationStartedData(
                    language=language,
                    current_iteration=subtask.current_iteration,
                    human_review_score=review.score,
                ),
                language=language,
            )

        if self.review_batcher is not None:
            await self.review_batcher.complete_study(data.prolific_study_id)

    async def handle_reverification_started(self, event: EventEnvelope, data: ev.ReverificationStartedData) -> None:
        moved = await self.store.transition(
            event.task_id,
            data.language,
            expected=[SubtaskStatus.REVIEW_COMPLETE],
            new_status=SubtaskStatus.LLM_REVERIFYING,
        )
        if not moved:
            subtask = await self.store.get_subtask(event.task_id, data.language)
            if subtask is None or subtask.status != SubtaskStatus.LLM_REVERIFYING:
                logger.info(f"Ignoring stale llm_reverification.started for {data.language} of {event.task_id}")
                return
        await self._run_or_enqueue(event.task_id, data.language, WorkStep.REVIEW)

    async def handle_reverification_completed(
        self, event: EventEnvelope, data: ev.ReverificationCompletedData
    ) -> None:
        """Apply the convergence decision: another review round or finalization."""
        subtask = await self.store.get_subtask(event.task_id, data.language)
        if subtask is None or subtask.status != SubtaskStatus.ITERATION_COMPLETE:
            logger.info(f"Ignoring stale llm_reverification.completed for {data.language} of {event.task_id}")
            return

        decision = convergence.decide(subtask)
        if decision.needs_another_iteration:
            next_number = decision.next_iteration
            moved = await self.store.transition(
                event.task_id,
                data.language,
                expected=[SubtaskStatus.ITERATION_COMPLETE],
                new_status=SubtaskStatus.REVIEW_READY,
                fields={"current_iteration": next_number},
                append_iteration=Iteration(number=next_number, started_at=utcnow()),
            )
            if not moved:
                return

            logger.info(
                f"{data.language} of task {event.task_id} scored {decision.score} after iteration "
                f"{subtask.current_iteration}; starting iteration {next_number}"
            )
            refreshed = await self.store.get_subtask(event.task_id, data.language)
            await self._emit(
                EventType.ITERATION_CONTINUING,
                event.task_id,
                ev.IterationContinuingData(
                    language=data.language,
                    current_iteration=next_number,
                    iteration_history=convergence.iteration_history(refreshed or subtask),
                ),
                language=data.language,
            )
            await self._request_review(event.task_id)
            return

        # The final reason was stored when the iteration completed
        moved = await self.store.transition(
            event.task_id,
            data.language,
            expected=[SubtaskStatus.ITERATION_COMPLETE],
            new_status=SubtaskStatus.FINALIZED,
            fields={"processing_finished_at": utcnow()},
        )
        if moved:
            await self._announce_finalized(event.task_id, data.language)

    async def handle_audit_event(self, event: EventEnvelope, data: BaseModel) -> None:
        """Notifications the service emits about itself; nothing to do but log."""
        logger.info(f"Received {event.event} for task {event.task_id} ({event.sub_task_id or 'task'})")

    async def _announce_finalized(self, task_id: str, language: str) -> None:
        subtask = await self.store.get_subtask(task_id, language)
        if subtask is None:
            return
        latest = subtask.latest_iteration
        reason = latest.final_reason if latest and latest.final_reason else FinalReason.THRESHOLD_MET
        logger.info(
            f"Finalized {language} of task {task_id} after {subtask.current_iteration} iteration(s): {reason.value}"
        )
        await self._emit(
            EventType.SUBTASK_FINALIZED,
            task_id,
            ev.SubtaskFinalizedData(
                language=language,
                final_score=latest.final_score if latest else None,
                total_iterations=subtask.current_iteration,
                processing_time=_elapsed_ms(subtask.processing_started_at, subtask.processing_finished_at),
                completed_at=(subtask.processing_finished_at or utcnow()).isoformat(),
                final_reason=reason,
            ),
            language=language,
        )
        await self.check_task_completion(task_id)

    # ============== Completion ==============

    async def check_task_completion(self, task_id: str) -> bool:
        """
        Complete the task once no language is active any more.

        Returns:
            True only for the call that actually completed the task
        """
        task = await self.store.get_task(task_id)
        if task is None or task.status == TaskStatus.COMPLETED:
            return False

        subtasks = [task.subtasks[lang] for lang in task.languages if lang in task.subtasks]
        done = [s for s in subtasks if s.status.is_terminal]
        if len(done) < len(subtasks):
            progress = 10 + int(80 * len(done) / max(len(subtasks), 1))
            if progress > task.progress:
                await self.store.update_task(task_id, progress=progress)
            return False

        result = build_completion(task, utcnow())
        if not await self.store.complete_task(task_id, result.model_dump(mode="json", by_alias=True)):
            return False

        logger.info(
            f"Task {task_id} completed: {result.completed_languages} finalized, "
            f"{result.failed_languages} failed"
        )
        await self._emit(EventType.TASK_COMPLETED, task_id, result)
        return True

    # ============== Operator retrigger ==============

    async def retrigger(self, task_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Re-send the event most likely to unstick a task.

        Raises:
            TaskNotFoundError: Unknown task
            RetriggerRejected: Completed task, no delivery history, or inside
                the cooldown window
        """
        task = await self._require_task(task_id)
        if task.status == TaskStatus.COMPLETED:
            raise RetriggerRejected("Task is already completed", status_code=400)
        if not task.delivery_log:
            raise RetriggerRejected("Task has no webhook history to retrigger", status_code=400)

        now = now or utcnow()
        last = task.delivery_log[-1]
        last_at = last.last_attempt_at or last.created_at
        cooldown = self.settings.retrigger_cooldown_seconds
        elapsed = (now - last_at).total_seconds()
        if elapsed < cooldown:
            remaining = math.ceil((cooldown - elapsed) / 60)
            raise RetriggerRejected(
                f"Please wait {remaining} more minute(s) before retriggering",
                status_code=429,
                remaining_minutes=remaining,
            )

        event_type, language, data = await self._retrigger_event(task)
        logger.info(f"Retriggering {event_type} for task {task_id}")
        result = await self._emit(event_type, task_id, data, language=language)
        return {
            "task_id": task_id,
            "event": event_type.value if isinstance(event_type, EventType) else event_type,
            "language": language,
            "delivered": result.delivered,
            "status_code": result.status_code,
            "error": result.error,
        }

    async def _retrigger_event(self, task: Task) -> tuple[Union[EventType, str], Optional[str], Union[BaseModel, dict]]:
        for language in task.languages:
            subtask = task.subtasks.get(language)
            if subtask is None or subtask.status not in RETRIGGER_EVENTS:
                continue

            event_type = RETRIGGER_EVENTS[subtask.status]
            if event_type == EventType.REVIEW_BATCH_CREATED:
                ready = [
                    s.language
                    for s in task.subtasks.values()
                    if s.status in (SubtaskStatus.REVIEW_READY, SubtaskStatus.REVIEW_QUEUED)
                ]
                # Only a batch still waiting for its study can be resumed; an
                # unknown id makes the batcher batch the ready languages afresh
                batch_id = f"retrigger_{uuid4().hex[:12]}"
                if subtask.review_batch_ids:
                    latest_batch = await self.store.get_batch(subtask.review_batch_ids[-1])
                    if latest_batch is not None and latest_batch.status == ReviewBatchStatus.CREATED:
                        batch_id = latest_batch.batch_id
                return event_type, None, ev.ReviewBatchCreatedData(
                    batch_id=batch_id,
                    ready_languages=ready,
                    iteration_numbers={s: task.subtasks[s].current_iteration for s in ready},
                )
            if event_type == EventType.LLM_VERIFICATION_STARTED:
                return event_type, language, ev.VerificationStartedData(
                    language=language, current_iteration=subtask.current_iteration
                )
            if event_type == EventType.LLM_REVERIFICATION_STARTED:
                latest = subtask.latest_iteration
                human_score = latest.human_review.score if latest and latest.human_review else 0.0
                return event_type, language, ev.ReverificationStartedData(
                    language=language,
                    current_iteration=subtask.current_iteration,
                    human_review_score=human_score,
                )
            return event_type, language, ev.TranslationStartedData(
                language=language, current_iteration=max(subtask.current_iteration, 1)
            )

        return FALLBACK_RETRIGGER_EVENT, None, {"status": task.status.value, "progress": task.progress}


def _source_context(source: SourceArticle) -> str:
    if source.title:
        return f"Original article: {source.title}\n\n{source.text}"
    return f"Original article:\n\n{source.text}"


def build_completion(task: Task, completed_at: datetime) -> ev.TaskCompletedData:
    """Aggregate per-language outcomes into the ``task.completed`` payload."""
    completed, failed, scores = [], [], []
    summary: dict[str, ev.IterationSummaryEntry] = {}
    slowest = 0

    for language in task.languages:
        subtask = task.subtasks.get(language)
        if subtask is None:
            continue
        slowest = max(slowest, _elapsed_ms(subtask.processing_started_at, subtask.processing_finished_at))
        if subtask.status == SubtaskStatus.FAILED:
            failed.append(language)
            continue

        completed.append(language)
        latest = subtask.latest_iteration
        final_score = latest.final_score if latest else None
        if final_score is not None:
            scores.append(final_score)
        reason = latest.final_reason.value if latest and latest.final_reason else FinalReason.THRESHOLD_MET.value
        summary[language] = ev.IterationSummaryEntry(
            iterations=subtask.current_iteration,
            final_score=final_score,
            reason=reason,
        )

    return ev.TaskCompletedData(
        completed_languages=completed,
        failed_languages=failed,
        total_processing_time=slowest,
        average_score=round(sum(scores) / len(scores), 4) if scores else 0.0,
        iteration_summary=summary,
        completed_at=completed_at.isoformat(),
    )
