"""Persistence adapter for tasks, sub-tasks and their nested records.

All mutations are short, targeted transactions. Sub-task status changes are
compare-and-set updates guarded by the expected source status, so a stale or
duplicated event that arrives after the transition already happened updates
nothing and the caller sees ``False``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from langloop.db import models
from langloop.db.models import ReviewBatchStatus, SubtaskStatus, TaskStatus, utcnow
from langloop.db.session import async_session_maker
from langloop.schemas import domain
from langloop.schemas.domain import subtask_id
from langloop.services.errors import TaskNotFoundError

logger = logging.getLogger(__name__)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskStore:
    """Reads and writes the task aggregate through SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_maker):
        self.session_factory = session_factory

    # ============== Tasks ==============

    async def create_task(
        self,
        task_id: str,
        source: domain.SourceArticle,
        guidelines: domain.EditorialGuidelines,
        languages: list[str],
        max_iterations: int,
        confidence_threshold: float,
    ) -> domain.Task:
        """
        Persist a task and one pending sub-task per language atomically.

        Args:
            task_id: Identifier of the new task
            source: Article to translate
            guidelines: Editorial guidelines
            languages: Target language codes, already normalized
            max_iterations: Review iteration budget per language
            confidence_threshold: Score a language must reach to finalize

        Returns:
            The created task
        """
        now = utcnow()
        async with self.session_factory() as db:
            db.add(
                models.Task(
                    id=task_id,
                    status=TaskStatus.PENDING,
                    source=source.model_dump(mode="json"),
                    guidelines=guidelines.model_dump(mode="json", exclude_none=True),
                    languages=list(languages),
                    max_iterations=max_iterations,
                    confidence_threshold=confidence_threshold,
                    progress=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            await db.flush()
            for language in languages:
                db.add(
                    models.LanguageSubtask(
                        id=subtask_id(task_id, language),
                        task_id=task_id,
                        language=language,
                        status=SubtaskStatus.PENDING,
                        current_iteration=0,
                        max_iterations=max_iterations,
                        confidence_threshold=confidence_threshold,
                        review_batch_ids=[],
                        created_at=now,
                        updated_at=now,
                    )
                )
            await db.commit()

        task = await self.get_task(task_id)
        if task is None:
            # Deleted between commit and reload
            raise TaskNotFoundError(task_id)
        return task

    async def get_task(self, task_id: str) -> Optional[domain.Task]:
        """Load a task with its sub-tasks, iterations, delivery log and studies."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(models.Task)
                .where(models.Task.id == task_id)
                .options(
                    selectinload(models.Task.subtasks).selectinload(models.LanguageSubtask.iterations),
                    selectinload(models.Task.deliveries),
                    selectinload(models.Task.studies),
                )
            )
            row = result.scalar_one_or_none()
            return _task_to_domain(row) if row else None

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[domain.Task]:
        """List tasks newest first, optionally filtered by status."""
        query = select(models.Task).options(
            selectinload(models.Task.subtasks).selectinload(models.LanguageSubtask.iterations),
        )
        if status:
            query = query.where(models.Task.status == status)
        query = query.order_by(models.Task.created_at.desc()).offset(offset).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [_task_to_domain(row, include_log=False) for row in result.scalars().all()]

    async def transition_task(
        self,
        task_id: str,
        expected: Iterable[TaskStatus],
        new_status: TaskStatus,
        **fields: Any,
    ) -> bool:
        """Move a task to ``new_status`` only if it is currently in ``expected``."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(models.Task)
                .where(models.Task.id == task_id, models.Task.status.in_(list(expected)))
                .values(status=new_status, updated_at=utcnow(), **fields)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount > 0

    async def update_task(self, task_id: str, **fields: Any) -> None:
        """Update plain task fields (progress, error)."""
        async with self.session_factory() as db:
            await db.execute(
                update(models.Task)
                .where(models.Task.id == task_id)
                .values(updated_at=utcnow(), **fields)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def complete_task(self, task_id: str, result: dict[str, Any]) -> bool:
        """
        Mark the task completed with its aggregate result.

        Returns:
            True for the one caller that performed the transition, False for
            everyone racing behind it
        """
        now = utcnow()
        async with self.session_factory() as db:
            outcome = await db.execute(
                update(models.Task)
                .where(models.Task.id == task_id, models.Task.status != TaskStatus.COMPLETED)
                .values(
                    status=TaskStatus.COMPLETED,
                    progress=100,
                    result=result,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return outcome.rowcount > 0

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task together with everything recorded for it."""
        async with self.session_factory() as db:
            exists = await db.scalar(select(models.Task.id).where(models.Task.id == task_id))
            if exists is None:
                return False

            subtask_ids = select(models.LanguageSubtask.id).where(models.LanguageSubtask.task_id == task_id)
            await db.execute(delete(models.Iteration).where(models.Iteration.subtask_id.in_(subtask_ids)))
            await db.execute(delete(models.LanguageSubtask).where(models.LanguageSubtask.task_id == task_id))
            await db.execute(delete(models.DeliveryAttempt).where(models.DeliveryAttempt.task_id == task_id))
            await db.execute(delete(models.ReviewStudy).where(models.ReviewStudy.task_id == task_id))
            await db.execute(delete(models.ReviewBatch).where(models.ReviewBatch.task_id == task_id))
            await db.execute(delete(models.Task).where(models.Task.id == task_id))
            await db.commit()

        logger.info(f"Deleted task {task_id}")
        return True

    # ============== Sub-tasks ==============

    async def get_subtask(self, task_id: str, language: str) -> Optional[domain.LanguageSubtask]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(models.LanguageSubtask)
                .where(models.LanguageSubtask.id == subtask_id(task_id, language))
                .options(selectinload(models.LanguageSubtask.iterations))
            )
            row = result.scalar_one_or_none()
            return _subtask_to_domain(row) if row else None

    async def list_subtasks(
        self,
        task_id: Optional[str] = None,
        statuses: Optional[Iterable[SubtaskStatus]] = None,
    ) -> list[domain.LanguageSubtask]:
        """Sub-tasks filtered by task and/or status, oldest first."""
        query = select(models.LanguageSubtask).options(selectinload(models.LanguageSubtask.iterations))
        if task_id:
            query = query.where(models.LanguageSubtask.task_id == task_id)
        if statuses is not None:
            query = query.where(models.LanguageSubtask.status.in_(list(statuses)))
        query = query.order_by(models.LanguageSubtask.created_at, models.LanguageSubtask.language)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [_subtask_to_domain(row) for row in result.scalars().all()]

    async def transition(
        self,
        task_id: str,
        language: str,
        expected: Iterable[SubtaskStatus],
        new_status: SubtaskStatus,
        fields: Optional[dict[str, Any]] = None,
        append_iteration: Optional[domain.Iteration] = None,
        update_iteration: Optional[tuple[int, dict[str, Any]]] = None,
    ) -> bool:
        """
        Compare-and-set a sub-task status.

        The status change, the extra ``fields`` and any iteration write happen
        in one transaction, so an iteration is never appended or amended by
        an event whose transition lost the race.

        Args:
            task_id: Parent task
            language: Sub-task language
            expected: Statuses the sub-task must currently be in
            new_status: Status to move to
            fields: Additional sub-task columns to set
            append_iteration: Iteration to add to the sub-task
            update_iteration: ``(number, values)`` to apply to an existing iteration

        Returns:
            True when the transition happened, False when the guard failed
        """
        sid = subtask_id(task_id, language)
        async with self.session_factory() as db:
            result = await db.execute(
                update(models.LanguageSubtask)
                .where(
                    models.LanguageSubtask.id == sid,
                    models.LanguageSubtask.status.in_(list(expected)),
                )
                .values(status=new_status, updated_at=utcnow(), **(fields or {}))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                return False

            if update_iteration is not None:
                number, values = update_iteration
                await db.execute(
                    update(models.Iteration)
                    .where(models.Iteration.subtask_id == sid, models.Iteration.number == number)
                    .values(**_iteration_values(values))
                    .execution_options(synchronize_session=False)
                )
            if append_iteration is not None:
                db.add(models.Iteration(subtask_id=sid, **_iteration_values(append_iteration.model_dump())))

            await db.commit()
            return True

    async def queue_for_review(self, task_id: str, language: str, batch_id: str) -> bool:
        """``review_ready -> review_queued`` recording the batch on the sub-task."""
        async with self.session_factory() as db:
            current = await db.scalar(
                select(models.LanguageSubtask.review_batch_ids).where(
                    models.LanguageSubtask.id == subtask_id(task_id, language)
                )
            )
        if current is None:
            return False
        return await self.transition(
            task_id,
            language,
            expected=[SubtaskStatus.REVIEW_READY],
            new_status=SubtaskStatus.REVIEW_QUEUED,
            fields={"review_batch_ids": [*current, batch_id]},
        )

    # ============== Delivery log ==============

    async def record_delivery(self, task_id: str, attempt: domain.DeliveryAttempt) -> None:
        """Append one outbound delivery attempt to the task's log."""
        async with self.session_factory() as db:
            db.add(models.DeliveryAttempt(task_id=task_id, **attempt.model_dump()))
            await db.commit()

    async def last_delivery(self, task_id: str) -> Optional[domain.DeliveryAttempt]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(models.DeliveryAttempt)
                .where(models.DeliveryAttempt.task_id == task_id)
                .order_by(models.DeliveryAttempt.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _delivery_to_domain(row) if row else None

    # ============== Review batches and studies ==============

    async def create_batch(self, batch: domain.ReviewBatch) -> None:
        async with self.session_factory() as db:
            db.add(models.ReviewBatch(**batch.model_dump()))
            await db.commit()

    async def get_batch(self, batch_id: str) -> Optional[domain.ReviewBatch]:
        async with self.session_factory() as db:
            row = await db.get(models.ReviewBatch, batch_id)
            return _batch_to_domain(row) if row else None

    async def update_batch(
        self,
        batch_id: str,
        expected: Iterable[ReviewBatchStatus],
        new_status: ReviewBatchStatus,
        **fields: Any,
    ) -> bool:
        """Compare-and-set a batch status."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(models.ReviewBatch)
                .where(
                    models.ReviewBatch.batch_id == batch_id,
                    models.ReviewBatch.status.in_(list(expected)),
                )
                .values(status=new_status, **fields)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount > 0

    async def add_study(self, study: domain.ReviewStudy) -> None:
        """Record the mapping from an external study back to its task."""
        async with self.session_factory() as db:
            db.add(models.ReviewStudy(**study.model_dump()))
            await db.commit()

    async def get_study(self, study_id: str) -> Optional[domain.ReviewStudy]:
        async with self.session_factory() as db:
            row = await db.get(models.ReviewStudy, study_id)
            return _study_to_domain(row) if row else None

    async def update_study_status(self, study_id: str, study_status: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(models.ReviewStudy)
                .where(models.ReviewStudy.study_id == study_id)
                .values(study_status=study_status)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount > 0


# ============== Row -> domain mapping ==============


def _iteration_values(values: dict[str, Any]) -> dict[str, Any]:
    """Serialize nested results to JSON-safe dicts for the JSON columns."""
    converted = dict(values)
    for key in ("llm_verification", "human_review", "llm_reverification"):
        value = converted.get(key)
        if hasattr(value, "model_dump"):
            converted[key] = value.model_dump(mode="json")
        elif isinstance(value, dict):
            converted[key] = {
                k: v.isoformat() if isinstance(v, datetime) else v for k, v in value.items()
            }
    return converted


def _iteration_to_domain(row: models.Iteration) -> domain.Iteration:
    return domain.Iteration(
        number=row.number,
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
        llm_verification=row.llm_verification,
        human_review=row.human_review,
        llm_reverification=row.llm_reverification,
        combined_score=row.combined_score,
        needs_another_iteration=row.needs_another_iteration,
        final_reason=row.final_reason,
    )


def _subtask_to_domain(row: models.LanguageSubtask) -> domain.LanguageSubtask:
    return domain.LanguageSubtask(
        task_id=row.task_id,
        language=row.language,
        status=row.status,
        current_iteration=row.current_iteration,
        max_iterations=row.max_iterations,
        confidence_threshold=row.confidence_threshold,
        iterations=[_iteration_to_domain(it) for it in row.iterations],
        translated_text=row.translated_text,
        review_batch_ids=list(row.review_batch_ids or []),
        error=row.error,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        processing_started_at=ensure_utc(row.processing_started_at),
        processing_finished_at=ensure_utc(row.processing_finished_at),
    )


def _delivery_to_domain(row: models.DeliveryAttempt) -> domain.DeliveryAttempt:
    return domain.DeliveryAttempt(
        event_type=row.event_type,
        destination=row.destination,
        attempt=row.attempt,
        outcome=row.outcome,
        status_code=row.status_code,
        error=row.error,
        created_at=ensure_utc(row.created_at),
        last_attempt_at=ensure_utc(row.last_attempt_at),
    )


def _study_to_domain(row: models.ReviewStudy) -> domain.ReviewStudy:
    return domain.ReviewStudy(
        study_id=row.study_id,
        task_id=row.task_id,
        batch_id=row.batch_id,
        languages=list(row.languages or []),
        iteration_numbers=dict(row.iteration_numbers or {}),
        study_status=row.study_status,
        created_at=ensure_utc(row.created_at),
    )


def _batch_to_domain(row: models.ReviewBatch) -> domain.ReviewBatch:
    return domain.ReviewBatch(
        batch_id=row.batch_id,
        task_id=row.task_id,
        languages=list(row.languages or []),
        iteration_numbers=dict(row.iteration_numbers or {}),
        status=row.status,
        study_id=row.study_id,
        created_at=ensure_utc(row.created_at),
    )


def _task_to_domain(row: models.Task, include_log: bool = True) -> domain.Task:
    return domain.Task(
        id=row.id,
        status=row.status,
        source=row.source,
        guidelines=row.guidelines or {},
        languages=list(row.languages or []),
        max_iterations=row.max_iterations,
        confidence_threshold=row.confidence_threshold,
        progress=row.progress,
        error=row.error,
        result=row.result,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        completed_at=ensure_utc(row.completed_at),
        subtasks={s.language: _subtask_to_domain(s) for s in row.subtasks},
        delivery_log=[_delivery_to_domain(d) for d in row.deliveries] if include_log else [],
        studies={s.study_id: _study_to_domain(s) for s in row.studies} if include_log else {},
    )
