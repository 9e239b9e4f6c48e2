"""Batches review-ready languages into human review studies."""

import logging
from typing import Optional
from uuid import uuid4

from langloop.db.models import ReviewBatchStatus, SubtaskStatus, utcnow
from langloop.schemas import events as ev
from langloop.schemas.domain import LanguageSubtask, ReviewBatch, ReviewStudy
from langloop.schemas.events import EventEnvelope, EventType, build_event
from langloop.services.delivery import EventEmitter
from langloop.services.prolific import ReviewMarketplace, StudyRequest
from langloop.services.task_store import TaskStore

logger = logging.getLogger(__name__)


def _previous_score(subtask: LanguageSubtask) -> float:
    """Best score known before the upcoming review round."""
    for iteration in reversed(subtask.iterations):
        if iteration.final_score is not None:
            return iteration.final_score
    return 0.0


class ReviewBatcher:
    """Groups ``review_ready`` languages per task and walks them through study creation."""

    def __init__(self, store: TaskStore, emitter: EventEmitter, marketplace: ReviewMarketplace):
        self.store = store
        self.emitter = emitter
        self.marketplace = marketplace

    async def batch_ready(self, task_id: Optional[str] = None) -> list[str]:
        """
        Queue every ``review_ready`` language into one batch per task.

        Args:
            task_id: Restrict to one task; None sweeps all tasks

        Returns:
            Ids of the batches created
        """
        ready = await self.store.list_subtasks(task_id=task_id, statuses=[SubtaskStatus.REVIEW_READY])
        by_task: dict[str, list[LanguageSubtask]] = {}
        for subtask in ready:
            by_task.setdefault(subtask.task_id, []).append(subtask)

        batch_ids = []
        for owner, subtasks in by_task.items():
            batch_id = f"batch_{uuid4().hex[:16]}"
            queued = [s for s in subtasks if await self.store.queue_for_review(owner, s.language, batch_id)]
            if not queued:
                continue

            iteration_numbers = {s.language: s.current_iteration for s in queued}
            await self.store.create_batch(
                ReviewBatch(
                    batch_id=batch_id,
                    task_id=owner,
                    languages=[s.language for s in queued],
                    iteration_numbers=iteration_numbers,
                    status=ReviewBatchStatus.CREATED,
                    created_at=utcnow(),
                )
            )
            logger.info(f"Created review batch {batch_id} for task {owner}: {list(iteration_numbers)}")
            batch_ids.append(batch_id)

            await self.emitter.emit(
                build_event(
                    EventType.REVIEW_BATCH_CREATED,
                    owner,
                    ev.ReviewBatchCreatedData(
                        batch_id=batch_id,
                        ready_languages=[s.language for s in queued],
                        iteration_numbers=iteration_numbers,
                    ),
                )
            )
        return batch_ids

    async def handle_batch_created(self, event: EventEnvelope, data: ev.ReviewBatchCreatedData) -> None:
        """Create the marketplace study for a batch."""
        batch = await self.store.get_batch(data.batch_id)
        if batch is None:
            # Retriggered before any batch existed for these languages
            logger.info(f"Batch {data.batch_id} unknown; batching ready languages of task {event.task_id}")
            await self.batch_ready(event.task_id)
            return
        if batch.status != ReviewBatchStatus.CREATED:
            logger.info(f"Batch {batch.batch_id} already has a study ({batch.status.value})")
            return

        task = await self.store.get_task(batch.task_id)
        if task is None:
            logger.warning(f"Task {batch.task_id} of batch {batch.batch_id} no longer exists")
            return

        subtasks = [task.subtasks[lang] for lang in batch.languages if lang in task.subtasks]
        study_id = await self.marketplace.create_study(
            StudyRequest(
                task_id=task.id,
                batch_id=batch.batch_id,
                languages=batch.languages,
                translations={s.language: s.translated_text or "" for s in subtasks},
                previous_scores={s.language: _previous_score(s) for s in subtasks},
            )
        )

        if not await self.store.update_batch(
            batch.batch_id, [ReviewBatchStatus.CREATED], ReviewBatchStatus.STUDY_CREATED, study_id=study_id
        ):
            logger.warning(f"Batch {batch.batch_id} moved on while study {study_id} was created")
            return

        await self.store.add_study(
            ReviewStudy(
                study_id=study_id,
                task_id=task.id,
                batch_id=batch.batch_id,
                languages=batch.languages,
                iteration_numbers=batch.iteration_numbers,
                study_status="created",
                created_at=utcnow(),
            )
        )
        await self.emitter.emit(
            build_event(
                EventType.STUDY_CREATED,
                task.id,
                ev.StudyCreatedData(
                    batch_id=batch.batch_id,
                    prolific_study_id=study_id,
                    languages=batch.languages,
                    iteration_info={
                        s.language: {"iteration": s.current_iteration, "previousScore": _previous_score(s)}
                        for s in subtasks
                    },
                ),
            )
        )

    async def handle_study_created(self, event: EventEnvelope, data: ev.StudyCreatedData) -> None:
        """Publish a freshly created study."""
        study = await self.store.get_study(data.prolific_study_id)
        if study is None:
            logger.warning(f"Study {data.prolific_study_id} is not mapped to any task")
            return
        if study.study_status != "created":
            logger.info(f"Study {study.study_id} already {study.study_status}")
            return

        published = await self.marketplace.publish_study(study.study_id)
        await self.store.update_study_status(study.study_id, "published")
        await self.store.update_batch(
            study.batch_id, [ReviewBatchStatus.STUDY_CREATED], ReviewBatchStatus.PUBLISHED
        )
        await self.emitter.emit(
            build_event(
                EventType.STUDY_PUBLISHED,
                study.task_id,
                ev.StudyPublishedData(
                    prolific_study_id=study.study_id,
                    public_url=published.public_url,
                    estimated_completion_time=published.estimated_completion_time,
                ),
            )
        )

    async def handle_study_published(self, event: EventEnvelope, data: ev.StudyPublishedData) -> None:
        study = await self.store.get_study(data.prolific_study_id)
        if study is None:
            logger.warning(f"Study {data.prolific_study_id} is not mapped to any task")
            return
        await self._activate(study)

    async def handle_study_status(self, notification: ev.ProlificStudyNotification) -> None:
        """Track status changes reported by the marketplace."""
        study = await self.store.get_study(notification.study.id)
        if study is None:
            logger.warning(f"Status change for unmapped study {notification.study.id}")
            return

        status = notification.study.status
        await self.store.update_study_status(study.study_id, status.lower())
        logger.info(f"Study {study.study_id} of task {study.task_id} is now {status}")
        if status == "ACTIVE":
            await self._activate(study)

    async def complete_study(self, study_id: str) -> None:
        study = await self.store.get_study(study_id)
        if study is None:
            return
        await self.store.update_study_status(study_id, "completed")
        await self.store.update_batch(
            study.batch_id,
            [ReviewBatchStatus.CREATED, ReviewBatchStatus.STUDY_CREATED, ReviewBatchStatus.PUBLISHED],
            ReviewBatchStatus.COMPLETED,
        )

    async def _activate(self, study: ReviewStudy) -> None:
        for language in study.languages:
            await self.store.transition(
                study.task_id,
                language,
                expected=[SubtaskStatus.REVIEW_QUEUED],
                new_status=SubtaskStatus.REVIEW_ACTIVE,
            )
