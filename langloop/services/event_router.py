"""Routes verified inbound events to their handlers."""

import logging
from typing import Awaitable, Callable

from pydantic import BaseModel, ValidationError

from langloop.schemas.events import (
    EVENT_DATA_MODELS,
    EventEnvelope,
    EventType,
    ProlificStudyNotification,
)
from langloop.services.task_service import TaskService

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope, BaseModel], Awaitable[None]]


class EventRouter:
    """Dispatches each event kind to exactly one orchestrator handler."""

    def __init__(self, task_service: TaskService):
        self.task_service = task_service
        self.handlers = self._build_handlers(task_service)

    @staticmethod
    def _build_handlers(svc: TaskService) -> dict[EventType, Handler]:
        handlers: dict[EventType, Handler] = {
            EventType.TASK_CREATED: svc.handle_task_created,
            EventType.SUBTASK_CREATED: svc.handle_subtask_created,
            EventType.TRANSLATION_STARTED: svc.handle_translation_started,
            EventType.TRANSLATION_COMPLETED: svc.handle_translation_completed,
            EventType.LLM_VERIFICATION_STARTED: svc.handle_verification_started,
            EventType.LLM_VERIFICATION_COMPLETED: svc.handle_verification_completed,
            EventType.REVIEW_BATCH_CREATED: svc.handle_review_batch_created,
            EventType.STUDY_CREATED: svc.handle_study_created,
            EventType.STUDY_PUBLISHED: svc.handle_study_published,
            EventType.REVIEW_RESULTS_RECEIVED: svc.handle_review_results,
            EventType.LLM_REVERIFICATION_STARTED: svc.handle_reverification_started,
            EventType.LLM_REVERIFICATION_COMPLETED: svc.handle_reverification_completed,
            EventType.ITERATION_CONTINUING: svc.handle_audit_event,
            EventType.SUBTASK_FINALIZED: svc.handle_audit_event,
            EventType.TASK_COMPLETED: svc.handle_audit_event,
        }
        missing = [event_type.value for event_type in EventType if event_type not in handlers]
        if missing:
            raise RuntimeError(f"No handler registered for events: {', '.join(missing)}")
        return handlers

    async def dispatch(self, envelope: EventEnvelope) -> bool:
        """
        Validate the payload for the event kind and run its handler.

        Returns:
            True when a handler ran, False for unknown kinds or malformed payloads
        """
        event_type = EventType.parse(envelope.event)
        if event_type is None:
            logger.warning(f"Ignoring unknown event {envelope.event!r} for task {envelope.task_id}")
            return False

        try:
            data = EVENT_DATA_MODELS[event_type].model_validate(envelope.data)
        except ValidationError as e:
            logger.error(f"Malformed {event_type.value} payload for task {envelope.task_id}: {e}")
            return False

        logger.debug(f"Dispatching {event_type.value} for task {envelope.task_id}")
        await self.handlers[event_type](envelope, data)
        return True

    async def dispatch_study_notification(self, notification: ProlificStudyNotification) -> None:
        await self.task_service.handle_study_status(notification)
