"""Exceptions raised by the orchestration services."""

from typing import Optional


class LangloopError(Exception):
    """Base class for service errors."""


class TaskNotFoundError(LangloopError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class SubtaskNotFoundError(LangloopError):
    def __init__(self, task_id: str, language: str):
        super().__init__(f"Sub-task {language} of task {task_id} not found")
        self.task_id = task_id
        self.language = language


class CapabilityError(LangloopError):
    """An external capability (translation, scoring, review marketplace) failed."""

    def __init__(self, capability: str, message: str):
        super().__init__(f"{capability} failed: {message}")
        self.capability = capability


class DeliveryError(LangloopError):
    """Outbound event delivery failed after all attempts."""

    def __init__(self, event_type: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"Delivery of {event_type} failed: {message}")
        self.event_type = event_type
        self.status_code = status_code


class RetriggerRejected(LangloopError):
    """Operator retrigger refused; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400, remaining_minutes: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.remaining_minutes = remaining_minutes
