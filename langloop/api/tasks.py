"""Translation task API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from langloop.api.deps import get_services
from langloop.db.models import TaskStatus
from langloop.middleware.rate_limit import rate_limit_tasks
from langloop.schemas.schemas import (
    IterationSummaryResponse,
    RetriggerResponse,
    TaskCreateRequest,
    TaskCreateResponse,
    TaskListResponse,
    TaskResponse,
    task_to_response,
)
from langloop.services.container import Services
from langloop.services.errors import RetriggerRejected, SubtaskNotFoundError, TaskNotFoundError

router = APIRouter(prefix="/v1/tasks", tags=["Tasks"])


@router.post(
    "",
    response_model=TaskCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a translation task",
    description="Create a task that translates one article into several languages with review.",
)
@rate_limit_tasks()
async def create_task(
    request: Request,
    body: TaskCreateRequest,
    services: Services = Depends(get_services),
):
    """
    Create a new translation task.

    - **source**: Article text, optional title and metadata
    - **guidelines**: Tone, style, audience, restrictions and requirements
    - **languages**: Destination language codes
    - **max_iterations**: Human review rounds per language (1-5, default 3)
    - **confidence_threshold**: Score that finalizes a language (1-5, default 4.5)
    """
    try:
        task = await services.task_service.create_task(
            source=body.source,
            guidelines=body.guidelines,
            languages=body.languages,
            max_iterations=body.max_iterations,
            confidence_threshold=body.confidence_threshold,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return TaskCreateResponse(
        task_id=task.id,
        status=task.status.value,
        languages=task.languages,
        max_iterations=task.max_iterations,
        confidence_threshold=task.confidence_threshold,
        error=task.error,
        created_at=task.created_at,
    )


@router.get(
    "",
    response_model=TaskListResponse,
    summary="List tasks",
    description="List tasks, newest first, optionally filtered by status.",
)
async def list_tasks(
    status_filter: Optional[str] = Query(
        None,
        alias="status",
        description="Filter by status (pending, processing, completed, failed)",
    ),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of tasks"),
    offset: int = Query(0, ge=0, description="Number of tasks to skip"),
    services: Services = Depends(get_services),
):
    """List tasks."""
    status_enum = None
    if status_filter:
        try:
            status_enum = TaskStatus(status_filter)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_filter}",
            )

    tasks = await services.task_service.list_tasks(status=status_enum, limit=limit, offset=offset)
    return TaskListResponse(tasks=[task_to_response(t) for t in tasks], total=len(tasks))


@router.get(
    "/{task_id}",
    response_model=TaskResponse,
    summary="Get task",
    description="Get a task with its languages, iterations and delivery log.",
)
async def get_task(task_id: str, services: Services = Depends(get_services)):
    try:
        task = await services.task_service.get_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return task_to_response(task)


@router.delete(
    "/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete task",
    description="Delete a task with its languages, iterations, delivery log and study mappings.",
)
async def delete_task(task_id: str, services: Services = Depends(get_services)):
    try:
        await services.task_service.delete_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get(
    "/{task_id}/languages/{language}/iterations",
    response_model=IterationSummaryResponse,
    summary="Iteration summary",
    description="Scores of every review iteration of one language and its final outcome.",
)
async def get_iterations(task_id: str, language: str, services: Services = Depends(get_services)):
    try:
        return await services.task_service.iteration_summary(task_id, language)
    except (TaskNotFoundError, SubtaskNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/{task_id}/retrigger",
    response_model=RetriggerResponse,
    summary="Retrigger a stalled task",
    description="Re-send the event that moves the task's first active language forward.",
)
@rate_limit_tasks()
async def retrigger_task(
    request: Request,
    task_id: str,
    services: Services = Depends(get_services),
):
    """
    Retrigger a task.

    Refused for completed tasks, tasks without delivery history, and within
    the cooldown after the last delivery attempt (429).
    """
    try:
        return await services.task_service.retrigger(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RetriggerRejected as e:
        headers = None
        if e.remaining_minutes is not None:
            headers = {"Retry-After": str(e.remaining_minutes * 60)}
        raise HTTPException(status_code=e.status_code, detail=str(e), headers=headers)
