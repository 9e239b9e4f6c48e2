"""Tests for processing capability steps through the work log."""

import pytest

from langloop.db.models import SubtaskStatus, TaskStatus
from langloop.schemas.domain import EditorialGuidelines, SourceArticle
from langloop.services.work_log import WorkItem, WorkStep

SOURCE = SourceArticle(text="Rain is expected across the north tomorrow.")
GUIDELINES = EditorialGuidelines(tone="neutral")


async def start(make_services, languages=("es",), **overrides):
    services = make_services(processing_mode="work_log", **overrides)
    await services.work_log.initialize()
    task = await services.task_service.create_task(SOURCE, GUIDELINES, list(languages), confidence_threshold=4.5)
    return services, task


async def drain_until_idle(services, rounds: int = 20):
    for _ in range(rounds):
        report = await services.processor.drain()
        if not (report.processed or report.retried or report.failed):
            return


@pytest.mark.asyncio
async def test_steps_are_queued_instead_of_run_inline(make_services, translator):
    services, task = await start(make_services)

    subtask = await services.store.get_subtask(task.id, "es")
    assert subtask.status == SubtaskStatus.TRANSLATING
    assert translator.calls == []

    (item,) = await services.work_log.consume("inspector", batch_size=10)
    assert item.step == WorkStep.TRANSLATE
    assert item.task_id == task.id
    assert item.data["language"] == "es"
    assert item.data["subTaskId"] == f"{task.id}_es"


@pytest.mark.asyncio
async def test_drained_work_completes_the_task(make_services, translator):
    services, task = await start(make_services)

    await drain_until_idle(services)

    done = await services.store.get_task(task.id)
    assert done.subtasks["es"].status == SubtaskStatus.FINALIZED
    assert done.status == TaskStatus.COMPLETED
    assert translator.calls == ["es"]

    stats = await services.work_log.stats()
    assert stats.total_pending == 0


@pytest.mark.asyncio
async def test_failed_step_is_retried_later(make_services, translator):
    translator.failing = {"es"}
    services, task = await start(make_services)

    report = await services.processor.drain()
    assert report.retried == 1
    assert report.failed == 0

    # The retry is not due yet and stays pending for reclaim
    report = await services.processor.drain()
    assert report.deferred == 1
    assert report.processed == 0

    subtask = await services.store.get_subtask(task.id, "es")
    assert subtask.status == SubtaskStatus.TRANSLATING


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_language(make_services, translator):
    translator.failing = {"es"}
    services, task = await start(make_services, work_log_max_retries=0)

    report = await services.processor.drain()
    assert report.failed == 1

    done = await services.store.get_task(task.id)
    assert done.subtasks["es"].status == SubtaskStatus.FAILED
    assert done.status == TaskStatus.COMPLETED
    assert done.result["failedLanguages"] == ["es"]


@pytest.mark.asyncio
async def test_abandoned_items_are_reclaimed(make_services):
    services, task = await start(make_services, reclaim_min_idle_ms=0)

    # A worker reads the item and dies before acknowledging it
    await services.work_log.consume("crashed-worker", batch_size=10)
    assert (await services.processor.drain()).processed == 0

    report = await services.processor.reclaim()
    assert report.processed == 1

    await drain_until_idle(services)
    assert (await services.store.get_task(task.id)).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_stale_item_is_acknowledged_without_effect(make_services):
    services, task = await start(make_services)
    await drain_until_idle(services)

    await services.work_log.enqueue(WorkItem(task_id=task.id, step=WorkStep.VERIFY, data={"language": "es"}))
    report = await services.processor.drain()
    assert report.processed == 1
    assert (await services.work_log.stats()).total_pending == 0


@pytest.mark.asyncio
async def test_item_without_language_is_retried(make_services):
    services, task = await start(make_services)
    await drain_until_idle(services)

    await services.work_log.enqueue(WorkItem(task_id=task.id, step=WorkStep.TRANSLATE))
    report = await services.processor.drain()
    assert report.retried == 1
