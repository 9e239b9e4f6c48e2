"""End-to-end tests of the translation and review loop."""

from datetime import timedelta

import pytest

from langloop.db.models import DeliveryOutcome, ReviewBatchStatus, SubtaskStatus, TaskStatus, utcnow
from langloop.schemas.domain import (
    DeliveryAttempt,
    EditorialGuidelines,
    LanguageSubtask,
    ReviewBatch,
    SourceArticle,
    Task,
)
from langloop.schemas.events import (
    EventType,
    ReviewResult,
    ReviewResultsReceivedData,
    build_event,
)
from langloop.services.errors import CapabilityError, RetriggerRejected, SubtaskNotFoundError, TaskNotFoundError
from langloop.services.task_service import build_completion, normalize_languages

SOURCE = SourceArticle(text="The council approved the new budget on Tuesday.", title="Budget vote")
GUIDELINES = EditorialGuidelines(tone="neutral", target_audience="general public")


async def create(services, languages, **kwargs):
    return await services.task_service.create_task(SOURCE, GUIDELINES, languages, **kwargs)


async def send_review(services, task_id: str, language: str, score: float, feedback: str = "Mostly fine"):
    """Post human review results for the open study covering ``language``."""
    task = await services.store.get_task(task_id)
    study = next(
        s for s in task.studies.values() if language in s.languages and s.study_status != "completed"
    )
    event = build_event(
        EventType.REVIEW_RESULTS_RECEIVED,
        task_id,
        ReviewResultsReceivedData(
            prolific_study_id=study.study_id,
            completed_languages=[language],
            review_results={language: ReviewResult(score=score, feedback=feedback)},
        ),
    )
    assert await services.router.dispatch(event)
    return event


def test_normalize_languages():
    assert normalize_languages([" ES", "fr", "es", "", "De"]) == ["es", "fr", "de"]


@pytest.mark.asyncio
async def test_high_scoring_language_finalizes_without_review(services):
    task = await create(services, ["es"], confidence_threshold=4.5)

    task = await services.store.get_task(task.id)
    subtask = task.subtasks["es"]
    assert subtask.status == SubtaskStatus.FINALIZED
    assert subtask.translated_text.startswith("[es] ")
    (iteration,) = subtask.iterations
    assert iteration.llm_verification.score == pytest.approx(4.5)
    assert iteration.final_reason.value == "threshold_met"
    assert iteration.human_review is None

    assert task.status == TaskStatus.COMPLETED
    assert task.progress == 100
    assert task.result["completedLanguages"] == ["es"]
    assert services.emitter.of_type("review_batch.created") == []


@pytest.mark.asyncio
async def test_review_round_reaches_threshold(services, scorer):
    task = await create(services, ["es", "fr"], confidence_threshold=4.2)

    current = await services.store.get_task(task.id)
    assert current.status == TaskStatus.PROCESSING
    assert current.progress == 50
    assert current.subtasks["es"].status == SubtaskStatus.FINALIZED
    assert current.subtasks["fr"].status == SubtaskStatus.REVIEW_ACTIVE
    (study,) = current.studies.values()
    assert study.languages == ["fr"]
    assert study.iteration_numbers == {"fr": 1}

    await send_review(services, task.id, "fr", score=4.0)

    done = await services.store.get_task(task.id)
    fr = done.subtasks["fr"]
    assert fr.status == SubtaskStatus.FINALIZED
    (iteration,) = fr.iterations
    assert iteration.llm_verification.score == pytest.approx(3.0)
    assert iteration.human_review.score == 4.0
    assert iteration.llm_reverification.score == pytest.approx(4.4)
    assert iteration.combined_score == pytest.approx(4.2)
    assert iteration.final_reason.value == "threshold_met"
    assert ("fr", "post_human") in scorer.calls

    assert done.status == TaskStatus.COMPLETED
    assert done.result["completedLanguages"] == ["es", "fr"]
    assert done.result["failedLanguages"] == []
    assert done.result["averageScore"] == pytest.approx(4.35)
    assert done.result["iterationSummary"]["fr"] == {
        "iterations": 1,
        "finalScore": pytest.approx(4.2),
        "reason": "threshold_met",
    }
    assert len(services.emitter.of_type("task.completed")) == 1
    assert done.studies[study.study_id].study_status == "completed"


@pytest.mark.asyncio
async def test_iteration_budget_ends_the_loop(services):
    task = await create(services, ["de"], confidence_threshold=4.8, max_iterations=2)

    await send_review(services, task.id, "de", score=4.0)
    midway = await services.store.get_subtask(task.id, "de")
    assert midway.status == SubtaskStatus.REVIEW_ACTIVE
    assert midway.current_iteration == 2
    assert len(services.emitter.of_type("subtask.iteration.continuing")) == 1

    await send_review(services, task.id, "de", score=4.0)

    summary = await services.task_service.iteration_summary(task.id, "DE")
    assert summary["status"] == "finalized"
    assert [i["combined_score"] for i in summary["iterations"]] == [pytest.approx(4.0), pytest.approx(4.0)]
    assert summary["final_reason"] == "max_iterations_reached"

    done = await services.store.get_task(task.id)
    assert done.status == TaskStatus.COMPLETED
    assert done.result["iterationSummary"]["de"]["reason"] == "max_iterations_reached"
    assert len(done.studies) == 2


@pytest.mark.asyncio
async def test_replaying_every_event_changes_nothing(services):
    task = await create(services, ["es", "fr"], confidence_threshold=4.2)
    review = await send_review(services, task.id, "fr", score=4.0)

    before = await services.store.get_task(task.id)
    recorded = [*services.emitter.events, review]
    emitted = len(services.emitter.events)

    services.emitter.router = None
    for event in recorded:
        await services.router.dispatch(event)

    after = await services.store.get_task(task.id)
    assert len(services.emitter.events) == emitted
    assert after.model_dump() == before.model_dump()


@pytest.mark.asyncio
async def test_redelivered_review_does_not_fill_the_next_iteration(services):
    task = await create(services, ["de"], confidence_threshold=4.8, max_iterations=3)
    first = await send_review(services, task.id, "de", score=4.0)

    midway = await services.store.get_subtask(task.id, "de")
    assert midway.status == SubtaskStatus.REVIEW_ACTIVE
    assert midway.current_iteration == 2

    assert await services.router.dispatch(first)

    after = await services.store.get_subtask(task.id, "de")
    assert after.status == SubtaskStatus.REVIEW_ACTIVE
    assert after.current_iteration == 2
    assert [i.number for i in after.iterations] == [1, 2]
    assert after.iterations[1].human_review is None
    assert len(services.emitter.of_type("subtask.llm_reverification.started")) == 1


@pytest.mark.asyncio
async def test_review_for_unmapped_study_is_ignored(services):
    task = await create(services, ["fr"], confidence_threshold=4.2)
    event = build_event(
        EventType.REVIEW_RESULTS_RECEIVED,
        task.id,
        ReviewResultsReceivedData(
            prolific_study_id="not-ours",
            completed_languages=["fr"],
            review_results={"fr": ReviewResult(score=5.0)},
        ),
    )
    assert await services.router.dispatch(event)

    fr = await services.store.get_subtask(task.id, "fr")
    assert fr.status == SubtaskStatus.REVIEW_ACTIVE
    assert fr.iterations[0].human_review is None


@pytest.mark.asyncio
async def test_finalizing_leaves_the_completed_iteration_untouched(services):
    task = await create(services, ["fr"], confidence_threshold=4.2)
    services.emitter.router = None

    await send_review(services, task.id, "fr", score=4.0)
    (started,) = services.emitter.of_type("subtask.llm_reverification.started")
    await services.router.dispatch(started)

    completed = await services.store.get_subtask(task.id, "fr")
    assert completed.status == SubtaskStatus.ITERATION_COMPLETE
    (iteration,) = completed.iterations
    assert iteration.completed_at is not None
    assert iteration.final_reason.value == "threshold_met"

    (decision,) = services.emitter.of_type("subtask.llm_reverification.completed")
    await services.router.dispatch(decision)

    finalized = await services.store.get_subtask(task.id, "fr")
    assert finalized.status == SubtaskStatus.FINALIZED
    assert finalized.iterations == [iteration]


@pytest.mark.asyncio
async def test_translation_failure_fails_only_that_language(services, translator):
    translator.failing = {"fr"}
    task = await create(services, ["es", "fr"], confidence_threshold=4.2)

    done = await services.store.get_task(task.id)
    assert done.subtasks["es"].status == SubtaskStatus.FINALIZED
    assert done.subtasks["fr"].status == SubtaskStatus.FAILED
    assert "translation" in done.subtasks["fr"].error
    assert done.status == TaskStatus.COMPLETED
    assert done.result["completedLanguages"] == ["es"]
    assert done.result["failedLanguages"] == ["fr"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "languages,kwargs",
    [
        ([], {}),
        (["  "], {}),
        (["es"], {"max_iterations": 0}),
        (["es"], {"max_iterations": 6}),
        (["es"], {"confidence_threshold": 0.5}),
        (["es"], {"confidence_threshold": 5.5}),
    ],
)
async def test_create_rejects_invalid_requests(services, languages, kwargs):
    with pytest.raises(ValueError):
        await create(services, languages, **kwargs)
    assert await services.store.list_tasks() == []


@pytest.mark.asyncio
async def test_create_rejects_blank_source(services):
    with pytest.raises(ValueError):
        await services.task_service.create_task(SourceArticle(text="   "), GUIDELINES, ["es"])


@pytest.mark.asyncio
async def test_unknown_task_and_language(services):
    with pytest.raises(TaskNotFoundError):
        await services.task_service.get_task("missing")
    with pytest.raises(TaskNotFoundError):
        await services.task_service.delete_task("missing")

    task = await create(services, ["es"])
    with pytest.raises(SubtaskNotFoundError):
        await services.task_service.iteration_summary(task.id, "ja")


@pytest.mark.asyncio
async def test_retrigger_rejects_completed_task(services):
    task = await create(services, ["es"], confidence_threshold=4.5)
    with pytest.raises(RetriggerRejected) as exc:
        await services.task_service.retrigger(task.id)
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_retrigger_needs_delivery_history(services):
    await services.store.create_task("quiet", SOURCE, GUIDELINES, ["es"], 3, 4.5)
    with pytest.raises(RetriggerRejected) as exc:
        await services.task_service.retrigger("quiet")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_retrigger_cooldown_then_resend(services):
    store = services.store
    await store.create_task("stuck", SOURCE, GUIDELINES, ["es"], 3, 4.5)
    await store.transition(
        "stuck",
        "es",
        [SubtaskStatus.PENDING],
        SubtaskStatus.LLM_VERIFYING,
        fields={"current_iteration": 1, "translated_text": "[es] El consejo aprobó el presupuesto."},
    )
    sent_at = utcnow()
    await store.record_delivery(
        "stuck",
        DeliveryAttempt(
            event_type="subtask.llm_verification.started",
            destination="http://receiver.test",
            attempt=3,
            outcome=DeliveryOutcome.FAILED,
            error="HTTP 503",
            created_at=sent_at,
            last_attempt_at=sent_at,
        ),
    )

    with pytest.raises(RetriggerRejected) as exc:
        await services.task_service.retrigger("stuck", now=sent_at + timedelta(minutes=1))
    assert exc.value.status_code == 429
    assert exc.value.remaining_minutes == 9

    outcome = await services.task_service.retrigger("stuck", now=sent_at + timedelta(minutes=11))
    assert outcome["event"] == "subtask.llm_verification.started"
    assert outcome["language"] == "es"
    assert outcome["delivered"]

    subtask = await store.get_subtask("stuck", "es")
    assert subtask.status == SubtaskStatus.FINALIZED


@pytest.mark.asyncio
async def test_retrigger_rebatches_after_a_completed_review_round(services, monkeypatch):
    task = await create(services, ["de"], confidence_threshold=4.8, max_iterations=3)
    batcher = services.task_service.review_batcher

    async def lost_batch(task_id=None):
        return []

    monkeypatch.setattr(batcher, "batch_ready", lost_batch)
    await send_review(services, task.id, "de", score=4.0)
    monkeypatch.undo()

    stalled = await services.store.get_subtask(task.id, "de")
    assert stalled.status == SubtaskStatus.REVIEW_READY
    assert stalled.current_iteration == 2
    (old_batch_id,) = stalled.review_batch_ids

    outcome = await services.task_service.retrigger(task.id, now=utcnow() + timedelta(minutes=11))
    assert outcome["event"] == "review_batch.created"
    assert outcome["delivered"]

    resumed = await services.store.get_subtask(task.id, "de")
    assert resumed.status == SubtaskStatus.REVIEW_ACTIVE
    assert len(resumed.review_batch_ids) == 2
    assert resumed.review_batch_ids[0] == old_batch_id

    done = await services.store.get_task(task.id)
    assert len(done.studies) == 2
    assert {s.iteration_numbers["de"] for s in done.studies.values()} == {1, 2}


@pytest.mark.asyncio
async def test_retrigger_resumes_batch_still_waiting_for_study(services):
    await services.store.create_task("queued", SOURCE, GUIDELINES, ["fr"], 3, 4.5)
    await services.store.transition(
        "queued",
        "fr",
        [SubtaskStatus.PENDING],
        SubtaskStatus.REVIEW_READY,
        fields={"current_iteration": 1, "translated_text": "[fr] Le conseil a voté le budget."},
    )
    await services.store.queue_for_review("queued", "fr", "batch_waiting")
    await services.store.create_batch(
        ReviewBatch(
            batch_id="batch_waiting",
            task_id="queued",
            languages=["fr"],
            iteration_numbers={"fr": 1},
            status=ReviewBatchStatus.CREATED,
            created_at=utcnow(),
        )
    )
    sent_at = utcnow()
    await services.store.record_delivery(
        "queued",
        DeliveryAttempt(
            event_type="review_batch.created",
            destination="http://receiver.test",
            attempt=3,
            outcome=DeliveryOutcome.FAILED,
            error="HTTP 503",
            created_at=sent_at,
            last_attempt_at=sent_at,
        ),
    )

    outcome = await services.task_service.retrigger("queued", now=sent_at + timedelta(minutes=11))
    assert outcome["event"] == "review_batch.created"

    (event,) = services.emitter.of_type("review_batch.created")
    assert event.data["batchId"] == "batch_waiting"
    fr = await services.store.get_subtask("queued", "fr")
    assert fr.status == SubtaskStatus.REVIEW_ACTIVE
    assert fr.review_batch_ids == ["batch_waiting"]


@pytest.mark.asyncio
async def test_retrigger_falls_back_to_status_event(services):
    task = await create(services, ["fr"], confidence_threshold=4.5)
    later = utcnow() + timedelta(hours=1)

    outcome = await services.task_service.retrigger(task.id, now=later)
    assert outcome["event"] == "task.status.changed"
    assert outcome["language"] is None


@pytest.mark.asyncio
async def test_delete_task(services):
    task = await create(services, ["es"])
    await services.task_service.delete_task(task.id)
    assert await services.store.get_task(task.id) is None


def test_completion_without_scores_averages_to_zero():
    now = utcnow()
    task = Task(
        id="t",
        status=TaskStatus.PROCESSING,
        source=SOURCE,
        guidelines=GUIDELINES,
        languages=["fr"],
        max_iterations=3,
        confidence_threshold=4.5,
        created_at=now,
        updated_at=now,
        subtasks={
            "fr": LanguageSubtask(
                task_id="t",
                language="fr",
                status=SubtaskStatus.FAILED,
                max_iterations=3,
                confidence_threshold=4.5,
                created_at=now,
                updated_at=now,
            )
        },
    )
    result = build_completion(task, now)
    assert result.completed_languages == []
    assert result.failed_languages == ["fr"]
    assert result.average_score == 0.0


class UnavailableMarketplace:
    async def create_study(self, request):
        raise CapabilityError("review marketplace", "POST /studies/: 503 Service Unavailable")

    async def publish_study(self, study_id):
        raise AssertionError("no study to publish")


@pytest.mark.asyncio
async def test_marketplace_failure_fails_batched_languages(services):
    services.review_batcher.marketplace = UnavailableMarketplace()
    task = await create(services, ["es", "fr"], confidence_threshold=4.2)

    done = await services.store.get_task(task.id)
    assert done.subtasks["fr"].status == SubtaskStatus.FAILED
    assert "review marketplace" in done.subtasks["fr"].error
    assert done.status == TaskStatus.COMPLETED
    assert done.result["failedLanguages"] == ["fr"]
