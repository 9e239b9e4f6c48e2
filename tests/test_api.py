"""Tests for API endpoints."""

import json
import time

import pytest
from httpx import AsyncClient

from langloop.schemas.domain import EditorialGuidelines, SourceArticle
from langloop.schemas.events import EventType, build_event
from langloop.services.signing import SignedEventCodec, WebhookSource

BABEL_SECRET = "test-babel-secret"
PROLIFIC_SECRET = "test-prolific-secret"

TASK_REQUEST = {
    "source": {"text": "Markets rallied after the announcement.", "title": "Markets"},
    "guidelines": {"tone": "neutral", "target_audience": "investors"},
    "languages": ["ES"],
    "confidence_threshold": 4.5,
}


def signed(body: str, secret: str = BABEL_SECRET, source: WebhookSource = WebhookSource.BABEL) -> dict:
    headers = SignedEventCodec().signed_headers(body, secret, source)
    headers["Content-Type"] = "application/json"
    return headers


async def create_task(client: AsyncClient, **overrides) -> dict:
    response = await client.post("/v1/tasks", json={**TASK_REQUEST, **overrides})
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test health check endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"
    assert data["redis"] == "ok"


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test root endpoint."""
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "langloop"


@pytest.mark.asyncio
async def test_service_info(client: AsyncClient):
    response = await client.get("/v1/info")
    assert response.status_code == 200
    assert response.json()["processing_mode"] == "webhook"


@pytest.mark.asyncio
async def test_queue_stats_before_group_exists(client: AsyncClient):
    response = await client.get("/v1/queue/stats")
    assert response.status_code == 200
    data = response.json()
    assert data["stream_length"] == 0
    assert data["total_pending"] == 0


# ============== Tasks ==============


@pytest.mark.asyncio
async def test_create_and_get_task(client: AsyncClient):
    created = await create_task(client)
    assert created["languages"] == ["es"]
    assert created["max_iterations"] == 3
    assert created["error"] is None

    response = await client.get(f"/v1/tasks/{created['task_id']}")
    assert response.status_code == 200
    task = response.json()
    assert task["status"] == "completed"
    assert task["progress"] == 100
    (subtask,) = task["subtasks"]
    assert subtask["language"] == "es"
    assert subtask["status"] == "finalized"
    assert len(task["delivery_log"]) > 0
    assert task["result"]["completedLanguages"] == ["es"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"languages": []},
        {"max_iterations": 9},
        {"confidence_threshold": 0},
        {"source": {"title": "No text"}},
    ],
)
async def test_create_task_validation(client: AsyncClient, overrides):
    response = await client.post("/v1/tasks", json={**TASK_REQUEST, **overrides})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_task_with_blank_text(client: AsyncClient):
    response = await client.post("/v1/tasks", json={**TASK_REQUEST, "source": {"text": "  "}})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_tasks_by_status(client: AsyncClient):
    done = await create_task(client)
    waiting = await create_task(client, languages=["fr"])

    response = await client.get("/v1/tasks", params={"status": "processing"})
    assert response.status_code == 200
    assert [t["id"] for t in response.json()["tasks"]] == [waiting["task_id"]]

    response = await client.get("/v1/tasks", params={"status": "completed"})
    assert [t["id"] for t in response.json()["tasks"]] == [done["task_id"]]

    response = await client.get("/v1/tasks")
    assert response.json()["total"] == 2


@pytest.mark.asyncio
async def test_list_tasks_invalid_status(client: AsyncClient):
    response = await client.get("/v1/tasks", params={"status": "exploded"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_missing_task(client: AsyncClient):
    assert (await client.get("/v1/tasks/missing")).status_code == 404
    assert (await client.delete("/v1/tasks/missing")).status_code == 404
    assert (await client.post("/v1/tasks/missing/retrigger")).status_code == 404
    assert (await client.get("/v1/tasks/missing/languages/es/iterations")).status_code == 404


@pytest.mark.asyncio
async def test_delete_task(client: AsyncClient):
    created = await create_task(client)
    response = await client.delete(f"/v1/tasks/{created['task_id']}")
    assert response.status_code == 204
    assert (await client.get(f"/v1/tasks/{created['task_id']}")).status_code == 404


@pytest.mark.asyncio
async def test_iteration_summary(client: AsyncClient):
    created = await create_task(client, languages=["fr"])

    response = await client.get(f"/v1/tasks/{created['task_id']}/languages/fr/iterations")
    assert response.status_code == 200
    summary = response.json()
    assert summary["status"] == "review_active"
    assert summary["current_iteration"] == 1
    (iteration,) = summary["iterations"]
    assert iteration["status"] == "in_progress"
    assert iteration["llm_score"] == pytest.approx(3.0)
    assert summary["final_score"] is None

    response = await client.get(f"/v1/tasks/{created['task_id']}/languages/ja/iterations")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_retrigger_completed_task(client: AsyncClient):
    created = await create_task(client)
    response = await client.post(f"/v1/tasks/{created['task_id']}/retrigger")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_retrigger_within_cooldown(client: AsyncClient):
    created = await create_task(client, languages=["fr"])
    response = await client.post(f"/v1/tasks/{created['task_id']}/retrigger")
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "600"


# ============== Webhooks ==============


@pytest.mark.asyncio
async def test_webhook_unknown_source(client: AsyncClient):
    response = await client.post("/v1/webhooks", content="{}", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_invalid_envelope(client: AsyncClient):
    body = json.dumps({"event": "task.created", "data": {}})
    response = await client.post("/v1/webhooks", content=body, headers=signed(body))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_non_object_body(client: AsyncClient):
    body = "[1, 2, 3]"
    response = await client.post("/v1/webhooks", content=body, headers=signed(body))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_bad_signature(client: AsyncClient):
    body = json.dumps(build_event(EventType.TASK_CREATED, "t", {}).to_wire())
    response = await client.post("/v1/webhooks", content=body, headers=signed(body, secret="wrong"))
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid signature"


@pytest.mark.asyncio
async def test_webhook_stale_timestamp(client: AsyncClient):
    body = json.dumps(build_event(EventType.TASK_CREATED, "t", {}).to_wire())
    stale = str(int(time.time()) - 3600)
    headers = {
        "Content-Type": "application/json",
        "X-Babel-Request-Signature": SignedEventCodec.sign(body, stale, BABEL_SECRET),
        "X-Babel-Request-Timestamp": stale,
    }
    response = await client.post("/v1/webhooks", content=body, headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"] == "Timestamp too old - request rejected"


@pytest.mark.asyncio
async def test_webhook_dispatches_verified_event(client: AsyncClient, services):
    task = await services.store.create_task(
        "webhook-task",
        SourceArticle(text="Snow closed the mountain pass."),
        EditorialGuidelines(),
        ["es"],
        3,
        4.5,
    )
    event = build_event(
        EventType.TASK_CREATED,
        task.id,
        {"destinationLanguages": ["es"], "maxReviewIterations": 3, "confidenceThreshold": 4.5},
    )
    body = json.dumps(event.to_wire())

    response = await client.post("/v1/webhooks", content=body, headers=signed(body))
    assert response.status_code == 200
    assert response.json() == {"received": True, "source": "babel", "event": "task.created"}

    done = await services.store.get_task(task.id)
    assert done.subtasks["es"].status.value == "finalized"
    assert done.status.value == "completed"


@pytest.mark.asyncio
async def test_webhook_accepts_prolific_study_notification(client: AsyncClient):
    body = json.dumps(
        {
            "event_type": "study.status.change",
            "study": {"id": "unmapped-study", "status": "AWAITING_REVIEW"},
            "timestamp": "2026-01-01T00:00:00Z",
        }
    )
    response = await client.post(
        "/v1/webhooks",
        content=body,
        headers=signed(body, PROLIFIC_SECRET, WebhookSource.PROLIFIC),
    )
    assert response.status_code == 200
    assert response.json()["source"] == "prolific"
    assert response.json()["event"] == "study.status.change"
