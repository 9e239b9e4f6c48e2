"""Tests for signed outbound event delivery."""

import json

import httpx
import pytest

from langloop.db.models import DeliveryOutcome
from langloop.schemas.events import EventType, build_event
from langloop.services.delivery import WebhookEmitter
from langloop.services.errors import DeliveryError
from langloop.services.signing import SignedEventCodec, WebhookSource

URL = "http://receiver.test/v1/webhooks"
SECRET = "outbound-secret"


class RecordingStore:
    def __init__(self):
        self.attempts = []

    async def record_delivery(self, task_id, attempt):
        self.attempts.append((task_id, attempt))


class Responder:
    """Answers with a scripted sequence of status codes or exceptions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)


def make_emitter(responder, **kwargs):
    store = RecordingStore()
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    emitter = WebhookEmitter(
        store,
        SignedEventCodec(),
        url=URL,
        secret=SECRET,
        client=httpx.AsyncClient(transport=httpx.MockTransport(responder)),
        sleep=sleep,
        **kwargs,
    )
    return emitter, store, delays


def event():
    return build_event(EventType.TASK_CREATED, "task-1", {"destinationLanguages": ["es"]})


@pytest.mark.asyncio
async def test_delivers_signed_body():
    responder = Responder(200)
    emitter, store, delays = make_emitter(responder)

    result = await emitter.emit(event())

    assert result.delivered
    assert result.attempts == 1
    assert delays == []
    (request,) = responder.requests
    body = request.content.decode()
    assert json.loads(body)["event"] == "task.created"
    assert json.loads(body)["taskId"] == "task-1"

    codec = SignedEventCodec()
    signature, timestamp = codec.extract(request.headers, WebhookSource.BABEL)
    assert codec.verify(body, signature, timestamp, SECRET).is_valid

    ((task_id, attempt),) = store.attempts
    assert task_id == "task-1"
    assert attempt.outcome == DeliveryOutcome.SUCCESS
    assert attempt.status_code == 200


@pytest.mark.asyncio
async def test_server_errors_are_retried_with_backoff():
    emitter, store, delays = make_emitter(Responder(500, 502, 200))

    result = await emitter.emit(event())

    assert result.delivered
    assert result.attempts == 3
    assert delays == [1.0, 5.0]
    assert [a.outcome for _, a in store.attempts] == [
        DeliveryOutcome.FAILED,
        DeliveryOutcome.FAILED,
        DeliveryOutcome.SUCCESS,
    ]


@pytest.mark.asyncio
async def test_network_errors_exhaust_attempts():
    request = httpx.Request("POST", URL)
    emitter, store, delays = make_emitter(
        Responder(*(httpx.ConnectError("refused", request=request) for _ in range(3)))
    )

    result = await emitter.emit(event())

    assert not result.delivered
    assert result.attempts == 3
    assert result.status_code is None
    assert "ConnectError" in result.error
    assert len(store.attempts) == 3
    assert delays == [1.0, 5.0]


@pytest.mark.asyncio
async def test_quota_exceeded_is_not_retried_or_raised():
    emitter, store, delays = make_emitter(Responder(429), raise_on_failure=True)

    result = await emitter.emit(event())

    assert result.quota_exceeded
    assert not result.delivered
    assert result.attempts == 1
    assert delays == []
    assert store.attempts[0][1].status_code == 429


@pytest.mark.asyncio
async def test_client_errors_stop_retrying():
    emitter, store, _ = make_emitter(Responder(401))

    result = await emitter.emit(event())

    assert not result.delivered
    assert result.attempts == 1
    assert result.status_code == 401
    assert len(store.attempts) == 1


@pytest.mark.asyncio
async def test_raise_on_failure():
    emitter, store, _ = make_emitter(Responder(503, 503, 503), raise_on_failure=True)

    with pytest.raises(DeliveryError) as exc:
        await emitter.emit(event())

    assert exc.value.status_code == 503
    assert exc.value.event_type == "task.created"
    assert len(store.attempts) == 3


@pytest.mark.asyncio
async def test_last_backoff_step_repeats():
    emitter, store, delays = make_emitter(Responder(500, 500, 500, 500, 200), max_attempts=5)

    result = await emitter.emit(event())

    assert result.delivered
    assert result.attempts == 5
    assert delays == [1.0, 5.0, 15.0, 15.0]
    assert [a.attempt for _, a in store.attempts] == [1, 2, 3, 4, 5]
