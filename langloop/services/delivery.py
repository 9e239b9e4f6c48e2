"""Outbound delivery of signed events.

Every event is serialized once, signed per attempt and posted to the
configured webhook URL. Each attempt (successful or not) is appended to the
task's delivery log, and the caller always gets a ``DeliveryResult`` back.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
)

from langloop.db.models import DeliveryOutcome, utcnow
from langloop.schemas.domain import DeliveryAttempt
from langloop.schemas.events import EventEnvelope
from langloop.services.errors import DeliveryError
from langloop.services.signing import SignedEventCodec, WebhookSource
from langloop.services.task_store import TaskStore

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED_STATUS = 429


@dataclass
class DeliveryResult:
    """Outcome of emitting one event."""

    event_type: str
    delivered: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    quota_exceeded: bool = False


class EventEmitter(Protocol):
    async def emit(self, event: EventEnvelope) -> DeliveryResult:
        ...


def _is_server_error(response: httpx.Response) -> bool:
    return response.status_code >= 500


def _log_retry(retry_state: RetryCallState) -> None:
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(f"Webhook delivery attempt {retry_state.attempt_number} failed; retrying in {wait:g}s")


class WebhookEmitter:
    """Signs events and posts them with bounded retries."""

    def __init__(
        self,
        store: TaskStore,
        codec: SignedEventCodec,
        url: str,
        secret: str,
        max_attempts: int = 3,
        backoff_seconds: Sequence[float] = (1.0, 5.0, 15.0),
        timeout: float = 30.0,
        raise_on_failure: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.codec = codec
        self.url = url
        self.secret = secret
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = list(backoff_seconds) or [0.0]
        self.timeout = timeout
        self.raise_on_failure = raise_on_failure
        self._client = client
        self._sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        """Retry network errors and 5xx responses; the last backoff step repeats."""
        return AsyncRetrying(
            retry=retry_if_exception_type(httpx.RequestError) | retry_if_result(_is_server_error),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_chain(*(wait_fixed(seconds) for seconds in self.backoff_seconds)),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _record(
        self,
        event: EventEnvelope,
        attempt: int,
        outcome: DeliveryOutcome,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        now = utcnow()
        await self.store.record_delivery(
            event.task_id,
            DeliveryAttempt(
                event_type=event.event,
                destination=self.url,
                attempt=attempt,
                outcome=outcome,
                status_code=status_code,
                error=error,
                created_at=now,
                last_attempt_at=now,
            ),
        )

    async def _post(self, body: str) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "langloop-webhook/1.0",
            **self.codec.signed_headers(body, self.secret, WebhookSource.BABEL),
        }
        if self._client is not None:
            return await self._client.post(self.url, content=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, content=body, headers=headers)

    async def emit(self, event: EventEnvelope) -> DeliveryResult:
        """
        Deliver an event, retrying network errors and 5xx responses.

        A 429 means the receiving side is out of quota: it is recorded and
        reported but never raised. Other failures are raised as
        ``DeliveryError`` only when ``raise_on_failure`` is set.

        Returns:
            DeliveryResult describing the final attempt
        """
        body = json.dumps(event.to_wire(), separators=(",", ":"))
        attempts = 0

        async def attempt() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            try:
                response = await self._post(body)
            except httpx.RequestError as e:
                error = f"{type(e).__name__}: {e}"
                logger.warning(f"Delivery of {event.event} for task {event.task_id} failed (attempt {attempts}): {error}")
                await self._record(event, attempts, DeliveryOutcome.FAILED, error=error)
                raise

            if response.is_success:
                await self._record(event, attempts, DeliveryOutcome.SUCCESS, status_code=response.status_code)
            else:
                await self._record(
                    event,
                    attempts,
                    DeliveryOutcome.FAILED,
                    status_code=response.status_code,
                    error=f"HTTP {response.status_code}",
                )
            return response

        response: Optional[httpx.Response] = None
        status_code: Optional[int] = None
        try:
            response = await self._retrying()(attempt)
        except RetryError as e:
            # Every attempt answered 5xx
            response = e.last_attempt.result()
        except httpx.RequestError as e:
            error = f"{type(e).__name__}: {e}"

        if response is not None:
            status_code = response.status_code
            error = f"HTTP {status_code}"
            if response.is_success:
                logger.info(f"Delivered {event.event} for task {event.task_id} on attempt {attempts}")
                return DeliveryResult(event.event, delivered=True, attempts=attempts, status_code=status_code)
            if status_code == QUOTA_EXCEEDED_STATUS:
                logger.warning(f"Quota exhausted delivering {event.event} for task {event.task_id}; continuing")
                return DeliveryResult(
                    event.event,
                    delivered=False,
                    attempts=attempts,
                    status_code=status_code,
                    error="quota exceeded",
                    quota_exceeded=True,
                )
            if status_code < 500:
                logger.error(f"Delivery of {event.event} for task {event.task_id} rejected with {status_code}")

        result = DeliveryResult(event.event, delivered=False, attempts=attempts, status_code=status_code, error=error)
        logger.error(f"Giving up on {event.event} for task {event.task_id} after {attempts} attempts: {error}")
        if self.raise_on_failure:
            raise DeliveryError(event.event, error, status_code)
        return result
