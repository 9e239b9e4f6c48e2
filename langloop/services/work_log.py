"""Durable, consumer-group-readable work log on top of Redis streams.

The log is the pull-based alternative to pushing webhooks: producers append
work items, named workers read them as members of one consumer group, and
anything a crashed worker read but never acknowledged can be reclaimed by a
live worker once it has been idle long enough.
"""

import enum
import json
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)


class WorkStep(str, enum.Enum):
    """Unit of work a worker can perform for one language."""

    TRANSLATE = "translate"
    VERIFY = "verify"
    REVIEW = "review"  # post-human re-verification


@dataclass
class WorkItem:
    """One entry of the work log."""

    task_id: str
    step: WorkStep
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))  # ms; not due before this
    retry_count: int = 0
    max_retries: int = 3
    data: dict[str, Any] = field(default_factory=dict)
    entry_id: Optional[str] = None

    @property
    def language(self) -> Optional[str]:
        return self.data.get("language")

    def is_due(self, now_ms: Optional[int] = None) -> bool:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return self.timestamp <= now_ms

    def to_fields(self) -> dict[str, str]:
        return {
            "taskId": self.task_id,
            "type": self.step.value,
            "timestamp": str(self.timestamp),
            "retryCount": str(self.retry_count),
            "maxRetries": str(self.max_retries),
            "data": json.dumps(self.data) if self.data else "",
        }

    @classmethod
    def from_fields(cls, entry_id: str, fields: dict[str, str]) -> "WorkItem":
        raw_data = fields.get("data") or ""
        return cls(
            task_id=fields["taskId"],
            step=WorkStep(fields["type"]),
            timestamp=int(fields.get("timestamp") or 0),
            retry_count=int(fields.get("retryCount") or 0),
            max_retries=int(fields.get("maxRetries") or 3),
            data=json.loads(raw_data) if raw_data else {},
            entry_id=entry_id,
        )


@dataclass
class WorkLogStats:
    stream_length: int
    total_pending: int
    consumers: dict[str, int]


def backoff_delay(
    retry_count: int,
    base: float = 1.0,
    cap: float = 60.0,
    jitter: float = 0.1,
    rng: random.Random = random,
) -> float:
    """
    Exponential backoff with jitter, in seconds.

    ``min(base * 2**(retry_count - 1), cap)`` scaled by a random factor in
    ``[1 - jitter, 1 + jitter]`` and clamped to ``cap``.
    """
    exponent = max(retry_count, 1) - 1
    delay = min(base * (2 ** exponent), cap)
    delay *= 1 + rng.uniform(-jitter, jitter)
    return min(delay, cap)


class WorkLog:
    """At-least-once work queue backed by a Redis stream and consumer group."""

    def __init__(
        self,
        client: Redis,
        stream: str = "task:stream",
        group: str = "task:processors",
        channel: str = "task:events",
        default_max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
    ):
        self.client = client
        self.stream = stream
        self.group = group
        self.channel = channel
        self.default_max_retries = default_max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    async def initialize(self) -> None:
        """Create the consumer group (and stream) if it does not exist yet."""
        try:
            await self.client.xgroup_create(self.stream, self.group, id="0-0", mkstream=True)
            logger.info(f"Created consumer group {self.group} on {self.stream}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _publish(self, action: str, item: WorkItem, **extra: Any) -> None:
        message = {
            "action": action,
            "taskId": item.task_id,
            "type": item.step.value,
            "retryCount": item.retry_count,
            **extra,
        }
        await self.client.publish(self.channel, json.dumps(message))

    async def enqueue(self, item: WorkItem) -> str:
        """Append a work item and broadcast a ``task_queued`` notification."""
        entry_id = await self.client.xadd(self.stream, item.to_fields())
        entry_id = _decode(entry_id)
        await self._publish("task_queued", item, streamId=entry_id)
        logger.debug(f"Enqueued {item.step.value} for task {item.task_id} as {entry_id}")
        return entry_id

    async def consume(self, consumer_name: str, batch_size: int = 1, block_ms: Optional[int] = None) -> list[WorkItem]:
        """Read entries never delivered to any member of the group."""
        response = await self.client.xreadgroup(
            self.group,
            consumer_name,
            {self.stream: ">"},
            count=batch_size,
            block=block_ms,
        )
        items = []
        for _stream, messages in response or []:
            for entry_id, fields in messages:
                items.append(WorkItem.from_fields(_decode(entry_id), _decode_fields(fields)))
        return items

    async def acknowledge(self, consumer_name: str, entry_id: str) -> None:
        """Mark an entry processed; it leaves the pending list."""
        await self.client.xack(self.stream, self.group, entry_id)
        logger.debug(f"{consumer_name} acknowledged {entry_id}")

    async def reclaim(self, consumer_name: str, min_idle_ms: int = 60_000, count: int = 100) -> list[WorkItem]:
        """
        Take over entries another consumer read but has not acknowledged.

        Args:
            consumer_name: Consumer that becomes the new owner
            min_idle_ms: Only entries idle at least this long are transferred
            count: Upper bound on entries transferred per call

        Returns:
            The reclaimed work items
        """
        items: list[WorkItem] = []
        start = "0-0"
        while len(items) < count:
            response = await self.client.xautoclaim(
                self.stream,
                self.group,
                consumer_name,
                min_idle_time=min_idle_ms,
                start_id=start,
                count=count - len(items),
            )
            next_start, messages = _decode(response[0]), response[1]
            for entry_id, fields in messages:
                if fields is None:  # deleted from the stream while pending
                    continue
                items.append(WorkItem.from_fields(_decode(entry_id), _decode_fields(fields)))
            if next_start == "0-0":
                break
            start = next_start

        if items:
            logger.info(f"{consumer_name} reclaimed {len(items)} abandoned entries")
        return items

    def retry_delay(self, retry_count: int) -> float:
        return backoff_delay(retry_count, base=self.retry_base_delay, cap=self.retry_max_delay)

    async def retry(self, item: WorkItem, error: Optional[str] = None) -> Optional[str]:
        """
        Re-enqueue a failed item with backoff, or give up once retries are spent.

        Returns:
            The new entry id, or None when the item failed permanently
        """
        if item.retry_count >= item.max_retries:
            await self._publish("task_failed_permanently", item, error=error)
            logger.error(
                f"Work item {item.step.value} for task {item.task_id} failed permanently "
                f"after {item.retry_count} retries: {error}"
            )
            return None

        retry_count = item.retry_count + 1
        delay_ms = int(self.retry_delay(retry_count) * 1000)
        retry_item = replace(
            item,
            retry_count=retry_count,
            timestamp=int(time.time() * 1000) + delay_ms,
            data={**item.data, "previousError": error},
            entry_id=None,
        )
        await self._publish("task_retry_scheduled", retry_item, error=error)
        logger.warning(
            f"Retrying {item.step.value} for task {item.task_id} "
            f"(attempt {retry_count}/{item.max_retries}) in {delay_ms}ms"
        )
        return await self.enqueue(retry_item)

    async def stats(self) -> WorkLogStats:
        """Stream length plus pending entries per consumer of our group."""
        try:
            length = await self.client.xlen(self.stream)
            consumers = await self.client.xinfo_consumers(self.stream, self.group)
        except ResponseError as e:
            # Stream or group not created yet
            logger.debug(f"Work log stats unavailable: {e}")
            return WorkLogStats(stream_length=0, total_pending=0, consumers={})

        pending = {_decode(c["name"]): int(c["pending"]) for c in consumers}
        return WorkLogStats(
            stream_length=int(length),
            total_pending=sum(pending.values()),
            consumers=pending,
        )


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _decode_fields(fields: dict) -> dict[str, str]:
    return {_decode(k): _decode(v) for k, v in fields.items()}
