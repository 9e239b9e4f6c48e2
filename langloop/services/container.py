"""Builds the service graph once per process."""

import logging
from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from langloop.config import Settings, get_settings
from langloop.db.session import async_session_maker
from langloop.services.capabilities import (
    AnthropicScorer,
    DemoScorer,
    DemoTranslator,
    HttpTranslator,
    Scorer,
    Translator,
)
from langloop.services.delivery import EventEmitter, WebhookEmitter
from langloop.services.event_router import EventRouter
from langloop.services.prolific import DemoMarketplace, ProlificClient, ReviewMarketplace
from langloop.services.review_batches import ReviewBatcher
from langloop.services.signing import SignedEventCodec
from langloop.services.task_service import TaskService
from langloop.services.task_store import TaskStore
from langloop.services.work_items import WorkItemProcessor
from langloop.services.work_log import WorkLog

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: TaskStore
    codec: SignedEventCodec
    emitter: EventEmitter
    redis: Redis
    work_log: WorkLog
    review_batcher: ReviewBatcher
    task_service: TaskService
    router: EventRouter
    processor: WorkItemProcessor

    async def close(self) -> None:
        await self.redis.aclose()


def build_translator(settings: Settings) -> Translator:
    if settings.demo_mode or not settings.translation_api_url:
        logger.info("Using demo translator")
        return DemoTranslator()
    return HttpTranslator(
        settings.translation_api_url,
        api_key=settings.translation_api_key,
        timeout=settings.translation_timeout_seconds,
    )


def build_scorer(settings: Settings) -> Scorer:
    if settings.demo_mode or not settings.anthropic_api_key:
        logger.info("Using demo scorer")
        return DemoScorer()
    return AnthropicScorer(
        settings.anthropic_api_key,
        url=settings.anthropic_api_url,
        model=settings.scoring_model,
        max_tokens=settings.scoring_max_tokens,
        timeout=settings.scoring_timeout_seconds,
    )


def build_marketplace(settings: Settings) -> ReviewMarketplace:
    if settings.demo_mode or not settings.prolific_api_token:
        logger.info("Using demo review marketplace")
        return DemoMarketplace()
    return ProlificClient(
        settings.prolific_api_token,
        base_url=settings.prolific_api_url,
        project_id=settings.prolific_project_id,
        reward_pence=settings.prolific_reward_pence,
        estimated_minutes=settings.prolific_estimated_minutes,
    )


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis: Optional[Redis] = None,
    emitter: Optional[EventEmitter] = None,
    translator: Optional[Translator] = None,
    scorer: Optional[Scorer] = None,
    marketplace: Optional[ReviewMarketplace] = None,
) -> Services:
    """
    Wire the orchestrator and its collaborators.

    Any collaborator can be passed in to replace the configured one.

    Returns:
        Services holding every component
    """
    settings = settings or get_settings()
    store = TaskStore(session_factory or async_session_maker)
    codec = SignedEventCodec(tolerance_seconds=settings.signature_tolerance_seconds)
    emitter = emitter or WebhookEmitter(
        store,
        codec,
        url=settings.webhook_url,
        secret=settings.babel_webhook_secret,
        max_attempts=settings.delivery_max_attempts,
        backoff_seconds=settings.delivery_backoff_seconds,
        timeout=settings.delivery_timeout_seconds,
        raise_on_failure=settings.raise_on_delivery_failure,
    )
    redis = redis or Redis.from_url(settings.redis_url)
    work_log = WorkLog(
        redis,
        stream=settings.work_log_stream,
        group=settings.work_log_group,
        channel=settings.work_log_channel,
        default_max_retries=settings.work_log_max_retries,
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
    )
    review_batcher = ReviewBatcher(store, emitter, marketplace or build_marketplace(settings))
    task_service = TaskService(
        store,
        emitter,
        translator or build_translator(settings),
        scorer or build_scorer(settings),
        review_batcher=review_batcher,
        work_log=work_log,
        settings=settings,
    )
    router = EventRouter(task_service)
    processor = WorkItemProcessor(
        work_log,
        task_service,
        consumer_name=settings.worker_name,
        batch_size=settings.work_log_batch_size,
        reclaim_min_idle_ms=settings.reclaim_min_idle_ms,
    )
    return Services(
        settings=settings,
        store=store,
        codec=codec,
        emitter=emitter,
        redis=redis,
        work_log=work_log,
        review_batcher=review_batcher,
        task_service=task_service,
        router=router,
        processor=processor,
    )
