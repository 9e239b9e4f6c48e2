"""Consumer side of the work log: runs queued capability steps."""

import logging
from dataclasses import dataclass

from langloop.services.task_service import TaskService
from langloop.services.work_log import WorkItem, WorkLog, WorkStep

logger = logging.getLogger(__name__)


@dataclass
class DrainReport:
    processed: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0


class WorkItemProcessor:
    """Reads work items as a named consumer and runs them through the orchestrator."""

    def __init__(
        self,
        work_log: WorkLog,
        task_service: TaskService,
        consumer_name: str = "worker-1",
        batch_size: int = 10,
        reclaim_min_idle_ms: int = 60_000,
    ):
        self.work_log = work_log
        self.task_service = task_service
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.reclaim_min_idle_ms = reclaim_min_idle_ms

    async def _run_step(self, item: WorkItem) -> None:
        runners = {
            WorkStep.TRANSLATE: self.task_service.run_translation,
            WorkStep.VERIFY: self.task_service.run_verification,
            WorkStep.REVIEW: self.task_service.run_reverification,
        }
        if not item.language:
            raise ValueError(f"Work item {item.entry_id} has no language")
        await runners[item.step](item.task_id, item.language)

    async def process(self, item: WorkItem, report: DrainReport) -> None:
        """Run one item; acknowledge it whatever the outcome once it has been handled."""
        try:
            await self._run_step(item)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Work item {item.entry_id} ({item.step.value}) for task {item.task_id} failed: {error}")
            retry_id = await self.work_log.retry(item, error)
            if retry_id is None:
                report.failed += 1
                if item.language:
                    await self.task_service.fail_subtask(item.task_id, item.language, error)
            else:
                report.retried += 1
        else:
            report.processed += 1

        await self.work_log.acknowledge(self.consumer_name, item.entry_id)

    async def _handle(self, items: list[WorkItem], report: DrainReport) -> None:
        for item in items:
            if not item.is_due():
                # Left pending; reclaimed once idle past the backoff cap
                report.deferred += 1
                continue
            await self.process(item, report)

    async def drain(self) -> DrainReport:
        """Process one batch of new entries."""
        report = DrainReport()
        await self._handle(await self.work_log.consume(self.consumer_name, self.batch_size), report)
        if report.processed or report.retried or report.failed:
            logger.info(f"{self.consumer_name} drained work log: {report}")
        return report

    async def reclaim(self) -> DrainReport:
        """Take over entries abandoned by other consumers and process the due ones."""
        report = DrainReport()
        items = await self.work_log.reclaim(self.consumer_name, min_idle_ms=self.reclaim_min_idle_ms)
        await self._handle(items, report)
        return report
