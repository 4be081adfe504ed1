"""Plan dispatcher: polls due plan entries and hands them to the delivery channel."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from chime.delivery.types import DeliveryChannel, DeliveryOptions, DeliveryResult
from chime.infrastructure.config import DELIVERY_TIMEOUT, DISPATCH_POLL_INTERVAL, RetryPolicy, local_now
from chime.infrastructure.logger import logger
from chime.infrastructure.plan_cache import PlanCache
from chime.infrastructure.poll_loop import PollLoop, start_poll_loop
from chime.scheduling.errors import ConfigurationError, DeliveryFailure
from chime.scheduling.plan_repository import PlanRepository
from chime.scheduling.types import ExecutionPlanEntry
from chime.tasks.repository import TaskRepository


@dataclass
class DispatchReport:
    completed: int = 0
    retrying: int = 0
    failed: int = 0
    held: int = 0


class PlanDispatcher:
    """Moves due entries pending -> executing -> completed | failed.

    Entries of different tasks are delivered concurrently; entries of one task
    go out in plan order. An entry that depends on another task waits until that
    task's earlier entries are finished and the declared delay has passed.
    """

    def __init__(
        self,
        plan_repo: PlanRepository,
        task_repo: TaskRepository,
        channel: DeliveryChannel,
        policy: RetryPolicy | None = None,
        timeout: float = DELIVERY_TIMEOUT,
        cache: PlanCache | None = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._plans = plan_repo
        self._tasks = task_repo
        self._channel = channel
        self._policy = policy or RetryPolicy()
        self._timeout = timeout
        self._cache = cache
        self._clock = clock

    async def dispatch_due(self) -> DispatchReport:
        now = self._clock()
        due = self._plans.get_due_entries(now)
        report = DispatchReport()
        if not due:
            return report

        logger.info("Found due plan entries", count=len(due))
        by_task: dict[str, list[ExecutionPlanEntry]] = {}
        for entry in due:
            by_task.setdefault(entry.task_id, []).append(entry)

        await asyncio.gather(*(self._dispatch_task(entries, now, report) for entries in by_task.values()))

        if self._cache is not None:
            for day in {e.scheduled_date for e in due}:
                self._cache.invalidate(day)
        return report

    async def _dispatch_task(self, entries: list[ExecutionPlanEntry], now: datetime, report: DispatchReport) -> None:
        for entry in entries:
            if not self._ready(entry, now):
                report.held += 1
                continue
            if entry.id is None or not self._plans.claim_entry(entry.id, now):
                continue
            outcome = await self._deliver(entry)
            self._record(entry, outcome, report)

    def _ready(self, entry: ExecutionPlanEntry, now: datetime) -> bool:
        """Whether the entry's predecessor (if any) is done and its delay has elapsed."""
        if not entry.depends_on_task_id:
            return True

        predecessors = [
            e
            for e in self._plans.get_task_entries(entry.scheduled_date, entry.depends_on_task_id)
            if e.scheduled_time <= entry.scheduled_time
        ]
        if any(not e.is_terminal for e in predecessors):
            logger.debug("Entry waiting on predecessor", entry_id=entry.id, depends_on=entry.depends_on_task_id)
            return False

        finished = [datetime.fromisoformat(e.executed_at) for e in predecessors if e.executed_at]
        if finished and now < max(finished) + timedelta(minutes=entry.delay_minutes):
            return False
        return True

    async def _deliver(self, entry: ExecutionPlanEntry) -> DeliveryResult:
        try:
            config = self._tasks.get_notification_config(entry.task_id)
        except ConfigurationError as err:
            return DeliveryResult(success=False, code="invalid_config", message=err.message, retryable=False)
        if config is None:
            return DeliveryResult(
                success=False, code="no_config", message="Task has no notification config", retryable=False
            )

        try:
            return await asyncio.wait_for(
                self._channel.send(config.webhook_url, entry.message_content, DeliveryOptions.from_config(config)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return DeliveryResult(success=False, code="timeout", message=f"Delivery timed out after {self._timeout}s")
        except DeliveryFailure as err:
            return DeliveryResult(success=False, code="delivery_failure", message=err.message, retryable=err.retryable)
        except Exception as err:
            logger.exception("Delivery channel raised", entry_id=entry.id, task_id=entry.task_id)
            return DeliveryResult(success=False, code=type(err).__name__, message=str(err))

    def _record(self, entry: ExecutionPlanEntry, outcome: DeliveryResult, report: DispatchReport) -> None:
        assert entry.id is not None
        now = self._clock()

        if outcome.success:
            self._plans.update_entry_status(entry.id, "completed", result=outcome.message or "ok", executed_at=now)
            report.completed += 1
            logger.info("Plan entry delivered", entry_id=entry.id, task_id=entry.task_id, time=entry.scheduled_time)
            return

        attempts = entry.attempts + 1
        first_attempt = datetime.fromisoformat(entry.first_attempt_at) if entry.first_attempt_at else now
        elapsed = (now - first_attempt).total_seconds()
        error = f"{outcome.code}: {outcome.message}"

        if outcome.retryable and self._policy.allows_retry(attempts, elapsed):
            delay = self._policy.delay_for(attempts)
            self._plans.schedule_retry(entry.id, now + timedelta(seconds=delay), error)
            report.retrying += 1
            logger.warning(
                "Delivery failed, retry scheduled",
                entry_id=entry.id,
                task_id=entry.task_id,
                attempts=attempts,
                delay_s=delay,
                error=error,
            )
            return

        self._plans.update_entry_status(entry.id, "failed", error=error, executed_at=now)
        report.failed += 1
        logger.error(
            "Delivery failed permanently",
            entry_id=entry.id,
            task_id=entry.task_id,
            attempts=attempts,
            retryable=outcome.retryable,
            error=error,
        )


def start_dispatch_loop(dispatcher: PlanDispatcher) -> PollLoop:
    """Start the dispatch polling loop."""

    async def poll() -> None:
        await dispatcher.dispatch_due()

    return start_poll_loop("Dispatch", DISPATCH_POLL_INTERVAL, poll)
