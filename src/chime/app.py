"""Orchestrator class: composes services and wires subsystems."""

from __future__ import annotations

from datetime import date, timedelta

from chime.delivery.webhook import WebhookDelivery
from chime.infrastructure.config import RETRY_WINDOW, RetryPolicy, local_now
from chime.infrastructure.database import AppDatabase, database
from chime.infrastructure.logger import logger
from chime.infrastructure.plan_cache import InMemoryPlanCache
from chime.infrastructure.poll_loop import PollLoop
from chime.scheduling.dispatcher import PlanDispatcher, start_dispatch_loop
from chime.scheduling.errors import InfrastructureFailure
from chime.scheduling.planner import PlanningTrigger, PlanningWorkflow, start_planning_loop
from chime.scheduling.types import PlanResult
from chime.tasks.task_service import TaskManager


class Orchestrator:
    """Composes all services and manages the application lifecycle."""

    def __init__(self, db: AppDatabase | None = None) -> None:
        self._db: AppDatabase = db or database
        self._cache = InMemoryPlanCache()
        self._delivery = WebhookDelivery()
        self._running = False
        self._planning_handle: PollLoop | None = None
        self._dispatch_handle: PollLoop | None = None
        self.workflow: PlanningWorkflow | None = None
        self.dispatcher: PlanDispatcher | None = None
        self.task_manager: TaskManager | None = None

    def wire(self) -> None:
        """Build services over an initialized database."""
        self.workflow = PlanningWorkflow(
            task_repo=self._db.task_repo,
            suspension_repo=self._db.suspension_repo,
            plan_repo=self._db.plan_repo,
            lease_repo=self._db.lease_repo,
            row_source=self._db.worksheet_repo,
            cache=self._cache,
        )
        self.dispatcher = PlanDispatcher(
            plan_repo=self._db.plan_repo,
            task_repo=self._db.task_repo,
            channel=self._delivery,
            policy=RetryPolicy(),
            cache=self._cache,
        )
        self.task_manager = TaskManager(self._db.task_repo, self._db.suspension_repo, self._db.plan_repo)

    async def start(self) -> None:
        """Initialize all services and start the polling loops."""
        logger.info("Starting chime...")

        self._db.init()
        self.wire()
        assert self.workflow is not None and self.dispatcher is not None

        # Entries claimed by a process that died mid-delivery
        requeued = self._db.plan_repo.requeue_stale_executing(local_now() - timedelta(seconds=RETRY_WINDOW))
        if requeued:
            logger.warning("Requeued stale executing entries", count=requeued)

        # Today's plan may not exist yet if the process was down at trigger time
        await self.plan(local_now().date())

        self._planning_handle = start_planning_loop(PlanningTrigger(self.workflow))
        self._dispatch_handle = start_dispatch_loop(self.dispatcher)

        self._running = True
        logger.info("chime started successfully")

    async def plan(self, plan_date: date) -> PlanResult | None:
        assert self.workflow is not None
        try:
            return await self.workflow.run(plan_date)
        except InfrastructureFailure as err:
            logger.error("Planning failed", **err.details)
            return None

    async def shutdown(self) -> None:
        """Gracefully shut down all services."""
        logger.info("Shutting down chime...")
        self._running = False

        if self._planning_handle:
            self._planning_handle.stop()
        if self._dispatch_handle:
            self._dispatch_handle.stop()

        await self._delivery.close()
        logger.info("chime shut down complete")
