"""Daily planning workflow that turns stored tasks into a persisted execution plan.

Each cycle runs five stages in order and never skips one. Errors sourced from a
single task are recorded as diagnostics and the cycle continues; store failures
abort the cycle before anything is persisted.
"""

from __future__ import annotations

import asyncio
import os
import socket
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable

from croniter import croniter

from chime.infrastructure.config import (
    PLAN_CACHE_TTL,
    PLAN_RETENTION_DAYS,
    PLANNING_CRON,
    PLANNING_LEASE_TTL,
    PLANNING_POLL_INTERVAL,
    local_now,
)
from chime.infrastructure.logger import logger
from chime.infrastructure.plan_cache import PlanCache
from chime.infrastructure.poll_loop import PollLoop, start_poll_loop
from chime.infrastructure.single_flight import SingleFlight
from chime.scheduling.association_resolver import (
    AssociationResolver,
    Candidate,
    Defer,
    OrderConstraint,
    Reorder,
    Skip,
    Suspend,
)
from chime.scheduling.errors import ConfigurationError, InfrastructureFailure
from chime.scheduling.plan_repository import LeaseRepository, PlanRepository
from chime.scheduling.row_source import RowSource
from chime.scheduling.rule_evaluator import RuleEvaluator
from chime.scheduling.types import ExecutionPlanEntry, PlanDiagnostic, PlanResult
from chime.tasks.aggregate import TaskAggregate
from chime.tasks.repository import SuspensionRepository, TaskRepository
from chime.tasks.rules import Rule, format_clock_time, parse_clock_time
from chime.tasks.types import TaskSuspension

_LAST_SECOND = time(23, 59, 59)


@dataclass
class _Cycle:
    plan_date: date
    now: datetime
    diagnostics: list[PlanDiagnostic] = field(default_factory=list)

    def record(self, task_id: str, stage: str, reason_code: str, detail: str = "") -> None:
        self.diagnostics.append(
            PlanDiagnostic(task_id=task_id, stage=stage, reason_code=reason_code, detail=detail)  # type: ignore[arg-type]
        )


def default_message(task_name: str, plan_date: date, at: str) -> str:
    return f"{task_name}\nTime: {plan_date.isoformat()} {at}"


class PlanningWorkflow:
    """Builds and persists the execution plan for one date.

    `run()` is coalesced per date within the process and guarded by a store lease
    across processes; different dates plan independently.
    """

    def __init__(
        self,
        task_repo: TaskRepository,
        suspension_repo: SuspensionRepository,
        plan_repo: PlanRepository,
        lease_repo: LeaseRepository,
        row_source: RowSource,
        cache: PlanCache | None = None,
        evaluator: RuleEvaluator | None = None,
        resolver: AssociationResolver | None = None,
        clock: Callable[[], datetime] = local_now,
        lease_ttl: float = PLANNING_LEASE_TTL,
        retention_days: int = PLAN_RETENTION_DAYS,
        cache_ttl: float = PLAN_CACHE_TTL,
    ) -> None:
        self._tasks = task_repo
        self._suspensions = suspension_repo
        self._plans = plan_repo
        self._leases = lease_repo
        self._rows = row_source
        self._cache = cache
        self._evaluator = evaluator or RuleEvaluator()
        self._resolver = resolver or AssociationResolver()
        self._clock = clock
        self._lease_ttl = lease_ttl
        self._retention_days = retention_days
        self._cache_ttl = cache_ttl
        self._owner = f"{socket.gethostname()}:{os.getpid()}"
        self._flight: SingleFlight[PlanResult] = SingleFlight()

    # --- Entry points ---

    async def run(self, plan_date: date | None = None) -> PlanResult:
        now = self._clock()
        plan_date = plan_date or now.date()
        return await self._flight.do(plan_date, lambda: self._run_leased(plan_date, now))

    async def _run_leased(self, plan_date: date, now: datetime) -> PlanResult:
        try:
            acquired = self._leases.try_acquire(plan_date, self._owner, self._lease_ttl)
        except sqlite3.Error as err:
            raise InfrastructureFailure("Planning lease unavailable", {"plan_date": plan_date.isoformat()}) from err
        if not acquired:
            logger.info("Planning lease held by another process", plan_date=plan_date.isoformat())
            return PlanResult(plan_date=plan_date, lease_acquired=False)

        try:
            # Let concurrent triggers for the same date join this flight
            await asyncio.sleep(0)
            return self.build_plan(plan_date, now)
        finally:
            self._leases.release(plan_date, self._owner)

    def get_plan(self, plan_date: date) -> list[ExecutionPlanEntry]:
        """Read-through: cached plan if fresh, otherwise the stored one."""
        if self._cache is not None:
            cached = self._cache.get(plan_date)
            if cached is not None:
                return cached
        entries = self._plans.get_plan(plan_date)
        if self._cache is not None and entries:
            self._cache.put(plan_date, entries, self._cache_ttl)
        return entries

    def build_plan(self, plan_date: date, now: datetime | None = None) -> PlanResult:
        """Run all five stages for `plan_date` and persist the result."""
        cycle = _Cycle(plan_date=plan_date, now=now or self._clock())
        logger.info("Planning cycle started", plan_date=plan_date.isoformat())

        try:
            candidates = self._load_candidates(cycle)
            survivors, constraints, suspensions = self._resolve_associations(cycle, candidates)
            matches = self._evaluate_rules(cycle, survivors)
            entries = self._materialize(cycle, matches)
            plan = self._order(cycle, entries, constraints)
            inserted = self._persist(cycle, plan, suspensions)
            stored = self._plans.get_plan(plan_date)
        except sqlite3.Error as err:
            logger.exception("Planning cycle aborted", plan_date=plan_date.isoformat(), error=str(err))
            raise InfrastructureFailure("Store unavailable during planning", {"plan_date": plan_date.isoformat()}) from err

        if self._cache is not None:
            self._cache.put(plan_date, stored, self._cache_ttl)

        logger.info(
            "Planning cycle finished",
            plan_date=plan_date.isoformat(),
            candidates=len(candidates),
            entries=len(plan),
            inserted=inserted,
            diagnostics=len(cycle.diagnostics),
        )
        return PlanResult(plan_date=plan_date, entries=stored, inserted=inserted, diagnostics=cycle.diagnostics)

    # --- Stage 1: load candidates ---

    def _load_candidates(self, cycle: _Cycle) -> list[TaskAggregate]:
        as_of = cycle.now if cycle.plan_date == cycle.now.date() else datetime.combine(cycle.plan_date, time.min)
        tasks = self._tasks.load_active_tasks(as_of)

        aggregates: list[TaskAggregate] = []
        for task in tasks:
            try:
                config = self._tasks.get_notification_config(task.id)
            except ConfigurationError as err:
                logger.warning("Invalid notification config", task_id=task.id, details=err.details)
                cycle.record(task.id, "load", "invalid_notification_config", err.message)
                continue

            aggregate = TaskAggregate.from_store(
                task, self._tasks.load_rules(task.id), self._tasks.load_associations(task.id), config
            )

            for err in aggregate.invalid_rules:
                logger.warning("Invalid schedule rule", task_id=task.id, **err.details)
                cycle.record(task.id, "load", "invalid_rule", f"{err.details.get('rule_id')}: {err.details.get('errors')}")
            if aggregate.invalid_rules and not aggregate.rules:
                continue

            if aggregate.invalid_associations:
                for err in aggregate.invalid_associations:
                    logger.warning("Invalid task association", task_id=task.id, **err.details)
                    cycle.record(task.id, "load", "invalid_association", str(err.details.get("errors")))
                continue

            aggregates.append(aggregate)
        return aggregates

    # --- Stage 2: resolve associations ---

    def _resolve_associations(
        self, cycle: _Cycle, aggregates: list[TaskAggregate]
    ) -> tuple[list[TaskAggregate], list[OrderConstraint], list[TaskSuspension]]:
        suspended = self._suspensions.suspended_task_ids(cycle.plan_date)
        active: list[TaskAggregate] = []
        for aggregate in aggregates:
            if aggregate.id in suspended:
                cycle.record(aggregate.id, "resolve", "suspended", "Suspended by an earlier priority conflict")
            else:
                active.append(aggregate)

        candidates = {a.id: Candidate.from_aggregate(a, self._firing_rules(a, cycle.plan_date)) for a in active}
        survivors: list[TaskAggregate] = []
        constraints: list[OrderConstraint] = []
        suspensions: list[TaskSuspension] = []

        for aggregate in active:
            try:
                decision = self._resolver.resolve(aggregate.id, aggregate.associations, candidates, cycle.plan_date)
            except Exception as err:
                logger.exception("Association resolution failed", task_id=aggregate.id)
                cycle.record(aggregate.id, "resolve", "task_error", str(err))
                continue

            if isinstance(decision, Skip):
                logger.debug("Task skipped by association", task_id=aggregate.id, reason=decision.reason)
                cycle.record(aggregate.id, "resolve", "skipped_by_association", decision.reason)
            elif isinstance(decision, Suspend):
                until = cycle.plan_date + timedelta(days=decision.days)
                logger.info("Task suspended", task_id=aggregate.id, until=until.isoformat(), reason=decision.reason)
                cycle.record(aggregate.id, "resolve", "suspended", f"{decision.reason} (until {until.isoformat()})")
                suspensions.append(
                    TaskSuspension(
                        task_id=aggregate.id,
                        suspended_from=cycle.plan_date,
                        suspended_until=until,
                        reason=decision.reason,
                    )
                )
            elif isinstance(decision, Defer):
                logger.warning("Task deferred to next cycle", task_id=aggregate.id, reason=decision.reason)
                cycle.record(aggregate.id, "resolve", "resolution_deferred", decision.reason)
            else:
                if isinstance(decision, Reorder):
                    constraints.extend(c for c in decision.constraints if c not in constraints)
                survivors.append(aggregate)

        return survivors, constraints, suspensions

    def _firing_rules(self, aggregate: TaskAggregate, day: date) -> list[Rule] | None:
        """Rules of `aggregate` that fire on `day`, or None when evaluation fails (reported in stage 3)."""
        try:
            return [r for r in aggregate.rules if self._evaluator.applies_to(r, day)]
        except Exception:
            logger.debug("Rule evaluation failed during resolution", task_id=aggregate.id)
            return None

    # --- Stage 3: evaluate rules ---

    def _evaluate_rules(self, cycle: _Cycle, aggregates: list[TaskAggregate]) -> list[tuple[TaskAggregate, list[Rule]]]:
        matches: list[tuple[TaskAggregate, list[Rule]]] = []
        for aggregate in aggregates:
            if not aggregate.rules:
                cycle.record(aggregate.id, "evaluate", "no_rules", "No schedule rules defined for task")
                continue
            try:
                firing = [r for r in aggregate.rules if self._evaluator.applies_to(r, cycle.plan_date)]
            except Exception as err:
                logger.exception("Rule evaluation failed", task_id=aggregate.id)
                cycle.record(aggregate.id, "evaluate", "task_error", str(err))
                continue
            if firing:
                matches.append((aggregate, firing))
        return matches

    # --- Stage 4: timing and content ---

    def _materialize(
        self, cycle: _Cycle, matches: list[tuple[TaskAggregate, list[Rule]]]
    ) -> list[ExecutionPlanEntry]:
        entries: list[ExecutionPlanEntry] = []
        for aggregate, rules in matches:
            if aggregate.notification_config is None:
                cycle.record(aggregate.id, "materialize", "no_notification_config", "Task has no notification config")
                continue
            try:
                task_entries = self._materialize_task(cycle, aggregate, rules)
            except ConfigurationError as err:
                logger.warning("Message template failed", task_id=aggregate.id, **err.details)
                cycle.record(aggregate.id, "materialize", "template_failed", err.message)
                continue
            except Exception as err:
                logger.exception("Message lookup failed", task_id=aggregate.id)
                cycle.record(aggregate.id, "materialize", "lookup_failed", str(err))
                continue
            if not task_entries:
                cycle.record(aggregate.id, "materialize", "no_execution_times", "No execution times for this date")
            entries.extend(task_entries)
        return entries

    def _materialize_task(
        self, cycle: _Cycle, aggregate: TaskAggregate, rules: list[Rule]
    ) -> list[ExecutionPlanEntry]:
        config = aggregate.notification_config
        assert config is not None
        task = aggregate.task
        entries: list[ExecutionPlanEntry] = []

        for rule in rules:
            if rule.uses_row_times:
                times = self._rows.times_for(task.id, cycle.plan_date)
            else:
                times = rule.execution_times

            for at in times:
                content = self._rows.lookup_message_for_time(task.id, cycle.plan_date, at) if rule.uses_row_times else None
                variables = {
                    "task_id": task.id,
                    "task_name": task.name,
                    "description": task.description,
                    "priority": task.priority,
                    "date": cycle.plan_date.isoformat(),
                    "time": at,
                    "timestamp": f"{cycle.plan_date.isoformat()} {at}",
                    "content": content or "",
                }
                message = config.render(variables) or content or default_message(task.name, cycle.plan_date, at)
                entries.append(
                    ExecutionPlanEntry(
                        task_id=task.id,
                        rule_id=rule.id or "",
                        scheduled_date=cycle.plan_date,
                        scheduled_time=at,
                        message_content=message,
                        priority=task.priority_score,
                    )
                )
        return entries

    # --- Stage 5: order and emit ---

    def _order(
        self, cycle: _Cycle, entries: list[ExecutionPlanEntry], constraints: list[OrderConstraint]
    ) -> list[ExecutionPlanEntry]:
        by_task: dict[str, list[ExecutionPlanEntry]] = {}
        for entry in entries:
            by_task.setdefault(entry.task_id, []).append(entry)

        applied: dict[str, set[str]] = {}
        for constraint in constraints:
            first, second = constraint.first_task_id, constraint.second_task_id
            if first not in by_task or second not in by_task:
                continue
            if _reaches(applied, second, first):
                logger.warning("Ignoring cyclic dependency", first_task_id=first, second_task_id=second)
                continue
            applied.setdefault(first, set()).add(second)

            earliest = min(parse_clock_time(e.scheduled_time) for e in by_task[first])
            floor = _shift(cycle.plan_date, earliest, constraint.delay_minutes)
            shifted: dict[tuple[str, str], ExecutionPlanEntry] = {}
            for entry in by_task[second]:
                at = max(entry.scheduled_time, floor)
                updated = entry.model_copy(
                    update={
                        "scheduled_time": at,
                        "depends_on_task_id": first,
                        "delay_minutes": constraint.delay_minutes,
                    }
                )
                # Two times shifted onto the same floor collapse into one entry
                shifted.setdefault((updated.rule_id, at), updated)
            by_task[second] = list(shifted.values())
            cycle.record(
                second,
                "emit",
                "dependency_deferred",
                f"Runs after task {first} (+{constraint.delay_minutes}min)",
            )

        ordered = [e for task_entries in by_task.values() for e in task_entries]
        ordered.sort(key=lambda e: (e.scheduled_time, -e.priority, e.task_id, e.rule_id))
        return ordered

    def _persist(self, cycle: _Cycle, plan: list[ExecutionPlanEntry], suspensions: list[TaskSuspension]) -> int:
        inserted = self._plans.persist_plan(plan)
        for suspension in suspensions:
            self._suspensions.suspend(suspension)

        cutoff = cycle.plan_date - timedelta(days=self._retention_days)
        purged = self._plans.purge_before(cutoff)
        if purged:
            logger.info("Purged old plan entries", before=cutoff.isoformat(), count=purged)
            if self._cache is not None:
                self._cache.invalidate(cutoff)
        return inserted


def _shift(plan_date: date, at: time, minutes: int) -> str:
    shifted = datetime.combine(plan_date, at) + timedelta(minutes=minutes)
    if shifted.date() != plan_date:
        return format_clock_time(_LAST_SECOND)
    return format_clock_time(shifted.time())


def _reaches(edges: dict[str, set[str]], start: str, target: str) -> bool:
    stack, seen = [start], set()
    while stack:
        node = stack.pop()
        if node == target:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edges.get(node, ()))
    return False


class PlanningTrigger:
    """Fires the workflow for the current date whenever the cron expression comes due."""

    def __init__(
        self,
        workflow: PlanningWorkflow,
        cron_expr: str = PLANNING_CRON,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        if not croniter.is_valid(cron_expr):
            raise ConfigurationError("Invalid planning cron expression", {"cron": cron_expr})
        self._workflow = workflow
        self._cron = cron_expr
        self._clock = clock
        self.next_run: datetime = croniter(cron_expr, clock()).get_next(datetime)

    async def tick(self) -> PlanResult | None:
        now = self._clock()
        if now < self.next_run:
            return None
        self.next_run = croniter(self._cron, now).get_next(datetime)
        try:
            return await self._workflow.run(now.date())
        except InfrastructureFailure as err:
            logger.error("Planning cycle failed, retrying at next trigger", next_run=self.next_run.isoformat(), **err.details)
            return None


def start_planning_loop(trigger: PlanningTrigger) -> PollLoop:
    """Start the planning trigger polling loop."""

    async def poll() -> None:
        await trigger.tick()

    return start_poll_loop("Planning", PLANNING_POLL_INTERVAL, poll)
