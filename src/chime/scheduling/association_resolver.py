"""Association resolution: decide how a task's declared relationships affect one cycle.

Associations are plain id edges. Each edge touching a task is evaluated on its
own against the cycle's candidate set, and the most restrictive outcome wins:
Suspend > Skip > Defer > Reorder > Proceed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time
from typing import Iterable, Mapping, Sequence, Union

from chime.scheduling.errors import ResolutionAmbiguity
from chime.tasks.aggregate import TaskAggregate
from chime.tasks.associations import (
    Association,
    DependencyAssociation,
    MutualExclusiveAssociation,
    PriorityAssociation,
)
from chime.tasks.rules import Rule


@dataclass(frozen=True)
class Candidate:
    """What the resolver needs to know about a task competing in this cycle."""

    task_id: str
    priority_score: int
    first_time: time | None = None  # earliest execution time among firing rules
    fires: bool = True  # any rule fires on the cycle's date

    @classmethod
    def from_aggregate(cls, aggregate: TaskAggregate, firing: Sequence[Rule] | None = None) -> Candidate:
        """Candidate for `aggregate`; `firing` narrows it to the rules that fire on the date."""
        if firing is None:
            return cls(aggregate.id, aggregate.task.priority_score, aggregate.earliest_execution_time())
        times = [t for rule in firing for t in rule.clock_times]
        return cls(aggregate.id, aggregate.task.priority_score, min(times) if times else None, bool(firing))


@dataclass(frozen=True)
class OrderConstraint:
    first_task_id: str
    second_task_id: str
    delay_minutes: int = 0


@dataclass(frozen=True)
class Proceed:
    synchronized_with: tuple[str, ...] = ()


@dataclass(frozen=True)
class Skip:
    reason: str
    association_id: str | None = None


@dataclass(frozen=True)
class Suspend:
    task_id: str
    days: int
    reason: str
    association_id: str | None = None


@dataclass(frozen=True)
class Defer:
    reason: str
    association_id: str | None = None


@dataclass(frozen=True)
class Reorder:
    constraints: tuple[OrderConstraint, ...]


ResolutionDecision = Union[Proceed, Skip, Suspend, Defer, Reorder]

_SEVERITY: dict[type, int] = {Proceed: 0, Reorder: 1, Defer: 2, Skip: 3, Suspend: 4}


def severity(decision: ResolutionDecision) -> int:
    return _SEVERITY[type(decision)]


class AssociationResolver:
    """Pure resolution over association edges. Holds no state."""

    def resolve(
        self,
        task_id: str,
        associations: Iterable[Association],
        candidates: Mapping[str, Candidate],
        day: date,
    ) -> ResolutionDecision:
        """Final disposition of `task_id` for `day` across all of its associations."""
        outcomes: list[ResolutionDecision] = []
        for association in associations:
            if not association.involves(task_id):
                continue
            try:
                outcomes.append(self._resolve_edge(task_id, association, candidates))
            except ResolutionAmbiguity as err:
                outcomes.append(Defer(err.message, association.id))
        return _compose(outcomes)

    def resolve_all(
        self,
        associations_by_task: Mapping[str, Iterable[Association]],
        candidates: Mapping[str, Candidate],
        day: date,
    ) -> dict[str, ResolutionDecision]:
        return {
            task_id: self.resolve(task_id, associations_by_task.get(task_id, ()), candidates, day)
            for task_id in candidates
        }

    def _resolve_edge(
        self, task_id: str, association: Association, candidates: Mapping[str, Candidate]
    ) -> ResolutionDecision:
        other_id = association.other(task_id)
        if other_id not in candidates or task_id not in candidates:
            return Proceed()

        me = candidates[task_id]
        other = candidates[other_id]
        # Conflicts only exist between tasks that both run on the date
        if not me.fires or not other.fires:
            return Proceed()

        if isinstance(association, PriorityAssociation):
            return self._resolve_priority(me, other, association)

        if isinstance(association, MutualExclusiveAssociation):
            # Only the associated side yields, whatever the priorities are
            if task_id == association.associated_task_id:
                return Skip(f"Mutually exclusive with task {other_id}", association.id)
            return Proceed()

        if isinstance(association, DependencyAssociation):
            return self._resolve_dependency(association)

        return Proceed()

    def _resolve_priority(
        self, me: Candidate, other: Candidate, association: PriorityAssociation
    ) -> ResolutionDecision:
        strategy = association.priority_rule.strategy

        if strategy == "first_scheduled":
            if me.first_time is None or other.first_time is None:
                raise ResolutionAmbiguity(
                    "Cannot order tasks without declared execution times",
                    {"task_id": me.task_id, "other_task_id": other.task_id, "association_id": association.id},
                )
            if me.first_time > other.first_time:
                return Skip(f"Task {other.task_id} is scheduled earlier", association.id)
            if me.first_time < other.first_time:
                return Proceed()
            # Same time: fall through to priority

        if me.priority_score >= other.priority_score:
            return Proceed()

        reason = f"Lower priority than task {other.task_id}"
        if strategy == "suspend_lower":
            return Suspend(me.task_id, association.suspend_duration or 0, reason, association.id)
        return Skip(reason, association.id)

    def _resolve_dependency(self, association: DependencyAssociation) -> ResolutionDecision:
        rule = association.priority_rule
        primary, associated = association.primary_task_id, association.associated_task_id
        if rule.dependency_type == "before":
            return Reorder((OrderConstraint(primary, associated, rule.delay_minutes),))
        if rule.dependency_type == "after":
            return Reorder((OrderConstraint(associated, primary, rule.delay_minutes),))
        return Proceed(synchronized_with=(primary, associated))


def _compose(outcomes: list[ResolutionDecision]) -> ResolutionDecision:
    if not outcomes:
        return Proceed()

    worst = max(severity(o) for o in outcomes)
    if worst >= _SEVERITY[Defer]:
        # First of the most restrictive kind
        return next(o for o in outcomes if severity(o) == worst)

    if worst == _SEVERITY[Reorder]:
        constraints: list[OrderConstraint] = []
        for outcome in outcomes:
            if isinstance(outcome, Reorder):
                constraints.extend(c for c in outcome.constraints if c not in constraints)
        return Reorder(tuple(constraints))

    synced: list[str] = []
    for outcome in outcomes:
        if isinstance(outcome, Proceed):
            synced.extend(t for t in outcome.synchronized_with if t not in synced)
    return Proceed(tuple(synced))
