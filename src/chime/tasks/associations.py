"""Task association types: directed edges between two tasks."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from chime.scheduling.errors import ConfigurationError

RelationshipType = Literal["priority_based", "mutual_exclusive", "dependency"]
PriorityStrategy = Literal["higher_wins", "suspend_lower", "first_scheduled"]
DependencyType = Literal["before", "after", "concurrent"]


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class PriorityRule(_Frozen):
    strategy: PriorityStrategy
    parameters: dict[str, Any] = {}


class DependencyRule(_Frozen):
    dependency_type: DependencyType
    delay_minutes: int = Field(default=0, ge=0)


class AssociationBase(_Frozen):
    id: str | None = None
    primary_task_id: str
    associated_task_id: str
    suspend_duration: int | None = Field(default=None, gt=0)  # days
    created_at: str = ""

    @model_validator(mode="after")
    def _check_distinct(self) -> AssociationBase:
        if self.primary_task_id == self.associated_task_id:
            raise ValueError("Task cannot be associated with itself")
        return self

    def involves(self, task_id: str) -> bool:
        return task_id in (self.primary_task_id, self.associated_task_id)

    def other(self, task_id: str) -> str:
        return self.associated_task_id if task_id == self.primary_task_id else self.primary_task_id


class PriorityAssociation(AssociationBase):
    relationship_type: Literal["priority_based"] = "priority_based"
    priority_rule: PriorityRule

    @model_validator(mode="after")
    def _check_suspend(self) -> PriorityAssociation:
        if self.priority_rule.strategy == "suspend_lower" and not self.suspend_duration:
            raise ValueError("Suspend duration is required for suspend_lower strategy")
        return self


class MutualExclusiveAssociation(AssociationBase):
    """Conflict in which the associated task yields to the primary one."""

    relationship_type: Literal["mutual_exclusive"] = "mutual_exclusive"
    priority_rule: dict[str, Any] = {}


class DependencyAssociation(AssociationBase):
    relationship_type: Literal["dependency"] = "dependency"
    priority_rule: DependencyRule


Association = Union[PriorityAssociation, MutualExclusiveAssociation, DependencyAssociation]

TaskAssociation = Annotated[Association, Field(discriminator="relationship_type")]

_association_adapter: TypeAdapter[Any] = TypeAdapter(TaskAssociation)


class StoredAssociation(BaseModel):
    """An association row before validation."""

    id: str
    primary_task_id: str
    associated_task_id: str
    relationship_type: str
    priority_rule: dict[str, Any] = {}
    suspend_duration: int | None = None
    created_at: str = ""


def parse_association(data: dict[str, Any] | StoredAssociation) -> Association:
    """Validate a raw association. Raises ConfigurationError on mismatch."""
    raw = data.model_dump() if isinstance(data, StoredAssociation) else dict(data)
    if raw.get("suspend_duration") is None:
        raw.pop("suspend_duration", None)
    try:
        return _association_adapter.validate_python(raw)
    except ValidationError as err:
        errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in err.errors()]
        raise ConfigurationError(
            "Invalid task association",
            {"association_id": raw.get("id"), "relationship_type": raw.get("relationship_type"), "errors": errors},
        ) from err


def describe_association(association: Association) -> str:
    if isinstance(association, PriorityAssociation):
        return f"Priority-based relationship with {association.priority_rule.strategy} strategy"
    if isinstance(association, MutualExclusiveAssociation):
        return "Tasks cannot run on the same day"
    delay = association.priority_rule.delay_minutes
    suffix = f" with {delay}min delay" if delay > 0 else ""
    return f"Dependency relationship: {association.priority_rule.dependency_type}{suffix}"
