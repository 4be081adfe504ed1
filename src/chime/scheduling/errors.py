"""Error taxonomy for planning and dispatch."""

from __future__ import annotations

from typing import Any


class SchedulingError(Exception):
    """Base error carrying structured details for logging."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class ConfigurationError(SchedulingError):
    """Malformed rule, association, or notification config. Never retried."""


InvalidConfiguration = ConfigurationError


class InvalidStateTransition(SchedulingError):
    """Task status change not permitted by the lifecycle."""


class ResolutionAmbiguity(SchedulingError):
    """Association cannot be decided with the data available this cycle."""


class DeliveryFailure(SchedulingError):
    """Delivery collaborator reported failure or timed out."""

    def __init__(self, message: str, details: dict[str, Any] | None = None, retryable: bool = True) -> None:
        super().__init__(message, details)
        self.retryable = retryable


class InfrastructureFailure(SchedulingError):
    """Store or cache unavailable. The whole planning cycle aborts."""
