"""Delivery domain types and DeliveryChannel protocol."""

from __future__ import annotations

from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel

from chime.tasks.types import NotificationConfig


class DeliveryOptions(BaseModel):
    message_format: Literal["text", "markdown"] = "text"
    title: str = "Reminder"
    mentions: list[str] = []
    mention_all: bool = False

    @classmethod
    def from_config(cls, config: NotificationConfig, title: str = "Reminder") -> DeliveryOptions:
        return cls(
            message_format=config.message_format,
            title=title,
            mentions=list(config.mentions),
            mention_all=config.mention_all,
        )


class DeliveryResult(BaseModel):
    success: bool
    code: int | str | None = None
    message: str = ""
    retryable: bool = True


@runtime_checkable
class DeliveryChannel(Protocol):
    """Sends one message to a target. Must not raise for delivery-level failures."""

    async def send(self, target: str, message: str, options: DeliveryOptions) -> DeliveryResult: ...
