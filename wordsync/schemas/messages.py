"""Schemas for cross-context change messages."""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeEvent(str, Enum):
    """Event types carried by the change bus."""

    WORDS_UPDATED = "WORDS_UPDATED"
    WORD_DELETED = "WORD_DELETED"
    STATS_UPDATED = "STATS_UPDATED"
    AUTH_STATE_CHANGED = "AUTH_STATE_CHANGED"


def _now_millis() -> int:
    return int(time.time() * 1000)


class BusMessage(BaseModel):
    """Envelope broadcast to every open execution context."""

    type: ChangeEvent
    payload: dict[str, Any] = Field(default_factory=dict)
    sender: str
    timestamp: int = Field(default_factory=_now_millis)


class DeliveryReport(BaseModel):
    """Outcome of delivering one message to one recipient."""

    recipient: str
    error: Optional[BaseException] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def delivered(self) -> bool:
        return self.error is None


class SnapshotRecord(BaseModel):
    """Latest persisted state for one event type."""

    payload: dict[str, Any] = Field(default_factory=dict)
    sender: str
    timestamp: int


__all__ = ["BusMessage", "ChangeEvent", "DeliveryReport", "SnapshotRecord"]
