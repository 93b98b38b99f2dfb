"""Scheduled action payload structure."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(slots=True)
class ScheduledAction:
    hook: str
    payload: dict[str, Any] = field(default_factory=dict)
    group: str = ""
    priority: str = "normal"
    interval_seconds: Optional[float] = None  # set for recurring actions
    action_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_recurring(self) -> bool:
        return bool(self.interval_seconds and self.interval_seconds > 0)

    def matches(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> bool:
        if self.hook != hook:
            return False
        if not payload_filter:
            return True
        return all(self.payload.get(k) == v for k, v in payload_filter.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "hook": self.hook,
            "payload": self.payload,
            "group": self.group,
            "priority": self.priority,
            "interval_seconds": self.interval_seconds,
            "action_id": self.action_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScheduledAction":
        return cls(
            hook=str(data["hook"]),
            payload=dict(data.get("payload") or {}),
            group=str(data.get("group") or ""),
            priority=str(data.get("priority") or "normal"),
            interval_seconds=data.get("interval_seconds"),
            action_id=str(data.get("action_id") or uuid.uuid4().hex),
        )


__all__ = ["ScheduledAction"]
