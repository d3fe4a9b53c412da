"""Fire-and-forget task notifications.

Updates are kept in a bounded history that the control API drains, and are
pushed to any registered sinks (chat bridges, UI transports).  A failing
sink is logged and skipped; ``notify`` never raises.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger("followthrough.notify")

HISTORY_LIMIT = 50


@dataclass
class TaskUpdate:
    task_id: str
    message: str
    to_chat: bool = False
    emoji: str = "📋"
    task_title: Optional[str] = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def chat_text(self) -> str:
        heading = f"Task: {self.task_title}" if self.task_title else "Task Update"
        return f"{self.emoji} **{heading}**\n\n{self.message}"

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "message": self.message,
            "to_chat": self.to_chat,
            "chat_text": self.chat_text if self.to_chat else None,
            "timestamp": self.ts.isoformat(),
        }


Sink = Callable[[TaskUpdate], None]


class Notifier:
    def __init__(self, sinks: Optional[List[Sink]] = None, history_limit: int = HISTORY_LIMIT) -> None:
        self._sinks: List[Sink] = list(sinks or [])
        self._history: List[TaskUpdate] = []
        self._limit = history_limit
        self._lock = threading.Lock()

    def add_sink(self, sink: Sink) -> None:
        self._sinks.append(sink)

    def notify(
        self,
        task_id: str,
        message: str,
        to_chat: bool = False,
        emoji: str = "📋",
        task_title: Optional[str] = None,
        notifications_disabled: bool = False,
    ) -> TaskUpdate:
        """Record an update; chat delivery is suppressed for muted tasks."""
        update = TaskUpdate(
            task_id=task_id,
            message=message,
            to_chat=to_chat and not notifications_disabled,
            emoji=emoji,
            task_title=task_title,
        )
        with self._lock:
            self._history.append(update)
            if len(self._history) > self._limit:
                self._history = self._history[-self._limit:]
        for sink in list(self._sinks):
            try:
                sink(update)
            except Exception:  # noqa: BLE001
                logger.exception("Notification sink failed for task %s", task_id)
        return update

    def drain(self) -> List[TaskUpdate]:
        """Return and clear the buffered updates."""
        with self._lock:
            updates, self._history = self._history, []
        return updates

    def recent(self) -> List[TaskUpdate]:
        with self._lock:
            return list(self._history)
