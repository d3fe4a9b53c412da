"""Approval checkpoint between "wants to send" and "message sent".

Three paths:

* the task has ``auto_send`` set: approved on the spot, nothing stored;
* inside a task: the draft is queued on the task as a ``PendingMessage`` and
  the task moves to ``waiting_approval``; the caller gets a deferred marker
  and must not assume the message went out;
* ad hoc: an ephemeral confirmation backed by a ``Future`` that is resolved
  exactly once by approve, reject or timeout, then dropped.
"""
from __future__ import annotations

from concurrent.futures import Future, InvalidStateError, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Any, Dict, List, Optional
import uuid

from followthrough.core.errors import ConfirmationTimeoutError, InvalidTransitionError
from followthrough.core.notify import Notifier
from followthrough.core.tasks import WAITING_APPROVAL, PendingMessage, Task, TaskStore
from followthrough.integrations.base import infer_integration_id

logger = logging.getLogger("followthrough.confirmations")

DEFAULT_TIMEOUT_SECONDS = 300.0


@dataclass
class ConfirmationResult:
    approved: bool
    pending_in_task: bool = False
    task_id: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class PendingConfirmation:
    confirmation_id: str
    tool_name: str
    tool_input: Dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    future: "Future[bool]" = field(default_factory=Future, repr=False)

    def to_dict(self) -> dict:
        return {
            "confirmation_id": self.confirmation_id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "created_at": self.created_at.isoformat(),
        }


def draft_from_tool_input(tool_name: str, tool_input: Dict[str, Any]) -> PendingMessage:
    """Build a ``PendingMessage`` from a send tool's arguments."""
    platform = tool_input.get("platform")
    if not platform:
        inferred = infer_integration_id(tool_name.replace("_", " "))
        platform = inferred.value if inferred else tool_name
    recipient = tool_input.get("to") or tool_input.get("recipient") or tool_input.get("contact") or tool_input.get("channel") or ""
    body = tool_input.get("body") or tool_input.get("message") or tool_input.get("text") or ""
    return PendingMessage(
        message_id=f"msg-{uuid.uuid4().hex[:12]}",
        tool_name=tool_name,
        platform=str(platform),
        recipient=str(recipient),
        subject=tool_input.get("subject"),
        body=str(body),
        tool_input=dict(tool_input),
    )


class ConfirmationGate:
    def __init__(
        self,
        store: TaskStore,
        notifier: Optional[Notifier] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self._pending: Dict[str, PendingConfirmation] = {}
        self._lock = threading.Lock()

    def request_confirmation(
        self,
        tool_name: str,
        tool_input: Dict[str, Any],
        task: Optional[Task] = None,
        timeout: Optional[float] = None,
    ) -> ConfirmationResult:
        if task is not None:
            if task.auto_send:
                logger.info("Auto-send enabled for task %s; approving %s", task.task_id, tool_name)
                return ConfirmationResult(approved=True)
            return self._queue_in_task(tool_name, tool_input, task.task_id)
        return self._wait_for_decision(tool_name, tool_input, timeout)

    def _queue_in_task(self, tool_name: str, tool_input: Dict[str, Any], task_id: str) -> ConfirmationResult:
        current = self.store.require(task_id)
        if current.is_terminal:
            raise InvalidTransitionError(f"Task {task_id} is {current.status}; cannot queue a message")
        draft = draft_from_tool_input(tool_name, tool_input)
        updated = self.store.update_task(
            task_id,
            status=WAITING_APPROVAL,
            next_check=None,
            add_pending_message=draft,
            log_entry=f"Message to {draft.recipient} via {draft.platform} awaiting approval",
        )
        logger.info("Queued %s for approval on task %s (%s)", tool_name, task_id, draft.message_id)
        if self.notifier is not None:
            self.notifier.notify(
                task_id,
                f"Drafted a message to {draft.recipient} via {draft.platform}. Approve or discard it to continue.",
                to_chat=True,
                emoji="✉️",
                task_title=updated.title,
                notifications_disabled=updated.notifications_disabled,
            )
        return ConfirmationResult(approved=False, pending_in_task=True, task_id=task_id, message_id=draft.message_id)

    def _wait_for_decision(self, tool_name: str, tool_input: Dict[str, Any], timeout: Optional[float]) -> ConfirmationResult:
        entry = PendingConfirmation(confirmation_id=f"confirm-{uuid.uuid4().hex[:12]}", tool_name=tool_name, tool_input=dict(tool_input))
        with self._lock:
            self._pending[entry.confirmation_id] = entry
        logger.info("Awaiting confirmation %s for %s", entry.confirmation_id, tool_name)
        wait = self.timeout_seconds if timeout is None else timeout
        try:
            try:
                approved = entry.future.result(timeout=wait)
            except FutureTimeoutError:
                if entry.future.cancel():
                    logger.warning("Confirmation %s timed out after %.0fs", entry.confirmation_id, wait)
                    raise ConfirmationTimeoutError(
                        f"No decision on {tool_name} within {wait:.0f} seconds; the message was not sent"
                    ) from None
                # resolved in the instant the wait expired
                approved = entry.future.result()
        finally:
            with self._lock:
                self._pending.pop(entry.confirmation_id, None)
        return ConfirmationResult(approved=bool(approved))

    def _resolve(self, confirmation_id: str, approved: bool) -> bool:
        with self._lock:
            entry = self._pending.pop(confirmation_id, None)
        if entry is None:
            return False
        try:
            entry.future.set_result(approved)
        except InvalidStateError:
            # already cancelled by a timeout
            return False
        logger.info("Confirmation %s %s", confirmation_id, "approved" if approved else "rejected")
        return True

    def approve(self, confirmation_id: str) -> bool:
        return self._resolve(confirmation_id, True)

    def reject(self, confirmation_id: str) -> bool:
        return self._resolve(confirmation_id, False)

    def list_pending(self) -> List[PendingConfirmation]:
        with self._lock:
            return list(self._pending.values())

    def clear(self) -> int:
        """Reject and drop every outstanding confirmation."""
        with self._lock:
            entries = list(self._pending.values())
            self._pending.clear()
        for entry in entries:
            if not entry.future.done():
                try:
                    entry.future.set_result(False)
                except InvalidStateError:
                    continue
        return len(entries)
