"""Durable task records and the task store.

One JSON document (``tasks.json``) holds every task.  ``TaskStore.update_task``
is the only mutator: it reads, merges, stamps ``last_updated`` and persists
under a single lock, and callers only ever see detached copies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import copy
import json
import os
import re
import threading
from typing import Any, Callable, Dict, List, Optional
import uuid
import logging

from followthrough.core.errors import InvalidTransitionError, TaskNotFoundError
from followthrough.core.logging_config import log_task_event
from followthrough.integrations.base import IntegrationId, infer_integration_id, normalize_conversation_id

logger = logging.getLogger("followthrough.tasks")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ── Statuses ─────────────────────────────────────────────────

ACTIVE = "active"
WAITING = "waiting"
WAITING_FOR_INPUT = "waiting_for_input"
WAITING_APPROVAL = "waiting_approval"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TASK_STATUSES = {ACTIVE, WAITING, WAITING_FOR_INPUT, WAITING_APPROVAL, COMPLETED, FAILED, CANCELLED}
TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}
TASK_TYPES = {"discrete", "continuous"}


# ── Poll frequency ───────────────────────────────────────────

@dataclass
class PollFrequency:
    type: str = "preset"                # preset | event
    interval_ms: Optional[int] = 60000  # preset only
    trigger: Optional[str] = None       # event only, e.g. "on_login"
    label: str = "Every 1 minute"

    @property
    def is_event(self) -> bool:
        return self.type == "event"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type, "label": self.label}
        if self.is_event:
            d["trigger"] = self.trigger
        else:
            d["interval_ms"] = self.interval_ms
        return d

    @classmethod
    def from_dict(cls, d: dict) -> PollFrequency:
        if d.get("type") == "event":
            return cls(type="event", interval_ms=None, trigger=d.get("trigger"), label=d.get("label", ""))
        return cls(
            type="preset",
            interval_ms=int(d.get("interval_ms") or 60000),
            label=d.get("label", ""),
        )

    @classmethod
    def parse(cls, value: Any) -> PollFrequency:
        """Accept a preset name, a dict, an existing instance, or ``None``."""
        if value is None:
            return DEFAULT_POLL_FREQUENCY.copy()
        if isinstance(value, PollFrequency):
            return value.copy()
        if isinstance(value, str):
            preset = POLL_FREQUENCY_PRESETS.get(value)
            if preset is None:
                raise ValueError(f"Unknown poll frequency: {value}")
            return preset.copy()
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise ValueError(f"Invalid poll frequency: {value!r}")

    def copy(self) -> PollFrequency:
        return PollFrequency(self.type, self.interval_ms, self.trigger, self.label)


POLL_FREQUENCY_PRESETS: Dict[str, PollFrequency] = {
    "1min": PollFrequency("preset", 60000, None, "Every 1 minute"),
    "5min": PollFrequency("preset", 300000, None, "Every 5 minutes"),
    "15min": PollFrequency("preset", 900000, None, "Every 15 minutes"),
    "30min": PollFrequency("preset", 1800000, None, "Every 30 minutes"),
    "1hour": PollFrequency("preset", 3600000, None, "Every hour"),
    "daily": PollFrequency("preset", 86400000, None, "Daily"),
    "on_login": PollFrequency("event", None, "on_login", "On login only"),
}

DEFAULT_POLL_FREQUENCY = POLL_FREQUENCY_PRESETS["1min"]


# ── Records ──────────────────────────────────────────────────

@dataclass
class CurrentStep:
    """Cursor into the plan. ``index`` is 1-based."""
    index: int = 1
    description: str = ""
    state: str = "active"
    poll_interval_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "description": self.description,
            "state": self.state,
            "poll_interval_ms": self.poll_interval_ms,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CurrentStep:
        return cls(
            index=int(d.get("index", 1) or 1),
            description=d.get("description", ""),
            state=d.get("state", "active"),
            poll_interval_ms=d.get("poll_interval_ms"),
        )


@dataclass
class ReplyWait:
    """Reply-wait state carried in ``context_memory`` under fixed keys."""
    wait_for_reply_active: bool = False
    waiting_via: Optional[str] = None
    waiting_for_contact: Optional[str] = None
    conversation_id: Optional[str] = None
    last_message_time: Optional[datetime] = None
    followup_count: int = 0
    max_followups: int = 3
    followup_after_hours: float = 24.0
    last_followup_time: Optional[datetime] = None
    wait_started_at: Optional[datetime] = None
    success_criteria: Optional[str] = None
    original_request: Optional[str] = None

    KEYS = (
        "wait_for_reply_active",
        "waiting_via",
        "waiting_for_contact",
        "conversation_id",
        "last_message_time",
        "followup_count",
        "max_followups",
        "followup_after_hours",
        "last_followup_time",
        "wait_started_at",
        "success_criteria",
        "original_request",
    )
    _DATETIME_KEYS = ("last_message_time", "last_followup_time", "wait_started_at")

    @property
    def is_configured(self) -> bool:
        """True when enough is known to poll a backend for replies."""
        return bool(self.waiting_via and self.waiting_for_contact and self.last_message_time)

    @property
    def budget_exhausted(self) -> bool:
        return self.followup_count >= self.max_followups

    def bind_conversation(self, conversation_id: Any) -> bool:
        """Capture *conversation_id* unless one is already bound. Returns True if bound now."""
        if self.conversation_id:
            return False
        normalized = normalize_conversation_id(conversation_id)
        if normalized is None:
            return False
        self.conversation_id = normalized
        return True

    def followup_due_at(self) -> Optional[datetime]:
        anchor = self.last_followup_time or self.wait_started_at or self.last_message_time
        if anchor is None:
            return None
        return anchor + timedelta(hours=self.followup_after_hours)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {}
        for key in self.KEYS:
            value = getattr(self, key)
            if key in self._DATETIME_KEYS:
                value = _iso(value)
            if value is None:
                continue
            out[key] = value
        return out

    @classmethod
    def from_dict(cls, d: dict) -> ReplyWait:
        rw = cls()
        for key in cls.KEYS:
            if key not in d or d[key] is None:
                continue
            value = d[key]
            if key in cls._DATETIME_KEYS:
                value = _parse_dt(value)
            elif key == "conversation_id":
                value = normalize_conversation_id(value)
            elif key in ("followup_count", "max_followups"):
                value = int(value)
            elif key == "followup_after_hours":
                value = float(value)
            elif key == "wait_for_reply_active":
                value = bool(value)
            setattr(rw, key, value)
        return rw

    def merge(self, updates: Dict[str, Any]) -> None:
        """Field-wise update. ``followup_count`` can never go down."""
        for key, value in updates.items():
            if key not in self.KEYS:
                raise ValueError(f"Unknown reply-wait field: {key}")
            if key in self._DATETIME_KEYS:
                value = _parse_dt(value)
            if key == "conversation_id":
                self.bind_conversation(value)
                continue
            if key == "followup_count" and int(value) < self.followup_count:
                logger.warning("Ignoring attempt to lower followup_count (%s -> %s)", self.followup_count, value)
                continue
            setattr(self, key, value)


@dataclass
class PendingMessage:
    """A drafted send awaiting the user's approval."""
    message_id: str
    tool_name: str
    platform: str
    recipient: str
    body: str
    subject: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    tool_input: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "tool_name": self.tool_name,
            "platform": self.platform,
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
            "tool_input": self.tool_input,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PendingMessage:
        return cls(
            message_id=d["message_id"],
            tool_name=d.get("tool_name", ""),
            platform=d.get("platform", ""),
            recipient=d.get("recipient", ""),
            subject=d.get("subject"),
            body=d.get("body", ""),
            created_at=_parse_dt(d.get("created_at")) or _now(),
            tool_input=d.get("tool_input") or {},
        )


@dataclass
class LogEntry:
    timestamp: datetime
    message: str

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "message": self.message}

    @classmethod
    def from_dict(cls, d: dict) -> LogEntry:
        return cls(timestamp=_parse_dt(d.get("timestamp")) or _now(), message=d.get("message", ""))


@dataclass
class Task:
    task_id: str
    title: str
    original_request: str = ""
    status: str = ACTIVE
    task_type: str = "discrete"         # discrete | continuous
    plan: List[str] = field(default_factory=list)
    current_step: CurrentStep = field(default_factory=CurrentStep)
    next_check: Optional[datetime] = None
    poll_frequency: PollFrequency = field(default_factory=DEFAULT_POLL_FREQUENCY.copy)
    reply_wait: ReplyWait = field(default_factory=ReplyWait)
    context_memory: Dict[str, Any] = field(default_factory=dict)
    pending_messages: List[PendingMessage] = field(default_factory=list)
    execution_log: List[LogEntry] = field(default_factory=list)
    auto_send: bool = False
    notifications_disabled: bool = False
    hidden: bool = False
    messaging_channel: Optional[IntegrationId] = None
    pending_clarification: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    last_updated: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_continuous(self) -> bool:
        return self.task_type == "continuous"

    @property
    def interval_ms(self) -> int:
        """Effective polling interval: the step override, else the task's preset."""
        if self.current_step.poll_interval_ms:
            return int(self.current_step.poll_interval_ms)
        if self.poll_frequency.interval_ms:
            return int(self.poll_frequency.interval_ms)
        return int(DEFAULT_POLL_FREQUENCY.interval_ms or 60000)

    def step_description(self, index: int) -> str:
        if 1 <= index <= len(self.plan):
            return self.plan[index - 1]
        return ""

    def to_dict(self) -> dict:
        context = dict(self.context_memory)
        context.update(self.reply_wait.to_dict())
        return {
            "task_id": self.task_id,
            "title": self.title,
            "original_request": self.original_request,
            "status": self.status,
            "task_type": self.task_type,
            "plan": list(self.plan),
            "current_step": self.current_step.to_dict(),
            "next_check": _iso(self.next_check),
            "poll_frequency": self.poll_frequency.to_dict(),
            "context_memory": context,
            "pending_messages": [m.to_dict() for m in self.pending_messages],
            "execution_log": [e.to_dict() for e in self.execution_log],
            "auto_send": self.auto_send,
            "notifications_disabled": self.notifications_disabled,
            "hidden": self.hidden,
            "messaging_channel": self.messaging_channel.value if self.messaging_channel else None,
            "pending_clarification": self.pending_clarification,
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        context = dict(d.get("context_memory") or {})
        reply_wait = ReplyWait.from_dict(context)
        for key in ReplyWait.KEYS:
            context.pop(key, None)
        channel = d.get("messaging_channel")
        return cls(
            task_id=d["task_id"],
            title=d.get("title", ""),
            original_request=d.get("original_request", ""),
            status=d.get("status", ACTIVE),
            task_type=d.get("task_type", "discrete"),
            plan=list(d.get("plan") or []),
            current_step=CurrentStep.from_dict(d.get("current_step") or {}),
            next_check=_parse_dt(d.get("next_check")),
            poll_frequency=PollFrequency.from_dict(d.get("poll_frequency") or DEFAULT_POLL_FREQUENCY.to_dict()),
            reply_wait=reply_wait,
            context_memory=context,
            pending_messages=[PendingMessage.from_dict(m) for m in d.get("pending_messages", [])],
            execution_log=[LogEntry.from_dict(e) for e in d.get("execution_log", [])],
            auto_send=d.get("auto_send", False),
            notifications_disabled=d.get("notifications_disabled", False),
            hidden=d.get("hidden", False),
            messaging_channel=IntegrationId.parse(channel) if channel else None,
            pending_clarification=d.get("pending_clarification"),
            created_at=_parse_dt(d.get("created_at")) or _now(),
            last_updated=_parse_dt(d.get("last_updated")) or _now(),
        )


# ── Helpers for task creation ────────────────────────────────

def make_task_id(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (title or "").lower())[:30] or "task"
    return f"{slug}-{uuid.uuid4().hex[:8]}"


def default_plan(request: str) -> List[str]:
    """Plan template used when a task is created without one."""
    text = (request or "").lower()
    if "email" in text or "mail" in text:
        return [
            "Send initial email with the request",
            "Wait for response",
            "If no response, send follow-up email",
            "Process response and complete task",
        ]
    if "slack" in text:
        return [
            "Send initial Slack message",
            "Wait for response",
            "If no response, send follow-up",
            "Process response and complete task",
        ]
    if "text" in text or "imessage" in text or "sms" in text:
        return [
            "Send initial text message",
            "Wait for response",
            "If no response, send follow-up",
            "Process response and complete task",
        ]
    return ["Execute the requested action", "Verify completion", "Report results"]


_UNSET: Any = object()


# ── TaskStore ────────────────────────────────────────────────

class TaskStore:
    """Single writer of task records."""

    def __init__(
        self,
        data_dir: str,
        channel_classifier: Optional[Callable[[str], Optional[IntegrationId]]] = None,
    ) -> None:
        self.data_dir = data_dir
        self._store_path = os.path.join(data_dir, "tasks.json")
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()
        self._classify_channel = channel_classifier or infer_integration_id
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self._store_path):
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load tasks: %s", exc)
            return
        for item in raw.get("tasks", []):
            try:
                task = Task.from_dict(item)
            except (KeyError, ValueError) as exc:
                logger.error("Skipping unreadable task record: %s", exc)
                continue
            if task.task_type not in TASK_TYPES:
                task.task_type = "discrete"
            self._tasks[task.task_id] = task
        logger.info("Loaded %d tasks from %s", len(self._tasks), self._store_path)

    def _save(self) -> None:
        os.makedirs(os.path.dirname(self._store_path), exist_ok=True)
        payload = {"tasks": [t.to_dict() for t in self._tasks.values()]}
        tmp_path = f"{self._store_path}.tmp"
        with self._lock:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._store_path)

    def create_task(
        self,
        title: str,
        original_request: str = "",
        plan: Optional[List[str]] = None,
        task_type: str = "discrete",
        poll_frequency: Any = None,
        messaging_channel: "str | IntegrationId | None" = None,
        context: Optional[Dict[str, Any]] = None,
        auto_send: bool = False,
        success_criteria: Optional[str] = None,
        notifications_disabled: bool = False,
    ) -> Task:
        """Create a new ``active`` task positioned at step 1."""
        if task_type not in TASK_TYPES:
            raise ValueError(f"Invalid task_type: {task_type}")
        channel = IntegrationId.parse(messaging_channel) if messaging_channel else None
        if channel is None and original_request:
            channel = self._classify_channel(original_request)
        steps = list(plan) if plan else default_plan(original_request)
        frequency = PollFrequency.parse(poll_frequency)

        context_memory = dict(context or {})
        context_memory["task_type"] = task_type
        if channel:
            context_memory["messaging_channel"] = channel.value

        message = "Task created"
        if channel:
            message += f" (using {channel.value})"
        if task_type == "continuous":
            message += " (continuous monitoring)"
        message += f" [Poll: {frequency.label}]"

        task = Task(
            task_id=make_task_id(title),
            title=title or "Untitled Task",
            original_request=original_request,
            task_type=task_type,
            plan=steps,
            current_step=CurrentStep(index=1, description=steps[0] if steps else "", state="active"),
            poll_frequency=frequency,
            reply_wait=ReplyWait(success_criteria=success_criteria, original_request=original_request or None),
            context_memory=context_memory,
            auto_send=auto_send,
            notifications_disabled=notifications_disabled,
            messaging_channel=channel,
        )
        task.execution_log.append(LogEntry(timestamp=_now(), message=message))
        with self._lock:
            self._tasks[task.task_id] = task
            self._save()
        logger.info("Task created: %s (%s)", task.task_id, task.title)
        log_task_event(task.task_id, "created", message)
        return copy.deepcopy(task)

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def update_task(
        self,
        task_id: str,
        *,
        status: Optional[str] = None,
        next_check: Any = _UNSET,
        hidden: Optional[bool] = None,
        current_step: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        reply_wait: "ReplyWait | Dict[str, Any] | None" = None,
        plan: Optional[List[str]] = None,
        poll_frequency: Any = None,
        pending_messages: Optional[List[PendingMessage]] = None,
        add_pending_message: Optional[PendingMessage] = None,
        remove_pending_message: Optional[str] = None,
        log_entry: Optional[str] = None,
        messaging_channel: "str | IntegrationId | None" = None,
        pending_clarification: Any = _UNSET,
        auto_send: Optional[bool] = None,
        notifications_disabled: Optional[bool] = None,
    ) -> Task:
        """Merge a partial update into *task_id* and persist it atomically."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            old_status = task.status
            if status is not None and status != old_status:
                if status not in TASK_STATUSES:
                    raise ValueError(f"Invalid status: {status}")
                if task.is_terminal:
                    raise InvalidTransitionError(f"Task {task_id} is {old_status} and cannot become {status}")
                task.status = status
            if next_check is not _UNSET:
                task.next_check = _parse_dt(next_check)
            if hidden is not None:
                task.hidden = hidden
            if current_step:
                merged = task.current_step.to_dict()
                merged.update(current_step)
                task.current_step = CurrentStep.from_dict(merged)
            if context:
                task.context_memory.update(context)
            if plan is not None:
                task.plan = list(plan)
            if poll_frequency is not None:
                task.poll_frequency = PollFrequency.parse(poll_frequency)
            if reply_wait is not None:
                if isinstance(reply_wait, ReplyWait):
                    task.reply_wait = copy.deepcopy(reply_wait)
                else:
                    task.reply_wait.merge(reply_wait)
            if pending_messages is not None:
                task.pending_messages = copy.deepcopy(list(pending_messages))
            if add_pending_message is not None:
                task.pending_messages.append(copy.deepcopy(add_pending_message))
            if remove_pending_message is not None:
                task.pending_messages = [m for m in task.pending_messages if m.message_id != remove_pending_message]
            if messaging_channel and task.messaging_channel is None:
                task.messaging_channel = IntegrationId.parse(messaging_channel)
                task.context_memory["messaging_channel"] = task.messaging_channel.value
            if pending_clarification is not _UNSET:
                task.pending_clarification = pending_clarification
            if auto_send is not None:
                task.auto_send = auto_send
            if notifications_disabled is not None:
                task.notifications_disabled = notifications_disabled
            if log_entry:
                task.execution_log.append(LogEntry(timestamp=_now(), message=log_entry))
            task.last_updated = _now()
            self._save()
            snapshot = copy.deepcopy(task)
        if snapshot.status != old_status:
            logger.info("Task %s: %s -> %s", task_id, old_status, snapshot.status)
            log_task_event(task_id, "status_change", f"{old_status} -> {snapshot.status}", status=snapshot.status)
        return snapshot

    def list_tasks(self, include_hidden: bool = False) -> List[Task]:
        """All tasks, most recently updated first."""
        with self._lock:
            tasks = [copy.deepcopy(t) for t in self._tasks.values() if include_hidden or not t.hidden]
        tasks.sort(key=lambda t: t.last_updated, reverse=True)
        return tasks

    def list_active(self) -> List[Task]:
        return [t for t in self.list_tasks(include_hidden=True) if t.status in (ACTIVE, WAITING)]

    def list_waiting_for_input(self) -> List[Task]:
        return [t for t in self.list_tasks() if t.status == WAITING_FOR_INPUT]

    def list_waiting_approval(self) -> List[Task]:
        return [t for t in self.list_tasks(include_hidden=True) if t.status == WAITING_APPROVAL]

    def cancel_task(self, task_id: str) -> Task:
        """Move a non-terminal task to ``cancelled``."""
        task = self.require(task_id)
        if task.is_terminal:
            raise InvalidTransitionError(f"Task {task_id} is already {task.status}")
        return self.update_task(
            task_id,
            status=CANCELLED,
            next_check=None,
            reply_wait={"wait_for_reply_active": False},
            log_entry="Task cancelled by user",
        )

    def hide_task(self, task_id: str) -> Task:
        return self.update_task(task_id, hidden=True, log_entry="Task hidden from UI")
