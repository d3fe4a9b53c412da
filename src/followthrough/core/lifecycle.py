"""Task state machine.

The step executor performs one unit of work on an ``active`` task and hands
back a ``StepOutcome``; ``apply_outcome`` turns that request into a single
``TaskStore.update_task`` call.

Transitions::

    active            -> active | waiting | waiting_for_input | completed | failed
    waiting           -> active | waiting | waiting_for_input
    waiting_for_input -> active                  (user answered)
    waiting_approval  -> active | waiting | completed   (user approved / rejected)
    any non-terminal  -> cancelled

``completed``, ``failed`` and ``cancelled`` are terminal.  Continuous tasks
never complete; at the end of the plan they loop back to step 1.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Protocol

from followthrough.core.errors import InvalidTransitionError
from followthrough.core.tasks import (
    ACTIVE,
    CANCELLED,
    COMPLETED,
    FAILED,
    WAITING,
    WAITING_APPROVAL,
    WAITING_FOR_INPUT,
    ReplyWait,
    Task,
    TaskStore,
)

logger = logging.getLogger("followthrough.lifecycle")

StepClassifier = Callable[[str], bool]

_WAITING_STEP_RE = re.compile(r"wait|response|reply|follow[\s-]?up|until", re.IGNORECASE)


def is_waiting_step(description: str) -> bool:
    """Default classifier: does this step send something and then wait on it?"""
    return bool(_WAITING_STEP_RE.search(description or ""))


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WaitForReplyRequest:
    platform: str
    contact: str
    original_request: str
    success_criteria: str
    conversation_id: Optional[str] = None
    poll_interval_minutes: float = 5
    followup_after_hours: float = 24
    max_followups: int = 3

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WaitForReplyRequest":
        missing = [k for k in ("platform", "contact", "original_request", "success_criteria") if not d.get(k)]
        if missing:
            raise ValueError(f"wait_for_reply requires: {', '.join(missing)}")
        return cls(
            platform=str(d["platform"]),
            contact=str(d["contact"]),
            original_request=str(d["original_request"]),
            success_criteria=str(d["success_criteria"]),
            conversation_id=d.get("conversation_id"),
            poll_interval_minutes=float(d.get("poll_interval_minutes") or 5),
            followup_after_hours=float(d.get("followup_after_hours") or 24),
            max_followups=int(d.get("max_followups") or 3),
        )


# context_memory key holding a wait requested by a step whose send awaits approval
PENDING_WAIT_KEY = "pendingWaitForReply"


def pending_wait_request(task: Task) -> Optional[WaitForReplyRequest]:
    stored = task.context_memory.get(PENDING_WAIT_KEY)
    if not stored:
        return None
    return WaitForReplyRequest(**stored)


@dataclass
class StepOutcome:
    """Transition requested by the step executor. Every field is optional."""
    next_status: Optional[str] = None
    next_step: Optional[int] = None
    poll_interval_ms: Optional[int] = None
    context_updates: Optional[Dict[str, Any]] = None
    clarification_question: Optional[str] = None
    modify_plan: Optional[List[str]] = None
    wait_for_reply: Optional[WaitForReplyRequest] = None
    summary: Optional[str] = None


class StepExecutor(Protocol):
    def execute(self, task: Task) -> Optional[StepOutcome]:
        """Run one unit of work on *task* and describe the transition it wants."""
        ...


def _log_text(base: str, outcome: Optional[StepOutcome]) -> str:
    if outcome is not None and outcome.summary:
        return f"{base}: {outcome.summary}"
    return base


def advance_step(
    store: TaskStore,
    task_id: str,
    *,
    log_entry: str,
    now: Optional[datetime] = None,
    context: Optional[Dict[str, Any]] = None,
    reply_wait: Optional[Dict[str, Any]] = None,
    **changes: Any,
) -> Task:
    """Move the cursor forward one step; complete (or loop, if continuous) at the end.

    Extra keyword arguments are passed through to the same ``update_task`` call.
    A *reply_wait* binding is dropped when a continuous task starts a new cycle.
    """
    now = now or _now()
    task = store.require(task_id)
    next_index = task.current_step.index + 1
    if next_index <= len(task.plan):
        return store.update_task(
            task_id,
            status=ACTIVE,
            current_step={
                "index": next_index,
                "description": task.step_description(next_index),
                "state": "active",
                "poll_interval_ms": None,
            },
            context=context,
            reply_wait=reply_wait,
            log_entry=log_entry,
            **changes,
        )
    if task.is_continuous:
        return loop_back(store, task, now, log_entry, context, **changes)
    return store.update_task(
        task_id,
        status=COMPLETED,
        next_check=None,
        current_step={"state": "completed"},
        reply_wait=dict(reply_wait or {}, wait_for_reply_active=False),
        context=context,
        log_entry=f"{log_entry} - Task completed",
        **changes,
    )


def loop_back(
    store: TaskStore,
    task: Task,
    now: datetime,
    log_entry: str,
    context: Optional[Dict[str, Any]] = None,
    **changes: Any,
) -> Task:
    """Restart a continuous task at step 1 on its poll schedule.

    The reply target of the finished cycle is cleared so the next due check
    runs step 1 again; the follow-up settings carry over.
    """
    rw = task.reply_wait
    changes["reply_wait"] = ReplyWait(
        max_followups=rw.max_followups,
        followup_after_hours=rw.followup_after_hours,
        success_criteria=rw.success_criteria,
        original_request=rw.original_request,
    )
    next_check = None if task.poll_frequency.is_event else now + timedelta(milliseconds=task.interval_ms)
    return store.update_task(
        task.task_id,
        status=WAITING,
        next_check=next_check,
        current_step={
            "index": 1,
            "description": task.step_description(1),
            "state": "waiting",
        },
        context=context,
        log_entry=f"{log_entry} - Cycle finished, monitoring continues",
        **changes,
    )


def jump_to_step(store: TaskStore, task: Task, index: int, log_entry: str, **changes: Any) -> Task:
    if not 1 <= index <= max(len(task.plan), 1):
        raise InvalidTransitionError(f"Step {index} is outside the plan of {task.task_id}")
    return store.update_task(
        task.task_id,
        current_step={"index": index, "description": task.step_description(index), "state": "active"},
        log_entry=log_entry,
        **changes,
    )


def start_reply_wait(
    store: TaskStore,
    task: Task,
    request: WaitForReplyRequest,
    now: datetime,
    outcome: Optional[StepOutcome] = None,
    log_entry: Optional[str] = None,
    **changes: Any,
) -> Task:
    """Put *task* into an active reply wait on *request*'s contact.

    ``last_message_time`` and ``wait_started_at`` are *now*: only messages
    after the send count as replies.
    """
    bound = task.reply_wait
    # a conversation bound for another contact is not inherited
    inherited = bound.conversation_id if bound.waiting_for_contact in (None, request.contact) else None
    reply_wait = ReplyWait(
        wait_for_reply_active=True,
        waiting_via=request.platform,
        waiting_for_contact=request.contact,
        conversation_id=inherited,
        last_message_time=now,
        followup_count=0,
        max_followups=request.max_followups,
        followup_after_hours=request.followup_after_hours,
        wait_started_at=now,
        success_criteria=request.success_criteria,
        original_request=request.original_request,
    )
    reply_wait.bind_conversation(request.conversation_id)
    interval_ms = int(request.poll_interval_minutes * 60000)
    scope = f" in conversation {reply_wait.conversation_id}" if reply_wait.conversation_id else ""
    text = _log_text(f"Waiting for reply from {request.contact} via {request.platform}{scope}", outcome)
    return store.update_task(
        task.task_id,
        status=WAITING,
        next_check=now + timedelta(milliseconds=interval_ms),
        current_step={"state": "waiting", "poll_interval_ms": interval_ms},
        reply_wait=reply_wait,
        messaging_channel=request.platform,
        log_entry=f"{log_entry} - {text}" if log_entry else text,
        **changes,
    )


def apply_outcome(
    store: TaskStore,
    task_id: str,
    outcome: Optional[StepOutcome],
    now: Optional[datetime] = None,
) -> Task:
    """Apply the executor's transition request, or auto-advance when there is none."""
    now = now or _now()
    task = store.require(task_id)
    if task.is_terminal:
        logger.info("Task %s became %s during execution; outcome dropped", task_id, task.status)
        return task

    if outcome is not None and outcome.modify_plan:
        task = store.update_task(task_id, plan=outcome.modify_plan, log_entry=f"Plan updated ({len(outcome.modify_plan)} steps)")
        task = store.update_task(task_id, current_step={"description": task.step_description(task.current_step.index)})

    if task.status == WAITING_APPROVAL:
        # A send was queued for approval during this step; only the user moves it on.
        context = dict(outcome.context_updates or {}) if outcome is not None else {}
        log_entry = None
        if outcome is not None and outcome.wait_for_reply is not None:
            # started once the last draft is approved and sent
            context[PENDING_WAIT_KEY] = asdict(outcome.wait_for_reply)
            log_entry = f"Reply wait on {outcome.wait_for_reply.contact} starts once the draft is approved"
        if context:
            task = store.update_task(task_id, context=context, log_entry=log_entry)
        return task

    if outcome is not None and outcome.wait_for_reply is not None:
        return start_reply_wait(store, task, outcome.wait_for_reply, now, outcome, context=outcome.context_updates)

    status = outcome.next_status if outcome is not None else None
    context = outcome.context_updates if outcome is not None else None
    step_label = f"Step {task.current_step.index}"

    if status is None or status == ACTIVE:
        if outcome is not None and outcome.next_step:
            return jump_to_step(
                store,
                task,
                outcome.next_step,
                _log_text(f"{step_label} done, moving to step {outcome.next_step}", outcome),
                status=ACTIVE,
                context=context,
            )
        return advance_step(store, task_id, log_entry=_log_text(f"{step_label} completed", outcome), now=now, context=context)

    if status == COMPLETED:
        if task.is_continuous:
            return loop_back(store, task, now, _log_text(f"{step_label} completed", outcome), context)
        return store.update_task(
            task_id,
            status=COMPLETED,
            next_check=None,
            current_step={"state": "completed"},
            reply_wait={"wait_for_reply_active": False},
            context=context,
            log_entry=_log_text("Task completed", outcome),
        )

    if status == WAITING:
        interval_ms = outcome.poll_interval_ms or task.interval_ms
        step_changes: Dict[str, Any] = {"state": "waiting"}
        if outcome.poll_interval_ms:
            step_changes["poll_interval_ms"] = outcome.poll_interval_ms
        if outcome.next_step:
            step_changes["index"] = outcome.next_step
            step_changes["description"] = task.step_description(outcome.next_step)
        next_check = None if task.poll_frequency.is_event and not outcome.poll_interval_ms else now + timedelta(milliseconds=interval_ms)
        return store.update_task(
            task_id,
            status=WAITING,
            next_check=next_check,
            current_step=step_changes,
            context=context,
            log_entry=_log_text(f"{step_label} waiting", outcome),
        )

    if status == WAITING_FOR_INPUT:
        question = outcome.clarification_question or "The task needs more information to continue."
        return store.update_task(
            task_id,
            status=WAITING_FOR_INPUT,
            next_check=None,
            current_step={"state": "waiting_for_input"},
            pending_clarification=question,
            context=context,
            log_entry=f"Waiting for user input: {question}",
        )

    if status == FAILED:
        return fail_task(store, task_id, outcome.summary or "Step reported failure")

    if status == CANCELLED:
        return store.cancel_task(task_id)

    logger.warning("Task %s: ignoring unsupported transition request %r", task_id, status)
    return advance_step(store, task_id, log_entry=f"{step_label} completed", now=now, context=context)


def fail_task(store: TaskStore, task_id: str, error: str) -> Task:
    """Mark a task failed with *error* as its final log entry."""
    task = store.require(task_id)
    if task.is_terminal:
        return task
    return store.update_task(
        task_id,
        status=FAILED,
        next_check=None,
        current_step={"state": "failed"},
        reply_wait={"wait_for_reply_active": False},
        log_entry=f"Task failed: {error}",
    )


def submit_user_response(store: TaskStore, task_id: str, text: str) -> Task:
    """Answer the pending clarification of a ``waiting_for_input`` task."""
    task = store.require(task_id)
    if task.status != WAITING_FOR_INPUT:
        raise InvalidTransitionError(f"Task {task_id} is {task.status}, not waiting for input")
    preview = text if len(text) <= 100 else text[:100] + "..."
    return store.update_task(
        task_id,
        status=ACTIVE,
        next_check=None,
        current_step={"state": "active"},
        context={"userResponse": text},
        reply_wait={"wait_for_reply_active": False},
        pending_clarification=None,
        log_entry=f"User responded: {preview}",
    )
