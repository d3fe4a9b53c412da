"""Reply-wait workflow: evaluate replies, follow up, escalate.

A task in a reply wait has sent a message and is polling for the contact's
answer.  Each observed reply (or an elapsed ``followup_after_hours`` with no
reply at all) walks the same ladder:

1. satisfied            -> ``completed`` with ``extractedInfo`` stored
2. budget left          -> follow-up through the confirmation gate, stay waiting
3. budget exhausted     -> ``waiting_for_input`` with a summary for the user

``followup_count`` only moves after a follow-up was actually sent or queued
for approval.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from followthrough.core import audit
from followthrough.core.confirmations import ConfirmationGate
from followthrough.core.credentials import CredentialStore
from followthrough.core.judge import ReplyJudge
from followthrough.core.lifecycle import loop_back
from followthrough.core.notify import Notifier
from followthrough.core.tasks import COMPLETED, WAITING, WAITING_FOR_INPUT, Task, TaskStore
from followthrough.integrations.base import InboundMessage, MessagingRegistry, SendResult

logger = logging.getLogger("followthrough.replies")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def describe_elapsed(delta: timedelta) -> str:
    hours = delta.total_seconds() / 3600
    if hours < 1:
        minutes = max(1, int(delta.total_seconds() // 60))
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    if hours < 48:
        whole = int(round(hours))
        return f"{whole} hour{'s' if whole != 1 else ''}"
    days = int(round(hours / 24))
    return f"{days} days"


class ReplyWaitWorkflow:
    def __init__(
        self,
        store: TaskStore,
        registry: MessagingRegistry,
        gate: ConfirmationGate,
        judge: ReplyJudge,
        notifier: Notifier,
        credentials: Optional[CredentialStore] = None,
        username: str = "default",
        data_dir: Optional[str] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.gate = gate
        self.judge = judge
        self.notifier = notifier
        self.credentials = credentials
        self.username = username
        self.data_dir = data_dir

    def _audit(self, event_type: str, task_id: str, **payload: object) -> None:
        if self.data_dir:
            audit.log_event(self.data_dir, event_type, dict(payload), task_id=task_id)

    def _notify(self, task: Task, message: str, emoji: str) -> None:
        self.notifier.notify(
            task.task_id,
            message,
            to_chat=True,
            emoji=emoji,
            task_title=task.title,
            notifications_disabled=task.notifications_disabled,
        )

    # ── delivery ─────────────────────────────────────────────

    def deliver(
        self,
        platform: str,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        """Send through the named integration. Failures come back as ``SendResult``."""
        integration = self.registry.get(platform)
        if integration is None or not integration.enabled:
            return SendResult(success=False, error=f"Messaging integration {platform!r} is not available")
        token = self.credentials.token_for(integration.integration_id, self.username) if self.credentials else None
        try:
            return integration.send_message(recipient, body, subject=subject, auth_token=token, conversation_id=conversation_id)
        except Exception as exc:  # noqa: BLE001 - backend errors are transient
            logger.error("Send via %s to %s failed: %s", platform, recipient, exc)
            return SendResult(success=False, error=str(exc))

    # ── ladder ───────────────────────────────────────────────

    def handle_reply(self, task_id: str, message: InboundMessage, now: Optional[datetime] = None) -> Task:
        now = now or _now()
        task = self.store.require(task_id)
        rw = task.reply_wait
        if task.is_terminal or not rw.wait_for_reply_active:
            return task
        contact = rw.waiting_for_contact or message.sender
        seen_at = message.timestamp or now
        task = self.store.update_task(
            task_id,
            reply_wait={"last_message_time": seen_at, "conversation_id": message.conversation_id},
            context={"lastReply": message.text},
        )
        rw = task.reply_wait
        evaluation = self.judge.evaluate(
            message.text,
            rw.original_request or task.original_request,
            rw.success_criteria or "",
            contact,
        )
        if evaluation.satisfies:
            return self._complete(task, contact, evaluation.reason, evaluation.extracted_info, now)

        logger.info("Task %s: reply from %s not satisfying (%s)", task_id, contact, evaluation.reason)
        task = self.store.update_task(
            task_id,
            log_entry=f"Reply from {contact} did not satisfy the request: {evaluation.reason}",
        )
        if task.reply_wait.budget_exhausted:
            return self.escalate(task_id, now=now)
        return self.send_followup(task_id, now=now, is_timeout=False, last_reply=message.text)

    def handle_timeout(self, task_id: str, now: Optional[datetime] = None) -> Task:
        """No reply within ``followup_after_hours``: remind, or escalate if out of budget."""
        now = now or _now()
        task = self.store.require(task_id)
        if task.is_terminal or not task.reply_wait.wait_for_reply_active:
            return task
        if task.reply_wait.budget_exhausted:
            return self.escalate(task_id, now=now)
        return self.send_followup(task_id, now=now, is_timeout=True)

    def _complete(self, task: Task, contact: str, reason: str, extracted: dict, now: datetime) -> Task:
        log = f"Reply from {contact} satisfied the request: {reason}"
        context = {"extractedInfo": extracted}
        if task.is_continuous:
            updated = self.store.update_task(task.task_id, reply_wait={"wait_for_reply_active": False}, context=context)
            updated = loop_back(self.store, updated, now, log)
        else:
            updated = self.store.update_task(
                task.task_id,
                status=COMPLETED,
                next_check=None,
                current_step={"state": "completed"},
                reply_wait={"wait_for_reply_active": False},
                context=context,
                log_entry=f"{log} - Task completed",
            )
        self._audit("reply.satisfied", task.task_id, contact=contact, reason=reason)
        self._notify(updated, f"Got what we needed from {contact}. {reason}".strip(), emoji="✅")
        return updated

    def escalate(self, task_id: str, now: Optional[datetime] = None) -> Task:
        now = now or _now()
        task = self.store.require(task_id)
        rw = task.reply_wait
        contact = rw.waiting_for_contact or "the contact"
        started = rw.wait_started_at or rw.last_message_time or task.created_at
        elapsed = describe_elapsed(now - started)
        attempts = rw.followup_count
        question = (
            f"I haven't received a satisfactory reply from {contact} after {attempts} "
            f"follow-up{'s' if attempts != 1 else ''} over {elapsed}. "
            "Should I keep trying, try a different approach, or stop?"
        )
        updated = self.store.update_task(
            task_id,
            status=WAITING_FOR_INPUT,
            next_check=None,
            current_step={"state": "waiting_for_input"},
            reply_wait={"wait_for_reply_active": False},
            pending_clarification=question,
            log_entry=f"Escalated to user after {attempts} follow-ups with {contact}",
        )
        logger.info("Task %s escalated: follow-up budget exhausted for %s", task_id, contact)
        self._audit("reply.escalated", task_id, contact=contact, followups=attempts)
        self._notify(updated, question, emoji="❓")
        return updated

    def send_followup(
        self,
        task_id: str,
        now: Optional[datetime] = None,
        is_timeout: bool = False,
        last_reply: Optional[str] = None,
    ) -> Task:
        now = now or _now()
        task = self.store.require(task_id)
        rw = task.reply_wait
        contact = rw.waiting_for_contact or ""
        number = rw.followup_count + 1
        body = self.judge.generate_followup(
            rw.original_request or task.original_request,
            contact,
            number,
            is_timeout,
            last_reply,
        )
        tool_input = {
            "platform": rw.waiting_via,
            "to": contact,
            "body": body,
            "conversation_id": rw.conversation_id,
            "followup_number": number,
        }
        if rw.waiting_via == "email":
            tool_input["subject"] = f"Re: {task.title}"
        decision = self.gate.request_confirmation("send_followup", tool_input, task=task)

        if decision.pending_in_task:
            self._audit("followup.queued", task_id, contact=contact, number=number)
            return self.store.update_task(
                task_id,
                reply_wait={"followup_count": number, "last_followup_time": now},
                log_entry=f"Follow-up #{number} to {contact} drafted for approval",
            )

        interval = timedelta(milliseconds=task.interval_ms)
        if not decision.approved:
            return self.store.update_task(task_id, next_check=now + interval, log_entry=f"Follow-up #{number} to {contact} was not approved")

        result = self.deliver(rw.waiting_via or "", contact, body, tool_input.get("subject"), rw.conversation_id)
        if not result.success:
            logger.warning("Task %s: follow-up to %s failed: %s", task_id, contact, result.error)
            return self.store.update_task(
                task_id,
                status=WAITING,
                next_check=now + interval,
                log_entry=f"Follow-up #{number} to {contact} failed ({result.error}); will retry",
            )
        self._audit("followup.sent", task_id, contact=contact, number=number, platform=rw.waiting_via)
        kind = "reminder" if is_timeout else "follow-up"
        return self.store.update_task(
            task_id,
            status=WAITING,
            next_check=now + interval,
            current_step={"state": "waiting"},
            reply_wait={
                "followup_count": number,
                "last_followup_time": now,
                "last_message_time": now,
                "conversation_id": result.conversation_id,
            },
            log_entry=f"Sent {kind} #{number} to {contact}",
        )
