"""The engine: one object that owns the task store, registry, gate,
reply-wait workflow, scheduler and notifier, and wires them together.

Construct it once at startup, call ``start()`` and ``stop()`` around the
process lifetime, and pass it to whatever needs it.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Any, Dict, List, Optional

from followthrough.core import audit
from followthrough.core.config import Settings
from followthrough.core.confirmations import ConfirmationGate, ConfirmationResult
from followthrough.core.credentials import CredentialStore
from followthrough.core.errors import IntegrationError, InvalidTransitionError, PendingMessageNotFoundError
from followthrough.core.judge import ReplyJudge, build_judge
from followthrough.core.lifecycle import (
    PENDING_WAIT_KEY,
    StepClassifier,
    StepExecutor,
    advance_step,
    apply_outcome,
    fail_task,
    is_waiting_step,
    pending_wait_request,
    start_reply_wait,
    submit_user_response,
)
from followthrough.core.logging_config import log_task_event
from followthrough.core.notify import Notifier
from followthrough.core.replies import ReplyWaitWorkflow
from followthrough.core.scheduler import TaskScheduler
from followthrough.core.tasks import (
    ACTIVE,
    COMPLETED,
    FAILED,
    WAITING,
    WAITING_APPROVAL,
    WAITING_FOR_INPUT,
    PendingMessage,
    Task,
    TaskStore,
)
from followthrough.integrations.base import IntegrationId, MessagingIntegration, MessagingRegistry
from followthrough.integrations.discord import DiscordIntegration
from followthrough.integrations.gmail import GmailIntegration
from followthrough.integrations.imessage import IMessageIntegration
from followthrough.integrations.slack import SlackIntegration
from followthrough.integrations.telegram import TelegramIntegration
from followthrough.integrations.x import XIntegration

logger = logging.getLogger("followthrough.engine")

DEFAULT_MAX_STEPS_PER_RUN = 20


def build_registry(settings: Settings) -> MessagingRegistry:
    """Register an adapter for every backend that has credentials configured."""
    integrations: List[MessagingIntegration] = []
    if settings.gmail_access_token:
        integrations.append(GmailIntegration(access_token=settings.gmail_access_token))
    if settings.slack_bot_token:
        integrations.append(SlackIntegration(bot_token=settings.slack_bot_token))
    if settings.telegram_bot_token:
        integrations.append(TelegramIntegration(token=settings.telegram_bot_token))
    if settings.discord_bot_token:
        integrations.append(DiscordIntegration(bot_token=settings.discord_bot_token))
    if settings.x_bearer_token:
        integrations.append(XIntegration(bearer_token=settings.x_bearer_token))
    if settings.imessage_enabled:
        integrations.append(IMessageIntegration())
    return MessagingRegistry(integrations)


class Engine:
    def __init__(
        self,
        settings: Settings,
        executor: Optional[StepExecutor] = None,
        registry: Optional[MessagingRegistry] = None,
        judge: Optional[ReplyJudge] = None,
        notifier: Optional[Notifier] = None,
        classifier: StepClassifier = is_waiting_step,
        max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.classifier = classifier
        self.max_steps_per_run = max_steps_per_run
        self.store = TaskStore(settings.data_dir)
        self.registry = registry if registry is not None else build_registry(settings)
        self.notifier = notifier or Notifier()
        self.credentials = CredentialStore(settings.data_dir, settings)
        self.gate = ConfirmationGate(self.store, self.notifier, timeout_seconds=settings.confirmation_timeout_seconds)
        self.workflow = ReplyWaitWorkflow(
            self.store,
            self.registry,
            self.gate,
            judge or build_judge(settings),
            self.notifier,
            credentials=self.credentials,
            username=settings.username,
            data_dir=settings.data_dir,
        )
        self.scheduler = TaskScheduler(
            self.store,
            self.registry,
            self.workflow,
            self.notifier,
            execute=self._run_steps,
            credentials=self.credentials,
            username=settings.username,
            tick_seconds=settings.tick_seconds,
            resume_delay_seconds=settings.resume_delay_seconds,
            data_dir=settings.data_dir,
            classifier=classifier,
        )
        self._started = False

    # ── lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.scheduler.start()
        self.scheduler.resume_on_startup()
        logger.info("Engine started (%d integrations)", len(self.registry.ids()))

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.scheduler.stop()
        self.gate.clear()
        logger.info("Engine stopped")

    # ── step execution ───────────────────────────────────────

    def _notify(self, task: Task, message: str, emoji: str = "📋", to_chat: bool = True) -> None:
        self.notifier.notify(
            task.task_id,
            message,
            to_chat=to_chat,
            emoji=emoji,
            task_title=task.title,
            notifications_disabled=task.notifications_disabled,
        )

    def _run_steps(self, task_id: str) -> None:
        """Drive an ``active`` task until it leaves ``active``. Caller holds the task claim."""
        for _ in range(self.max_steps_per_run):
            task = self.store.get(task_id)
            if task is None or task.status != ACTIVE:
                return
            if self.executor is None:
                logger.warning("No step executor configured; task %s stays active", task_id)
                return
            log_task_event(task_id, "step_started", task.current_step.description, step=task.current_step.index)
            try:
                outcome = self.executor.execute(task)
            except Exception as exc:  # noqa: BLE001 - fatal for this task only
                logger.exception("Step %d of task %s failed", task.current_step.index, task_id)
                failed = fail_task(self.store, task_id, str(exc))
                audit.log_event(self.settings.data_dir, "task.failed", {"error": str(exc)}, task_id=task_id)
                self._notify(failed, f"Task failed: {exc}", emoji="❌")
                return
            try:
                updated = apply_outcome(self.store, task_id, outcome)
            except InvalidTransitionError as exc:
                # cancelled while the step ran
                logger.info("Task %s: outcome of step %d dropped: %s", task_id, task.current_step.index, exc)
                return
            self._announce(task, updated)
            if updated.status != ACTIVE:
                return
        logger.info("Task %s still active after %d steps; resuming shortly", task_id, self.max_steps_per_run)
        self.scheduler.schedule_resume(task_id)

    def _announce(self, before: Task, after: Task) -> None:
        if after.status == WAITING_APPROVAL or (after.status == before.status and after.status != ACTIVE):
            return
        if after.status == COMPLETED:
            self._notify(after, "Task completed.", emoji="✅")
        elif after.status == WAITING_FOR_INPUT:
            self._notify(after, after.pending_clarification or "Waiting for your input.", emoji="❓")
        elif after.status == FAILED:
            self._notify(after, after.execution_log[-1].message if after.execution_log else "Task failed.", emoji="❌")
        else:
            self._notify(after, after.execution_log[-1].message if after.execution_log else after.status, to_chat=False)

    def execute_task(self, task_id: str) -> bool:
        """Run the executor on *task_id* now, in the calling thread."""
        return self.scheduler.run_now(task_id)

    def kick(self, task_id: str) -> threading.Thread:
        """Run the executor on *task_id* in a background thread."""
        thread = threading.Thread(target=self.scheduler.run_now, args=(task_id,), daemon=True, name=f"task-{task_id}")
        thread.start()
        return thread

    # ── task operations ──────────────────────────────────────

    def create_task(self, title: str, original_request: str = "", start: bool = True, **kwargs: Any) -> Task:
        task = self.store.create_task(title, original_request, **kwargs)
        self._notify(task, f"Created task with {len(task.plan)} steps", emoji="🆕", to_chat=False)
        if start:
            self.kick(task.task_id)
        return task

    def get_task(self, task_id: str) -> Task:
        return self.store.require(task_id)

    def list_tasks(self, include_hidden: bool = False) -> List[Task]:
        return self.store.list_tasks(include_hidden=include_hidden)

    def cancel_task(self, task_id: str) -> Task:
        task = self.store.cancel_task(task_id)
        audit.log_event(self.settings.data_dir, "task.cancelled", {}, task_id=task_id)
        self._notify(task, "Task cancelled.", emoji="🛑", to_chat=False)
        return task

    def hide_task(self, task_id: str) -> Task:
        return self.store.hide_task(task_id)

    def submit_user_response(self, task_id: str, text: str, run: bool = True) -> Task:
        task = submit_user_response(self.store, task_id, text)
        if run:
            self.kick(task_id)
        return task

    def trigger_event(self, name: str) -> int:
        return self.scheduler.trigger_event(name)

    def request_confirmation(
        self,
        tool_name: str,
        tool_input: Dict[str, Any],
        task_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ConfirmationResult:
        task = self.store.require(task_id) if task_id else None
        return self.gate.request_confirmation(tool_name, tool_input, task=task, timeout=timeout)

    # ── approval queue ───────────────────────────────────────

    @staticmethod
    def _find_pending(task: Task, message_id: str) -> PendingMessage:
        for msg in task.pending_messages:
            if msg.message_id == message_id:
                return msg
        raise PendingMessageNotFoundError(task.task_id, message_id)

    @staticmethod
    def _channel(platform: str) -> Optional[IntegrationId]:
        try:
            return IntegrationId.parse(platform)
        except ValueError:
            return None

    @staticmethod
    def _send_binding(task: Task, msg: PendingMessage, conversation_id: Optional[str], now: datetime) -> Dict[str, Any]:
        """Reply-wait target captured from an approved send."""
        rw = task.reply_wait
        if rw.conversation_id and rw.waiting_for_contact not in (None, msg.recipient):
            # another contact's conversation is already bound
            return {}
        return {
            "waiting_via": msg.platform,
            "waiting_for_contact": msg.recipient,
            "last_message_time": now,
            "conversation_id": conversation_id,
        }

    def approve_pending_message(self, task_id: str, message_id: str, now: Optional[datetime] = None) -> Task:
        """Send a queued draft, then move the task on by its step's semantics."""
        now = now or datetime.now(timezone.utc)
        task = self.store.require(task_id)
        msg = self._find_pending(task, message_id)
        if task.is_terminal:
            raise InvalidTransitionError(f"Task {task_id} is {task.status}; its drafts can no longer be sent")
        conversation_id = msg.tool_input.get("conversation_id") or task.reply_wait.conversation_id
        result = self.workflow.deliver(msg.platform, msg.recipient, msg.body, msg.subject, conversation_id)
        if not result.success:
            self.store.update_task(task_id, log_entry=f"Sending approved message to {msg.recipient} failed: {result.error}")
            audit.log_event(self.settings.data_dir, "message.send_failed", {"message_id": message_id, "error": result.error}, task_id=task_id)
            raise IntegrationError(msg.platform, result.error or "send failed")

        audit.log_event(
            self.settings.data_dir,
            "message.approved",
            {"message_id": message_id, "platform": msg.platform, "recipient": msg.recipient},
            task_id=task_id,
        )
        log_entry = f"Approved and sent message to {msg.recipient} via {msg.platform}"
        binding = self._send_binding(task, msg, result.conversation_id, now)
        remaining = [m for m in task.pending_messages if m.message_id != message_id]
        if remaining:
            return self.store.update_task(task_id, remove_pending_message=message_id, reply_wait=binding, log_entry=log_entry)

        interval = timedelta(milliseconds=task.interval_ms)
        rw = task.reply_wait
        if msg.tool_name == "send_followup" and rw.wait_for_reply_active:
            # the follow-up dwell runs from the actual send, not the draft
            return self.store.update_task(
                task_id,
                status=WAITING,
                next_check=now + interval,
                current_step={"state": "waiting"},
                remove_pending_message=message_id,
                reply_wait={"last_message_time": now, "last_followup_time": now, "conversation_id": result.conversation_id},
                log_entry=log_entry,
            )

        request = pending_wait_request(task)
        if request is not None:
            if not request.conversation_id:
                request.conversation_id = result.conversation_id
            return start_reply_wait(
                self.store,
                task,
                request,
                now,
                log_entry=log_entry,
                remove_pending_message=message_id,
                context={PENDING_WAIT_KEY: None},
            )

        if self.classifier(task.current_step.description):
            wait_updates: Dict[str, Any] = dict(binding)
            if rw.success_criteria and not rw.wait_for_reply_active:
                wait_updates.update(wait_for_reply_active=True, wait_started_at=now)
            return self.store.update_task(
                task_id,
                status=WAITING,
                next_check=now + interval,
                current_step={"state": "waiting"},
                remove_pending_message=message_id,
                messaging_channel=self._channel(msg.platform),
                reply_wait=wait_updates,
                log_entry=log_entry,
            )

        updated = advance_step(
            self.store,
            task_id,
            log_entry=log_entry,
            now=now,
            remove_pending_message=message_id,
            messaging_channel=self._channel(msg.platform),
            reply_wait=binding,
        )
        self._announce(task, updated)
        if updated.status == ACTIVE:
            self.kick(task_id)
        return updated

    def reject_pending_message(self, task_id: str, message_id: str, now: Optional[datetime] = None) -> Task:
        """Discard a queued draft and move on."""
        now = now or datetime.now(timezone.utc)
        task = self.store.require(task_id)
        msg = self._find_pending(task, message_id)
        audit.log_event(self.settings.data_dir, "message.rejected", {"message_id": message_id, "recipient": msg.recipient}, task_id=task_id)
        log_entry = f"Message to {msg.recipient} discarded"
        remaining = [m for m in task.pending_messages if m.message_id != message_id]
        if remaining:
            return self.store.update_task(task_id, remove_pending_message=message_id, log_entry=log_entry)
        if msg.tool_name == "send_followup" and task.reply_wait.wait_for_reply_active:
            # the attempt stays counted; the wait carries on toward the next follow-up or escalation
            return self.store.update_task(
                task_id,
                status=WAITING,
                next_check=now + timedelta(milliseconds=task.interval_ms),
                current_step={"state": "waiting"},
                remove_pending_message=message_id,
                log_entry=log_entry,
            )
        # nothing was sent, so a wait deferred to this draft's approval is dropped
        deferred = {PENDING_WAIT_KEY: None} if pending_wait_request(task) is not None else None
        updated = advance_step(
            self.store,
            task_id,
            log_entry=log_entry,
            now=now,
            context=deferred,
            remove_pending_message=message_id,
        )
        self._announce(task, updated)
        if updated.status == ACTIVE:
            self.kick(task_id)
        return updated

    def waiting_approval(self) -> List[Task]:
        return self.store.list_waiting_approval()

    # ── session ──────────────────────────────────────────────

    def logout(self) -> Dict[str, int]:
        """Drop process-local state: ad hoc confirmations and lookup caches."""
        cleared = self.gate.clear()
        self.registry.clear_caches()
        self.credentials.clear_cache()
        logger.info("Logged out: %d pending confirmation(s) rejected", cleared)
        return {"confirmations_cleared": cleared}
