"""Periodic sweep over active tasks.

Once per tick the scheduler loads a fresh ``list_active()`` snapshot and,
for each ``waiting`` task whose ``next_check`` has passed, either polls the
task's messaging integration for a reply (cheap, no model calls) or hands
the task back to the step executor.  Event-triggered tasks are skipped by
the sweep and run from ``trigger_event``.

At most one action is in flight per task: every action holds a per-task
claim, and the task's status is re-read after the claim is taken.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Callable, Iterator, List, Optional, Set

from followthrough.core import audit
from followthrough.core.credentials import CredentialStore
from followthrough.core.lifecycle import StepClassifier, is_waiting_step
from followthrough.core.notify import Notifier
from followthrough.core.replies import ReplyWaitWorkflow
from followthrough.core.tasks import ACTIVE, WAITING, Task, TaskStore
from followthrough.integrations.base import CheckResult, MessagingRegistry, scope_messages

logger = logging.getLogger("followthrough.scheduler")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TaskScheduler:
    def __init__(
        self,
        store: TaskStore,
        registry: MessagingRegistry,
        workflow: ReplyWaitWorkflow,
        notifier: Notifier,
        execute: Callable[[str], None],
        credentials: Optional[CredentialStore] = None,
        username: str = "default",
        tick_seconds: float = 30.0,
        resume_delay_seconds: float = 5.0,
        data_dir: Optional[str] = None,
        classifier: StepClassifier = is_waiting_step,
    ) -> None:
        self.store = store
        self.registry = registry
        self.workflow = workflow
        self.notifier = notifier
        self._execute = execute
        self.credentials = credentials
        self.username = username
        self.tick_seconds = tick_seconds
        self.resume_delay_seconds = resume_delay_seconds
        self.data_dir = data_dir
        self.classifier = classifier
        self._in_flight: Set[str] = set()
        self._claim_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._timers: List[threading.Timer] = []

    # ── per-task exclusion ───────────────────────────────────

    def claim(self, task_id: str) -> bool:
        with self._claim_lock:
            if task_id in self._in_flight:
                return False
            self._in_flight.add(task_id)
            return True

    def release(self, task_id: str) -> None:
        with self._claim_lock:
            self._in_flight.discard(task_id)

    def in_flight(self) -> Set[str]:
        with self._claim_lock:
            return set(self._in_flight)

    @contextmanager
    def exclusive(self, task_id: str) -> Iterator[bool]:
        claimed = self.claim(task_id)
        try:
            yield claimed
        finally:
            if claimed:
                self.release(task_id)

    def run_now(self, task_id: str) -> bool:
        """Invoke the step executor on *task_id* unless something else holds it."""
        with self.exclusive(task_id) as claimed:
            if not claimed:
                logger.debug("Task %s already in flight; skipping run", task_id)
                return False
            task = self.store.get(task_id)
            if task is None or task.status != ACTIVE:
                return False
            self._execute(task_id)
            return True

    # ── sweep ────────────────────────────────────────────────

    def tick(self, now: Optional[datetime] = None) -> int:
        """Process every due task once. Returns how many were acted on."""
        now = now or _now()
        acted = 0
        for task in self.store.list_active():
            if task.poll_frequency.is_event:
                continue
            if task.status != WAITING or task.next_check is None or now < task.next_check:
                continue
            try:
                if self._process(task.task_id, now, require_due=True):
                    acted += 1
            except Exception as exc:  # noqa: BLE001 - one task must not break the sweep
                logger.exception("Scheduler error on task %s: %s", task.task_id, exc)
                if self.data_dir:
                    audit.log_event(self.data_dir, "scheduler.error", {"error": str(exc)}, task_id=task.task_id)
        return acted

    def _process(self, task_id: str, now: datetime, require_due: bool) -> bool:
        with self.exclusive(task_id) as claimed:
            if not claimed:
                return False
            task = self.store.get(task_id)
            if task is None or task.status != WAITING:
                return False
            if require_due and (task.next_check is None or now < task.next_check):
                return False
            if self._watches_replies(task):
                self._check_replies(task, now)
            else:
                self.store.update_task(task_id, status=ACTIVE, current_step={"state": "active"}, log_entry="Scheduled check")
                self._execute(task_id)
            return True

    def _watches_replies(self, task: Task) -> bool:
        """Poll the contact instead of running the step?

        An active wait always polls. A bound target without one is only watched
        while the current step is itself a waiting step.
        """
        rw = task.reply_wait
        if rw.wait_for_reply_active:
            return True
        return rw.is_configured and self.classifier(task.current_step.description)

    def _reschedule(self, task: Task, now: datetime, log_entry: Optional[str] = None) -> Task:
        interval = timedelta(milliseconds=task.interval_ms)
        base = task.next_check or now
        next_check = base + interval
        if next_check <= now:
            # overdue by more than one interval (e.g. after downtime)
            next_check = now + interval
        return self.store.update_task(task.task_id, next_check=next_check, log_entry=log_entry)

    def _check_replies(self, task: Task, now: datetime) -> None:
        rw = task.reply_wait
        contact = rw.waiting_for_contact or ""
        integration = self.registry.get(rw.waiting_via or "")
        if integration is None or not integration.enabled:
            logger.warning("Task %s waits on unavailable integration %s", task.task_id, rw.waiting_via)
            self._reschedule(task, now)
            return
        if not rw.conversation_id:
            logger.debug(
                "Task %s has no conversation id; any message from %s on %s will count",
                task.task_id, contact, integration.name,
            )
        token = self.credentials.token_for(integration.integration_id, self.username) if self.credentials else None
        try:
            result = integration.check_for_new_messages(
                contact,
                rw.last_message_time,  # type: ignore[arg-type]
                auth_token=token,
                conversation_id=rw.conversation_id,
            )
        except Exception as exc:  # noqa: BLE001 - backend errors are transient
            logger.error("Reply check for task %s via %s failed: %s", task.task_id, integration.name, exc)
            self._reschedule(task, now)
            return
        if result.reason:
            logger.warning("Reply check for task %s via %s: %s", task.task_id, integration.name, result.reason)

        messages = scope_messages(result.messages, None, rw.conversation_id)
        if len(messages) < len(result.messages):
            logger.debug("Task %s: dropped %d message(s) outside the bound conversation", task.task_id, len(result.messages) - len(messages))

        if not messages:
            if rw.wait_for_reply_active:
                due = rw.followup_due_at()
                if due is not None and now >= due:
                    logger.info("Task %s: no reply from %s since %s", task.task_id, contact, rw.last_message_time)
                    self.workflow.handle_timeout(task.task_id, now=now)
                    return
            self._reschedule(task, now)
            return

        latest = CheckResult.from_messages(messages).latest or messages[-1]
        preview = latest.text if len(latest.text) <= 100 else latest.text[:100] + "..."
        task = self.store.update_task(task.task_id, log_entry=f'New message from {contact}: "{preview}"')
        self.notifier.notify(
            task.task_id,
            f"New reply from {contact}: {preview}",
            to_chat=True,
            emoji="💬",
            task_title=task.title,
            notifications_disabled=task.notifications_disabled,
        )
        if rw.wait_for_reply_active:
            self.workflow.handle_reply(task.task_id, latest, now=now)
            return
        self.store.update_task(
            task.task_id,
            status=ACTIVE,
            current_step={"state": "active"},
            reply_wait={"last_message_time": latest.timestamp or now, "conversation_id": latest.conversation_id},
            context={"newMessages": [m.to_dict() for m in messages]},
        )
        self._execute(task.task_id)

    # ── lifecycle hooks ──────────────────────────────────────

    def trigger_event(self, name: str, now: Optional[datetime] = None) -> int:
        """Run every event-triggered task waiting on *name*."""
        now = now or _now()
        fired = 0
        for task in self.store.list_active():
            freq = task.poll_frequency
            if not freq.is_event or freq.trigger != name:
                continue
            try:
                if task.status == WAITING and self._process(task.task_id, now, require_due=False):
                    fired += 1
                elif task.status == ACTIVE and self.run_now(task.task_id):
                    fired += 1
            except Exception as exc:  # noqa: BLE001
                logger.exception("Event %s failed for task %s: %s", name, task.task_id, exc)
        logger.info("Event %s fired %d task(s)", name, fired)
        return fired

    def schedule_resume(self, task_id: str, delay: Optional[float] = None) -> threading.Timer:
        timer = threading.Timer(self.resume_delay_seconds if delay is None else delay, self.run_now, args=(task_id,))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()
        return timer

    def resume_on_startup(self, now: Optional[datetime] = None) -> dict:
        """Pick up where the last process left off."""
        now = now or _now()
        surfaced = checked = resumed = 0
        for task in self.store.list_waiting_approval():
            count = len(task.pending_messages)
            self.notifier.notify(
                task.task_id,
                f"{count} message{'s' if count != 1 else ''} still awaiting your approval",
                to_chat=True,
                emoji="✉️",
                task_title=task.title,
                notifications_disabled=task.notifications_disabled,
            )
            surfaced += 1
        for task in self.store.list_active():
            if task.status == ACTIVE:
                self.schedule_resume(task.task_id)
                resumed += 1
            elif not task.poll_frequency.is_event and task.next_check is not None and task.next_check <= now:
                try:
                    if self._process(task.task_id, now, require_due=True):
                        checked += 1
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Startup check failed for task %s: %s", task.task_id, exc)
        logger.info("Startup resume: %d awaiting approval, %d overdue checked, %d resumed", surfaced, checked, resumed)
        return {"awaiting_approval": surfaced, "checked": checked, "resumed": resumed}

    # ── thread ───────────────────────────────────────────────

    def _loop(self) -> None:
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("Scheduler loop error: %s", exc)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="task-scheduler")
        self._thread.start()
        logger.info("Task scheduler started (tick every %.0fs)", self.tick_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Task scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
