"""Shared fakes: an in-memory messaging backend, a scripted judge and a
scripted step executor."""
from __future__ import annotations

from datetime import datetime, timezone
import threading
from typing import Any, Callable, List, Optional

import pytest

from followthrough.core.config import Settings
from followthrough.core.engine import Engine
from followthrough.core.judge import Evaluation
from followthrough.core.notify import Notifier
from followthrough.core.tasks import Task, TaskStore
from followthrough.integrations.base import (
    CheckResult,
    InboundMessage,
    IntegrationId,
    MessagingIntegration,
    MessagingRegistry,
    SendResult,
    scope_messages,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeIntegration(MessagingIntegration):
    """In-memory backend. Tests push replies into ``inbox``."""

    def __init__(
        self,
        integration_id: IntegrationId = IntegrationId.SLACK,
        conversation_id: str = "C-100",
        scoped: bool = True,
    ) -> None:
        self._id = integration_id
        self.conversation_id = conversation_id
        self.scoped = scoped
        self.sent: List[dict] = []
        self.inbox: List[InboundMessage] = []
        self.checks = 0
        self.fail_sends = False
        self.raise_on_check: Optional[Exception] = None

    @property
    def integration_id(self) -> IntegrationId:
        return self._id

    def send_message(self, recipient, body, subject=None, auth_token=None, conversation_id=None) -> SendResult:
        if self.fail_sends:
            return SendResult(success=False, error="backend unavailable")
        self.sent.append({"recipient": recipient, "body": body, "subject": subject, "conversation_id": conversation_id})
        return SendResult(success=True, conversation_id=conversation_id or self.conversation_id, message_id=f"m{len(self.sent)}")

    def check_for_new_messages(self, contact, since, auth_token=None, conversation_id=None) -> CheckResult:
        self.checks += 1
        if self.raise_on_check is not None:
            raise self.raise_on_check
        candidates = [m for m in self.inbox if m.sender == contact]
        if self.scoped:
            return CheckResult.from_messages(scope_messages(candidates, since, conversation_id))
        return CheckResult.from_messages([m for m in candidates if m.timestamp is None or m.timestamp > since])

    def get_messages(self, contact, limit=20, since=None, auth_token=None) -> List[InboundMessage]:
        return [m for m in self.inbox if m.sender == contact][-limit:]

    def reply(self, sender: str, text: str, at: datetime, conversation_id: Optional[str] = None) -> InboundMessage:
        msg = InboundMessage(
            message_id=f"in-{len(self.inbox) + 1}",
            sender=sender,
            text=text,
            timestamp=at,
            conversation_id=conversation_id or self.conversation_id,
        )
        self.inbox.append(msg)
        return msg


class ScriptedJudge:
    """Returns queued verdicts in order; unsatisfied once the queue is empty."""

    def __init__(self, verdicts: Optional[List[bool]] = None) -> None:
        self.verdicts = list(verdicts or [])
        self.evaluated: List[str] = []
        self.followups: List[int] = []

    def evaluate(self, reply_body, original_request, success_criteria, contact) -> Evaluation:
        self.evaluated.append(reply_body)
        ok = self.verdicts.pop(0) if self.verdicts else False
        if ok:
            return Evaluation(satisfies=True, reason="Has the date", extracted_info={"date": reply_body})
        return Evaluation(satisfies=False, reason="No date given")

    def generate_followup(self, original_request, contact, followup_number, is_timeout, last_reply=None) -> str:
        self.followups.append(followup_number)
        return f"Follow-up {followup_number}: {original_request}"


Step = Any  # StepOutcome | None | Exception | Callable[[Task], Any]


class ScriptedExecutor:
    """Plays back one scripted result per call; ``None`` once exhausted."""

    def __init__(self, script: Optional[List[Step]] = None) -> None:
        self.script = list(script or [])
        self.calls: List[tuple[str, int]] = []
        self._lock = threading.Lock()

    def execute(self, task: Task):
        with self._lock:
            self.calls.append((task.task_id, task.current_step.index))
            step = self.script.pop(0) if self.script else None
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(task)
        return step


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values = dict(
        log_level="debug",
        log_dir=str(tmp_path / "logs"),
        data_dir=str(tmp_path / "data"),
        username="default",
        tick_seconds=30.0,
        resume_delay_seconds=60.0,
        confirmation_timeout_seconds=5.0,
        llm_api_key=None,
        llm_base_url="https://api.anthropic.com",
        llm_model="claude-test",
        llm_timeout_seconds=5.0,
        gmail_access_token=None,
        slack_bot_token=None,
        telegram_bot_token=None,
        discord_bot_token=None,
        x_bearer_token=None,
        imessage_enabled=False,
        host="127.0.0.1",
        port=18791,
        clear_logs_on_launch=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def _isolated_log_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("FOLLOWTHROUGH_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def store(data_dir):
    return TaskStore(data_dir)


@pytest.fixture
def slack():
    return FakeIntegration(IntegrationId.SLACK)


@pytest.fixture
def registry(slack):
    return MessagingRegistry([slack])


@pytest.fixture
def judge():
    return ScriptedJudge()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def make_engine(tmp_path, registry, judge, notifier):
    def _make(executor: Optional[ScriptedExecutor] = None, **settings_overrides: Any) -> Engine:
        return Engine(
            make_settings(tmp_path, **settings_overrides),
            executor=executor,
            registry=registry,
            judge=judge,
            notifier=notifier,
        )

    return _make


def emojis(notifier: Notifier) -> List[str]:
    return [u.emoji for u in notifier.recent()]


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    import time

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
