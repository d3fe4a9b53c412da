"""Messaging integration contract and registry.

Every backend exposes the same four operations.  ``conversation_id`` is an
opaque per-backend scoping token (email thread id, chat/channel id, iMessage
chat row id): when present only messages in that conversation count as
replies, when absent any message from the contact does.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import re
import threading
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger("followthrough.integrations")


class IntegrationId(str, Enum):
    EMAIL = "email"
    IMESSAGE = "imessage"
    SLACK = "slack"
    TELEGRAM = "telegram"
    DISCORD = "discord"
    X = "x"

    @classmethod
    def parse(cls, value: "str | IntegrationId") -> "IntegrationId":
        if isinstance(value, IntegrationId):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown messaging integration: {value}") from exc


# Ordered: the first matching channel wins.
_CHANNEL_KEYWORDS: list[tuple[IntegrationId, re.Pattern[str]]] = [
    (IntegrationId.SLACK, re.compile(r"slack")),
    (IntegrationId.TELEGRAM, re.compile(r"telegram")),
    (IntegrationId.DISCORD, re.compile(r"discord")),
    (IntegrationId.X, re.compile(r"tweet|twitter|\bx\b")),
    (IntegrationId.EMAIL, re.compile(r"email|mail|gmail")),
    (IntegrationId.IMESSAGE, re.compile(r"text|imessage|sms|\bmessage\b")),
]


def infer_integration_id(text: str) -> Optional[IntegrationId]:
    """Best-effort guess of which backend a natural-language request refers to."""
    lowered = (text or "").lower()
    for integration_id, pattern in _CHANNEL_KEYWORDS:
        if pattern.search(lowered):
            return integration_id
    return None


def normalize_conversation_id(value: object) -> Optional[str]:
    """Return ``None`` for absent ids, including unresolved ``{{templates}}``."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or text in ("null", "undefined", "None"):
        return None
    if text.startswith("{{") and text.endswith("}}"):
        return None
    return text


def _utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


@dataclass
class InboundMessage:
    message_id: str
    sender: str
    text: str
    timestamp: Optional[datetime] = None
    conversation_id: Optional[str] = None
    subject: str = ""
    from_me: bool = False

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "conversation_id": self.conversation_id,
            "subject": self.subject,
        }


@dataclass
class SendResult:
    success: bool
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    error: str = ""


@dataclass
class CheckResult:
    has_new: bool
    count: int = 0
    messages: List[InboundMessage] = field(default_factory=list)
    reason: str = ""

    @classmethod
    def from_messages(cls, messages: List[InboundMessage]) -> "CheckResult":
        return cls(has_new=bool(messages), count=len(messages), messages=messages)

    @classmethod
    def failed(cls, reason: str) -> "CheckResult":
        return cls(has_new=False, reason=reason)

    @property
    def latest(self) -> Optional[InboundMessage]:
        if not self.messages:
            return None
        stamped = [m for m in self.messages if m.timestamp is not None]
        if not stamped:
            return self.messages[-1]
        return max(stamped, key=lambda m: _utc(m.timestamp))  # type: ignore[arg-type]


@dataclass
class ContactCandidate:
    name: str
    identifier: str
    detail: str = ""


def scope_messages(
    messages: Iterable[InboundMessage],
    since: Optional[datetime],
    conversation_id: Optional[str],
) -> List[InboundMessage]:
    """Keep only inbound messages newer than *since*, in *conversation_id* when given."""
    conv = normalize_conversation_id(conversation_id)
    cutoff = _utc(since) if since is not None else None
    scoped: list[InboundMessage] = []
    for msg in messages:
        if msg.from_me:
            continue
        if conv is not None and msg.conversation_id != conv:
            logger.debug("Skipping message %s from different thread (%s vs %s)", msg.message_id, msg.conversation_id, conv)
            continue
        if cutoff is not None and msg.timestamp is not None and _utc(msg.timestamp) <= cutoff:
            continue
        scoped.append(msg)
    return scoped


class MessagingIntegration(ABC):
    """A messaging backend the engine can send through and poll for replies."""

    keywords: tuple[str, ...] = ()
    enabled: bool = True

    @property
    @abstractmethod
    def integration_id(self) -> IntegrationId: ...

    @property
    def name(self) -> str:
        return self.integration_id.value

    @abstractmethod
    def send_message(
        self,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        """Send *body* to *recipient*, continuing *conversation_id* when given."""
        ...

    @abstractmethod
    def check_for_new_messages(
        self,
        contact: str,
        since: datetime,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> CheckResult:
        ...

    @abstractmethod
    def get_messages(
        self,
        contact: str,
        limit: int = 20,
        since: Optional[datetime] = None,
        auth_token: Optional[str] = None,
    ) -> List[InboundMessage]:
        ...

    def resolve_contact(self, name: str, auth_token: Optional[str] = None) -> List[ContactCandidate]:
        return []


class MessagingRegistry:
    """Static lookup table of messaging integrations, keyed by integration id."""

    def __init__(self, integrations: Iterable[MessagingIntegration] = ()) -> None:
        self._integrations: Dict[IntegrationId, MessagingIntegration] = {}
        self._contact_cache: Dict[tuple[IntegrationId, str], List[ContactCandidate]] = {}
        self._cache_lock = threading.Lock()
        for integration in integrations:
            self.register(integration)

    def register(self, integration: MessagingIntegration) -> None:
        self._integrations[integration.integration_id] = integration
        logger.info("Registered messaging integration: %s", integration.name)

    def get(self, integration_id: "str | IntegrationId") -> Optional[MessagingIntegration]:
        try:
            key = IntegrationId.parse(integration_id)
        except ValueError:
            return None
        return self._integrations.get(key)

    def enabled(self) -> List[MessagingIntegration]:
        return [i for i in self._integrations.values() if i.enabled]

    def ids(self) -> List[IntegrationId]:
        return list(self._integrations)

    def infer_from_text(self, text: str) -> Optional[MessagingIntegration]:
        """Match free text to an enabled integration by keyword."""
        lowered = (text or "").lower()
        for integration in self.enabled():
            for keyword in integration.keywords:
                if keyword in lowered:
                    return integration
        inferred = infer_integration_id(text)
        if inferred is None:
            return None
        integration = self._integrations.get(inferred)
        return integration if integration and integration.enabled else None

    def resolve_contact(
        self,
        integration_id: "str | IntegrationId",
        name: str,
        auth_token: Optional[str] = None,
    ) -> List[ContactCandidate]:
        integration = self.get(integration_id)
        if integration is None:
            return []
        key = (integration.integration_id, name.strip().lower())
        with self._cache_lock:
            cached = self._contact_cache.get(key)
        if cached is not None:
            return list(cached)
        candidates = integration.resolve_contact(name, auth_token=auth_token)
        with self._cache_lock:
            self._contact_cache[key] = list(candidates)
        return candidates

    def clear_caches(self) -> None:
        with self._cache_lock:
            self._contact_cache.clear()
