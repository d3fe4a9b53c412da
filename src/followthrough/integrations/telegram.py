"""Telegram integration using the Bot API.

The Bot API has no history endpoint, so inbound messages are collected
from ``getUpdates`` into a bounded in-memory buffer and replies are
answered from that buffer.  The conversation id is the chat id.

Required env vars:
    TELEGRAM_BOT_TOKEN – Bot token from @BotFather
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Any, List, Optional

import httpx

from followthrough.integrations.base import (
    CheckResult,
    InboundMessage,
    IntegrationId,
    MessagingIntegration,
    SendResult,
    normalize_conversation_id,
    scope_messages,
)

logger = logging.getLogger("followthrough.telegram")

# Telegram API limit for a single message
_MAX_TEXT_LENGTH = 4096
_BUFFER_LIMIT = 500


@dataclass
class TelegramIntegration(MessagingIntegration):
    token: str = ""
    timeout: float = 15.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)
    _offset: int = field(default=0, init=False, repr=False)
    _buffer: List[InboundMessage] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    keywords = ("telegram",)

    @property
    def integration_id(self) -> IntegrationId:
        return IntegrationId.TELEGRAM

    def _base_url(self, token: Optional[str]) -> str:
        return f"https://api.telegram.org/bot{token or self.token}"

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def send_message(
        self,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        text = body or "(empty message)"
        if subject:
            text = f"{subject}\n\n{text}"
        chat_id = normalize_conversation_id(conversation_id) or recipient
        url = f"{self._base_url(auth_token)}/sendMessage"
        with self._client() as client:
            resp = client.post(url, json={"chat_id": chat_id, "text": text[:_MAX_TEXT_LENGTH]})
        if resp.status_code != 200:
            logger.error("Telegram sendMessage failed: %s %s", resp.status_code, resp.text[:500])
            return SendResult(success=False, error=f"http_{resp.status_code}")
        data = resp.json()
        if not data.get("ok"):
            return SendResult(success=False, error=str(data.get("description", "unknown")))
        result = data.get("result") or {}
        chat = result.get("chat") or {}
        return SendResult(
            success=True,
            conversation_id=str(chat.get("id", chat_id)),
            message_id=str(result.get("message_id", "")),
        )

    def _parse_update(self, update: dict[str, Any]) -> Optional[InboundMessage]:
        message = update.get("message")
        if not isinstance(message, dict):
            return None
        sender = message.get("from") or {}
        chat = message.get("chat") or {}
        ts = message.get("date")
        return InboundMessage(
            message_id=str(message.get("message_id", "")),
            sender=str(sender.get("username") or sender.get("id", "")),
            text=str(message.get("text") or message.get("caption") or ""),
            timestamp=datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts else None,
            conversation_id=str(chat.get("id", "")),
            from_me=bool(sender.get("is_bot")),
        )

    def poll_updates(self, auth_token: Optional[str] = None) -> int:
        """Drain pending updates into the buffer. Returns the number added."""
        url = f"{self._base_url(auth_token)}/getUpdates"
        with self._lock:
            params: dict[str, Any] = {"timeout": 0, "allowed_updates": ["message"]}
            if self._offset:
                params["offset"] = self._offset
            with self._client() as client:
                resp = client.get(url, params=params)
            if resp.status_code != 200:
                logger.error("getUpdates failed: %s %s", resp.status_code, resp.text[:300])
                return 0
            data = resp.json()
            if not data.get("ok"):
                logger.error("getUpdates not ok: %s", data)
                return 0
            added = 0
            for update in data.get("result", []):
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                parsed = self._parse_update(update)
                if parsed is not None:
                    self._buffer.append(parsed)
                    added += 1
            if len(self._buffer) > _BUFFER_LIMIT:
                self._buffer = self._buffer[-_BUFFER_LIMIT:]
            return added

    def _matches_contact(self, msg: InboundMessage, contact: str) -> bool:
        handle = contact.lstrip("@")
        return msg.sender == handle or msg.conversation_id == contact

    def check_for_new_messages(
        self,
        contact: str,
        since: datetime,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> CheckResult:
        if not contact or not (auth_token or self.token):
            return CheckResult.failed("missing parameters")
        self.poll_updates(auth_token)
        with self._lock:
            candidates = [m for m in self._buffer if self._matches_contact(m, contact)]
        scoped = scope_messages(candidates, since, conversation_id)
        logger.info("Telegram check for %s: %d new messages", contact, len(scoped))
        return CheckResult.from_messages(scoped)

    def get_messages(
        self,
        contact: str,
        limit: int = 20,
        since: Optional[datetime] = None,
        auth_token: Optional[str] = None,
    ) -> List[InboundMessage]:
        self.poll_updates(auth_token)
        with self._lock:
            matching = [m for m in self._buffer if self._matches_contact(m, contact)]
        if since is not None:
            matching = scope_messages(matching, since, None)
        return matching[-limit:]
