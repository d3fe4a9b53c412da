"""Slack integration using the Slack Web API.

Sends via ``chat.postMessage`` and polls ``conversations.history`` (or
``conversations.replies`` for threaded conversations) for replies.

The conversation id is the channel id, optionally suffixed with
``:<thread_ts>`` when the exchange lives in a thread.

Required env vars:
    SLACK_BOT_TOKEN – Bot User OAuth Token (xoxb-...)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import re
from typing import Any, List, Optional

import httpx

from followthrough.integrations.base import (
    CheckResult,
    ContactCandidate,
    InboundMessage,
    IntegrationId,
    MessagingIntegration,
    SendResult,
    normalize_conversation_id,
    scope_messages,
)

logger = logging.getLogger("followthrough.slack")

_API_BASE = "https://slack.com/api"
_MAX_TEXT_LENGTH = 4000
_USER_ID_RE = re.compile(r"^U[A-Z0-9]+$", re.IGNORECASE)


def _split_conversation(conversation_id: str) -> tuple[str, Optional[str]]:
    channel, _, thread_ts = conversation_id.partition(":")
    return channel, thread_ts or None


def _ts_to_datetime(ts: str) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


@dataclass
class SlackIntegration(MessagingIntegration):
    bot_token: str = ""
    timeout: float = 15.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    keywords = ("slack",)

    @property
    def integration_id(self) -> IntegrationId:
        return IntegrationId.SLACK

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _headers(self, token: Optional[str]) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token or self.bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    def _call(self, client: httpx.Client, method: str, token: Optional[str], **kwargs: Any) -> dict[str, Any]:
        url = f"{_API_BASE}/{method}"
        if "json" in kwargs:
            resp = client.post(url, headers=self._headers(token), **kwargs)
        else:
            resp = client.get(url, headers=self._headers(token), **kwargs)
        if resp.status_code != 200:
            logger.error("Slack %s failed: %s %s", method, resp.status_code, resp.text[:500])
            return {"ok": False, "error": f"http_{resp.status_code}"}
        data = resp.json()
        if not data.get("ok"):
            logger.error("Slack %s error: %s", method, data.get("error", "unknown"))
        return data

    # ── DM helpers ───────────────────────────────────────

    def open_dm(self, client: httpx.Client, user_id: str, token: Optional[str]) -> Optional[str]:
        """Open a DM channel with a user. Returns the channel ID."""
        data = self._call(client, "conversations.open", token, json={"users": user_id})
        if not data.get("ok"):
            return None
        return data.get("channel", {}).get("id")

    def _channel_for(self, client: httpx.Client, contact: str, token: Optional[str]) -> Optional[str]:
        if _USER_ID_RE.match(contact):
            return self.open_dm(client, contact, token)
        return contact

    # ── Outbound ──────────────────────────────────────────

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
            text = f"*{subject}*\n{text}"
        conv = normalize_conversation_id(conversation_id)
        with self._client() as client:
            if conv:
                channel, thread_ts = _split_conversation(conv)
            else:
                channel, thread_ts = self._channel_for(client, recipient, auth_token), None
            if not channel:
                return SendResult(success=False, error=f"could not open conversation with {recipient}")
            payload: dict[str, Any] = {"channel": channel, "text": text[:_MAX_TEXT_LENGTH]}
            if thread_ts:
                payload["thread_ts"] = thread_ts
            data = self._call(client, "chat.postMessage", auth_token, json=payload)
        if not data.get("ok"):
            return SendResult(success=False, error=str(data.get("error", "unknown")))
        return SendResult(success=True, conversation_id=conv or channel, message_id=data.get("ts"))

    # ── Inbound ───────────────────────────────────────────

    def _parse_messages(self, raw: list[dict[str, Any]], channel: str, conversation_id: str) -> List[InboundMessage]:
        parsed: list[InboundMessage] = []
        for item in raw:
            # Skip edits, joins and other non-message events
            if item.get("subtype"):
                continue
            parsed.append(
                InboundMessage(
                    message_id=str(item.get("ts", "")),
                    sender=str(item.get("user", "")),
                    text=str(item.get("text", "")),
                    timestamp=_ts_to_datetime(item.get("ts", "")),
                    conversation_id=conversation_id,
                    from_me=bool(item.get("bot_id")),
                )
            )
        return parsed

    def _fetch(
        self,
        client: httpx.Client,
        contact: str,
        since: Optional[datetime],
        token: Optional[str],
        conversation_id: Optional[str],
        limit: int,
    ) -> tuple[List[InboundMessage], str]:
        conv = normalize_conversation_id(conversation_id)
        if conv:
            channel, thread_ts = _split_conversation(conv)
        else:
            channel, thread_ts = self._channel_for(client, contact, token), None
        if not channel:
            return [], "failed to open DM"
        params: dict[str, Any] = {"channel": channel, "limit": limit}
        if since is not None:
            params["oldest"] = f"{since.timestamp():.6f}"
        if thread_ts:
            params["ts"] = thread_ts
            data = self._call(client, "conversations.replies", token, params=params)
        else:
            data = self._call(client, "conversations.history", token, params=params)
        if not data.get("ok"):
            return [], str(data.get("error", "unknown"))
        messages = self._parse_messages(data.get("messages", []), channel, conv or channel)
        if _USER_ID_RE.match(contact):
            messages = [m for m in messages if m.sender == contact]
        return messages, ""

    def check_for_new_messages(
        self,
        contact: str,
        since: datetime,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> CheckResult:
        if not contact or not (auth_token or self.bot_token):
            return CheckResult.failed("missing parameters")
        with self._client() as client:
            messages, error = self._fetch(client, contact, since, auth_token, conversation_id, limit=20)
        if error:
            return CheckResult.failed(error)
        scoped = scope_messages(messages, since, normalize_conversation_id(conversation_id))
        logger.info("Slack check for %s: %d new messages", contact, len(scoped))
        return CheckResult.from_messages(scoped)

    def get_messages(
        self,
        contact: str,
        limit: int = 20,
        since: Optional[datetime] = None,
        auth_token: Optional[str] = None,
    ) -> List[InboundMessage]:
        with self._client() as client:
            messages, _ = self._fetch(client, contact, since, auth_token, None, limit=limit)
        return messages

    def resolve_contact(self, name: str, auth_token: Optional[str] = None) -> List[ContactCandidate]:
        needle = name.strip().lower()
        if not needle:
            return []
        with self._client() as client:
            data = self._call(client, "users.list", auth_token, params={"limit": 200})
        candidates: list[ContactCandidate] = []
        for member in data.get("members", []) if data.get("ok") else []:
            if member.get("deleted") or member.get("is_bot"):
                continue
            profile = member.get("profile", {})
            names = [member.get("name", ""), member.get("real_name", ""), profile.get("display_name", "")]
            if any(needle in str(n).lower() for n in names if n):
                candidates.append(
                    ContactCandidate(
                        name=member.get("real_name") or member.get("name", ""),
                        identifier=str(member.get("id", "")),
                        detail=profile.get("email", ""),
                    )
                )
        return candidates
