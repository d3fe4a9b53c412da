"""Discord integration using the REST API (v10) with a bot token.

Direct messages are opened with ``POST /users/@me/channels``; the
conversation id is the channel id.

Required env vars:
    DISCORD_BOT_TOKEN – Bot token
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
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

logger = logging.getLogger("followthrough.discord")

_API_BASE = "https://discord.com/api/v10"
_MAX_TEXT_LENGTH = 2000


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class DiscordIntegration(MessagingIntegration):
    bot_token: str = ""
    timeout: float = 15.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    keywords = ("discord",)

    @property
    def integration_id(self) -> IntegrationId:
        return IntegrationId.DISCORD

    def _client(self, token: Optional[str]) -> httpx.Client:
        return httpx.Client(
            base_url=_API_BASE,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bot {token or self.bot_token}"},
        )

    def _dm_channel(self, client: httpx.Client, user_id: str) -> Optional[str]:
        resp = client.post("/users/@me/channels", json={"recipient_id": user_id})
        if resp.status_code != 200:
            logger.error("Discord open DM failed: %s %s", resp.status_code, resp.text[:300])
            return None
        return str(resp.json().get("id", "")) or None

    def _channel_for(self, client: httpx.Client, contact: str, conversation_id: Optional[str]) -> Optional[str]:
        conv = normalize_conversation_id(conversation_id)
        if conv:
            return conv
        return self._dm_channel(client, contact)

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
            text = f"**{subject}**\n{text}"
        with self._client(auth_token) as client:
            channel_id = self._channel_for(client, recipient, conversation_id)
            if not channel_id:
                return SendResult(success=False, error=f"could not open DM with {recipient}")
            resp = client.post(f"/channels/{channel_id}/messages", json={"content": text[:_MAX_TEXT_LENGTH]})
        if resp.status_code not in (200, 201):
            logger.error("Discord send failed: %s %s", resp.status_code, resp.text[:500])
            return SendResult(success=False, error=f"http_{resp.status_code}")
        data = resp.json()
        return SendResult(success=True, conversation_id=channel_id, message_id=str(data.get("id", "")))

    def _fetch(
        self,
        contact: str,
        auth_token: Optional[str],
        conversation_id: Optional[str],
        limit: int,
    ) -> tuple[List[InboundMessage], str]:
        with self._client(auth_token) as client:
            channel_id = self._channel_for(client, contact, conversation_id)
            if not channel_id:
                return [], "failed to open DM"
            resp = client.get(f"/channels/{channel_id}/messages", params={"limit": min(limit, 100)})
        if resp.status_code != 200:
            return [], f"http_{resp.status_code}"
        messages: list[InboundMessage] = []
        for item in resp.json():
            author = item.get("author") or {}
            messages.append(
                InboundMessage(
                    message_id=str(item.get("id", "")),
                    sender=str(author.get("id", "")),
                    text=str(item.get("content", "")),
                    timestamp=_parse_ts(item.get("timestamp")),
                    conversation_id=channel_id,
                    from_me=bool(author.get("bot")),
                )
            )
        messages = [m for m in messages if m.sender == contact or m.from_me]
        messages.reverse()  # API returns newest first
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
        messages, error = self._fetch(contact, auth_token, conversation_id, limit=50)
        if error:
            return CheckResult.failed(error)
        scoped = scope_messages(messages, since, conversation_id)
        logger.info("Discord check for %s: %d new messages", contact, len(scoped))
        return CheckResult.from_messages(scoped)

    def get_messages(
        self,
        contact: str,
        limit: int = 20,
        since: Optional[datetime] = None,
        auth_token: Optional[str] = None,
    ) -> List[InboundMessage]:
        messages, _ = self._fetch(contact, auth_token, None, limit=limit)
        if since is not None:
            messages = [m for m in messages if m.timestamp is None or m.timestamp > since]
        return messages
