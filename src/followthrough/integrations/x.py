"""X (Twitter) integration using the v2 direct-message endpoints.

Contacts are X user ids; ``resolve_contact`` maps a handle to an id.
The conversation id is the DM conversation id.

Required env vars:
    X_BEARER_TOKEN – OAuth 2.0 user-context bearer token with dm.read/dm.write
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
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

logger = logging.getLogger("followthrough.x")

_API_BASE = "https://api.x.com/2"
_MAX_TEXT_LENGTH = 10000
_EVENT_FIELDS = "id,text,created_at,sender_id,dm_conversation_id"


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class XIntegration(MessagingIntegration):
    bearer_token: str = ""
    timeout: float = 15.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    keywords = ("tweet", "twitter")

    @property
    def integration_id(self) -> IntegrationId:
        return IntegrationId.X

    def _client(self, token: Optional[str]) -> httpx.Client:
        return httpx.Client(
            base_url=_API_BASE,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {token or self.bearer_token}"},
        )

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
        conv = normalize_conversation_id(conversation_id)
        path = f"/dm_conversations/{conv}/messages" if conv else f"/dm_conversations/with/{recipient}/messages"
        with self._client(auth_token) as client:
            resp = client.post(path, json={"text": text[:_MAX_TEXT_LENGTH]})
        if resp.status_code not in (200, 201):
            logger.error("X DM send failed: %s %s", resp.status_code, resp.text[:500])
            return SendResult(success=False, error=f"http_{resp.status_code}")
        data = resp.json().get("data", {})
        return SendResult(
            success=True,
            conversation_id=str(data.get("dm_conversation_id") or conv or "") or None,
            message_id=str(data.get("dm_event_id", "")),
        )

    def _fetch(
        self,
        contact: str,
        auth_token: Optional[str],
        conversation_id: Optional[str],
        limit: int,
    ) -> tuple[List[InboundMessage], str]:
        conv = normalize_conversation_id(conversation_id)
        path = f"/dm_conversations/{conv}/dm_events" if conv else f"/dm_conversations/with/{contact}/dm_events"
        params = {
            "dm_event.fields": _EVENT_FIELDS,
            "event_types": "MessageCreate",
            "max_results": max(1, min(limit, 100)),
        }
        with self._client(auth_token) as client:
            resp = client.get(path, params=params)
        if resp.status_code != 200:
            return [], f"http_{resp.status_code}"
        messages: list[InboundMessage] = []
        for item in resp.json().get("data", []):
            messages.append(
                InboundMessage(
                    message_id=str(item.get("id", "")),
                    sender=str(item.get("sender_id", "")),
                    text=str(item.get("text", "")),
                    timestamp=_parse_ts(item.get("created_at")),
                    conversation_id=str(item.get("dm_conversation_id", "")) or None,
                    from_me=str(item.get("sender_id", "")) != contact,
                )
            )
        return messages, ""

    def check_for_new_messages(
        self,
        contact: str,
        since: datetime,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> CheckResult:
        if not contact or not (auth_token or self.bearer_token):
            return CheckResult.failed("missing parameters")
        messages, error = self._fetch(contact, auth_token, conversation_id, limit=50)
        if error:
            return CheckResult.failed(error)
        scoped = scope_messages(messages, since, conversation_id)
        logger.info("X check for %s: %d new messages", contact, len(scoped))
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

    def resolve_contact(self, name: str, auth_token: Optional[str] = None) -> List[ContactCandidate]:
        handle = name.strip().lstrip("@")
        if not handle:
            return []
        with self._client(auth_token) as client:
            resp = client.get(f"/users/by/username/{handle}")
        if resp.status_code != 200:
            return []
        data = resp.json().get("data")
        if not data:
            return []
        return [ContactCandidate(name=data.get("name", handle), identifier=str(data.get("id", "")), detail=f"@{handle}")]
