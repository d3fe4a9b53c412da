"""Email integration backed by the Gmail REST API.

The conversation id is the Gmail thread id; follow-ups are sent into the
same thread so replies keep landing there.

Required env vars:
    GMAIL_ACCESS_TOKEN – OAuth access token with gmail.send/gmail.readonly
"""
from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import parseaddr
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

logger = logging.getLogger("followthrough.gmail")

_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"


def _header(payload: dict[str, Any], name: str) -> str:
    for header in payload.get("headers", []):
        if str(header.get("name", "")).lower() == name.lower():
            return str(header.get("value", ""))
    return ""


@dataclass
class GmailIntegration(MessagingIntegration):
    access_token: str = ""
    timeout: float = 15.0
    max_fetch: int = 5
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    keywords = ("email", "gmail", "mail")

    @property
    def integration_id(self) -> IntegrationId:
        return IntegrationId.EMAIL

    def _client(self, token: Optional[str]) -> httpx.Client:
        return httpx.Client(
            base_url=_API_BASE,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {token or self.access_token}"},
        )

    def send_message(
        self,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        msg = EmailMessage()
        msg["To"] = recipient
        msg["Subject"] = subject or "(no subject)"
        msg.set_content(body or "")
        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
        payload: dict[str, Any] = {"raw": raw}
        thread_id = normalize_conversation_id(conversation_id)
        if thread_id:
            payload["threadId"] = thread_id
        with self._client(auth_token) as client:
            resp = client.post("/messages/send", json=payload)
        if resp.status_code != 200:
            logger.error("Gmail send failed: %s %s", resp.status_code, resp.text[:500])
            return SendResult(success=False, error=f"http_{resp.status_code}")
        data = resp.json()
        return SendResult(success=True, conversation_id=data.get("threadId"), message_id=data.get("id"))

    def _load_message(self, client: httpx.Client, message_id: str) -> Optional[InboundMessage]:
        resp = client.get(
            f"/messages/{message_id}",
            params={"format": "metadata", "metadataHeaders": ["Subject", "From"]},
        )
        if resp.status_code != 200:
            logger.error("Gmail fetch %s failed: %s", message_id, resp.status_code)
            return None
        data = resp.json()
        payload = data.get("payload", {})
        internal = data.get("internalDate")
        labels = data.get("labelIds", [])
        return InboundMessage(
            message_id=str(data.get("id", message_id)),
            sender=parseaddr(_header(payload, "From"))[1],
            text=str(data.get("snippet", "")),
            timestamp=datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc) if internal else None,
            conversation_id=data.get("threadId"),
            subject=_header(payload, "Subject") or "(no subject)",
            from_me="SENT" in labels,
        )

    def _search(
        self,
        contact: str,
        since: Optional[datetime],
        auth_token: Optional[str],
        limit: int,
    ) -> tuple[List[InboundMessage], str]:
        query = f"from:{contact}"
        if since is not None:
            query += f" after:{int(since.timestamp())}"
        else:
            query += " newer_than:2d"
        with self._client(auth_token) as client:
            resp = client.get("/messages", params={"q": query, "maxResults": limit})
            if resp.status_code != 200:
                return [], "api_error"
            ids = [m.get("id") for m in resp.json().get("messages", []) if m.get("id")]
            messages = [m for m in (self._load_message(client, i) for i in ids[: self.max_fetch]) if m]
        return messages, ""

    def check_for_new_messages(
        self,
        contact: str,
        since: datetime,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> CheckResult:
        if not contact or not (auth_token or self.access_token):
            return CheckResult.failed("missing parameters")
        messages, error = self._search(contact, since, auth_token, limit=10)
        if error:
            return CheckResult.failed(error)
        scoped = scope_messages(messages, since, conversation_id)
        logger.info("Gmail check for %s: %d new messages", contact, len(scoped))
        return CheckResult.from_messages(scoped)

    def get_messages(
        self,
        contact: str,
        limit: int = 20,
        since: Optional[datetime] = None,
        auth_token: Optional[str] = None,
    ) -> List[InboundMessage]:
        messages, _ = self._search(contact, since, auth_token, limit=limit)
        return messages
