"""iMessage integration for macOS.

Reads the local Messages database (``~/Library/Messages/chat.db``) and
sends through ``osascript``.  The conversation id is the ``chat`` table
ROWID of the 1:1 chat with the contact.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import os
import re
import sqlite3
import subprocess
from typing import List, Optional

from followthrough.integrations.base import (
    CheckResult,
    InboundMessage,
    IntegrationId,
    MessagingIntegration,
    SendResult,
    normalize_conversation_id,
    scope_messages,
)

logger = logging.getLogger("followthrough.imessage")

_APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)
_DEFAULT_DB = os.path.join(os.path.expanduser("~"), "Library", "Messages", "chat.db")


def _to_apple_ns(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int((ts - _APPLE_EPOCH).total_seconds() * 1_000_000_000)


def _from_apple_ns(value: int) -> datetime:
    return _APPLE_EPOCH + timedelta(microseconds=int(value) // 1000)


def _contact_pattern(contact: str) -> str:
    digits = re.sub(r"\D", "", contact)
    if digits:
        return f"%{digits[-10:]}%"
    return f"%{contact}%"


def _escape_applescript(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


@dataclass
class IMessageIntegration(MessagingIntegration):
    db_path: str = _DEFAULT_DB
    send_timeout: float = 15.0

    keywords = ("imessage", "sms")

    @property
    def integration_id(self) -> IntegrationId:
        return IntegrationId.IMESSAGE

    def _connect(self) -> Optional[sqlite3.Connection]:
        if not os.path.exists(self.db_path):
            logger.warning("Cannot access Messages database at %s", self.db_path)
            return None
        return sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True, timeout=5.0)

    def chat_id_for(self, contact: str) -> Optional[str]:
        """Return the chat ROWID of the most recent 1:1 chat with *contact*."""
        if not contact:
            return None
        conn = self._connect()
        if conn is None:
            return None
        try:
            row = conn.execute(
                """
                SELECT c.ROWID FROM chat c
                JOIN chat_handle_join chj ON c.ROWID = chj.chat_id
                JOIN handle h ON chj.handle_id = h.ROWID
                WHERE h.id LIKE ?
                ORDER BY c.ROWID DESC LIMIT 1
                """,
                (_contact_pattern(contact),),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.error("iMessage chat lookup failed: %s", exc)
            return None
        finally:
            conn.close()
        return str(row[0]) if row else None

    def send_message(
        self,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        text = f"{subject}\n\n{body}" if subject else body
        script = (
            'tell application "Messages"\n'
            "  set targetService to 1st service whose service type = iMessage\n"
            f'  set targetBuddy to buddy "{_escape_applescript(recipient)}" of targetService\n'
            f'  send "{_escape_applescript(text)}" to targetBuddy\n'
            "end tell"
        )
        try:
            proc = subprocess.run(
                ["osascript", "-e", script],
                capture_output=True,
                text=True,
                timeout=self.send_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("iMessage send failed: %s", exc)
            return SendResult(success=False, error=str(exc))
        if proc.returncode != 0:
            logger.error("iMessage send failed: %s", proc.stderr.strip()[:300])
            return SendResult(success=False, error=proc.stderr.strip()[:300] or "osascript failed")
        conv = normalize_conversation_id(conversation_id) or self.chat_id_for(recipient)
        return SendResult(success=True, conversation_id=conv)

    def _query(self, contact: str, since: Optional[datetime], conversation_id: Optional[str], limit: int) -> List[InboundMessage]:
        conn = self._connect()
        if conn is None:
            return []
        sql = (
            "SELECT m.ROWID, h.id, m.text, m.date, m.is_from_me, cmj.chat_id "
            "FROM message m "
            "JOIN handle h ON m.handle_id = h.ROWID "
            "JOIN chat_message_join cmj ON m.ROWID = cmj.message_id "
            "WHERE h.id LIKE ?"
        )
        params: list = [_contact_pattern(contact)]
        conv = normalize_conversation_id(conversation_id)
        if conv:
            sql += " AND cmj.chat_id = ?"
            params.append(int(conv))
        if since is not None:
            sql += " AND m.date > ?"
            params.append(_to_apple_ns(since))
        sql += " ORDER BY m.date ASC LIMIT ?"
        params.append(limit)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [
            InboundMessage(
                message_id=str(rowid),
                sender=str(handle),
                text=text or "",
                timestamp=_from_apple_ns(date) if date else None,
                conversation_id=str(chat_id),
                from_me=bool(is_from_me),
            )
            for rowid, handle, text, date, is_from_me, chat_id in rows
        ]

    def check_for_new_messages(
        self,
        contact: str,
        since: datetime,
        auth_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> CheckResult:
        if not contact:
            return CheckResult.failed("missing contact")
        try:
            messages = self._query(contact, since, conversation_id, limit=50)
        except (sqlite3.Error, ValueError) as exc:
            logger.error("iMessage check error: %s", exc)
            return CheckResult.failed(str(exc))
        scoped = scope_messages(messages, since, conversation_id)
        logger.info("iMessage check for %s: %d new messages", contact, len(scoped))
        return CheckResult.from_messages(scoped)

    def get_messages(
        self,
        contact: str,
        limit: int = 20,
        since: Optional[datetime] = None,
        auth_token: Optional[str] = None,
    ) -> List[InboundMessage]:
        try:
            return self._query(contact, since, None, limit=limit)
        except sqlite3.Error as exc:
            logger.error("iMessage read error: %s", exc)
            return []
