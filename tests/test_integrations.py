"""Tests for the messaging backends against mocked HTTP and a scratch chat.db."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import sqlite3
import subprocess

import httpx
import pytest

from followthrough.integrations.base import (
    InboundMessage,
    IntegrationId,
    MessagingRegistry,
    infer_integration_id,
    scope_messages,
)
from followthrough.integrations.discord import DiscordIntegration
from followthrough.integrations.gmail import GmailIntegration
from followthrough.integrations.imessage import IMessageIntegration, _to_apple_ns
from followthrough.integrations.slack import SlackIntegration
from followthrough.integrations.telegram import TelegramIntegration
from followthrough.integrations.x import XIntegration

from conftest import T0, FakeIntegration


def _transport(routes, seen=None):
    """Dispatch on ``(method, path)``; each route returns ``(status, json)``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = routes[key](request) if callable(routes[key]) else routes[key]
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


# ── Contract helpers ─────────────────────────────────────────

class TestBase:
    def test_scope_drops_own_old_and_other_thread(self):
        messages = [
            InboundMessage("1", "bob", "old", timestamp=T0 - timedelta(minutes=1), conversation_id="t1"),
            InboundMessage("2", "bob", "mine", timestamp=T0 + timedelta(minutes=1), conversation_id="t1", from_me=True),
            InboundMessage("3", "bob", "elsewhere", timestamp=T0 + timedelta(minutes=1), conversation_id="t2"),
            InboundMessage("4", "bob", "yes", timestamp=T0 + timedelta(minutes=2), conversation_id="t1"),
        ]
        assert [m.text for m in scope_messages(messages, T0, "t1")] == ["yes"]
        assert [m.text for m in scope_messages(messages, T0, None)] == ["elsewhere", "yes"]

    def test_infer_integration(self):
        assert infer_integration_id("ping her on Slack") == IntegrationId.SLACK
        assert infer_integration_id("send an email to Dana") == IntegrationId.EMAIL
        assert infer_integration_id("text my brother") == IntegrationId.IMESSAGE
        assert infer_integration_id("repaint the fence") is None

    def test_registry_lookup(self):
        slack = FakeIntegration(IntegrationId.SLACK)
        registry = MessagingRegistry([slack])
        assert registry.get("SLACK") is slack
        assert registry.get("carrier-pigeon") is None
        assert registry.get("email") is None
        assert registry.infer_from_text("drop it in slack please") is slack

    def test_registry_contact_cache(self):
        class Resolving(FakeIntegration):
            lookups = 0

            def resolve_contact(self, name, auth_token=None):
                Resolving.lookups += 1
                return []

        registry = MessagingRegistry([Resolving(IntegrationId.SLACK)])
        registry.resolve_contact("slack", "Bob")
        registry.resolve_contact("slack", " bob ")
        assert Resolving.lookups == 1
        registry.clear_caches()
        registry.resolve_contact("slack", "Bob")
        assert Resolving.lookups == 2


# ── Slack ────────────────────────────────────────────────────

class TestSlack:
    def test_send_opens_dm_for_user_ids(self):
        seen = []
        routes = {
            ("POST", "/api/conversations.open"): (200, {"ok": True, "channel": {"id": "D1"}}),
            ("POST", "/api/chat.postMessage"): (200, {"ok": True, "ts": "1700000000.000100"}),
        }
        slack = SlackIntegration(bot_token="xoxb-1", transport=_transport(routes, seen))

        result = slack.send_message("U123ABC", "When can you meet?")

        assert result.success
        assert result.conversation_id == "D1"
        assert result.message_id == "1700000000.000100"
        posted = json.loads(seen[-1].content)
        assert posted == {"channel": "D1", "text": "When can you meet?"}
        assert seen[-1].headers["Authorization"] == "Bearer xoxb-1"

    def test_send_into_thread(self):
        seen = []
        routes = {("POST", "/api/chat.postMessage"): (200, {"ok": True, "ts": "2"})}
        slack = SlackIntegration(bot_token="xoxb-1", transport=_transport(routes, seen))

        result = slack.send_message("U1", "bump", conversation_id="C9:1700000000.000100", auth_token="xoxb-user")

        assert result.conversation_id == "C9:1700000000.000100"
        assert json.loads(seen[0].content)["thread_ts"] == "1700000000.000100"
        assert seen[0].headers["Authorization"] == "Bearer xoxb-user"

    def test_api_error_is_a_failed_result(self):
        routes = {("POST", "/api/chat.postMessage"): (200, {"ok": False, "error": "channel_not_found"})}
        slack = SlackIntegration(bot_token="xoxb-1", transport=_transport(routes))
        result = slack.send_message("C404", "hi")
        assert not result.success
        assert result.error == "channel_not_found"

    def test_check_thread_replies(self):
        since = datetime.fromtimestamp(1700000000, tz=timezone.utc)
        routes = {
            ("GET", "/api/conversations.replies"): (
                200,
                {
                    "ok": True,
                    "messages": [
                        {"ts": "1699999990.000000", "user": "U1", "text": "original"},
                        {"ts": "1700000100.000000", "user": "U1", "text": "Tuesday"},
                        {"ts": "1700000200.000000", "bot_id": "B1", "text": "bot echo"},
                        {"ts": "1700000300.000000", "user": "U1", "subtype": "message_changed", "text": "edit"},
                    ],
                },
            )
        }
        slack = SlackIntegration(bot_token="xoxb-1", transport=_transport(routes))

        result = slack.check_for_new_messages("U1", since, conversation_id="C9:1699999990.000000")

        assert result.has_new
        assert [m.text for m in result.messages] == ["Tuesday"]
        assert result.latest.conversation_id == "C9:1699999990.000000"

    def test_check_without_token(self):
        result = SlackIntegration().check_for_new_messages("U1", T0)
        assert not result.has_new
        assert result.reason == "missing parameters"

    def test_resolve_contact(self):
        routes = {
            ("GET", "/api/users.list"): (
                200,
                {
                    "ok": True,
                    "members": [
                        {"id": "U1", "name": "bob", "real_name": "Bob Stone", "profile": {"email": "bob@example.com"}},
                        {"id": "U2", "name": "bobbot", "is_bot": True, "profile": {}},
                        {"id": "U3", "name": "ann", "real_name": "Ann Lee", "profile": {}},
                    ],
                },
            )
        }
        slack = SlackIntegration(bot_token="xoxb-1", transport=_transport(routes))
        candidates = slack.resolve_contact("bob")
        assert [(c.name, c.identifier, c.detail) for c in candidates] == [("Bob Stone", "U1", "bob@example.com")]


# ── Gmail ────────────────────────────────────────────────────

class TestGmail:
    BASE = "/gmail/v1/users/me"

    def test_send_into_thread(self):
        seen = []
        routes = {("POST", f"{self.BASE}/messages/send"): (200, {"id": "m1", "threadId": "thread-9"})}
        gmail = GmailIntegration(access_token="ya29", transport=_transport(routes, seen))

        result = gmail.send_message("bob@example.com", "Any update?", subject="Re: Budget", conversation_id="thread-9")

        assert result.success
        assert result.conversation_id == "thread-9"
        body = json.loads(seen[0].content)
        assert body["threadId"] == "thread-9"
        assert body["raw"]

    def test_send_failure(self):
        routes = {("POST", f"{self.BASE}/messages/send"): (401, {"error": "invalid_grant"})}
        gmail = GmailIntegration(access_token="expired", transport=_transport(routes))
        result = gmail.send_message("bob@example.com", "hi")
        assert not result.success
        assert result.error == "http_401"

    def test_check_scopes_to_thread(self):
        since = T0
        later_ms = str(int((T0 + timedelta(hours=1)).timestamp() * 1000))

        def message(thread_id):
            return lambda request: (
                200,
                {
                    "id": request.url.path.rsplit("/", 1)[-1],
                    "threadId": thread_id,
                    "internalDate": later_ms,
                    "snippet": f"reply in {thread_id}",
                    "labelIds": ["INBOX"],
                    "payload": {"headers": [{"name": "From", "value": "Bob <bob@example.com>"}, {"name": "Subject", "value": "Re: Budget"}]},
                },
            )

        seen = []
        routes = {
            ("GET", f"{self.BASE}/messages"): (200, {"messages": [{"id": "a"}, {"id": "b"}]}),
            ("GET", f"{self.BASE}/messages/a"): message("thread-9"),
            ("GET", f"{self.BASE}/messages/b"): message("thread-other"),
        }
        gmail = GmailIntegration(access_token="ya29", transport=_transport(routes, seen))

        result = gmail.check_for_new_messages("bob@example.com", since, conversation_id="thread-9")

        assert result.count == 1
        msg = result.messages[0]
        assert msg.sender == "bob@example.com"
        assert msg.subject == "Re: Budget"
        assert msg.conversation_id == "thread-9"
        assert f"after:{int(since.timestamp())}" in seen[0].url.params["q"]


# ── Telegram ─────────────────────────────────────────────────

class TestTelegram:
    def test_send(self):
        routes = {("POST", "/bot123:abc/sendMessage"): (200, {"ok": True, "result": {"message_id": 5, "chat": {"id": 42}}})}
        telegram = TelegramIntegration(token="123:abc", transport=_transport(routes))
        result = telegram.send_message("42", "hello")
        assert result.success
        assert result.conversation_id == "42"
        assert result.message_id == "5"

    def test_check_buffers_updates(self):
        seen = []
        ts = int((T0 + timedelta(minutes=5)).timestamp())
        routes = {
            ("GET", "/bot123:abc/getUpdates"): (
                200,
                {
                    "ok": True,
                    "result": [
                        {
                            "update_id": 10,
                            "message": {
                                "message_id": 7,
                                "from": {"id": 99, "username": "bob"},
                                "chat": {"id": 42},
                                "date": ts,
                                "text": "Thursday",
                            },
                        }
                    ],
                },
            )
        }
        telegram = TelegramIntegration(token="123:abc", transport=_transport(routes, seen))

        first = telegram.check_for_new_messages("@bob", T0, conversation_id="42")
        assert first.has_new
        assert first.latest.text == "Thursday"

        second = telegram.check_for_new_messages("@bob", T0 + timedelta(minutes=5))
        assert not second.has_new
        assert seen[-1].url.params["offset"] == "11"


# ── Discord ──────────────────────────────────────────────────

class TestDiscord:
    def test_send_opens_dm(self):
        seen = []
        routes = {
            ("POST", "/api/v10/users/@me/channels"): (200, {"id": "dm1"}),
            ("POST", "/api/v10/channels/dm1/messages"): (200, {"id": "900"}),
        }
        discord = DiscordIntegration(bot_token="tok", transport=_transport(routes, seen))

        result = discord.send_message("u1", "ping", subject="Standup")

        assert result.success
        assert result.conversation_id == "dm1"
        assert json.loads(seen[-1].content) == {"content": "**Standup**\nping"}
        assert seen[-1].headers["Authorization"] == "Bot tok"

    def test_check_filters_and_orders(self):
        routes = {
            ("GET", "/api/v10/channels/dm1/messages"): (
                200,
                [
                    {"id": "3", "author": {"id": "u1"}, "content": "later", "timestamp": "2026-03-02T10:05:00+00:00"},
                    {"id": "2", "author": {"id": "bot", "bot": True}, "content": "us", "timestamp": "2026-03-02T10:00:00+00:00"},
                    {"id": "1", "author": {"id": "u1"}, "content": "earlier", "timestamp": "2026-03-02T08:00:00+00:00"},
                ],
            )
        }
        discord = DiscordIntegration(bot_token="tok", transport=_transport(routes))

        result = discord.check_for_new_messages("u1", T0, conversation_id="dm1")

        assert [m.text for m in result.messages] == ["later"]


# ── X ────────────────────────────────────────────────────────

class TestX:
    def test_send_starts_conversation(self):
        seen = []
        routes = {
            ("POST", "/2/dm_conversations/with/42/messages"): (
                201,
                {"data": {"dm_conversation_id": "1-42", "dm_event_id": "e1"}},
            )
        }
        x = XIntegration(bearer_token="bt", transport=_transport(routes, seen))

        result = x.send_message("42", "hey")

        assert result.success
        assert result.conversation_id == "1-42"
        assert result.message_id == "e1"

    def test_check_marks_own_messages(self):
        routes = {
            ("GET", "/2/dm_conversations/1-42/dm_events"): (
                200,
                {
                    "data": [
                        {"id": "e3", "text": "sure", "sender_id": "42", "created_at": "2026-03-02T09:30:00.000Z", "dm_conversation_id": "1-42"},
                        {"id": "e2", "text": "hey", "sender_id": "1", "created_at": "2026-03-02T09:10:00.000Z", "dm_conversation_id": "1-42"},
                    ]
                },
            )
        }
        x = XIntegration(bearer_token="bt", transport=_transport(routes))

        result = x.check_for_new_messages("42", T0, conversation_id="1-42")

        assert [m.text for m in result.messages] == ["sure"]

    def test_resolve_handle(self):
        routes = {("GET", "/2/users/by/username/bob"): (200, {"data": {"id": "42", "name": "Bob"}})}
        x = XIntegration(bearer_token="bt", transport=_transport(routes))
        candidates = x.resolve_contact("@bob")
        assert [(c.name, c.identifier, c.detail) for c in candidates] == [("Bob", "42", "@bob")]


# ── iMessage ─────────────────────────────────────────────────

@pytest.fixture
def chat_db(tmp_path):
    path = tmp_path / "chat.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE handle (ROWID INTEGER PRIMARY KEY, id TEXT);
        CREATE TABLE chat (ROWID INTEGER PRIMARY KEY);
        CREATE TABLE message (ROWID INTEGER PRIMARY KEY, text TEXT, date INTEGER, is_from_me INTEGER, handle_id INTEGER);
        CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER);
        CREATE TABLE chat_handle_join (chat_id INTEGER, handle_id INTEGER);
        """
    )
    conn.execute("INSERT INTO handle VALUES (1, '+15551234567')")
    conn.executemany("INSERT INTO chat VALUES (?)", [(7,), (8,)])
    conn.executemany("INSERT INTO chat_handle_join VALUES (?, 1)", [(7,), (8,)])
    rows = [
        (1, "old news", T0 - timedelta(hours=1), 0, 7),
        (2, "Wednesday is fine", T0 + timedelta(hours=1), 0, 7),
        (3, "great, booked", T0 + timedelta(hours=2), 1, 7),
        (4, "group chatter", T0 + timedelta(hours=1), 0, 8),
    ]
    for rowid, text, ts, from_me, chat_id in rows:
        conn.execute("INSERT INTO message VALUES (?, ?, ?, ?, 1)", (rowid, text, _to_apple_ns(ts), from_me))
        conn.execute("INSERT INTO chat_message_join VALUES (?, ?)", (chat_id, rowid))
    conn.commit()
    conn.close()
    return str(path)


class TestIMessage:
    def test_check_scopes_to_chat(self, chat_db):
        imessage = IMessageIntegration(db_path=chat_db)

        result = imessage.check_for_new_messages("(555) 123-4567", T0, conversation_id="7")

        assert [m.text for m in result.messages] == ["Wednesday is fine"]
        assert result.latest.timestamp == T0 + timedelta(hours=1)
        assert result.latest.conversation_id == "7"

    def test_check_without_conversation_sees_all_chats(self, chat_db):
        imessage = IMessageIntegration(db_path=chat_db)
        result = imessage.check_for_new_messages("5551234567", T0)
        assert sorted(m.text for m in result.messages) == ["Wednesday is fine", "group chatter"]

    def test_get_messages_includes_history(self, chat_db):
        imessage = IMessageIntegration(db_path=chat_db)
        texts = [m.text for m in imessage.get_messages("+15551234567")]
        assert "old news" in texts
        assert "great, booked" in texts

    def test_missing_database(self, tmp_path):
        imessage = IMessageIntegration(db_path=str(tmp_path / "absent.db"))
        assert not imessage.check_for_new_messages("5551234567", T0).has_new
        assert imessage.chat_id_for("5551234567") is None

    def test_send_uses_osascript_and_reports_chat(self, chat_db, monkeypatch):
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args)
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

        monkeypatch.setattr("followthrough.integrations.imessage.subprocess.run", fake_run)
        imessage = IMessageIntegration(db_path=chat_db)

        result = imessage.send_message("+15551234567", 'He said "yes"')

        assert result.success
        assert result.conversation_id == "8"
        assert calls[0][0] == "osascript"
        assert '\\"yes\\"' in calls[0][2]

    def test_send_failure(self, chat_db, monkeypatch):
        monkeypatch.setattr(
            "followthrough.integrations.imessage.subprocess.run",
            lambda args, **kwargs: subprocess.CompletedProcess(args, 1, stdout="", stderr="Messages got an error"),
        )
        result = IMessageIntegration(db_path=chat_db).send_message("+15551234567", "hi")
        assert not result.success
        assert "Messages got an error" in result.error
