from __future__ import annotations

import json
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import requests

from live_status import LiveStatus
from notifier import (
    TelegramNotifier,
    escape_html,
    format_count,
    format_ended_message,
    format_live_message,
    format_test_message,
)

JAKARTA = ZoneInfo("Asia/Jakarta")
OBSERVED = datetime(2026, 10, 18, 7, 5, 9, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def _events(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().out.splitlines()]


def test_escape_html() -> None:
    assert escape_html('<b>"Tom" & Jerry</b>') == "&lt;b&gt;&quot;Tom&quot; &amp; Jerry&lt;/b&gt;"
    assert escape_html("it's fine") == "it's fine"


def test_format_count_uses_configured_separator() -> None:
    assert format_count(1234567) == "1.234.567"
    assert format_count(1234567, ",") == "1,234,567"
    assert format_count(999) == "999"


def test_live_message_with_all_details() -> None:
    status = LiveStatus(
        live=True,
        room_id="12345678",
        title="<Q&A> night",
        viewer_count=12500,
        observed_at=OBSERVED,
    )

    text = format_live_message(
        "alice",
        status,
        live_url="https://www.tiktok.com/@alice/live",
        profile_url="https://www.tiktok.com/@alice",
        tz=JAKARTA,
    )

    assert text.splitlines() == [
        "🔴 <b>alice</b> is LIVE!",
        "Title: &lt;Q&amp;A&gt; night",
        "Viewers: 12.500",
        "Watch: https://www.tiktok.com/@alice/live",
        "Profile: https://www.tiktok.com/@alice",
        "Time: 18/10/2026, 14.05.09",
    ]


def test_badge_only_message_has_no_title_or_viewers() -> None:
    text = format_live_message(
        "bob",
        LiveStatus(live=True, observed_at=OBSERVED),
        live_url="https://www.tiktok.com/@bob/live",
        profile_url="https://www.tiktok.com/@bob",
        tz=JAKARTA,
    )

    assert "Title:" not in text
    assert "Viewers:" not in text
    assert "Watch: https://www.tiktok.com/@bob/live" in text


def test_zero_viewers_are_shown() -> None:
    text = format_live_message(
        "bob",
        LiveStatus(live=True, viewer_count=0, observed_at=OBSERVED),
        live_url="l",
        profile_url="p",
        tz=JAKARTA,
    )

    assert "Viewers: 0" in text


def test_ended_and_test_messages() -> None:
    ended = format_ended_message("alice", LiveStatus(live=False, observed_at=OBSERVED), tz=JAKARTA)
    test = format_test_message(OBSERVED, JAKARTA)

    assert ended == "⚫ <b>alice</b> has ended the LIVE.\nTime: 18/10/2026, 14.05.09"
    assert test.startswith("✅ Bot OK")
    assert test.endswith("Time: 18/10/2026, 14.05.09")


def test_send_posts_html_message() -> None:
    session = FakeSession(FakeResponse(200, {"ok": True, "result": {"message_id": 1}}))
    notifier = TelegramNotifier("123:abc", "-100200", session=session, timeout=5)

    assert notifier.send("hello", disable_notification=True) is True

    call = session.calls[0]
    assert call["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert call["timeout"] == 5
    assert call["json"] == {
        "chat_id": "-100200",
        "text": "hello",
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
        "disable_notification": True,
    }


def test_api_rejection_is_logged_not_raised(capsys) -> None:
    session = FakeSession(FakeResponse(400, {"ok": False, "description": "Bad Request: chat not found"}))
    notifier = TelegramNotifier("123:abc", "-1", session=session)

    assert notifier.send("hello") is False

    (event,) = _events(capsys)
    assert event["event"] == "notify_failed"
    assert event["status_code"] == 400
    assert "chat not found" in event["message"]


def test_ok_false_with_http_200_is_a_failure(capsys) -> None:
    notifier = TelegramNotifier("t", "c", session=FakeSession(FakeResponse(200, {"ok": False})))

    assert notifier.send("hello") is False
    assert _events(capsys)[0]["event"] == "notify_failed"


def test_non_json_response_is_a_failure(capsys) -> None:
    notifier = TelegramNotifier("t", "c", session=FakeSession(FakeResponse(502, None, text="Bad Gateway")))

    assert notifier.send("hello") is False
    assert "Bad Gateway" in _events(capsys)[0]["message"]


def test_network_error_is_logged_with_token_redacted(capsys) -> None:
    error = requests.ConnectionError("cannot reach https://api.telegram.org/bot123:secret/sendMessage")
    notifier = TelegramNotifier("123:secret", "c", session=FakeSession(error=error))

    assert notifier.send("hello") is False

    (event,) = _events(capsys)
    assert event["event"] == "notify_failed"
    assert event["status_code"] is None
    assert "123:secret" not in event["message"]
