from datetime import datetime, tzinfo
from typing import Any, Dict, Optional

import requests

from errors import TransportError
from events import log_json
from live_status import LiveStatus

_HTML_ESCAPES = {"&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&quot;"}


def escape_html(text: str) -> str:
    return "".join(_HTML_ESCAPES.get(c, c) for c in text)


def format_count(value: int, separator: str = ".") -> str:
    return f"{value:,}".replace(",", separator)


def format_time(dt: datetime, tz: tzinfo) -> str:
    return dt.astimezone(tz).strftime("%d/%m/%Y, %H.%M.%S")


def format_live_message(
    account: str,
    status: LiveStatus,
    *,
    live_url: str,
    profile_url: str,
    tz: tzinfo,
    thousands_separator: str = ".",
) -> str:
    lines = [f"🔴 <b>{escape_html(account)}</b> is LIVE!"]
    if status.title:
        lines.append(f"Title: {escape_html(status.title)}")
    if status.viewer_count is not None:
        lines.append(f"Viewers: {format_count(status.viewer_count, thousands_separator)}")
    lines.extend(
        [
            f"Watch: {live_url}",
            f"Profile: {profile_url}",
            f"Time: {format_time(status.observed_at, tz)}",
        ]
    )
    return "\n".join(lines)


def format_ended_message(account: str, status: LiveStatus, *, tz: tzinfo) -> str:
    return "\n".join(
        [
            f"⚫ <b>{escape_html(account)}</b> has ended the LIVE.",
            f"Time: {format_time(status.observed_at, tz)}",
        ]
    )


def format_test_message(now: datetime, tz: tzinfo) -> str:
    return f"✅ Bot OK: test notification (--test)\nTime: {format_time(now, tz)}"


class TelegramNotifier:
    """Fire-and-forget delivery through the Telegram Bot API.

    `send` makes exactly one attempt. Any failure is reported as a
    `notify_failed` event and a False return value, never as an exception.
    """

    api_base = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.bot_token}/sendMessage"

    def send(self, text: str, **options: Any) -> bool:
        body: Dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            **options,
        }
        try:
            self._post(body)
        except TransportError as e:
            log_json("notify_failed", chat_id=self.chat_id, status_code=e.status_code, message=str(e))
            return False
        return True

    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            # The exception text can carry the URL, which embeds the token.
            raise TransportError(str(e).replace(self.bot_token, "<redacted>")) from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.ok or not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else resp.text[:200]
            raise TransportError(
                f"Telegram rejected message: {description}",
                status_code=resp.status_code,
            )
        return data
