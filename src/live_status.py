"""Live-status detection for a rendered TikTok profile page.

TikTok ships no documented API for "is this account live". The profile page
embeds its application state as a JSON blob in a <script> element, whose
schema changes without notice, so the detector searches the re-serialized
blob with a small set of patterns instead of walking a schema. When that
yields nothing, a visible "LIVE" badge in the rendered UI is used as a
weaker signal.

Detection is split into independent strategies tried in priority order.
Every strategy is total: whatever goes wrong inside one is logged and read as
"no signal", so `StatusExtractor.extract` always returns a `LiveStatus`.
"""

import json
import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from errors import ExtractionError, StartupConfigError
from events import log_json


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LiveStatus:
    live: bool
    room_id: Optional[str] = None
    title: Optional[str] = None
    viewer_count: Optional[int] = None
    observed_at: datetime = field(default_factory=_utcnow, compare=False)


@dataclass(frozen=True)
class ExtractionPatterns:
    state_element_ids: Tuple[str, ...] = ("SIGI_STATE", "__UNIVERSAL_DATA_FOR_REHYDRATION__")
    room_id: str = r'"roomId":"?(\d{8,})"?'
    # Up to 200 characters; an escaped quote counts as one character.
    title: str = r'"title":"((?:[^"\\]|\\.){1,200})"'
    # Tried in order, first match wins.
    viewer_count: Tuple[str, ...] = (
        r'"viewerCount":\s?(\d+)',
        r'"user_count":\s?(\d+)',
        r'"audienceCount":\s?(\d+)',
    )
    live_badge_text: str = "LIVE"


_TUPLE_FIELDS = {"state_element_ids", "viewer_count"}


def load_patterns(path: Optional[str]) -> ExtractionPatterns:
    """Build the pattern set, overriding defaults with keys from a JSON file.

    Unknown keys, wrong types and regexes that do not compile are rejected at
    startup rather than discovered on the first poll.
    """
    if not path:
        return ExtractionPatterns()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise StartupConfigError(f"Cannot read extraction patterns from {path}: {e}") from e
    if not isinstance(raw, dict):
        raise StartupConfigError(f"{path} must contain a JSON object")

    known = {f.name for f in fields(ExtractionPatterns)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise StartupConfigError(f"Unknown extraction pattern keys in {path}: {', '.join(unknown)}")

    overrides: Dict[str, object] = {}
    for key, value in raw.items():
        if key in _TUPLE_FIELDS:
            if not isinstance(value, list) or not value or not all(isinstance(v, str) and v for v in value):
                raise StartupConfigError(f"{key} must be a non-empty list of strings")
            overrides[key] = tuple(value)
        else:
            if not isinstance(value, str) or not value:
                raise StartupConfigError(f"{key} must be a non-empty string")
            overrides[key] = value

    patterns = ExtractionPatterns(**overrides)
    for regex in (patterns.room_id, patterns.title, *patterns.viewer_count):
        try:
            re.compile(regex)
        except re.error as e:
            raise StartupConfigError(f"Invalid extraction pattern {regex!r}: {e}") from e
    return patterns


class PageContent(Protocol):
    def embedded_state(self) -> Optional[str]:
        ...

    def has_visible_text(self, text: str, timeout_ms: int) -> bool:
        ...


@dataclass(frozen=True)
class Signal:
    live: bool
    room_id: Optional[str] = None
    title: Optional[str] = None
    viewer_count: Optional[int] = None


NO_SIGNAL = Signal(live=False)


def _unescape_json_string(value: str) -> str:
    try:
        text = json.loads(f'"{value}"')
    except ValueError:
        text = value
    # Titles are cut on UTF-16 units, which can leave a lone surrogate behind.
    return text.encode("utf-8", "replace").decode("utf-8")


class EmbeddedStateStrategy:
    name = "embedded_state"

    def __init__(self, patterns: ExtractionPatterns) -> None:
        self._room_id = re.compile(patterns.room_id)
        self._title = re.compile(patterns.title)
        self._viewer_count = [re.compile(p) for p in patterns.viewer_count]

    def read(self, page: PageContent) -> Signal:
        return self.parse(page.embedded_state())

    def parse(self, raw: Optional[str]) -> Signal:
        if not raw or not raw.strip():
            raise ExtractionError("embedded state not found")
        try:
            state = json.loads(raw)
        except ValueError as e:
            raise ExtractionError(f"embedded state is not valid JSON: {e}") from e

        text = json.dumps(state, ensure_ascii=False, separators=(",", ":"))
        room = self._room_id.search(text)
        if not room:
            return NO_SIGNAL

        title_match = self._title.search(text)
        title = _unescape_json_string(title_match.group(1)) if title_match else None

        viewer_count = None
        for pattern in self._viewer_count:
            m = pattern.search(text)
            if m:
                viewer_count = int(m.group(1))
                break

        return Signal(live=True, room_id=room.group(1), title=title or None, viewer_count=viewer_count)


class LiveBadgeStrategy:
    name = "live_badge"

    def __init__(self, text: str, timeout_ms: int) -> None:
        self.text = text
        self.timeout_ms = timeout_ms

    def read(self, page: PageContent) -> Signal:
        if page.has_visible_text(self.text, self.timeout_ms):
            return Signal(live=True)
        return NO_SIGNAL


class StatusExtractor:
    def __init__(
        self,
        patterns: Optional[ExtractionPatterns] = None,
        *,
        badge_timeout_ms: int = 1000,
        clock: Callable[[], datetime] = _utcnow,
        strategies: Optional[Sequence[object]] = None,
    ) -> None:
        patterns = patterns or ExtractionPatterns()
        self._clock = clock
        self.strategies: List[object] = list(strategies) if strategies is not None else [
            EmbeddedStateStrategy(patterns),
            LiveBadgeStrategy(patterns.live_badge_text, badge_timeout_ms),
        ]

    def extract(self, page: PageContent, account: Optional[str] = None) -> LiveStatus:
        observed_at = self._clock()
        for strategy in self.strategies:
            try:
                signal = strategy.read(page)
            except Exception as e:
                log_json(
                    "extraction_error",
                    account=account,
                    strategy=getattr(strategy, "name", type(strategy).__name__),
                    message=str(e),
                )
                continue
            if signal.live:
                return LiveStatus(
                    live=True,
                    room_id=signal.room_id,
                    title=signal.title,
                    viewer_count=signal.viewer_count,
                    observed_at=observed_at,
                )
        return LiveStatus(live=False, observed_at=observed_at)
