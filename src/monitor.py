import argparse
import json
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from errors import NavigationError, StartupConfigError
from events import log_json, utc_ts
from live_status import ExtractionPatterns, LiveStatus, StatusExtractor, load_patterns
from notifier import TelegramNotifier, format_ended_message, format_live_message, format_test_message
from state_store import StateStore
from tracker import Decision, Edge, TransitionTracker, build_policy

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/118 Safari/537.36"
)


@dataclass
class AppConfig:
    accounts: List[str]
    telegram_bot_token: str
    telegram_chat_id: str
    poll_interval_ms: int = 120_000
    # Sequential pacing between accounts keeps the request rate against TikTok low.
    account_pacing_ms: int = 2_000
    time_zone: str = "Asia/Jakarta"
    state_file: str = "lastState.json"
    page_timeout_ms: int = 45_000
    page_settle_ms: int = 1_500
    badge_timeout_ms: int = 1_000
    notify_on_end: bool = False
    thousands_separator: str = "."
    base_url: str = "https://www.tiktok.com"
    headless: bool = True
    browser_channel: Optional[str] = None
    storage_state_path: Optional[str] = None
    user_data_dir: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    browser_locale: str = "en-US"
    patterns: ExtractionPatterns = field(default_factory=ExtractionPatterns)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if not value:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise StartupConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise StartupConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def normalize_accounts(raw: Sequence[str]) -> List[str]:
    accounts: List[str] = []
    for item in raw:
        account = item.strip().lstrip("@").lower()
        if account and account not in accounts:
            accounts.append(account)
    return accounts


def load_accounts(env_value: Optional[str], accounts_file: str) -> List[str]:
    if env_value and env_value.strip():
        return normalize_accounts(env_value.split(","))

    try:
        with open(accounts_file, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise StartupConfigError(f"Cannot read roster from {accounts_file}: {e}") from e
    if not isinstance(data, list):
        raise StartupConfigError(f"{accounts_file} must contain a JSON list of usernames")
    if any(item and not isinstance(item, str) for item in data):
        raise StartupConfigError(f"{accounts_file} must only contain usernames")
    return normalize_accounts([item for item in data if item])


def load_config(require_accounts: bool = True) -> AppConfig:
    load_dotenv()

    tg_token = (os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN") or "").strip()
    tg_chat_id = (os.getenv("TELEGRAM_CHAT_ID") or os.getenv("CHAT_ID") or "").strip()
    if not tg_token or not tg_chat_id:
        raise StartupConfigError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set")

    accounts: List[str] = []
    if require_accounts:
        accounts = load_accounts(
            os.getenv("TIKTOK_ACCOUNTS"),
            os.getenv("ACCOUNTS_FILE", "accounts.json").strip() or "accounts.json",
        )
        if not accounts:
            raise StartupConfigError("The account roster is empty")

    time_zone = os.getenv("TZ", "").strip() or "Asia/Jakarta"
    try:
        ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        raise StartupConfigError(f"Unknown time zone {time_zone!r}") from None

    return AppConfig(
        accounts=accounts,
        telegram_bot_token=tg_token,
        telegram_chat_id=tg_chat_id,
        poll_interval_ms=_parse_int("POLL_INTERVAL_MS", 120_000, minimum=1),
        account_pacing_ms=_parse_int("ACCOUNT_PACING_MS", 2_000),
        time_zone=time_zone,
        state_file=os.getenv("STATE_FILE", "").strip() or "lastState.json",
        page_timeout_ms=_parse_int("PAGE_TIMEOUT_MS", 45_000, minimum=1),
        page_settle_ms=_parse_int("PAGE_SETTLE_MS", 1_500),
        badge_timeout_ms=_parse_int("BADGE_TIMEOUT_MS", 1_000, minimum=1),
        notify_on_end=_parse_bool(os.getenv("NOTIFY_ON_END"), default=False),
        thousands_separator=os.getenv("THOUSANDS_SEPARATOR", "."),
        base_url=(os.getenv("TIKTOK_BASE_URL", "").strip() or "https://www.tiktok.com").rstrip("/"),
        headless=_parse_bool(os.getenv("HEADLESS", "true"), default=True),
        browser_channel=os.getenv("PLAYWRIGHT_BROWSER_CHANNEL", "").strip() or None,
        storage_state_path=os.getenv("PLAYWRIGHT_STORAGE_STATE", "").strip() or None,
        user_data_dir=os.getenv("PLAYWRIGHT_USER_DATA_DIR", "").strip() or None,
        user_agent=os.getenv("USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
        browser_locale=os.getenv("BROWSER_LOCALE", "").strip() or "en-US",
        patterns=load_patterns(os.getenv("EXTRACTION_PATTERNS_FILE", "").strip() or None),
    )


def profile_url(base_url: str, account: str) -> str:
    return f"{base_url}/@{account}"


def live_url(base_url: str, account: str) -> str:
    return f"{base_url}/@{account}/live"


class RenderedPage:
    def __init__(self, page: Page, state_element_ids: Sequence[str]) -> None:
        self.page = page
        self.state_element_ids = list(state_element_ids)

    def embedded_state(self) -> Optional[str]:
        return self.page.evaluate(
            """
            (ids) => {
              for (const id of ids) {
                const el = document.getElementById(id);
                if (el && el.textContent) return el.textContent;
              }
              return null;
            }
            """,
            self.state_element_ids,
        )

    def has_visible_text(self, text: str, timeout_ms: int) -> bool:
        try:
            self.page.locator(f"text={text}").first.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True


class PlaywrightRenderer:
    """Navigates the one shared page; nothing else should touch it."""

    def __init__(self, page: Page, state_element_ids: Sequence[str], settle_ms: int = 1_500) -> None:
        self.page = page
        self.settle_ms = settle_ms
        self._rendered = RenderedPage(page, state_element_ids)

    def navigate(self, url: str, timeout_ms: int) -> RenderedPage:
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out after {timeout_ms} ms loading {url}", url=url) from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {url}: {e.message}", url=url) from e
        if self.settle_ms:
            self.page.wait_for_timeout(self.settle_ms)
        return self._rendered


@dataclass
class CycleReport:
    checked: int = 0
    failed: int = 0
    notified: int = 0
    live: List[str] = field(default_factory=list)


class PollScheduler:
    """Checks the roster one account at a time, forever.

    The first cycle starts immediately. Cycles start `interval_seconds` apart;
    a cycle that runs long is followed by the next one as soon as it finishes,
    so two cycles never overlap. One account failing never touches the state
    or the outcome of any other account.
    """

    def __init__(
        self,
        accounts: Sequence[str],
        *,
        renderer,
        extractor: StatusExtractor,
        tracker: TransitionTracker,
        notifier,
        store: StateStore,
        tz,
        base_url: str = "https://www.tiktok.com",
        interval_seconds: float = 120.0,
        pacing_seconds: float = 2.0,
        page_timeout_ms: int = 45_000,
        thousands_separator: str = ".",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.accounts = list(accounts)
        self.renderer = renderer
        self.extractor = extractor
        self.tracker = tracker
        self.notifier = notifier
        self.store = store
        self.tz = tz
        self.base_url = base_url
        self.interval_seconds = interval_seconds
        self.pacing_seconds = pacing_seconds
        self.page_timeout_ms = page_timeout_ms
        self.thousands_separator = thousands_separator
        self._sleep = sleep
        self._clock = clock

    def check_account(self, account: str) -> Decision:
        page = self.renderer.navigate(profile_url(self.base_url, account), self.page_timeout_ms)
        status = self.extractor.extract(page, account=account)
        decision = self.tracker.evaluate(account, status, self.tracker.current(account))

        if decision.edge in (Edge.WENT_LIVE, Edge.WENT_OFFLINE):
            log_json(
                "status",
                account=account,
                edge=decision.edge.value,
                live=status.live,
                room_id=status.room_id,
                title=status.title,
                viewer_count=status.viewer_count,
            )
        if decision.should_notify:
            self.notify(account, status, decision.edge)

        self.tracker.commit(account, decision.next_state)
        return decision

    def notify(self, account: str, status: LiveStatus, edge: Edge) -> bool:
        if edge == Edge.WENT_OFFLINE:
            text = format_ended_message(account, status, tz=self.tz)
        else:
            text = format_live_message(
                account,
                status,
                live_url=live_url(self.base_url, account),
                profile_url=profile_url(self.base_url, account),
                tz=self.tz,
                thousands_separator=self.thousands_separator,
            )
        delivered = self.notifier.send(text)
        log_json(edge.value, account=account, room_id=status.room_id, delivered=delivered)
        return delivered

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        log_json("heartbeat", stage="cycle_start", accounts=len(self.accounts))
        for index, account in enumerate(self.accounts):
            if index and self.pacing_seconds > 0:
                self._sleep(self.pacing_seconds)
            try:
                decision = self.check_account(account)
            except Exception as e:
                report.failed += 1
                log_json("error", account=account, error=type(e).__name__, message=str(e))
                continue
            report.checked += 1
            if decision.next_state.live:
                report.live.append(account)
            if decision.should_notify:
                report.notified += 1

        self.store.save(self.tracker.snapshot())
        log_json(
            "heartbeat",
            stage="cycle_end",
            checked=report.checked,
            failed=report.failed,
            live=report.live,
        )
        return report

    def run_forever(self, max_cycles: Optional[int] = None) -> None:
        cycles = 0
        while True:
            started = self._clock()
            self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return
            wait = max(0.0, self.interval_seconds - (self._clock() - started))
            next_fetch = datetime.now(timezone.utc) + timedelta(seconds=wait)
            log_json("heartbeat", stage="next_fetch", next_fetch_time_utc=utc_ts(next_fetch))
            if wait:
                self._sleep(wait)


def create_context(config: AppConfig, playwright: Playwright) -> tuple[BrowserContext, Optional[Browser]]:
    common_args = [
        "--no-sandbox",
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
    ]
    context_options = {
        "user_agent": config.user_agent,
        "viewport": {"width": 1280, "height": 800},
        "locale": config.browser_locale,
        "timezone_id": config.time_zone,
    }

    if config.user_data_dir:
        context = playwright.chromium.launch_persistent_context(
            user_data_dir=config.user_data_dir,
            headless=config.headless,
            channel=config.browser_channel,
            args=common_args,
            **context_options,
        )
        return context, None

    browser = playwright.chromium.launch(
        headless=config.headless,
        channel=config.browser_channel,
        args=common_args,
    )
    if config.storage_state_path:
        context_options["storage_state"] = config.storage_state_path
    return browser.new_context(**context_options), browser


def monitor_loop(config: AppConfig, max_cycles: Optional[int] = None) -> None:
    store = StateStore(config.state_file)
    tracker = TransitionTracker(store.load(), policy=build_policy(config.notify_on_end))
    notifier = TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id)
    extractor = StatusExtractor(config.patterns, badge_timeout_ms=config.badge_timeout_ms)

    with sync_playwright() as p:
        context, browser = create_context(config, p)
        try:
            page = context.new_page()
            scheduler = PollScheduler(
                config.accounts,
                renderer=PlaywrightRenderer(page, config.patterns.state_element_ids, config.page_settle_ms),
                extractor=extractor,
                tracker=tracker,
                notifier=notifier,
                store=store,
                tz=config.tz,
                base_url=config.base_url,
                interval_seconds=config.poll_interval_ms / 1000,
                pacing_seconds=config.account_pacing_ms / 1000,
                page_timeout_ms=config.page_timeout_ms,
                thousands_separator=config.thousands_separator,
            )
            log_json(
                "startup",
                accounts=config.accounts,
                interval_seconds=round(config.poll_interval_ms / 1000),
                time_zone=config.time_zone,
                notify_on_end=config.notify_on_end,
            )
            scheduler.run_forever(max_cycles=max_cycles)
        finally:
            context.close()
            if browser is not None:
                browser.close()


def send_test_message(config: AppConfig, notifier: Optional[TelegramNotifier] = None) -> bool:
    notifier = notifier or TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id)
    return notifier.send(format_test_message(datetime.now(timezone.utc), config.tz))


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send a Telegram alert when TikTok accounts go live.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--test", action="store_true", help="send one test notification and exit")
    mode.add_argument("--once", action="store_true", help="run a single poll cycle and exit")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(require_accounts=not args.test)
    except StartupConfigError as e:
        log_json("fatal", message=str(e))
        return 1

    if args.test:
        ok = send_test_message(config)
        log_json("test_message", delivered=ok)
        return 0 if ok else 1

    try:
        monitor_loop(config, max_cycles=1 if args.once else None)
    except KeyboardInterrupt:
        log_json("shutdown", reason="interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
