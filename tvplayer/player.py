import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

from .display import ASSET_ENDED, ASSET_ERROR, ASSET_READY
from .errors import AllSourcesExhausted, AssetLoadFailure, PlayerError, StuckLoad
from .models import TYPE_IMAGE, TYPE_TEXT, TYPE_VIDEO, ContentItem, EmergencyMessage
from .scheduler import ConnectionMonitor
from .source import connection_error_item, no_content_item, unreachable_item
from .status import StatusState, content_summary, emergency_summary


class PlayerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SHOWING = "showing"
    TRANSITIONING = "transitioning"
    EMERGENCY_SHOWING = "emergency"


class PlayerStateMachine:
    def __init__(
        self,
        source,
        display,
        cfg: Optional[Dict] = None,
        preloader=None,
        status: Optional[StatusState] = None,
        monitor: Optional[ConnectionMonitor] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        cfg = cfg or {}
        self._source = source
        self._display = display
        self._preloader = preloader
        self._status = status
        self._clock = clock or time.monotonic
        self.monitor = monitor or ConnectionMonitor(
            max_retries=int(cfg.get("connection_max_retries") or 3),
            base_delay=float(cfg.get("connection_retry_delay_sec") or 5),
            max_delay=float(cfg.get("connection_retry_max_sec") or 300),
        )
        self._stuck_timeout = float(cfg.get("stuck_load_timeout_sec") or 15)
        self._stuck_grace = float(cfg.get("stuck_load_grace_sec") or 1)
        self._max_asset_retries = int(cfg.get("asset_max_retries", 3))
        self._asset_retry_delay = float(cfg.get("asset_retry_delay_sec") or 1)
        self._asset_failure_delay = float(cfg.get("asset_failure_delay_sec") or 2)
        self._fade_ms = int(cfg.get("fade_ms", 300))
        self._fade_sec = self._fade_ms / 1000.0
        self._guard_sec = float(cfg.get("content_change_guard_sec", 1))
        self._card_seconds = int(cfg.get("no_content_duration_sec") or 10)
        self._preload_count = int(cfg.get("preload_count", 3))

        self._lock = threading.RLock()
        self.state = PlayerState.IDLE
        self.content: Optional[ContentItem] = None
        self.emergency: Optional[EmergencyMessage] = None
        self.emergency_until: Optional[float] = None
        self.time_left = 0
        self.retry_count = 0
        self.last_media_url: Optional[str] = None
        self.last_failure: Optional[PlayerError] = None
        self.is_content_changing = False
        self._guard_release_at: Optional[float] = None
        self._request_seq = 0
        self._next_second_at: Optional[float] = None
        self._loading_since: Optional[float] = None
        self._retry_at: Optional[float] = None
        self._advance_at: Optional[float] = None
        self._fade_until: Optional[float] = None
        self._connection_retry_at: Optional[float] = None
        self._resume_pending = False

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def start(self, now: Optional[float] = None) -> bool:
        logging.info("Player starting")
        return self.request_next("startup", now=now)

    def show_unreachable(self, now: Optional[float] = None) -> None:
        with self._lock:
            now = self._now(now)
            self.monitor.record_failure()
            self._connection_retry_at = now + self.monitor.next_delay()
            self._present(unreachable_item(self._card_seconds), now)

    def request_next(self, reason: str, now: Optional[float] = None, include_emergency: bool = True) -> bool:
        with self._lock:
            if self.state is PlayerState.EMERGENCY_SHOWING:
                logging.debug("Emergency showing; not resolving content (%s)", reason)
                return False
            if self.is_content_changing:
                logging.info("Content change already in progress, skipping (%s)", reason)
                return False
            self.is_content_changing = True
            self._guard_release_at = None
            self._request_seq += 1
            token = self._request_seq

        result = None
        try:
            if include_emergency:
                result = self._source.resolve_next()
            else:
                result = self._source.resolve_rotation()
        except AllSourcesExhausted as exc:
            logging.error("All content sources exhausted (%s): %s", reason, exc)
        except Exception:
            logging.exception("Content resolution failed (%s)", reason)
        unreachable = bool(getattr(self._source, "last_resolution_unreachable", False))

        with self._lock:
            now = self._now(now)
            if token != self._request_seq:
                logging.info("Discarding stale content response (token=%d latest=%d)", token, self._request_seq)
                self.is_content_changing = False
                return False
            self._resume_pending = False
            if isinstance(result, EmergencyMessage):
                self._enter_emergency(result, now)
            elif unreachable:
                self._on_unreachable(result, now)
            else:
                self.monitor.record_success()
                self._connection_retry_at = None
                self._present(result if result is not None else no_content_item(self._card_seconds), now)
            self._guard_release_at = now + self._guard_sec
            return True

    def refresh(self, now: Optional[float] = None) -> bool:
        with self._lock:
            idle = self.state is PlayerState.IDLE
            placeholder = (
                self.state is PlayerState.SHOWING and self.content is not None and self.content.is_placeholder
            )
            if not (idle or placeholder):
                logging.debug("Refresh skipped; rotation is running (%s)", self.state.value)
                return False
        return self.request_next("refresh", now=now)

    def poll_emergency(self, now: Optional[float] = None) -> bool:
        with self._lock:
            if self.state is PlayerState.EMERGENCY_SHOWING:
                return False
        message = self._source.check_emergency()
        if message is None:
            return False
        return self.show_emergency(message, now=now)

    def show_emergency(self, message: EmergencyMessage, now: Optional[float] = None) -> bool:
        with self._lock:
            if self.state is PlayerState.EMERGENCY_SHOWING and self.emergency is not None:
                if self.emergency.id == message.id:
                    return False
            # in-flight rotation results are stale from here on
            self._request_seq += 1
            self._enter_emergency(message, self._now(now))
            return True

    def on_asset_ready(self, now: Optional[float] = None) -> None:
        with self._lock:
            if self.state is not PlayerState.LOADING or self._advance_at is not None:
                return
            now = self._now(now)
            logging.info("Asset ready: %s", self.content.title if self.content else "?")
            self._start_countdown(now)

    def on_asset_error(self, now: Optional[float] = None) -> None:
        with self._lock:
            now = self._now(now)
            if self.state is PlayerState.SHOWING and self.content is not None and self.content.type == TYPE_VIDEO:
                logging.error("Video playback error: %s", self.content.url)
                self._begin_transition(now, "video-error")
                return
            if self.state is not PlayerState.LOADING or self._advance_at is not None:
                return
            if self._retry_at is not None:
                return
            url = self.content.url if self.content else None
            if self.retry_count < self._max_asset_retries:
                self.retry_count += 1
                self._retry_at = now + self._asset_retry_delay
                logging.warning(
                    "Failed to load %s, retrying (%d/%d)",
                    url,
                    self.retry_count,
                    self._max_asset_retries,
                )
                return
            self.last_failure = AssetLoadFailure(f"{url} failed after {self.retry_count} retries")
            logging.error("%s; moving to next content", self.last_failure)
            self._advance_at = now + self._asset_failure_delay

    def on_media_end(self, now: Optional[float] = None) -> None:
        with self._lock:
            if self.state is PlayerState.SHOWING:
                self._begin_transition(self._now(now), "media-end")

    def tick(self, now: Optional[float] = None) -> None:
        action: Optional[str] = None
        with self._lock:
            now = self._now(now)
            if self.is_content_changing and self._guard_release_at is not None and now >= self._guard_release_at:
                self.is_content_changing = False
                self._guard_release_at = None

            if self.state is PlayerState.EMERGENCY_SHOWING:
                if self.emergency_until is not None and now >= self.emergency_until:
                    action = "emergency-expired"
            elif self.state is PlayerState.LOADING:
                self._tick_loading(now)
            elif self.state is PlayerState.SHOWING:
                self._tick_showing(now)
            elif self.state is PlayerState.TRANSITIONING:
                if self._fade_until is not None and now >= self._fade_until:
                    action = "content-ended"
            elif self.state is PlayerState.IDLE:
                if self._resume_pending and not self.is_content_changing:
                    action = "emergency-ended"

            if action is None and self._connection_retry_at is not None and now >= self._connection_retry_at:
                placeholder = self.content is None or self.content.is_placeholder
                if self.state is PlayerState.IDLE or (self.state is PlayerState.SHOWING and placeholder):
                    self._connection_retry_at = None
                    action = "connection-retry"

        if action == "emergency-expired":
            self._on_emergency_expired(now)
        elif action == "emergency-ended":
            self.request_next(action, now=now, include_emergency=False)
        elif action is not None:
            self.request_next(action, now=now)

    def _tick_loading(self, now: float) -> None:
        if self._advance_at is not None:
            if now >= self._advance_at:
                self._begin_transition(now, "load-failed")
            return
        if self._retry_at is not None:
            if now >= self._retry_at:
                self._retry_asset(now)
            return
        asset = self._display.asset_status()
        if asset == ASSET_READY:
            self.on_asset_ready(now)
        elif asset == ASSET_ERROR:
            self.on_asset_error(now)
        elif self._loading_since is not None and now - self._loading_since >= self._stuck_timeout:
            self._on_stuck(now)

    def _tick_showing(self, now: float) -> None:
        if self.content is not None and self.content.type == TYPE_VIDEO:
            asset = self._display.asset_status()
            if asset == ASSET_ENDED:
                self._begin_transition(now, "media-end")
                return
            if asset == ASSET_ERROR:
                self.on_asset_error(now)
                return
        while self.time_left > 0 and self._next_second_at is not None and now >= self._next_second_at:
            self.time_left -= 1
            self._next_second_at += 1.0
        if self.time_left <= 0:
            self._begin_transition(now, "timer")
        elif self._status is not None:
            self._status.update(time_left=self.time_left)

    def _on_stuck(self, now: float) -> None:
        url = self.content.url if self.content else None
        self.last_failure = StuckLoad(f"{url} still loading after {self._stuck_timeout:.0f}s")
        logging.error("WATCHDOG: %s; forcing next content in %.1fs", self.last_failure, self._stuck_grace)
        self._advance_at = now + self._stuck_grace

    def _retry_asset(self, now: float) -> None:
        self._retry_at = None
        self._loading_since = now
        if self.content is None:
            return
        logging.info("Reloading %s (attempt %d)", self.content.url, self.retry_count)
        self._show_media(self.content, now)

    def _begin_transition(self, now: float, reason: str) -> None:
        if self.state not in (PlayerState.SHOWING, PlayerState.LOADING):
            return
        logging.info("Content finished (%s): %s", reason, self.content.title if self.content else "?")
        self._advance_at = None
        self._retry_at = None
        self._next_second_at = None
        self._fade_until = now + self._fade_sec
        self._set_state(PlayerState.TRANSITIONING)
        try:
            self._display.fade_out(self._fade_ms)
        except Exception as exc:
            logging.warning("Fade-out failed: %s", exc)

    def _start_countdown(self, now: float) -> None:
        self._loading_since = None
        self._retry_at = None
        self.time_left = int(self.content.duration) if self.content else 0
        self._next_second_at = now + 1.0
        self._set_state(PlayerState.SHOWING)

    def _present(self, item: ContentItem, now: float) -> None:
        self.content = item
        self.retry_count = 0
        self._retry_at = None
        self._advance_at = None
        self._fade_until = None
        logging.info(
            "Presenting %s %r from %s (duration=%ss)",
            item.type,
            item.title,
            item.source,
            item.duration,
        )
        if item.type == TYPE_TEXT:
            self._display.show_text(item)
            self._start_countdown(now)
        else:
            same_image = item.type == TYPE_IMAGE and item.url == self.last_media_url
            self.last_media_url = item.url
            self._loading_since = now
            self._set_state(PlayerState.LOADING)
            self._show_media(item, now)
            if same_image and self.state is PlayerState.LOADING and self._retry_at is None:
                self._start_countdown(now)
        if self._status is not None:
            self._status.update(current_item=content_summary(item))
        self._schedule_preload()

    def _show_media(self, item: ContentItem, now: float) -> None:
        location = item.url
        if self._preloader is not None:
            location = self._preloader.cached_path(item.url) or item.url
        try:
            self._display.show_media(item, location)
        except AssetLoadFailure as exc:
            logging.warning("Display rejected %s: %s", item.url, exc)
            self.on_asset_error(now)

    def _schedule_preload(self) -> None:
        if self._preloader is None or self._preload_count <= 0:
            return
        try:
            upcoming = self._source.upcoming(self._preload_count)
        except Exception as exc:
            logging.warning("Could not compute upcoming items for preload: %s", exc)
            return
        if upcoming:
            self._preloader.schedule(upcoming)

    def _on_unreachable(self, result: Optional[ContentItem], now: float) -> None:
        failures = self.monitor.record_failure()
        delay = self.monitor.next_delay()
        self._connection_retry_at = now + delay
        logging.warning(
            "Content server unreachable (%d consecutive), retrying in %.0fs",
            failures,
            delay,
        )
        if self.monitor.should_show_error():
            self._present(connection_error_item(self._card_seconds), now)
        elif self.content is not None and not self.content.is_placeholder:
            self._present(self.content, now)
        else:
            self._present(result if result is not None else no_content_item(self._card_seconds), now)

    def _enter_emergency(self, message: EmergencyMessage, now: float) -> None:
        seconds = self._source.settings.emergency_duration(message)
        self.emergency = message
        self.emergency_until = now + seconds
        self._loading_since = None
        self._retry_at = None
        self._advance_at = None
        self._fade_until = None
        self._next_second_at = None
        self._set_state(PlayerState.EMERGENCY_SHOWING)
        logging.warning("EMERGENCY (%s) for %ds: %s", message.priority, seconds, message.message)
        self._display.show_emergency(message, seconds)
        if self._status is not None:
            self._status.update(emergency=emergency_summary(message))

    def _on_emergency_expired(self, now: float) -> None:
        message = self._source.check_emergency()
        with self._lock:
            if self.state is not PlayerState.EMERGENCY_SHOWING:
                return
            if message is not None:
                self._request_seq += 1
                self._enter_emergency(message, now)
                return
            logging.info("Emergency expired; resuming rotation")
            self.emergency = None
            self.emergency_until = None
            self._set_state(PlayerState.IDLE)
            self._resume_pending = True
            if self._status is not None:
                self._status.update(emergency=None)
        self.request_next("emergency-ended", now=now, include_emergency=False)

    def _set_state(self, state: PlayerState) -> None:
        if state is not self.state:
            logging.debug("Player %s -> %s", self.state.value, state.value)
        self.state = state
        if self._status is not None:
            self._status.update(
                playback_state=state.value,
                connected=self.monitor.connected,
                connection_failures=self.monitor.failures,
                last_failure=str(self.last_failure) if self.last_failure else None,
            )
