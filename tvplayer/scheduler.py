import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .errors import ServerUnreachable, SourceUnavailable
from .status import StatusState, iso_now


def wait_interval(stop_event: threading.Event, seconds: float) -> None:
    for _ in range(max(int(seconds * 5), 1)):
        if stop_event.is_set():
            break
        time.sleep(0.2)


class ConnectionMonitor:
    def __init__(self, max_retries: int = 3, base_delay: float = 5.0, max_delay: float = 300.0) -> None:
        self._lock = threading.Lock()
        self.max_retries = max(int(max_retries), 0)
        self.base_delay = max(float(base_delay), 0.0)
        self.max_delay = max(float(max_delay), self.base_delay)
        self.failures = 0
        self.connected: Optional[bool] = None

    def record_failure(self) -> int:
        with self._lock:
            self.failures += 1
            self.connected = False
            return self.failures

    def record_success(self) -> None:
        with self._lock:
            if self.failures:
                logging.info("Connection restored after %d failed attempts", self.failures)
            self.failures = 0
            self.connected = True

    def should_show_error(self) -> bool:
        return self.failures > self.max_retries

    def next_delay(self) -> float:
        exponent = max(self.failures - 1, 0)
        return min(self.base_delay * (2 ** exponent), self.max_delay)


def probe_connection(api) -> None:
    try:
        payload = api.get_general_content()
    except SourceUnavailable as exc:
        raise ServerUnreachable(str(exc)) from exc
    if "success" not in payload:
        raise ServerUnreachable("Invalid response from backend")


class PollingScheduler:
    def __init__(
        self,
        cfg: Dict,
        player,
        source,
        status: Optional[StatusState] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self._player = player
        self._source = source
        self._status = status
        self._stop_event = stop_event or threading.Event()
        self._intervals = {
            "content-refresh": float(cfg.get("content_refresh_sec") or 0),
            "emergency-check": float(cfg.get("emergency_check_sec") or 0),
            "settings-refresh": float(cfg.get("settings_refresh_sec") or 0),
        }
        self._threads: List[threading.Thread] = []
        self._refresh_lock = threading.Lock()
        self._refresh_in_flight = False

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def _update_status(self, **kwargs: object) -> None:
        if self._status is not None:
            self._status.update(**kwargs)

    def refresh_content(self) -> bool:
        with self._refresh_lock:
            if self._refresh_in_flight:
                logging.info("Content refresh already in flight, skipping")
                return False
            self._refresh_in_flight = True
        try:
            changed = self._player.refresh()
            self._update_status(last_refresh_success=iso_now(), last_refresh_error=None)
            return changed
        except Exception as exc:
            logging.warning("Content refresh failed: %s", exc)
            self._update_status(last_refresh_error=f"{iso_now()} {exc}")
            return False
        finally:
            with self._refresh_lock:
                self._refresh_in_flight = False

    def check_emergency(self) -> bool:
        try:
            shown = self._player.poll_emergency()
        except Exception as exc:
            logging.warning("Emergency check failed: %s", exc)
            return False
        self._update_status(last_emergency_check=iso_now())
        return shown

    def refresh_settings(self) -> bool:
        try:
            ok = self._source.refresh_settings()
        except Exception as exc:
            logging.warning("Display settings refresh failed: %s", exc)
            return False
        if ok:
            self._update_status(settings_updated_at=iso_now())
        return ok

    def _jobs(self) -> Dict[str, Callable[[], bool]]:
        return {
            "content-refresh": self.refresh_content,
            "emergency-check": self.check_emergency,
            "settings-refresh": self.refresh_settings,
        }

    def _worker(self, name: str, interval: float, job: Callable[[], bool]) -> None:
        logging.info("Polling %s every %.0fs", name, interval)
        while not self._stop_event.is_set():
            wait_interval(self._stop_event, interval)
            if self._stop_event.is_set():
                break
            job()

    def start(self) -> None:
        jobs = self._jobs()
        for name, interval in self._intervals.items():
            if interval <= 0:
                logging.info("Polling %s disabled", name)
                continue
            thread = threading.Thread(
                target=self._worker,
                args=(name, interval, jobs[name]),
                name=name,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
