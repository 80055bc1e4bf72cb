import json
import logging
import os
import threading
import time
from typing import Dict, Optional

from .models import ContentItem, EmergencyMessage


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def content_summary(item: ContentItem) -> Dict[str, object]:
    return {
        "id": item.id,
        "type": item.type,
        "title": item.title,
        "source": item.source,
        "url": item.url,
        "duration": item.duration,
        "started_at": iso_now(),
    }


def emergency_summary(message: EmergencyMessage) -> Dict[str, object]:
    return {
        "id": message.id,
        "priority": message.priority,
        "message": message.message,
        "started_at": iso_now(),
    }


class StatusState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Optional[object]] = {
            "started_at": iso_now(),
            "playback_state": "idle",
            "connected": None,
            "connection_failures": 0,
            "current_item": None,
            "time_left": None,
            "emergency": None,
            "last_failure": None,
            "last_refresh_success": None,
            "last_refresh_error": None,
            "last_emergency_check": None,
            "settings_updated_at": None,
            "preloaded_count": 0,
        }
        self.start_time = time.time()

    def update(self, **kwargs: object) -> None:
        with self._lock:
            self._data.update(kwargs)

    def snapshot(self) -> Dict[str, Optional[object]]:
        with self._lock:
            return dict(self._data)


def write_status_file(path: str, snapshot: Dict[str, Optional[object]]) -> None:
    status_dir = os.path.dirname(path)
    if status_dir:
        os.makedirs(status_dir, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(snapshot, fh, ensure_ascii=True)
    os.replace(tmp_path, path)


def status_writer(cfg: Dict, status: StatusState, stop_event: threading.Event) -> None:
    status_path = cfg.get("status_file")
    if not status_path:
        return
    interval = int(cfg.get("status_interval_sec") or 0)
    if interval <= 0:
        return
    while True:
        snapshot = status.snapshot()
        snapshot["uptime_sec"] = int(time.time() - status.start_time)
        try:
            write_status_file(status_path, snapshot)
        except Exception as exc:
            logging.warning("Status write failed: %s", exc)
        if stop_event.wait(interval):
            break
