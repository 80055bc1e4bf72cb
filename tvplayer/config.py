import json
import logging
import os
import sys
import tempfile
from logging.handlers import RotatingFileHandler
from typing import Dict, List


def default_ipc_path() -> str:
    if os.name == "nt":
        return r"\\.\pipe\mpv-tvplayer"
    return os.path.join(tempfile.gettempdir(), "mpv-tvplayer.sock")


DEFAULT_CONFIG = {
    "api_base_url": "http://localhost:3001",
    "request_timeout_sec": 15,
    "user_id": "",
    "location_id": "",
    "api_key": "",
    "content_refresh_sec": 30,
    "emergency_check_sec": 30,
    "settings_refresh_sec": 300,
    "live_feed_limit": 10,
    "connection_max_retries": 3,
    "connection_retry_delay_sec": 5,
    "connection_retry_max_sec": 300,
    "stuck_load_timeout_sec": 15,
    "stuck_load_grace_sec": 1,
    "asset_max_retries": 3,
    "asset_retry_delay_sec": 1,
    "asset_failure_delay_sec": 2,
    "fade_ms": 300,
    "content_change_guard_sec": 1,
    "no_content_duration_sec": 10,
    "preload_count": 3,
    "preload_image_timeout_sec": 10,
    "preload_video_timeout_sec": 5,
    "preload_gap_ms": 100,
    "cache_dir": "./media_cache",
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "status_file": "",
    "status_interval_sec": 5,
    "tick_interval_ms": 200,
    "display": "mpv",
    "mpv_path": "mpv",
    "ipc_path": default_ipc_path(),
    "rotation_deg": 0,
    "mute": False,
    "hwdec": "auto",
}


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(data)
    if not cfg.get("ipc_path"):
        cfg["ipc_path"] = default_ipc_path()
    cfg["api_base_url"] = str(cfg.get("api_base_url") or "").rstrip("/")
    config_dir = os.path.dirname(abs_path)
    for key in ("cache_dir", "log_file", "status_file"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    ipc_path = cfg.get("ipc_path")
    if isinstance(ipc_path, str) and ipc_path and not is_windows_named_pipe(ipc_path):
        cfg["ipc_path"] = resolve_path_from_base(config_dir, ipc_path)
    return cfg


def is_windows_named_pipe(path: str) -> bool:
    return path.startswith("\\\\.\\pipe\\")


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def setup_logging(cfg: Dict) -> None:
    level = logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )
