import argparse
import logging
import os
import signal
import threading
import time
from typing import List

from .api import ApiClient
from .config import load_config, setup_logging
from .display import HeadlessDisplay, MpvDisplay
from .errors import ServerUnreachable
from .player import PlayerStateMachine
from .preload import Preloader
from .scheduler import PollingScheduler, probe_connection
from .source import ContentSource
from .status import StatusState, status_writer


def playback_loop(cfg, player: PlayerStateMachine, stop_event: threading.Event) -> None:
    interval = max(int(cfg.get("tick_interval_ms") or 200), 20) / 1000.0
    while not stop_event.is_set():
        try:
            player.tick()
        except Exception:
            logging.exception("Playback tick failed")
        time.sleep(interval)


def main() -> int:
    parser = argparse.ArgumentParser(description="Digital signage TV player")
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    parser.add_argument("--headless", action="store_true", help="Log content instead of driving mpv")
    args = parser.parse_args()
    config_path = os.path.abspath(args.config)

    cfg = load_config(config_path)
    if args.headless:
        cfg["display"] = "headless"
    setup_logging(cfg)

    status = StatusState()
    api = ApiClient(cfg)
    source = ContentSource(api, cfg)
    preloader = Preloader(cfg, status=status)
    if cfg.get("display") == "headless":
        display = HeadlessDisplay(cfg)
    else:
        display = MpvDisplay(cfg)
    player = PlayerStateMachine(source, display, cfg, preloader=preloader, status=status)
    stop_event = threading.Event()
    scheduler = PollingScheduler(cfg, player, source, status=status, stop_event=stop_event)
    force_exit = threading.Event()

    def _force_kill_after_delay() -> None:
        time.sleep(5)
        if not force_exit.is_set():
            return
        try:
            display.stop()
        finally:
            os._exit(1)

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        if stop_event.is_set():
            force_exit.set()
            threading.Thread(target=_force_kill_after_delay, daemon=True).start()
            return
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    display.start()

    threads: List[threading.Thread] = [
        threading.Thread(target=preloader.run, args=(stop_event,), name="preloader", daemon=True),
        threading.Thread(target=status_writer, args=(cfg, status, stop_event), name="status", daemon=True),
    ]
    for thread in threads:
        thread.start()

    try:
        probe_connection(api)
    except ServerUnreachable as exc:
        logging.error("Content server unreachable at startup: %s", exc)
        player.show_unreachable()
    else:
        logging.info("Content server reachable at %s", cfg["api_base_url"])
        source.refresh_settings()
        player.start()

    scheduler.start()
    try:
        playback_loop(cfg, player, stop_event)
    finally:
        stop_event.set()
        scheduler.stop()
        for thread in threads:
            thread.join(timeout=5)
        display.stop()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
