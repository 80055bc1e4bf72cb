import json
import logging
import os
import signal
import socket
import subprocess
import threading
import time
from typing import Dict, List, Optional

from .errors import AssetLoadFailure
from .models import TYPE_VIDEO, ContentItem, EmergencyMessage

ASSET_LOADING = "loading"
ASSET_READY = "ready"
ASSET_ERROR = "error"
ASSET_ENDED = "ended"

EMERGENCY_BANNER = {
    "high": "EMERGENCY",
    "medium": "IMPORTANT NOTICE",
    "low": "NOTICE",
}


def build_mpv_args(cfg: Dict) -> List[str]:
    args = [
        cfg["mpv_path"],
        "--fs",
        "--force-window=yes",
        "--idle=yes",
        "--keep-open=yes",
        "--no-terminal",
        "--image-display-duration=inf",
        "--no-osc",
        "--osd-level=1",
        "--osd-align-x=center",
        "--osd-align-y=center",
        "--background=color",
        f"--input-ipc-server={cfg['ipc_path']}",
        "--no-input-default-bindings",
        "--input-vo-keyboard=no",
    ]
    if cfg.get("rotation_deg"):
        args.append(f"--video-rotate={int(cfg['rotation_deg'])}")
    if cfg.get("mute"):
        args.append("--mute=yes")
    if cfg.get("hwdec"):
        args.append(f"--hwdec={cfg['hwdec']}")
    return args


def text_card(item: ContentItem) -> str:
    body = item.text or ""
    if item.title and item.title != body:
        return f"{item.title}\n\n{body}".strip()
    return body or item.title


def emergency_card(message: EmergencyMessage) -> str:
    banner = EMERGENCY_BANNER.get(message.priority, "EMERGENCY")
    return f"{banner}\n\n{message.message}"


class MpvDisplay:
    """Drives one full-screen mpv process over its JSON IPC socket."""

    def __init__(self, cfg: Dict) -> None:
        self._cfg = cfg
        self._proc: Optional[subprocess.Popen] = None
        self._ipc = None
        self._ipc_socket = False
        self._lock = threading.RLock()
        self._ipc_lock = threading.Lock()
        self._request_id = 0
        self._recv_buffer = ""
        self._expected_path: Optional[str] = None
        self._expected_type: Optional[str] = None
        self._dimmed = False

    def _cleanup_ipc_path(self) -> None:
        ipc_path = self._cfg["ipc_path"]
        if os.name == "nt":
            return
        if os.path.exists(ipc_path):
            try:
                os.remove(ipc_path)
            except OSError as exc:
                logging.debug("Could not remove stale IPC socket %s: %s", ipc_path, exc)

    def _open_ipc(self) -> bool:
        ipc_path = self._cfg["ipc_path"]
        start = time.time()
        timeout = 10
        while time.time() - start < timeout:
            try:
                if os.name == "nt" and ipc_path.startswith("\\\\.\\pipe\\"):
                    self._ipc = open(ipc_path, "r+b", buffering=0)
                    self._ipc_socket = False
                    return True
                if os.path.exists(ipc_path):
                    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                    sock.settimeout(2.0)
                    sock.connect(ipc_path)
                    self._ipc = sock
                    self._ipc_socket = True
                    return True
            except OSError:
                time.sleep(0.2)
        return False

    def _close_ipc(self) -> None:
        if self._ipc is None:
            return
        try:
            self._ipc.close()
        except OSError as exc:
            logging.debug("IPC close failed: %s", exc)
        finally:
            self._ipc = None
            self._ipc_socket = False
            self._recv_buffer = ""

    def _stop_locked(self) -> None:
        self._close_ipc()
        if self._proc and self._proc.poll() is None:
            try:
                if os.name != "nt" and self._proc.pid:
                    os.killpg(self._proc.pid, signal.SIGTERM)
                else:
                    self._proc.terminate()
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                if os.name != "nt" and self._proc.pid:
                    os.killpg(self._proc.pid, signal.SIGKILL)
                else:
                    self._proc.kill()
        self._proc = None
        self._cleanup_ipc_path()

    def _start_locked(self) -> bool:
        if self._proc and self._proc.poll() is None and self._ipc is not None:
            return True
        if self._proc and self._proc.poll() is None and self._ipc is None:
            self._stop_locked()

        self._close_ipc()
        self._cleanup_ipc_path()
        args = build_mpv_args(self._cfg)
        popen_kwargs = {
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
        }
        if os.name == "nt":
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs["start_new_session"] = True
        try:
            self._proc = subprocess.Popen(args, **popen_kwargs)
        except OSError as exc:
            self._proc = None
            logging.error("Failed to start MPV process: %s", exc)
            return False
        if self._open_ipc():
            return True
        logging.warning("MPV IPC not available after launch; will retry.")
        self._stop_locked()
        return False

    def start(self) -> None:
        with self._lock:
            if self._start_locked():
                return
            time.sleep(1)
            self._start_locked()

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def ensure_running(self) -> None:
        if self._proc is None or self._proc.poll() is not None:
            logging.warning("MPV not running; restarting")
            self.start()

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def _send(self, payload: Dict, expect_response: bool = False, timeout: float = 2.0) -> Optional[Dict]:
        data = (json.dumps(payload) + "\n").encode("utf-8")
        if self._ipc is None:
            return None if expect_response else False
        with self._ipc_lock:
            if expect_response:
                self._request_id += 1
                payload["request_id"] = self._request_id
                data = (json.dumps(payload) + "\n").encode("utf-8")
            try:
                if self._ipc_socket:
                    self._ipc.sendall(data)
                else:
                    self._ipc.write(data)
                    self._ipc.flush()
            except OSError:
                return None if expect_response else False
            if not expect_response:
                return True
            return self._recv_response(self._request_id, timeout)

    def _recv_response(self, request_id: int, timeout: float) -> Optional[Dict]:
        if not self._ipc_socket or self._ipc is None:
            return None
        deadline = time.time() + max(timeout, 0.1)
        buffer = self._recv_buffer
        while time.time() < deadline:
            if "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                if line:
                    try:
                        payload = json.loads(line)
                    except ValueError:
                        payload = None
                    if isinstance(payload, dict) and payload.get("request_id") == request_id:
                        self._recv_buffer = buffer
                        return payload
                continue
            try:
                self._ipc.settimeout(max(deadline - time.time(), 0.1))
                chunk = self._ipc.recv(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="ignore")
            except socket.timeout:
                continue
            except OSError:
                break
        self._recv_buffer = buffer
        return None

    def command(self, *args: object) -> bool:
        return bool(self._send({"command": list(args)}))

    def get_property(self, name: str, timeout: float = 2.0) -> Optional[object]:
        payload = self._send({"command": ["get_property", name]}, expect_response=True, timeout=timeout)
        if isinstance(payload, dict) and payload.get("error") == "success":
            return payload.get("data")
        return None

    def _clear_fade(self) -> None:
        if self._dimmed:
            self.command("vf", "clr", "")
            self._dimmed = False

    def _show_card(self, text: str, seconds: int) -> None:
        self._expected_path = None
        self._expected_type = None
        self.command("stop")
        self._clear_fade()
        self.command("show-text", text, int(seconds) * 1000)

    def show_text(self, item: ContentItem) -> None:
        self.ensure_running()
        self._show_card(text_card(item), item.duration)

    def show_emergency(self, message: EmergencyMessage, seconds: int) -> None:
        self.ensure_running()
        self._show_card(emergency_card(message), seconds)

    def show_media(self, item: ContentItem, location: str) -> None:
        self.ensure_running()
        self.command("show-text", "", 1)
        self._clear_fade()
        self._expected_path = location
        self._expected_type = item.type
        if not self.command("loadfile", location, "replace"):
            raise AssetLoadFailure(f"mpv rejected loadfile for {location}")

    def fade_out(self, ms: int) -> None:
        # mpv has no opacity; dim the frame for the transition instead
        if self._expected_path is None:
            return
        if self.command("vf", "set", "eq=brightness=-0.6"):
            self._dimmed = True

    def asset_status(self) -> str:
        if self._expected_path is None:
            return ASSET_READY
        if self._expected_type == TYPE_VIDEO and self.get_property("eof-reached") is True:
            return ASSET_ENDED
        path = self.get_property("path")
        if path is None:
            if self.get_property("idle-active") is True:
                return ASSET_ERROR
            return ASSET_LOADING
        if self.get_property("width") is None:
            return ASSET_LOADING
        return ASSET_READY


class HeadlessDisplay:
    """Logs what would be shown; every asset is ready immediately."""

    def __init__(self, cfg: Optional[Dict] = None) -> None:
        self.shown: List[str] = []

    def start(self) -> None:
        logging.info("Headless display started")

    def stop(self) -> None:
        logging.info("Headless display stopped")

    def show_text(self, item: ContentItem) -> None:
        logging.info("[display] text %r: %s", item.title, item.text)
        self.shown.append(item.id)

    def show_emergency(self, message: EmergencyMessage, seconds: int) -> None:
        logging.info("[display] emergency for %ds: %s", seconds, emergency_card(message))
        self.shown.append(f"emergency:{message.id}")

    def show_media(self, item: ContentItem, location: str) -> None:
        logging.info("[display] %s %r from %s", item.type, item.title, location)
        self.shown.append(item.id)

    def fade_out(self, ms: int) -> None:
        logging.debug("[display] fade out %dms", ms)

    def asset_status(self) -> str:
        return ASSET_READY
