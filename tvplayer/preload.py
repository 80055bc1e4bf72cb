import hashlib
import logging
import os
import threading
import time
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

import requests

from .models import TYPE_IMAGE, TYPE_VIDEO, ContentItem
from .status import StatusState


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8"), usedforsecurity=False).hexdigest()


def cache_path(cache_dir: str, url: str) -> str:
    parsed = urlparse(url)
    _, ext = os.path.splitext(parsed.path)
    if not ext:
        ext = ".bin"
    return os.path.join(cache_dir, f"{sha1_hex(url)}{ext}")


class Preloader:
    """Warms the media of upcoming items so the display can start them quickly.

    Images are downloaded into the cache directory, videos only get their
    headers probed. Every failure is logged and forgotten; playback never
    waits on this class.
    """

    def __init__(self, cfg: Dict, status: Optional[StatusState] = None) -> None:
        self._cache_dir = cfg["cache_dir"]
        self._image_timeout = float(cfg.get("preload_image_timeout_sec") or 10)
        self._video_timeout = float(cfg.get("preload_video_timeout_sec") or 5)
        self._gap_sec = float(cfg.get("preload_gap_ms", 100)) / 1000.0
        self._status = status
        self._lock = threading.Lock()
        self._queue: List[ContentItem] = []
        self._warm: Set[str] = set()
        self._paths: Dict[str, str] = {}
        self._wake = threading.Event()

    def is_warm(self, url: str) -> bool:
        with self._lock:
            return url in self._warm

    def cached_path(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        with self._lock:
            path = self._paths.get(url)
        if path and os.path.exists(path):
            return path
        return None

    def pending(self) -> List[ContentItem]:
        with self._lock:
            return list(self._queue)

    def schedule(self, items: Iterable[ContentItem]) -> int:
        queue: List[ContentItem] = []
        seen: Set[str] = set()
        with self._lock:
            for item in items:
                if not item.is_media or not item.url:
                    continue
                if item.url in self._warm or item.url in seen:
                    continue
                seen.add(item.url)
                queue.append(item)
            self._queue = queue
        if queue:
            logging.debug("Preload queue: %s", ", ".join(i.title for i in queue))
            self._wake.set()
        return len(queue)

    def _pop(self) -> Optional[ContentItem]:
        with self._lock:
            while self._queue:
                item = self._queue.pop(0)
                if item.url not in self._warm:
                    return item
            return None

    def process_pending(self) -> int:
        warmed = 0
        first = True
        while True:
            item = self._pop()
            if item is None:
                break
            if not first and self._gap_sec > 0:
                time.sleep(self._gap_sec)
            first = False
            if self.warm(item):
                warmed += 1
        return warmed

    def warm(self, item: ContentItem) -> bool:
        try:
            if item.type == TYPE_IMAGE:
                path = self._download_image(item.url)
                with self._lock:
                    self._paths[item.url] = path
            elif item.type == TYPE_VIDEO:
                self._probe_video(item.url)
            else:
                return False
        except Exception as exc:
            logging.warning("Failed to preload %s: %s", item.title or item.url, exc)
            return False
        with self._lock:
            self._warm.add(item.url)
            count = len(self._warm)
        logging.info("Preloaded %s", item.title or item.url)
        if self._status is not None:
            self._status.update(preloaded_count=count)
        return True

    def _download_image(self, url: str) -> str:
        os.makedirs(self._cache_dir, exist_ok=True)
        dest = cache_path(self._cache_dir, url)
        if os.path.exists(dest):
            return dest
        deadline = time.monotonic() + self._image_timeout
        tmp_path = f"{dest}.tmp"
        try:
            resp = requests.get(url, stream=True, timeout=self._image_timeout)
            resp.raise_for_status()
            expected_size = None
            content_length = resp.headers.get("Content-Length")
            if content_length and content_length.isdigit():
                expected_size = int(content_length)
            bytes_written = 0
            with open(tmp_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=1024 * 256):
                    if time.monotonic() > deadline:
                        raise TimeoutError(f"Preload timeout after {self._image_timeout:.0f}s")
                    if chunk:
                        fh.write(chunk)
                        bytes_written += len(chunk)
            if expected_size is not None and bytes_written < expected_size:
                raise IOError(f"Incomplete download ({bytes_written}/{expected_size} bytes)")
            os.replace(tmp_path, dest)
        except Exception:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as cleanup_exc:
                    logging.warning("Failed to cleanup temp file for %s: %s", url, cleanup_exc)
            raise
        return dest

    def _probe_video(self, url: str) -> None:
        resp = requests.head(url, allow_redirects=True, timeout=self._video_timeout)
        resp.raise_for_status()

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self._wake.wait(timeout=1.0)
            self._wake.clear()
            if stop_event.is_set():
                break
            try:
                self.process_pending()
            except Exception as exc:
                logging.warning("Preload worker error: %s", exc)
