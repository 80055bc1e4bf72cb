import threading
from typing import Dict, Optional


class PlaybackCycle:
    def __init__(self, start: int = 0) -> None:
        self.current = start

    def advance(self, length: int) -> int:
        if length <= 0:
            raise ValueError("cannot advance through an empty list")
        self.current = (self.current + 1) % length
        return self.current

    def peek(self, length: int, steps: int = 0) -> int:
        if length <= 0:
            raise ValueError("cannot peek into an empty list")
        return (self.current + steps) % length


class PlaybackCycles:
    """One circular cursor per list identity (playlist id, feed, content)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cycles: Dict[str, PlaybackCycle] = {}

    def advance(self, identity: str, length: int) -> int:
        with self._lock:
            cycle = self._cycles.setdefault(identity, PlaybackCycle())
            return cycle.advance(length)

    def current(self, identity: str) -> Optional[int]:
        with self._lock:
            cycle = self._cycles.get(identity)
            return cycle.current if cycle is not None else None

    def reset(self, identity: str) -> None:
        with self._lock:
            self._cycles.pop(identity, None)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {identity: cycle.current for identity, cycle in self._cycles.items()}
