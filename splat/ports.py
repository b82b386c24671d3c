from __future__ import annotations

from threading import Lock

from .errors import PortExhaustedError


MAX_PORT = 65535


class PortAllocator:
    """Hands out host ports counting up from `base`.

    Ports are never reused during the allocator's lifetime, including after
    the app holding one shuts down.
    """

    def __init__(self, base: int = 10000) -> None:
        if not 1 <= int(base) <= MAX_PORT:
            raise ValueError(f"port base must be in 1..{MAX_PORT}, got {base}")
        self._lock = Lock()
        self._next = int(base)

    def next(self) -> int:
        with self._lock:
            if self._next > MAX_PORT:
                raise PortExhaustedError(f"No host ports left (last issued {MAX_PORT}).")
            port = self._next
            self._next += 1
            return port

    def peek(self) -> int:
        with self._lock:
            return self._next
