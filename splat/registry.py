from __future__ import annotations

import dataclasses
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any

from .errors import InvalidTransition, ProcessNotFound
from .events import utc_now
from .models import AppConfig

if TYPE_CHECKING:
    from .docker_ops import ContainerDriver


class ProcessStatus(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


# A failed process only reaches running again through a fresh start attempt.
_TRANSITIONS: dict[ProcessStatus, set[ProcessStatus]] = {
    ProcessStatus.UNKNOWN: {ProcessStatus.STARTING, ProcessStatus.FAILED, ProcessStatus.STOPPED},
    ProcessStatus.STARTING: {ProcessStatus.RUNNING, ProcessStatus.FAILED, ProcessStatus.STOPPED},
    ProcessStatus.RUNNING: {ProcessStatus.STARTING, ProcessStatus.FAILED, ProcessStatus.STOPPED},
    ProcessStatus.FAILED: {ProcessStatus.STARTING, ProcessStatus.STOPPED},
    ProcessStatus.STOPPED: {ProcessStatus.STARTING},
}

_SUFFIX_CHARS = string.ascii_lowercase
_SUFFIX_LEN = 5


def generate_suffix() -> str:
    return "".join(secrets.choice(_SUFFIX_CHARS) for _ in range(_SUFFIX_LEN))


@dataclass
class Process:
    uid: str
    config: AppConfig
    driver: ContainerDriver | None = None
    container_id: str | None = None
    port: int | None = None
    status: ProcessStatus = ProcessStatus.UNKNOWN
    error: BaseException | None = None
    route_live: bool = False
    updated_at: str = field(default_factory=utc_now)

    def summary(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "name": self.config.name,
            "environment": self.config.environment,
            "container_id": self.container_id,
            "port": self.port,
            "status": self.status.value,
            "route_live": self.route_live,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            "updated_at": self.updated_at,
        }


class ProcessRegistry:
    """In-memory table of every Process the orchestrator manages.

    Insert, remove and snapshot share one structural lock. Field updates take
    only the target uid's lock, so tasks for different apps never contend.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._procs: dict[str, Process] = {}
        self._uid_locks: dict[str, Lock] = {}

    def register(self, config: AppConfig) -> str:
        with self._lock:
            uid = f"{config.identity}.{generate_suffix()}"
            while uid in self._procs:
                uid = f"{config.identity}.{generate_suffix()}"
            self._procs[uid] = Process(uid=uid, config=config)
            self._uid_locks[uid] = Lock()
            return uid

    def _entry(self, uid: str) -> tuple[Process, Lock]:
        with self._lock:
            proc = self._procs.get(uid)
            if proc is None:
                raise ProcessNotFound(uid)
            return proc, self._uid_locks[uid]

    def get(self, uid: str) -> Process:
        proc, lock = self._entry(uid)
        with lock:
            return dataclasses.replace(proc)

    def update(self, uid: str, /, **changes: Any) -> Process:
        """Apply a partial update to one Process and return a copy of it."""
        proc, lock = self._entry(uid)
        with lock:
            status = changes.get("status")
            if status is not None:
                status = ProcessStatus(status)
                if status != proc.status and status not in _TRANSITIONS[proc.status]:
                    raise InvalidTransition(f"{uid}: {proc.status.value} -> {status.value} is not allowed")
                changes["status"] = status
            for key, value in changes.items():
                if key == "uid" or not hasattr(proc, key):
                    raise AttributeError(f"Process has no updatable field {key!r}")
                setattr(proc, key, value)
            proc.updated_at = utc_now()
            return dataclasses.replace(proc)

    def remove(self, uid: str) -> Process:
        with self._lock:
            proc = self._procs.pop(uid, None)
            if proc is None:
                raise ProcessNotFound(uid)
            lock = self._uid_locks.pop(uid)
        with lock:
            return proc

    def snapshot(self) -> list[Process]:
        with self._lock:
            entries = [(p, self._uid_locks[uid]) for uid, p in self._procs.items()]
        out: list[Process] = []
        for proc, lock in entries:
            with lock:
                out.append(dataclasses.replace(proc))
        return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def __contains__(self, uid: object) -> bool:
        with self._lock:
            return uid in self._procs
