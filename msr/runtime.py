from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Iterator

from .status import ReconcileError


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


class MachineBusy(ReconcileError):
    """Another reconciliation pass or manual action is running on the machine."""

    def __init__(self, machine_id: str):
        super().__init__(f"A pass is already running on '{machine_id}'.")
        self.machine_id = machine_id


@dataclass
class PassRecord:
    machine: str
    kind: str  # sync|cycle
    ok: bool
    message: str = ""
    changed: bool = False
    finished_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory state shared by every reconciliation pass in the process.

    Holds two locks per machine id:
     - `machine_lock` around each read-modify-write of the machine record
       (short, blocking; remote commands must not run inside it)
     - `machine_pass` around a whole dispatch pass or manual action
       (long, non-blocking; a second pass fails fast with MachineBusy)
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._machine_locks: dict[str, Lock] = {}
        self._pass_locks: dict[str, Lock] = {}
        self.last_pass: dict[str, PassRecord] = {}  # machine id -> most recent pass

    def _lock_for(self, registry: dict[str, Lock], machine_id: str) -> Lock:
        with self.lock:
            lk = registry.get(machine_id)
            if lk is None:
                lk = registry[machine_id] = Lock()
            return lk

    @contextmanager
    def machine_lock(self, machine_id: str) -> Iterator[None]:
        lk = self._lock_for(self._machine_locks, machine_id)
        with lk:
            yield

    @contextmanager
    def machine_pass(self, machine_id: str) -> Iterator[None]:
        lk = self._lock_for(self._pass_locks, machine_id)
        if not lk.acquire(blocking=False):
            raise MachineBusy(machine_id)
        try:
            yield
        finally:
            lk.release()

    def forget(self, machine_id: str) -> None:
        # The locks themselves stay registered; a pass may still be holding them.
        with self.lock:
            self.last_pass.pop(machine_id, None)

    def record_pass(self, rec: PassRecord) -> None:
        with self.lock:
            self.last_pass[rec.machine] = rec

    def get_pass(self, machine_id: str) -> PassRecord | None:
        with self.lock:
            return self.last_pass.get(machine_id)

    def list_passes(self) -> list[PassRecord]:
        with self.lock:
            return list(self.last_pass.values())
