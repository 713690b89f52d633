from __future__ import annotations

"""Per-key registration lifecycle of local application processes.

The table is an arena of slots indexed by naming key. Each slot carries a
re-entrant lock that serializes every transition for its key; the
table-wide lock only guards slot lookup, creation and removal, so work on
different keys proceeds in parallel.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock, RLock, Timer
import time
from typing import Iterator, Optional

from ipcdir.naming import NamingKey
from ipcdir.outcomes import NotifyHandle


class RegState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    UNREGISTERING = "unregistering"


@dataclass
class RegistrationRecord:
    key: NamingKey
    state: RegState = RegState.UNREGISTERED
    notify_handle: Optional[NotifyHandle] = None
    requested_at: float = field(default_factory=time.time)
    pending_unregistration: bool = False
    # Bumped on every transition so that a timer armed for an earlier
    # transition can tell it has been superseded.
    generation: int = 0
    timer: Optional[Timer] = None

    def cancel_timer(self) -> None:
        timer = self.timer
        self.timer = None
        if timer is not None:
            timer.cancel()


@dataclass
class _Slot:
    key: NamingKey
    lock: RLock = field(default_factory=RLock)
    record: Optional[RegistrationRecord] = None
    users: int = 0


class RegistrationStateTable:
    """Registration records, one per locally registered naming key."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._slots: dict[NamingKey, _Slot] = {}

    @contextmanager
    def locked(self, key: NamingKey) -> Iterator[_Slot]:
        """Hold the key's slot lock for the duration of one transition.

        The slot is dropped from the arena when the last holder leaves and
        it carries no record.
        """
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot(key=key)
                self._slots[key] = slot
            slot.users += 1

        slot.lock.acquire()
        try:
            yield slot
        finally:
            slot.lock.release()
            with self._lock:
                slot.users -= 1
                if slot.users == 0 and slot.record is None:
                    self._slots.pop(key, None)

    def state(self, key: NamingKey) -> RegState:
        with self._lock:
            slot = self._slots.get(key)
            record = slot.record if slot is not None else None
        return RegState.UNREGISTERED if record is None else record.state

    def keys(self, state: RegState | None = None) -> list[NamingKey]:
        with self._lock:
            records = [slot.record for slot in self._slots.values() if slot.record is not None]
        return [r.key for r in records if state is None or r.state is state]

    def records(self) -> list[RegistrationRecord]:
        with self._lock:
            return [slot.record for slot in self._slots.values() if slot.record is not None]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            slot = self._slots.get(key)  # type: ignore[arg-type]
            return slot is not None and slot.record is not None

    def __len__(self) -> int:
        return len(self.records())
