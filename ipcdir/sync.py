from __future__ import annotations

"""Boundary between the directory and the propagation service.

Outbound announcements and withdrawals are queued and handed to a
Publisher by a single worker thread, so the registration path never waits
on the network. Inbound remote entries go straight into the store with
REMOTE origin.
"""

import logging
import queue
import threading
import time
from typing import Any, Optional, Protocol

from ipcdir.naming import InvalidKeyError, NamingKey
from ipcdir.outcomes import Outcome, Status
from ipcdir.store import DirectoryEntry, DirectoryEntryStore, Origin

logger = logging.getLogger("ipcdir.sync")

_ANNOUNCE = "announce"
_WITHDRAW = "withdraw"


class Publisher(Protocol):
    def announce(self, entry: DirectoryEntry) -> None: ...

    def withdraw(self, key: NamingKey, version: int | None = None) -> None: ...


class NullPublisher:
    """Publisher for a standalone IPC process: logs and drops."""

    def announce(self, entry: DirectoryEntry) -> None:
        logger.debug("no propagation service; not announcing %s", entry.key)

    def withdraw(self, key: NamingKey, version: int | None = None) -> None:
        logger.debug("no propagation service; not withdrawing %s", key)


class DirectorySyncAdapter:
    def __init__(self, store: DirectoryEntryStore, publisher: Optional[Publisher] = None):
        self._store = store
        self._publisher: Publisher = publisher if publisher is not None else NullPublisher()
        self._queue: "queue.Queue[Optional[tuple[str, Any]]]" = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def publisher(self) -> Publisher:
        return self._publisher

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("sync adapter is closed")
            self._start_locked()

    def _start_locked(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._drain, name="dft-sync-outbound", daemon=True)
        self._thread.start()

    # --- outbound ---

    def announce(self, entry: DirectoryEntry) -> bool:
        """Queue an announcement of a locally owned entry."""
        return self._enqueue(_ANNOUNCE, entry)

    def withdraw(self, key: NamingKey, version: int | None = None) -> bool:
        """Queue a withdrawal of a locally owned entry."""
        return self._enqueue(_WITHDRAW, (key, version))

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued request was handed to the publisher."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
            # Nothing is queued behind the sentinel once _closed is set.
            if thread is not None:
                self._queue.put_nowait(None)

        if thread is not None:
            thread.join(timeout)

        close = getattr(self._publisher, "close", None)
        if callable(close):
            close()

    def _enqueue(self, op: str, payload: Any) -> bool:
        with self._lock:
            if self._closed:
                logger.debug("sync adapter closed; dropping %s", op)
                return False
            self._start_locked()
            self._queue.put_nowait((op, payload))
        return True

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                op, payload = item
                if op == _ANNOUNCE:
                    self._publisher.announce(payload)
                else:
                    key, version = payload
                    self._publisher.withdraw(key, version)
            except Exception as exc:
                logger.warning("directory %s failed: %s", item[0] if item else "?", exc)
            finally:
                self._queue.task_done()

    # --- inbound ---

    def apply_remote(self, entry: DirectoryEntry) -> Outcome:
        """Install an entry advertised by another IPC process."""
        entry = entry.with_origin(Origin.REMOTE)
        try:
            entry.validate()
        except InvalidKeyError as exc:
            logger.debug("rejecting remote entry: %s", exc)
            return Outcome(Status.INVALID_KEY, message=str(exc))

        if self._store.put(entry):
            logger.info("remote entry %s -> %d (v%d)", entry.key, entry.address, entry.version)
            return Outcome(Status.OK, key=entry.key, entry=entry)

        logger.debug("ignoring stale remote entry %s (v%d)", entry.key, entry.version)
        return Outcome(Status.STALE_UPDATE, key=entry.key, entry=self._store.get(entry.key))

    def apply_withdrawal(self, key: NamingKey, version: int | None = None) -> Outcome:
        """Remove a REMOTE entry retracted by its owner."""
        try:
            key.validate()
        except (InvalidKeyError, AttributeError) as exc:
            return Outcome(Status.INVALID_KEY, message=str(exc))

        if self._store.remove(key, Origin.REMOTE, version=version):
            logger.info("remote entry %s withdrawn", key)
            return Outcome(Status.OK, key=key)

        current = self._store.get(key)
        if current is None:
            return Outcome(Status.NOT_FOUND, key=key)
        logger.debug("ignoring withdrawal of %s; stored entry is %s v%d", key, current.origin.value, current.version)
        return Outcome(Status.STALE_UPDATE, key=key, entry=current)
