from __future__ import annotations

"""Registration manager of an IPC process.

Processes registration and unregistration requests from local applications,
keeps the DFT entries of registered applications in step with their
registration state, and answers address lookups for the flow allocator.

Each transition runs under the per-key lock of the registration table and
applies the record update and the store update together. Announcements to
other IPC processes are queued on the sync adapter after the local commit
and never awaited.
"""

from dataclasses import dataclass
import logging
from threading import Timer
import time
from typing import Any, Optional, Union

from ipcdir.naming import InvalidKeyError, NamingKey, is_valid_key
from ipcdir.outcomes import Notification, NotificationKind, NotifyHandle, Outcome, Status
from ipcdir.registrations import RegState, RegistrationRecord, RegistrationStateTable, _Slot
from ipcdir.store import DirectoryEntry, DirectoryEntryStore, Origin, UINT64_MAX
from ipcdir.sync import DirectorySyncAdapter

logger = logging.getLogger("ipcdir.manager")

DEFAULT_TRANSITION_TIMEOUT = 10.0


@dataclass(frozen=True)
class RegistrationRequested:
    key: NamingKey
    notify_handle: Optional[NotifyHandle] = None


@dataclass(frozen=True)
class UnregistrationRequested:
    key: NamingKey


RegistrationEvent = Union[RegistrationRequested, UnregistrationRequested]


def _invalid(key: Any) -> Outcome:
    if isinstance(key, NamingKey):
        try:
            key.validate()
        except InvalidKeyError as exc:
            return Outcome(Status.INVALID_KEY, message=str(exc))
    return Outcome(Status.INVALID_KEY, message=f"not a naming key: {key!r}")


class RegistrationManager:
    """Façade over the registration table, the DFT and the sync adapter."""

    def __init__(
        self,
        address: int,
        store: DirectoryEntryStore | None = None,
        sync: DirectorySyncAdapter | None = None,
        *,
        auto_confirm: bool = True,
        transition_timeout: float = DEFAULT_TRANSITION_TIMEOUT,
    ):
        if isinstance(address, bool) or not isinstance(address, int) or not 0 <= address <= UINT64_MAX:
            raise ValueError(f"invalid IPC process address: {address!r}")
        if transition_timeout <= 0:
            raise ValueError(f"transition_timeout must be positive, got {transition_timeout}")

        self.address = address
        self.store = store if store is not None else DirectoryEntryStore()
        self.sync = sync if sync is not None else DirectorySyncAdapter(self.store)
        self._table = RegistrationStateTable()
        self._auto_confirm = bool(auto_confirm)
        self._transition_timeout = float(transition_timeout)

    @property
    def table(self) -> RegistrationStateTable:
        return self._table

    # --- events ---

    def handle_event(self, event: RegistrationEvent) -> Outcome:
        if isinstance(event, RegistrationRequested):
            return self.process_registration_request(event.key, event.notify_handle)
        if isinstance(event, UnregistrationRequested):
            return self.process_unregistration_request(event.key)
        raise TypeError(f"unsupported registration event: {type(event).__name__}")

    def process_registration_request(
        self,
        key: NamingKey,
        notify_handle: Optional[NotifyHandle] = None,
    ) -> Outcome:
        if not is_valid_key(key):
            return _invalid(key)

        with self._table.locked(key) as slot:
            record = slot.record
            if record is not None and record.state is not RegState.UNREGISTERED:
                logger.debug("registration of %s refused: %s", key, record.state.value)
                message = "unregistration in progress" if record.state is RegState.UNREGISTERING else ""
                return Outcome(Status.ALREADY_REGISTERED, key=key, entry=self.store.get(key), message=message)

            record = RegistrationRecord(key=key, state=RegState.REGISTERING, notify_handle=notify_handle)
            slot.record = record
            logger.debug("%s: unregistered -> registering", key)

            if self._auto_confirm:
                return self._accept(slot)
            self._arm_timer(record)
            return Outcome(Status.PENDING, key=key)

    def process_unregistration_request(self, key: NamingKey) -> Outcome:
        if not is_valid_key(key):
            return _invalid(key)

        with self._table.locked(key) as slot:
            record = slot.record
            if record is None or record.state not in (RegState.REGISTERING, RegState.REGISTERED):
                logger.debug("unregistration of %s refused: not registered", key)
                return Outcome(Status.NOT_REGISTERED, key=key)

            if record.state is RegState.REGISTERING:
                record.pending_unregistration = True
                logger.debug("%s: unregistration queued behind registration", key)
                return Outcome(Status.PENDING, key=key, message="queued until registration resolves")

            return self._begin_unregistration(slot)

    def confirm_registration(self, key: NamingKey, accepted: bool = True) -> Outcome:
        """Resolve a pending registration; used when auto_confirm is off."""
        if not is_valid_key(key):
            return _invalid(key)

        with self._table.locked(key) as slot:
            record = slot.record
            if record is None or record.state is not RegState.REGISTERING:
                return Outcome(Status.NOT_REGISTERED, key=key, message="no registration pending")
            if accepted:
                return self._accept(slot)
            logger.info("registration of %s rejected", key)
            return self._reject(slot, Status.REJECTED)

    def confirm_unregistration(self, key: NamingKey) -> Outcome:
        """Complete a pending unregistration; used when auto_confirm is off."""
        if not is_valid_key(key):
            return _invalid(key)

        with self._table.locked(key) as slot:
            record = slot.record
            if record is None or record.state is not RegState.UNREGISTERING:
                return Outcome(Status.NOT_REGISTERED, key=key, message="no unregistration pending")
            return self._complete_unregistration(slot)

    # --- transitions (slot lock held) ---

    def _accept(self, slot: _Slot) -> Outcome:
        record = slot.record
        assert record is not None
        record.cancel_timer()
        record.generation += 1

        entry = self.store.claim_local(record.key, self.address)
        record.state = RegState.REGISTERED
        logger.info("registered %s at address %d (v%d)", record.key, entry.address, entry.version)

        self.sync.announce(entry)
        self._notify(record, NotificationKind.REGISTRATION, Status.OK, entry)

        if record.pending_unregistration:
            record.pending_unregistration = False
            queued = self._begin_unregistration(slot)
            return Outcome(
                Status.OK,
                key=record.key,
                entry=self.store.get(record.key),
                message=f"queued unregistration {queued.status.value}",
            )
        return Outcome(Status.OK, key=record.key, entry=entry)

    def _reject(self, slot: _Slot, status: Status) -> Outcome:
        record = slot.record
        assert record is not None
        record.cancel_timer()
        record.generation += 1
        record.state = RegState.UNREGISTERED
        record.pending_unregistration = False
        logger.debug("%s: registering -> unregistered (%s)", record.key, status.value)

        self._notify(record, NotificationKind.REGISTRATION, status)
        slot.record = None
        return Outcome(status, key=record.key)

    def _begin_unregistration(self, slot: _Slot) -> Outcome:
        record = slot.record
        assert record is not None
        record.generation += 1
        record.state = RegState.UNREGISTERING
        record.requested_at = time.time()
        logger.debug("%s: registered -> unregistering", record.key)

        if self._auto_confirm:
            return self._complete_unregistration(slot)
        self._arm_timer(record)
        return Outcome(Status.PENDING, key=record.key)

    def _complete_unregistration(self, slot: _Slot) -> Outcome:
        record = slot.record
        assert record is not None
        record.cancel_timer()
        record.generation += 1

        removed = None
        entry = self.store.get(record.key)
        if entry is not None and entry.origin is Origin.LOCAL:
            if self.store.remove(record.key, Origin.LOCAL, version=entry.version):
                removed = entry
                self.sync.withdraw(record.key, entry.version)
        record.state = RegState.UNREGISTERED
        logger.info("unregistered %s", record.key)

        self._notify(record, NotificationKind.UNREGISTRATION, Status.OK, removed)
        slot.record = None
        return Outcome(Status.OK, key=record.key, entry=removed)

    def _arm_timer(self, record: RegistrationRecord) -> None:
        timer = Timer(self._transition_timeout, self._expire, args=(record, record.generation))
        timer.daemon = True
        record.timer = timer
        timer.start()

    def _expire(self, record: RegistrationRecord, generation: int) -> None:
        key = record.key
        with self._table.locked(key) as slot:
            # A later record for the same key starts its own generations.
            if slot.record is not record or record.generation != generation:
                return
            record.timer = None

            if record.state is RegState.REGISTERING:
                logger.warning("registration of %s timed out after %.1fs", key, self._transition_timeout)
                self._reject(slot, Status.TRANSITION_TIMEOUT)
            elif record.state is RegState.UNREGISTERING:
                logger.warning("unregistration of %s timed out after %.1fs", key, self._transition_timeout)
                record.generation += 1
                record.state = RegState.REGISTERED
                self._notify(record, NotificationKind.UNREGISTRATION, Status.TRANSITION_TIMEOUT, self.store.get(key))

    def _notify(
        self,
        record: RegistrationRecord,
        kind: NotificationKind,
        status: Status,
        entry: DirectoryEntry | None = None,
    ) -> None:
        handle = record.notify_handle
        if handle is None:
            return
        try:
            handle(Notification(kind=kind, key=record.key, status=status, entry=entry))
        except Exception:
            logger.exception("notify handle for %s failed", record.key)

    # --- directory ---

    def get_address(self, key: NamingKey) -> int | None:
        if not is_valid_key(key):
            return None
        return self.store.get_address(key)

    def get_dft_entry(self, key: NamingKey) -> DirectoryEntry | None:
        if not is_valid_key(key):
            return None
        return self.store.get(key)

    def add_dft_entry(self, entry: DirectoryEntry) -> Outcome:
        """Install an entry directly, bypassing the registration state machine."""
        try:
            entry.validate()
        except (InvalidKeyError, AttributeError) as exc:
            return Outcome(Status.INVALID_KEY, message=str(exc))

        with self._table.locked(entry.key):
            if not self.store.put(entry):
                logger.debug("dft entry %s (v%d) is stale", entry.key, entry.version)
                return Outcome(Status.STALE_UPDATE, key=entry.key, entry=self.store.get(entry.key))
            logger.info("dft entry %s -> %d added (%s v%d)", entry.key, entry.address, entry.origin.value, entry.version)
            if entry.origin is Origin.LOCAL:
                self.sync.announce(entry)
        return Outcome(Status.OK, key=entry.key, entry=entry)

    def remove_dft_entry(self, key: NamingKey) -> Outcome:
        """Remove the entry for key whatever its origin."""
        if not is_valid_key(key):
            return _invalid(key)

        with self._table.locked(key):
            removed = self.store.discard(key)
            if removed is None:
                return Outcome(Status.NOT_FOUND, key=key)
            logger.info("dft entry %s removed (%s)", key, removed.origin.value)
            if removed.origin is Origin.LOCAL:
                self.sync.withdraw(key, removed.version)
        return Outcome(Status.OK, key=key, entry=removed)

    def dft_entries(self) -> list[DirectoryEntry]:
        return self.store.entries()

    # --- introspection ---

    def registration_state(self, key: NamingKey) -> RegState:
        return self._table.state(key)

    def registered_keys(self) -> list[NamingKey]:
        return self._table.keys(RegState.REGISTERED)

    def close(self) -> None:
        for record in self._table.records():
            record.cancel_timer()
        self.sync.close()
