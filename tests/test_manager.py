"""Tests for ipcdir.manager — registration lifecycle and DFT consistency."""

from __future__ import annotations

import threading

import pytest

from ipcdir.manager import RegistrationManager, RegistrationRequested, UnregistrationRequested
from ipcdir.naming import NamingKey
from ipcdir.outcomes import Notification, NotificationKind, Status
from ipcdir.registrations import RegState
from ipcdir.store import DirectoryEntry, DirectoryEntryStore, Origin
from ipcdir.sync import DirectorySyncAdapter

ADDRESS = 16
ECHO = NamingKey("rina.apps.echo", "1")


class _RecordingPublisher:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def announce(self, entry: DirectoryEntry) -> None:
        self.calls.append(("announce", entry))

    def withdraw(self, key: NamingKey, version: int | None = None) -> None:
        self.calls.append(("withdraw", key, version))


def _manager(**kwargs) -> tuple[RegistrationManager, _RecordingPublisher]:
    store = DirectoryEntryStore()
    publisher = _RecordingPublisher()
    sync = DirectorySyncAdapter(store, publisher)
    return RegistrationManager(ADDRESS, store, sync, **kwargs), publisher


def test_register_then_lookup_then_unregister():
    manager, publisher = _manager()
    try:
        outcome = manager.process_registration_request(ECHO)
        assert outcome.status is Status.OK
        assert outcome.entry == DirectoryEntry(ECHO, ADDRESS, Origin.LOCAL, 0)
        assert manager.get_address(ECHO) == ADDRESS
        assert manager.registration_state(ECHO) is RegState.REGISTERED
        assert manager.registered_keys() == [ECHO]

        outcome = manager.process_unregistration_request(ECHO)
        assert outcome.status is Status.OK
        assert manager.get_address(ECHO) is None
        assert manager.registration_state(ECHO) is RegState.UNREGISTERED
        assert manager.registered_keys() == []

        assert manager.sync.flush(timeout=2.0)
        assert publisher.calls == [
            ("announce", DirectoryEntry(ECHO, ADDRESS, Origin.LOCAL, 0)),
            ("withdraw", ECHO, 0),
        ]
    finally:
        manager.close()


def test_reregistration_uses_a_higher_version():
    manager, _ = _manager()
    try:
        manager.process_registration_request(ECHO)
        manager.process_unregistration_request(ECHO)
        outcome = manager.process_registration_request(ECHO)
        assert outcome.ok
        assert outcome.entry.version == 1
    finally:
        manager.close()


def test_duplicate_registration():
    manager, _ = _manager()
    try:
        assert manager.process_registration_request(ECHO).ok
        outcome = manager.process_registration_request(ECHO)
        assert outcome.status is Status.ALREADY_REGISTERED
        assert outcome.entry is not None and outcome.entry.address == ADDRESS
        assert manager.get_address(ECHO) == ADDRESS
    finally:
        manager.close()


def test_unregister_unknown_key():
    manager, _ = _manager()
    try:
        assert manager.process_unregistration_request(ECHO).status is Status.NOT_REGISTERED
    finally:
        manager.close()


def test_invalid_keys_are_rejected_without_side_effects():
    manager, _ = _manager()
    try:
        for key in (NamingKey(""), NamingKey("echo", entity_instance="1"), "rina.apps.echo", None):
            assert manager.process_registration_request(key).status is Status.INVALID_KEY
            assert manager.process_unregistration_request(key).status is Status.INVALID_KEY
            assert manager.remove_dft_entry(key).status is Status.INVALID_KEY
            assert manager.get_address(key) is None
            assert manager.get_dft_entry(key) is None
        assert manager.dft_entries() == []
        assert len(manager.table) == 0
    finally:
        manager.close()


def test_remote_entry_is_replaced_by_local_registration():
    manager, _ = _manager()
    try:
        manager.sync.apply_remote(DirectoryEntry(ECHO, 99, Origin.REMOTE, 4))
        assert manager.get_address(ECHO) == 99

        outcome = manager.process_registration_request(ECHO)
        assert outcome.ok
        assert outcome.entry.version == 5
        assert manager.get_address(ECHO) == ADDRESS

        # A remote entry at the same version does not displace ours.
        stale = manager.sync.apply_remote(DirectoryEntry(ECHO, 99, Origin.REMOTE, 5))
        assert stale.status is Status.STALE_UPDATE
        assert manager.get_address(ECHO) == ADDRESS
    finally:
        manager.close()


def test_unregistration_leaves_newer_remote_entry():
    manager, publisher = _manager()
    try:
        manager.process_registration_request(ECHO)
        manager.sync.apply_remote(DirectoryEntry(ECHO, 99, Origin.REMOTE, 3))
        assert manager.get_address(ECHO) == 99

        outcome = manager.process_unregistration_request(ECHO)
        assert outcome.ok
        assert outcome.entry is None
        assert manager.get_address(ECHO) == 99

        manager.sync.flush(timeout=2.0)
        assert [c[0] for c in publisher.calls] == ["announce"]
    finally:
        manager.close()


def test_notify_handle_receives_results():
    manager, _ = _manager()
    seen: list[Notification] = []
    try:
        manager.process_registration_request(ECHO, seen.append)
        manager.process_unregistration_request(ECHO)
    finally:
        manager.close()

    assert [(n.kind, n.status) for n in seen] == [
        (NotificationKind.REGISTRATION, Status.OK),
        (NotificationKind.UNREGISTRATION, Status.OK),
    ]
    assert seen[0].entry.address == ADDRESS
    assert seen[1].entry.address == ADDRESS


def test_failing_notify_handle_does_not_break_registration(caplog):
    manager, _ = _manager()

    def handle(_notification: Notification) -> None:
        raise RuntimeError("boom")

    try:
        assert manager.process_registration_request(ECHO, handle).ok
        assert manager.get_address(ECHO) == ADDRESS
    finally:
        manager.close()
    assert "notify handle" in caplog.text


def test_handle_event_dispatch():
    manager, _ = _manager()
    try:
        assert manager.handle_event(RegistrationRequested(ECHO)).ok
        assert manager.handle_event(UnregistrationRequested(ECHO)).ok
        with pytest.raises(TypeError):
            manager.handle_event(object())  # type: ignore[arg-type]
    finally:
        manager.close()


def test_constructor_validation():
    with pytest.raises(ValueError):
        RegistrationManager(-1)
    with pytest.raises(ValueError):
        RegistrationManager(1 << 64)
    with pytest.raises(ValueError):
        RegistrationManager(1, transition_timeout=0)
    RegistrationManager(0).close()


def test_manual_confirm_registration():
    manager, _ = _manager(auto_confirm=False)
    try:
        outcome = manager.process_registration_request(ECHO)
        assert outcome.status is Status.PENDING
        assert manager.registration_state(ECHO) is RegState.REGISTERING
        assert manager.get_address(ECHO) is None

        assert manager.process_registration_request(ECHO).status is Status.ALREADY_REGISTERED

        outcome = manager.confirm_registration(ECHO)
        assert outcome.ok
        assert manager.get_address(ECHO) == ADDRESS
        assert manager.registration_state(ECHO) is RegState.REGISTERED

        assert manager.confirm_registration(ECHO).status is Status.NOT_REGISTERED
    finally:
        manager.close()


def test_manual_reject_registration():
    manager, _ = _manager(auto_confirm=False)
    seen: list[Notification] = []
    try:
        manager.process_registration_request(ECHO, seen.append)
        outcome = manager.confirm_registration(ECHO, accepted=False)
        assert outcome.status is Status.REJECTED
        assert manager.registration_state(ECHO) is RegState.UNREGISTERED
        assert manager.get_address(ECHO) is None
    finally:
        manager.close()
    assert [n.status for n in seen] == [Status.REJECTED]


def test_manual_confirm_unregistration():
    manager, _ = _manager(auto_confirm=False)
    try:
        manager.process_registration_request(ECHO)
        manager.confirm_registration(ECHO)

        outcome = manager.process_unregistration_request(ECHO)
        assert outcome.status is Status.PENDING
        assert manager.registration_state(ECHO) is RegState.UNREGISTERING
        assert manager.get_address(ECHO) == ADDRESS

        assert manager.process_unregistration_request(ECHO).status is Status.NOT_REGISTERED
        refused = manager.process_registration_request(ECHO)
        assert refused.status is Status.ALREADY_REGISTERED
        assert refused.message == "unregistration in progress"

        assert manager.confirm_unregistration(ECHO).ok
        assert manager.get_address(ECHO) is None
        assert manager.confirm_unregistration(ECHO).status is Status.NOT_REGISTERED
    finally:
        manager.close()


def test_unregistration_queued_behind_pending_registration():
    manager, _ = _manager(auto_confirm=False)
    try:
        manager.process_registration_request(ECHO)
        outcome = manager.process_unregistration_request(ECHO)
        assert outcome.status is Status.PENDING

        confirmed = manager.confirm_registration(ECHO)
        assert confirmed.status is Status.OK
        assert confirmed.message == "queued unregistration pending"
        assert manager.registration_state(ECHO) is RegState.UNREGISTERING

        manager.confirm_unregistration(ECHO)
        assert manager.registration_state(ECHO) is RegState.UNREGISTERED
        assert manager.get_address(ECHO) is None
    finally:
        manager.close()


def test_registration_timeout_rolls_back():
    manager, _ = _manager(auto_confirm=False, transition_timeout=0.05)
    done = threading.Event()
    seen: list[Notification] = []

    def handle(notification: Notification) -> None:
        seen.append(notification)
        done.set()

    try:
        manager.process_registration_request(ECHO, handle)
        assert done.wait(timeout=2.0)
        assert seen[0].status is Status.TRANSITION_TIMEOUT
        assert manager.registration_state(ECHO) is RegState.UNREGISTERED
        assert manager.get_address(ECHO) is None
        assert manager.confirm_registration(ECHO).status is Status.NOT_REGISTERED
    finally:
        manager.close()


def test_unregistration_timeout_restores_registration():
    manager, _ = _manager(auto_confirm=False, transition_timeout=0.05)
    timed_out = threading.Event()

    def handle(notification: Notification) -> None:
        if notification.status is Status.TRANSITION_TIMEOUT:
            timed_out.set()

    try:
        manager.process_registration_request(ECHO, handle)
        manager.confirm_registration(ECHO)
        manager.process_unregistration_request(ECHO)
        assert timed_out.wait(timeout=2.0)
        assert manager.registration_state(ECHO) is RegState.REGISTERED
        assert manager.get_address(ECHO) == ADDRESS
    finally:
        manager.close()


def test_confirmed_registration_ignores_its_old_timer():
    manager, _ = _manager(auto_confirm=False, transition_timeout=0.05)
    seen: list[Notification] = []
    try:
        manager.process_registration_request(ECHO, seen.append)
        manager.confirm_registration(ECHO)
        threading.Event().wait(0.2)
        assert manager.registration_state(ECHO) is RegState.REGISTERED
        assert [n.status for n in seen] == [Status.OK]
    finally:
        manager.close()


def test_stale_timer_does_not_expire_a_later_registration():
    manager, _ = _manager(auto_confirm=False, transition_timeout=0.05)
    try:
        manager.process_registration_request(ECHO)
        with manager.table.locked(ECHO):
            # Let the first timer fire and block on the key while the record is replaced.
            threading.Event().wait(0.3)
            manager.confirm_registration(ECHO)
            manager.process_unregistration_request(ECHO)
            manager.confirm_unregistration(ECHO)
            manager._transition_timeout = 30.0
            assert manager.process_registration_request(ECHO).status is Status.PENDING

        threading.Event().wait(0.3)
        assert manager.registration_state(ECHO) is RegState.REGISTERING
        assert manager.confirm_registration(ECHO).ok
    finally:
        manager.close()


def test_add_and_remove_dft_entry():
    manager, publisher = _manager()
    other = NamingKey("rina.apps.other")
    try:
        remote = DirectoryEntry(other, 42, Origin.REMOTE, 2)
        assert manager.add_dft_entry(remote).ok
        assert manager.get_dft_entry(other) == remote

        stale = manager.add_dft_entry(DirectoryEntry(other, 43, Origin.REMOTE, 1))
        assert stale.status is Status.STALE_UPDATE
        assert stale.entry == remote

        local = DirectoryEntry(ECHO, ADDRESS, Origin.LOCAL, 0)
        assert manager.add_dft_entry(local).ok
        assert sorted(e.address for e in manager.dft_entries()) == [ADDRESS, 42]

        removed = manager.remove_dft_entry(ECHO)
        assert removed.ok and removed.entry == local
        assert manager.remove_dft_entry(other).ok
        assert manager.remove_dft_entry(other).status is Status.NOT_FOUND

        assert manager.add_dft_entry(DirectoryEntry(other, -1)).status is Status.INVALID_KEY

        manager.sync.flush(timeout=2.0)
        assert publisher.calls == [("announce", local), ("withdraw", ECHO, 0)]
    finally:
        manager.close()


def test_close_cancels_pending_timers():
    manager, _ = _manager(auto_confirm=False, transition_timeout=30.0)
    manager.process_registration_request(ECHO)
    record = manager.table.records()[0]
    assert record.timer is not None
    manager.close()
    assert record.timer is None
