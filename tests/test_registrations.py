"""Tests for ipcdir.registrations."""

import threading
import time

from ipcdir.naming import NamingKey
from ipcdir.registrations import RegState, RegistrationRecord, RegistrationStateTable

ECHO = NamingKey("rina.apps.echo")


def test_unknown_key_is_unregistered():
    table = RegistrationStateTable()
    assert table.state(ECHO) is RegState.UNREGISTERED
    assert ECHO not in table
    assert len(table) == 0


def test_slot_without_record_is_dropped_on_release():
    table = RegistrationStateTable()
    with table.locked(ECHO) as slot:
        assert slot.key == ECHO
        assert slot.record is None
    assert table._slots == {}


def test_slot_with_record_is_kept():
    table = RegistrationStateTable()
    with table.locked(ECHO) as slot:
        slot.record = RegistrationRecord(key=ECHO, state=RegState.REGISTERED)

    assert ECHO in table
    assert table.state(ECHO) is RegState.REGISTERED
    assert table.keys() == [ECHO]
    assert table.keys(RegState.REGISTERED) == [ECHO]
    assert table.keys(RegState.REGISTERING) == []
    assert len(table.records()) == 1

    with table.locked(ECHO) as slot:
        slot.record = None
    assert ECHO not in table
    assert table._slots == {}


def test_locked_is_reentrant_for_the_same_thread():
    table = RegistrationStateTable()
    with table.locked(ECHO) as outer:
        with table.locked(ECHO) as inner:
            assert inner is outer
            assert inner.users == 2
    assert table._slots == {}


def test_locked_serializes_one_key():
    table = RegistrationStateTable()
    inside = []
    overlaps = []

    def worker() -> None:
        for _ in range(50):
            with table.locked(ECHO):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0)
                inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert table._slots == {}


def test_different_keys_do_not_block_each_other():
    table = RegistrationStateTable()
    other = NamingKey("rina.apps.other")
    entered = threading.Event()

    def worker() -> None:
        with table.locked(other):
            entered.set()

    with table.locked(ECHO):
        t = threading.Thread(target=worker)
        t.start()
        assert entered.wait(timeout=2.0)
        t.join()


def test_cancel_timer():
    record = RegistrationRecord(key=ECHO)
    fired = threading.Event()
    record.timer = threading.Timer(0.2, fired.set)
    record.timer.start()
    record.cancel_timer()
    assert record.timer is None
    assert not fired.wait(timeout=0.4)
    record.cancel_timer()
