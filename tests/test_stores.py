"""
Tests for the in-memory stores — queue ordering, idempotent removal,
metadata retention, and device matching.
"""

import sys
import threading
import time

import pytest

from mdmcore.errors import CommandNotFound, DeviceNotFound
from mdmcore.models import Certificate, Device, DeviceApplication
from mdmcore.stores import (
    MemoryApplicationStore,
    MemoryCertificateStore,
    MemoryCommandStore,
    MemoryDeviceStore,
)

UDID = "0000-DEVICE-1"


# ── Command store ──────────────────────────────────────────────────────

def test_queue_is_fifo_per_device():
    store = MemoryCommandStore()
    ids = [store.create(UDID, "ProfileList", f"body-{i}".encode()) for i in range(3)]
    store.create("OTHER", "ProfileList", b"other")

    assert store.next(UDID) == (b"body-0", 3)
    assert store.remove(UDID, ids[0]) == 2
    assert store.next(UDID) == (b"body-1", 2)
    assert store.next("OTHER") == (b"other", 1)


def test_create_uses_given_uuid():
    store = MemoryCommandStore()
    assert store.create(UDID, "ProfileList", b"", command_uuid="fixed") == "fixed"
    assert store.find("fixed").udid == UDID


def test_remove_is_idempotent():
    store = MemoryCommandStore()
    first = store.create(UDID, "ProfileList", b"a")
    store.create(UDID, "SecurityInfo", b"b")

    assert store.remove(UDID, first) == 1
    assert store.remove(UDID, first) == 1
    assert store.remove(UDID, "never-issued") == 1


def test_remove_out_of_order():
    store = MemoryCommandStore()
    a = store.create(UDID, "A", b"a")
    b = store.create(UDID, "B", b"b")
    c = store.create(UDID, "C", b"c")

    assert store.remove(UDID, b) == 2
    assert [cmd.uuid for cmd in store.pending(UDID)] == [a, c]


def test_remove_only_touches_named_device():
    store = MemoryCommandStore()
    cid = store.create(UDID, "A", b"a")
    assert store.remove("OTHER", cid) == 0
    assert store.next(UDID) == (b"a", 1)


def test_find_after_removal():
    store = MemoryCommandStore()
    cid = store.create(UDID, "DeviceInformation", b"x")
    store.remove(UDID, cid)

    command = store.find(cid)
    assert command.request_type == "DeviceInformation"
    assert command.udid == UDID


def test_find_unknown_raises():
    store = MemoryCommandStore()
    with pytest.raises(CommandNotFound):
        store.find("never-issued")


def test_removed_metadata_expires():
    store = MemoryCommandStore(metadata_retention_seconds=0)
    old = store.create(UDID, "A", b"a")
    store.remove(UDID, old)
    time.sleep(0.01)
    newer = store.create(UDID, "B", b"b")
    store.remove(UDID, newer)

    with pytest.raises(CommandNotFound):
        store.find(old)


def test_queued_metadata_never_expires():
    store = MemoryCommandStore(metadata_retention_seconds=0)
    queued = store.create(UDID, "A", b"a")
    other = store.create(UDID, "B", b"b")
    time.sleep(0.01)
    store.remove(UDID, other)
    assert store.find(queued).request_type == "A"


def test_create_if_empty():
    store = MemoryCommandStore()
    cid, remaining = store.create_if_empty(UDID, "DeviceConfigured", b"c")
    assert cid is not None
    assert remaining == 1

    cid2, remaining = store.create_if_empty(UDID, "DeviceConfigured", b"c")
    assert cid2 is None
    assert remaining == 1
    assert len(store.pending(UDID)) == 1


# ── Device store ───────────────────────────────────────────────────────

def test_devices_match_udid_or_serial():
    store = MemoryDeviceStore()
    store.add(Device(udid="A"))
    store.add(Device(udid="B", serial_number="SN1"))

    assert [d.udid for d in store.devices(udid="A", serial_number="SN1")] == ["A", "B"]
    assert [d.udid for d in store.devices(udid="A", serial_number=None)] == ["A"]
    assert store.devices(udid="Z", serial_number="") == []


def test_device_reads_are_copies():
    store = MemoryDeviceStore()
    store.add(Device(udid="A", model="MWLT2"))
    device = store.get_by_udid("A")
    device.model = "changed"
    assert store.get_by_udid("A").model == "MWLT2"


def test_save_unknown_device():
    store = MemoryDeviceStore()
    with pytest.raises(DeviceNotFound):
        store.save(Device(udid="ghost"))
    with pytest.raises(DeviceNotFound):
        store.get_by_udid("ghost")
    with pytest.raises(DeviceNotFound):
        store.set_awaiting_configuration("ghost", True)


def test_set_awaiting_configuration():
    store = MemoryDeviceStore()
    store.add(Device(udid="A"))
    store.set_awaiting_configuration("A", True)
    assert store.get_by_udid("A").awaiting_configuration is True


# ── Inventory stores ───────────────────────────────────────────────────

def test_application_store_replace_and_delete():
    store = MemoryApplicationStore()
    store.new_device_app(DeviceApplication(device_uuid="d1", name="Maps"))
    store.new_device_app(DeviceApplication(device_uuid="d2", name="Notes"))

    store.replace_device_applications("d1", [DeviceApplication(device_uuid="d1", name="Slack")])
    assert [a.name for a in store.device_applications("d1")] == ["Slack"]
    assert [a.name for a in store.device_applications("d2")] == ["Notes"]

    store.delete_device_applications("d1")
    assert store.device_applications("d1") == []


def test_certificate_store_replace_and_delete():
    store = MemoryCertificateStore()
    store.new_certificate(Certificate(device_uuid="d1", common_name="Old"))
    store.replace_certificates_by_device_uuid(
        "d1", [Certificate(device_uuid="d1", common_name="New", is_identity=True)]
    )
    assert [(c.common_name, c.is_identity) for c in store.device_certificates("d1")] == [("New", True)]

    store.delete_device_certificates("d1")
    assert store.device_certificates("d1") == []


def test_save_query_responses_leaves_enrollment_fields():
    store = MemoryDeviceStore()
    enrolled = Device(udid="A", awaiting_configuration=True)
    store.add(enrolled)

    report = store.get_by_udid("A")
    store.set_awaiting_configuration("A", False)
    report.os_version = "17.2"
    report.uuid = "something-else"
    store.save_query_responses(report)

    stored = store.get_by_udid("A")
    assert stored.os_version == "17.2"
    assert stored.awaiting_configuration is False
    assert stored.uuid == enrolled.uuid

    with pytest.raises(DeviceNotFound):
        store.save_query_responses(Device(udid="ghost"))


# ── Concurrency ────────────────────────────────────────────────────────

def test_concurrent_devices_do_not_interfere():
    store = MemoryCommandStore(metadata_retention_seconds=0)
    errors = []

    def churn(udid):
        try:
            for _ in range(2000):
                cid = store.create(udid, "ProfileList", b"x")
                store.remove(udid, cid)
        except Exception as exc:  # collected for the main thread
            errors.append(exc)

    interval = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    try:
        threads = [threading.Thread(target=churn, args=(f"DEVICE-{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
    finally:
        sys.setswitchinterval(interval)

    assert errors == []
    for i in range(8):
        assert store.next(f"DEVICE-{i}") == (b"", 0)


def _never_empty(read, write, rounds=500):
    """Run write rounds times while read is polled; return every observed snapshot size."""
    done = threading.Event()
    sizes = []

    def reader():
        while True:
            finished = done.is_set()
            sizes.append(len(read()))
            if finished:
                break

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for i in range(rounds):
            write(i)
    finally:
        done.set()
        thread.join()
    return sizes


def test_application_replace_has_no_empty_gap():
    store = MemoryApplicationStore()
    store.replace_device_applications("d1", [DeviceApplication(device_uuid="d1", name="Maps")])

    sizes = _never_empty(
        lambda: store.device_applications("d1"),
        lambda i: store.replace_device_applications(
            "d1", [DeviceApplication(device_uuid="d1", name=f"App{n}") for n in range(1 + i % 3)]
        ),
    )
    assert sizes
    assert 0 not in sizes


def test_certificate_replace_has_no_empty_gap():
    store = MemoryCertificateStore()
    store.replace_certificates_by_device_uuid("d1", [Certificate(device_uuid="d1", common_name="CA")])

    sizes = _never_empty(
        lambda: store.device_certificates("d1"),
        lambda i: store.replace_certificates_by_device_uuid(
            "d1", [Certificate(device_uuid="d1", common_name=f"C{n}") for n in range(1 + i % 3)]
        ),
    )
    assert sizes
    assert 0 not in sizes
