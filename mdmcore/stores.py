"""
Store contracts and in-memory implementations.

The dispatcher only talks to these interfaces. Each store owns its own
serialization: per-device queue mutations happen under a per-device lock, and
inventory replacement swaps the whole list in one assignment so a reader sees
either the old snapshot or the new one.

The in-memory stores back tests and single-process deployments. The SQLite
versions in mdmcore.sqlite satisfy the same contracts.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Protocol, Tuple
from uuid import uuid4

from .errors import CommandNotFound, DeviceNotFound
from .models import Certificate, Command, Device, DeviceApplication

# Columns a DeviceInformation answer owns. awaiting_configuration and uuid
# belong to enrollment and are never written back from a device report.
QUERY_RESPONSE_FIELDS = (
    "serial_number",
    "product_name",
    "build_version",
    "device_name",
    "imei",
    "meid",
    "model",
    "os_version",
    "last_query_response",
    "last_checkin",
)


# ── Contracts ──────────────────────────────────────────────────────────

class CommandStore(Protocol):
    """
    Per-device FIFO command queue plus metadata lookup by command uuid.

    next is a peek: delivery is at least once until the command is removed.
    remove is idempotent and reports the remaining count.
    find keeps working after removal for the configured retention period.
    """

    def create(
        self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str] = None
    ) -> str:
        """Append a command to the tail of the device queue and return its uuid."""

    def create_if_empty(
        self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str] = None
    ) -> Tuple[Optional[str], int]:
        """Append only if the queue is empty. Returns (uuid or None, remaining)."""

    def next(self, udid: str) -> Tuple[bytes, int]:
        """Return the head command body and the queue length without removing it."""

    def remove(self, udid: str, command_uuid: str) -> int:
        """Remove a command from the device queue and return the remaining count."""

    def find(self, command_uuid: str) -> Command:
        """Return command metadata or raise CommandNotFound."""

    def pending(self, udid: str) -> List[Command]:
        """Return the queued commands in delivery order."""


class DeviceStore(Protocol):
    def add(self, device: Device) -> None:
        """Register a device record. Called by the enrollment collaborator."""

    def get_by_udid(self, udid: str) -> Device:
        """Return the device or raise DeviceNotFound."""

    def devices(
        self, serial_number: Optional[str] = None, udid: Optional[str] = None
    ) -> List[Device]:
        """Return every device matching the UDID or the serial number."""

    def save(self, device: Device) -> None:
        """Overwrite the stored record for device.udid."""

    def save_query_responses(self, device: Device) -> None:
        """Write only the QUERY_RESPONSE_FIELDS of device onto the stored record."""

    def set_awaiting_configuration(self, udid: str, awaiting: bool) -> None:
        """Set or clear the awaiting configuration flag."""


class ApplicationStore(Protocol):
    def device_applications(self, device_uuid: str) -> List[DeviceApplication]:
        """Return the current application snapshot for a device."""

    def delete_device_applications(self, device_uuid: str) -> None:
        """Drop every application row for a device."""

    def new_device_app(self, app: DeviceApplication) -> None:
        """Insert one application row."""

    def replace_device_applications(
        self, device_uuid: str, apps: Iterable[DeviceApplication]
    ) -> None:
        """Replace the whole application snapshot for a device."""


class CertificateStore(Protocol):
    def device_certificates(self, device_uuid: str) -> List[Certificate]:
        """Return the current certificate snapshot for a device."""

    def delete_device_certificates(self, device_uuid: str) -> None:
        """Drop every certificate row for a device."""

    def new_certificate(self, cert: Certificate) -> None:
        """Insert one certificate row."""

    def replace_certificates_by_device_uuid(
        self, device_uuid: str, certs: Iterable[Certificate]
    ) -> None:
        """Replace the whole certificate snapshot for a device."""


# ── In-memory implementations ──────────────────────────────────────────

class MemoryCommandStore:
    """
    Command queues keyed by UDID, metadata keyed by command uuid.

    Queues are guarded by per-device locks. Metadata and removal times are
    shared across devices and only touched under _guard. Removal times are
    kept in removal order, so pruning only pops from the front.
    """

    def __init__(self, metadata_retention_seconds: int = 86400) -> None:
        self.metadata_retention_seconds = metadata_retention_seconds
        self._queues: Dict[str, List[str]] = {}
        self._commands: Dict[str, Command] = {}
        self._removed_at: "OrderedDict[str, float]" = OrderedDict()
        # one lock per UDID ever seen, bounded by the fleet size
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, udid: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(udid, threading.Lock())

    def _append(self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str]) -> str:
        # caller holds the device lock
        cid = command_uuid or str(uuid4())
        command = Command(uuid=cid, udid=udid, request_type=request_type, body=body)
        with self._guard:
            self._commands[cid] = command
            self._removed_at.pop(cid, None)
        self._queues.setdefault(udid, []).append(cid)
        return cid

    def create(
        self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str] = None
    ) -> str:
        with self._lock_for(udid):
            return self._append(udid, request_type, body, command_uuid)

    def create_if_empty(
        self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str] = None
    ) -> Tuple[Optional[str], int]:
        with self._lock_for(udid):
            queue = self._queues.get(udid, [])
            if queue:
                return None, len(queue)
            return self._append(udid, request_type, body, command_uuid), 1

    def next(self, udid: str) -> Tuple[bytes, int]:
        with self._lock_for(udid):
            queue = self._queues.get(udid, [])
            if not queue:
                return b"", 0
            with self._guard:
                return self._commands[queue[0]].body, len(queue)

    def remove(self, udid: str, command_uuid: str) -> int:
        with self._lock_for(udid):
            queue = self._queues.get(udid, [])
            if command_uuid in queue:
                queue.remove(command_uuid)
                with self._guard:
                    self._removed_at[command_uuid] = time.monotonic()
                    self._removed_at.move_to_end(command_uuid)
            remaining = len(queue)
        self._prune()
        return remaining

    def find(self, command_uuid: str) -> Command:
        with self._guard:
            command = self._commands.get(command_uuid)
        if command is None:
            raise CommandNotFound(f"command {command_uuid} not found")
        return command

    def pending(self, udid: str) -> List[Command]:
        with self._lock_for(udid):
            with self._guard:
                return [self._commands[cid] for cid in self._queues.get(udid, [])]

    def clear(self) -> None:
        with self._guard:
            self._queues.clear()
            self._commands.clear()
            self._removed_at.clear()

    def _prune(self) -> None:
        """Forget metadata of commands removed longer ago than the retention."""
        cutoff = time.monotonic() - self.metadata_retention_seconds
        with self._guard:
            while self._removed_at:
                cid, at = next(iter(self._removed_at.items()))
                if at >= cutoff:
                    break
                self._removed_at.popitem(last=False)
                self._commands.pop(cid, None)


class MemoryDeviceStore:
    """
    Device records keyed by UDID.

    Reads hand out copies, so a caller mutating a record before save never
    leaks a partial update.
    """

    def __init__(self) -> None:
        self._devices: Dict[str, Device] = {}
        self._lock = threading.Lock()

    def add(self, device: Device) -> None:
        with self._lock:
            self._devices[device.udid] = device.model_copy(deep=True)

    def get_by_udid(self, udid: str) -> Device:
        with self._lock:
            device = self._devices.get(udid)
            if device is None:
                raise DeviceNotFound(f"no device with udid {udid}")
            return device.model_copy(deep=True)

    def devices(
        self, serial_number: Optional[str] = None, udid: Optional[str] = None
    ) -> List[Device]:
        with self._lock:
            return [
                d.model_copy(deep=True)
                for d in self._devices.values()
                if (udid and d.udid == udid) or (serial_number and d.serial_number == serial_number)
            ]

    def save(self, device: Device) -> None:
        with self._lock:
            if device.udid not in self._devices:
                raise DeviceNotFound(f"no device with udid {device.udid}")
            self._devices[device.udid] = device.model_copy(deep=True)

    def save_query_responses(self, device: Device) -> None:
        with self._lock:
            stored = self._devices.get(device.udid)
            if stored is None:
                raise DeviceNotFound(f"no device with udid {device.udid}")
            for name in QUERY_RESPONSE_FIELDS:
                setattr(stored, name, getattr(device, name))

    def set_awaiting_configuration(self, udid: str, awaiting: bool) -> None:
        with self._lock:
            device = self._devices.get(udid)
            if device is None:
                raise DeviceNotFound(f"no device with udid {udid}")
            device.awaiting_configuration = awaiting

    def clear(self) -> None:
        with self._lock:
            self._devices.clear()


class MemoryApplicationStore:
    def __init__(self) -> None:
        self._apps: Dict[str, List[DeviceApplication]] = {}
        self._lock = threading.Lock()

    def device_applications(self, device_uuid: str) -> List[DeviceApplication]:
        return list(self._apps.get(device_uuid, []))

    def delete_device_applications(self, device_uuid: str) -> None:
        with self._lock:
            self._apps.pop(device_uuid, None)

    def new_device_app(self, app: DeviceApplication) -> None:
        with self._lock:
            self._apps[app.device_uuid] = self._apps.get(app.device_uuid, []) + [app]

    def replace_device_applications(
        self, device_uuid: str, apps: Iterable[DeviceApplication]
    ) -> None:
        snapshot = list(apps)
        with self._lock:
            self._apps[device_uuid] = snapshot

    def clear(self) -> None:
        with self._lock:
            self._apps.clear()


class MemoryCertificateStore:
    def __init__(self) -> None:
        self._certs: Dict[str, List[Certificate]] = {}
        self._lock = threading.Lock()

    def device_certificates(self, device_uuid: str) -> List[Certificate]:
        return list(self._certs.get(device_uuid, []))

    def delete_device_certificates(self, device_uuid: str) -> None:
        with self._lock:
            self._certs.pop(device_uuid, None)

    def new_certificate(self, cert: Certificate) -> None:
        with self._lock:
            self._certs[cert.device_uuid] = self._certs.get(cert.device_uuid, []) + [cert]

    def replace_certificates_by_device_uuid(
        self, device_uuid: str, certs: Iterable[Certificate]
    ) -> None:
        snapshot = list(certs)
        with self._lock:
            self._certs[device_uuid] = snapshot

    def clear(self) -> None:
        with self._lock:
            self._certs.clear()
