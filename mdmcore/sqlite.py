"""SQLite-backed stores.

This module defines a ``Database`` class that wraps a single SQLite
connection, plus one store class per contract in :mod:`mdmcore.stores`.
The schema is created automatically on first use.

All access goes through :meth:`Database.transaction`, which holds one
re-entrant lock for the duration of a statement group and commits or rolls
back as a unit.  Inventory replacement runs its delete and inserts in one
transaction, so a reader never sees the device without either snapshot.
``sqlite3.Error`` never escapes; it is re-raised as ``StoreUnavailable``.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from uuid import uuid4

from .errors import CommandNotFound, DeviceNotFound, StoreUnavailable
from .models import Certificate, Command, Device, DeviceApplication
from .stores import QUERY_RESPONSE_FIELDS

DEVICE_COLUMNS = (
    "udid",
    "uuid",
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
    "awaiting_configuration",
)


class Database:
    """Owns the connection, the schema and the write lock."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._create_tables()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    def _create_tables(self) -> None:
        """Create all tables if they do not already exist."""
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    udid TEXT PRIMARY KEY,
                    uuid TEXT UNIQUE NOT NULL,
                    serial_number TEXT,
                    product_name TEXT,
                    build_version TEXT,
                    device_name TEXT,
                    imei TEXT,
                    meid TEXT,
                    model TEXT,
                    os_version TEXT,
                    last_query_response BLOB,
                    last_checkin TEXT,
                    awaiting_configuration INTEGER DEFAULT 0
                )
                """
            )
            # Queue membership is removed_at IS NULL; removed rows keep the
            # metadata resolvable until pruned.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS commands (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT UNIQUE NOT NULL,
                    udid TEXT NOT NULL,
                    request_type TEXT NOT NULL,
                    body BLOB,
                    created_at TEXT NOT NULL,
                    removed_at REAL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS commands_queue ON commands (udid, removed_at, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS device_applications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_uuid TEXT NOT NULL,
                    name TEXT NOT NULL,
                    identifier TEXT,
                    short_version TEXT,
                    version TEXT,
                    bundle_size INTEGER,
                    dynamic_size INTEGER
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS certificates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_uuid TEXT NOT NULL,
                    common_name TEXT NOT NULL,
                    is_identity INTEGER DEFAULT 0,
                    data BLOB
                )
                """
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error as exc:
                raise StoreUnavailable(str(exc)) from exc

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a SQLite row to a plain dictionary."""
        return {k: row[k] for k in row.keys()}

    def close(self) -> None:
        self.conn.close()


class SQLiteCommandStore:
    def __init__(self, db: Database, metadata_retention_seconds: int = 86400) -> None:
        self.db = db
        self.metadata_retention_seconds = metadata_retention_seconds

    @staticmethod
    def _count(conn: sqlite3.Connection, udid: str) -> int:
        cur = conn.execute(
            "SELECT COUNT(*) FROM commands WHERE udid = ? AND removed_at IS NULL", (udid,)
        )
        return cur.fetchone()[0]

    @staticmethod
    def _insert(
        conn: sqlite3.Connection, udid: str, request_type: str, body: bytes, command_uuid: Optional[str]
    ) -> str:
        cid = command_uuid or str(uuid4())
        command = Command(uuid=cid, udid=udid, request_type=request_type, body=body)
        conn.execute(
            """
            INSERT INTO commands (uuid, udid, request_type, body, created_at, removed_at)
            VALUES (?, ?, ?, ?, ?, NULL)
            """,
            (cid, udid, request_type, body, command.created_at.isoformat()),
        )
        return cid

    def create(
        self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str] = None
    ) -> str:
        with self.db.transaction() as conn:
            return self._insert(conn, udid, request_type, body, command_uuid)

    def create_if_empty(
        self, udid: str, request_type: str, body: bytes, command_uuid: Optional[str] = None
    ) -> Tuple[Optional[str], int]:
        with self.db.transaction() as conn:
            remaining = self._count(conn, udid)
            if remaining:
                return None, remaining
            return self._insert(conn, udid, request_type, body, command_uuid), 1

    def next(self, udid: str) -> Tuple[bytes, int]:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                SELECT body FROM commands WHERE udid = ? AND removed_at IS NULL
                ORDER BY id LIMIT 1
                """,
                (udid,),
            )
            row = cur.fetchone()
            if row is None:
                return b"", 0
            return bytes(row["body"] or b""), self._count(conn, udid)

    def remove(self, udid: str, command_uuid: str) -> int:
        now = time.time()
        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE commands SET removed_at = ?
                WHERE udid = ? AND uuid = ? AND removed_at IS NULL
                """,
                (now, udid, command_uuid),
            )
            conn.execute(
                "DELETE FROM commands WHERE removed_at IS NOT NULL AND removed_at < ?",
                (now - self.metadata_retention_seconds,),
            )
            return self._count(conn, udid)

    def find(self, command_uuid: str) -> Command:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "SELECT uuid, udid, request_type, body, created_at FROM commands WHERE uuid = ?",
                (command_uuid,),
            )
            row = cur.fetchone()
        if row is None:
            raise CommandNotFound(f"command {command_uuid} not found")
        return Command(**Database._row_to_dict(row))

    def pending(self, udid: str) -> List[Command]:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                SELECT uuid, udid, request_type, body, created_at FROM commands
                WHERE udid = ? AND removed_at IS NULL ORDER BY id
                """,
                (udid,),
            )
            return [Command(**Database._row_to_dict(row)) for row in cur.fetchall()]


class SQLiteDeviceStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _values(device: Device) -> Tuple[Any, ...]:
        data = device.model_dump()
        if data["last_checkin"] is not None:
            data["last_checkin"] = data["last_checkin"].isoformat()
        return tuple(data[c] for c in DEVICE_COLUMNS)

    def add(self, device: Device) -> None:
        placeholders = ", ".join("?" for _ in DEVICE_COLUMNS)
        with self.db.transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO devices ({', '.join(DEVICE_COLUMNS)}) VALUES ({placeholders})",
                self._values(device),
            )

    def get_by_udid(self, udid: str) -> Device:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM devices WHERE udid = ?", (udid,)).fetchone()
        if row is None:
            raise DeviceNotFound(f"no device with udid {udid}")
        return Device(**Database._row_to_dict(row))

    def devices(
        self, serial_number: Optional[str] = None, udid: Optional[str] = None
    ) -> List[Device]:
        where: List[str] = []
        params: List[str] = []
        if udid:
            where.append("udid = ?")
            params.append(udid)
        if serial_number:
            where.append("serial_number = ?")
            params.append(serial_number)
        if not where:
            return []
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"SELECT * FROM devices WHERE {' OR '.join(where)} ORDER BY rowid", params
            )
            return [Device(**Database._row_to_dict(row)) for row in cur.fetchall()]

    def save(self, device: Device) -> None:
        assignments = ", ".join(f"{c} = ?" for c in DEVICE_COLUMNS[1:])
        values = self._values(device)
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE devices SET {assignments} WHERE udid = ?", values[1:] + (values[0],)
            )
            if cur.rowcount == 0:
                raise DeviceNotFound(f"no device with udid {device.udid}")

    def save_query_responses(self, device: Device) -> None:
        data = device.model_dump(include=set(QUERY_RESPONSE_FIELDS))
        if data["last_checkin"] is not None:
            data["last_checkin"] = data["last_checkin"].isoformat()
        assignments = ", ".join(f"{c} = ?" for c in QUERY_RESPONSE_FIELDS)
        values = tuple(data[c] for c in QUERY_RESPONSE_FIELDS) + (device.udid,)
        with self.db.transaction() as conn:
            cur = conn.execute(f"UPDATE devices SET {assignments} WHERE udid = ?", values)
            if cur.rowcount == 0:
                raise DeviceNotFound(f"no device with udid {device.udid}")

    def set_awaiting_configuration(self, udid: str, awaiting: bool) -> None:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE devices SET awaiting_configuration = ? WHERE udid = ?", (awaiting, udid)
            )
            if cur.rowcount == 0:
                raise DeviceNotFound(f"no device with udid {udid}")


class SQLiteApplicationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _insert(conn: sqlite3.Connection, app: DeviceApplication) -> None:
        conn.execute(
            """
            INSERT INTO device_applications
                (device_uuid, name, identifier, short_version, version, bundle_size, dynamic_size)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                app.device_uuid,
                app.name,
                app.identifier,
                app.short_version,
                app.version,
                app.bundle_size,
                app.dynamic_size,
            ),
        )

    def device_applications(self, device_uuid: str) -> List[DeviceApplication]:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                SELECT device_uuid, name, identifier, short_version, version, bundle_size, dynamic_size
                FROM device_applications WHERE device_uuid = ? ORDER BY id
                """,
                (device_uuid,),
            )
            return [DeviceApplication(**Database._row_to_dict(row)) for row in cur.fetchall()]

    def delete_device_applications(self, device_uuid: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM device_applications WHERE device_uuid = ?", (device_uuid,))

    def new_device_app(self, app: DeviceApplication) -> None:
        with self.db.transaction() as conn:
            self._insert(conn, app)

    def replace_device_applications(
        self, device_uuid: str, apps: Iterable[DeviceApplication]
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM device_applications WHERE device_uuid = ?", (device_uuid,))
            for app in apps:
                self._insert(conn, app)


class SQLiteCertificateStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _insert(conn: sqlite3.Connection, cert: Certificate) -> None:
        conn.execute(
            "INSERT INTO certificates (device_uuid, common_name, is_identity, data) VALUES (?, ?, ?, ?)",
            (cert.device_uuid, cert.common_name, cert.is_identity, cert.data),
        )

    def device_certificates(self, device_uuid: str) -> List[Certificate]:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                SELECT device_uuid, common_name, is_identity, data
                FROM certificates WHERE device_uuid = ? ORDER BY id
                """,
                (device_uuid,),
            )
            return [Certificate(**Database._row_to_dict(row)) for row in cur.fetchall()]

    def delete_device_certificates(self, device_uuid: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM certificates WHERE device_uuid = ?", (device_uuid,))

    def new_certificate(self, cert: Certificate) -> None:
        with self.db.transaction() as conn:
            self._insert(conn, cert)

    def replace_certificates_by_device_uuid(
        self, device_uuid: str, certs: Iterable[Certificate]
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM certificates WHERE device_uuid = ?", (device_uuid,))
            for cert in certs:
                self._insert(conn, cert)
