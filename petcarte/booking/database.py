"""Database utilities for the PetCarte reservation engine."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import Conflict
from .logging_config import get_logger

SCHEMA_VERSION = 1

logger = get_logger(__name__)


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path, *, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    The connection runs in autocommit mode; multi-statement units of work go
    through :func:`transaction`, which takes the write lock up front.
    """

    conn = sqlite3.connect(path, isolation_level=None, timeout=busy_timeout_ms / 1000)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    return conn


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one serialized write transaction.

    ``BEGIN IMMEDIATE`` acquires the database write lock before the first
    read, so check-then-act sequences (capacity counts, room conflicts,
    ticket balances) cannot interleave with another writer. Any exception
    rolls the whole block back. Lock contention that outlasts the busy
    timeout is reported as :class:`Conflict`.
    """

    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        if _is_lock_error(exc):
            logger.warning("Write lock unavailable: %s", exc)
            raise Conflict() from exc
        raise
    try:
        yield conn
    except sqlite3.OperationalError as exc:
        conn.execute("ROLLBACK")
        if _is_lock_error(exc):
            logger.warning("Transaction aborted by lock contention: %s", exc)
            raise Conflict() from exc
        raise
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS stores (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            address TEXT,
            business_hours TEXT NOT NULL DEFAULT '{}',
            closed_days TEXT NOT NULL DEFAULT '[]',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS store_settings (
            store_id INTEGER PRIMARY KEY,
            max_capacity INTEGER NOT NULL CHECK (max_capacity >= 1),
            hotel_checkin_time TEXT DEFAULT '10:00',
            hotel_checkout_time TEXT DEFAULT '18:00',
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(store_id) REFERENCES stores(id)
        );

        CREATE TABLE IF NOT EXISTS owners (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            store_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            phone TEXT,
            email TEXT,
            line_user_id TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(store_id) REFERENCES stores(id)
        );

        CREATE TABLE IF NOT EXISTS dogs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            breed TEXT,
            birth_date TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(owner_id) REFERENCES owners(id)
        );

        CREATE TABLE IF NOT EXISTS contracts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            dog_id INTEGER NOT NULL,
            contract_type TEXT NOT NULL CHECK (contract_type IN ('ticket', 'monthly')),
            course_name TEXT,
            total_sessions INTEGER,
            remaining_sessions INTEGER CHECK (remaining_sessions IS NULL OR remaining_sessions >= 0),
            monthly_sessions INTEGER,
            valid_until TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(dog_id) REFERENCES dogs(id)
        );

        CREATE TABLE IF NOT EXISTS hotel_rooms (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            store_id INTEGER NOT NULL,
            room_name TEXT NOT NULL,
            room_size TEXT NOT NULL CHECK (room_size IN ('small', 'medium', 'large')),
            capacity INTEGER NOT NULL DEFAULT 1 CHECK (capacity >= 1),
            enabled INTEGER NOT NULL DEFAULT 1,
            display_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(store_id) REFERENCES stores(id)
        );

        CREATE TABLE IF NOT EXISTS reservations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            store_id INTEGER NOT NULL,
            dog_id INTEGER NOT NULL,
            service_type TEXT NOT NULL DEFAULT 'daycare'
                CHECK (service_type IN ('daycare', 'grooming', 'hotel')),
            reservation_date TEXT NOT NULL,
            reservation_time TEXT NOT NULL DEFAULT '09:00',
            end_datetime TEXT,
            status TEXT NOT NULL DEFAULT 'scheduled'
                CHECK (status IN ('scheduled', 'checked_in', 'checked_out', 'cancelled')),
            room_id INTEGER,
            service_details TEXT,
            notes TEXT,
            checked_in_at TEXT,
            checked_out_at TEXT,
            cancelled_at TEXT,
            deleted_at TEXT,
            created_by TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(store_id) REFERENCES stores(id),
            FOREIGN KEY(dog_id) REFERENCES dogs(id),
            FOREIGN KEY(room_id) REFERENCES hotel_rooms(id)
        );

        CREATE INDEX IF NOT EXISTS idx_reservations_store_date
            ON reservations(store_id, reservation_date);
        CREATE INDEX IF NOT EXISTS idx_reservations_room
            ON reservations(room_id);

        CREATE TABLE IF NOT EXISTS pre_visit_inputs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reservation_id INTEGER NOT NULL UNIQUE,
            health_status TEXT,
            breakfast_status TEXT,
            morning_urination INTEGER,
            morning_defecation INTEGER,
            notes TEXT,
            details TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(reservation_id) REFERENCES reservations(id)
        );

        CREATE TABLE IF NOT EXISTS ticket_ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reservation_id INTEGER NOT NULL UNIQUE,
            dog_id INTEGER NOT NULL,
            contract_id INTEGER,
            effect TEXT NOT NULL CHECK (effect IN ('consumed', 'none')),
            consumed_at TEXT NOT NULL,
            restored_at TEXT,
            FOREIGN KEY(reservation_id) REFERENCES reservations(id),
            FOREIGN KEY(dog_id) REFERENCES dogs(id),
            FOREIGN KEY(contract_id) REFERENCES contracts(id)
        );
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default
