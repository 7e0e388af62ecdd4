"""Core orchestration logic for the PetCarte reservation engine."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Callable, Iterable

from .availability import AvailabilityService
from .capacity import WEEKDAY_NAMES, CapacityEvaluator, parse_clock_time
from .config import (
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_MAX_CAPACITY,
    DEFAULT_OWNER_TOKEN_HOURS,
    DEFAULT_QR_VALIDITY_DAYS,
    Settings,
)
from .database import get_connection, get_metadata, initialize_database, transaction
from .errors import NotFound, ValidationError
from .identity import ClaimReader
from .ledger import TicketLedger
from .lifecycle import ReservationManager, ReservationStatus
from .logging_config import get_logger
from .qr import QRTokenService

ROOM_SIZES = ("small", "medium", "large")

logger = get_logger(__name__)


class PetCareSystem:
    """High level façade that wires the booking components to one connection."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        secret_key: str,
        default_max_capacity: int = DEFAULT_MAX_CAPACITY,
        require_contract: bool = False,
        qr_validity_days: int = DEFAULT_QR_VALIDITY_DAYS,
        owner_token_hours: int = DEFAULT_OWNER_TOKEN_HOURS,
        clock: Callable[[], dt.datetime] | None = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        initialize: bool = True,
    ) -> None:
        self.conn = get_connection(db_path, busy_timeout_ms=busy_timeout_ms)
        if initialize:
            initialize_database(self.conn)
        self.capacity = CapacityEvaluator(self.conn, default_max_capacity=default_max_capacity)
        self.ledger = TicketLedger(self.conn, require_contract=require_contract, clock=clock)
        self.qr = QRTokenService(secret_key, validity_days=qr_validity_days)
        self.claims = ClaimReader(secret_key, owner_token_hours=owner_token_hours)
        self.reservations = ReservationManager(
            self.conn,
            capacity=self.capacity,
            ledger=self.ledger,
            qr=self.qr,
            clock=clock,
        )
        self.availability = AvailabilityService(self.capacity)

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Stores & settings
    # ------------------------------------------------------------------
    def create_store(
        self,
        *,
        name: str,
        address: str | None = None,
        business_hours: dict[str, Any] | None = None,
        closed_days: Iterable[str] = (),
        max_capacity: int | None = None,
    ) -> dict:
        if not name:
            raise ValidationError("Store name is required")
        closed = self._normalise_closed_days(closed_days)
        cur = self.conn.execute(
            "INSERT INTO stores(name, address, business_hours, closed_days) VALUES (?, ?, ?, ?)",
            (name, address, json.dumps(business_hours or {}), json.dumps(closed)),
        )
        store_id = cur.lastrowid
        if max_capacity is not None:
            self.update_store_settings(store_id, max_capacity=max_capacity)
        return self.get_store(store_id)

    @staticmethod
    def _normalise_closed_days(closed_days: Iterable[str]) -> list[str]:
        closed = [str(day).strip().lower() for day in closed_days]
        unknown = [day for day in closed if day not in WEEKDAY_NAMES]
        if unknown:
            raise ValidationError(f"Unknown weekday(s): {', '.join(unknown)}")
        return closed

    def get_store(self, store_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM stores WHERE id = ?", (store_id,)).fetchone()
        if not row:
            raise NotFound("Store not found")
        row["business_hours"] = json.loads(row["business_hours"] or "{}")
        row["closed_days"] = json.loads(row["closed_days"] or "[]")
        return row

    def get_store_settings(self, store_id: int) -> dict:
        config = self.capacity.store_config(store_id)
        row = self.conn.execute(
            "SELECT * FROM store_settings WHERE store_id = ?", (store_id,)
        ).fetchone() or {}
        return {
            "store_id": store_id,
            "max_capacity": config.max_capacity,
            "hotel_checkin_time": row.get("hotel_checkin_time", "10:00"),
            "hotel_checkout_time": row.get("hotel_checkout_time", "18:00"),
            "business_hours": config.business_hours,
            "closed_days": list(config.closed_days),
        }

    def update_store_settings(
        self,
        store_id: int,
        *,
        max_capacity: int | None = None,
        hotel_checkin_time: str | None = None,
        hotel_checkout_time: str | None = None,
        business_hours: dict[str, Any] | None = None,
        closed_days: Iterable[str] | None = None,
    ) -> dict:
        current = self.get_store_settings(store_id)
        if max_capacity is None:
            max_capacity = current["max_capacity"]
        if not isinstance(max_capacity, int) or isinstance(max_capacity, bool) or max_capacity < 1:
            raise ValidationError("max_capacity must be an integer of at least 1")
        checkin_time = parse_clock_time(
            hotel_checkin_time or current["hotel_checkin_time"], "hotel_checkin_time"
        )
        checkout_time = parse_clock_time(
            hotel_checkout_time or current["hotel_checkout_time"], "hotel_checkout_time"
        )
        with transaction(self.conn):
            self.conn.execute(
                """
                INSERT INTO store_settings(
                    store_id, max_capacity, hotel_checkin_time, hotel_checkout_time, updated_at
                ) VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(store_id) DO UPDATE SET
                    max_capacity = excluded.max_capacity,
                    hotel_checkin_time = excluded.hotel_checkin_time,
                    hotel_checkout_time = excluded.hotel_checkout_time,
                    updated_at = excluded.updated_at
                """,
                (store_id, max_capacity, checkin_time, checkout_time),
            )
            if business_hours is not None:
                self.conn.execute(
                    "UPDATE stores SET business_hours = ? WHERE id = ?",
                    (json.dumps(business_hours), store_id),
                )
            if closed_days is not None:
                self.conn.execute(
                    "UPDATE stores SET closed_days = ? WHERE id = ?",
                    (json.dumps(self._normalise_closed_days(closed_days)), store_id),
                )
        logger.info(
            "Store settings updated",
            extra={"store_id": store_id, "max_capacity": max_capacity},
        )
        return self.get_store_settings(store_id)

    # ------------------------------------------------------------------
    # Owners & dogs
    # ------------------------------------------------------------------
    def register_owner(
        self,
        *,
        store_id: int,
        name: str,
        phone: str | None = None,
        email: str | None = None,
        line_user_id: str | None = None,
    ) -> dict:
        self.get_store(store_id)
        cur = self.conn.execute(
            """
            INSERT INTO owners(store_id, name, phone, email, line_user_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (store_id, name, phone, email.lower() if email else None, line_user_id),
        )
        return self.get_owner(cur.lastrowid)

    def get_owner(self, owner_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM owners WHERE id = ?", (owner_id,)).fetchone()
        if not row:
            raise NotFound("Owner not found")
        return row

    def add_dog(
        self,
        *,
        owner_id: int,
        name: str,
        breed: str | None = None,
        birth_date: str | None = None,
    ) -> dict:
        self.get_owner(owner_id)
        cur = self.conn.execute(
            "INSERT INTO dogs(owner_id, name, breed, birth_date) VALUES (?, ?, ?, ?)",
            (owner_id, name, breed, birth_date),
        )
        return self.get_dog(cur.lastrowid)

    def get_dog(self, dog_id: int, *, store_id: int | None = None) -> dict:
        """Return a dog with its tenant; ``store_id`` hides other tenants' dogs."""

        row = self.conn.execute(
            """
            SELECT dogs.*, owners.store_id AS store_id
            FROM dogs JOIN owners ON owners.id = dogs.owner_id
            WHERE dogs.id = ?
            """,
            (dog_id,),
        ).fetchone()
        if not row or (store_id is not None and row["store_id"] != store_id):
            raise NotFound("Dog not found")
        return row

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------
    def open_contract(self, *, store_id: int, dog_id: int, **fields: Any) -> dict:
        self.get_dog(dog_id, store_id=store_id)
        contract = self.ledger.open_contract(dog_id=dog_id, **fields)
        logger.info(
            "Contract opened",
            extra={
                "contract_id": contract["id"],
                "dog_id": dog_id,
                "contract_type": contract["contract_type"],
            },
        )
        return contract

    def list_contracts(self, *, store_id: int, dog_id: int) -> list[dict]:
        self.get_dog(dog_id, store_id=store_id)
        return self.ledger.list_contracts(dog_id=dog_id)

    def _store_contract(self, contract_id: int, store_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT contracts.*,
                   dogs.name AS dog_name,
                   dogs.owner_id AS owner_id,
                   owners.name AS owner_name,
                   owners.store_id AS store_id
            FROM contracts
            JOIN dogs ON dogs.id = contracts.dog_id
            JOIN owners ON owners.id = dogs.owner_id
            WHERE contracts.id = ? AND owners.store_id = ?
            """,
            (contract_id, store_id),
        ).fetchone()
        if not row:
            raise NotFound("Contract not found")
        return row

    def get_contract(self, contract_id: int, *, store_id: int) -> dict:
        """A contract with its dog, owner and the sessions charged to it."""

        contract = self._store_contract(contract_id, store_id)
        contract["usage"] = self.ledger.contract_usage(contract_id)
        return contract

    def update_contract(self, contract_id: int, *, store_id: int, **fields: Any) -> dict:
        with transaction(self.conn):
            self._store_contract(contract_id, store_id)
            self.ledger.update_contract(contract_id, **fields)
        return self._store_contract(contract_id, store_id)

    def delete_contract(self, contract_id: int, *, store_id: int) -> None:
        with transaction(self.conn):
            self._store_contract(contract_id, store_id)
            self.ledger.delete_contract(contract_id)

    # ------------------------------------------------------------------
    # Hotel rooms
    # ------------------------------------------------------------------
    def create_hotel_room(
        self,
        *,
        store_id: int,
        room_name: str,
        room_size: str,
        capacity: int = 1,
        enabled: bool = True,
        display_order: int = 0,
    ) -> dict:
        self.get_store(store_id)
        if not room_name:
            raise ValidationError("room_name is required")
        if room_size not in ROOM_SIZES:
            raise ValidationError("room_size must be small, medium or large")
        if capacity < 1:
            raise ValidationError("capacity must be at least 1")
        cur = self.conn.execute(
            """
            INSERT INTO hotel_rooms(store_id, room_name, room_size, capacity, enabled, display_order)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (store_id, room_name, room_size, capacity, int(enabled), display_order),
        )
        return self.get_hotel_room(cur.lastrowid, store_id=store_id)

    def get_hotel_room(self, room_id: int, *, store_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM hotel_rooms WHERE id = ? AND store_id = ?", (room_id, store_id)
        ).fetchone()
        if not row:
            raise NotFound("Hotel room not found")
        row["enabled"] = bool(row["enabled"])
        return row

    def list_hotel_rooms(self, *, store_id: int, include_disabled: bool = True) -> list[dict]:
        where = "WHERE store_id = ?"
        if not include_disabled:
            where += " AND enabled = 1"
        rows = self.conn.execute(
            "SELECT * FROM hotel_rooms " + where + " ORDER BY display_order, id",
            (store_id,),
        ).fetchall()
        for row in rows:
            row["enabled"] = bool(row["enabled"])
        return rows

    def update_hotel_room(self, room_id: int, *, store_id: int, **changes: Any) -> dict:
        room = self.get_hotel_room(room_id, store_id=store_id)
        allowed = {"room_name", "room_size", "capacity", "enabled", "display_order"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
        updates = {key: value for key, value in changes.items() if value is not None}
        if "room_size" in updates and updates["room_size"] not in ROOM_SIZES:
            raise ValidationError("room_size must be small, medium or large")
        if "capacity" in updates and updates["capacity"] < 1:
            raise ValidationError("capacity must be at least 1")
        if "enabled" in updates:
            updates["enabled"] = int(bool(updates["enabled"]))
        if not updates:
            return room
        assignments = ", ".join(f"{key} = ?" for key in updates)
        self.conn.execute(
            f"UPDATE hotel_rooms SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [*updates.values(), room_id],
        )
        return self.get_hotel_room(room_id, store_id=store_id)

    def delete_hotel_room(self, room_id: int, *, store_id: int) -> str:
        """Delete a room unless it still holds live reservations.

        Cancelled and soft-deleted bookings let go of the room, which is then
        removed. A room with completed stays is retired (disabled) so those
        stays keep their room. Returns ``"deleted"`` or ``"retired"``.
        """

        with transaction(self.conn):
            self.get_hotel_room(room_id, store_id=store_id)
            active = self.conn.execute(
                """
                SELECT COUNT(*) AS total FROM reservations
                WHERE room_id = ? AND status IN (?, ?) AND deleted_at IS NULL
                """,
                (
                    room_id,
                    ReservationStatus.SCHEDULED.value,
                    ReservationStatus.CHECKED_IN.value,
                ),
            ).fetchone()["total"]
            if active:
                raise ValidationError("This room has active reservations and cannot be deleted")
            completed = self.conn.execute(
                """
                SELECT COUNT(*) AS total FROM reservations
                WHERE room_id = ? AND status = ? AND deleted_at IS NULL
                """,
                (room_id, ReservationStatus.CHECKED_OUT.value),
            ).fetchone()["total"]
            if completed:
                self.conn.execute(
                    "UPDATE hotel_rooms SET enabled = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (room_id,),
                )
                outcome = "retired"
            else:
                self.conn.execute(
                    "UPDATE reservations SET room_id = NULL WHERE room_id = ?", (room_id,)
                )
                self.conn.execute("DELETE FROM hotel_rooms WHERE id = ?", (room_id,))
                outcome = "deleted"
        logger.info(
            "Hotel room %s",
            outcome,
            extra={"room_id": room_id, "store_id": store_id, "outcome": outcome},
        )
        return outcome

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    def schema_version(self) -> int:
        return int(get_metadata(self.conn, "schema_version", "0"))


def open_system(settings: Settings, *, initialize: bool = False, **overrides: Any) -> PetCareSystem:
    """Build a :class:`PetCareSystem` from :class:`~petcarte.booking.config.Settings`."""

    options: dict[str, Any] = {
        "secret_key": settings.secret_key,
        "default_max_capacity": settings.default_max_capacity,
        "require_contract": settings.require_contract,
        "qr_validity_days": settings.qr_validity_days,
        "owner_token_hours": settings.owner_token_hours,
        "busy_timeout_ms": settings.busy_timeout_ms,
        "initialize": initialize,
    }
    options.update(overrides)
    return PetCareSystem(settings.database_path, **options)


