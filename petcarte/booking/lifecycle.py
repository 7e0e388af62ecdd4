"""Reservation state machine and the operations that drive it."""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
from enum import Enum
from typing import Any, Callable

from .capacity import (
    CapacityEvaluator,
    format_stay_datetime,
    parse_clock_time,
    parse_day,
    parse_month,
    parse_stay_datetime,
)
from .database import transaction
from .errors import (
    CapacityExceeded,
    Forbidden,
    InsufficientTicket,
    InvalidStateTransition,
    NotFound,
    RoomConflict,
    ValidationError,
)
from .identity import CallerIdentity
from .ledger import NO_CONTRACT, TicketLedger
from .logging_config import get_logger
from .qr import QRTokenService

DEFAULT_RESERVATION_TIME = "09:00"

logger = get_logger(__name__)


class ReservationStatus(str, Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


class ServiceKind(str, Enum):
    DAYCARE = "daycare"
    GROOMING = "grooming"
    HOTEL = "hotel"


TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.SCHEDULED: frozenset(
        {ReservationStatus.CHECKED_IN, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.CHECKED_IN: frozenset(
        {ReservationStatus.CHECKED_OUT, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.CHECKED_OUT: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    """Raise unless ``current -> target`` is an edge of the state machine."""

    if target not in TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Reservation cannot move from {current.value} to {target.value}"
        )


def service_kind(value: str | ServiceKind | None) -> ServiceKind:
    if not value:
        raise ValidationError("service_type is required")
    try:
        return ServiceKind(value)
    except ValueError as exc:
        raise ValidationError(
            "service_type must be one of daycare, grooming, hotel"
        ) from exc


def optional_text(value: Any, field_name: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(f"{field_name} must be a string")


RESERVATION_SELECT = """
    SELECT reservations.*,
           dogs.name AS dog_name,
           dogs.owner_id AS owner_id,
           CASE WHEN pre_visit_inputs.id IS NOT NULL THEN 1 ELSE 0 END AS has_pre_visit_input
    FROM reservations
    JOIN dogs ON dogs.id = reservations.dog_id
    LEFT JOIN pre_visit_inputs ON pre_visit_inputs.reservation_id = reservations.id
"""


class ReservationManager:
    """Owns every reservation status change.

    Each mutating operation runs in one :func:`transaction`, so the capacity
    read, the ledger effect and the status write commit together or not at
    all.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        capacity: CapacityEvaluator,
        ledger: TicketLedger,
        qr: QRTokenService,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.conn = conn
        self.capacity = capacity
        self.ledger = ledger
        self.qr = qr
        self._clock = clock or dt.datetime.now

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _now(self) -> str:
        return self._clock().replace(microsecond=0).isoformat()

    def _today(self) -> dt.date:
        return self._clock().date()

    @staticmethod
    def _present(row: dict) -> dict:
        row["has_pre_visit_input"] = bool(row.get("has_pre_visit_input"))
        if row.get("service_details"):
            row["service_details"] = json.loads(row["service_details"])
        return row

    def _load_dog(self, identity: CallerIdentity, dog_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT dogs.*, owners.store_id AS store_id
            FROM dogs
            JOIN owners ON owners.id = dogs.owner_id
            WHERE dogs.id = ?
            """,
            (dog_id,),
        ).fetchone()
        if not row:
            raise NotFound("Dog not found")
        if row["store_id"] != identity.store_id:
            raise Forbidden("You do not have permission to book this dog")
        if identity.is_owner and row["owner_id"] != identity.owner_id:
            raise Forbidden("You do not have permission to book this dog")
        return row

    def _load(self, identity: CallerIdentity, reservation_id: int) -> dict:
        row = self.conn.execute(
            RESERVATION_SELECT
            + " WHERE reservations.id = ? AND reservations.deleted_at IS NULL",
            (reservation_id,),
        ).fetchone()
        if not row or row["store_id"] != identity.store_id:
            raise NotFound("Reservation not found")
        if identity.is_owner and row["owner_id"] != identity.owner_id:
            raise Forbidden("You do not have permission to access this reservation")
        return row

    def _require_room(self, store_id: int, room_id: int) -> dict:
        room = self.conn.execute(
            "SELECT * FROM hotel_rooms WHERE id = ? AND store_id = ?",
            (room_id, store_id),
        ).fetchone()
        if not room:
            raise NotFound("Hotel room not found")
        if not room["enabled"]:
            raise RoomConflict("This room is not accepting bookings")
        return room

    def _assert_day_bookable(self, store_id: int, day: dt.date) -> None:
        day_capacity = self.capacity.remaining_capacity(store_id, day)
        if day_capacity.is_closed:
            raise CapacityExceeded("The store is closed on this day")
        if day_capacity.available <= 0:
            raise CapacityExceeded()

    def _assert_ticket_available(self, dog_id: int) -> None:
        check = self.ledger.can_consume(dog_id)
        if not check.ok:
            if check.reason == NO_CONTRACT:
                raise InsufficientTicket("This dog has no active contract")
            raise InsufficientTicket()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, identity: CallerIdentity, reservation_id: int) -> dict:
        row = self._present(self._load(identity, reservation_id))
        if identity.is_staff:
            row.update(self._visit_summary(row))
        return row

    def _visit_summary(self, row: dict) -> dict:
        """Which visit this is for the dog, and when the dog comes next."""

        visits = self.conn.execute(
            """
            SELECT COUNT(*) AS total FROM reservations
            WHERE dog_id = ? AND store_id = ? AND reservation_date <= ?
              AND status != ? AND deleted_at IS NULL
            """,
            (
                row["dog_id"],
                row["store_id"],
                row["reservation_date"],
                ReservationStatus.CANCELLED.value,
            ),
        ).fetchone()["total"]
        upcoming = self.conn.execute(
            """
            SELECT reservation_date FROM reservations
            WHERE dog_id = ? AND store_id = ? AND reservation_date > ?
              AND status = ? AND deleted_at IS NULL
            ORDER BY reservation_date
            LIMIT 1
            """,
            (
                row["dog_id"],
                row["store_id"],
                row["reservation_date"],
                ReservationStatus.SCHEDULED.value,
            ),
        ).fetchone()
        return {
            "visit_count": visits or 1,
            "next_visit_date": upcoming["reservation_date"] if upcoming else None,
        }

    def list_for(
        self,
        identity: CallerIdentity,
        *,
        month: str | None = None,
        service_type: str | None = None,
    ) -> list[dict]:
        """Return the caller's reservations, newest first.

        Owners see their own dogs; staff see the whole store.
        """

        where = ["reservations.store_id = ?", "reservations.deleted_at IS NULL"]
        params: list[Any] = [identity.store_id]
        if identity.is_owner:
            where.append("dogs.owner_id = ?")
            params.append(identity.owner_id)
        if month:
            first, days = parse_month(month)
            where.append("reservations.reservation_date >= ? AND reservations.reservation_date < ?")
            params.extend([first.isoformat(), (first + dt.timedelta(days=days)).isoformat()])
        if service_type:
            where.append("reservations.service_type = ?")
            params.append(service_kind(service_type).value)
        rows = self.conn.execute(
            RESERVATION_SELECT
            + " WHERE "
            + " AND ".join(where)
            + " ORDER BY reservations.reservation_date DESC, reservations.reservation_time DESC",
            params,
        ).fetchall()
        return [self._present(row) for row in rows]

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------
    def create(
        self,
        identity: CallerIdentity,
        *,
        dog_id: int,
        reservation_date: str | dt.date,
        service_type: str | ServiceKind,
        reservation_time: str | None = None,
        service_details: dict | None = None,
        room_id: int | None = None,
        end_datetime: str | dt.datetime | None = None,
        notes: str | None = None,
    ) -> dict:
        """Admit a new booking.

        Checks run in the order ownership, daycare capacity, hotel room,
        ticket balance, so the caller sees the most upstream reason first.
        No session is debited here; that happens at check-in.
        """

        kind = service_kind(service_type)
        day = parse_day(reservation_date, "reservation_date")
        notes = optional_text(notes, "notes")
        time_value = parse_clock_time(
            reservation_time or DEFAULT_RESERVATION_TIME, "reservation_time"
        )
        stay_end: dt.datetime | None = None
        if kind is ServiceKind.HOTEL:
            if room_id is None:
                raise ValidationError("room_id is required for hotel reservations")
            if not end_datetime:
                raise ValidationError("end_datetime is required for hotel reservations")
            stay_end = parse_stay_datetime(end_datetime, "end_datetime")
        else:
            room_id = None

        with transaction(self.conn):
            self._load_dog(identity, dog_id)
            store_id = identity.store_id

            if kind is ServiceKind.DAYCARE:
                self._assert_day_bookable(store_id, day)

            if kind is ServiceKind.HOTEL:
                stay_start = dt.datetime.combine(day, dt.time.fromisoformat(time_value))
                if stay_end <= stay_start:
                    raise ValidationError("Checkout must be after check-in")
                self._require_room(store_id, room_id)
                if not self.capacity.room_is_available(room_id, stay_start, stay_end):
                    raise RoomConflict()

            self._assert_ticket_available(dog_id)

            now = self._now()
            cur = self.conn.execute(
                """
                INSERT INTO reservations(
                    store_id, dog_id, service_type, reservation_date, reservation_time,
                    end_datetime, status, room_id, service_details, notes, created_by,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    store_id,
                    dog_id,
                    kind.value,
                    day.isoformat(),
                    time_value,
                    format_stay_datetime(stay_end) if stay_end else None,
                    ReservationStatus.SCHEDULED.value,
                    room_id,
                    json.dumps(service_details) if service_details else None,
                    notes,
                    identity.actor,
                    now,
                    now,
                ),
            )
            reservation_id = cur.lastrowid

        logger.info(
            "Reservation created",
            extra={
                "reservation_id": reservation_id,
                "store_id": store_id,
                "dog_id": dog_id,
                "service_type": kind.value,
            },
        )
        return self.get(identity, reservation_id)

    def edit(
        self,
        identity: CallerIdentity,
        reservation_id: int,
        *,
        reservation_date: str | dt.date | None = None,
        reservation_time: str | None = None,
        notes: str | None = None,
    ) -> dict:
        notes = optional_text(notes, "notes")
        with transaction(self.conn):
            row = self._load(identity, reservation_id)
            if ReservationStatus(row["status"]) is not ReservationStatus.SCHEDULED:
                raise InvalidStateTransition("Only scheduled reservations can be changed")

            old_day = parse_day(row["reservation_date"])
            new_day = (
                parse_day(reservation_date, "reservation_date")
                if reservation_date is not None
                else old_day
            )
            new_time = (
                parse_clock_time(reservation_time, "reservation_time")
                if reservation_time is not None
                else row["reservation_time"]
            )
            kind = ServiceKind(row["service_type"])

            if kind is ServiceKind.DAYCARE and new_day != old_day:
                self._assert_day_bookable(row["store_id"], new_day)

            if kind is ServiceKind.HOTEL and (new_day, new_time) != (
                old_day,
                row["reservation_time"],
            ):
                stay_start = dt.datetime.combine(new_day, dt.time.fromisoformat(new_time))
                stay_end = parse_stay_datetime(row["end_datetime"])
                if stay_end <= stay_start:
                    raise ValidationError("Checkout must be after check-in")
                if not self.capacity.room_is_available(
                    row["room_id"], stay_start, stay_end, exclude_reservation_id=reservation_id
                ):
                    raise RoomConflict()

            self.conn.execute(
                """
                UPDATE reservations
                SET reservation_date = ?, reservation_time = ?,
                    notes = COALESCE(?, notes), updated_at = ?
                WHERE id = ?
                """,
                (new_day.isoformat(), new_time, notes, self._now(), reservation_id),
            )

        logger.info("Reservation updated", extra={"reservation_id": reservation_id})
        return self.get(identity, reservation_id)

    def cancel(self, identity: CallerIdentity, reservation_id: int) -> dict:
        """Cancel a reservation, giving back any session debited at check-in."""

        with transaction(self.conn):
            row = self._load(identity, reservation_id)
            status = ReservationStatus(row["status"])
            if identity.is_owner and status is ReservationStatus.CHECKED_IN:
                raise InvalidStateTransition(
                    "Checked-in reservations can only be cancelled by the store"
                )
            ensure_transition(status, ReservationStatus.CANCELLED)
            now = self._now()
            self.conn.execute(
                """
                UPDATE reservations
                SET status = ?, cancelled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (ReservationStatus.CANCELLED.value, now, now, reservation_id),
            )
            if self.ledger.get_entry(reservation_id) is not None:
                self.ledger.restore(row["dog_id"], reservation_id)

        logger.info(
            "Reservation cancelled",
            extra={"reservation_id": reservation_id, "previous_status": status.value},
        )
        return self.get(identity, reservation_id)

    # ------------------------------------------------------------------
    # Check-in / check-out
    # ------------------------------------------------------------------
    def check_in(self, identity: CallerIdentity, reservation_id: int, qr_code: str) -> dict:
        self.qr.decode(qr_code)
        with transaction(self.conn):
            row = self._load(identity, reservation_id)
            self.qr.verify(qr_code, row["store_id"])

            status = ReservationStatus(row["status"])
            if status in (ReservationStatus.CHECKED_IN, ReservationStatus.CHECKED_OUT):
                raise InvalidStateTransition("Already checked in")
            ensure_transition(status, ReservationStatus.CHECKED_IN)
            if parse_day(row["reservation_date"]) < self._today():
                raise InvalidStateTransition("This reservation is in the past")

            self._assert_ticket_available(row["dog_id"])

            now = self._now()
            self.conn.execute(
                """
                UPDATE reservations
                SET status = ?, checked_in_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (ReservationStatus.CHECKED_IN.value, now, now, reservation_id),
            )
            self.ledger.consume(row["dog_id"], reservation_id)

        logger.info(
            "Reservation checked in",
            extra={"reservation_id": reservation_id, "store_id": row["store_id"]},
        )
        return self.get(identity, reservation_id)

    def check_out(self, identity: CallerIdentity, reservation_id: int, qr_code: str) -> dict:
        self.qr.decode(qr_code)
        with transaction(self.conn):
            row = self._load(identity, reservation_id)
            self.qr.verify(qr_code, row["store_id"])

            status = ReservationStatus(row["status"])
            if status is ReservationStatus.CHECKED_OUT or row["checked_out_at"]:
                raise InvalidStateTransition("Already checked out")
            if status is not ReservationStatus.CHECKED_IN:
                raise InvalidStateTransition("Not checked in yet")
            ensure_transition(status, ReservationStatus.CHECKED_OUT)

            now = self._now()
            self.conn.execute(
                """
                UPDATE reservations
                SET status = ?, checked_out_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (ReservationStatus.CHECKED_OUT.value, now, now, reservation_id),
            )

        logger.info(
            "Reservation checked out",
            extra={"reservation_id": reservation_id, "store_id": row["store_id"]},
        )
        return self.get(identity, reservation_id)

    # ------------------------------------------------------------------
    # Audit & pre-visit input
    # ------------------------------------------------------------------
    def soft_delete(self, identity: CallerIdentity, reservation_id: int) -> dict:
        """Hide a reservation from every listing and count; the row is kept."""

        identity.require_staff()
        with transaction(self.conn):
            row = self._load(identity, reservation_id)
            now = self._now()
            self.conn.execute(
                "UPDATE reservations SET deleted_at = ?, updated_at = ? WHERE id = ?",
                (now, now, reservation_id),
            )
        logger.info(
            "Reservation soft-deleted",
            extra={"reservation_id": reservation_id, "actor": identity.actor},
        )
        row["deleted_at"] = now
        return self._present(row)

    def submit_pre_visit_input(
        self,
        identity: CallerIdentity,
        reservation_id: int,
        *,
        health_status: str | None = None,
        breakfast_status: str | None = None,
        morning_urination: bool | None = None,
        morning_defecation: bool | None = None,
        notes: str | None = None,
        details: dict | None = None,
    ) -> dict:
        health_status = optional_text(health_status, "health_status")
        breakfast_status = optional_text(breakfast_status, "breakfast_status")
        notes = optional_text(notes, "notes")
        if details is not None and not isinstance(details, dict):
            raise ValidationError("details must be an object")
        with transaction(self.conn):
            row = self._load(identity, reservation_id)
            if ReservationStatus(row["status"]).is_terminal:
                raise InvalidStateTransition("This reservation is already closed")
            now = self._now()
            self.conn.execute(
                """
                INSERT INTO pre_visit_inputs(
                    reservation_id, health_status, breakfast_status, morning_urination,
                    morning_defecation, notes, details, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(reservation_id) DO UPDATE SET
                    health_status = excluded.health_status,
                    breakfast_status = excluded.breakfast_status,
                    morning_urination = excluded.morning_urination,
                    morning_defecation = excluded.morning_defecation,
                    notes = excluded.notes,
                    details = excluded.details,
                    updated_at = excluded.updated_at
                """,
                (
                    reservation_id,
                    health_status,
                    breakfast_status,
                    None if morning_urination is None else int(morning_urination),
                    None if morning_defecation is None else int(morning_defecation),
                    notes,
                    json.dumps(details) if details else None,
                    now,
                    now,
                ),
            )
        return self._pre_visit_row(reservation_id)

    def _pre_visit_row(self, reservation_id: int) -> dict | None:
        pre_visit = self.conn.execute(
            "SELECT * FROM pre_visit_inputs WHERE reservation_id = ?", (reservation_id,)
        ).fetchone()
        if pre_visit and pre_visit.get("details"):
            pre_visit["details"] = json.loads(pre_visit["details"])
        return pre_visit

    def get_pre_visit_input(self, identity: CallerIdentity, reservation_id: int) -> dict:
        self._load(identity, reservation_id)
        pre_visit = self._pre_visit_row(reservation_id)
        if pre_visit is None:
            raise NotFound("Pre-visit input not found")
        return pre_visit

    def latest_pre_visit_input(
        self,
        identity: CallerIdentity,
        dog_id: int,
        *,
        service_type: str | None = None,
    ) -> dict:
        """Most recent input for a dog, used to prefill the next one."""

        self._load_dog(identity, dog_id)
        where = ["reservations.dog_id = ?", "reservations.store_id = ?"]
        params: list[Any] = [dog_id, identity.store_id]
        if service_type:
            where.append("reservations.service_type = ?")
            params.append(service_kind(service_type).value)
        row = self.conn.execute(
            """
            SELECT pre_visit_inputs.*, reservations.service_type AS service_type
            FROM pre_visit_inputs
            JOIN reservations ON reservations.id = pre_visit_inputs.reservation_id
            WHERE """
            + " AND ".join(where)
            + " ORDER BY pre_visit_inputs.updated_at DESC, pre_visit_inputs.id DESC LIMIT 1",
            params,
        ).fetchone()
        if row is None:
            raise NotFound("No previous pre-visit input for this dog")
        if row.get("details"):
            row["details"] = json.loads(row["details"])
        return row
