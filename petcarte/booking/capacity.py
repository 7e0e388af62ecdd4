"""Daycare capacity and hotel room occupancy checks."""

from __future__ import annotations

import calendar
import datetime as dt
import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_MAX_CAPACITY
from .errors import NotFound, ValidationError

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

# Hotel stays are compared as "YYYY-MM-DDTHH:MM" strings; this expression
# rebuilds the check-in side from the date and time columns.
HOTEL_START_SQL = "(reservations.reservation_date || 'T' || reservations.reservation_time)"


def weekday_name(day: dt.date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def format_stay_datetime(value: dt.datetime) -> str:
    return value.replace(second=0, microsecond=0, tzinfo=None).isoformat(timespec="minutes")


def parse_day(value: str | dt.date, field_name: str = "date") -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be YYYY-MM-DD") from exc


def parse_clock_time(value: str | dt.time, field_name: str = "time") -> str:
    """Normalise a wall-clock time to zero padded ``HH:MM``."""

    if isinstance(value, dt.time):
        return value.strftime("%H:%M")
    try:
        return dt.time.fromisoformat(str(value).strip()).strftime("%H:%M")
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be HH:MM") from exc


def parse_stay_datetime(value: str | dt.datetime, field_name: str = "datetime") -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    try:
        parsed = dt.datetime.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO date-time") from exc
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


def parse_month(value: str) -> tuple[dt.date, int]:
    """Return the first day and the number of days of a ``YYYY-MM`` month."""

    try:
        first = dt.datetime.strptime(str(value), "%Y-%m").date()
    except ValueError as exc:
        raise ValidationError("month must be YYYY-MM (e.g. 2026-01)") from exc
    return first, calendar.monthrange(first.year, first.month)[1]


@dataclass(frozen=True)
class StoreCapacityConfig:
    store_id: int
    max_capacity: int
    business_hours: dict[str, Any] = field(default_factory=dict)
    closed_days: tuple[str, ...] = ()

    def is_closed(self, day: dt.date) -> bool:
        return weekday_name(day) in self.closed_days


@dataclass(frozen=True)
class DayCapacity:
    date: dt.date
    available: int
    capacity: int
    is_closed: bool

    @property
    def bookable(self) -> bool:
        return not self.is_closed and self.available > 0

    def as_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "available": self.available,
            "capacity": self.capacity,
            "isClosed": self.is_closed,
        }


class CapacityEvaluator:
    """Read-only view over reservation rows used for admission decisions."""

    def __init__(
        self, conn: sqlite3.Connection, *, default_max_capacity: int = DEFAULT_MAX_CAPACITY
    ) -> None:
        self.conn = conn
        self.default_max_capacity = default_max_capacity

    def store_config(self, store_id: int) -> StoreCapacityConfig:
        row = self.conn.execute(
            """
            SELECT stores.id, stores.business_hours, stores.closed_days,
                   store_settings.max_capacity
            FROM stores
            LEFT JOIN store_settings ON store_settings.store_id = stores.id
            WHERE stores.id = ?
            """,
            (store_id,),
        ).fetchone()
        if not row:
            raise NotFound("Store not found")
        closed_days = json.loads(row["closed_days"] or "[]")
        return StoreCapacityConfig(
            store_id=store_id,
            max_capacity=row["max_capacity"] or self.default_max_capacity,
            business_hours=json.loads(row["business_hours"] or "{}"),
            closed_days=tuple(str(day).lower() for day in closed_days),
        )

    def active_reservation_count(self, store_id: int, day: dt.date) -> int:
        """Count daycare reservations that still hold a slot on ``day``."""

        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total
            FROM reservations
            WHERE store_id = ?
              AND reservation_date = ?
              AND service_type = 'daycare'
              AND status != 'cancelled'
              AND deleted_at IS NULL
            """,
            (store_id, day.isoformat()),
        ).fetchone()
        return row["total"] if row else 0

    def remaining_capacity(
        self,
        store_id: int,
        day: dt.date,
        *,
        config: StoreCapacityConfig | None = None,
    ) -> DayCapacity:
        config = config or self.store_config(store_id)
        booked = self.active_reservation_count(store_id, day)
        return DayCapacity(
            date=day,
            available=max(0, config.max_capacity - booked),
            capacity=config.max_capacity,
            is_closed=config.is_closed(day),
        )

    def find_room_conflict(
        self,
        room_id: int,
        start: dt.datetime,
        end: dt.datetime,
        *,
        exclude_reservation_id: int | None = None,
    ) -> int | None:
        """Return the id of a reservation overlapping ``[start, end)`` in the room.

        Intervals are half open, so a stay ending at 11:00 does not conflict
        with one starting at 11:00.
        """

        params: list[Any] = [room_id, format_stay_datetime(end), format_stay_datetime(start)]
        exclude = ""
        if exclude_reservation_id is not None:
            exclude = " AND reservations.id != ?"
            params.append(exclude_reservation_id)
        row = self.conn.execute(
            f"""
            SELECT reservations.id
            FROM reservations
            WHERE reservations.room_id = ?
              AND reservations.service_type = 'hotel'
              AND reservations.status != 'cancelled'
              AND reservations.deleted_at IS NULL
              AND reservations.end_datetime IS NOT NULL
              AND {HOTEL_START_SQL} < ?
              AND reservations.end_datetime > ?{exclude}
            ORDER BY {HOTEL_START_SQL}, reservations.id
            LIMIT 1
            """,
            params,
        ).fetchone()
        return row["id"] if row else None

    def room_is_available(
        self,
        room_id: int,
        start: dt.datetime,
        end: dt.datetime,
        *,
        exclude_reservation_id: int | None = None,
    ) -> bool:
        return (
            self.find_room_conflict(
                room_id, start, end, exclude_reservation_id=exclude_reservation_id
            )
            is None
        )
