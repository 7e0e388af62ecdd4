"""Calendar and room availability reads backing the booking UIs."""

from __future__ import annotations

import datetime as dt

from .capacity import CapacityEvaluator, DayCapacity, parse_month, parse_stay_datetime
from .errors import ValidationError


class AvailabilityService:
    def __init__(self, capacity: CapacityEvaluator) -> None:
        self.capacity = capacity

    def monthly_availability(self, store_id: int, month: str) -> list[DayCapacity]:
        """Return remaining daycare capacity for every day of ``month``."""

        first, days = parse_month(month)
        config = self.capacity.store_config(store_id)
        return [
            self.capacity.remaining_capacity(
                store_id, first + dt.timedelta(days=offset), config=config
            )
            for offset in range(days)
        ]

    def month_overview(self, store_id: int, month: str) -> dict:
        config = self.capacity.store_config(store_id)
        return {
            "month": month,
            "availability": [
                day.as_dict() for day in self.monthly_availability(store_id, month)
            ],
            "businessHours": config.business_hours,
            "closedDays": list(config.closed_days),
        }

    def hotel_availability(
        self, store_id: int, checkin: str | dt.datetime, checkout: str | dt.datetime
    ) -> list[dict]:
        """List the store's bookable rooms and whether each is free for the stay."""

        if not checkin or not checkout:
            raise ValidationError("checkin_datetime and checkout_datetime are required")
        start = parse_stay_datetime(checkin, "checkin_datetime")
        end = parse_stay_datetime(checkout, "checkout_datetime")
        if end <= start:
            raise ValidationError("Checkout must be after check-in")

        self.capacity.store_config(store_id)
        rooms = self.capacity.conn.execute(
            """
            SELECT id, room_name, room_size, capacity, display_order
            FROM hotel_rooms
            WHERE store_id = ? AND enabled = 1
            ORDER BY display_order, id
            """,
            (store_id,),
        ).fetchall()
        for room in rooms:
            conflict = self.capacity.find_room_conflict(room["id"], start, end)
            room["is_available"] = conflict is None
            room["conflict_reservation_id"] = conflict
        return rooms
