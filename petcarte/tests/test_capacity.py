import datetime as dt
import unittest

from petcarte.booking.capacity import (
    format_stay_datetime,
    parse_clock_time,
    parse_month,
    parse_stay_datetime,
    weekday_name,
)
from petcarte.booking.errors import NotFound, ValidationError
from petcarte.booking.identity import CallerIdentity
from petcarte.booking.system import PetCareSystem

SECRET = "capacity-test-secret-0123456789abcdef"
NOW = dt.datetime(2026, 2, 20, 9, 0)


class ParsingTestCase(unittest.TestCase):
    def test_clock_time_is_zero_padded(self) -> None:
        self.assertEqual(parse_clock_time("09:05:00"), "09:05")
        self.assertEqual(parse_clock_time(dt.time(7, 30)), "07:30")
        with self.assertRaises(ValidationError):
            parse_clock_time("late")

    def test_stay_datetime_drops_seconds_and_zone(self) -> None:
        parsed = parse_stay_datetime("2026-04-01T14:00:59+09:00")
        self.assertEqual(format_stay_datetime(parsed), "2026-04-01T14:00")
        with self.assertRaises(ValidationError):
            parse_stay_datetime("tomorrow")

    def test_month(self) -> None:
        self.assertEqual(parse_month("2026-02"), (dt.date(2026, 2, 1), 28))
        self.assertEqual(parse_month("2028-02"), (dt.date(2028, 2, 1), 29))
        with self.assertRaises(ValidationError):
            parse_month("2026/02")

    def test_weekday_name(self) -> None:
        self.assertEqual(weekday_name(dt.date(2026, 3, 4)), "wednesday")


class CapacityEvaluatorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = PetCareSystem(secret_key=SECRET, clock=lambda: NOW)
        self.capacity = self.system.capacity
        self.store = self.system.create_store(
            name="Daikanyama", max_capacity=3, closed_days=["Sunday"]
        )
        self.staff = CallerIdentity(store_id=self.store["id"], role="staff", staff_id=1)
        owner = self.system.register_owner(store_id=self.store["id"], name="Sakura")
        self.dogs = [
            self.system.add_dog(owner_id=owner["id"], name=f"Dog {index}") for index in range(4)
        ]

    def tearDown(self) -> None:
        self.system.close()

    def _book(self, dog: dict, day: str = "2026-03-02", **kwargs) -> dict:
        return self.system.reservations.create(
            self.staff,
            dog_id=dog["id"],
            reservation_date=day,
            service_type=kwargs.pop("service_type", "daycare"),
            **kwargs,
        )

    def test_default_capacity_without_settings_row(self) -> None:
        bare = self.system.create_store(name="No settings")
        config = self.capacity.store_config(bare["id"])
        self.assertEqual(config.max_capacity, 15)
        with self.assertRaises(NotFound):
            self.capacity.store_config(4242)

    def test_available_tracks_active_daycare_rows(self) -> None:
        day = dt.date(2026, 3, 2)
        reservations = []
        for booked, dog in enumerate(self.dogs[:3]):
            result = self.capacity.remaining_capacity(self.store["id"], day)
            self.assertEqual(result.available, max(0, 3 - booked))
            reservations.append(self._book(dog))
        self.assertEqual(self.capacity.remaining_capacity(self.store["id"], day).available, 0)

        self.system.reservations.cancel(self.staff, reservations[0]["id"])
        self.system.reservations.soft_delete(self.staff, reservations[1]["id"])
        result = self.capacity.remaining_capacity(self.store["id"], day)
        self.assertEqual(result.available, 2)
        self.assertEqual(result.capacity, 3)

    def test_available_never_negative(self) -> None:
        for dog in self.dogs[:3]:
            self._book(dog)
        self.system.update_store_settings(self.store["id"], max_capacity=1)
        result = self.capacity.remaining_capacity(self.store["id"], dt.date(2026, 3, 2))
        self.assertEqual(result.available, 0)
        self.assertFalse(result.bookable)

    def test_closed_day_still_reports_capacity(self) -> None:
        result = self.capacity.remaining_capacity(self.store["id"], dt.date(2026, 3, 1))
        self.assertTrue(result.is_closed)
        self.assertEqual(result.available, 3)
        self.assertFalse(result.bookable)
        self.assertEqual(
            result.as_dict(),
            {"date": "2026-03-01", "available": 3, "capacity": 3, "isClosed": True},
        )

    def test_room_interval_is_half_open(self) -> None:
        room = self.system.create_hotel_room(
            store_id=self.store["id"], room_name="Suite", room_size="large"
        )
        other_room = self.system.create_hotel_room(
            store_id=self.store["id"], room_name="Cabin", room_size="small"
        )
        stay = self._book(
            self.dogs[0],
            day="2026-04-01",
            service_type="hotel",
            reservation_time="14:00",
            room_id=room["id"],
            end_datetime="2026-04-03T11:00",
        )
        start = dt.datetime(2026, 4, 1, 14, 0)
        end = dt.datetime(2026, 4, 3, 11, 0)
        cases = [
            (dt.datetime(2026, 3, 30, 10, 0), dt.datetime(2026, 4, 1, 14, 0), True),
            (dt.datetime(2026, 3, 30, 10, 0), dt.datetime(2026, 4, 1, 14, 1), False),
            (dt.datetime(2026, 4, 2, 0, 0), dt.datetime(2026, 4, 2, 12, 0), False),
            (dt.datetime(2026, 3, 31, 0, 0), dt.datetime(2026, 4, 5, 0, 0), False),
            (dt.datetime(2026, 4, 3, 10, 59), dt.datetime(2026, 4, 4, 11, 0), False),
            (end, dt.datetime(2026, 4, 5, 11, 0), True),
        ]
        for requested_start, requested_end, expected in cases:
            with self.subTest(start=requested_start, end=requested_end):
                self.assertEqual(
                    self.capacity.room_is_available(room["id"], requested_start, requested_end),
                    expected,
                )
        self.assertEqual(self.capacity.find_room_conflict(room["id"], start, end), stay["id"])
        self.assertTrue(self.capacity.room_is_available(other_room["id"], start, end))
        self.assertTrue(
            self.capacity.room_is_available(
                room["id"], start, end, exclude_reservation_id=stay["id"]
            )
        )

        self.system.reservations.cancel(self.staff, stay["id"])
        self.assertTrue(self.capacity.room_is_available(room["id"], start, end))

    def test_hotel_stays_do_not_use_daycare_capacity(self) -> None:
        room = self.system.create_hotel_room(
            store_id=self.store["id"], room_name="Suite", room_size="large"
        )
        self._book(
            self.dogs[0],
            day="2026-03-02",
            service_type="hotel",
            room_id=room["id"],
            end_datetime="2026-03-03T11:00",
        )
        count = self.capacity.active_reservation_count(self.store["id"], dt.date(2026, 3, 2))
        self.assertEqual(count, 0)


if __name__ == "__main__":
    unittest.main()
