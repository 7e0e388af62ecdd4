import datetime as dt
import os
import tempfile
import threading
import unittest

from petcarte.booking.errors import BookingError, CapacityExceeded, InvalidStateTransition, RoomConflict
from petcarte.booking.identity import CallerIdentity
from petcarte.booking.system import PetCareSystem

SECRET = "concurrency-test-secret-0123456789abc"
NOW = dt.datetime(2026, 2, 20, 9, 0)
WORKERS = 6


class ConcurrentBookingTestCase(unittest.TestCase):
    """Parallel requests each use their own connection, as the web layer does."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "petcarte.db")
        self.system = PetCareSystem(self.db_path, secret_key=SECRET, clock=lambda: NOW)
        self.store = self.system.create_store(name="Meguro", max_capacity=1)
        self.staff = CallerIdentity(store_id=self.store["id"], role="staff", staff_id=1)
        owner = self.system.register_owner(store_id=self.store["id"], name="Nao")
        self.dogs = [
            self.system.add_dog(owner_id=owner["id"], name=f"Dog {index}")
            for index in range(WORKERS)
        ]

    def tearDown(self) -> None:
        self.system.close()
        self.tmpdir.cleanup()

    def _run_parallel(self, action) -> list:
        barrier = threading.Barrier(WORKERS)
        results: list = [None] * WORKERS

        def worker(index: int) -> None:
            system = PetCareSystem(
                self.db_path, secret_key=SECRET, clock=lambda: NOW, initialize=False
            )
            try:
                barrier.wait()
                results[index] = action(system, index)
            except BookingError as exc:
                results[index] = exc
            finally:
                system.close()

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(WORKERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results

    def test_parallel_creates_respect_capacity_of_one(self) -> None:
        def book(system: PetCareSystem, index: int) -> dict:
            return system.reservations.create(
                self.staff,
                dog_id=self.dogs[index]["id"],
                reservation_date="2026-03-02",
                service_type="daycare",
            )

        results = self._run_parallel(book)
        successes = [result for result in results if isinstance(result, dict)]
        rejected = [result for result in results if isinstance(result, CapacityExceeded)]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(rejected), WORKERS - 1)
        count = self.system.capacity.active_reservation_count(
            self.store["id"], dt.date(2026, 3, 2)
        )
        self.assertEqual(count, 1)

    def test_parallel_hotel_bookings_claim_room_once(self) -> None:
        room = self.system.create_hotel_room(
            store_id=self.store["id"], room_name="Room A", room_size="medium"
        )

        def book(system: PetCareSystem, index: int) -> dict:
            return system.reservations.create(
                self.staff,
                dog_id=self.dogs[index]["id"],
                reservation_date="2026-04-01",
                reservation_time="14:00",
                service_type="hotel",
                room_id=room["id"],
                end_datetime="2026-04-03T11:00",
            )

        results = self._run_parallel(book)
        self.assertEqual(len([result for result in results if isinstance(result, dict)]), 1)
        self.assertEqual(
            len([result for result in results if isinstance(result, RoomConflict)]), WORKERS - 1
        )

    def test_parallel_check_ins_debit_once(self) -> None:
        contract = self.system.open_contract(
            store_id=self.store["id"],
            dog_id=self.dogs[0]["id"],
            contract_type="ticket",
            total_sessions=5,
        )
        reservation = self.system.reservations.create(
            self.staff,
            dog_id=self.dogs[0]["id"],
            reservation_date="2026-03-02",
            service_type="daycare",
        )
        qr_code = self.system.qr.issue(self.store["id"])

        def check_in(system: PetCareSystem, index: int) -> dict:
            return system.reservations.check_in(self.staff, reservation["id"], qr_code)

        results = self._run_parallel(check_in)
        self.assertEqual(len([result for result in results if isinstance(result, dict)]), 1)
        self.assertEqual(
            len([result for result in results if isinstance(result, InvalidStateTransition)]),
            WORKERS - 1,
        )
        remaining = self.system.ledger.get_contract(contract["id"])["remaining_sessions"]
        self.assertEqual(remaining, 4)


if __name__ == "__main__":
    unittest.main()
