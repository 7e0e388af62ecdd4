import datetime as dt
import unittest

from petcarte.booking.errors import InsufficientTicket, NotFound, ValidationError
from petcarte.booking.identity import CallerIdentity
from petcarte.booking.ledger import NO_CONTRACT, NO_SESSIONS_REMAINING, add_months
from petcarte.booking.system import PetCareSystem

SECRET = "ledger-test-secret-0123456789abcdefgh"
NOW = dt.datetime(2026, 2, 20, 9, 0)


class TicketLedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = PetCareSystem(secret_key=SECRET, clock=lambda: NOW)
        self.ledger = self.system.ledger
        store = self.system.create_store(name="Nakameguro")
        owner = self.system.register_owner(store_id=store["id"], name="Mei")
        self.dog = self.system.add_dog(owner_id=owner["id"], name="Pochi")
        self.staff = CallerIdentity(store_id=store["id"], role="staff", staff_id=1)

    def tearDown(self) -> None:
        self.system.close()

    def _reservation(self, day: str = "2026-03-02") -> dict:
        return self.system.reservations.create(
            self.staff, dog_id=self.dog["id"], reservation_date=day, service_type="grooming"
        )

    def test_add_months_clamps_to_month_end(self) -> None:
        self.assertEqual(add_months(dt.date(2026, 11, 30), 3), dt.date(2027, 2, 28))
        self.assertEqual(add_months(dt.date(2026, 2, 20), 3), dt.date(2026, 5, 20))

    def test_open_ticket_contract_defaults(self) -> None:
        contract = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=10, course_name="10 visits"
        )
        self.assertEqual(contract["remaining_sessions"], 10)
        self.assertEqual(contract["valid_until"], "2026-05-20")

    def test_open_monthly_contract_ignores_session_counts(self) -> None:
        contract = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="monthly", total_sessions=4, monthly_sessions=8
        )
        self.assertIsNone(contract["total_sessions"])
        self.assertIsNone(contract["remaining_sessions"])
        self.assertIsNone(contract["valid_until"])
        self.assertEqual(contract["monthly_sessions"], 8)

    def test_open_contract_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.ledger.open_contract(dog_id=self.dog["id"], contract_type="yearly")
        with self.assertRaises(ValidationError):
            self.ledger.open_contract(dog_id=self.dog["id"], contract_type="ticket")
        with self.assertRaises(ValidationError):
            self.ledger.open_contract(
                dog_id=self.dog["id"],
                contract_type="ticket",
                total_sessions=5,
                valid_until="next month",
            )

    def test_can_consume_without_contract_is_permissive(self) -> None:
        check = self.ledger.can_consume(self.dog["id"])
        self.assertTrue(check.ok)
        self.assertIsNone(check.contract_id)

    def test_require_contract_blocks_dogs_without_one(self) -> None:
        strict = PetCareSystem(secret_key=SECRET, clock=lambda: NOW, require_contract=True)
        self.addCleanup(strict.close)
        store = strict.create_store(name="Strict")
        owner = strict.register_owner(store_id=store["id"], name="Kai")
        dog = strict.add_dog(owner_id=owner["id"], name="Taro")
        self.assertEqual(strict.ledger.can_consume(dog["id"]).reason, NO_CONTRACT)
        with self.assertRaises(InsufficientTicket):
            strict.reservations.create(
                CallerIdentity(store_id=store["id"], role="staff", staff_id=1),
                dog_id=dog["id"],
                reservation_date="2026-03-02",
                service_type="daycare",
            )

    def test_zero_balance_is_reported(self) -> None:
        contract = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=4, remaining_sessions=0
        )
        check = self.ledger.can_consume(self.dog["id"])
        self.assertFalse(check.ok)
        self.assertEqual(check.reason, NO_SESSIONS_REMAINING)
        self.assertEqual(check.contract_id, contract["id"])

    def test_expired_contract_is_ignored(self) -> None:
        self.ledger.open_contract(
            dog_id=self.dog["id"],
            contract_type="ticket",
            total_sessions=4,
            remaining_sessions=0,
            valid_until="2026-01-31",
        )
        self.assertIsNone(self.ledger.active_contract(self.dog["id"]))
        self.assertTrue(self.ledger.can_consume(self.dog["id"]).ok)

    def test_consume_is_keyed_by_reservation(self) -> None:
        contract = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=2
        )
        reservation = self._reservation()
        first = self.ledger.consume(self.dog["id"], reservation["id"])
        second = self.ledger.consume(self.dog["id"], reservation["id"])
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(first["effect"], "consumed")
        self.assertEqual(self.ledger.get_contract(contract["id"])["remaining_sessions"], 1)

    def test_consume_refuses_empty_balance(self) -> None:
        self.ledger.open_contract(dog_id=self.dog["id"], contract_type="ticket", total_sessions=1)
        first = self._reservation("2026-03-02")
        second = self._reservation("2026-03-03")
        self.ledger.consume(self.dog["id"], first["id"])
        with self.assertRaises(InsufficientTicket):
            self.ledger.consume(self.dog["id"], second["id"])
        self.assertIsNone(self.ledger.get_entry(second["id"]))

    def test_restore_happens_once(self) -> None:
        contract = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=2
        )
        reservation = self._reservation()
        self.ledger.consume(self.dog["id"], reservation["id"])
        self.ledger.restore(self.dog["id"], reservation["id"])
        self.ledger.restore(self.dog["id"], reservation["id"])
        self.assertEqual(self.ledger.get_contract(contract["id"])["remaining_sessions"], 2)

    def test_restore_without_consume(self) -> None:
        reservation = self._reservation()
        with self.assertRaises(NotFound):
            self.ledger.restore(self.dog["id"], reservation["id"])

    def test_list_contracts_reports_usage(self) -> None:
        older = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=5
        )
        newer = self.ledger.open_contract(dog_id=self.dog["id"], contract_type="monthly")
        reservation = self._reservation()
        self.system.conn.execute(
            "UPDATE contracts SET valid_until = '2026-01-01' WHERE id = ?", (newer["id"],)
        )
        self.ledger.consume(self.dog["id"], reservation["id"])
        contracts = self.system.list_contracts(
            store_id=self.staff.store_id, dog_id=self.dog["id"]
        )
        self.assertEqual([row["id"] for row in contracts], [newer["id"], older["id"]])
        self.assertEqual(contracts[1]["used_sessions"], 1)
        self.assertEqual(contracts[0]["used_sessions"], 0)

    def test_valid_until_must_be_a_date_string(self) -> None:
        for invalid in (20260101, ["2026-01-01"], "2026-13-01"):
            with self.subTest(valid_until=invalid):
                with self.assertRaises(ValidationError):
                    self.ledger.open_contract(
                        dog_id=self.dog["id"],
                        contract_type="ticket",
                        total_sessions=5,
                        valid_until=invalid,
                    )

    def test_update_contract_keeps_balance_valid(self) -> None:
        contract = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=10
        )
        corrected = self.ledger.update_contract(contract["id"], remaining_sessions=7)
        self.assertEqual(corrected["remaining_sessions"], 7)
        self.assertEqual(corrected["total_sessions"], 10)

        for invalid in (
            {"remaining_sessions": -1},
            {"remaining_sessions": "3"},
            {"total_sessions": 0},
            {"valid_until": 20260101},
            {"contract_type": "yearly"},
            {"course_name": {"name": "x"}},
        ):
            with self.subTest(**invalid):
                with self.assertRaises(ValidationError):
                    self.ledger.update_contract(contract["id"], **invalid)
        self.assertEqual(self.ledger.get_contract(contract["id"])["remaining_sessions"], 7)

        renamed = self.ledger.update_contract(
            contract["id"], course_name="Spring pack", valid_until="2026-06-30"
        )
        self.assertEqual(renamed["course_name"], "Spring pack")
        self.assertEqual(renamed["valid_until"], "2026-06-30")
        self.assertEqual(renamed["remaining_sessions"], 7)

        monthly = self.ledger.update_contract(
            contract["id"], contract_type="monthly", monthly_sessions=8
        )
        self.assertIsNone(monthly["remaining_sessions"])
        self.assertEqual(monthly["monthly_sessions"], 8)
        with self.assertRaises(NotFound):
            self.ledger.update_contract(contract["id"] + 100, remaining_sessions=1)

    def test_delete_contract_refuses_charged_contract(self) -> None:
        unused = self.ledger.open_contract(dog_id=self.dog["id"], contract_type="monthly")
        self.ledger.delete_contract(unused["id"])
        with self.assertRaises(NotFound):
            self.ledger.get_contract(unused["id"])

        charged = self.ledger.open_contract(
            dog_id=self.dog["id"], contract_type="ticket", total_sessions=3
        )
        self.ledger.consume(self.dog["id"], self._reservation()["id"])
        with self.assertRaises(ValidationError):
            self.ledger.delete_contract(charged["id"])
        self.assertEqual(self.ledger.get_contract(charged["id"])["remaining_sessions"], 2)

    def test_contract_detail_is_store_scoped(self) -> None:
        contract = self.system.open_contract(
            store_id=self.staff.store_id,
            dog_id=self.dog["id"],
            contract_type="ticket",
            total_sessions=4,
        )
        reservation = self._reservation()
        self.ledger.consume(self.dog["id"], reservation["id"])

        detail = self.system.get_contract(contract["id"], store_id=self.staff.store_id)
        self.assertEqual(detail["dog_name"], "Pochi")
        self.assertEqual(detail["owner_name"], "Mei")
        self.assertEqual(
            [(row["reservation_id"], row["effect"]) for row in detail["usage"]],
            [(reservation["id"], "consumed")],
        )

        other_store = self.staff.store_id + 1
        with self.assertRaises(NotFound):
            self.system.get_contract(contract["id"], store_id=other_store)
        with self.assertRaises(NotFound):
            self.system.update_contract(contract["id"], store_id=other_store, remaining_sessions=9)
        with self.assertRaises(NotFound):
            self.system.delete_contract(contract["id"], store_id=other_store)

        updated = self.system.update_contract(
            contract["id"], store_id=self.staff.store_id, remaining_sessions=9
        )
        self.assertEqual(updated["remaining_sessions"], 9)
        self.assertEqual(updated["owner_name"], "Mei")


if __name__ == "__main__":
    unittest.main()
