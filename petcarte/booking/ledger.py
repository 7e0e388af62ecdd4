"""Prepaid session ("ticket") ledger for dog contracts."""

from __future__ import annotations

import calendar
import datetime as dt
import sqlite3
from dataclasses import dataclass
from typing import Callable

from .errors import InsufficientTicket, NotFound, ValidationError
from .logging_config import get_logger

CONTRACT_TICKET = "ticket"
CONTRACT_MONTHLY = "monthly"
CONTRACT_TYPES = (CONTRACT_TICKET, CONTRACT_MONTHLY)

EFFECT_CONSUMED = "consumed"
EFFECT_NONE = "none"

NO_SESSIONS_REMAINING = "no sessions remaining"
NO_CONTRACT = "no active contract"

# Ticket contracts opened without an explicit end date run for three months.
DEFAULT_TICKET_VALIDITY_MONTHS = 3

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerCheck:
    ok: bool
    reason: str | None = None
    contract_id: int | None = None


def add_months(day: dt.date, months: int) -> dt.date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return dt.date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _parse_valid_until(value: str) -> str:
    try:
        return dt.date.fromisoformat(value).isoformat()
    except (TypeError, ValueError) as exc:
        raise ValidationError("valid_until must be YYYY-MM-DD") from exc


def _course_name(value: str | None) -> str | None:
    if value is not None and not isinstance(value, str):
        raise ValidationError("course_name must be a string")
    return value


def _session_count(value: int | None, field: str) -> int | None:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    return value


class TicketLedger:
    """Consume and restore sessions, one ledger entry per reservation."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        require_contract: bool = False,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.conn = conn
        self.require_contract = require_contract
        self._clock = clock or dt.datetime.now

    def _today(self) -> dt.date:
        return self._clock().date()

    def _now(self) -> str:
        return self._clock().replace(microsecond=0).isoformat()

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------
    def open_contract(
        self,
        *,
        dog_id: int,
        contract_type: str,
        total_sessions: int | None = None,
        remaining_sessions: int | None = None,
        valid_until: str | None = None,
        course_name: str | None = None,
        monthly_sessions: int | None = None,
    ) -> dict:
        course_name = _course_name(course_name)
        if contract_type not in CONTRACT_TYPES:
            raise ValidationError("contract_type must be 'ticket' or 'monthly'")
        if contract_type == CONTRACT_TICKET:
            if total_sessions is None or total_sessions < 1:
                raise ValidationError("Ticket contracts need a positive total_sessions")
            if remaining_sessions is None:
                remaining_sessions = total_sessions
            if remaining_sessions < 0:
                raise ValidationError("remaining_sessions cannot be negative")
            if valid_until is None:
                valid_until = add_months(
                    self._today(), DEFAULT_TICKET_VALIDITY_MONTHS
                ).isoformat()
        else:
            total_sessions = None
            remaining_sessions = None
        if valid_until is not None:
            valid_until = _parse_valid_until(valid_until)
        cur = self.conn.execute(
            """
            INSERT INTO contracts(
                dog_id, contract_type, course_name, total_sessions,
                remaining_sessions, valid_until, monthly_sessions, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                dog_id,
                contract_type,
                course_name,
                total_sessions,
                remaining_sessions,
                valid_until,
                monthly_sessions,
                self._now(),
            ),
        )
        return self.get_contract(cur.lastrowid)

    def get_contract(self, contract_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM contracts WHERE id = ?", (contract_id,)
        ).fetchone()
        if not row:
            raise NotFound("Contract not found")
        return row

    def update_contract(
        self,
        contract_id: int,
        *,
        contract_type: str | None = None,
        course_name: str | None = None,
        total_sessions: int | None = None,
        remaining_sessions: int | None = None,
        valid_until: str | None = None,
        monthly_sessions: int | None = None,
    ) -> dict:
        """Correct a contract in place; omitted fields keep their value.

        This is how staff adjust a balance by hand, so the result must still
        be a valid contract: tickets keep a positive total and a balance of
        zero or more.
        """

        current = self.get_contract(contract_id)
        course_name = _course_name(course_name)
        total_sessions = _session_count(total_sessions, "total_sessions")
        remaining_sessions = _session_count(remaining_sessions, "remaining_sessions")
        monthly_sessions = _session_count(monthly_sessions, "monthly_sessions")
        if remaining_sessions is not None and remaining_sessions < 0:
            raise ValidationError("remaining_sessions cannot be negative")

        contract_type = contract_type or current["contract_type"]
        if contract_type not in CONTRACT_TYPES:
            raise ValidationError("contract_type must be 'ticket' or 'monthly'")
        if contract_type == CONTRACT_TICKET:
            if total_sessions is None:
                total_sessions = current["total_sessions"]
            if total_sessions is None or total_sessions < 1:
                raise ValidationError("Ticket contracts need a positive total_sessions")
            if remaining_sessions is None:
                remaining_sessions = current["remaining_sessions"]
            if remaining_sessions is None:
                remaining_sessions = total_sessions
        else:
            total_sessions = None
            remaining_sessions = None

        if valid_until is not None:
            valid_until = _parse_valid_until(valid_until)

        self.conn.execute(
            """
            UPDATE contracts SET
                contract_type = ?,
                course_name = COALESCE(?, course_name),
                total_sessions = ?,
                remaining_sessions = ?,
                valid_until = COALESCE(?, valid_until),
                monthly_sessions = COALESCE(?, monthly_sessions),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (
                contract_type,
                course_name,
                total_sessions,
                remaining_sessions,
                valid_until,
                monthly_sessions,
                contract_id,
            ),
        )
        logger.info(
            "Contract updated",
            extra={
                "contract_id": contract_id,
                "contract_type": contract_type,
                "remaining_sessions": remaining_sessions,
            },
        )
        return self.get_contract(contract_id)

    def delete_contract(self, contract_id: int) -> None:
        """Remove a contract that no ledger entry points at."""

        self.get_contract(contract_id)
        entries = self.conn.execute(
            "SELECT COUNT(*) AS total FROM ticket_ledger WHERE contract_id = ?",
            (contract_id,),
        ).fetchone()["total"]
        if entries:
            raise ValidationError(
                "This contract has recorded sessions and cannot be deleted"
            )
        self.conn.execute("DELETE FROM contracts WHERE id = ?", (contract_id,))
        logger.info("Contract deleted", extra={"contract_id": contract_id})

    def contract_usage(self, contract_id: int) -> list[dict]:
        """Ledger entries charged to a contract, most recent visit first."""

        return self.conn.execute(
            """
            SELECT ticket_ledger.reservation_id,
                   ticket_ledger.effect,
                   ticket_ledger.consumed_at,
                   ticket_ledger.restored_at,
                   reservations.reservation_date,
                   reservations.status
            FROM ticket_ledger
            JOIN reservations ON reservations.id = ticket_ledger.reservation_id
            WHERE ticket_ledger.contract_id = ?
            ORDER BY reservations.reservation_date DESC, ticket_ledger.id DESC
            LIMIT 50
            """,
            (contract_id,),
        ).fetchall()

    def list_contracts(self, *, dog_id: int) -> list[dict]:
        """Return a dog's contracts, newest first, with ledger usage."""

        rows = self.conn.execute(
            """
            SELECT contracts.*,
                   (SELECT COUNT(*) FROM ticket_ledger
                    WHERE ticket_ledger.contract_id = contracts.id
                      AND ticket_ledger.effect = 'consumed'
                      AND ticket_ledger.restored_at IS NULL) AS used_sessions
            FROM contracts
            WHERE dog_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (dog_id,),
        ).fetchall()
        return rows

    def active_contract(self, dog_id: int) -> dict | None:
        """Most recently opened contract that has not expired."""

        return self.conn.execute(
            """
            SELECT * FROM contracts
            WHERE dog_id = ?
              AND (valid_until IS NULL OR valid_until >= ?)
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (dog_id, self._today().isoformat()),
        ).fetchone()

    # ------------------------------------------------------------------
    # Ledger operations
    # ------------------------------------------------------------------
    def can_consume(self, dog_id: int) -> LedgerCheck:
        contract = self.active_contract(dog_id)
        if contract is None:
            if self.require_contract:
                return LedgerCheck(ok=False, reason=NO_CONTRACT)
            return LedgerCheck(ok=True)
        if contract["contract_type"] == CONTRACT_TICKET and (
            contract["remaining_sessions"] or 0
        ) <= 0:
            return LedgerCheck(ok=False, reason=NO_SESSIONS_REMAINING, contract_id=contract["id"])
        return LedgerCheck(ok=True, contract_id=contract["id"])

    def get_entry(self, reservation_id: int) -> dict | None:
        return self.conn.execute(
            "SELECT * FROM ticket_ledger WHERE reservation_id = ?", (reservation_id,)
        ).fetchone()

    def consume(self, dog_id: int, reservation_id: int) -> dict:
        """Debit one session for ``reservation_id``.

        Repeated calls for the same reservation return the original entry
        without touching the balance. Must run inside the caller's
        transaction so the debit commits or rolls back with the check-in.
        """

        existing = self.get_entry(reservation_id)
        if existing:
            return existing

        check = self.can_consume(dog_id)
        if not check.ok:
            raise InsufficientTicket()

        contract = self.active_contract(dog_id)
        effect = EFFECT_NONE
        contract_id = None
        if contract and contract["contract_type"] == CONTRACT_TICKET:
            cur = self.conn.execute(
                """
                UPDATE contracts
                SET remaining_sessions = remaining_sessions - 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND remaining_sessions > 0
                """,
                (contract["id"],),
            )
            if cur.rowcount != 1:
                raise InsufficientTicket()
            effect = EFFECT_CONSUMED
            contract_id = contract["id"]

        self.conn.execute(
            """
            INSERT INTO ticket_ledger(reservation_id, dog_id, contract_id, effect, consumed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (reservation_id, dog_id, contract_id, effect, self._now()),
        )
        logger.info(
            "Ticket ledger consume",
            extra={
                "reservation_id": reservation_id,
                "dog_id": dog_id,
                "contract_id": contract_id,
                "effect": effect,
            },
        )
        return self.get_entry(reservation_id)

    def restore(self, dog_id: int, reservation_id: int) -> dict:
        """Give back the session debited for ``reservation_id``, at most once."""

        entry = self.get_entry(reservation_id)
        if not entry or entry["dog_id"] != dog_id:
            raise NotFound("No ticket ledger entry for this reservation")
        if entry["restored_at"]:
            return entry
        if entry["effect"] == EFFECT_CONSUMED:
            self.conn.execute(
                """
                UPDATE contracts
                SET remaining_sessions = remaining_sessions + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (entry["contract_id"],),
            )
        self.conn.execute(
            "UPDATE ticket_ledger SET restored_at = ? WHERE id = ?",
            (self._now(), entry["id"]),
        )
        logger.info(
            "Ticket ledger restore",
            extra={
                "reservation_id": reservation_id,
                "dog_id": dog_id,
                "contract_id": entry["contract_id"],
                "effect": entry["effect"],
            },
        )
        return self.get_entry(reservation_id)
