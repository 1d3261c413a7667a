"""Patron account ledger: charges, payments and waivers.

Each payment targets exactly one charge. Overpayment is rejected instead of
clamped, so ``0 <= outstanding <= charged`` holds exactly for every charge.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from ..database import get_db_connection, ts, unit_of_work
from ..errors import Forbidden, InvalidInput, NotFound
from ..models import (
    AccountSummary,
    Actor,
    EntryStatus,
    EntryType,
    HoldStatus,
    LedgerEntry,
    to_cents,
    utc_now,
)
from .policy import PolicyResolver

logger = logging.getLogger(__name__)


class FineLedger:
    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now,
                 policy: Optional[PolicyResolver] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.policy = policy or PolicyResolver()

    # ------------------------- Charges ------------------------- #
    def charge(self, conn, patron_id: int, amount_cents: int, entry_type: EntryType, now: datetime,
               copy_id: Optional[int] = None, loan_id: Optional[int] = None,
               description: Optional[str] = None, recorded_by: Optional[int] = None) -> LedgerEntry:
        """Insert an open charge on the caller's connection."""
        if not entry_type.is_charge:
            raise InvalidInput("Payments are recorded with record_payment")
        if amount_cents <= 0:
            raise InvalidInput("Charge amount must be positive")
        cursor = conn.execute(
            """
            INSERT INTO ledger_entries (
                patron_id, copy_id, loan_id, entry_type, charged_cents, outstanding_cents,
                status, description, recorded_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (patron_id, copy_id, loan_id, entry_type.value, amount_cents, amount_cents,
             EntryStatus.OPEN.value, description, recorded_by, ts(now)),
        )
        return self._get(conn, cursor.lastrowid)

    # ------------------------- Staff operations ------------------------- #
    def record_payment(self, entry_id: int, amount: Decimal, payment_type: Optional[str], actor: Actor) -> LedgerEntry:
        """Apply a payment to one charge and return the updated charge."""
        if not actor.is_staff:
            raise Forbidden("Only staff may record payments")
        amount = Decimal(amount)
        if not amount.is_finite() or amount <= 0:
            raise InvalidInput("Payment amount must be positive")
        if amount != amount.quantize(Decimal("0.01")):
            raise InvalidInput("Payment amount cannot have fractions of a cent")
        cents = to_cents(amount)

        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            entry = self._get(conn, entry_id)
            if not entry.entry_type.is_charge or entry.outstanding_cents <= 0:
                raise InvalidInput("Nothing outstanding to pay")
            if cents > entry.outstanding_cents:
                raise InvalidInput(
                    f"Payment of {amount} exceeds outstanding amount {entry.outstanding}"
                )

            remaining = entry.outstanding_cents - cents
            status = EntryStatus.PAID if remaining == 0 else EntryStatus.PARTIAL
            conn.execute(
                "UPDATE ledger_entries SET outstanding_cents = ?, status = ? WHERE id = ?",
                (remaining, status.value, entry_id),
            )
            conn.execute(
                """
                INSERT INTO ledger_entries (
                    patron_id, copy_id, loan_id, entry_type, charged_cents, outstanding_cents,
                    status, description, payment_type, related_entry_id, recorded_by, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
                """,
                (entry.patron_id, entry.copy_id, entry.loan_id, EntryType.PAYMENT.value, cents,
                 EntryStatus.PAID.value, f"Payment towards entry {entry_id}", payment_type,
                 entry_id, actor.id, ts(now)),
            )
            updated = self._get(conn, entry_id)
        logger.info(
            f"Payment recorded: entry={entry_id} amount={amount} outstanding={updated.outstanding} by actor={actor.id}"
        )
        return updated

    def waive(self, entry_id: int, actor: Actor, note: Optional[str] = None) -> LedgerEntry:
        """Forgive whatever is still outstanding on a charge."""
        if not actor.is_staff:
            raise Forbidden("Only staff may waive charges")
        with unit_of_work(self.db_file) as conn:
            entry = self._get(conn, entry_id)
            if not entry.entry_type.is_charge or entry.outstanding_cents <= 0:
                raise InvalidInput("Nothing outstanding to waive")
            description = entry.description or ""
            if note:
                description = f"{description}\nWaived: {note}".strip()
            conn.execute(
                "UPDATE ledger_entries SET outstanding_cents = 0, status = ?, description = ?, recorded_by = ? WHERE id = ?",
                (EntryStatus.WAIVED.value, description or None, actor.id, entry_id),
            )
            updated = self._get(conn, entry_id)
        logger.info(f"Entry {entry_id} waived ({entry.outstanding}) by actor={actor.id}")
        return updated

    # ------------------------- Reads ------------------------- #
    def list_for_patron(self, patron_id: int, actor: Actor) -> List[LedgerEntry]:
        if not actor.may_act_for(patron_id):
            raise Forbidden("Patrons can only view their own account")
        conn = get_db_connection(self.db_file)
        try:
            self.policy.get_patron(conn, patron_id)
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE patron_id = ? ORDER BY created_at DESC, id DESC",
                (patron_id,),
            ).fetchall()
            return [LedgerEntry.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_entry(self, entry_id: int, actor: Actor) -> LedgerEntry:
        conn = get_db_connection(self.db_file)
        try:
            entry = self._get(conn, entry_id)
        finally:
            conn.close()
        if not actor.may_act_for(entry.patron_id):
            raise Forbidden("Patrons can only view their own account")
        return entry

    def account_summary(self, patron_id: int, actor: Actor) -> AccountSummary:
        """Open and overdue loans, active holds and total outstanding for one patron."""
        if not actor.may_act_for(patron_id):
            raise Forbidden("Patrons can only view their own account")
        now = self.clock()
        conn = get_db_connection(self.db_file)
        try:
            self.policy.get_patron(conn, patron_id)
            loans = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(due_date < ?), 0) FROM loans WHERE patron_id = ? AND return_date IS NULL",
                (ts(now), patron_id),
            ).fetchone()
            holds = conn.execute(
                "SELECT COUNT(*) FROM holds WHERE patron_id = ? AND status IN (?, ?)",
                (patron_id, HoldStatus.PENDING.value, HoldStatus.READY_FOR_PICKUP.value),
            ).fetchone()[0]
            outstanding = conn.execute(
                "SELECT COALESCE(SUM(outstanding_cents), 0) FROM ledger_entries WHERE patron_id = ? AND entry_type != ?",
                (patron_id, EntryType.PAYMENT.value),
            ).fetchone()[0]
            return AccountSummary(
                patron_id=patron_id,
                open_loans=loans[0],
                overdue_loans=loans[1],
                active_holds=holds,
                outstanding_cents=outstanding,
            )
        finally:
            conn.close()

    def _get(self, conn, entry_id: int) -> LedgerEntry:
        row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            raise NotFound(f"Ledger entry {entry_id} not found")
        return LedgerEntry.from_row(row)
