import logging
import math
from datetime import datetime
from typing import Callable, Optional

from ..database import ts, unit_of_work
from ..errors import Forbidden, InvalidInput, NotFound
from ..models import Actor, EntryType, Loan, ReturnResult, to_cents, utc_now
from .fines import FineLedger
from .holds import HoldQueueManager
from .items import ItemStateTracker
from .preferences import ConfigurationStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def days_late(due_date: datetime, returned_at: datetime) -> int:
    """Whole days late, counting any part of a day as a full day."""
    seconds = (returned_at - due_date).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


class ReturnEngine:
    """Close a loan, charge any overdue fine and advance the hold queue."""

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now,
                 items: Optional[ItemStateTracker] = None, holds: Optional[HoldQueueManager] = None,
                 ledger: Optional[FineLedger] = None, preferences: Optional[ConfigurationStore] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.items = items or ItemStateTracker()
        self.preferences = preferences or ConfigurationStore(db_file, clock)
        self.holds = holds or HoldQueueManager(db_file, clock, items=self.items, preferences=self.preferences)
        self.ledger = ledger or FineLedger(db_file, clock)

    def return_copy(self, actor: Actor, loan_id: Optional[int] = None, copy_id: Optional[int] = None,
                    barcode: Optional[str] = None) -> ReturnResult:
        """Check a copy back in, identified by loan id, copy id or barcode.

        Closing the loan, freeing the copy, charging the fine and promoting the
        next hold commit together or not at all.
        """
        if loan_id is None and copy_id is None and not barcode:
            raise InvalidInput("Provide a loan id, copy id or barcode")

        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            if loan_id is not None:
                row = conn.execute(
                    "SELECT * FROM loans WHERE id = ? AND return_date IS NULL", (loan_id,)
                ).fetchone()
            else:
                copy = self.items.find_copy(conn, copy_id=copy_id, barcode=barcode)
                row = conn.execute(
                    "SELECT * FROM loans WHERE copy_id = ? AND return_date IS NULL", (copy.id,)
                ).fetchone()
            if row is None:
                raise NotFound("Active loan not found")
            loan = Loan.from_row(row)

            if not actor.may_act_for(loan.patron_id):
                raise Forbidden("Patrons can only return their own items")

            conn.execute("UPDATE loans SET return_date = ? WHERE id = ?", (ts(now), loan.id))
            copy = self.items.check_in(conn, loan.copy_id, now)

            fine = None
            late = days_late(loan.due_date, now)
            if late > 0:
                fine_cents = to_cents(late * self.preferences.fine_per_day(conn))
                if fine_cents > 0:
                    fine = self.ledger.charge(
                        conn, loan.patron_id, fine_cents, EntryType.OVERDUE_FINE, now,
                        copy_id=loan.copy_id, loan_id=loan.id,
                        description=f"Overdue fine - {late} days late",
                    )

            promoted = self.holds.promote_next(conn, copy.work_id, copy.id, now)
            closed = Loan.from_row(conn.execute("SELECT * FROM loans WHERE id = ?", (loan.id,)).fetchone())

        logger.info(
            f"Return: loan={closed.id} copy={closed.copy_id} days_late={late}"
            f" fine={fine.charged if fine else 0} promoted_hold={promoted.id if promoted else None}"
        )
        return ReturnResult(loan=closed, fine=fine, promoted_hold=promoted)
