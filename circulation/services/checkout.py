import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..database import ts, unit_of_work
from ..errors import Conflict, Forbidden
from ..models import Actor, CopyStatus, Loan, utc_now
from .holds import HoldQueueManager
from .items import ItemStateTracker
from .policy import PolicyResolver, ensure_in_good_standing

logger = logging.getLogger(__name__)


class CheckoutEngine:
    """Validate and execute a borrow transaction."""

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now,
                 policy: Optional[PolicyResolver] = None, items: Optional[ItemStateTracker] = None,
                 holds: Optional[HoldQueueManager] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.policy = policy or PolicyResolver()
        self.items = items or ItemStateTracker()
        self.holds = holds or HoldQueueManager(db_file, clock, self.policy, self.items)

    def checkout(self, patron_id: int, actor: Actor, copy_id: Optional[int] = None,
                 barcode: Optional[str] = None) -> Loan:
        """Lend a copy (by id or barcode) to a patron and return the open loan.

        The open-loan count, the copy's status check and the inserts all happen
        under the write lock taken at the start of the unit of work, so two
        concurrent checkouts can neither exceed the patron's limit nor both
        take the same copy.
        """
        if not actor.may_act_for(patron_id):
            raise Forbidden("Patrons can only check out items for themselves")

        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            policy = self.policy.resolve(conn, patron_id, now.date())
            ensure_in_good_standing(policy)

            copy = self.items.find_copy(conn, copy_id=copy_id, barcode=barcode)
            if copy.not_for_loan:
                raise Forbidden(f"Copy {copy.barcode} is marked as not for loan")
            if copy.status is not CopyStatus.AVAILABLE:
                raise Conflict(f"Copy {copy.barcode} is currently {copy.status.value}")

            blocking = self.holds.find_blocking_hold(conn, copy, patron_id)
            if blocking is not None:
                raise Forbidden(f"Copy {copy.barcode} is reserved for another patron")

            open_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE patron_id = ? AND return_date IS NULL",
                (patron_id,),
            ).fetchone()[0]
            if open_loans >= policy.max_concurrent_loans:
                raise Forbidden(
                    f"Patron reached the maximum of {policy.max_concurrent_loans} concurrent loans"
                )

            due_date = now + timedelta(days=policy.loan_period_days)
            cursor = conn.execute(
                "INSERT INTO loans (patron_id, copy_id, start_date, due_date) VALUES (?, ?, ?, ?)",
                (patron_id, copy.id, ts(now), ts(due_date)),
            )
            loan_id = cursor.lastrowid
            self.items.check_out(conn, copy.id, due_date, now)
            fulfilled = self.holds.fulfil_for_patron(conn, patron_id, copy, now)

            loan = Loan.from_row(conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone())

        logger.info(
            f"Checkout: loan={loan.id} patron={patron_id} copy={copy.id} due={loan.due_date.isoformat()}"
            + (f" fulfilled_holds={fulfilled}" if fulfilled else "")
        )
        return loan
