import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..database import ts, unit_of_work
from ..errors import Forbidden, InvalidState, NotFound
from ..models import Actor, Loan, utc_now
from .holds import HoldQueueManager
from .items import ItemStateTracker
from .policy import PolicyResolver, ensure_in_good_standing
from .preferences import ConfigurationStore

logger = logging.getLogger(__name__)


class RenewalEngine:
    """Extend an open loan from its current due date."""

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now,
                 policy: Optional[PolicyResolver] = None, items: Optional[ItemStateTracker] = None,
                 holds: Optional[HoldQueueManager] = None, preferences: Optional[ConfigurationStore] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.policy = policy or PolicyResolver()
        self.items = items or ItemStateTracker()
        self.preferences = preferences or ConfigurationStore(db_file, clock)
        self.holds = holds or HoldQueueManager(db_file, clock, self.policy, self.items, self.preferences)

    def renew(self, loan_id: int, actor: Actor) -> Loan:
        """Renew a loan by one loan period and return the updated loan.

        The new due date is the old due date plus the patron's loan period, so
        a late renewal does not shorten the next period.
        """
        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
            if row is None:
                raise NotFound(f"Loan {loan_id} not found")
            loan = Loan.from_row(row)

            if not actor.may_act_for(loan.patron_id):
                raise Forbidden("Patrons can only renew their own items")
            if not loan.is_open:
                raise InvalidState("Cannot renew a closed loan")

            policy = self.policy.resolve(conn, loan.patron_id, now.date())
            ensure_in_good_standing(policy)

            max_renewals = self.preferences.max_renewals(conn)
            if loan.renewal_count >= max_renewals:
                raise Forbidden(f"Maximum renewals reached ({max_renewals})")

            copy = self.items.find_copy(conn, copy_id=loan.copy_id)
            if self.holds.find_blocking_hold(conn, copy, loan.patron_id, for_renewal=True) is not None:
                raise Forbidden("Item is on hold for another patron")

            due_date = loan.due_date + timedelta(days=policy.loan_period_days)
            conn.execute(
                "UPDATE loans SET due_date = ?, renewal_count = renewal_count + 1, last_renewed = ? WHERE id = ?",
                (ts(due_date), ts(now), loan.id),
            )
            self.items.extend_due_date(conn, copy.id, due_date, now)
            renewed = Loan.from_row(conn.execute("SELECT * FROM loans WHERE id = ?", (loan.id,)).fetchone())

        logger.info(
            f"Renewal: loan={renewed.id} renewals={renewed.renewal_count} due={renewed.due_date.isoformat()}"
        )
        return renewed
