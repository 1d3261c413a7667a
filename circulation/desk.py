"""One object wiring every circulation component to a single store and clock."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .database import initialize_database
from .models import AccountSummary, Actor, Hold, LedgerEntry, Loan, ReturnResult, utc_now
from .registry import Registry
from .services.checkout import CheckoutEngine
from .services.fines import FineLedger
from .services.holds import HoldQueueManager
from .services.items import ItemStateTracker
from .services.loans import LoanHistory
from .services.policy import PolicyResolver
from .services.preferences import ConfigurationStore
from .services.renewals import RenewalEngine
from .services.returns import ReturnEngine

logger = logging.getLogger(__name__)


class CirculationDesk:
    """Entry point used by the API and the CLI.

    ``clock`` is read once per operation; tests pass a controllable one.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.db_file = db_file
        self.clock = clock
        initialize_database(db_file)

        self.preferences = ConfigurationStore(db_file, self._now)
        self.policy = PolicyResolver()
        self.items = ItemStateTracker()
        self.holds = HoldQueueManager(db_file, self._now, self.policy, self.items, self.preferences)
        self.ledger = FineLedger(db_file, self._now, self.policy)
        self.checkout_engine = CheckoutEngine(db_file, self._now, self.policy, self.items, self.holds)
        self.return_engine = ReturnEngine(db_file, self._now, self.items, self.holds, self.ledger, self.preferences)
        self.renewal_engine = RenewalEngine(db_file, self._now, self.policy, self.items, self.holds, self.preferences)
        self.loans = LoanHistory(db_file)
        self.registry = Registry(db_file)
        logger.debug(f"Circulation desk initialised (db={db_file or 'default'})")

    def _now(self) -> datetime:
        # Late-bound so tests can swap ``desk.clock`` after construction
        return self.clock()

    # ------------------------- Circulation ------------------------- #
    def checkout(self, patron_id: int, actor: Actor, copy_id: Optional[int] = None,
                 barcode: Optional[str] = None) -> Loan:
        return self.checkout_engine.checkout(patron_id, actor, copy_id=copy_id, barcode=barcode)

    def return_copy(self, actor: Actor, loan_id: Optional[int] = None, copy_id: Optional[int] = None,
                    barcode: Optional[str] = None) -> ReturnResult:
        return self.return_engine.return_copy(actor, loan_id=loan_id, copy_id=copy_id, barcode=barcode)

    def renew(self, loan_id: int, actor: Actor) -> Loan:
        return self.renewal_engine.renew(loan_id, actor)

    def get_loan(self, loan_id: int, actor: Actor) -> Loan:
        return self.loans.get_loan(loan_id, actor)

    def history(self, actor: Actor, patron_id: Optional[int] = None, open_only: bool = False,
                issued_from: Optional[date] = None, issued_to: Optional[date] = None,
                returned_from: Optional[date] = None, returned_to: Optional[date] = None,
                page: int = 1, limit: Optional[int] = None) -> List[Loan]:
        return self.loans.history(
            actor, patron_id=patron_id, open_only=open_only,
            issued_from=issued_from, issued_to=issued_to,
            returned_from=returned_from, returned_to=returned_to,
            page=page, limit=limit,
        )

    # ------------------------- Holds ------------------------- #
    def place_hold(self, patron_id: int, work_id: int, actor: Actor, copy_id: Optional[int] = None) -> Hold:
        return self.holds.place_hold(patron_id, work_id, actor, copy_id=copy_id)

    def cancel_hold(self, hold_id: int, actor: Actor) -> Hold:
        return self.holds.cancel_hold(hold_id, actor)

    def get_hold(self, hold_id: int, actor: Actor) -> Hold:
        return self.holds.get_hold(hold_id, actor)

    def list_holds(self, actor: Actor, patron_id: Optional[int] = None, work_id: Optional[int] = None,
                   active_only: bool = False) -> List[Hold]:
        return self.holds.list_holds(actor, patron_id=patron_id, work_id=work_id, active_only=active_only)

    def expire_stale_holds(self, actor: Actor) -> List[Hold]:
        return self.holds.expire_stale_holds(actor)

    # ------------------------- Accounts ------------------------- #
    def record_payment(self, entry_id: int, amount: Decimal, payment_type: Optional[str], actor: Actor) -> LedgerEntry:
        return self.ledger.record_payment(entry_id, amount, payment_type, actor)

    def waive(self, entry_id: int, actor: Actor, note: Optional[str] = None) -> LedgerEntry:
        return self.ledger.waive(entry_id, actor, note=note)

    def list_for_patron(self, patron_id: int, actor: Actor) -> List[LedgerEntry]:
        return self.ledger.list_for_patron(patron_id, actor)

    def get_entry(self, entry_id: int, actor: Actor) -> LedgerEntry:
        return self.ledger.get_entry(entry_id, actor)

    def account_summary(self, patron_id: int, actor: Actor) -> AccountSummary:
        return self.ledger.account_summary(patron_id, actor)

    # ------------------------- Preferences ------------------------- #
    def list_preferences(self, actor: Actor) -> List[Dict[str, Any]]:
        return self.preferences.list_preferences(actor)

    def update_preference(self, variable: str, value: Optional[str], actor: Actor,
                          explanation: Optional[str] = None) -> Dict[str, Any]:
        return self.preferences.update_preference(variable, value, actor, explanation=explanation)
