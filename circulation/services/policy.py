import logging
from datetime import date

from ..config import settings
from ..errors import Forbidden, NotFound
from ..models import Category, Patron, Policy

logger = logging.getLogger(__name__)


class PolicyResolver:
    """Resolve a patron's borrowing policy from the patron and category records.

    Pure read; callers pass the connection of their unit of work.
    """

    def get_patron(self, conn, patron_id: int) -> Patron:
        row = conn.execute("SELECT * FROM patrons WHERE id = ?", (patron_id,)).fetchone()
        if row is None:
            raise NotFound(f"Patron {patron_id} not found")
        return Patron.from_row(row)

    def get_category(self, conn, code: str) -> Category:
        row = conn.execute("SELECT * FROM categories WHERE code = ?", (code,)).fetchone()
        if row is None:
            # Referential integrity makes this unreachable unless the row was removed by hand
            logger.warning(f"Category {code} missing; using default circulation rules")
            return Category(code=code)
        return Category.from_row(row)

    def resolve(self, conn, patron_id: int, today: date) -> Policy:
        patron = self.get_patron(conn, patron_id)
        category = self.get_category(conn, patron.category_code)
        suspended = patron.suspended_until is not None and patron.suspended_until >= today
        expired = patron.membership_expiry is not None and patron.membership_expiry < today
        return Policy(
            patron_id=patron.id,
            max_concurrent_loans=category.max_loans or settings.default_max_loans,
            loan_period_days=category.loan_period_days or settings.default_loan_period_days,
            is_suspended=suspended,
            suspension_until=patron.suspended_until,
            is_membership_expired=expired,
            suspension_reason=patron.suspension_reason,
        )


def ensure_in_good_standing(policy: Policy) -> None:
    """Refuse new checkouts and renewals for suspended or expired patrons."""
    if policy.is_suspended:
        message = f"Patron is suspended until {policy.suspension_until.isoformat()}"
        if policy.suspension_reason:
            message += f": {policy.suspension_reason}"
        raise Forbidden(message)
    if policy.is_membership_expired:
        raise Forbidden("Membership expired")
