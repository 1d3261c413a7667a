"""Read side of circulation: single loans and the paginated history."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from ..config import settings
from ..database import get_db_connection, ts
from ..errors import Forbidden, InvalidInput, NotFound
from ..models import Actor, Loan

logger = logging.getLogger(__name__)


def _start_of(day: date) -> str:
    return ts(datetime.combine(day, time.min, tzinfo=timezone.utc))


def _end_of(day: date) -> str:
    # Exclusive upper bound: midnight of the following day
    return ts(datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc))


def _check_range(label: str, start: Optional[date], end: Optional[date]) -> None:
    if start is not None and end is not None and start > end:
        raise InvalidInput(f"{label} from-date must not be later than its to-date")


class LoanHistory:
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def get_loan(self, loan_id: int, actor: Actor) -> Loan:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Loan {loan_id} not found")
        loan = Loan.from_row(row)
        if not actor.may_act_for(loan.patron_id):
            raise Forbidden("Patrons can only view their own loans")
        return loan

    def history(self, actor: Actor, patron_id: Optional[int] = None, open_only: bool = False,
                issued_from: Optional[date] = None, issued_to: Optional[date] = None,
                returned_from: Optional[date] = None, returned_to: Optional[date] = None,
                page: int = 1, limit: Optional[int] = None) -> List[Loan]:
        """List loans newest first.

        Staff may query every patron; a patron only sees their own loans.
        Date bounds are inclusive calendar days in UTC.
        """
        if not actor.is_staff:
            if patron_id is not None and patron_id != actor.id:
                raise Forbidden("Patrons can only view their own loans")
            patron_id = actor.id
        _check_range("Issued", issued_from, issued_to)
        _check_range("Returned", returned_from, returned_to)
        if page < 1:
            raise InvalidInput("Page must be 1 or greater")
        limit = limit or settings.default_page_size
        if limit < 1:
            raise InvalidInput("Limit must be 1 or greater")
        limit = min(limit, settings.max_page_size)

        clauses, params = [], []
        if patron_id is not None:
            clauses.append("patron_id = ?")
            params.append(patron_id)
        if open_only:
            clauses.append("return_date IS NULL")
        if issued_from is not None:
            clauses.append("start_date >= ?")
            params.append(_start_of(issued_from))
        if issued_to is not None:
            clauses.append("start_date < ?")
            params.append(_end_of(issued_to))
        if returned_from is not None:
            clauses.append("return_date >= ?")
            params.append(_start_of(returned_from))
        if returned_to is not None:
            clauses.append("return_date < ?")
            params.append(_end_of(returned_to))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                f"SELECT * FROM loans {where} ORDER BY start_date DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()
