import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..database import ts
from ..errors import Conflict, InvalidInput, InvalidState, NotFound
from ..models import Copy, CopyStatus, Work

logger = logging.getLogger(__name__)

# Transitions the circulation engines drive. Moves to lost/damaged/withdrawn
# belong to catalog management.
TRANSITIONS = {
    (CopyStatus.AVAILABLE, CopyStatus.ON_LOAN),
    (CopyStatus.ON_LOAN, CopyStatus.AVAILABLE),
}

_EXTRA_COLUMNS = {"due_date", "last_borrowed"}


class ItemStateTracker:
    """Owns the copy availability state machine.

    Every transition is a compare-and-set on the current status, executed on
    the caller's connection so it commits or rolls back with the caller's
    unit of work.
    """

    def find_copy(self, conn, copy_id: Optional[int] = None, barcode: Optional[str] = None) -> Copy:
        """Look a copy up by id or by its barcode."""
        if copy_id is not None:
            row = conn.execute("SELECT * FROM copies WHERE id = ?", (copy_id,)).fetchone()
            ref = str(copy_id)
        elif barcode:
            row = conn.execute("SELECT * FROM copies WHERE barcode = ?", (barcode.strip(),)).fetchone()
            ref = barcode
        else:
            raise InvalidInput("Provide a copy id or a barcode")
        if row is None:
            raise NotFound(f"Copy {ref} not found")
        return Copy.from_row(row)

    def get_work(self, conn, work_id: int) -> Work:
        row = conn.execute("SELECT * FROM works WHERE id = ?", (work_id,)).fetchone()
        if row is None:
            raise NotFound(f"Work {work_id} not found")
        return Work.from_row(row)

    def get_status(self, conn, copy_id: int) -> CopyStatus:
        row = conn.execute("SELECT status FROM copies WHERE id = ?", (copy_id,)).fetchone()
        if row is None:
            raise NotFound(f"Copy {copy_id} not found")
        return CopyStatus(row["status"])

    def transition(self, conn, copy_id: int, from_status: CopyStatus, to_status: CopyStatus,
                   extra: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> Copy:
        """Move a copy from ``from_status`` to ``to_status`` or fail with Conflict.

        ``extra`` may set ``due_date`` and ``last_borrowed``. A checkout also
        bumps the lifetime loan count.
        """
        if (from_status, to_status) not in TRANSITIONS:
            raise InvalidState(f"Transition {from_status.value} -> {to_status.value} is not a circulation transition")
        extra = dict(extra or {})
        unknown = set(extra) - _EXTRA_COLUMNS
        if unknown:
            raise InvalidInput(f"Unsupported copy fields: {', '.join(sorted(unknown))}")

        assignments = ["status = ?", "updated_at = ?"]
        params: list = [to_status.value, ts(now)]
        for column, value in sorted(extra.items()):
            assignments.append(f"{column} = ?")
            params.append(ts(value) if isinstance(value, datetime) else value)
        if to_status is CopyStatus.ON_LOAN:
            assignments.append("loan_count = loan_count + 1")

        cursor = conn.execute(
            f"UPDATE copies SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            (*params, copy_id, from_status.value),
        )
        if cursor.rowcount == 0:
            current = self.get_status(conn, copy_id)
            raise Conflict(f"Copy {copy_id} is currently {current.value}")
        return self.find_copy(conn, copy_id=copy_id)

    def check_out(self, conn, copy_id: int, due_date: datetime, now: datetime) -> Copy:
        return self.transition(
            conn, copy_id, CopyStatus.AVAILABLE, CopyStatus.ON_LOAN,
            extra={"due_date": due_date}, now=now,
        )

    def check_in(self, conn, copy_id: int, now: datetime) -> Copy:
        return self.transition(
            conn, copy_id, CopyStatus.ON_LOAN, CopyStatus.AVAILABLE,
            extra={"due_date": None, "last_borrowed": now}, now=now,
        )

    def extend_due_date(self, conn, copy_id: int, due_date: datetime, now: datetime) -> Copy:
        """Record a renewal on the copy: new due date and lifetime renewal counter."""
        cursor = conn.execute(
            """
            UPDATE copies SET due_date = ?, renewal_count = renewal_count + 1, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (ts(due_date), ts(now), copy_id, CopyStatus.ON_LOAN.value),
        )
        if cursor.rowcount == 0:
            current = self.get_status(conn, copy_id)
            raise Conflict(f"Copy {copy_id} is currently {current.value}")
        return self.find_copy(conn, copy_id=copy_id)
