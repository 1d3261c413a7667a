"""Per-work hold queue.

Priorities are assigned under the unit-of-work write lock, so two placements on
the same work can never observe the same queue tail. Cancelling or fulfilling a
hold leaves gaps; ordering, not contiguity, is what the queue guarantees.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..database import get_db_connection, ts, unit_of_work
from ..errors import Conflict, Forbidden, InvalidInput, InvalidState, NotFound
from ..models import Actor, Copy, Hold, HoldStatus, utc_now
from .items import ItemStateTracker
from .policy import PolicyResolver
from .preferences import ConfigurationStore

logger = logging.getLogger(__name__)

_ACTIVE = tuple(status.value for status in HoldStatus.active())
_ACTIVE_SQL = f"status IN ('{_ACTIVE[0]}', '{_ACTIVE[1]}')"


class HoldQueueManager:
    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utc_now,
                 policy: Optional[PolicyResolver] = None, items: Optional[ItemStateTracker] = None,
                 preferences: Optional[ConfigurationStore] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.policy = policy or PolicyResolver()
        self.items = items or ItemStateTracker()
        self.preferences = preferences or ConfigurationStore(db_file, clock)

    # ------------------------- Patron operations ------------------------- #
    def place_hold(self, patron_id: int, work_id: int, actor: Actor, copy_id: Optional[int] = None) -> Hold:
        """Queue a patron for the next available copy of a work (or one specific copy)."""
        if not actor.may_act_for(patron_id):
            raise Forbidden("Patrons can only place holds for themselves")

        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            self.policy.get_patron(conn, patron_id)
            self.items.get_work(conn, work_id)
            if copy_id is not None:
                copy = self.items.find_copy(conn, copy_id=copy_id)
                if copy.work_id != work_id:
                    raise InvalidInput(f"Copy {copy_id} does not belong to work {work_id}")

            existing = conn.execute(
                f"SELECT id FROM holds WHERE patron_id = ? AND work_id = ? AND {_ACTIVE_SQL}",
                (patron_id, work_id),
            ).fetchone()
            if existing:
                raise Conflict("Patron already has an active hold for this title")

            # Next slot behind the current tail of active holds
            tail = conn.execute(
                f"SELECT COALESCE(MAX(priority), 0) FROM holds WHERE work_id = ? AND {_ACTIVE_SQL}",
                (work_id,),
            ).fetchone()[0]
            cursor = conn.execute(
                """
                INSERT INTO holds (patron_id, work_id, copy_id, placed_at, priority, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (patron_id, work_id, copy_id, ts(now), tail + 1, HoldStatus.PENDING.value),
            )
            hold = self._get(conn, cursor.lastrowid)
        logger.info(f"Hold {hold.id} placed: patron={patron_id} work={work_id} priority={hold.priority}")
        return hold

    def cancel_hold(self, hold_id: int, actor: Actor) -> Hold:
        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            hold = self._get(conn, hold_id)
            if not actor.may_act_for(hold.patron_id):
                raise Forbidden("Patrons can only cancel their own holds")
            if not hold.is_active:
                raise InvalidState(f"Hold {hold_id} is already {hold.status.value}")
            conn.execute(
                "UPDATE holds SET status = ?, closed_at = ? WHERE id = ?",
                (HoldStatus.CANCELLED.value, ts(now), hold_id),
            )
            # A copy waiting on the shelf for this patron goes to the next in line
            if hold.status is HoldStatus.READY_FOR_PICKUP and hold.ready_copy_id is not None:
                self.promote_next(conn, hold.work_id, hold.ready_copy_id, now)
            hold = self._get(conn, hold_id)
        logger.info(f"Hold {hold_id} cancelled by actor={actor.id}")
        return hold

    def get_hold(self, hold_id: int, actor: Actor) -> Hold:
        conn = get_db_connection(self.db_file)
        try:
            hold = self._get(conn, hold_id)
        finally:
            conn.close()
        if not actor.may_act_for(hold.patron_id):
            raise Forbidden("Patrons can only view their own holds")
        return hold

    def list_holds(self, actor: Actor, patron_id: Optional[int] = None, work_id: Optional[int] = None,
                   active_only: bool = False) -> List[Hold]:
        """Staff see any holds; a patron sees only their own."""
        if not actor.is_staff:
            if patron_id is not None and patron_id != actor.id:
                raise Forbidden("Patrons can only view their own holds")
            patron_id = actor.id

        clauses, params = [], []
        if patron_id is not None:
            clauses.append("patron_id = ?")
            params.append(patron_id)
        if work_id is not None:
            clauses.append("work_id = ?")
            params.append(work_id)
        if active_only:
            clauses.append(_ACTIVE_SQL)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                f"SELECT * FROM holds {where} ORDER BY work_id, priority, placed_at", params
            ).fetchall()
            return [Hold.from_row(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Expiry sweep ------------------------- #
    def expire_stale_holds(self, actor: Actor) -> List[Hold]:
        """Expire ready-for-pickup holds older than ``hold_expiry_days``.

        The copy each expired hold was waiting on goes to the next pending hold
        it can satisfy. Intended for the scheduled sweep; staff only.
        """
        if not actor.is_staff:
            raise Forbidden("Only staff may run the hold expiry sweep")
        now = self.clock()
        expired: List[Hold] = []
        with unit_of_work(self.db_file) as conn:
            cutoff = now - timedelta(days=self.preferences.hold_expiry_days(conn))
            rows = conn.execute(
                "SELECT * FROM holds WHERE status = ? AND ready_since < ? ORDER BY ready_since",
                (HoldStatus.READY_FOR_PICKUP.value, ts(cutoff)),
            ).fetchall()
            for row in rows:
                hold = Hold.from_row(row)
                conn.execute(
                    "UPDATE holds SET status = ?, closed_at = ? WHERE id = ?",
                    (HoldStatus.EXPIRED.value, ts(now), hold.id),
                )
                expired.append(self._get(conn, hold.id))
                if hold.ready_copy_id is not None:
                    self.promote_next(conn, hold.work_id, hold.ready_copy_id, now)
        for hold in expired:
            logger.info(f"Hold {hold.id} expired (ready since {hold.ready_since.isoformat()})")
        return expired

    # ------------------------- Engine collaborators ------------------------- #
    def find_blocking_hold(self, conn, copy: Copy, patron_id: int, for_renewal: bool = False) -> Optional[Hold]:
        """Return another patron's active hold that claims this copy, if any.

        Holds naming this copy, holds it has been set aside for, and
        work-level holds still waiting on its work all block. For a checkout,
        a patron whose own ready hold was set aside this copy is never
        blocked, and one whose ready hold waits on another copy of the work is
        not blocked by work-level holds queued behind it.
        """
        include_work_level = True
        if not for_renewal:
            ready = conn.execute(
                "SELECT ready_copy_id FROM holds WHERE patron_id = ? AND work_id = ? AND status = ?",
                (patron_id, copy.work_id, HoldStatus.READY_FOR_PICKUP.value),
            ).fetchone()
            if ready is not None and ready["ready_copy_id"] == copy.id:
                return None
            include_work_level = ready is None

        if include_work_level:
            scope = "(copy_id = ? OR ready_copy_id = ? OR (copy_id IS NULL AND ready_copy_id IS NULL AND work_id = ?))"
            params = [patron_id, copy.id, copy.id, copy.work_id]
        else:
            scope = "(copy_id = ? OR ready_copy_id = ?)"
            params = [patron_id, copy.id, copy.id]
        row = conn.execute(
            f"""
            SELECT * FROM holds
            WHERE patron_id != ? AND {_ACTIVE_SQL} AND {scope}
            ORDER BY priority, placed_at LIMIT 1
            """,
            params,
        ).fetchone()
        return Hold.from_row(row) if row else None

    def fulfil_for_patron(self, conn, patron_id: int, copy: Copy, now: datetime) -> int:
        """Mark the patron's active holds satisfied by this copy as fulfilled.

        A copy that was set aside for one of those holds but not taken goes to
        the next hold in line.
        """
        rows = conn.execute(
            f"""
            SELECT * FROM holds
            WHERE patron_id = ? AND {_ACTIVE_SQL}
              AND (copy_id = ? OR (copy_id IS NULL AND work_id = ?))
            """,
            (patron_id, copy.id, copy.work_id),
        ).fetchall()
        for row in rows:
            hold = Hold.from_row(row)
            conn.execute(
                "UPDATE holds SET status = ?, closed_at = ? WHERE id = ?",
                (HoldStatus.FULFILLED.value, ts(now), hold.id),
            )
            if hold.ready_copy_id is not None and hold.ready_copy_id != copy.id:
                self.promote_next(conn, hold.work_id, hold.ready_copy_id, now)
        return len(rows)

    def promote_next(self, conn, work_id: int, copy_id: int, now: datetime) -> Optional[Hold]:
        """Set the freed copy aside for the head of the pending queue.

        Only holds that the copy can satisfy are considered: work-level holds
        and holds on that very copy. The promoted hold records the copy in
        ``ready_copy_id``.
        """
        row = conn.execute(
            """
            SELECT * FROM holds
            WHERE work_id = ? AND status = ? AND (copy_id IS NULL OR copy_id = ?)
            ORDER BY priority ASC, placed_at ASC LIMIT 1
            """,
            (work_id, HoldStatus.PENDING.value, copy_id),
        ).fetchone()
        if row is None:
            return None
        conn.execute(
            "UPDATE holds SET status = ?, ready_since = ?, ready_copy_id = ? WHERE id = ?",
            (HoldStatus.READY_FOR_PICKUP.value, ts(now), copy_id, row["id"]),
        )
        return self._get(conn, row["id"])

    def _get(self, conn, hold_id: int) -> Hold:
        row = conn.execute("SELECT * FROM holds WHERE id = ?", (hold_id,)).fetchone()
        if row is None:
            raise NotFound(f"Hold {hold_id} not found")
        return Hold.from_row(row)
