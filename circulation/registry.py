"""Registration of categories, patrons, works and copies.

Catalog and patron management live outside the circulation core; this module
is the small slice of them that seeding, the CLI and the tests need.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from .database import get_db_connection, ts
from .errors import Conflict, InvalidInput, NotFound
from .models import Category, Copy, CopyStatus, Patron, Work, to_cents, utc_now

logger = logging.getLogger(__name__)


class Registry:
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def _insert(self, sql: str, params: tuple) -> int:
        conn = get_db_connection(self.db_file)
        try:
            return conn.execute(sql, params).lastrowid
        except sqlite3.IntegrityError as e:
            raise Conflict(str(e)) from e
        finally:
            conn.close()

    def _fetch(self, sql: str, params: tuple, what: str):
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(sql, params).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"{what} not found")
        return row

    # ------------------------- Categories ------------------------- #
    def add_category(self, code: str, description: str = "", max_loans: Optional[int] = None,
                     loan_period_days: Optional[int] = None) -> Category:
        code = (code or "").strip().upper()
        if not code:
            raise InvalidInput("Category code is required")
        if max_loans is not None and max_loans < 1:
            raise InvalidInput("max_loans must be at least 1")
        if loan_period_days is not None and loan_period_days < 1:
            raise InvalidInput("loan_period_days must be at least 1")
        self._insert(
            "INSERT INTO categories (code, description, max_loans, loan_period_days) VALUES (?, ?, ?, ?)",
            (code, description, max_loans, loan_period_days),
        )
        return self.get_category(code)

    def get_category(self, code: str) -> Category:
        return Category.from_row(self._fetch("SELECT * FROM categories WHERE code = ?", (code,), f"Category {code}"))

    # ------------------------- Patrons ------------------------- #
    def add_patron(self, full_name: str, category_code: str, membership_expiry: Optional[date] = None,
                   suspended_until: Optional[date] = None, suspension_reason: Optional[str] = None) -> Patron:
        if not (full_name or "").strip():
            raise InvalidInput("Patron name is required")
        self.get_category(category_code.upper())
        patron_id = self._insert(
            """
            INSERT INTO patrons (category_code, full_name, membership_expiry, suspended_until, suspension_reason)
            VALUES (?, ?, ?, ?, ?)
            """,
            (category_code.upper(), full_name.strip(),
             membership_expiry.isoformat() if membership_expiry else None,
             suspended_until.isoformat() if suspended_until else None,
             suspension_reason),
        )
        return self.get_patron(patron_id)

    def get_patron(self, patron_id: int) -> Patron:
        return Patron.from_row(self._fetch("SELECT * FROM patrons WHERE id = ?", (patron_id,), f"Patron {patron_id}"))

    def suspend_patron(self, patron_id: int, until: Optional[date], reason: Optional[str] = None) -> Patron:
        """Set or clear (``until=None``) a patron's suspension."""
        self.get_patron(patron_id)
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                "UPDATE patrons SET suspended_until = ?, suspension_reason = ? WHERE id = ?",
                (until.isoformat() if until else None, reason if until else None, patron_id),
            )
        finally:
            conn.close()
        logger.info(f"Patron {patron_id} suspension set to {until}")
        return self.get_patron(patron_id)

    # ------------------------- Catalog ------------------------- #
    def add_work(self, title: str, author: Optional[str] = None) -> Work:
        if not (title or "").strip():
            raise InvalidInput("Title is required")
        work_id = self._insert("INSERT INTO works (title, author) VALUES (?, ?)", (title.strip(), author))
        return Work.from_row(self._fetch("SELECT * FROM works WHERE id = ?", (work_id,), f"Work {work_id}"))

    def add_copy(self, work_id: int, barcode: str, not_for_loan: bool = False,
                 replacement_cost: Optional[Decimal] = None,
                 status: CopyStatus = CopyStatus.AVAILABLE) -> Copy:
        """Register a copy. Only available or off-shelf statuses can be set here."""
        barcode = (barcode or "").strip()
        if not barcode:
            raise InvalidInput("Barcode is required")
        if status is CopyStatus.ON_LOAN:
            raise InvalidInput("A copy can only go on loan through checkout")
        self._fetch("SELECT id FROM works WHERE id = ?", (work_id,), f"Work {work_id}")
        copy_id = self._insert(
            """
            INSERT INTO copies (work_id, barcode, status, not_for_loan, replacement_cost_cents, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (work_id, barcode, status.value, int(not_for_loan),
             to_cents(replacement_cost) if replacement_cost is not None else None, ts(utc_now())),
        )
        return Copy.from_row(self._fetch("SELECT * FROM copies WHERE id = ?", (copy_id,), f"Copy {copy_id}"))


def seed_demo_data(registry: Registry, today: Optional[date] = None) -> Dict[str, Any]:
    """Create a small demo branch: two categories, three patrons, three works."""
    today = today or datetime.now().date()
    adult = registry.add_category("ADULT", "Adult member", max_loans=5, loan_period_days=21)
    child = registry.add_category("CHILD", "Junior member", max_loans=3, loan_period_days=14)

    patrons = [
        registry.add_patron("Ada Lovelace", adult.code, membership_expiry=today + timedelta(days=365)),
        registry.add_patron("Alan Turing", adult.code, membership_expiry=today + timedelta(days=365)),
        registry.add_patron(
            "Grace Hopper", child.code,
            membership_expiry=today + timedelta(days=180),
            suspended_until=today + timedelta(days=10),
            suspension_reason="Unpaid fines",
        ),
    ]

    works, copies = [], []
    catalog = [
        ("The Left Hand of Darkness", "Ursula K. Le Guin", 2),
        ("Invisible Cities", "Italo Calvino", 1),
        ("Reference Atlas", "Various", 1),
    ]
    barcode = 1000
    for title, author, count in catalog:
        work = registry.add_work(title, author)
        works.append(work)
        for _ in range(count):
            barcode += 1
            copies.append(registry.add_copy(
                work.id, f"BC{barcode}",
                not_for_loan=title == "Reference Atlas",
                replacement_cost=Decimal("25.00"),
            ))

    logger.info(f"Seeded {len(patrons)} patrons, {len(works)} works, {len(copies)} copies")
    return {
        "categories": [adult, child],
        "patrons": patrons,
        "works": works,
        "copies": copies,
    }
