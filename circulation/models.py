"""Circulation records and their closed status vocabularies."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

CENT = Decimal("0.01")


class CopyStatus(Enum):
    """Availability of a physical copy."""
    AVAILABLE = "available"
    ON_LOAN = "on_loan"
    LOST = "lost"
    DAMAGED = "damaged"
    WITHDRAWN = "withdrawn"


class HoldStatus(Enum):
    """Lifecycle of a hold. Only PENDING and READY_FOR_PICKUP are active."""
    PENDING = "pending"
    READY_FOR_PICKUP = "ready-for-pickup"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def active(cls) -> tuple:
        return (cls.PENDING, cls.READY_FOR_PICKUP)

    @property
    def is_active(self) -> bool:
        return self in HoldStatus.active()


class EntryType(Enum):
    OVERDUE_FINE = "overdue-fine"
    LOST_ITEM = "lost-item"
    DAMAGE = "damage"
    FEE = "fee"
    PAYMENT = "payment"

    @property
    def is_charge(self) -> bool:
        return self is not EntryType.PAYMENT


class EntryStatus(Enum):
    OPEN = "open"
    PARTIAL = "partial"
    PAID = "paid"
    WAIVED = "waived"


# ------------------------- Money and time helpers ------------------------- #
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_cents(amount: Decimal) -> int:
    """Round a decimal amount half-up to the ledger's minor unit."""
    return int((Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ------------------------- Actor ------------------------- #
@dataclass(frozen=True)
class Actor:
    """Who is calling: a staff member or a patron acting for themselves.

    Identity is trusted as already authenticated by the caller.
    """
    id: Optional[int]
    is_staff: bool = False

    @classmethod
    def staff(cls, staff_id: Optional[int] = None) -> "Actor":
        return cls(id=staff_id, is_staff=True)

    @classmethod
    def patron(cls, patron_id: int) -> "Actor":
        return cls(id=patron_id, is_staff=False)

    def may_act_for(self, patron_id: int) -> bool:
        return self.is_staff or self.id == patron_id


# ------------------------- Records ------------------------- #
@dataclass
class Category:
    code: str
    description: str = ""
    max_loans: Optional[int] = None
    loan_period_days: Optional[int] = None

    @staticmethod
    def from_row(row) -> "Category":
        return Category(
            code=row["code"],
            description=row["description"] or "",
            max_loans=row["max_loans"],
            loan_period_days=row["loan_period_days"],
        )


@dataclass
class Patron:
    id: int
    category_code: str
    full_name: str
    membership_expiry: Optional[date] = None
    suspended_until: Optional[date] = None
    suspension_reason: Optional[str] = None

    @staticmethod
    def from_row(row) -> "Patron":
        return Patron(
            id=row["id"],
            category_code=row["category_code"],
            full_name=row["full_name"],
            membership_expiry=_date(row["membership_expiry"]),
            suspended_until=_date(row["suspended_until"]),
            suspension_reason=row["suspension_reason"],
        )


@dataclass
class Work:
    id: int
    title: str
    author: Optional[str] = None

    @staticmethod
    def from_row(row) -> "Work":
        return Work(id=row["id"], title=row["title"], author=row["author"])


@dataclass
class Copy:
    id: int
    work_id: int
    barcode: str
    status: CopyStatus = CopyStatus.AVAILABLE
    not_for_loan: bool = False
    due_date: Optional[datetime] = None
    loan_count: int = 0
    renewal_count: int = 0
    last_borrowed: Optional[datetime] = None
    replacement_cost_cents: Optional[int] = None

    @staticmethod
    def from_row(row) -> "Copy":
        return Copy(
            id=row["id"],
            work_id=row["work_id"],
            barcode=row["barcode"],
            status=CopyStatus(row["status"]),
            not_for_loan=bool(row["not_for_loan"]),
            due_date=_dt(row["due_date"]),
            loan_count=row["loan_count"],
            renewal_count=row["renewal_count"],
            last_borrowed=_dt(row["last_borrowed"]),
            replacement_cost_cents=row["replacement_cost_cents"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "work_id": self.work_id,
            "barcode": self.barcode,
            "status": self.status.value,
            "not_for_loan": self.not_for_loan,
            "due_date": _iso(self.due_date),
            "loan_count": self.loan_count,
            "renewal_count": self.renewal_count,
            "last_borrowed": _iso(self.last_borrowed),
        }


@dataclass
class Loan:
    id: int
    patron_id: int
    copy_id: int
    start_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    renewal_count: int = 0
    last_renewed: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    @staticmethod
    def from_row(row) -> "Loan":
        return Loan(
            id=row["id"],
            patron_id=row["patron_id"],
            copy_id=row["copy_id"],
            start_date=_dt(row["start_date"]),
            due_date=_dt(row["due_date"]),
            return_date=_dt(row["return_date"]),
            renewal_count=row["renewal_count"],
            last_renewed=_dt(row["last_renewed"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "copy_id": self.copy_id,
            "start_date": _iso(self.start_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "renewal_count": self.renewal_count,
            "last_renewed": _iso(self.last_renewed),
        }


@dataclass
class Hold:
    id: int
    patron_id: int
    work_id: int
    placed_at: datetime
    priority: int
    status: HoldStatus = HoldStatus.PENDING
    copy_id: Optional[int] = None
    ready_since: Optional[datetime] = None
    ready_copy_id: Optional[int] = None
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @staticmethod
    def from_row(row) -> "Hold":
        return Hold(
            id=row["id"],
            patron_id=row["patron_id"],
            work_id=row["work_id"],
            copy_id=row["copy_id"],
            placed_at=_dt(row["placed_at"]),
            priority=row["priority"],
            status=HoldStatus(row["status"]),
            ready_since=_dt(row["ready_since"]),
            ready_copy_id=row["ready_copy_id"],
            closed_at=_dt(row["closed_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "work_id": self.work_id,
            "copy_id": self.copy_id,
            "placed_at": _iso(self.placed_at),
            "priority": self.priority,
            "status": self.status.value,
            "ready_since": _iso(self.ready_since),
            "ready_copy_id": self.ready_copy_id,
            "closed_at": _iso(self.closed_at),
        }


@dataclass
class LedgerEntry:
    id: int
    patron_id: int
    entry_type: EntryType
    charged_cents: int
    outstanding_cents: int
    status: EntryStatus
    created_at: datetime
    copy_id: Optional[int] = None
    loan_id: Optional[int] = None
    description: Optional[str] = None
    recorded_by: Optional[int] = None
    payment_type: Optional[str] = None
    related_entry_id: Optional[int] = None

    @property
    def charged(self) -> Decimal:
        return from_cents(self.charged_cents)

    @property
    def outstanding(self) -> Decimal:
        return from_cents(self.outstanding_cents)

    @staticmethod
    def from_row(row) -> "LedgerEntry":
        return LedgerEntry(
            id=row["id"],
            patron_id=row["patron_id"],
            entry_type=EntryType(row["entry_type"]),
            charged_cents=row["charged_cents"],
            outstanding_cents=row["outstanding_cents"],
            status=EntryStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            copy_id=row["copy_id"],
            loan_id=row["loan_id"],
            description=row["description"],
            recorded_by=row["recorded_by"],
            payment_type=row["payment_type"],
            related_entry_id=row["related_entry_id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "entry_type": self.entry_type.value,
            "charged": str(self.charged),
            "outstanding": str(self.outstanding),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "copy_id": self.copy_id,
            "loan_id": self.loan_id,
            "description": self.description,
            "recorded_by": self.recorded_by,
            "payment_type": self.payment_type,
            "related_entry_id": self.related_entry_id,
        }


@dataclass
class Policy:
    """Borrowing policy resolved for one patron at one instant."""
    patron_id: int
    max_concurrent_loans: int
    loan_period_days: int
    is_suspended: bool
    suspension_until: Optional[date]
    is_membership_expired: bool
    suspension_reason: Optional[str] = None


@dataclass
class ReturnResult:
    """Outcome of a return: the closed loan plus its side effects."""
    loan: Loan
    fine: Optional[LedgerEntry] = None
    promoted_hold: Optional[Hold] = None


@dataclass
class AccountSummary:
    patron_id: int
    open_loans: int = 0
    overdue_loans: int = 0
    active_holds: int = 0
    outstanding_cents: int = 0

    @property
    def outstanding(self) -> Decimal:
        return from_cents(self.outstanding_cents)
