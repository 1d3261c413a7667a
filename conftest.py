import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# Keep the module-level API app away from the working directory's store
os.environ.setdefault(
    "CIRCULATION_DB_FILE",
    os.path.join(tempfile.mkdtemp(prefix="circulation_"), "circulation.db"),
)

from circulation.desk import CirculationDesk  # noqa: E402
from circulation.models import Actor  # noqa: E402

START = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_file(tmp_path, request):
    # A fresh store per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def desk(db_file, clock):
    return CirculationDesk(db_file=db_file, clock=clock)


@pytest.fixture
def staff():
    return Actor.staff(900)


@pytest.fixture
def library(desk, clock):
    """Small branch: ADULT (3 loans, 21 days), two works, one reference copy.

    alice, bob and carol are in good standing; dave is suspended and erin's
    membership has lapsed.
    """
    reg = desk.registry
    today = clock().date()
    reg.add_category("ADULT", "Adult member", max_loans=3, loan_period_days=21)
    reg.add_category("OPEN", "Category relying on defaults")

    future = today + timedelta(days=365)
    alice = reg.add_patron("Alice", "ADULT", membership_expiry=future)
    bob = reg.add_patron("Bob", "ADULT", membership_expiry=future)
    carol = reg.add_patron("Carol", "ADULT", membership_expiry=future)
    dave = reg.add_patron(
        "Dave", "ADULT", membership_expiry=future,
        suspended_until=today + timedelta(days=10), suspension_reason="Unpaid fines",
    )
    erin = reg.add_patron("Erin", "ADULT", membership_expiry=today - timedelta(days=1))

    dune = reg.add_work("Dune", "Frank Herbert")
    emma = reg.add_work("Emma", "Jane Austen")
    atlas = reg.add_work("World Atlas")

    copies = {
        "dune1": reg.add_copy(dune.id, "D-001"),
        "dune2": reg.add_copy(dune.id, "D-002"),
        "emma1": reg.add_copy(emma.id, "E-001"),
        "emma2": reg.add_copy(emma.id, "E-002"),
        "emma3": reg.add_copy(emma.id, "E-003"),
        "atlas": reg.add_copy(atlas.id, "A-001", not_for_loan=True),
    }
    return {
        "alice": alice, "bob": bob, "carol": carol, "dave": dave, "erin": erin,
        "dune": dune, "emma": emma, "atlas": atlas,
        **copies,
    }
