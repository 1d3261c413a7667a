from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from circulation.database import get_db_connection
from circulation.errors import CirculationError, Conflict, Forbidden

pytestmark = pytest.mark.integration

WORKERS = 8


def run_concurrently(calls):
    """Run callables on separate threads; return results and circulation errors in order."""
    def attempt(call):
        try:
            return call()
        except CirculationError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(attempt, calls))


def make_copies(desk, work_id, count, prefix):
    return [desk.registry.add_copy(work_id, f"{prefix}-{i:03d}") for i in range(count)]


def test_checkout_limit_race(desk, library, staff):
    alice = library["alice"]
    desk.checkout(alice.id, staff, copy_id=library["emma1"].id)
    desk.checkout(alice.id, staff, copy_id=library["emma2"].id)
    copies = make_copies(desk, library["dune"].id, WORKERS, "RACE")

    results = run_concurrently([
        (lambda copy_id=copy.id: desk.checkout(alice.id, staff, copy_id=copy_id)) for copy in copies
    ])

    successes = [r for r in results if not isinstance(r, CirculationError)]
    assert len(successes) == 1
    assert all(isinstance(r, Forbidden) for r in results if isinstance(r, CirculationError))
    assert len(desk.history(staff, patron_id=alice.id, open_only=True)) == 3


def test_double_checkout_race(desk, library, staff, clock):
    registry = desk.registry
    patrons = [
        registry.add_patron(f"Racer {i}", "ADULT", membership_expiry=clock().date() + timedelta(days=30))
        for i in range(WORKERS)
    ]
    copy = library["emma3"]

    results = run_concurrently([
        (lambda patron_id=patron.id: desk.checkout(patron_id, staff, copy_id=copy.id)) for patron in patrons
    ])

    successes = [r for r in results if not isinstance(r, CirculationError)]
    assert len(successes) == 1
    assert all(isinstance(r, Conflict) for r in results if isinstance(r, CirculationError))

    conn = get_db_connection(desk.db_file)
    try:
        open_loans = conn.execute(
            "SELECT COUNT(*) FROM loans WHERE copy_id = ? AND return_date IS NULL", (copy.id,)
        ).fetchone()[0]
    finally:
        conn.close()
    assert open_loans == 1


def test_hold_priority_race(desk, library, staff, clock):
    registry = desk.registry
    patrons = [
        registry.add_patron(f"Queuer {i}", "ADULT", membership_expiry=clock().date() + timedelta(days=30))
        for i in range(WORKERS)
    ]
    work_id = library["dune"].id

    results = run_concurrently([
        (lambda patron_id=patron.id: desk.place_hold(patron_id, work_id, staff)) for patron in patrons
    ])

    assert not any(isinstance(r, CirculationError) for r in results)
    assert sorted(hold.priority for hold in results) == list(range(1, WORKERS + 1))


def test_copy_and_loan_state_stay_consistent(desk, library, staff, clock):
    alice, bob = library["alice"], library["bob"]
    loan = desk.checkout(alice.id, staff, copy_id=library["dune1"].id)
    desk.checkout(bob.id, staff, copy_id=library["emma1"].id)
    clock.advance(days=2)

    run_concurrently([
        lambda: desk.return_copy(staff, loan_id=loan.id),
        lambda: desk.return_copy(staff, loan_id=loan.id),
        lambda: desk.checkout(bob.id, staff, copy_id=library["emma2"].id),
        lambda: desk.renew(loan.id, staff),
    ])

    conn = get_db_connection(desk.db_file)
    try:
        mismatched = conn.execute(
            """
            SELECT COUNT(*) FROM copies c
            WHERE (c.status = 'on_loan') != (
                SELECT COUNT(*) = 1 FROM loans l WHERE l.copy_id = c.id AND l.return_date IS NULL
            )
            """
        ).fetchone()[0]
    finally:
        conn.close()
    assert mismatched == 0
