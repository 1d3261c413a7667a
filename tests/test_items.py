from datetime import timedelta

import pytest

from circulation.database import get_db_connection, ts, unit_of_work
from circulation.errors import Conflict, InvalidInput, InvalidState, NotFound
from circulation.models import CopyStatus
from circulation.services.items import ItemStateTracker

tracker = ItemStateTracker()


def test_find_copy_by_id_and_barcode(desk, library):
    conn = get_db_connection(desk.db_file)
    try:
        by_id = tracker.find_copy(conn, copy_id=library["dune1"].id)
        by_barcode = tracker.find_copy(conn, barcode=" D-001 ")
        assert by_id == by_barcode
        with pytest.raises(NotFound, match="Copy NOPE not found"):
            tracker.find_copy(conn, barcode="NOPE")
        with pytest.raises(InvalidInput):
            tracker.find_copy(conn)
    finally:
        conn.close()


def test_check_out_and_in_round(desk, library, clock):
    copy_id = library["dune1"].id
    due = clock() + timedelta(days=21)
    with unit_of_work(desk.db_file) as conn:
        copy = tracker.check_out(conn, copy_id, due, clock())
    assert copy.status is CopyStatus.ON_LOAN
    assert copy.due_date == due
    assert copy.loan_count == 1

    with unit_of_work(desk.db_file) as conn:
        copy = tracker.check_in(conn, copy_id, clock())
    assert copy.status is CopyStatus.AVAILABLE
    assert copy.due_date is None
    assert copy.last_borrowed == clock()
    assert copy.loan_count == 1


def test_transition_from_wrong_status_conflicts(desk, library, clock):
    copy_id = library["dune1"].id
    with pytest.raises(Conflict, match="currently available"):
        with unit_of_work(desk.db_file) as conn:
            tracker.check_in(conn, copy_id, clock())


def test_non_circulation_transition_is_rejected(desk, library, clock):
    with pytest.raises(InvalidState):
        with unit_of_work(desk.db_file) as conn:
            tracker.transition(conn, library["dune1"].id, CopyStatus.AVAILABLE, CopyStatus.LOST, now=clock())


def test_unknown_extra_column_is_rejected(desk, library, clock):
    with pytest.raises(InvalidInput):
        with unit_of_work(desk.db_file) as conn:
            tracker.transition(
                conn, library["dune1"].id, CopyStatus.AVAILABLE, CopyStatus.ON_LOAN,
                extra={"barcode": "X"}, now=clock(),
            )


def test_unit_of_work_rolls_back_on_error(desk, library, clock):
    copy_id = library["dune1"].id
    with pytest.raises(RuntimeError):
        with unit_of_work(desk.db_file) as conn:
            tracker.check_out(conn, copy_id, clock() + timedelta(days=1), clock())
            raise RuntimeError("boom")
    conn = get_db_connection(desk.db_file)
    try:
        assert tracker.get_status(conn, copy_id) is CopyStatus.AVAILABLE
    finally:
        conn.close()


def test_second_open_loan_on_a_copy_is_a_conflict(desk, library, clock):
    alice, bob, copy = library["alice"], library["bob"], library["dune1"]
    sql = "INSERT INTO loans (patron_id, copy_id, start_date, due_date) VALUES (?, ?, ?, ?)"
    with unit_of_work(desk.db_file) as conn:
        conn.execute(sql, (alice.id, copy.id, ts(clock()), ts(clock())))
    with pytest.raises(Conflict, match="Concurrent update rejected"):
        with unit_of_work(desk.db_file) as conn:
            conn.execute(sql, (bob.id, copy.id, ts(clock()), ts(clock())))
