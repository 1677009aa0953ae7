from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from task_marketplace.domain.errors import StateConflictError

CUSTOMER = "customer-1"
RACERS = 16


@pytest.fixture
def requested_task(lifecycle, task_request, provider_source, make_provider):
    provider_source.upsert(make_provider("p1", 3.0))
    provider_source.upsert(make_provider("p2", 5.0))
    task = lifecycle.create_task(CUSTOMER, task_request())
    return lifecycle.request_provider(task.task_id, CUSTOMER, "p1")


def _race(calls):
    """Run callables as close to simultaneously as possible; return (results, errors)."""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call(), None
        except StateConflictError as exc:
            return None, exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        outcomes = list(pool.map(run, calls))
    results = [result for result, _ in outcomes if result is not None]
    errors = [error for _, error in outcomes if error is not None]
    return results, errors


def test_concurrent_accepts_create_exactly_one_booking(lifecycle, storage, requested_task) -> None:
    task_id = requested_task.task_id
    calls = [lambda: lifecycle.respond_to_request(task_id, "p1", accept=True)] * RACERS

    results, errors = _race(calls)

    assert len(results) == 1
    assert len(errors) == RACERS - 1
    assert {error.code for error in errors} <= {"TASK_ALREADY_CONVERTED", "TASK_NOT_REQUESTED"}
    bookings = storage.list_bookings(client_id=CUSTOMER)
    assert len(bookings) == 1
    assert bookings[0].booking_id == results[0].booking.booking_id
    assert storage.get_task(task_id).converted_to_booking_id == bookings[0].booking_id


def test_direct_conversion_race_is_exclusive(converter, storage, requested_task) -> None:
    calls = [lambda: converter.convert(requested_task, "p1")] * RACERS

    results, errors = _race(calls)

    assert len(results) == 1
    assert {error.code for error in errors} == {"TASK_ALREADY_CONVERTED"}
    assert len(storage.list_bookings(provider_id="p1")) == 1


def test_accept_racing_cancel_has_single_winner(lifecycle, storage, requested_task) -> None:
    task_id = requested_task.task_id
    calls = [
        lambda: lifecycle.respond_to_request(task_id, "p1", accept=True),
        lambda: lifecycle.cancel_task(task_id, CUSTOMER, "Changed my mind"),
    ]

    results, errors = _race(calls)

    assert len(results) == 1
    assert len(errors) == 1
    final = storage.get_task(task_id)
    bookings = storage.list_bookings(client_id=CUSTOMER)
    if final.status == "CONVERTED":
        assert len(bookings) == 1
        assert errors[0].code == "TASK_ALREADY_CONVERTED"
    else:
        assert final.status == "CANCELLED"
        assert bookings == []
        assert errors[0].code == "TASK_NOT_REQUESTED"


def test_accept_racing_reject_has_single_winner(lifecycle, storage, requested_task) -> None:
    task_id = requested_task.task_id
    calls = [
        lambda: lifecycle.respond_to_request(task_id, "p1", accept=True),
        lambda: lifecycle.respond_to_request(task_id, "p1", accept=False),
    ]

    results, errors = _race(calls)

    assert len(results) == 1
    assert len(errors) == 1
    final = storage.get_task(task_id)
    assert final.status in {"CONVERTED", "MATCHED"}
    expected_bookings = 1 if final.status == "CONVERTED" else 0
    assert len(storage.list_bookings(client_id=CUSTOMER)) == expected_bookings
