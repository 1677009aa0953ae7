from __future__ import annotations

from datetime import timedelta

import pytest

from task_marketplace.domain.errors import (
    NotAuthorizedError,
    NotFoundError,
    StateConflictError,
    ValidationFailedError,
)

CUSTOMER = "customer-1"
PROVIDER = "p1"


@pytest.fixture
def booking(lifecycle, task_request, provider_source, make_provider):
    provider_source.upsert(make_provider(PROVIDER, 3.0))
    task = lifecycle.create_task(
        CUSTOMER,
        task_request(estimated_budget={"min": 100, "max": 180, "currency": "GHS"}),
    )
    lifecycle.request_provider(task.task_id, CUSTOMER, PROVIDER)
    return lifecycle.respond_to_request(task.task_id, PROVIDER, accept=True).booking


def test_converted_booking_copies_task_details(booking, lifecycle) -> None:
    task = lifecycle.get_task(booking.task_id)

    assert booking.status == "CONFIRMED"
    assert booking.service_location == task.customer_location
    assert booking.service_description == task.description
    assert booking.estimated_price == 180
    assert booking.currency == "GHS"
    assert [entry.status for entry in booking.status_history] == ["CONFIRMED"]


def test_booking_runs_to_completion_and_then_is_terminal(booking, converter, clock) -> None:
    started = converter.start(booking.booking_id, PROVIDER)
    assert started.status == "IN_PROGRESS"
    assert started.started_at == clock.now

    clock.advance(timedelta(hours=2))
    completed = converter.complete(booking.booking_id, PROVIDER, final_price=150)

    assert completed.status == "COMPLETED"
    assert completed.final_price == 150
    assert completed.completed_at == clock.now
    assert [entry.status for entry in completed.status_history] == [
        "CONFIRMED",
        "IN_PROGRESS",
        "COMPLETED",
    ]

    with pytest.raises(StateConflictError) as exc_info:
        converter.start(booking.booking_id, PROVIDER)
    assert exc_info.value.code == "BOOKING_TERMINAL"


def test_complete_requires_in_progress(booking, converter) -> None:
    with pytest.raises(StateConflictError) as exc_info:
        converter.complete(booking.booking_id, PROVIDER, final_price=150)

    assert exc_info.value.code == "BOOKING_INVALID_STATE"
    assert converter.get_booking(booking.booking_id).status == "CONFIRMED"


def test_start_twice_is_invalid_state(booking, converter) -> None:
    converter.start(booking.booking_id, PROVIDER)

    with pytest.raises(StateConflictError) as exc_info:
        converter.start(booking.booking_id, PROVIDER)

    assert exc_info.value.code == "BOOKING_INVALID_STATE"


@pytest.mark.parametrize(("actor", "role"), [(CUSTOMER, "CUSTOMER"), (PROVIDER, "PROVIDER")])
def test_either_party_can_cancel(booking, converter, actor, role) -> None:
    cancelled = converter.cancel(booking.booking_id, actor, "Schedule clash")

    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_by == role
    assert cancelled.cancellation_reason == "Schedule clash"
    assert cancelled.status_history[-1].reason == "Schedule clash"

    with pytest.raises(StateConflictError) as exc_info:
        converter.cancel(booking.booking_id, actor)
    assert exc_info.value.code == "BOOKING_TERMINAL"


def test_in_progress_booking_can_be_cancelled(booking, converter) -> None:
    converter.start(booking.booking_id, PROVIDER)

    assert converter.cancel(booking.booking_id, CUSTOMER).status == "CANCELLED"


def test_only_booking_parties_can_act(booking, converter) -> None:
    with pytest.raises(NotAuthorizedError) as exc_info:
        converter.start(booking.booking_id, "p-other")
    assert exc_info.value.code == "NOT_BOOKING_PARTY"

    with pytest.raises(NotAuthorizedError):
        converter.cancel(booking.booking_id, "stranger")
    with pytest.raises(NotAuthorizedError):
        converter.complete(booking.booking_id, CUSTOMER)


def test_negative_final_price_is_rejected(booking, converter) -> None:
    converter.start(booking.booking_id, PROVIDER)

    with pytest.raises(ValidationFailedError):
        converter.complete(booking.booking_id, PROVIDER, final_price=-1)


def test_unknown_booking_is_not_found(converter) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        converter.start("missing", PROVIDER)

    assert exc_info.value.code == "BOOKING_NOT_FOUND"


def test_booking_with_task_and_listing(booking, converter) -> None:
    found, task = converter.get_booking_with_task(booking.booking_id)

    assert found.booking_id == booking.booking_id
    assert task is not None
    assert task.converted_to_booking_id == booking.booking_id
    assert [b.booking_id for b in converter.list_bookings(client_id=CUSTOMER)] == [
        booking.booking_id
    ]
    assert [b.booking_id for b in converter.list_bookings(provider_id=PROVIDER)] == [
        booking.booking_id
    ]
    assert converter.list_bookings(provider_id="p-other") == []
    with pytest.raises(ValidationFailedError):
        converter.list_bookings()


def test_status_summary_counts_every_status(booking, converter) -> None:
    converter.start(booking.booking_id, PROVIDER)

    summary = converter.status_summary(provider_id=PROVIDER)

    assert summary == {
        "CONFIRMED": 0,
        "IN_PROGRESS": 1,
        "COMPLETED": 0,
        "CANCELLED": 0,
        "total": 1,
    }
    assert converter.status_summary(client_id="nobody")["total"] == 0


@pytest.mark.parametrize(("actor", "role"), [(CUSTOMER, "CUSTOMER"), (PROVIDER, "PROVIDER")])
def test_either_party_can_reschedule_confirmed_booking(
    booking, converter, clock, actor, role
) -> None:
    start = clock.now + timedelta(days=3)
    end = start + timedelta(hours=2)

    moved = converter.reschedule(booking.booking_id, actor, start, end, "Customer travelling")

    assert moved.status == "CONFIRMED"
    assert moved.scheduled_start == start
    assert moved.scheduled_end == end
    assert moved.version == booking.version + 1
    assert [entry.status for entry in moved.status_history] == ["CONFIRMED", "CONFIRMED"]
    assert moved.status_history[-1].actor_role == role
    assert moved.status_history[-1].reason == "Customer travelling"


def test_reschedule_defaults_reason_and_reads_naive_times_as_utc(
    booking, converter, clock
) -> None:
    naive_start = (clock.now + timedelta(days=1)).replace(tzinfo=None)

    moved = converter.reschedule(booking.booking_id, CUSTOMER, naive_start)

    assert moved.scheduled_start == clock.now + timedelta(days=1)
    assert moved.scheduled_end is None
    assert moved.status_history[-1].reason == "Rescheduled"


def test_reschedule_rejects_inverted_window(booking, converter, clock) -> None:
    start = clock.now + timedelta(days=2)

    with pytest.raises(ValidationFailedError):
        converter.reschedule(booking.booking_id, CUSTOMER, start, start - timedelta(hours=1))

    assert converter.get_booking(booking.booking_id).scheduled_start == booking.scheduled_start


def test_reschedule_only_while_confirmed_and_only_by_parties(booking, converter, clock) -> None:
    start = clock.now + timedelta(days=2)

    with pytest.raises(NotAuthorizedError):
        converter.reschedule(booking.booking_id, "stranger", start)

    converter.start(booking.booking_id, PROVIDER)
    with pytest.raises(StateConflictError) as exc_info:
        converter.reschedule(booking.booking_id, CUSTOMER, start)
    assert exc_info.value.code == "BOOKING_INVALID_STATE"

    converter.cancel(booking.booking_id, CUSTOMER)
    with pytest.raises(StateConflictError) as terminal:
        converter.reschedule(booking.booking_id, CUSTOMER, start)
    assert terminal.value.code == "BOOKING_TERMINAL"
