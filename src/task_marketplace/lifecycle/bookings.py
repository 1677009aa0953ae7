"""Task-to-Booking conversion and Booking execution transitions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from task_marketplace.domain.errors import (
    BOOKING_INVALID_STATE,
    BOOKING_TERMINAL,
    NOT_BOOKING_PARTY,
    TASK_ALREADY_CONVERTED,
    TASK_NOT_REQUESTED,
    NotAuthorizedError,
    StateConflictError,
    ValidationFailedError,
    booking_not_found,
    task_not_found,
)
from task_marketplace.domain.models import (
    ActorRole,
    Booking,
    BookingStatus,
    BookingStatusEntry,
    Task,
)
from task_marketplace.storage.base import MarketplaceStorage

logger = logging.getLogger(__name__)

_ALL_BOOKING_STATUSES: tuple[BookingStatus, ...] = (
    "CONFIRMED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
)


class BookingConverter:
    """Creates exactly one Booking per accepted Task and drives it to completion."""

    def __init__(
        self,
        storage: MarketplaceStorage,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self._clock = clock or (lambda: datetime.now(UTC))

    def convert(self, task: Task, provider_id: str) -> tuple[Task, Booking]:
        """Atomically close a REQUESTED Task and open its CONFIRMED Booking.

        The exclusivity check lives in ``storage.convert_task``; everything
        before it only fails fast on a view that is already known to be stale.
        """
        if task.status == "CONVERTED" or task.converted_to_booking_id is not None:
            raise _already_converted(task)
        if task.status != "REQUESTED":
            raise _not_requested(task)

        booking = self._build_booking(task, provider_id)
        result = self.storage.convert_task(
            task.task_id, provider_id=provider_id, booking=booking
        )
        if not result.applied:
            current = result.record
            logger.warning(
                "booking_converter event=convert_lost task_id=%s provider_id=%s current_status=%s",
                task.task_id,
                provider_id,
                current.status if current else None,
            )
            if current is None:
                raise task_not_found(task.task_id)
            if current.status == "REQUESTED" and current.requested_provider_id == provider_id:
                # Only reachable when another live Booking already holds this Task.
                raise _already_converted(current)
            if current.status == "CONVERTED" or current.converted_to_booking_id is not None:
                raise _already_converted(current)
            raise _not_requested(current)

        converted = result.record
        assert converted is not None
        logger.info(
            "booking_converter event=converted task_id=%s booking_id=%s provider_id=%s",
            task.task_id,
            booking.booking_id,
            provider_id,
        )
        return converted, booking

    def start(self, booking_id: str, provider_id: str) -> Booking:
        booking = self.get_booking(booking_id)
        if booking.provider_id != provider_id:
            raise _not_party(booking, provider_id)
        self._require(booking, "CONFIRMED", action="start")
        now = self._clock()
        return self._transition(
            booking,
            "IN_PROGRESS",
            {"started_at": now},
            actor_id=provider_id,
            actor_role="PROVIDER",
            at=now,
        )

    def complete(
        self,
        booking_id: str,
        provider_id: str,
        final_price: float | None = None,
    ) -> Booking:
        if final_price is not None and final_price < 0:
            raise ValidationFailedError(
                "final_price must not be negative", fields={"final_price": str(final_price)}
            )
        booking = self.get_booking(booking_id)
        if booking.provider_id != provider_id:
            raise _not_party(booking, provider_id)
        self._require(booking, "IN_PROGRESS", action="complete")
        now = self._clock()
        fields: dict[str, Any] = {"completed_at": now}
        if final_price is not None:
            fields["final_price"] = final_price
        return self._transition(
            booking,
            "COMPLETED",
            fields,
            actor_id=provider_id,
            actor_role="PROVIDER",
            at=now,
        )

    def cancel(self, booking_id: str, actor_id: str, reason: str | None = None) -> Booking:
        booking = self.get_booking(booking_id)
        role = _party_role(booking, actor_id)
        if booking.is_terminal:
            raise _terminal(booking, action="cancel")
        now = self._clock()
        return self._transition(
            booking,
            "CANCELLED",
            {"cancelled_at": now, "cancellation_reason": reason, "cancelled_by": role},
            actor_id=actor_id,
            actor_role=role,
            at=now,
            reason=reason,
        )

    def reschedule(
        self,
        booking_id: str,
        actor_id: str,
        scheduled_start: datetime,
        scheduled_end: datetime | None = None,
        reason: str | None = None,
    ) -> Booking:
        """Move a CONFIRMED booking to a new time window. Either party may do it."""
        start = _as_utc(scheduled_start)
        end = _as_utc(scheduled_end) if scheduled_end is not None else None
        if end is not None and start >= end:
            raise ValidationFailedError(
                "Scheduled start must be before end",
                fields={"scheduled_start": start.isoformat(), "scheduled_end": end.isoformat()},
            )
        booking = self.get_booking(booking_id)
        role = _party_role(booking, actor_id)
        self._require(booking, "CONFIRMED", action="reschedule")
        return self._transition(
            booking,
            "CONFIRMED",
            {"scheduled_start": start, "scheduled_end": end},
            actor_id=actor_id,
            actor_role=role,
            at=self._clock(),
            reason=reason or "Rescheduled",
        )

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.storage.get_booking(booking_id)
        if booking is None:
            raise booking_not_found(booking_id)
        return booking

    def get_booking_with_task(self, booking_id: str) -> tuple[Booking, Task | None]:
        booking = self.get_booking(booking_id)
        return booking, self.storage.get_task(booking.task_id, include_deleted=True)

    def list_bookings(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> list[Booking]:
        if client_id is None and provider_id is None:
            raise ValidationFailedError(
                "clientId or providerId is required",
                fields={"client_id": "missing", "provider_id": "missing"},
            )
        return self.storage.list_bookings(client_id=client_id, provider_id=provider_id)

    def status_summary(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> dict[str, int]:
        counts = self.storage.count_bookings_by_status(
            client_id=client_id, provider_id=provider_id
        )
        summary = {status: counts.get(status, 0) for status in _ALL_BOOKING_STATUSES}
        summary["total"] = sum(summary.values())
        return summary

    def _build_booking(self, task: Task, provider_id: str) -> Booking:
        now = self._clock()
        budget = task.estimated_budget
        estimated_price = None
        if budget is not None:
            estimated_price = budget.max if budget.max is not None else budget.min
        return Booking(
            booking_id=str(uuid.uuid4()),
            task_id=task.task_id,
            client_id=task.customer_id,
            provider_id=provider_id,
            status="CONFIRMED",
            service_location=task.customer_location,
            service_description=task.description,
            scheduled_start=task.schedule.start or task.schedule.preferred_date,
            scheduled_end=task.schedule.end,
            estimated_price=estimated_price,
            currency=budget.currency if budget is not None else "GHS",
            created_at=now,
            updated_at=now,
            status_history=[
                BookingStatusEntry(
                    status="CONFIRMED", at=now, actor_id=provider_id, actor_role="PROVIDER"
                )
            ],
        )

    def _require(self, booking: Booking, expected: BookingStatus, *, action: str) -> None:
        if booking.is_terminal:
            raise _terminal(booking, action=action)
        if booking.status != expected:
            raise StateConflictError(
                BOOKING_INVALID_STATE,
                f"Cannot {action} a booking in status {booking.status}",
                booking_id=booking.booking_id,
                status=booking.status,
                expected_status=expected,
            )

    def _transition(
        self,
        booking: Booking,
        new_status: BookingStatus,
        fields: dict[str, Any],
        *,
        actor_id: str,
        actor_role: ActorRole,
        at: datetime,
        reason: str | None = None,
    ) -> Booking:
        history = [entry.model_dump() for entry in booking.status_history]
        history.append(
            BookingStatusEntry(
                status=new_status,
                at=at,
                actor_id=actor_id,
                actor_role=actor_role,
                reason=reason,
            ).model_dump()
        )
        result = self.storage.transition_booking(
            booking.booking_id,
            expected_status=booking.status,
            new_status=new_status,
            fields={**fields, "status_history": history},
            expected_version=booking.version,
        )
        if not result.applied:
            current = result.record
            logger.warning(
                "booking_converter event=transition_lost booking_id=%s from=%s to=%s",
                booking.booking_id,
                booking.status,
                new_status,
            )
            if current is None:
                raise booking_not_found(booking.booking_id)
            if current.is_terminal:
                raise _terminal(current, action=new_status.lower())
            raise StateConflictError(
                BOOKING_INVALID_STATE,
                f"Booking changed to {current.status} concurrently",
                booking_id=booking.booking_id,
                status=current.status,
            )
        updated = result.record
        assert updated is not None
        logger.info(
            "booking_converter event=transition booking_id=%s from=%s to=%s",
            booking.booking_id,
            booking.status,
            new_status,
        )
        return updated


def _already_converted(task: Task) -> StateConflictError:
    return StateConflictError(
        TASK_ALREADY_CONVERTED,
        f"Task {task.task_id} has already been converted to a booking",
        task_id=task.task_id,
        booking_id=task.converted_to_booking_id,
    )


def _not_requested(task: Task) -> StateConflictError:
    return StateConflictError(
        TASK_NOT_REQUESTED,
        f"Task {task.task_id} is not awaiting a provider response",
        task_id=task.task_id,
        status=task.status,
    )


def _terminal(booking: Booking, *, action: str) -> StateConflictError:
    return StateConflictError(
        BOOKING_TERMINAL,
        f"Cannot {action} a booking that is {booking.status}",
        booking_id=booking.booking_id,
        status=booking.status,
    )


def _not_party(booking: Booking, actor_id: str) -> NotAuthorizedError:
    return NotAuthorizedError(
        NOT_BOOKING_PARTY,
        "Actor is not a party to this booking",
        booking_id=booking.booking_id,
        actor_id=actor_id,
    )


def _party_role(booking: Booking, actor_id: str) -> ActorRole:
    if actor_id == booking.client_id:
        return "CUSTOMER"
    if actor_id == booking.provider_id:
        return "PROVIDER"
    raise _not_party(booking, actor_id)


def _as_utc(value: datetime) -> datetime:
    # Naive times are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
