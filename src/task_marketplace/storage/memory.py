"""In-memory storage backend for tests and local development."""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

from task_marketplace.domain.models import Booking, Task
from task_marketplace.geo.distance import BoundingBox
from task_marketplace.storage.base import TransitionResult, apply_patch, expectation_met


class InMemoryMarketplaceStorage:
    """Dict-backed storage; one lock makes every transition a compare-and-set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._bookings: dict[str, Booking] = {}

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise KeyError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or (task.is_deleted and not include_deleted):
                return None
            return task.model_copy(deep=True)

    def list_tasks_by_customer(
        self,
        customer_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]:
        with self._lock:
            matches = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if task.customer_id == customer_id
                and not task.is_deleted
                and (not statuses or task.status in statuses)
            ]
        matches.sort(key=lambda task: task.created_at, reverse=True)
        return matches

    def list_tasks_in_area(self, box: BoundingBox, statuses: Collection[str]) -> list[Task]:
        with self._lock:
            matches = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if not task.is_deleted
                and task.status in statuses
                and box.contains(task.customer_location)
            ]
        matches.sort(key=lambda task: task.created_at, reverse=True)
        return matches

    def list_tasks_by_matched_provider(
        self,
        provider_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]:
        with self._lock:
            matches = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if not task.is_deleted
                and task.has_matched(provider_id)
                and (not statuses or task.status in statuses)
            ]
        matches.sort(key=lambda task: task.created_at, reverse=True)
        return matches

    def transition_task(
        self,
        task_id: str,
        *,
        expected_status: str,
        new_status: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult[Task]:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return TransitionResult(applied=False, record=None)
            if not expectation_met(
                current, expected_status=expected_status, expected_version=expected_version
            ):
                return TransitionResult(applied=False, record=current.model_copy(deep=True))
            updated = apply_patch(current, new_status=new_status, fields=fields, now=_now())
            self._tasks[task_id] = updated
            return TransitionResult(applied=True, record=updated.model_copy(deep=True))

    def soft_delete_task(
        self, task_id: str, *, expected_version: int | None = None
    ) -> TransitionResult[Task]:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return TransitionResult(applied=False, record=None)
            if current.is_deleted or (
                expected_version is not None and current.version != expected_version
            ):
                return TransitionResult(applied=False, record=current.model_copy(deep=True))
            now = _now()
            updated = apply_patch(
                current,
                new_status=current.status,
                fields={"is_deleted": True, "deleted_at": now},
                now=now,
            )
            self._tasks[task_id] = updated
            return TransitionResult(applied=True, record=updated.model_copy(deep=True))

    def restore_task(self, task_id: str) -> TransitionResult[Task]:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return TransitionResult(applied=False, record=None)
            if not current.is_deleted:
                return TransitionResult(applied=False, record=current.model_copy(deep=True))
            updated = apply_patch(
                current,
                new_status=current.status,
                fields={"is_deleted": False, "deleted_at": None},
                now=_now(),
            )
            self._tasks[task_id] = updated
            return TransitionResult(applied=True, record=updated.model_copy(deep=True))

    def convert_task(
        self,
        task_id: str,
        *,
        provider_id: str,
        booking: Booking,
    ) -> TransitionResult[Task]:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return TransitionResult(applied=False, record=None)
            if (
                current.status != "REQUESTED"
                or current.requested_provider_id != provider_id
                or current.converted_to_booking_id is not None
                or self._has_active_booking(task_id)
            ):
                return TransitionResult(applied=False, record=current.model_copy(deep=True))
            updated = apply_patch(
                current,
                new_status="CONVERTED",
                fields={
                    "converted_to_booking_id": booking.booking_id,
                    "converted_at": booking.created_at,
                },
                now=booking.created_at,
            )
            self._tasks[task_id] = updated
            self._bookings[booking.booking_id] = booking.model_copy(deep=True)
            return TransitionResult(applied=True, record=updated.model_copy(deep=True))

    def create_booking(self, booking: Booking) -> Booking:
        with self._lock:
            if booking.booking_id in self._bookings:
                raise KeyError(f"Booking {booking.booking_id} already exists")
            if booking.status != "CANCELLED" and self._has_active_booking(booking.task_id):
                raise ValueError(f"Task {booking.task_id} already has an active booking")
            self._bookings[booking.booking_id] = booking.model_copy(deep=True)
            return booking.model_copy(deep=True)

    def get_booking(self, booking_id: str) -> Booking | None:
        with self._lock:
            booking = self._bookings.get(booking_id)
            return booking.model_copy(deep=True) if booking else None

    def list_bookings(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> list[Booking]:
        with self._lock:
            matches = [
                booking.model_copy(deep=True)
                for booking in self._bookings.values()
                if (client_id is None or booking.client_id == client_id)
                and (provider_id is None or booking.provider_id == provider_id)
            ]
        matches.sort(key=lambda booking: booking.created_at, reverse=True)
        return matches

    def transition_booking(
        self,
        booking_id: str,
        *,
        expected_status: str,
        new_status: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult[Booking]:
        with self._lock:
            current = self._bookings.get(booking_id)
            if current is None:
                return TransitionResult(applied=False, record=None)
            if not expectation_met(
                current, expected_status=expected_status, expected_version=expected_version
            ):
                return TransitionResult(applied=False, record=current.model_copy(deep=True))
            updated = apply_patch(current, new_status=new_status, fields=fields, now=_now())
            self._bookings[booking_id] = updated
            return TransitionResult(applied=True, record=updated.model_copy(deep=True))

    def count_bookings_by_status(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> dict[str, int]:
        with self._lock:
            counts = Counter(
                booking.status
                for booking in self._bookings.values()
                if (client_id is None or booking.client_id == client_id)
                and (provider_id is None or booking.provider_id == provider_id)
            )
        return dict(counts)

    def _has_active_booking(self, task_id: str) -> bool:
        return any(
            booking.task_id == task_id and booking.status != "CANCELLED"
            for booking in self._bookings.values()
        )


def _now() -> datetime:
    return datetime.now(UTC)
