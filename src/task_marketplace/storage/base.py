"""Storage interfaces for Task and Booking records.

Every state change goes through a conditional transition: the write is
applied only if the stored status (and, when given, version) still match
what the caller read. A mismatch is reported as ``applied=False`` together
with the current record, never as an exception, so callers can tell a
lost race apart from an infrastructure failure.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

from task_marketplace.domain.models import Booking, Task
from task_marketplace.geo.distance import BoundingBox

RecordT = TypeVar("RecordT", bound=BaseModel)


@dataclass(frozen=True)
class TransitionResult(Generic[RecordT]):
    applied: bool
    # Record after the attempt: the new state if applied, the winner's state if not.
    record: RecordT | None


class TaskRepository(Protocol):
    def migrate(self) -> None: ...

    def create_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> Task | None: ...

    def list_tasks_by_customer(
        self,
        customer_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]: ...

    def list_tasks_in_area(self, box: BoundingBox, statuses: Collection[str]) -> list[Task]:
        """Non-deleted Tasks whose customer location falls inside ``box``, newest first."""
        ...

    def list_tasks_by_matched_provider(
        self,
        provider_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]:
        """Non-deleted Tasks listing ``provider_id`` among their matches, newest first."""
        ...

    def transition_task(
        self,
        task_id: str,
        *,
        expected_status: str,
        new_status: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult[Task]: ...

    def soft_delete_task(
        self, task_id: str, *, expected_version: int | None = None
    ) -> TransitionResult[Task]: ...

    def restore_task(self, task_id: str) -> TransitionResult[Task]: ...


class BookingRepository(Protocol):
    def create_booking(self, booking: Booking) -> Booking: ...

    def get_booking(self, booking_id: str) -> Booking | None: ...

    def list_bookings(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> list[Booking]: ...

    def transition_booking(
        self,
        booking_id: str,
        *,
        expected_status: str,
        new_status: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult[Booking]: ...

    def count_bookings_by_status(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> dict[str, int]: ...


class MarketplaceStorage(TaskRepository, BookingRepository, Protocol):
    def convert_task(
        self,
        task_id: str,
        *,
        provider_id: str,
        booking: Booking,
    ) -> TransitionResult[Task]:
        """Atomically move a REQUESTED, unconverted Task to CONVERTED and insert its Booking.

        Applied only if the Task is REQUESTED for ``provider_id`` and has no
        ``converted_to_booking_id``. Exactly one of any number of concurrent
        calls for the same Task can be applied.
        """
        ...


# Fields the conditional transitions manage themselves.
_MANAGED_FIELDS = frozenset({"status", "version", "updated_at", "created_at"})


def apply_patch(
    record: RecordT,
    *,
    new_status: str,
    fields: dict[str, Any] | None,
    now: datetime,
) -> RecordT:
    """Return a validated copy of ``record`` with the patch applied and version bumped."""
    patch = dict(fields or {})
    illegal = _MANAGED_FIELDS.intersection(patch)
    if illegal:
        raise ValueError(f"Fields managed by storage cannot be patched: {sorted(illegal)}")
    merged = record.model_dump()
    merged.update(patch)
    merged["status"] = new_status
    merged["version"] = int(getattr(record, "version")) + 1
    merged["updated_at"] = now
    return type(record).model_validate(merged)


def expectation_met(
    record: Task | Booking,
    *,
    expected_status: str,
    expected_version: int | None,
) -> bool:
    if record.status != expected_status:
        return False
    return expected_version is None or record.version == expected_version
