"""Task state machine: creation, matching, provider requests and closure.

Transitions::

    PENDING   -> MATCHED | FLOATING      (matching run)
    FLOATING  -> MATCHED                 (matching run finds candidates)
    MATCHED   -> REQUESTED               (customer requests a provider)
    REQUESTED -> CONVERTED               (provider accepts; Booking created)
    REQUESTED -> MATCHED | FLOATING      (provider rejects; FLOATING if none remain)
    PENDING|FLOATING|MATCHED|REQUESTED -> CANCELLED
    FLOATING|MATCHED|REQUESTED -> EXPIRED (observed lazily on read)
    any non-terminal -> PENDING          (rematch)

Every write is a conditional transition on the status and version that were
read, so two racing operations on one Task cannot both apply.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from task_marketplace.domain.errors import (
    NOT_TASK_OWNER,
    PROVIDER_NOT_MATCHED,
    TASK_ALREADY_CONVERTED,
    TASK_INVALID_STATE,
    TASK_NOT_REQUESTED,
    TASK_STALE,
    TASK_TERMINAL,
    ExternalDependencyError,
    NotAuthorizedError,
    StateConflictError,
    ValidationFailedError,
    provider_not_found,
    task_not_found,
)
from task_marketplace.domain.models import (
    EXPIRABLE_TASK_STATUSES,
    Booking,
    Budget,
    Coordinates,
    CreateTaskRequest,
    MatchCandidate,
    MatchedProvider,
    MatchingStrategyName,
    MatchSummary,
    Schedule,
    Task,
    TaskStatus,
    UpdateTaskRequest,
)
from task_marketplace.geo.distance import bounding_box
from task_marketplace.lifecycle.bookings import BookingConverter
from task_marketplace.matching.engine import MatchingEngine
from task_marketplace.storage.base import MarketplaceStorage

logger = logging.getLogger(__name__)

_CANCELLABLE_STATUSES = frozenset({"PENDING", "FLOATING", "MATCHED", "REQUESTED"})
_MATCHABLE_STATUSES = frozenset({"PENDING", "FLOATING", "MATCHED"})
_INTEREST_STATUSES = frozenset({"FLOATING", "MATCHED"})
# Nullable on the Task, so an explicit null in a patch clears them.
_CLEARABLE_FIELDS = frozenset({"category", "estimated_budget"})
# Fields reset whenever a Task re-enters PENDING.
_REMATCH_RESET: dict[str, Any] = {
    "matched_providers": [],
    "requested_provider_id": None,
    "requested_at": None,
    "request_message": None,
}


@dataclass(frozen=True)
class MatchOutcome:
    task: Task
    candidates: list[MatchCandidate]
    summary: MatchSummary


@dataclass(frozen=True)
class RequestResponse:
    task: Task
    booking: Booking | None = None


class TaskLifecycle:
    """Owns every Task write. Bookings are delegated to the BookingConverter."""

    def __init__(
        self,
        storage: MarketplaceStorage,
        engine: MatchingEngine,
        converter: BookingConverter,
        *,
        task_ttl_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self.engine = engine
        self.converter = converter
        self.task_ttl = timedelta(days=task_ttl_days)
        self._clock = clock or (lambda: datetime.now(UTC))

    # Creation and reads

    def create_task(
        self,
        customer_id: str,
        payload: CreateTaskRequest,
        *,
        limit: int | None = None,
    ) -> Task:
        """Store a PENDING Task and run the first matching pass.

        A provider-source outage leaves the Task PENDING so the customer can
        trigger matching later; the Task itself is never lost.
        """
        if not customer_id:
            raise ValidationFailedError("customer_id is required", fields={"customer_id": "empty"})
        _validate_content(payload.title, payload.description)
        _validate_schedule(payload.schedule)
        _validate_budget(payload.estimated_budget)

        now = self._clock()
        task = Task(
            task_id=str(uuid.uuid4()),
            customer_id=customer_id,
            title=payload.title.strip(),
            description=payload.description.strip(),
            category=payload.category,
            tags=payload.tags,
            is_private_service=payload.is_private_service,
            estimated_budget=payload.estimated_budget,
            schedule=payload.schedule,
            customer_location=payload.customer_location,
            matching_strategy=payload.matching_strategy or self.engine.default_strategy,
            max_distance_km=payload.max_distance_km,
            expires_at=self._expiry_for(payload.schedule, created_at=now),
            created_at=now,
            updated_at=now,
        )
        stored = self.storage.create_task(task)
        logger.info(
            "task_lifecycle event=created task_id=%s customer_id=%s category=%s",
            stored.task_id,
            customer_id,
            stored.category,
        )
        try:
            return self._match(stored, limit=limit).task
        except ExternalDependencyError as exc:
            logger.warning(
                "task_lifecycle event=initial_match_deferred task_id=%s reason=%s",
                stored.task_id,
                exc.code,
            )
            return stored

    def get_task(self, task_id: str) -> Task:
        return self._load(task_id)

    def list_customer_tasks(
        self,
        customer_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]:
        # Expiry is applied before filtering so a lapsed Task is reported as EXPIRED.
        stored = self.storage.list_tasks_by_customer(customer_id)
        tasks = [self._expire_if_due(task) for task in stored]
        if statuses:
            tasks = [task for task in tasks if task.status in statuses]
        return tasks

    def get_task_with_booking(self, task_id: str) -> tuple[Task, Booking | None]:
        task = self._load(task_id)
        if task.converted_to_booking_id is None:
            return task, None
        return task, self.storage.get_booking(task.converted_to_booking_id)

    # Matching

    def run_matching(
        self,
        task_id: str,
        customer_id: str,
        *,
        strategy: MatchingStrategyName | None = None,
        max_distance_km: float | None = None,
        limit: int | None = None,
    ) -> MatchOutcome:
        """Matching pass that keeps already recorded providers and adds new ones."""
        task = self._load(task_id)
        _ensure_owner(task, customer_id)
        _ensure_open(task)
        if task.status not in _MATCHABLE_STATUSES:
            raise StateConflictError(
                TASK_INVALID_STATE,
                f"Cannot run matching while task is {task.status}; rematch instead",
                task_id=task_id,
                status=task.status,
            )
        return self._match(
            task, strategy=strategy, max_distance_km=max_distance_km, limit=limit
        )

    def rematch_task(
        self,
        task_id: str,
        customer_id: str,
        *,
        strategy: MatchingStrategyName | None = None,
        max_distance_km: float | None = None,
        limit: int | None = None,
    ) -> MatchOutcome:
        """Clear matches and any pending request, then match from scratch."""
        task = self._load(task_id)
        _ensure_owner(task, customer_id)
        _ensure_open(task)
        fields = dict(_REMATCH_RESET)
        if strategy is not None:
            fields["matching_strategy"] = strategy
        if max_distance_km is not None:
            fields["max_distance_km"] = max_distance_km
        reset = self._transition(task, "PENDING", fields)
        logger.info(
            "task_lifecycle event=rematch task_id=%s previous_status=%s", task_id, task.status
        )
        return self._match(reset, limit=limit)

    def express_interest(
        self,
        task_id: str,
        provider_id: str,
        message: str | None = None,
    ) -> Task:
        """Record a provider's interest. Idempotent; never changes the status.

        The provider must be eligible and within the Task's search radius.
        """
        task = self._load(task_id)
        _ensure_open(task)
        if task.status not in _INTEREST_STATUSES:
            raise StateConflictError(
                TASK_INVALID_STATE,
                f"Task is {task.status}; interest is accepted only while FLOATING or MATCHED",
                task_id=task_id,
                status=task.status,
            )
        if task.has_matched(provider_id):
            return task

        provider = self.engine.provider_source.get_provider(provider_id)
        if provider is None:
            raise provider_not_found(provider_id)
        candidate = self.engine.evaluate(task, provider, max_distance_km=task.max_distance_km)
        if candidate is None or not candidate.eligible:
            details = {"provider_id": provider_id}
            if candidate is not None and not candidate.within_radius:
                details["distance_km"] = str(candidate.distance_km)
            raise ValidationFailedError(
                "Provider is not eligible for this task",
                code="PROVIDER_NOT_ELIGIBLE",
                fields=details,
            )

        entry = MatchedProvider(
            provider_id=provider_id,
            distance_km=candidate.distance_km,
            matched_at=self._clock(),
            score=candidate.score,
            reasons=candidate.reasons,
            source="interest",
            message=message,
        )
        matched = [item.model_dump() for item in task.matched_providers]
        matched.append(entry.model_dump())
        updated = self._transition(task, task.status, {"matched_providers": matched})
        logger.info(
            "task_lifecycle event=interest task_id=%s provider_id=%s", task_id, provider_id
        )
        return updated

    # Provider feeds

    def list_floating_tasks_for_provider(
        self,
        provider_id: str,
        coordinates: Coordinates | None = None,
        *,
        max_distance_km: float | None = None,
        limit: int = 50,
    ) -> list[Task]:
        """FLOATING Tasks near a provider that it could express interest in.

        ``coordinates`` overrides the provider's registered location. Each Task
        must be within both the feed radius and its own search radius, and
        Tasks the provider is already recorded on are left out.
        """
        radius = max_distance_km or self.engine.default_max_distance_km
        if radius <= 0:
            raise ValidationFailedError(
                "max_distance_km must be positive", fields={"max_distance_km": str(radius)}
            )
        if limit < 1:
            raise ValidationFailedError("limit must be at least 1", fields={"limit": str(limit)})
        provider = self.engine.provider_source.get_provider(provider_id)
        if provider is None:
            raise provider_not_found(provider_id)
        if coordinates is not None:
            provider = provider.model_copy(update={"coordinates": coordinates})

        stored = self.storage.list_tasks_in_area(
            bounding_box(provider.coordinates, radius), statuses=("FLOATING",)
        )
        feed: list[Task] = []
        for task in stored:
            task = self._expire_if_due(task)
            if task.status != "FLOATING" or task.has_matched(provider_id):
                continue
            task_radius = task.max_distance_km or self.engine.default_max_distance_km
            candidate = self.engine.evaluate(
                task, provider, max_distance_km=min(radius, task_radius)
            )
            if candidate is None or not candidate.eligible:
                continue
            feed.append(task)
            if len(feed) >= limit:
                break
        logger.info(
            "task_lifecycle event=floating_feed provider_id=%s radius_km=%s scanned=%d "
            "returned=%d",
            provider_id,
            radius,
            len(stored),
            len(feed),
        )
        return feed

    def list_matched_tasks_for_provider(self, provider_id: str) -> list[Task]:
        """Open Tasks the provider is matched on, including ones awaiting its answer."""
        stored = self.storage.list_tasks_by_matched_provider(
            provider_id, statuses=("MATCHED", "REQUESTED")
        )
        tasks: list[Task] = []
        for task in stored:
            task = self._expire_if_due(task)
            if task.status == "MATCHED" or (
                task.status == "REQUESTED" and task.requested_provider_id == provider_id
            ):
                tasks.append(task)
        return tasks

    # Provider request and response

    def request_provider(
        self,
        task_id: str,
        customer_id: str,
        provider_id: str,
        message: str | None = None,
    ) -> Task:
        task = self._load(task_id)
        _ensure_owner(task, customer_id)
        _ensure_open(task)
        if task.status != "MATCHED" or not task.has_matched(provider_id):
            raise StateConflictError(
                PROVIDER_NOT_MATCHED,
                f"Provider {provider_id} is not among the task's matched providers",
                task_id=task_id,
                provider_id=provider_id,
                status=task.status,
            )
        updated = self._transition(
            task,
            "REQUESTED",
            {
                "requested_provider_id": provider_id,
                "requested_at": self._clock(),
                "request_message": message,
            },
        )
        logger.info(
            "task_lifecycle event=requested task_id=%s provider_id=%s", task_id, provider_id
        )
        return updated

    def respond_to_request(
        self,
        task_id: str,
        provider_id: str,
        accept: bool,
    ) -> RequestResponse:
        task = self._load(task_id)
        if task.status == "CONVERTED":
            raise _conflict_for(task, expected_status="REQUESTED")
        if task.status != "REQUESTED":
            raise StateConflictError(
                TASK_NOT_REQUESTED,
                f"Task {task_id} is not awaiting a provider response",
                task_id=task_id,
                status=task.status,
            )
        if provider_id != task.requested_provider_id:
            raise StateConflictError(
                PROVIDER_NOT_MATCHED,
                f"Provider {provider_id} was not requested for this task",
                task_id=task_id,
                provider_id=provider_id,
            )

        if accept:
            converted, booking = self.converter.convert(task, provider_id)
            return RequestResponse(task=converted, booking=booking)

        remaining = [
            item.model_dump()
            for item in task.matched_providers
            if item.provider_id != provider_id
        ]
        new_status: TaskStatus = "MATCHED" if remaining else "FLOATING"
        updated = self._transition(
            task,
            new_status,
            {**_REMATCH_RESET, "matched_providers": remaining},
        )
        logger.info(
            "task_lifecycle event=request_rejected task_id=%s provider_id=%s status=%s "
            "remaining=%d",
            task_id,
            provider_id,
            new_status,
            len(remaining),
        )
        return RequestResponse(task=updated)

    # Customer edits and closure

    def cancel_task(self, task_id: str, customer_id: str, reason: str | None = None) -> Task:
        task = self._load(task_id)
        _ensure_owner(task, customer_id)
        return self._cancel(task, reason)

    def update_task(self, task_id: str, customer_id: str, payload: UpdateTaskRequest) -> Task:
        """Patch descriptive fields; a location or category change triggers a rematch."""
        task = self._load(task_id)
        _ensure_owner(task, customer_id)
        _ensure_open(task)

        fields = {
            name: value
            for name, value in payload.model_dump(exclude_unset=True).items()
            if value is not None or name in _CLEARABLE_FIELDS
        }
        if not fields:
            return task
        if "title" in fields or "description" in fields:
            _validate_content(
                fields.get("title", task.title), fields.get("description", task.description)
            )
        if payload.schedule is not None:
            _validate_schedule(payload.schedule)
            fields["expires_at"] = self._expiry_for(payload.schedule, created_at=task.created_at)
        if "estimated_budget" in fields:
            _validate_budget(payload.estimated_budget)

        needs_rematch = (
            "customer_location" in fields and payload.customer_location != task.customer_location
        ) or ("category" in fields and payload.category != task.category)
        if not needs_rematch:
            updated = self._transition(task, task.status, fields)
            logger.info("task_lifecycle event=updated task_id=%s", task_id)
            return updated

        reset = self._transition(task, "PENDING", {**fields, **_REMATCH_RESET})
        logger.info("task_lifecycle event=updated_rematch task_id=%s", task_id)
        try:
            return self._match(reset).task
        except ExternalDependencyError as exc:
            logger.warning(
                "task_lifecycle event=rematch_deferred task_id=%s reason=%s", task_id, exc.code
            )
            return reset

    def delete_task(self, task_id: str, customer_id: str) -> Task:
        """Soft delete. A pending provider request is cancelled first."""
        task = self._load(task_id)
        _ensure_owner(task, customer_id)
        if task.status == "CONVERTED":
            raise _conflict_for(task, expected_status=task.status)
        if task.status == "REQUESTED":
            task = self._cancel(task, "Deleted by customer")

        result = self.storage.soft_delete_task(task_id, expected_version=task.version)
        if not result.applied:
            current = result.record
            if current is None or current.is_deleted:
                raise task_not_found(task_id)
            raise _conflict_for(current, expected_status=task.status)
        deleted = result.record
        assert deleted is not None
        logger.info("task_lifecycle event=deleted task_id=%s status=%s", task_id, deleted.status)
        return deleted

    def restore_task(self, task_id: str, customer_id: str) -> Task:
        task = self.storage.get_task(task_id, include_deleted=True)
        if task is None:
            raise task_not_found(task_id)
        _ensure_owner(task, customer_id)
        if not task.is_deleted:
            return self._expire_if_due(task)
        result = self.storage.restore_task(task_id)
        if result.record is None:
            raise task_not_found(task_id)
        logger.info("task_lifecycle event=restored task_id=%s", task_id)
        return self._expire_if_due(result.record)

    # Internals

    def _load(self, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise task_not_found(task_id)
        return self._expire_if_due(task)

    def _expire_if_due(self, task: Task) -> Task:
        now = self._clock()
        while task.status in EXPIRABLE_TASK_STATUSES and task.is_past_due(now):
            result = self.storage.transition_task(
                task.task_id,
                expected_status=task.status,
                new_status="EXPIRED",
                fields={"requested_provider_id": None},
                expected_version=task.version,
            )
            if result.record is None:
                raise task_not_found(task.task_id)
            if result.applied:
                logger.info(
                    "task_lifecycle event=expired task_id=%s previous_status=%s",
                    task.task_id,
                    task.status,
                )
            task = result.record
        return task

    def _match(
        self,
        task: Task,
        *,
        strategy: MatchingStrategyName | None = None,
        max_distance_km: float | None = None,
        limit: int | None = None,
    ) -> MatchOutcome:
        strategy_name = strategy or task.matching_strategy
        radius = max_distance_km or task.max_distance_km
        candidates = self.engine.find_candidates(
            task, strategy=strategy_name, max_distance_km=radius, limit=limit
        )
        summary = self.engine.summarize(candidates, strategy=strategy_name, max_distance_km=radius)

        now = self._clock()
        found = {candidate.provider_id for candidate in candidates}
        matched = [
            MatchedProvider(
                provider_id=candidate.provider_id,
                distance_km=candidate.distance_km,
                matched_at=now,
                score=candidate.score,
                reasons=candidate.reasons,
            ).model_dump()
            for candidate in candidates
        ]
        # Providers recorded earlier (interest included) stay on the Task.
        matched.extend(
            item.model_dump() for item in task.matched_providers if item.provider_id not in found
        )
        new_status: TaskStatus = "MATCHED" if matched else "FLOATING"
        updated = self._transition(
            task,
            new_status,
            {
                "matched_providers": matched,
                "matching_strategy": strategy_name,
                "matching_attempted_at": now,
            },
        )
        logger.info(
            "task_lifecycle event=matched task_id=%s status=%s matches=%d",
            task.task_id,
            new_status,
            len(matched),
        )
        return MatchOutcome(task=updated, candidates=candidates, summary=summary)

    def _cancel(self, task: Task, reason: str | None) -> Task:
        if task.status not in _CANCELLABLE_STATUSES:
            raise _conflict_for(task, expected_status=task.status)
        updated = self._transition(
            task,
            "CANCELLED",
            {
                "requested_provider_id": None,
                "cancelled_at": self._clock(),
                "cancellation_reason": reason,
                "cancelled_by": "CUSTOMER",
            },
        )
        logger.info(
            "task_lifecycle event=cancelled task_id=%s previous_status=%s",
            task.task_id,
            task.status,
        )
        return updated

    def _transition(self, task: Task, new_status: TaskStatus, fields: dict[str, Any]) -> Task:
        result = self.storage.transition_task(
            task.task_id,
            expected_status=task.status,
            new_status=new_status,
            fields=fields,
            expected_version=task.version,
        )
        if result.applied:
            assert result.record is not None
            return result.record
        current = result.record
        logger.warning(
            "task_lifecycle event=transition_lost task_id=%s from=%s to=%s current_status=%s",
            task.task_id,
            task.status,
            new_status,
            current.status if current else None,
        )
        if current is None or current.is_deleted:
            raise task_not_found(task.task_id)
        raise _conflict_for(current, expected_status=task.status)

    def _expiry_for(self, schedule: Schedule, *, created_at: datetime) -> datetime:
        if schedule.end is None:
            return created_at + self.task_ttl
        # Naive schedule times are taken as UTC.
        if schedule.end.tzinfo is None:
            return schedule.end.replace(tzinfo=UTC)
        return schedule.end


def _conflict_for(current: Task, *, expected_status: str) -> StateConflictError:
    """Name the conflict a caller hit, given the Task as it is now."""
    if current.status == "CONVERTED":
        return StateConflictError(
            TASK_ALREADY_CONVERTED,
            f"Task {current.task_id} has been converted; operate on its booking instead",
            task_id=current.task_id,
            booking_id=current.converted_to_booking_id,
        )
    if expected_status == "REQUESTED" and current.status != "REQUESTED":
        return StateConflictError(
            TASK_NOT_REQUESTED,
            f"Task {current.task_id} is no longer awaiting a provider response",
            task_id=current.task_id,
            status=current.status,
        )
    if current.is_terminal:
        return StateConflictError(
            TASK_TERMINAL,
            f"Task {current.task_id} is {current.status} and can no longer change",
            task_id=current.task_id,
            status=current.status,
        )
    return StateConflictError(
        TASK_STALE,
        f"Task {current.task_id} changed concurrently; re-fetch and retry",
        task_id=current.task_id,
        status=current.status,
        version=current.version,
    )


def _ensure_open(task: Task) -> None:
    if task.is_terminal:
        raise _conflict_for(task, expected_status=task.status)


def _ensure_owner(task: Task, customer_id: str) -> None:
    if task.customer_id != customer_id:
        raise NotAuthorizedError(
            NOT_TASK_OWNER,
            "Only the customer who created the task can change it",
            task_id=task.task_id,
            actor_id=customer_id,
        )


def _validate_content(title: str, description: str) -> None:
    errors: dict[str, str] = {}
    if not title.strip():
        errors["title"] = "must not be blank"
    if not description.strip():
        errors["description"] = "must not be blank"
    if errors:
        raise ValidationFailedError("Task title and description are required", fields=errors)


def _validate_schedule(schedule: Schedule) -> None:
    if schedule.start and schedule.end and schedule.start >= schedule.end:
        raise ValidationFailedError(
            "Schedule start must be before end",
            fields={
                "schedule.start": schedule.start.isoformat(),
                "schedule.end": schedule.end.isoformat(),
            },
        )


def _validate_budget(budget: Budget | None) -> None:
    if budget is None:
        return
    if budget.min is not None and budget.max is not None and budget.min > budget.max:
        raise ValidationFailedError(
            "Budget minimum must not exceed maximum",
            fields={
                "estimated_budget.min": str(budget.min),
                "estimated_budget.max": str(budget.max),
            },
        )
