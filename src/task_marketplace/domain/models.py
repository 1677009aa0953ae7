"""Pydantic models shared across matching, lifecycle, storage and API.

Terms used in this file:
- Task: a customer's work request while providers are being discovered.
- Booking: the execution contract created once a provider accepts a Task.
- Floating task: a Task with no matched providers yet.
- Conversion: the one-time act of turning a REQUESTED Task into a Booking.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Literal[
    "PENDING",
    "FLOATING",
    "MATCHED",
    "REQUESTED",
    "CONVERTED",
    "CANCELLED",
    "EXPIRED",
]
TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"CONVERTED", "CANCELLED", "EXPIRED"})
# Statuses whose schedule window is checked for lapse on every read.
EXPIRABLE_TASK_STATUSES: frozenset[str] = frozenset({"FLOATING", "MATCHED", "REQUESTED"})

BookingStatus = Literal["CONFIRMED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
TERMINAL_BOOKING_STATUSES: frozenset[str] = frozenset({"COMPLETED", "CANCELLED"})

MatchingStrategyName = Literal["LOCATION_ONLY", "INTELLIGENT"]
TaskPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
ActorRole = Literal["CUSTOMER", "PROVIDER", "SYSTEM"]


class Coordinates(BaseModel):
    """Immutable (latitude, longitude) pair. Wire names are ``lat``/``lng``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    latitude: float = Field(alias="lat", ge=-90.0, le=90.0)
    longitude: float = Field(alias="lng", ge=-180.0, le=180.0)


class Schedule(BaseModel):
    priority: TaskPriority = "MEDIUM"
    preferred_date: datetime | None = None
    flexible_dates: bool = False
    # Window in which the work must happen; the end also bounds task expiry.
    start: datetime | None = None
    end: datetime | None = None


class Budget(BaseModel):
    min: float | None = Field(default=None, ge=0.0)
    max: float | None = Field(default=None, ge=0.0)
    currency: str = "GHS"


class MatchedProvider(BaseModel):
    """One provider recorded on a Task, by a matching run or by interest."""

    provider_id: str
    distance_km: float | None = None
    matched_at: datetime
    score: float | None = None
    reasons: list[str] = Field(default_factory=list)
    source: Literal["matching", "interest"] = "matching"
    message: str | None = None


class Task(BaseModel):
    """Canonical task record shape returned by storage and API."""

    task_id: str
    customer_id: str
    title: str
    description: str
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    # Private services may only be offered by company-trained providers.
    is_private_service: bool = False
    estimated_budget: Budget | None = None
    schedule: Schedule = Field(default_factory=Schedule)
    customer_location: Coordinates

    status: TaskStatus = "PENDING"
    matched_providers: list[MatchedProvider] = Field(default_factory=list)
    matching_strategy: MatchingStrategyName = "INTELLIGENT"
    # Search radius chosen at creation; None means the configured default.
    max_distance_km: float | None = Field(default=None, gt=0.0)
    matching_attempted_at: datetime | None = None
    requested_provider_id: str | None = None
    requested_at: datetime | None = None
    request_message: str | None = None
    converted_to_booking_id: str | None = None
    converted_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_by: ActorRole | None = None
    expires_at: datetime | None = None

    is_deleted: bool = False
    deleted_at: datetime | None = None
    # Bumped on every write; used for optimistic concurrency.
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def matched_provider_ids(self) -> list[str]:
        return [item.provider_id for item in self.matched_providers]

    def has_matched(self, provider_id: str) -> bool:
        return any(item.provider_id == provider_id for item in self.matched_providers)

    def is_past_due(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class BookingStatusEntry(BaseModel):
    status: BookingStatus
    at: datetime
    actor_id: str | None = None
    actor_role: ActorRole | None = None
    reason: str | None = None


class Booking(BaseModel):
    """Execution-phase contract between one customer and one provider."""

    booking_id: str
    task_id: str
    client_id: str
    provider_id: str
    status: BookingStatus = "CONFIRMED"
    service_location: Coordinates
    service_description: str = ""
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    estimated_price: float | None = None
    final_price: float | None = None
    currency: str = "GHS"
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_by: ActorRole | None = None
    status_history: list[BookingStatusEntry] = Field(default_factory=list)
    version: int = 1
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES


class ProviderCandidate(BaseModel):
    """Provider snapshot returned by the candidate source. Read-only here."""

    provider_id: str
    coordinates: Coordinates
    active_service_ids: list[str] = Field(default_factory=list)
    # Company-trained providers may offer private services.
    is_private_service_eligible: bool = False
    rating: float | None = Field(default=None, ge=0.0, le=5.0)
    completion_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    is_deleted: bool = False


class MatchCandidate(BaseModel):
    """Ephemeral ranking result; only winners are written back to the Task."""

    provider_id: str
    distance_km: float
    score: float = 0.0
    offers_service: bool
    private_service_access: bool
    within_radius: bool = True
    reasons: list[str] = Field(default_factory=list)

    @property
    def eligible(self) -> bool:
        return self.offers_service and self.private_service_access and self.within_radius


class MatchSummary(BaseModel):
    strategy: MatchingStrategyName
    total_matches: int
    average_score: float
    max_distance_km: float


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=5000)
    customer_location: Coordinates
    schedule: Schedule = Field(default_factory=Schedule)
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    estimated_budget: Budget | None = None
    matching_strategy: MatchingStrategyName | None = None
    is_private_service: bool = False
    max_distance_km: float | None = Field(default=None, gt=0.0)


class UpdateTaskRequest(BaseModel):
    """Request body for PATCH /tasks/{task_id}.

    Unset and null fields are left untouched, except category and
    estimated_budget where an explicit null clears the value.
    """

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1, max_length=5000)
    customer_location: Coordinates | None = None
    schedule: Schedule | None = None
    category: str | None = None
    tags: list[str] | None = None
    estimated_budget: Budget | None = None
