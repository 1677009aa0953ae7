"""Request and response bodies for the HTTP layer."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from task_marketplace.domain.models import (
    Booking,
    Coordinates,
    MatchCandidate,
    MatchingStrategyName,
    MatchSummary,
    Task,
)


class MatchRequest(BaseModel):
    strategy: MatchingStrategyName | None = None
    max_distance_km: float | None = Field(default=None, gt=0.0)
    limit: int | None = Field(default=None, ge=1)


class RequestProviderRequest(BaseModel):
    provider_id: str = Field(min_length=1)
    message: str | None = Field(default=None, max_length=1000)


class RespondRequest(BaseModel):
    action: Literal["accept", "reject"]


class InterestRequest(BaseModel):
    message: str | None = Field(default=None, max_length=1000)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class CompleteBookingRequest(BaseModel):
    final_price: float | None = Field(default=None, ge=0.0)


class RescheduleBookingRequest(BaseModel):
    scheduled_start: datetime
    scheduled_end: datetime | None = None
    reason: str | None = Field(default=None, max_length=1000)


class EnrichLocationRequest(BaseModel):
    postal_code: str = Field(min_length=1)
    coordinates: Coordinates | None = None
    landmark: str | None = None


class VerifyLocationRequest(BaseModel):
    postal_code: str = Field(min_length=1)
    coordinates: Coordinates


class MatchResponse(BaseModel):
    task: Task
    candidates: list[MatchCandidate]
    summary: MatchSummary


class RespondResponse(BaseModel):
    task: Task
    booking: Booking | None = None


class TaskWithBooking(BaseModel):
    task: Task
    booking: Booking | None = None


class BookingWithTask(BaseModel):
    booking: Booking
    task: Task | None = None
