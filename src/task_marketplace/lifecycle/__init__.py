"""Task state machine and Task-to-Booking conversion."""

from task_marketplace.lifecycle.bookings import BookingConverter
from task_marketplace.lifecycle.tasks import MatchOutcome, RequestResponse, TaskLifecycle

__all__ = ["BookingConverter", "MatchOutcome", "RequestResponse", "TaskLifecycle"]
