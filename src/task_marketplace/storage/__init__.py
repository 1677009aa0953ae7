"""Storage backends for Tasks and Bookings."""

from task_marketplace.storage.base import (
    BookingRepository,
    MarketplaceStorage,
    TaskRepository,
    TransitionResult,
)
from task_marketplace.storage.memory import InMemoryMarketplaceStorage
from task_marketplace.storage.postgres import PostgresMarketplaceStorage

__all__ = [
    "BookingRepository",
    "InMemoryMarketplaceStorage",
    "MarketplaceStorage",
    "PostgresMarketplaceStorage",
    "TaskRepository",
    "TransitionResult",
]
