"""Provider candidate sources."""

from task_marketplace.providers.base import ProviderCandidateSource
from task_marketplace.providers.http import HttpProviderSource
from task_marketplace.providers.memory import InMemoryProviderSource

__all__ = ["HttpProviderSource", "InMemoryProviderSource", "ProviderCandidateSource"]
