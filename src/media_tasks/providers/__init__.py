"""Provider adapters for external media-processing services."""

from media_tasks.providers.base import PollResult, ProviderAdapter, ProviderError, SubmitResult
from media_tasks.providers.registry import build_adapter, build_adapters

__all__ = [
    "PollResult",
    "ProviderAdapter",
    "ProviderError",
    "SubmitResult",
    "build_adapter",
    "build_adapters",
]
