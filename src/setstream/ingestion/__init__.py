"""Ingestion layer for the FIVB VIS web service.

Provides:
- VisClient: httpx client for VIS XML requests
- RetryRateLimiter: Pacing and bounded exponential retry for remote calls
- Extractor: Entity extraction, incremental batches, rolling window filter
- PipelineState: Durable record of already-fetched detail ids
"""

from .client import VisClient
from .extract import BatchResult, Extractor, filter_rolling_window
from .retry import RateLimiter, RetryRateLimiter
from .state import PipelineState, load_state, merge_state, save_state

__all__ = [
    "VisClient",
    "Extractor",
    "BatchResult",
    "filter_rolling_window",
    "RateLimiter",
    "RetryRateLimiter",
    "PipelineState",
    "load_state",
    "save_state",
    "merge_state",
]
