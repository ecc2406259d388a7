"""
DevPulse Tracking - Polling and Reconciliation
==============================================

Keeps the client-side analysis list in step with server-side jobs.
"""

from .registry import (
    PollerRegistry,
    PollHandle,
    PollKind,
    PollKey,
)
from .state_store import (
    StateStore,
    StoreChange,
    StoreEvent,
)
from .pollers import (
    Poller,
    AnalysisPoller,
    FixJobPoller,
)
from .tracker import (
    AnalysisTracker,
    split_repo_url,
)

__all__ = [
    # Registry
    "PollerRegistry",
    "PollHandle",
    "PollKind",
    "PollKey",
    # Store
    "StateStore",
    "StoreChange",
    "StoreEvent",
    # Pollers
    "Poller",
    "AnalysisPoller",
    "FixJobPoller",
    # Tracker
    "AnalysisTracker",
    "split_repo_url",
]
