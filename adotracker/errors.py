"""Exception types raised by the sync and tagging pipeline."""
from __future__ import annotations


class TrackerError(Exception):
    """Base class for ADO Tracker errors."""


class RemoteFetchError(TrackerError):
    """The remote tracker could not be read; the current sync run is aborted."""


class RemoteNotConfiguredError(RemoteFetchError):
    """The Azure DevOps adapter is missing its organization URL or token."""


class TagGenerationError(TrackerError):
    """A tag generator failed for a single work item."""


class InvalidCriteriaError(TrackerError, ValueError):
    """Re-tag selection criteria are malformed."""


class OperationInProgressError(TrackerError):
    """A run of the same kind already holds its gate."""

    def __init__(self, kind: str):
        super().__init__(f"{kind} operation already in progress")
        self.kind = kind
