"""Observability helpers."""

from adotracker.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_run,
    record_sync_run,
    record_tagging,
    record_item_failure,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_run",
    "record_sync_run",
    "record_tagging",
    "record_item_failure",
]
