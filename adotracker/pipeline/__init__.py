"""Sync / tagging pipeline: reconciliation, run gates, progress and audit log."""
