"""ADO Tracker: Azure DevOps work-item mirror with tagging pipeline."""

__version__ = "0.1.0"
