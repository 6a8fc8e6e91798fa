"""Remote tracker connectors."""

from adotracker.connectors.azure_devops import (
    AzureDevOpsClient,
    extract_work_item_id,
    parse_work_item,
)
from adotracker.connectors.base import RemoteSource

__all__ = [
    "AzureDevOpsClient",
    "RemoteSource",
    "extract_work_item_id",
    "parse_work_item",
]
