"""Azure DevOps REST client for work-item ingestion.

Runs a WIQL query for the project's work-item ids, then fetches full
records (fields + relations) in batches of the API maximum.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from adotracker import config
from adotracker.errors import RemoteFetchError, RemoteNotConfiguredError
from adotracker.models import WorkItem

logger = logging.getLogger("adotracker.ado")

_WORK_ITEM_ID_RE = re.compile(r"workItems/(\d+)", re.IGNORECASE)

# Field reference name -> pass-through key kept in WorkItem.fields
_PASS_THROUGH_FIELDS: dict[str, str] = {
    "Microsoft.VSTS.Common.AcceptanceCriteria": "acceptanceCriteria",
    "Microsoft.VSTS.TCM.ReproSteps": "reproSteps",
    "Microsoft.VSTS.TCM.SystemInfo": "systemInfo",
    "Microsoft.VSTS.Common.Priority": "priority",
    "Microsoft.VSTS.Common.Severity": "severity",
    "Microsoft.VSTS.Scheduling.StoryPoints": "storyPoints",
    "Microsoft.VSTS.Common.BusinessValue": "businessValue",
    "Microsoft.VSTS.Common.Risk": "risk",
    "Microsoft.VSTS.Build.FoundIn": "foundInBuild",
    "Microsoft.VSTS.Build.IntegrationBuild": "integrationBuild",
    "Microsoft.VSTS.Common.ResolvedBy": "resolvedBy",
    "Microsoft.VSTS.Common.ResolvedDate": "resolvedDate",
    "Microsoft.VSTS.Common.ClosedBy": "closedBy",
    "Microsoft.VSTS.Common.ClosedDate": "closedDate",
    "Microsoft.VSTS.Common.ActivatedBy": "activatedBy",
    "Microsoft.VSTS.Common.ActivatedDate": "activatedDate",
    "System.Reason": "stateReason",
    "Microsoft.VSTS.Scheduling.OriginalEstimate": "originalEstimate",
    "Microsoft.VSTS.Scheduling.RemainingWork": "remainingWork",
    "Microsoft.VSTS.Scheduling.CompletedWork": "completedWork",
    "System.Tags": "adoTags",
}


def extract_work_item_id(url: str | None) -> Optional[str]:
    """Pull the numeric work-item id out of a relation URL."""
    if not url:
        return None
    match = _WORK_ITEM_ID_RE.search(url)
    return match.group(1) if match else None


def _identity(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("displayName") or value.get("uniqueName") or "")
    return str(value or "")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def parse_work_item(raw: dict[str, Any]) -> WorkItem:
    """Normalize a raw Azure DevOps record into a WorkItem.

    Tags are left empty; relations stay on the raw record.
    """
    if raw.get("id") is None:
        raise ValueError("work item record has no id")
    fields = raw.get("fields") or {}

    extra: dict[str, Any] = {}
    for ref_name, key in _PASS_THROUGH_FIELDS.items():
        if ref_name not in fields:
            continue
        value = fields[ref_name]
        extra[key] = _identity(value) if isinstance(value, dict) else value

    return WorkItem(
        externalId=str(raw["id"]),
        title=_text(fields.get("System.Title")),
        description=_text(fields.get("System.Description")),
        type=_text(fields.get("System.WorkItemType")),
        state=_text(fields.get("System.State")),
        areaPath=_text(fields.get("System.AreaPath")),
        iterationPath=_text(fields.get("System.IterationPath")),
        assignedTo=_identity(fields.get("System.AssignedTo")),
        createdBy=_identity(fields.get("System.CreatedBy")),
        createdAt=_text(fields.get("System.CreatedDate")),
        modifiedAt=_text(fields.get("System.ChangedDate")),
        projectName=_text(fields.get("System.TeamProject")),
        fields=extra,
        rawData=raw,
    )


def build_wiql(project: str, from_date: Optional[str] = None) -> str:
    project_literal = project.replace("'", "''")
    clauses = [f"[System.TeamProject] = '{project_literal}'"]
    if from_date:
        date_literal = from_date.replace("'", "''")
        clauses.append(f"[System.ChangedDate] >= '{date_literal}'")
    return (
        "SELECT [System.Id] FROM WorkItems "
        f"WHERE {' AND '.join(clauses)} "
        "ORDER BY [System.ChangedDate] DESC"
    )


class AzureDevOpsClient:
    """Personal-access-token client for the Work Item Tracking REST API."""

    def __init__(
        self,
        org_url: str | None = None,
        pat: str | None = None,
        *,
        batch_size: int | None = None,
        max_concurrent_requests: int | None = None,
        timeout_seconds: int | None = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 2.0,
    ):
        self.org_url = (org_url if org_url is not None else config.ADO_ORG_URL).rstrip("/")
        self.pat = pat if pat is not None else config.ADO_PAT
        self.batch_size = max(1, min(200, batch_size or config.ADO_FETCH_BATCH_SIZE))
        self.max_concurrent_requests = max(1, max_concurrent_requests or config.ADO_MAX_CONCURRENT_REQUESTS)
        self.timeout_seconds = timeout_seconds or config.ADO_TIMEOUT_SECONDS
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.org_url and self.pat)

    def _auth_headers(self) -> dict[str, str]:
        encoded_pat = base64.b64encode(f":{self.pat}".encode()).decode()
        return {"Authorization": f"Basic {encoded_pat}", "Accept": "application/json"}

    async def _request_json(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                async with session.request(method, url, json=payload, headers=self._auth_headers()) as response:
                    response.raise_for_status()
                    return await response.json()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "ADO request failed (attempt %s/%s) %s %s: %s",
                    attempt + 1, self.max_retries, method, url, exc,
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay_seconds)
        raise RemoteFetchError(f"Azure DevOps request failed: {last_error}") from last_error

    async def query_ids(
        self,
        session: aiohttp.ClientSession,
        project: str,
        from_date: Optional[str] = None,
    ) -> list[int]:
        url = (
            f"{self.org_url}/{quote(project)}/_apis/wit/wiql"
            f"?api-version={config.ADO_WIQL_API_VERSION}"
        )
        response = await self._request_json(session, "POST", url, {"query": build_wiql(project, from_date)})
        return [int(item["id"]) for item in response.get("workItems") or [] if item.get("id") is not None]

    async def fetch_details(self, session: aiohttp.ClientSession, ids: list[int]) -> list[dict[str, Any]]:
        batches = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        semaphore = asyncio.Semaphore(self.max_concurrent_requests)

        async def fetch_batch(batch_num: int, batch_ids: list[int]) -> list[dict[str, Any]]:
            async with semaphore:
                url = (
                    f"{self.org_url}/_apis/wit/workitems"
                    f"?ids={','.join(map(str, batch_ids))}&$expand=all"
                    f"&api-version={config.ADO_WORKITEM_API_VERSION}"
                )
                logger.info("Fetching batch %s/%s (%s items)", batch_num, len(batches), len(batch_ids))
                response = await self._request_json(session, "GET", url)
                return list(response.get("value") or [])

        results = await asyncio.gather(
            *(fetch_batch(idx + 1, batch) for idx, batch in enumerate(batches))
        )
        # gather keeps batch order, so pages come back in query order
        return [item for batch in results for item in batch]

    async def fetch_remote_items(
        self,
        project: str,
        *,
        from_date: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        if not self.is_configured:
            raise RemoteNotConfiguredError("Azure DevOps organization URL and PAT are required")

        limit = max_items if max_items is not None else config.SYNC_MAX_ITEMS
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            ids = await self.query_ids(session, project, from_date)
            if limit and limit > 0:
                ids = ids[:limit]
            logger.info("WIQL returned %s work items for project %s", len(ids), project)
            if not ids:
                return []
            return await self.fetch_details(session, ids)
