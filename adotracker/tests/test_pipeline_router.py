import types
import unittest

from fastapi import BackgroundTasks, HTTPException

from adotracker.errors import InvalidCriteriaError, OperationInProgressError
from adotracker.models import (
    RelationEdge,
    RetagCriteria,
    RetagEstimate,
    SyncRun,
    SyncStatus,
    TagBackup,
    TagRunResult,
)
from adotracker.routers import pipeline as pipeline_router


class _FakeTracker:
    def __init__(self) -> None:
        self.sync_calls: list[dict] = []
        self.tagging_busy = False
        self.retag_error: Exception | None = None
        self.backups = {"7"}
        self.background_started = False

    async def sync(self, project=None, *, from_date=None, max_items=None, trigger="api"):
        self.sync_calls.append({"project": project, "from_date": from_date, "max_items": max_items, "trigger": trigger})
        return SyncRun(projectName=project or "Contoso", itemsAdded=2, trigger=trigger)

    async def import_historical(self, project=None, *, from_date=None, to_date=None, batch_size=500):
        return SyncRun(projectName=project or "Contoso", itemsFetched=batch_size, trigger="import")

    async def get_sync_status(self):
        return SyncStatus()

    async def get_sync_history(self, limit=10):
        return [{"id": 1, "status": "success"}][:limit]

    async def purge_excluded_types(self, types_=None):
        if self.tagging_busy:
            raise OperationInProgressError("sync")
        return {"itemsDeleted": 1, "linksDeleted": 0}

    async def drain_pending_tags(self, *, batch_size=None, concurrency=None, confidence_threshold=None):
        if self.tagging_busy:
            raise OperationInProgressError("tagging")
        return TagRunResult(tagged=batch_size or 0)

    def start_background_tagging(self, **kwargs):
        if self.tagging_busy:
            return False
        self.background_started = True
        return True

    def cancel_background_tagging(self):
        return self.background_started

    async def get_pending_count(self):
        return 3

    async def get_tag_usage(self, limit=200):
        return [{"tagName": "api", "usageCount": 4, "category": "technical"}]

    async def get_links(self, external_id):
        return [RelationEdge(sourceId=external_id, targetId="2", relationType="Parent")]

    async def estimate_retag(self, criteria):
        if criteria.mode == "dateRange" and not criteria.toDate:
            raise InvalidCriteriaError("dateRange mode requires fromDate and toDate")
        return RetagEstimate(estimatedCount=5, mode=criteria.mode, criteria=criteria)

    async def execute_retag(self, criteria):
        if self.retag_error is not None:
            raise self.retag_error
        return TagRunResult(kind="retag", mode=criteria.mode, itemsSelected=5, tagged=5)

    def cancel_retag(self):
        return False

    async def get_tag_backup(self, external_id):
        if external_id not in self.backups:
            return None
        return TagBackup(
            externalId=external_id,
            tags={"legacy", "orphan"},
            confidenceScores={"legacy": 0.4},
            backupTimestamp="2024-03-01T00:00:00+00:00",
        )

    async def restore_tag_backup(self, external_id):
        return external_id in self.backups


class PipelineRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, tracker):
        return types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace(tracker=tracker)))

    async def test_missing_service_is_unavailable(self) -> None:
        request = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace()))
        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.get_sync_status(request)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_foreground_sync_returns_run(self) -> None:
        tracker = _FakeTracker()
        payload = await pipeline_router.trigger_sync(
            self._request(tracker),
            BackgroundTasks(),
            pipeline_router.SyncRequest(projectName="Fabrikam", maxItems=10),
        )
        self.assertEqual(payload["itemsAdded"], 2)
        self.assertEqual(payload["projectName"], "Fabrikam")
        self.assertEqual(tracker.sync_calls[0]["max_items"], 10)

    async def test_background_sync_is_scheduled(self) -> None:
        tracker = _FakeTracker()
        background = BackgroundTasks()
        payload = await pipeline_router.trigger_sync(
            self._request(tracker), background, pipeline_router.SyncRequest(background=True)
        )
        self.assertEqual(payload["status"], "accepted")
        self.assertEqual(len(background.tasks), 1)
        self.assertEqual(tracker.sync_calls, [])

    async def test_import_and_history(self) -> None:
        tracker = _FakeTracker()
        payload = await pipeline_router.import_historical(
            self._request(tracker), pipeline_router.ImportRequest(fromDate="2023-01-01", batchSize=250)
        )
        self.assertEqual(payload["trigger"], "import")
        self.assertEqual(payload["itemsFetched"], 250)

        history = await pipeline_router.get_sync_history(self._request(tracker), limit=5)
        self.assertEqual(history["count"], 1)

    async def test_busy_tagging_maps_to_conflict(self) -> None:
        tracker = _FakeTracker()
        tracker.tagging_busy = True
        request = self._request(tracker)

        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.drain_pending(request, pipeline_router.DrainRequest())
        self.assertEqual(ctx.exception.status_code, 409)

        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.start_background_tagging(request, pipeline_router.BackgroundTaggingRequest())
        self.assertEqual(ctx.exception.status_code, 409)

        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.purge_excluded(request, pipeline_router.PurgeRequest())
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_background_tagging_start_and_cancel(self) -> None:
        tracker = _FakeTracker()
        request = self._request(tracker)
        started = await pipeline_router.start_background_tagging(
            request, pipeline_router.BackgroundTaggingRequest(delaySeconds=0)
        )
        self.assertTrue(started["success"])
        cancelled = await pipeline_router.cancel_background_tagging(request)
        self.assertTrue(cancelled["success"])

    async def test_tag_views(self) -> None:
        request = self._request(_FakeTracker())
        self.assertEqual(await pipeline_router.get_pending_count(request), {"pending": 3})
        usage = await pipeline_router.get_tag_usage(request, limit=10)
        self.assertEqual(usage["items"][0]["category"], "technical")
        links = await pipeline_router.get_links(request, "9")
        self.assertEqual(links["items"][0]["sourceId"], "9")

    async def test_invalid_retag_criteria_is_bad_request(self) -> None:
        request = self._request(_FakeTracker())
        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.estimate_retag(request, RetagCriteria(mode="dateRange", fromDate="2024-01-01"))
        self.assertEqual(ctx.exception.status_code, 400)

        estimate = await pipeline_router.estimate_retag(request, RetagCriteria(mode="all"))
        self.assertEqual(estimate["estimatedCount"], 5)

    async def test_execute_retag_errors(self) -> None:
        tracker = _FakeTracker()
        request = self._request(tracker)

        tracker.retag_error = OperationInProgressError("retag")
        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.execute_retag(request, RetagCriteria(mode="all"))
        self.assertEqual(ctx.exception.status_code, 409)

        tracker.retag_error = InvalidCriteriaError("byProject mode requires projectName")
        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.execute_retag(request, RetagCriteria(mode="byProject"))
        self.assertEqual(ctx.exception.status_code, 400)

        tracker.retag_error = None
        payload = await pipeline_router.execute_retag(request, RetagCriteria(mode="all"))
        self.assertEqual(payload["tagged"], 5)

    async def test_cancel_without_active_retag(self) -> None:
        payload = await pipeline_router.cancel_retag(self._request(_FakeTracker()))
        self.assertFalse(payload["success"])

    async def test_restore_missing_backup_is_not_found(self) -> None:
        request = self._request(_FakeTracker())
        self.assertTrue((await pipeline_router.restore_tag_backup(request, "7"))["success"])
        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.restore_tag_backup(request, "8")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_tag_backup_view(self) -> None:
        request = self._request(_FakeTracker())
        payload = await pipeline_router.get_tag_backup(request, "7")
        self.assertEqual(payload["externalId"], "7")
        self.assertEqual(payload["tags"], {"legacy", "orphan"})
        self.assertEqual(payload["confidenceScores"], {"legacy": 0.4})

        with self.assertRaises(HTTPException) as ctx:
            await pipeline_router.get_tag_backup(request, "8")
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
