import asyncio
import unittest
from unittest.mock import patch

import aiosqlite

from adotracker.db.migrations import run_migrations
from adotracker.errors import RemoteFetchError
from adotracker.pipeline.coordinator import PipelineCoordinator
from adotracker.pipeline.service import TrackerService
from adotracker.tagging.generators import KeywordTagGenerator

REVERSE = "System.LinkTypes.Hierarchy-Reverse"


def _raw(item_id, work_item_type="Task", changed="2024-01-01T00:00:00Z", relations=None):
    raw = {
        "id": item_id,
        "fields": {
            "System.Title": f"Item {item_id}",
            "System.WorkItemType": work_item_type,
            "System.State": "New",
            "System.ChangedDate": changed,
            "System.TeamProject": "Contoso",
        },
    }
    if relations is not None:
        raw["relations"] = relations
    return raw


def _parent(target_id):
    return {"rel": REVERSE, "url": f"https://dev.azure.com/contoso/_apis/wit/workItems/{target_id}"}


class _FakeSource:
    def __init__(self, items=None) -> None:
        self.items = list(items or [])
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.calls: list[dict] = []

    async def fetch_remote_items(self, project, *, from_date=None, max_items=None):
        self.calls.append({"project": project, "from_date": from_date, "max_items": max_items})
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        items = [dict(item) for item in self.items]
        return items[:max_items] if max_items else items


class SyncServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.source = _FakeSource()
        self.coordinator = PipelineCoordinator()
        self.tracker = TrackerService.build(
            self.db,
            self.source,
            KeywordTagGenerator(),
            coordinator=self.coordinator,
            default_project="Contoso",
            sync_batch_size=2,
            max_items=100,
            excluded_types=["Test Case"],
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_example_scenario_persists_tags_and_single_edge(self) -> None:
        self.source.items = [
            _raw(100),
            _raw(101, relations=[_parent(200)]),
            _raw(200, "Feature"),
        ]

        run = await self.tracker.sync()
        await self.tracker.sync()

        self.assertEqual(run.status, "success")
        self.assertEqual(run.itemsAdded, 3)
        item_100 = await self.tracker.items.get("100")
        item_101 = await self.tracker.items.get("101")
        self.assertIn("orphan", item_100.tags)
        self.assertEqual(item_101.tags, {"has-parent", "child-of-feature"})
        self.assertTrue(item_100.needsTagging)
        self.assertTrue(item_101.needsTagging)
        links = await self.tracker.get_links("101")
        self.assertEqual([(l.sourceId, l.targetId, l.relationType) for l in links], [("101", "200", REVERSE)])

    async def test_second_sync_of_unchanged_snapshot_is_idempotent(self) -> None:
        self.source.items = [_raw(i) for i in range(1, 6)]

        first = await self.tracker.sync()
        second = await self.tracker.sync()

        self.assertEqual((first.itemsAdded, first.itemsUpdated), (5, 0))
        self.assertEqual((second.itemsAdded, second.itemsUpdated, second.itemsSkipped), (0, 0, 5))
        self.assertEqual(len(await self.tracker.get_sync_history()), 2)

    async def test_modified_item_updates_once_and_keeps_tags(self) -> None:
        self.source.items = [_raw(1), _raw(2)]
        await self.tracker.sync()
        await self.tracker.drain_pending_tags()
        tagged = await self.tracker.items.get("1")
        self.assertFalse(tagged.needsTagging)

        self.source.items = [_raw(1, changed="2024-02-01T00:00:00Z"), _raw(2)]
        run = await self.tracker.sync()

        self.assertEqual((run.itemsUpdated, run.itemsSkipped), (1, 1))
        updated = await self.tracker.items.get("1")
        self.assertEqual(updated.tags, tagged.tags)
        self.assertEqual(updated.confidenceScores, tagged.confidenceScores)
        self.assertFalse(updated.needsTagging)
        self.assertEqual(updated.modifiedAt, "2024-02-01T00:00:00Z")

    async def test_tags_written_between_batches_survive_later_batch(self) -> None:
        self.source.items = [_raw(1), _raw(2), _raw(3)]
        await self.tracker.sync()
        self.source.items = [_raw(1), _raw(2), _raw(3, changed="2024-02-01T00:00:00Z")]

        original_update = self.coordinator.update_operation
        drains = []

        async def update_then_drain(op_id, **kwargs):
            await original_update(op_id, **kwargs)
            # Sync counters carry itemsAdded; tagging counters do not.
            if not drains and "itemsAdded" in (kwargs.get("counters") or {}):
                drains.append(await self.tracker.drain_pending_tags())

        with patch.object(self.coordinator, "update_operation", new=update_then_drain):
            run = await self.tracker.sync()

        self.assertEqual(drains[0].tagged, 3)
        self.assertEqual((run.status, run.itemsUpdated, run.itemsSkipped), ("success", 1, 2))
        item_3 = await self.tracker.items.get("3")
        self.assertFalse(item_3.needsTagging)
        self.assertIn("task", item_3.tags)
        self.assertIn("orphan", item_3.tags)
        self.assertEqual(item_3.modifiedAt, "2024-02-01T00:00:00Z")
        self.assertEqual(await self.tracker.get_pending_count(), 0)

    async def test_failed_batch_is_rolled_back(self) -> None:
        self.source.items = [_raw(1), _raw(2), _raw(3)]
        original_add = self.tracker.relations.add_many
        calls = []

        async def add_then_fail(edges, **kwargs):
            calls.append(len(calls))
            if len(calls) == 2:
                raise RuntimeError("disk I/O error")
            return await original_add(edges, **kwargs)

        with patch.object(self.tracker.relations, "add_many", new=add_then_fail):
            run = await self.tracker.sync()

        self.assertEqual(run.status, "failed")
        self.assertEqual(run.errors[-1].error, "disk I/O error")
        self.assertEqual(run.itemsAdded, 2)
        self.assertIsNotNone(await self.tracker.items.get("1"))
        self.assertIsNotNone(await self.tracker.items.get("2"))
        self.assertIsNone(await self.tracker.items.get("3"))
        history = await self.tracker.get_sync_history()
        self.assertEqual(history[0]["status"], "failed")
        self.assertFalse(self.coordinator.store_lock.locked())

    async def test_concurrent_sync_returns_in_flight_run(self) -> None:
        self.source.items = [_raw(1)]
        self.source.gate = asyncio.Event()

        first = asyncio.create_task(self.tracker.sync())
        await self.source.entered.wait()
        concurrent = await self.tracker.sync()
        self.assertEqual(concurrent.status, "running")
        self.assertTrue((await self.tracker.get_sync_status()).inProgress)

        self.source.gate.set()
        finished = await first

        self.assertEqual(finished.status, "success")
        self.assertEqual(len(self.source.calls), 1)
        history = await self.tracker.get_sync_history()
        self.assertEqual(len(history), 1)
        self.assertFalse(self.coordinator.sync_gate.in_progress)

    async def test_remote_failure_is_recorded_as_failed_run(self) -> None:
        status = await self.tracker.get_sync_status()
        self.assertEqual(status.status, "never")
        self.assertIsNone(status.lastSync)

        self.source.error = RemoteFetchError("401 Unauthorized")
        run = await self.tracker.sync()

        self.assertEqual(run.status, "failed")
        self.assertEqual(run.errors[-1].error, "401 Unauthorized")
        status = await self.tracker.get_sync_status()
        self.assertEqual(status.status, "failed")
        self.assertEqual(status.lastSync.errors[0].error, "401 Unauthorized")
        self.assertEqual(await self.tracker.get_pending_count(), 0)
        self.assertFalse(self.coordinator.sync_gate.in_progress)

    async def test_item_failure_does_not_abort_run(self) -> None:
        self.source.items = [_raw(1), {"fields": {}}, _raw(3, "Test Case"), _raw(4)]

        run = await self.tracker.sync()

        self.assertEqual(run.status, "success")
        self.assertEqual(run.itemsAdded, 2)
        self.assertEqual(run.itemsSkipped, 1)
        self.assertEqual(run.itemsFailed, 1)
        self.assertEqual(len(run.errors), 1)
        self.assertIsNone(await self.tracker.items.get("3"))

    async def test_progress_reflects_completed_run(self) -> None:
        self.source.items = [_raw(i) for i in range(1, 6)]
        await self.tracker.sync(trigger="test")

        progress = await self.tracker.get_progress()
        self.assertFalse(progress.sync.inProgress)
        self.assertEqual(progress.sync.phase, "idle")
        self.assertEqual((progress.sync.current, progress.sync.total), (5, 5))
        self.assertEqual(progress.sync.percentage, 100)
        self.assertEqual(progress.sync.lastResult["itemsAdded"], 5)
        self.assertEqual(progress.recentOperations[0]["kind"], "sync")
        self.assertEqual(progress.recentOperations[0]["status"], "completed")

    async def test_import_historical_bounds_items_and_dates(self) -> None:
        self.source.items = [
            _raw(1, changed="2024-03-01T00:00:00Z"),
            _raw(2, changed="2024-01-10T00:00:00Z"),
            _raw(3, changed="2023-12-01T00:00:00Z"),
        ]

        run = await self.tracker.import_historical(from_date="2023-01-01", to_date="2024-02-01", batch_size=500)

        self.assertEqual(self.source.calls[-1]["max_items"], 500)
        self.assertEqual(self.source.calls[-1]["from_date"], "2023-01-01")
        self.assertEqual(run.itemsFetched, 2)
        self.assertEqual(run.trigger, "import")

    async def test_purge_excluded_types_removes_rows_and_edges(self) -> None:
        self.source.items = [_raw(1, relations=[_parent(2)]), _raw(2, "Feature")]
        await self.tracker.sync()

        result = await self.tracker.purge_excluded_types(["Feature"])

        self.assertEqual(result, {"itemsDeleted": 1, "linksDeleted": 1})
        self.assertIsNone(await self.tracker.items.get("2"))
        self.assertEqual(await self.tracker.relations.count(), 0)


if __name__ == "__main__":
    unittest.main()
