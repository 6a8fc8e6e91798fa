import unittest

from adotracker.models import WorkItem
from adotracker.pipeline.reconcile import (
    ADD,
    EXCLUDED,
    SKIP,
    UPDATE,
    build_type_index,
    reconcile,
    reconcile_item,
)

REVERSE = "System.LinkTypes.Hierarchy-Reverse"


def _raw(item_id, work_item_type="Task", changed="2024-01-01T00:00:00Z", relations=None, title=None):
    raw = {
        "id": item_id,
        "fields": {
            "System.Title": title or f"Item {item_id}",
            "System.WorkItemType": work_item_type,
            "System.State": "New",
            "System.ChangedDate": changed,
            "System.TeamProject": "Contoso",
        },
    }
    if relations is not None:
        raw["relations"] = relations
    return raw


def _rel(target_id, rel=REVERSE, **attributes):
    return {
        "rel": rel,
        "url": f"https://dev.azure.com/contoso/_apis/wit/workItems/{target_id}",
        "attributes": attributes,
    }


class ReconcileScenarioTests(unittest.TestCase):
    def test_orphan_and_child_of_feature(self) -> None:
        remote = [
            _raw(100),
            _raw(101, relations=[_rel(200, name="Parent")]),
            _raw(200, work_item_type="Feature"),
        ]

        result = reconcile(remote, {})

        by_id = {item.externalId: item for item in result.to_upsert}
        self.assertEqual(result.stats.added, 3)
        self.assertIn("orphan", by_id["100"].tags)
        self.assertEqual(by_id["101"].tags, {"has-parent", "child-of-feature"})
        self.assertEqual(by_id["200"].tags, {"top-level-feature"})
        self.assertTrue(by_id["100"].needsTagging)
        self.assertTrue(by_id["101"].needsTagging)
        edges = [(e.sourceId, e.targetId, e.relationType) for e in result.edges]
        self.assertEqual(edges, [("101", "200", REVERSE)])

    def test_parent_type_falls_back_to_local_snapshot_then_attributes(self) -> None:
        local = {"300": WorkItem(externalId="300", type="Epic", modifiedAt="x")}
        from_local = reconcile([_raw(1, relations=[_rel(300)])], local)
        self.assertIn("child-of-epic", from_local.to_upsert[0].tags)

        from_attributes = reconcile([_raw(2, relations=[_rel(999, workItemType="User Story")])], {})
        self.assertIn("child-of-user-story", from_attributes.to_upsert[0].tags)

        unknown = reconcile([_raw(3, relations=[_rel(998)])], {})
        self.assertEqual(unknown.to_upsert[0].tags, {"has-parent"})

    def test_free_text_parent_relation_counts(self) -> None:
        result = reconcile([_raw(1, relations=[_rel(2, rel="Parent")]), _raw(2, "Feature")], {})
        by_id = {item.externalId: item for item in result.to_upsert}
        self.assertIn("has-parent", by_id["1"].tags)

    def test_non_parent_relations_are_recorded_but_do_not_parent(self) -> None:
        result = reconcile(
            [_raw(1, relations=[_rel(2, rel="System.LinkTypes.Related"), _rel(3, rel="System.LinkTypes.Hierarchy-Forward")])],
            {},
        )
        self.assertEqual(result.to_upsert[0].tags, {"orphan"})
        self.assertEqual(len(result.edges), 2)

    def test_relations_without_work_item_target_are_ignored(self) -> None:
        relations = [
            {"rel": "Hyperlink", "url": "https://wiki.contoso.com/checkout"},
            {"rel": "ArtifactLink", "url": "vstfs:///Git/Commit/abc"},
            {"rel": REVERSE},
        ]
        result = reconcile([_raw(1, relations=relations)], {})
        self.assertEqual(result.edges, [])
        self.assertEqual(result.to_upsert[0].tags, {"orphan"})


class ReconcileDecisionTests(unittest.TestCase):
    def test_unchanged_item_is_skipped_but_edges_recorded(self) -> None:
        local = WorkItem(externalId="1", type="Task", modifiedAt="2024-01-01T00:00:00Z", tags={"api"})
        decision = reconcile_item(_raw(1, relations=[_rel(2)]), local)
        self.assertEqual(decision.action, SKIP)
        self.assertEqual(len(decision.edges), 1)

        result = reconcile([_raw(1, relations=[_rel(2)])], {"1": local})
        self.assertEqual(result.to_upsert, [])
        self.assertEqual(result.stats.skipped, 1)
        self.assertEqual(len(result.edges), 1)

    def test_update_preserves_existing_tags_and_tagged_state(self) -> None:
        local = WorkItem(
            externalId="1",
            type="Task",
            modifiedAt="2024-01-01T00:00:00Z",
            tags={"api", "orphan"},
            confidenceScores={"api": 0.7},
            needsTagging=False,
        )
        decision = reconcile_item(_raw(1, changed="2024-02-01T00:00:00Z", relations=[_rel(9)]), local)

        self.assertEqual(decision.action, UPDATE)
        self.assertEqual(decision.item.tags, {"api", "orphan"})
        self.assertEqual(decision.item.confidenceScores, {"api": 0.7})
        self.assertFalse(decision.item.needsTagging)
        self.assertEqual(decision.item.modifiedAt, "2024-02-01T00:00:00Z")

    def test_update_of_untagged_item_needs_tagging(self) -> None:
        local = WorkItem(externalId="1", type="Bug", modifiedAt="old", needsTagging=False)
        decision = reconcile_item(_raw(1, "Bug", changed="new"), local)
        self.assertEqual(decision.action, UPDATE)
        self.assertTrue(decision.item.needsTagging)
        self.assertEqual(decision.item.tags, {"orphan"})

    def test_hierarchy_tags_alone_do_not_count_as_tagged(self) -> None:
        local = WorkItem(externalId="1", type="Task", modifiedAt="old", tags={"orphan"}, needsTagging=False)
        decision = reconcile_item(_raw(1, changed="new", relations=[_rel(5)]), local, type_index={"5": "Epic"})
        self.assertTrue(decision.item.needsTagging)
        self.assertEqual(decision.item.tags, {"has-parent", "child-of-epic"})

    def test_pending_item_gets_hierarchy_tags_rederived(self) -> None:
        local = WorkItem(
            externalId="1",
            type="Task",
            modifiedAt="old",
            tags={"orphan", "custom"},
            needsTagging=True,
        )
        decision = reconcile_item(
            _raw(1, changed="new", relations=[_rel(5)]),
            local,
            type_index={"5": "Feature"},
        )
        self.assertTrue(decision.item.needsTagging)
        self.assertEqual(decision.item.tags, {"custom", "has-parent", "child-of-feature"})

    def test_excluded_type_is_skipped_without_edges(self) -> None:
        decision = reconcile_item(
            _raw(1, "Test Case", relations=[_rel(2)]),
            None,
            excluded_types={"Test Case"},
        )
        self.assertEqual(decision.action, EXCLUDED)
        self.assertEqual(decision.edges, [])

        result = reconcile([_raw(1, "Test Case", relations=[_rel(2)]), _raw(3)], {}, excluded_types={"Test Case"})
        self.assertEqual([i.externalId for i in result.to_upsert], ["3"])
        self.assertEqual(result.stats.skipped, 1)
        self.assertEqual(result.edges, [])

    def test_new_item_is_added(self) -> None:
        decision = reconcile_item(_raw(7, "Epic"), None)
        self.assertEqual(decision.action, ADD)
        self.assertTrue(decision.item.needsTagging)


class ReconcileFailureTests(unittest.TestCase):
    def test_malformed_record_is_isolated(self) -> None:
        seen = []
        remote = [
            {"fields": {"System.Title": "no id"}},
            _raw(2, relations="not-a-list"),
            _raw(3),
        ]
        result = reconcile(remote, {}, on_item=lambda label, ok: seen.append((label, ok)))

        self.assertEqual(result.stats.failed, 2)
        self.assertEqual(result.stats.added, 1)
        self.assertEqual([e.externalId for e in result.errors], ["", "2"])
        self.assertEqual([ok for _, ok in seen], [False, False, True])
        self.assertEqual(seen[-1][0], "#3 - Item 3")

    def test_type_index_prefers_fresh_remote_type(self) -> None:
        local = {"1": WorkItem(externalId="1", type="Task"), "2": WorkItem(externalId="2", type="Bug")}
        index = build_type_index([_raw(1, "User Story")], local)
        self.assertEqual(index, {"1": "User Story", "2": "Bug"})


if __name__ == "__main__":
    unittest.main()
