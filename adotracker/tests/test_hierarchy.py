import unittest

from adotracker import hierarchy
from adotracker.hierarchy import (
    derive_hierarchy_tags,
    is_hierarchy_tag,
    is_parent_relation,
    split_hierarchy_tags,
    type_slug,
)


class ParentRelationTests(unittest.TestCase):
    def test_free_text_parent_condition(self) -> None:
        self.assertTrue(hierarchy._mentions_parent("Parent"))
        self.assertTrue(hierarchy._mentions_parent("Custom.ParentLink"))
        self.assertFalse(hierarchy._mentions_parent("System.LinkTypes.Hierarchy-Reverse"))
        self.assertFalse(hierarchy._mentions_parent("System.LinkTypes.Related"))

    def test_reverse_hierarchy_marker_condition(self) -> None:
        self.assertTrue(hierarchy._is_reverse_hierarchy("System.LinkTypes.Hierarchy-Reverse"))
        self.assertTrue(hierarchy._is_reverse_hierarchy("Hierarchy-Reverse"))
        self.assertFalse(hierarchy._is_reverse_hierarchy("Parent"))
        self.assertFalse(hierarchy._is_reverse_hierarchy("System.LinkTypes.Hierarchy-Forward"))

    def test_either_condition_marks_a_parent_edge(self) -> None:
        self.assertTrue(is_parent_relation("System.LinkTypes.Hierarchy-Reverse"))
        self.assertTrue(is_parent_relation("parent"))
        self.assertFalse(is_parent_relation("System.LinkTypes.Hierarchy-Forward"))
        self.assertFalse(is_parent_relation("System.LinkTypes.Related"))
        self.assertFalse(is_parent_relation(""))
        self.assertFalse(is_parent_relation(None))


class HierarchyTagTests(unittest.TestCase):
    def test_leaf_types_without_parent_are_orphans(self) -> None:
        for work_item_type in ("User Story", "Task", "Bug"):
            self.assertEqual(derive_hierarchy_tags(work_item_type, has_parent=False), {"orphan"})

    def test_container_types_without_parent_are_top_level(self) -> None:
        self.assertEqual(derive_hierarchy_tags("Feature", has_parent=False), {"top-level-feature"})
        self.assertEqual(derive_hierarchy_tags("Epic", has_parent=False), {"top-level-epic"})

    def test_items_with_parent_get_has_parent_and_parent_type(self) -> None:
        self.assertEqual(
            derive_hierarchy_tags("Task", has_parent=True, parent_type="Feature"),
            {"has-parent", "child-of-feature"},
        )
        self.assertEqual(
            derive_hierarchy_tags("Task", has_parent=True, parent_type="User Story"),
            {"has-parent", "child-of-user-story"},
        )
        self.assertEqual(derive_hierarchy_tags("Feature", has_parent=True), {"has-parent"})

    def test_type_slug(self) -> None:
        self.assertEqual(type_slug("Product Backlog Item"), "product-backlog-item")
        self.assertEqual(type_slug("  Epic "), "epic")
        self.assertEqual(type_slug(""), "")

    def test_split_hierarchy_tags(self) -> None:
        hierarchy_tags, other = split_hierarchy_tags(
            {"orphan", "top-level-epic", "child-of-feature", "has-parent", "api", "area-web"}
        )
        self.assertEqual(hierarchy_tags, {"orphan", "top-level-epic", "child-of-feature", "has-parent"})
        self.assertEqual(other, {"api", "area-web"})
        self.assertFalse(is_hierarchy_tag("parent"))


if __name__ == "__main__":
    unittest.main()
