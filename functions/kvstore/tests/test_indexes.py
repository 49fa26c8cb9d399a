import unittest

from kvstore.indexes import (
    matches,
    normalize_indexes,
    resolve_tags,
    tags_to_declarations,
)
from kvstore.schemas import IndexDeclaration


class IndexTagTests(unittest.TestCase):
    def test_resolve_keeps_declaration_order_and_duplicates(self):
        tags = resolve_tags(
            [
                {"key": "type", "member": "document"},
                {"key": "org", "member": "acme"},
                {"key": "type", "member": "document"},
            ]
        )
        self.assertEqual(tags, ["type:document", "org:acme", "type:document"])

    def test_resolve_drops_incomplete_declarations(self):
        tags = resolve_tags([{"key": "type"}, {"member": "x"}, {"key": "s", "member": "open"}])
        self.assertEqual(tags, ["s:open"])

    def test_resolve_accepts_models(self):
        tags = resolve_tags([IndexDeclaration(key="status", member="active")])
        self.assertEqual(tags, ["status:active"])

    def test_resolve_empty(self):
        self.assertEqual(resolve_tags(None), [])
        self.assertEqual(resolve_tags([]), [])

    def test_normalize_nested_object_form(self):
        tags = normalize_indexes({"type": "document", "org": ["a", "b"], "skip": None})
        self.assertEqual(tags, ["type:document", "org:a", "org:b"])

    def test_normalize_mixed_list(self):
        tags = normalize_indexes(["type:image", {"key": "org", "member": "acme"}, "junk"])
        self.assertEqual(tags, ["type:image", "org:acme"])

    def test_matches_exact_only(self):
        self.assertTrue(matches(["type:document"], "type:document"))
        self.assertFalse(matches(["type:document"], "type:doc"))
        self.assertTrue(matches([], None))

    def test_tags_to_declarations_splits_on_first_separator(self):
        self.assertEqual(
            tags_to_declarations(["url:https://x", "bare"]),
            [{"key": "url", "member": "https://x"}],
        )
        self.assertEqual(resolve_tags(tags_to_declarations(["url:https://x"])), ["url:https://x"])


if __name__ == "__main__":
    unittest.main()
