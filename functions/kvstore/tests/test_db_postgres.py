import unittest

from sqlalchemy.dialects import postgresql

from kvstore.db import ListQuery, PostgresKVBackend, key_ordering
from kvstore.errors import NotFoundError, ValidationError
from kvstore.service import KVStoreService


class PostgresKVBackendTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres backend logic.
    """

    def setUp(self):
        self.backend = PostgresKVBackend("sqlite+pysqlite:///:memory:")
        self.kv = KVStoreService(self.backend)

    def test_set_and_get_roundtrip(self):
        self.kv.set("org/hunt/doc/1", {"title": "Clue", "n": [1, 2]})
        self.assertEqual(self.kv.get("org/hunt/doc/1"), {"title": "Clue", "n": [1, 2]})

    def test_set_twice_is_idempotent(self):
        self.kv.set("k", {"a": 1}, [{"key": "type", "member": "doc"}])
        self.kv.set("k", {"a": 1}, [{"key": "type", "member": "doc"}])
        self.assertEqual(self.kv.get("k"), {"a": 1})
        self.assertEqual(self.kv.count(), 1)

    def test_upsert_overwrites_value_and_tags(self):
        self.kv.set("k", {"v": 1}, [{"key": "type", "member": "document"}])
        first = self.backend.get("k")
        self.kv.set("k", {"v": 2}, [{"key": "type", "member": "image"}])

        entry = self.backend.get("k")
        self.assertEqual(entry.value, {"v": 2})
        self.assertEqual(entry.indexes, ["type:image"])
        self.assertEqual(entry.created_at, first.created_at)
        self.assertGreaterEqual(entry.updated_at, first.updated_at)
        self.assertEqual(self.kv.list(index_filter="type:document").keys, [])
        self.assertEqual(self.kv.list(index_filter="type:image").keys, ["k"])

    def test_get_missing_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            self.kv.get("missing")

    def test_delete_is_idempotent(self):
        self.kv.set("k", {"a": 1})
        self.assertTrue(self.kv.delete("k"))
        self.assertFalse(self.kv.delete("k"))
        with self.assertRaises(NotFoundError):
            self.kv.get("k")

    def test_prefix_listing(self):
        for key in ["b/1", "a/2", "a/1"]:
            self.kv.set(key, {"key": key})
        self.assertEqual(self.kv.list(prefix="a/").keys, ["a/1", "a/2"])

    def test_prefix_listing_is_case_sensitive_and_literal(self):
        self.kv.set("a/1", {})
        self.kv.set("A/2", {})
        self.kv.set("a_b", {})
        self.kv.set("axb", {})
        self.assertEqual(self.kv.list(prefix="a/").keys, ["a/1"])
        self.assertEqual(self.kv.list(prefix="a_").keys, ["a_b"])

    def test_pagination_consistency(self):
        for i in range(5):
            self.kv.set(f"item/{i}", {"i": i})

        first = self.kv.list(limit=2, offset=0)
        second = self.kv.list(limit=2, offset=2)
        third = self.kv.list(limit=2, offset=4)
        full = self.kv.list(limit=4, offset=0)

        self.assertEqual(first.keys + second.keys, full.keys)
        self.assertTrue(first.has_more)
        self.assertTrue(second.has_more)
        self.assertFalse(third.has_more)
        self.assertEqual(third.keys, ["item/4"])
        self.assertEqual(first.count, 5)

    def test_descending_sort_order(self):
        for key in ["a", "c", "b"]:
            self.kv.set(key, {})
        self.assertEqual(self.kv.list(sort_order="desc").keys, ["c", "b", "a"])

    def test_index_filter_is_exact(self):
        self.kv.set("doc", {}, [{"key": "type", "member": "document"}])
        self.kv.set("doc2", {}, [{"key": "type", "member": "documents"}])
        self.kv.set("img", {}, [{"key": "type", "member": "image"}])

        self.assertEqual(self.kv.list(index_filter="type:document").keys, ["doc"])
        self.assertEqual(self.kv.list(index_filter="type:image").keys, ["img"])
        self.assertEqual(self.kv.list(index_filter="type:doc").keys, [])

    def test_index_filter_with_like_wildcards(self):
        self.kv.set("pct", {}, [{"key": "rate", "member": "50%"}])
        self.kv.set("other", {}, [{"key": "rate", "member": "500"}])
        self.assertEqual(self.kv.list(index_filter="rate:50%").keys, ["pct"])
        self.assertEqual(self.kv.list(index_filter="rate:5_0").keys, [])

    def test_index_filter_is_case_sensitive(self):
        self.kv.set("doc", {}, [{"key": "type", "member": "document"}])
        self.assertEqual(self.kv.list(index_filter="type:DOCUMENT").keys, [])
        self.assertEqual(self.kv.list(index_filter="type:document").count, 1)

    def test_index_filter_does_not_match_inside_other_tags(self):
        self.kv.set("quoted", {}, [{"key": "x", "member": 'a"type:document'}])
        self.assertEqual(self.kv.list(index_filter="type:document").keys, [])

    def test_key_order_matches_python_sort(self):
        keys = ["a/b", "a-b", "a", "A", "b"]
        for key in keys:
            self.kv.set(key, {})
        self.assertEqual(self.kv.list().keys, sorted(keys))
        self.assertEqual(self.kv.list(sort_order="desc").keys, sorted(keys, reverse=True))

    def test_postgres_key_order_uses_binary_collation(self):
        clause = key_ordering("postgresql", descending=True)
        compiled = str(clause.compile(dialect=postgresql.dialect()))
        self.assertIn('COLLATE "C"', compiled)
        self.assertTrue(compiled.endswith("DESC"))

    def test_list_include_values(self):
        self.kv.set("a", {"x": 1})
        page = self.kv.list(include_values=True)
        self.assertEqual(page.values, {"a": {"x": 1}})
        self.assertIsNone(self.kv.list().values)

    def test_get_many_and_exists(self):
        self.kv.set("a", {"x": 1})
        self.kv.set("b", [1, 2])
        self.assertEqual(self.kv.get_many(["a", "b", "c"]), {"a": {"x": 1}, "b": [1, 2]})
        self.assertTrue(self.kv.exists("a"))
        self.assertFalse(self.kv.exists("c"))

    def test_clear_requires_prefix(self):
        self.kv.set("tmp/1", {})
        self.kv.set("tmp/2", {})
        self.kv.set("keep", {})
        with self.assertRaises(ValidationError):
            self.kv.clear("")
        self.assertEqual(self.kv.clear("tmp/"), 2)
        self.assertEqual(self.kv.list().keys, ["keep"])

    def test_batch_upsert_with_repeated_key_keeps_last(self):
        entries = [
            self.kv.build_entry("dup", {"v": 1}),
            self.kv.build_entry("dup", {"v": 2}),
        ]
        self.kv.upsert_entries(entries)
        self.assertEqual(self.kv.get("dup"), {"v": 2})

    def test_count_with_prefix(self):
        self.kv.set("a/1", {})
        self.kv.set("b/1", {})
        self.assertEqual(self.backend.count("a/"), 1)
        self.assertEqual(self.backend.count(), 2)

    def test_list_query_offset_past_end(self):
        self.kv.set("a", {})
        page = self.backend.list_entries(ListQuery(limit=10, offset=5))
        self.assertEqual(page.keys, [])
        self.assertEqual(page.count, 1)
        self.assertFalse(page.has_more)


if __name__ == "__main__":
    unittest.main()
