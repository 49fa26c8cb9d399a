import json
import unittest
from unittest import mock
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError

from kvstore.blob_kv import BlobKVBackend
from kvstore.errors import BackendUnavailableError, NotFoundError, ValidationError
from kvstore.service import KVStoreService
from kvstore.storage import InMemoryStorageClient, S3StorageClient


class BlobKVBackendTests(unittest.TestCase):
    def setUp(self):
        self.storage = InMemoryStorageClient()
        self.backend = BlobKVBackend(self.storage)
        self.kv = KVStoreService(self.backend)

    def test_value_stored_as_raw_json(self):
        self.kv.set("org/doc/1", {"a": 1}, [{"key": "type", "member": "document"}])
        self.assertEqual(json.loads(self.storage.stored_objects["org/doc/1"]), {"a": 1})
        self.assertEqual(
            json.loads(self.storage.stored_objects["_kv_indexes/org/doc/1"]),
            ["type:document"],
        )

    def test_sidecars_hidden_from_listing_and_count(self):
        self.kv.set("a", {}, [{"key": "type", "member": "x"}])
        self.assertEqual(self.kv.list().keys, ["a"])
        self.assertEqual(self.kv.count(), 1)

    def test_overwrite_drops_stale_tags(self):
        self.kv.set("k", {"v": 1}, [{"key": "type", "member": "document"}])
        self.kv.set("k", {"v": 2})
        self.assertNotIn("_kv_indexes/k", self.storage.stored_objects)
        self.assertEqual(self.kv.list(index_filter="type:document").keys, [])

    def test_failed_tag_write_leaves_no_stale_tags(self):
        self.kv.set("k", {"v": 1}, [{"key": "type", "member": "document"}])
        upload = self.storage.upload_json

        def upload_values_only(path, payload):
            if path.startswith("_kv_indexes/"):
                raise EndpointConnectionError(endpoint_url="https://blob.test")
            upload(path, payload)

        with mock.patch.object(self.storage, "upload_json", side_effect=upload_values_only):
            with self.assertRaises(BackendUnavailableError):
                self.kv.set("k", {"v": 2}, [{"key": "type", "member": "image"}])

        self.assertEqual(self.kv.get("k"), {"v": 2})
        self.assertEqual(self.kv.list(index_filter="type:document").keys, [])

    def test_index_filter_and_pagination(self):
        for i in range(4):
            member = "document" if i % 2 == 0 else "image"
            self.kv.set(f"f/{i}", {"i": i}, [{"key": "type", "member": member}])
        page = self.kv.list(index_filter="type:document", limit=1)
        self.assertEqual(page.keys, ["f/0"])
        self.assertEqual(page.count, 2)
        self.assertTrue(page.has_more)

    def test_legacy_nested_sidecar_is_normalized(self):
        self.storage.upload_json("legacy", {"a": 1})
        self.storage.upload_json("_kv_indexes/legacy", {"type": "document"})
        self.assertEqual(self.backend.get("legacy").indexes, ["type:document"])

    def test_delete_and_missing(self):
        self.kv.set("k", {"a": 1}, [{"key": "t", "member": "x"}])
        self.assertTrue(self.kv.delete("k"))
        self.assertFalse(self.kv.delete("k"))
        self.assertEqual(self.storage.stored_objects, {})
        with self.assertRaises(NotFoundError):
            self.kv.get("k")

    def test_reserved_prefix_rejected(self):
        with self.assertRaises(ValidationError):
            self.kv.set("_kv_indexes/evil", {"a": 1})

    def test_clear_removes_entries_and_sidecars(self):
        self.kv.set("tmp/1", {}, [{"key": "t", "member": "x"}])
        self.kv.set("keep", {})
        self.assertEqual(self.kv.clear("tmp/"), 1)
        self.assertEqual(sorted(self.storage.stored_objects), ["keep"])

    def test_corrupt_blob_surfaces_backend_error(self):
        self.storage.stored_objects["bad"] = b"{not json"
        with self.assertRaises(BackendUnavailableError) as ctx:
            self.kv.get("bad")
        self.assertEqual(ctx.exception.operation, "get")
        self.assertEqual(ctx.exception.key, "bad")


class S3StorageFailureTests(unittest.TestCase):
    def _client(self) -> S3StorageClient:
        client = S3StorageClient(
            bucket="kv",
            region="us-east-1",
            endpoint="",
            access_key_id="test",
            secret_access_key="test",
        )
        client._client = MagicMock()
        return client

    def test_missing_object_reads_as_not_found(self):
        client = self._client()
        client._client.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )
        backend = BlobKVBackend(client)
        self.assertIsNone(backend.get("nope"))

    def test_connection_failure_is_backend_unavailable(self):
        client = self._client()
        client._client.put_object.side_effect = EndpointConnectionError(
            endpoint_url="https://blob.test"
        )
        kv = KVStoreService(BlobKVBackend(client))
        with self.assertRaises(BackendUnavailableError):
            kv.set("k", {"a": 1})

    def test_list_paths_follows_pages(self):
        client = self._client()
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "a"}, {"Key": "_kv_indexes/a"}]},
            {"Contents": [{"Key": "b"}]},
            {},
        ]
        client._client.get_paginator.return_value = paginator
        backend = BlobKVBackend(client)
        self.assertEqual(backend.count(), 2)


if __name__ == "__main__":
    unittest.main()
