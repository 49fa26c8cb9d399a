"""
Legacy KV backend over object storage.

Each entry's value is stored as a raw JSON object at its key so existing blob
data stays readable. Index tags live in a sidecar object under a reserved
prefix (``_kv_indexes/<key>``); entries without tags have no sidecar.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from kvstore.db import KVEntry, ListPage, ListQuery, paginate
from kvstore.errors import BackendUnavailableError
from kvstore.indexes import matches, normalize_indexes
from kvstore.storage import StorageClient, get_json

logger = logging.getLogger(__name__)

DEFAULT_INDEX_PREFIX = "_kv_indexes/"


class BlobKVBackend:
    name = "blob"

    def __init__(self, storage: StorageClient, index_prefix: str = DEFAULT_INDEX_PREFIX):
        self.storage = storage
        self.index_prefix = index_prefix

    @contextmanager
    def _backend_errors(self, operation: str, key: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except (BotoCoreError, ClientError, ValueError) as exc:
            logger.error("Blob %s failed for key=%s: %s", operation, key, exc)
            raise BackendUnavailableError(operation, key, str(exc)) from exc

    def _sidecar_path(self, key: str) -> str:
        return f"{self.index_prefix}{key}"

    def _read_value(self, key: str) -> tuple[bool, Any]:
        try:
            return True, get_json(self.storage, key)
        except FileNotFoundError:
            return False, None

    def _read_tags(self, key: str) -> list[str]:
        try:
            return normalize_indexes(get_json(self.storage, self._sidecar_path(key)))
        except FileNotFoundError:
            return []

    def _entry_paths(self, prefix: Optional[str]) -> list[str]:
        return [
            path
            for path in self.storage.list_paths(prefix or "")
            if not path.startswith(self.index_prefix)
        ]

    def get(self, key: str) -> Optional[KVEntry]:
        with self._backend_errors("get", key):
            found, value = self._read_value(key)
            if not found:
                return None
            return KVEntry(key=key, value=value, indexes=self._read_tags(key))

    def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        with self._backend_errors("get_many"):
            for key in keys:
                found, value = self._read_value(key)
                if found:
                    results[key] = value
        return results

    def exists(self, key: str) -> bool:
        with self._backend_errors("exists", key):
            found, _ = self._read_value(key)
            return found

    def upsert_many(self, entries: Sequence[KVEntry]) -> None:
        for entry in entries:
            with self._backend_errors("upsert", entry.key):
                # A failed write must never leave stale tags beside the new value.
                self.storage.delete(self._sidecar_path(entry.key))
                self.storage.upload_json(entry.key, entry.value)
                if entry.indexes:
                    self.storage.upload_json(self._sidecar_path(entry.key), list(entry.indexes))

    def delete(self, key: str) -> bool:
        with self._backend_errors("delete", key):
            found, _ = self._read_value(key)
            self.storage.delete(key)
            self.storage.delete(self._sidecar_path(key))
            return found

    def clear(self, prefix: str) -> int:
        with self._backend_errors("clear"):
            paths = self._entry_paths(prefix)
            for path in paths:
                self.storage.delete(path)
                self.storage.delete(self._sidecar_path(path))
            return len(paths)

    def list_entries(self, query: ListQuery) -> ListPage:
        with self._backend_errors("list"):
            keys = self._entry_paths(query.prefix)
            if query.index_filter:
                keys = [key for key in keys if matches(self._read_tags(key), query.index_filter)]
            page, count, has_more = paginate(keys, query)
            values = None
            if query.include_values:
                values = {}
                for key in page:
                    # A key deleted between listing and reading reads as null.
                    _, values[key] = self._read_value(key)
        logger.info("Listed %d of %d blob keys (prefix=%s)", len(page), count, query.prefix or "")
        return ListPage(keys=page, count=count, has_more=has_more, values=values)

    def count(self, prefix: Optional[str] = None) -> int:
        with self._backend_errors("count"):
            return len(self._entry_paths(prefix))
