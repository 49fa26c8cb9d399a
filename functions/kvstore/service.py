"""
KV store service: validation and index derivation in front of a backend.

Live traffic and the migration procedure both write through this class, so
both paths share one set of validation rules and one tag derivation.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable, Optional, Sequence

from kvstore.blob_kv import DEFAULT_INDEX_PREFIX
from kvstore.db import KVBackend, KVEntry, ListPage, ListQuery
from kvstore.errors import NotFoundError, ValidationError
from kvstore.indexes import resolve_tags

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 1024
SORT_ORDERS = ("asc", "desc")


class KVStoreService:
    def __init__(self, backend: KVBackend, reserved_prefix: str = DEFAULT_INDEX_PREFIX):
        self.backend = backend
        self.reserved_prefix = reserved_prefix

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def _validate_key(self, key: Any) -> str:
        if not isinstance(key, str) or not key:
            raise ValidationError("key is required")
        if len(key) > MAX_KEY_LENGTH:
            raise ValidationError(f"key too long (max {MAX_KEY_LENGTH} characters)")
        if self.reserved_prefix and key.startswith(self.reserved_prefix):
            raise ValidationError(f"keys may not start with {self.reserved_prefix!r}")
        return key

    @staticmethod
    def _validate_value(value: Any) -> Any:
        if not isinstance(value, (dict, list)):
            raise ValidationError("value must be a JSON object or array")
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"value is not JSON-serializable: {exc}") from exc
        return value

    def build_entry(
        self, key: Any, value: Any, indexes: Optional[Iterable[Any]] = None
    ) -> KVEntry:
        """Validate a write and derive its tags without touching storage."""
        return KVEntry(
            key=self._validate_key(key),
            value=self._validate_value(value),
            indexes=resolve_tags(indexes),
            updated_at=time.time(),
        )

    def upsert_entries(self, entries: Sequence[KVEntry]) -> None:
        """Write already-built entries; overwrites any existing value and tags."""
        if entries:
            self.backend.upsert_many(entries)

    def set(self, key: Any, value: Any, indexes: Optional[Iterable[Any]] = None) -> KVEntry:
        entry = self.build_entry(key, value, indexes)
        self.backend.upsert_many([entry])
        logger.info(
            "Stored %s in %s with %d index tags", entry.key, self.backend_name, len(entry.indexes)
        )
        return entry

    def get_entry(self, key: Any) -> KVEntry:
        key = self._validate_key(key)
        entry = self.backend.get(key)
        if entry is None:
            raise NotFoundError(key)
        return entry

    def get(self, key: Any) -> Any:
        return self.get_entry(key).value

    def get_many(self, keys: Sequence[Any]) -> dict:
        validated = [self._validate_key(key) for key in keys]
        return self.backend.get_many(validated)

    def exists(self, key: Any) -> bool:
        return self.backend.exists(self._validate_key(key))

    def delete(self, key: Any) -> bool:
        """Remove ``key``. Returns whether it existed; absence is not an error."""
        key = self._validate_key(key)
        existed = self.backend.delete(key)
        if not existed:
            logger.info("Delete of missing key %s in %s", key, self.backend_name)
        return existed

    def clear(self, prefix: Optional[str]) -> int:
        if not prefix:
            raise ValidationError("clear requires a non-empty prefix")
        deleted = self.backend.clear(prefix)
        logger.warning("Cleared %d keys under %s in %s", deleted, prefix, self.backend_name)
        return deleted

    def list(
        self,
        *,
        prefix: Optional[str] = None,
        index_filter: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        sort_order: str = "asc",
        include_values: bool = False,
    ) -> ListPage:
        if limit is not None and limit < 1:
            raise ValidationError("limit must be a positive integer")
        if offset is None or offset < 0:
            raise ValidationError("offset must be zero or greater")
        if sort_order not in SORT_ORDERS:
            raise ValidationError("sortOrder must be 'asc' or 'desc'")
        query = ListQuery(
            prefix=prefix or None,
            index_filter=index_filter or None,
            limit=limit,
            offset=offset,
            descending=sort_order == "desc",
            include_values=include_values,
        )
        return self.backend.list_entries(query)

    def count(self, prefix: Optional[str] = None) -> int:
        return self.backend.count(prefix)
