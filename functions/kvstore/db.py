"""
Relational KV backend (Postgres/Supabase) and an in-memory test implementation.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Protocol, Sequence

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Index,
    String,
    create_engine,
    delete,
    exists,
    func,
    select,
    type_coerce,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from kvstore.errors import BackendUnavailableError
from kvstore.indexes import matches

logger = logging.getLogger(__name__)


@dataclass
class KVEntry:
    key: str
    value: Any
    indexes: list[str] = field(default_factory=list)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def as_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "indexes": list(self.indexes),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ListQuery:
    prefix: Optional[str] = None
    index_filter: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0
    descending: bool = False
    include_values: bool = False


@dataclass
class ListPage:
    keys: list[str]
    count: int
    has_more: bool
    values: Optional[Dict[str, Any]] = None


class KVBackend(Protocol):
    """Operations every KV backend implements with identical semantics."""

    name: str

    def get(self, key: str) -> Optional[KVEntry]:
        ...

    def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        ...

    def exists(self, key: str) -> bool:
        ...

    def upsert_many(self, entries: Sequence[KVEntry]) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def clear(self, prefix: str) -> int:
        ...

    def list_entries(self, query: ListQuery) -> ListPage:
        ...

    def count(self, prefix: Optional[str] = None) -> int:
        ...


def paginate(keys: list[str], query: ListQuery) -> tuple[list[str], int, bool]:
    """Sort, slice and compute ``hasMore`` for backends that filter in Python."""
    ordered = sorted(keys, reverse=query.descending)
    count = len(ordered)
    if query.limit is None:
        return ordered[query.offset :], count, False
    page = ordered[query.offset : query.offset + query.limit]
    return page, count, query.offset + query.limit < count


def key_ordering(dialect_name: str, descending: bool = False):
    """ORDER BY clause sorting keys by code point, like ``sorted()`` on the blob side."""
    column = KVRow.key.collate("C") if dialect_name == "postgresql" else KVRow.key
    return column.desc() if descending else column.asc()


def _copy_json(value: Any) -> Any:
    # Round-trip through JSON so callers never share mutable state with the store.
    return json.loads(json.dumps(value))


class InMemoryKVBackend:
    """Simple in-memory KV table for development and tests."""

    name = "memory"

    def __init__(self):
        self.entries: Dict[str, KVEntry] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.entries.clear()

    def get(self, key: str) -> Optional[KVEntry]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        return KVEntry(
            key=entry.key,
            value=_copy_json(entry.value),
            indexes=list(entry.indexes),
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )

    def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        return {
            key: _copy_json(self.entries[key].value)
            for key in keys
            if key in self.entries
        }

    def exists(self, key: str) -> bool:
        return key in self.entries

    def upsert_many(self, entries: Sequence[KVEntry]) -> None:
        for entry in entries:
            existing = self.entries.get(entry.key)
            created_at = existing.created_at if existing else entry.updated_at
            self.entries[entry.key] = KVEntry(
                key=entry.key,
                value=_copy_json(entry.value),
                indexes=list(entry.indexes),
                created_at=created_at,
                updated_at=entry.updated_at,
            )

    def delete(self, key: str) -> bool:
        return self.entries.pop(key, None) is not None

    def clear(self, prefix: str) -> int:
        doomed = [key for key in self.entries if key.startswith(prefix)]
        for key in doomed:
            del self.entries[key]
        return len(doomed)

    def list_entries(self, query: ListQuery) -> ListPage:
        keys = [
            key
            for key, entry in self.entries.items()
            if (not query.prefix or key.startswith(query.prefix))
            and matches(entry.indexes, query.index_filter)
        ]
        page, count, has_more = paginate(keys, query)
        values = None
        if query.include_values:
            values = {key: _copy_json(self.entries[key].value) for key in page}
        return ListPage(keys=page, count=count, has_more=has_more, values=values)

    def count(self, prefix: Optional[str] = None) -> int:
        if not prefix:
            return len(self.entries)
        return sum(1 for key in self.entries if key.startswith(prefix))


class PostgresKVBackend:
    """
    SQLAlchemy-backed implementation for Postgres, or SQLite in tests.
    """

    name = "supabase"

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresKVBackend")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _backend_errors(self, operation: str, key: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("KV %s failed for key=%s: %s", operation, key, exc)
            raise BackendUnavailableError(operation, key, str(exc)) from exc

    def _prefix_condition(self, prefix: str):
        # substr keeps the match case-sensitive on SQLite, where LIKE is not.
        return func.substr(KVRow.key, 1, len(prefix)) == prefix

    def _index_condition(self, tag: str):
        if self.engine.dialect.name == "postgresql":
            return type_coerce(KVRow.indexes, JSONB).contains([tag])
        tags = func.json_each(KVRow.indexes).table_valued("value")
        return exists(select(1).select_from(tags).where(tags.c.value == tag))

    def _key_order(self, descending: bool):
        return key_ordering(self.engine.dialect.name, descending)

    def _conditions(self, prefix: Optional[str], index_filter: Optional[str] = None) -> list:
        conditions = []
        if prefix:
            conditions.append(self._prefix_condition(prefix))
        if index_filter:
            conditions.append(self._index_condition(index_filter))
        return conditions

    def get(self, key: str) -> Optional[KVEntry]:
        with self._backend_errors("get", key), self.Session() as session:
            row = session.get(KVRow, key)
            if not row:
                return None
            return KVEntry(
                key=row.key,
                value=row.value,
                indexes=list(row.indexes or []),
                created_at=row.created_at,
                updated_at=row.updated_at,
            )

    def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        if not keys:
            return {}
        with self._backend_errors("get_many"), self.Session() as session:
            rows = session.execute(
                select(KVRow.key, KVRow.value).where(KVRow.key.in_(list(keys)))
            ).all()
            return {row.key: row.value for row in rows}

    def exists(self, key: str) -> bool:
        with self._backend_errors("exists", key), self.Session() as session:
            found = session.execute(
                select(KVRow.key).where(KVRow.key == key)
            ).scalar_one_or_none()
            return found is not None

    def upsert_many(self, entries: Sequence[KVEntry]) -> None:
        # Last declaration wins when a batch repeats a key.
        unique = list({entry.key: entry for entry in entries}.values())
        if not unique:
            return
        with self._backend_errors("upsert", unique[0].key if len(unique) == 1 else None):
            with self.Session() as session:
                dialect = self.engine.dialect.name
                if dialect in ("postgresql", "sqlite"):
                    self._insert_on_conflict(session, unique, dialect)
                else:
                    self._merge_rows(session, unique)
                session.commit()

    def _insert_on_conflict(self, session: Session, entries: list[KVEntry], dialect: str) -> None:
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(KVRow).values(
            [
                {
                    "key": entry.key,
                    "value": entry.value,
                    "indexes": list(entry.indexes),
                    "created_at": entry.updated_at,
                    "updated_at": entry.updated_at,
                }
                for entry in entries
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[KVRow.key],
            set_={
                "value": stmt.excluded["value"],
                "indexes": stmt.excluded["indexes"],
                "updated_at": stmt.excluded["updated_at"],
            },
        )
        session.execute(stmt)

    def _merge_rows(self, session: Session, entries: list[KVEntry]) -> None:
        for entry in entries:
            existing = session.get(KVRow, entry.key)
            if existing:
                existing.value = entry.value
                existing.indexes = list(entry.indexes)
                existing.updated_at = entry.updated_at
            else:
                session.add(
                    KVRow(
                        key=entry.key,
                        value=entry.value,
                        indexes=list(entry.indexes),
                        created_at=entry.updated_at,
                        updated_at=entry.updated_at,
                    )
                )

    def delete(self, key: str) -> bool:
        with self._backend_errors("delete", key), self.Session() as session:
            result = session.execute(delete(KVRow).where(KVRow.key == key))
            session.commit()
            return (result.rowcount or 0) > 0

    def clear(self, prefix: str) -> int:
        with self._backend_errors("clear"), self.Session() as session:
            result = session.execute(
                delete(KVRow)
                .where(self._prefix_condition(prefix))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0

    def list_entries(self, query: ListQuery) -> ListPage:
        conditions = self._conditions(query.prefix, query.index_filter)
        order = self._key_order(query.descending)
        with self._backend_errors("list"), self.Session() as session:
            count = session.execute(
                select(func.count()).select_from(KVRow).where(*conditions)
            ).scalar_one()
            columns = (KVRow.key, KVRow.value) if query.include_values else (KVRow.key,)
            stmt = select(*columns).where(*conditions).order_by(order)
            if query.offset:
                stmt = stmt.offset(query.offset)
            if query.limit is not None:
                stmt = stmt.limit(query.limit)
            rows = session.execute(stmt).all()

        keys = [row.key for row in rows]
        values = {row.key: row.value for row in rows} if query.include_values else None
        has_more = query.limit is not None and query.offset + query.limit < count
        return ListPage(keys=keys, count=count, has_more=has_more, values=values)

    def count(self, prefix: Optional[str] = None) -> int:
        with self._backend_errors("count"), self.Session() as session:
            return session.execute(
                select(func.count()).select_from(KVRow).where(*self._conditions(prefix))
            ).scalar_one()


Base = declarative_base()

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class KVRow(Base):
    __tablename__ = "kv_store"

    key = Column(String, primary_key=True)
    value = Column(JSONDocument, nullable=False)
    indexes = Column(JSONDocument, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False, index=True)

    __table_args__ = (
        Index(
            "idx_kv_store_indexes",
            "indexes",
            postgresql_using="gin",
        ),
    )
