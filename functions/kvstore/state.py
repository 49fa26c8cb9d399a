"""
Application state store: scoped KV entries with optional expiry.

Unlike base KV entries, state rows carry an organization/team/session scope,
a state type and an optional ``expires_at``. Expired rows read as missing and
are removed by ``cleanup_expired``.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Protocol

from sqlalchemy import Column, Float, String, create_engine, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from kvstore.db import Base, JSONDocument
from kvstore.errors import BackendUnavailableError, ValidationError

logger = logging.getLogger(__name__)

STATE_TYPES = ("session", "persistent", "cache")


@dataclass(frozen=True)
class StateScope:
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    user_session_id: Optional[str] = None

    def state_id(self, state_key: str) -> str:
        # Unset parts encode as null so they never alias a literal value.
        return json.dumps(
            [self.organization_id, self.team_id, self.user_session_id, state_key],
            separators=(",", ":"),
        )

    def covers(self, record: "StateRecord") -> bool:
        """Unset scope fields act as wildcards for list/clear."""
        return (
            (self.organization_id is None or record.organization_id == self.organization_id)
            and (self.team_id is None or record.team_id == self.team_id)
            and (self.user_session_id is None or record.user_session_id == self.user_session_id)
        )


@dataclass
class StateRecord:
    state_key: str
    state_value: Any
    state_type: str = "session"
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    user_session_id: Optional[str] = None
    expires_at: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now if now is not None else time.time())


class StateStore(Protocol):
    def get(self, state_key: str, scope: StateScope) -> Optional[Any]:
        ...

    def set(
        self,
        state_key: str,
        state_value: Any,
        scope: StateScope,
        *,
        state_type: str = "session",
        ttl_seconds: Optional[float] = None,
    ) -> StateRecord:
        ...

    def delete(self, state_key: str, scope: StateScope) -> bool:
        ...

    def list_keys(self, scope: StateScope, state_type: Optional[str] = None) -> list[str]:
        ...

    def clear(self, scope: StateScope, state_type: Optional[str] = None) -> int:
        ...

    def cleanup_expired(self) -> int:
        ...


def build_record(
    state_key: str,
    state_value: Any,
    scope: StateScope,
    state_type: str,
    ttl_seconds: Optional[float],
) -> StateRecord:
    if not state_key:
        raise ValidationError("key is required")
    if state_type not in STATE_TYPES:
        raise ValidationError(f"type must be one of {', '.join(STATE_TYPES)}")
    if ttl_seconds is not None and ttl_seconds <= 0:
        raise ValidationError("ttl must be a positive number of seconds")
    now = time.time()
    return StateRecord(
        state_key=state_key,
        state_value=state_value,
        state_type=state_type,
        organization_id=scope.organization_id,
        team_id=scope.team_id,
        user_session_id=scope.user_session_id,
        expires_at=now + ttl_seconds if ttl_seconds else None,
        created_at=now,
        updated_at=now,
    )


class InMemoryStateStore:
    """Simple in-memory state store for development and tests."""

    def __init__(self):
        self.records: Dict[str, StateRecord] = {}

    def reset(self) -> None:
        self.records.clear()

    def get(self, state_key: str, scope: StateScope) -> Optional[Any]:
        state_id = scope.state_id(state_key)
        record = self.records.get(state_id)
        if record is None:
            return None
        if record.is_expired():
            del self.records[state_id]
            return None
        return record.state_value

    def set(
        self,
        state_key: str,
        state_value: Any,
        scope: StateScope,
        *,
        state_type: str = "session",
        ttl_seconds: Optional[float] = None,
    ) -> StateRecord:
        record = build_record(state_key, state_value, scope, state_type, ttl_seconds)
        existing = self.records.get(scope.state_id(state_key))
        if existing:
            record.created_at = existing.created_at
        self.records[scope.state_id(state_key)] = record
        return record

    def delete(self, state_key: str, scope: StateScope) -> bool:
        return self.records.pop(scope.state_id(state_key), None) is not None

    def _matching(self, scope: StateScope, state_type: Optional[str]) -> list[str]:
        return [
            state_id
            for state_id, record in self.records.items()
            if scope.covers(record) and (state_type is None or record.state_type == state_type)
        ]

    def list_keys(self, scope: StateScope, state_type: Optional[str] = None) -> list[str]:
        now = time.time()
        return sorted(
            self.records[state_id].state_key
            for state_id in self._matching(scope, state_type)
            if not self.records[state_id].is_expired(now)
        )

    def clear(self, scope: StateScope, state_type: Optional[str] = None) -> int:
        doomed = self._matching(scope, state_type)
        for state_id in doomed:
            del self.records[state_id]
        return len(doomed)

    def cleanup_expired(self) -> int:
        now = time.time()
        doomed = [sid for sid, record in self.records.items() if record.is_expired(now)]
        for state_id in doomed:
            del self.records[state_id]
        return len(doomed)


class PostgresStateStore:
    """SQLAlchemy-backed state store sharing the KV database."""

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresStateStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine, tables=[StateRow.__table__])

    @contextmanager
    def _backend_errors(self, operation: str, key: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("State %s failed for key=%s: %s", operation, key, exc)
            raise BackendUnavailableError(f"state {operation}", key, str(exc)) from exc

    @staticmethod
    def _scope_conditions(scope: StateScope, state_type: Optional[str]) -> list:
        conditions = []
        if scope.organization_id is not None:
            conditions.append(StateRow.organization_id == scope.organization_id)
        if scope.team_id is not None:
            conditions.append(StateRow.team_id == scope.team_id)
        if scope.user_session_id is not None:
            conditions.append(StateRow.user_session_id == scope.user_session_id)
        if state_type is not None:
            conditions.append(StateRow.state_type == state_type)
        return conditions

    def get(self, state_key: str, scope: StateScope) -> Optional[Any]:
        with self._backend_errors("get", state_key), self.Session() as session:
            row = session.get(StateRow, scope.state_id(state_key))
            if not row:
                return None
            if row.expires_at is not None and row.expires_at < time.time():
                session.delete(row)
                session.commit()
                return None
            return row.state_value

    def set(
        self,
        state_key: str,
        state_value: Any,
        scope: StateScope,
        *,
        state_type: str = "session",
        ttl_seconds: Optional[float] = None,
    ) -> StateRecord:
        record = build_record(state_key, state_value, scope, state_type, ttl_seconds)
        with self._backend_errors("set", state_key), self.Session() as session:
            row = session.get(StateRow, scope.state_id(state_key))
            if row:
                row.state_value = record.state_value
                row.state_type = record.state_type
                row.expires_at = record.expires_at
                row.updated_at = record.updated_at
                record.created_at = row.created_at
            else:
                session.add(
                    StateRow(
                        id=scope.state_id(state_key),
                        state_key=record.state_key,
                        state_value=record.state_value,
                        state_type=record.state_type,
                        organization_id=record.organization_id,
                        team_id=record.team_id,
                        user_session_id=record.user_session_id,
                        expires_at=record.expires_at,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                )
            session.commit()
        return record

    def delete(self, state_key: str, scope: StateScope) -> bool:
        with self._backend_errors("delete", state_key), self.Session() as session:
            result = session.execute(
                delete(StateRow).where(StateRow.id == scope.state_id(state_key))
            )
            session.commit()
            return (result.rowcount or 0) > 0

    def list_keys(self, scope: StateScope, state_type: Optional[str] = None) -> list[str]:
        with self._backend_errors("list"), self.Session() as session:
            stmt = (
                select(StateRow.state_key)
                .where(*self._scope_conditions(scope, state_type))
                .where(or_(StateRow.expires_at.is_(None), StateRow.expires_at > time.time()))
                .order_by(StateRow.state_key.asc())
            )
            return list(session.execute(stmt).scalars().all())

    def clear(self, scope: StateScope, state_type: Optional[str] = None) -> int:
        with self._backend_errors("clear"), self.Session() as session:
            result = session.execute(
                delete(StateRow)
                .where(*self._scope_conditions(scope, state_type))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0

    def cleanup_expired(self) -> int:
        with self._backend_errors("cleanup"), self.Session() as session:
            result = session.execute(
                delete(StateRow)
                .where(StateRow.expires_at.is_not(None), StateRow.expires_at < time.time())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            deleted = result.rowcount or 0
        logger.info("Removed %d expired state rows", deleted)
        return deleted


class StateRow(Base):
    __tablename__ = "application_state"

    id = Column(String, primary_key=True)
    state_key = Column(String, nullable=False, index=True)
    state_value = Column(JSONDocument, nullable=False)
    state_type = Column(String, nullable=False, default="session", index=True)
    organization_id = Column(String, nullable=True, index=True)
    team_id = Column(String, nullable=True, index=True)
    user_session_id = Column(String, nullable=True, index=True)
    expires_at = Column(Float, nullable=True, index=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
