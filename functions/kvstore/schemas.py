"""
Pydantic schemas for the KV HTTP API.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class IndexDeclaration(BaseModel):
    key: Optional[str] = None
    member: Optional[str] = None


class KVUpsertRequest(BaseModel):
    key: Optional[str] = None
    value: Any = None
    indexes: Optional[list[IndexDeclaration]] = None


class KVUpsertResponse(BaseModel):
    ok: Literal[True] = True
    key: str
    timestamp: str


class KVGetResponse(BaseModel):
    key: str
    value: Any


class Pagination(BaseModel):
    hasMore: bool
    limit: Optional[int] = None
    offset: int = 0


class KVListResponse(BaseModel):
    keys: list[str]
    count: int
    pagination: Pagination
    data: Optional[dict[str, Any]] = None


class KVGetManyRequest(BaseModel):
    keys: list[str] = Field(..., max_length=1000)


class KVGetManyResponse(BaseModel):
    data: dict[str, Any]


class OkResponse(BaseModel):
    ok: Literal[True] = True


class KVClearResponse(BaseModel):
    ok: Literal[True] = True
    deleted: int


class StateContext(BaseModel):
    organizationId: Optional[str] = None
    teamId: Optional[str] = None
    userSessionId: Optional[str] = None


class StateSetRequest(BaseModel):
    key: str = Field(..., min_length=1)
    value: Any
    context: StateContext = Field(default_factory=StateContext)
    type: str = "session"
    ttl: Optional[float] = None


class StateSetResponse(BaseModel):
    ok: Literal[True] = True
    key: str
    type: str
    expires_at: Optional[str] = None


class StateGetResponse(BaseModel):
    key: str
    value: Any


class StateListResponse(BaseModel):
    keys: list[str]
    count: int


class StateClearRequest(BaseModel):
    context: StateContext = Field(default_factory=StateContext)
    type: Optional[str] = None


class StateClearResponse(BaseModel):
    ok: Literal[True] = True
    cleared_count: int
    type: str


class HealthResponse(BaseModel):
    ok: bool
    backend: str
