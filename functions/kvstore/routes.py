"""
HTTP routes for the KV and application state API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from kvstore.dependencies import get_kv_service, get_state_store
from kvstore.errors import NotFoundError
from kvstore.schemas import (
    HealthResponse,
    KVClearResponse,
    KVGetManyRequest,
    KVGetManyResponse,
    KVGetResponse,
    KVListResponse,
    KVUpsertRequest,
    KVUpsertResponse,
    OkResponse,
    Pagination,
    StateClearRequest,
    StateClearResponse,
    StateContext,
    StateGetResponse,
    StateListResponse,
    StateSetRequest,
    StateSetResponse,
)
from kvstore.service import KVStoreService
from kvstore.state import StateScope, StateStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _scope(context: StateContext) -> StateScope:
    return StateScope(
        organization_id=context.organizationId or None,
        team_id=context.teamId or None,
        user_session_id=context.userSessionId or None,
    )


def _scope_from_query(
    organizationId: Optional[str] = Query(None),
    teamId: Optional[str] = Query(None),
    userSessionId: Optional[str] = Query(None),
) -> StateScope:
    return _scope(
        StateContext(
            organizationId=organizationId, teamId=teamId, userSessionId=userSessionId
        )
    )


@router.get("/health", response_model=HealthResponse)
def health(kv: KVStoreService = Depends(get_kv_service)):
    return HealthResponse(ok=True, backend=kv.backend_name)


@router.get("/kv-get", response_model=KVGetResponse)
def kv_get(
    key: Optional[str] = Query(None),
    kv: KVStoreService = Depends(get_kv_service),
):
    value = kv.get(key)
    return KVGetResponse(key=key, value=value)


@router.post("/kv-upsert", response_model=KVUpsertResponse)
def kv_upsert(payload: KVUpsertRequest, kv: KVStoreService = Depends(get_kv_service)):
    entry = kv.set(payload.key, payload.value, payload.indexes)
    return KVUpsertResponse(key=entry.key, timestamp=_isoformat(entry.updated_at))


@router.get(
    "/kv-list", response_model=KVListResponse, response_model_exclude_none=True
)
def kv_list(
    prefix: Optional[str] = Query(None),
    index: Optional[str] = Query(None, description="Exact 'indexKey:member' tag"),
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    sort_order: str = Query("asc", alias="sortOrder"),
    include_values: bool = Query(False, alias="includeValues"),
    kv: KVStoreService = Depends(get_kv_service),
):
    page = kv.list(
        prefix=prefix,
        index_filter=index,
        limit=limit,
        offset=offset,
        sort_order=sort_order,
        include_values=include_values,
    )
    return KVListResponse(
        keys=page.keys,
        count=page.count,
        pagination=Pagination(hasMore=page.has_more, limit=limit, offset=offset),
        data=page.values if include_values else None,
    )


@router.delete("/kv-delete", response_model=OkResponse)
def kv_delete(
    key: Optional[str] = Query(None),
    kv: KVStoreService = Depends(get_kv_service),
):
    kv.delete(key)
    return OkResponse()


@router.post("/kv-get-many", response_model=KVGetManyResponse)
def kv_get_many(payload: KVGetManyRequest, kv: KVStoreService = Depends(get_kv_service)):
    return KVGetManyResponse(data=kv.get_many(payload.keys))


@router.delete("/kv-clear", response_model=KVClearResponse)
def kv_clear(
    prefix: Optional[str] = Query(None),
    kv: KVStoreService = Depends(get_kv_service),
):
    return KVClearResponse(deleted=kv.clear(prefix))


@router.get("/state-get", response_model=StateGetResponse)
def state_get(
    key: str = Query(..., min_length=1),
    scope: StateScope = Depends(_scope_from_query),
    store: StateStore = Depends(get_state_store),
):
    value = store.get(key, scope)
    if value is None:
        raise NotFoundError(key)
    return StateGetResponse(key=key, value=value)


@router.post("/state-set", response_model=StateSetResponse)
def state_set(payload: StateSetRequest, store: StateStore = Depends(get_state_store)):
    record = store.set(
        payload.key,
        payload.value,
        _scope(payload.context),
        state_type=payload.type,
        ttl_seconds=payload.ttl,
    )
    return StateSetResponse(
        key=record.state_key,
        type=record.state_type,
        expires_at=_isoformat(record.expires_at) if record.expires_at else None,
    )


@router.delete("/state-delete", response_model=OkResponse)
def state_delete(
    key: str = Query(..., min_length=1),
    scope: StateScope = Depends(_scope_from_query),
    store: StateStore = Depends(get_state_store),
):
    store.delete(key, scope)
    return OkResponse()


@router.get("/state-list", response_model=StateListResponse)
def state_list(
    state_type: Optional[str] = Query(None, alias="type"),
    scope: StateScope = Depends(_scope_from_query),
    store: StateStore = Depends(get_state_store),
):
    keys = store.list_keys(scope, state_type)
    return StateListResponse(keys=keys, count=len(keys))


@router.post("/state-clear", response_model=StateClearResponse)
def state_clear(payload: StateClearRequest, store: StateStore = Depends(get_state_store)):
    cleared = store.clear(_scope(payload.context), payload.type)
    logger.warning("Cleared %d state entries (type=%s)", cleared, payload.type or "all")
    return StateClearResponse(cleared_count=cleared, type=payload.type or "all")
