"""
Dependency wiring for the FastAPI app and scripts.

Each request resolves exactly one KV backend from the ``use_supabase_kv``
flag and receives a ``KVStoreService`` bound to it. Calls never fan out to
both backends.
"""

from __future__ import annotations

import logging

from kvstore.blob_kv import BlobKVBackend
from kvstore.config import Settings, get_settings
from kvstore.db import InMemoryKVBackend, KVBackend, PostgresKVBackend
from kvstore.errors import ConfigurationError
from kvstore.service import KVStoreService
from kvstore.state import InMemoryStateStore, PostgresStateStore, StateStore
from kvstore.storage import InMemoryStorageClient, S3StorageClient

logger = logging.getLogger(__name__)

_relational_backend: KVBackend | None = None
_blob_backend: KVBackend | None = None
_state_store: StateStore | None = None


def get_relational_backend() -> KVBackend:
    """
    Return a singleton relational backend so in-memory state persists across requests.
    """
    global _relational_backend
    if _relational_backend:
        return _relational_backend

    settings = get_settings()
    if settings.kv_use_in_memory_backends:
        _relational_backend = InMemoryKVBackend()
    elif settings.database_url:
        _relational_backend = PostgresKVBackend(settings.database_url)
    else:
        raise ConfigurationError("DATABASE_URL is required for the Supabase KV backend")
    return _relational_backend


def get_blob_backend() -> KVBackend:
    global _blob_backend
    if _blob_backend:
        return _blob_backend

    settings = get_settings()
    if settings.kv_use_in_memory_backends:
        storage = InMemoryStorageClient()
    elif settings.blob_bucket:
        if not (settings.aws_access_key_id and settings.aws_secret_access_key):
            raise ConfigurationError("Blob storage credentials are not configured")
        storage = S3StorageClient(
            bucket=settings.blob_bucket,
            region=settings.blob_region or "",
            endpoint=settings.blob_endpoint or "",
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )
    else:
        raise ConfigurationError("BLOB_BUCKET is required for the blob KV backend")
    _blob_backend = BlobKVBackend(storage, index_prefix=settings.blob_index_prefix)
    return _blob_backend


def select_backend(settings: Settings) -> KVBackend:
    if settings.use_supabase_kv:
        return get_relational_backend()
    return get_blob_backend()


def get_kv_service() -> KVStoreService:
    settings = get_settings()
    return KVStoreService(
        select_backend(settings), reserved_prefix=settings.blob_index_prefix
    )


def get_state_store() -> StateStore:
    global _state_store
    if _state_store:
        return _state_store

    settings = get_settings()
    if settings.kv_use_in_memory_backends:
        _state_store = InMemoryStateStore()
    elif settings.database_url:
        _state_store = PostgresStateStore(settings.database_url)
    else:
        raise ConfigurationError("DATABASE_URL is required for application state")
    return _state_store


def reset_backends() -> None:
    """Drop cached backends so the next call rebuilds them from settings."""
    global _relational_backend, _blob_backend, _state_store
    _relational_backend = None
    _blob_backend = None
    _state_store = None
