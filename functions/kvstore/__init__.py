"""
Key-value storage package for the hunt backend.

This package provides a FastAPI application over a generic KV store with
two interchangeable backends (legacy blob storage and Postgres/Supabase)
plus the tooling to migrate entries from one to the other.
"""
