"""
Object storage abstraction for S3-compatible blob stores and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol
import json

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


class StorageClient(Protocol):
    """Defines the operations the legacy KV backend needs from object storage."""

    def upload_json(self, path: str, payload: Any) -> None:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...

    def delete(self, path: str) -> None:
        ...

    def list_paths(self, prefix: str = "") -> list[str]:
        ...


def get_json(storage: StorageClient, path: str) -> Any:
    """Read and decode a JSON object; raises FileNotFoundError when absent."""
    raw = storage.get_bytes(path)
    if not raw:
        return None
    return json.loads(raw.decode("utf-8"))


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def upload_json(self, path: str, payload: Any) -> None:
        # Use JSON string to mimic real upload behavior
        self.stored_objects[path] = json.dumps(payload, default=str).encode("utf-8")

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored

    def delete(self, path: str) -> None:
        self.stored_objects.pop(path, None)

    def list_paths(self, prefix: str = "") -> list[str]:
        return sorted(path for path in self.stored_objects if path.startswith(prefix))


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (Netlify/AWS/COS style buckets).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
            retries={"max_attempts": 1, "mode": "standard"},
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def upload_json(self, path: str, payload: Any) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=body,
            ContentType="application/json",
        )

    def get_bytes(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in MISSING_OBJECT_CODES:
                raise FileNotFoundError(path) from exc
            raise
        return response["Body"].read()

    def delete(self, path: str) -> None:
        # S3 deletes are idempotent; a missing key is not reported.
        self._client.delete_object(Bucket=self.bucket, Key=path)

    def list_paths(self, prefix: str = "") -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        paths: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                paths.append(item["Key"])
        return paths
