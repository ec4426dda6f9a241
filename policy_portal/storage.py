"""
Storage abstraction for the S3-compatible policy documents bucket and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
from botocore.config import Config


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    bucket: str

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        ...

    def remove(self, paths: list[str]) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...


def path_from_public_url(url: str, bucket: str) -> Optional[str]:
    """
    Return the object path that follows the bucket segment of a public URL,
    or None when the bucket does not appear in it.
    """
    parts = url.split("/")
    try:
        index = parts.index(bucket)
    except ValueError:
        return None
    path = "/".join(parts[index + 1 :]).split("?", 1)[0]
    return path or None


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    bucket: str = "policy-documents"
    base_url: str = "https://example.test/storage/v1/object/public"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        if path in self.stored_objects:
            raise FileExistsError(path)
        self.stored_objects[path] = data

    def remove(self, paths: list[str]) -> None:
        for path in paths:
            self.stored_objects.pop(path, None)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{self.bucket}/{path}"


@dataclass
class S3StorageClient:
    """
    Client for the hosted bucket through its S3-compatible endpoint.
    Public URLs are served by the object API of the hosted project.
    """

    bucket: str
    endpoint: str
    region: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str

    def __post_init__(self):
        # The hosted S3 gateway only accepts path-style requests.
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
            CacheControl="max-age=3600",
        )

    def remove(self, paths: list[str]) -> None:
        if not paths:
            return
        self._client.delete_objects(
            Bucket=self.bucket,
            Delete={"Objects": [{"Key": path} for path in paths], "Quiet": True},
        )

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{self.bucket}/{path}"
