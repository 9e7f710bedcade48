"""
Asset store abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image

from blogapi.errors import StoreError
from blogapi.images import ImageTransform, apply_transform

_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
}


@dataclass(frozen=True)
class StoredAsset:
    """Result of a successful upload: where the image lives and how to remove it."""

    url: str
    secure_url: str
    asset_id: str


class AssetStore(Protocol):
    """Defines the operations the services need from the media host."""

    def store(
        self,
        data: bytes,
        *,
        folder: str,
        asset_id: str,
        extension: str,
        transform: Optional[ImageTransform] = None,
    ) -> StoredAsset:
        ...

    def delete(self, asset_id: str) -> None:
        ...


@dataclass
class InMemoryAssetStore:
    """Test double for asset store interactions."""

    base_url: str = "http://assets.example.test"
    objects: dict = field(default_factory=dict)
    transforms: dict = field(default_factory=dict)
    deleted: list = field(default_factory=list)

    def store(
        self,
        data: bytes,
        *,
        folder: str,
        asset_id: str,
        extension: str,
        transform: Optional[ImageTransform] = None,
    ) -> StoredAsset:
        self.objects[asset_id] = data
        self.transforms[asset_id] = transform
        url = f"{self.base_url}/{asset_id}.{extension}"
        return StoredAsset(
            url=url,
            secure_url=url.replace("http://", "https://", 1),
            asset_id=asset_id,
        )

    def delete(self, asset_id: str) -> None:
        if asset_id not in self.objects:
            raise StoreError(f"Asset not found: {asset_id}")
        del self.objects[asset_id]
        self.deleted.append(asset_id)


@dataclass
class S3AssetStore:
    """
    S3-compatible asset store. Transforms are applied locally before upload.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def _object_key(self, asset_id: str, extension: str) -> str:
        return f"{asset_id}.{extension}"

    def _public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def store(
        self,
        data: bytes,
        *,
        folder: str,
        asset_id: str,
        extension: str,
        transform: Optional[ImageTransform] = None,
    ) -> StoredAsset:
        key = self._object_key(asset_id, extension)
        try:
            body = apply_transform(data, transform)
        except (Image.DecompressionBombError, OSError, ValueError) as exc:
            raise StoreError(f"Could not transform {key}: {exc}") from exc
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=_CONTENT_TYPES.get(extension, "application/octet-stream"),
                Metadata={"folder": folder},
            )
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"Upload of {key} failed: {exc}") from exc
        url = self._public_url(key)
        secure_url = url.replace("http://", "https://", 1)
        # Asset id is the full object key, extension included.
        return StoredAsset(url=url, secure_url=secure_url, asset_id=key)

    def delete(self, asset_id: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=asset_id)
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"Delete of {asset_id} failed: {exc}") from exc
