"""
Dependency wiring for the FastAPI app.

Settings are read here, once, and handed to the repository, the asset store
and the services as explicit constructor arguments.
"""

from __future__ import annotations

from blogapi.config import get_settings
from blogapi.db import DbClient, InMemoryDbClient, SqlDbClient
from blogapi.images import (
    UploadPolicy,
    generic_image_policy,
    post_image_policy,
    profile_image_policy,
)
from blogapi.services import PostService, UserService
from blogapi.storage import AssetStore, InMemoryAssetStore, S3AssetStore

_db_client: DbClient | None = None
_asset_store: AssetStore | None = None
_post_service: PostService | None = None
_user_service: UserService | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_asset_store() -> AssetStore:
    global _asset_store
    if _asset_store:
        return _asset_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _asset_store = InMemoryAssetStore()
    else:
        _asset_store = S3AssetStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.asset_public_base_url or "",
        )
    return _asset_store


def get_post_service() -> PostService:
    global _post_service
    if _post_service:
        return _post_service
    _post_service = PostService(
        get_db_client(), get_asset_store(), post_image_policy(get_settings())
    )
    return _post_service


def get_user_service() -> UserService:
    global _user_service
    if _user_service:
        return _user_service
    _user_service = UserService(
        get_db_client(), get_asset_store(), profile_image_policy(get_settings())
    )
    return _user_service


def get_generic_upload_policy() -> UploadPolicy:
    return generic_image_policy(get_settings())
