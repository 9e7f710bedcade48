"""
HTTP routes for the blog API.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from starlette.concurrency import run_in_threadpool

from blogapi.db import PostFilter, PostRecord, UserRecord
from blogapi.dependencies import (
    get_asset_store,
    get_generic_upload_policy,
    get_post_service,
    get_user_service,
)
from blogapi.errors import ValidationError
from blogapi.images import ImageUpload, UploadPolicy
from blogapi.schemas import (
    DeletedResponse,
    HealthResponse,
    PostResponse,
    UploadResponse,
    UserResponse,
)
from blogapi.services import PostDraft, PostService, UserDraft, UserService, upload_image
from blogapi.storage import AssetStore

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_upload(file: Optional[UploadFile]) -> Optional[ImageUpload]:
    """Buffer a multipart file; an absent or nameless part means no file."""
    if file is None or not file.filename:
        return None
    data = await file.read()
    return ImageUpload(
        filename=file.filename,
        content_type=file.content_type or "",
        data=data,
    )


def _post_response(post: PostRecord) -> PostResponse:
    return PostResponse(**post.as_dict())


def _user_response(user: UserRecord) -> UserResponse:
    return UserResponse(**user.as_dict())


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


@router.post("/upload", response_model=UploadResponse)
async def upload(
    file: Optional[UploadFile] = File(None),
    store: AssetStore = Depends(get_asset_store),
    policy: UploadPolicy = Depends(get_generic_upload_policy),
):
    image = await _read_upload(file)
    if image is None:
        raise ValidationError("No file uploaded")
    stored = await run_in_threadpool(upload_image, store, image, policy)
    logger.info("Uploaded %s as %s", image.filename, stored.asset_id)
    return UploadResponse(
        message="File uploaded successfully",
        url=stored.url,
        secure_url=stored.secure_url,
    )


# ------------------------------------ posts ------------------------------------
@router.post("/posts", response_model=PostResponse)
async def create_post(
    username: str = Form(...),
    title: str = Form(...),
    desc: str = Form(""),
    categories: Optional[list[str]] = Form(None),
    file: Optional[UploadFile] = File(None),
    service: PostService = Depends(get_post_service),
):
    draft = PostDraft(
        username=username, title=title, desc=desc, categories=categories or []
    )
    image = await _read_upload(file)
    post = await run_in_threadpool(service.create, draft, image)
    return _post_response(post)


@router.get("/posts", response_model=list[PostResponse])
def list_posts(
    user: Optional[str] = Query(None, description="Exact author username"),
    cat: Optional[str] = Query(None, description="Category the post must carry"),
    service: PostService = Depends(get_post_service),
):
    # Author filter wins when both are supplied.
    if user:
        post_filter = PostFilter(username=user)
    elif cat:
        post_filter = PostFilter(category=cat)
    else:
        post_filter = PostFilter()
    return [_post_response(post) for post in service.list(post_filter)]


@router.get("/posts/{post_id}", response_model=PostResponse)
def get_post(post_id: str, service: PostService = Depends(get_post_service)):
    return _post_response(service.get(post_id))


@router.put("/posts/{post_id}", response_model=PostResponse)
async def update_post(
    post_id: str,
    username: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    desc: Optional[str] = Form(None),
    categories: Optional[list[str]] = Form(None),
    file: Optional[UploadFile] = File(None),
    service: PostService = Depends(get_post_service),
):
    patch = {"title": title, "desc": desc, "categories": categories}
    image = await _read_upload(file)
    post = await run_in_threadpool(service.update, post_id, username, patch, image)
    return _post_response(post)


@router.delete("/posts/{post_id}", response_model=DeletedResponse)
def delete_post(
    post_id: str,
    username: Optional[str] = Query(None),
    service: PostService = Depends(get_post_service),
):
    deleted = service.delete(post_id, username)
    return DeletedResponse(status="deleted", kind=deleted.kind, id=deleted.id)


# ------------------------------------ users ------------------------------------
@router.post("/users", response_model=UserResponse)
async def create_user(
    username: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    profilePic: Optional[UploadFile] = File(None),
    service: UserService = Depends(get_user_service),
):
    draft = UserDraft(username=username, email=email, password=password)
    image = await _read_upload(profilePic)
    user = await run_in_threadpool(service.create, draft, image)
    return _user_response(user)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(user_id: str, service: UserService = Depends(get_user_service)):
    return _user_response(service.get(user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    userId: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    profilePic: Optional[UploadFile] = File(None),
    service: UserService = Depends(get_user_service),
):
    patch = {"username": username, "email": email, "password": password}
    image = await _read_upload(profilePic)
    user = await run_in_threadpool(service.update, user_id, userId, patch, image)
    return _user_response(user)


@router.delete("/users/{user_id}", response_model=DeletedResponse)
def delete_user(
    user_id: str,
    userId: Optional[str] = Query(None),
    service: UserService = Depends(get_user_service),
):
    deleted = service.delete(user_id, userId)
    return DeletedResponse(status="deleted", kind=deleted.kind, id=deleted.id)
