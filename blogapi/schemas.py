"""
Pydantic schemas for the blog API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel


class UserResponse(BaseModel):
    """Public view of a user. The password hash is never part of it."""

    id: str
    username: str
    email: str
    profile_pic: Optional[str] = None
    secure_profile_pic: Optional[str] = None
    created_at: float
    updated_at: float


class PostResponse(BaseModel):
    id: str
    username: str
    title: str
    desc: str
    photo: Optional[str] = None
    secure_url: Optional[str] = None
    categories: list[str] = []
    created_at: float
    updated_at: float


class DeletedResponse(BaseModel):
    status: Literal["deleted"]
    kind: str
    id: str


class UploadResponse(BaseModel):
    message: str
    url: str
    secure_url: str


class ErrorResponse(BaseModel):
    error: str
    detail: str
    timestamp: str


class HealthResponse(BaseModel):
    status: Literal["ok"]
