"""
Entity repository for users and posts: SQL and an in-memory test implementation.
"""

from __future__ import annotations

import dataclasses
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from sqlalchemy import JSON, Column, Float, String, Text, create_engine, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from blogapi.errors import ConflictError


@dataclass(frozen=True)
class MediaRef:
    """An entity's attached image. Derived from the entity's fields, never stored on its own."""

    url: str
    secure_url: Optional[str] = None
    asset_id: Optional[str] = None


@dataclass
class UserRecord:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    profile_pic: Optional[str] = None
    secure_profile_pic: Optional[str] = None
    profile_pic_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @property
    def owner_key(self) -> str:
        return self.id

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "profile_pic": self.profile_pic,
            "secure_profile_pic": self.secure_profile_pic,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PostRecord:
    id: str
    username: str
    title: str
    desc: str
    photo: Optional[str] = None
    secure_url: Optional[str] = None
    photo_id: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @property
    def owner_key(self) -> str:
        return self.username

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "title": self.title,
            "desc": self.desc,
            "photo": self.photo,
            "secure_url": self.secure_url,
            "categories": list(self.categories),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class PostFilter:
    """Exact-match author filter and/or category-membership filter."""

    username: Optional[str] = None
    category: Optional[str] = None

    def matches(self, post: PostRecord) -> bool:
        if self.username is not None and post.username != self.username:
            return False
        if self.category is not None and self.category not in (post.categories or []):
            return False
        return True


USER_MUTABLE_FIELDS = frozenset(
    {"username", "email", "password_hash", "profile_pic", "secure_profile_pic", "profile_pic_id"}
)
POST_MUTABLE_FIELDS = frozenset(
    {"title", "desc", "photo", "secure_url", "photo_id", "categories"}
)


def new_id() -> str:
    return uuid.uuid4().hex


def _check_changes(changes: dict, allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


class DbClient(Protocol):
    """Interface for entity persistence."""

    def create_user(self, user: UserRecord) -> UserRecord:
        ...

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    def update_user(self, user_id: str, changes: dict) -> Optional[UserRecord]:
        ...

    def delete_user(self, user_id: str) -> bool:
        ...

    def create_post(self, post: PostRecord) -> PostRecord:
        ...

    def get_post(self, post_id: str) -> Optional[PostRecord]:
        ...

    def update_post(self, post_id: str, changes: dict) -> Optional[PostRecord]:
        ...

    def delete_post(self, post_id: str) -> bool:
        ...

    def list_posts(self, post_filter: PostFilter | None = None) -> list[PostRecord]:
        ...

    def delete_posts(self, post_filter: PostFilter) -> int:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.posts: Dict[str, PostRecord] = {}

    def _ensure_unique_user(self, candidate: UserRecord) -> None:
        for existing in self.users.values():
            if existing.id == candidate.id:
                continue
            if existing.username == candidate.username:
                raise ConflictError(f"Username already taken: {candidate.username}")
            if existing.email == candidate.email:
                raise ConflictError(f"Email already registered: {candidate.email}")

    def create_user(self, user: UserRecord) -> UserRecord:
        self._ensure_unique_user(user)
        self.users[user.id] = dataclasses.replace(user)
        return dataclasses.replace(user)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        return dataclasses.replace(user) if user else None

    def update_user(self, user_id: str, changes: dict) -> Optional[UserRecord]:
        _check_changes(changes, USER_MUTABLE_FIELDS)
        user = self.users.get(user_id)
        if not user:
            return None
        updated = dataclasses.replace(user, **changes, updated_at=time.time())
        self._ensure_unique_user(updated)
        self.users[user_id] = updated
        return dataclasses.replace(updated)

    def delete_user(self, user_id: str) -> bool:
        return self.users.pop(user_id, None) is not None

    def create_post(self, post: PostRecord) -> PostRecord:
        self.posts[post.id] = dataclasses.replace(post, categories=list(post.categories))
        return dataclasses.replace(post)

    def get_post(self, post_id: str) -> Optional[PostRecord]:
        post = self.posts.get(post_id)
        return dataclasses.replace(post, categories=list(post.categories)) if post else None

    def update_post(self, post_id: str, changes: dict) -> Optional[PostRecord]:
        _check_changes(changes, POST_MUTABLE_FIELDS)
        post = self.posts.get(post_id)
        if not post:
            return None
        updated = dataclasses.replace(post, **changes, updated_at=time.time())
        self.posts[post_id] = updated
        return dataclasses.replace(updated, categories=list(updated.categories))

    def delete_post(self, post_id: str) -> bool:
        return self.posts.pop(post_id, None) is not None

    def list_posts(self, post_filter: PostFilter | None = None) -> list[PostRecord]:
        post_filter = post_filter or PostFilter()
        return [
            dataclasses.replace(post, categories=list(post.categories))
            for post in self.posts.values()
            if post_filter.matches(post)
        ]

    def delete_posts(self, post_filter: PostFilter) -> int:
        doomed = [pid for pid, post in self.posts.items() if post_filter.matches(post)]
        for post_id in doomed:
            del self.posts[post_id]
        return len(doomed)


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        engine_kwargs = {"future": True, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # -------------------------- users --------------------------
    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            username=row.username,
            email=row.email,
            password_hash=row.password_hash,
            profile_pic=row.profile_pic,
            secure_profile_pic=row.secure_profile_pic,
            profile_pic_id=row.profile_pic_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def create_user(self, user: UserRecord) -> UserRecord:
        with self.Session() as session:
            row = UserRow(
                id=user.id,
                username=user.username,
                email=user.email,
                password_hash=user.password_hash,
                profile_pic=user.profile_pic,
                secure_profile_pic=user.secure_profile_pic,
                profile_pic_id=user.profile_pic_id,
                created_at=user.created_at,
                updated_at=user.updated_at,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Username or email already registered") from exc
            session.refresh(row)
            return self._to_user_record(row)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def update_user(self, user_id: str, changes: dict) -> Optional[UserRecord]:
        _check_changes(changes, USER_MUTABLE_FIELDS)
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                return None
            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = time.time()
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Username or email already registered") from exc
            session.refresh(row)
            return self._to_user_record(row)

    def delete_user(self, user_id: str) -> bool:
        with self.Session() as session:
            result = session.execute(delete(UserRow).where(UserRow.id == user_id))
            session.commit()
            return bool(result.rowcount)

    # -------------------------- posts --------------------------
    def _to_post_record(self, row: "PostRow") -> PostRecord:
        return PostRecord(
            id=row.id,
            username=row.username,
            title=row.title,
            desc=row.desc,
            photo=row.photo,
            secure_url=row.secure_url,
            photo_id=row.photo_id,
            categories=list(row.categories or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def create_post(self, post: PostRecord) -> PostRecord:
        with self.Session() as session:
            row = PostRow(
                id=post.id,
                username=post.username,
                title=post.title,
                desc=post.desc,
                photo=post.photo,
                secure_url=post.secure_url,
                photo_id=post.photo_id,
                categories=list(post.categories),
                created_at=post.created_at,
                updated_at=post.updated_at,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_post_record(row)

    def get_post(self, post_id: str) -> Optional[PostRecord]:
        with self.Session() as session:
            row = session.get(PostRow, post_id)
            return self._to_post_record(row) if row else None

    def update_post(self, post_id: str, changes: dict) -> Optional[PostRecord]:
        _check_changes(changes, POST_MUTABLE_FIELDS)
        with self.Session() as session:
            row = session.get(PostRow, post_id)
            if not row:
                return None
            for name, value in changes.items():
                if name == "categories":
                    value = list(value or [])
                setattr(row, name, value)
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_post_record(row)

    def delete_post(self, post_id: str) -> bool:
        with self.Session() as session:
            result = session.execute(delete(PostRow).where(PostRow.id == post_id))
            session.commit()
            return bool(result.rowcount)

    def list_posts(self, post_filter: PostFilter | None = None) -> list[PostRecord]:
        post_filter = post_filter or PostFilter()
        stmt = select(PostRow).order_by(PostRow.created_at.asc())
        if post_filter.username is not None:
            stmt = stmt.where(PostRow.username == post_filter.username)
        with self.Session() as session:
            rows = session.execute(stmt).scalars().all()
            # Category membership is checked in Python; JSON containment is dialect-specific.
            return [
                record
                for record in (self._to_post_record(row) for row in rows)
                if post_filter.matches(record)
            ]

    def delete_posts(self, post_filter: PostFilter) -> int:
        if post_filter.category is None:
            stmt = delete(PostRow)
            if post_filter.username is not None:
                stmt = stmt.where(PostRow.username == post_filter.username)
            with self.Session() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount or 0
        doomed = [post.id for post in self.list_posts(post_filter)]
        if not doomed:
            return 0
        with self.Session() as session:
            result = session.execute(delete(PostRow).where(PostRow.id.in_(doomed)))
            session.commit()
            return result.rowcount or 0


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=True)
    profile_pic = Column(String, nullable=True)
    secure_profile_pic = Column(String, nullable=True)
    profile_pic_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PostRow(Base):
    __tablename__ = "posts"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    desc = Column(Text, nullable=False, default="")
    photo = Column(String, nullable=True)
    secure_url = Column(String, nullable=True)
    photo_id = Column(String, nullable=True)
    categories = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
