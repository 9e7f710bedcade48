"""
Create, update and delete users and posts together with their hosted images.

The database and the asset store share no transaction, so every mutation is a
short saga: validate, then talk to the asset store, then write the record.
Old images are removed best-effort; a failed removal is logged and never fails
the request. The gaps this leaves are deliberate and visible:

- create: if the record write fails after the upload, the new asset is
  orphaned (logged, not deleted).
- update: the old asset is deleted before the new record is written, so a
  failure between the two leaves the record pointing at a deleted asset.
- user delete: the post cascade and the user removal are separate writes.
- concurrent updates of one id are not serialised; the last write wins.
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from blogapi.access import is_owner
from blogapi.db import DbClient, MediaRef, PostFilter, PostRecord, UserRecord, new_id
from blogapi.errors import Forbidden, NotFound, StoreError, ValidationError
from blogapi.images import (
    ImageUpload,
    UploadPolicy,
    asset_id_from_url,
    new_asset_id,
    validate_upload,
)
from blogapi.security import hash_password
from blogapi.storage import AssetStore, StoredAsset

logger = logging.getLogger(__name__)

E = TypeVar("E", PostRecord, UserRecord)
OwnershipCheck = Callable[[Optional[str], Any], bool]


@dataclass(frozen=True)
class MediaFields:
    """Names of the record attributes that hold an entity's image."""

    url: str
    secure_url: str
    asset_id: str

    def read(self, entity) -> Optional[MediaRef]:
        url = getattr(entity, self.url, None)
        if not url:
            return None
        return MediaRef(
            url=url,
            secure_url=getattr(entity, self.secure_url, None),
            asset_id=getattr(entity, self.asset_id, None),
        )

    def changes_for(self, stored: StoredAsset) -> dict:
        return {
            self.url: stored.url,
            self.secure_url: stored.secure_url,
            self.asset_id: stored.asset_id,
        }


@dataclass
class PostDraft:
    username: str
    title: str
    desc: str = ""
    categories: list[str] = field(default_factory=list)


@dataclass
class UserDraft:
    username: str
    email: str
    password: str


@dataclass(frozen=True)
class Deleted:
    kind: str
    id: str


def upload_image(store: AssetStore, upload: ImageUpload, policy: UploadPolicy) -> StoredAsset:
    """Validate an upload and push it to the asset store."""
    extension = validate_upload(upload, policy)
    return _store_validated(store, upload, policy, extension)


def _store_validated(
    store: AssetStore, upload: ImageUpload, policy: UploadPolicy, extension: str
) -> StoredAsset:
    return store.store(
        upload.data,
        folder=policy.folder,
        asset_id=new_asset_id(policy),
        extension=extension,
        transform=policy.transform,
    )


class MediaLinkedService(ABC, Generic[E]):
    """Shared mutation protocol for entities that may carry one hosted image."""

    kind = "entity"
    media_fields: MediaFields
    mutable_fields: frozenset[str] = frozenset()

    def __init__(
        self,
        db: DbClient,
        store: AssetStore,
        policy: UploadPolicy,
        *,
        ownership_check: OwnershipCheck = is_owner,
    ):
        self.db = db
        self.store = store
        self.policy = policy
        self.ownership_check = ownership_check

    # ------------------------------ hooks ------------------------------
    @abstractmethod
    def _build(self, draft) -> E:
        ...

    @abstractmethod
    def _fetch(self, entity_id: str) -> Optional[E]:
        ...

    @abstractmethod
    def _insert(self, entity: E) -> E:
        ...

    @abstractmethod
    def _apply(self, entity_id: str, changes: dict) -> Optional[E]:
        ...

    @abstractmethod
    def _remove(self, entity_id: str) -> bool:
        ...

    def _before_remove(self, entity: E) -> None:
        pass

    def _present(self, entity: E) -> E:
        return entity

    def _prepare_changes(self, patch: dict) -> dict:
        unknown = set(patch) - self.mutable_fields
        if unknown:
            raise ValidationError(
                f"Cannot update {self.kind} fields: {', '.join(sorted(unknown))}"
            )
        return {name: value for name, value in patch.items() if value is not None}

    # ------------------------------ helpers ------------------------------
    def _require(self, entity_id: str) -> E:
        entity = self._fetch(entity_id)
        if entity is None:
            raise NotFound(f"{self.kind.capitalize()} not found")
        return entity

    def _authorize(self, entity: E, acting_identity: Optional[str], action: str) -> None:
        if not self.ownership_check(acting_identity, entity):
            raise Forbidden(f"You can {action} only your {self.kind}!")

    def _discard_asset(self, entity_id: str, media: MediaRef) -> bool:
        """Best-effort removal of a hosted image. Never raises StoreError."""
        asset_id = media.asset_id
        if not asset_id:
            asset_id = asset_id_from_url(media.url)
            if not asset_id:
                logger.warning(
                    "[%s %s] Cannot derive asset id from %s; leaving asset in place",
                    self.kind,
                    entity_id,
                    media.url,
                )
                return False
            # Recovered ids lose the folder and extension; stores may not resolve them.
            logger.warning(
                "[%s %s] No stored asset id; using %s recovered from %s",
                self.kind,
                entity_id,
                asset_id,
                media.url,
            )
        try:
            self.store.delete(asset_id)
        except StoreError as exc:
            logger.warning(
                "[%s %s] Failed to delete asset %s: %s", self.kind, entity_id, asset_id, exc
            )
            return False
        logger.info("[%s %s] Deleted asset %s", self.kind, entity_id, asset_id)
        return True

    def _write(self, entity_id: str, stored: Optional[StoredAsset], write: Callable[[], E]) -> E:
        try:
            return write()
        except Exception:
            if stored is not None:
                logger.error(
                    "[%s %s] Record write failed after upload; asset %s is orphaned",
                    self.kind,
                    entity_id,
                    stored.asset_id,
                )
            raise

    # ------------------------------ operations ------------------------------
    def get(self, entity_id: str) -> E:
        return self._present(self._require(entity_id))

    def create(self, draft, upload: Optional[ImageUpload] = None) -> E:
        entity = self._build(draft)
        stored = None
        if upload is not None:
            stored = upload_image(self.store, upload, self.policy)
            entity = dataclasses.replace(entity, **self.media_fields.changes_for(stored))
        saved = self._write(entity.id, stored, lambda: self._insert(entity))
        logger.info("[%s %s] Created", self.kind, saved.id)
        return self._present(saved)

    def update(
        self,
        entity_id: str,
        acting_identity: Optional[str],
        patch: dict,
        upload: Optional[ImageUpload] = None,
    ) -> E:
        entity = self._require(entity_id)
        self._authorize(entity, acting_identity, "update")
        changes = self._prepare_changes(patch)

        stored = None
        if upload is not None:
            extension = validate_upload(upload, self.policy)
            old_media = self.media_fields.read(entity)
            if old_media is not None:
                self._discard_asset(entity_id, old_media)
            stored = _store_validated(self.store, upload, self.policy, extension)
            changes.update(self.media_fields.changes_for(stored))

        if not changes:
            return self._present(entity)

        updated = self._write(entity_id, stored, lambda: self._apply(entity_id, changes))
        if updated is None:
            if stored is not None:
                logger.error(
                    "[%s %s] Record vanished before update; asset %s is orphaned",
                    self.kind,
                    entity_id,
                    stored.asset_id,
                )
            raise NotFound(f"{self.kind.capitalize()} not found")
        logger.info("[%s %s] Updated fields: %s", self.kind, entity_id, sorted(changes))
        return self._present(updated)

    def delete(self, entity_id: str, acting_identity: Optional[str]) -> Deleted:
        entity = self._require(entity_id)
        self._authorize(entity, acting_identity, "delete")
        media = self.media_fields.read(entity)
        if media is not None:
            self._discard_asset(entity_id, media)
        self._before_remove(entity)
        if not self._remove(entity_id):
            raise NotFound(f"{self.kind.capitalize()} not found")
        logger.info("[%s %s] Deleted", self.kind, entity_id)
        return Deleted(kind=self.kind, id=entity_id)


class PostService(MediaLinkedService[PostRecord]):
    kind = "post"
    media_fields = MediaFields(url="photo", secure_url="secure_url", asset_id="photo_id")
    mutable_fields = frozenset({"title", "desc", "categories"})

    def _build(self, draft: PostDraft) -> PostRecord:
        return PostRecord(
            id=new_id(),
            username=draft.username,
            title=draft.title,
            desc=draft.desc,
            categories=list(draft.categories or []),
        )

    def _fetch(self, entity_id: str) -> Optional[PostRecord]:
        return self.db.get_post(entity_id)

    def _insert(self, entity: PostRecord) -> PostRecord:
        return self.db.create_post(entity)

    def _apply(self, entity_id: str, changes: dict) -> Optional[PostRecord]:
        return self.db.update_post(entity_id, changes)

    def _remove(self, entity_id: str) -> bool:
        return self.db.delete_post(entity_id)

    def list(self, post_filter: PostFilter | None = None) -> list[PostRecord]:
        """Every post matching the filter. No pagination."""
        return self.db.list_posts(post_filter or PostFilter())


class UserService(MediaLinkedService[UserRecord]):
    kind = "user"
    media_fields = MediaFields(
        url="profile_pic", secure_url="secure_profile_pic", asset_id="profile_pic_id"
    )
    mutable_fields = frozenset({"username", "email", "password"})

    def _build(self, draft: UserDraft) -> UserRecord:
        return UserRecord(
            id=new_id(),
            username=draft.username,
            email=draft.email,
            password_hash=hash_password(draft.password),
        )

    def _prepare_changes(self, patch: dict) -> dict:
        changes = super()._prepare_changes(patch)
        password = changes.pop("password", None)
        if password:
            changes["password_hash"] = hash_password(password)
        return changes

    def _fetch(self, entity_id: str) -> Optional[UserRecord]:
        return self.db.get_user(entity_id)

    def _insert(self, entity: UserRecord) -> UserRecord:
        return self.db.create_user(entity)

    def _apply(self, entity_id: str, changes: dict) -> Optional[UserRecord]:
        return self.db.update_user(entity_id, changes)

    def _remove(self, entity_id: str) -> bool:
        return self.db.delete_user(entity_id)

    def _before_remove(self, entity: UserRecord) -> None:
        # Not atomic with the user removal below; a failure here leaves the user in place.
        removed = self.db.delete_posts(PostFilter(username=entity.username))
        logger.info("[user %s] Removed %d posts by %s", entity.id, removed, entity.username)

    def _present(self, entity: UserRecord) -> UserRecord:
        return dataclasses.replace(entity, password_hash=None)
