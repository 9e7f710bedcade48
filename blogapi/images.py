"""
Image upload policies, validation and transforms.
"""

from __future__ import annotations

import io
import os
import random
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from PIL import Image, ImageOps, UnidentifiedImageError

from blogapi.config import Settings
from blogapi.errors import ValidationError

# Pillow reports "JPEG" for both .jpg and .jpeg files.
_PIL_FORMAT_TO_EXTENSIONS = {
    "JPEG": {"jpg", "jpeg"},
    "PNG": {"png"},
    "GIF": {"gif"},
}


@dataclass(frozen=True)
class ImageTransform:
    """
    Resize instruction applied by the asset store.

    `limit` shrinks the image to fit within width x height, keeping the aspect
    ratio and never upscaling. `fill` crops around the centre and resizes to
    exactly width x height.
    """

    width: int
    height: int
    crop: str = "limit"

    def as_dict(self) -> dict:
        return {"width": self.width, "height": self.height, "crop": self.crop}


@dataclass(frozen=True)
class UploadPolicy:
    folder: str
    allowed_formats: frozenset[str]
    max_bytes: int
    transform: Optional[ImageTransform] = None
    id_prefix: str = "image"


@dataclass
class ImageUpload:
    """A file received from a client, fully buffered in memory."""

    filename: str
    content_type: str
    data: bytes

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename or "")[1].lstrip(".").lower()


def post_image_policy(settings: Settings) -> UploadPolicy:
    return UploadPolicy(
        folder="blog_images",
        allowed_formats=frozenset({"jpg", "jpeg", "png", "gif"}),
        max_bytes=settings.post_image_max_bytes,
        transform=ImageTransform(width=1000, height=1000, crop="limit"),
        id_prefix="blog_image",
    )


def profile_image_policy(settings: Settings) -> UploadPolicy:
    return UploadPolicy(
        folder="profile_photos",
        allowed_formats=frozenset({"jpg", "jpeg", "png"}),
        max_bytes=settings.profile_image_max_bytes,
        transform=ImageTransform(width=500, height=500, crop="fill"),
        id_prefix="profile",
    )


def generic_image_policy(settings: Settings) -> UploadPolicy:
    return UploadPolicy(
        folder="blog_images",
        allowed_formats=frozenset({"jpg", "jpeg", "png", "gif"}),
        max_bytes=settings.generic_image_max_bytes,
        transform=ImageTransform(width=1000, height=1000, crop="limit"),
        id_prefix="upload",
    )


def validate_upload(upload: ImageUpload, policy: UploadPolicy) -> str:
    """
    Check an upload against a policy before it reaches the asset store.

    Returns the file extension to use for the stored object.
    Raises ValidationError for non-images, disallowed formats, oversized files
    and images that cannot be fully decoded.
    """
    if not (upload.content_type or "").lower().startswith("image/"):
        raise ValidationError("Only image files are allowed!")
    extension = upload.extension
    if extension not in policy.allowed_formats:
        allowed = ", ".join(sorted(policy.allowed_formats))
        raise ValidationError(f"Unsupported image format '{extension}'. Allowed: {allowed}")
    if not upload.data:
        raise ValidationError("Uploaded file is empty")
    if len(upload.data) > policy.max_bytes:
        raise ValidationError(
            f"File too large: {len(upload.data)} bytes (limit {policy.max_bytes})"
        )
    try:
        with Image.open(io.BytesIO(upload.data)) as image:
            detected = image.format
            image.verify()
        # verify() does not decode pixels and leaves the image unusable.
        with Image.open(io.BytesIO(upload.data)) as image:
            image.load()
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
    ) as exc:
        raise ValidationError(f"File is not a readable image: {exc}") from exc
    if extension not in _PIL_FORMAT_TO_EXTENSIONS.get(detected or "", set()):
        raise ValidationError(
            f"File content ({detected}) does not match its extension '{extension}'"
        )
    return extension


def apply_transform(data: bytes, transform: Optional[ImageTransform]) -> bytes:
    """Resize image bytes according to a transform, keeping the source format."""
    if transform is None:
        return data
    with Image.open(io.BytesIO(data)) as image:
        fmt = image.format or "PNG"
        if transform.crop == "fill":
            result = ImageOps.fit(image, (transform.width, transform.height))
        elif transform.crop == "limit":
            result = image.copy()
            result.thumbnail((transform.width, transform.height))
        else:
            raise ValueError(f"Unknown crop mode: {transform.crop}")
        if fmt == "JPEG" and result.mode not in ("RGB", "L"):
            result = result.convert("RGB")
        out = io.BytesIO()
        result.save(out, format=fmt)
        return out.getvalue()


def new_asset_id(policy: UploadPolicy) -> str:
    suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    return f"{policy.folder}/{policy.id_prefix}_{suffix}"


def asset_id_from_url(url: str | None) -> Optional[str]:
    """
    Recover an asset id from the trailing URL segment, minus its extension.

    Only used for records saved without a stored asset id. The result drops
    any folder component, so it is correct only for stores that address
    assets by bare file name.
    """
    if not url:
        return None
    path = urlparse(url).path
    filename = path.rsplit("/", 1)[-1]
    if not filename:
        return None
    return filename.split(".")[0] or None
