"""Shared fixtures for the test suites."""

from __future__ import annotations

import io

from PIL import Image

from blogapi.images import ImageUpload


def image_bytes(size=(64, 48), fmt="PNG", color=(200, 30, 30)) -> bytes:
    mode = "P" if fmt == "GIF" else "RGB"
    image = Image.new("RGB", size, color)
    if mode == "P":
        image = image.convert("P")
    out = io.BytesIO()
    image.save(out, format=fmt)
    return out.getvalue()


def png_upload(name: str = "photo.png", size=(64, 48)) -> ImageUpload:
    return ImageUpload(filename=name, content_type="image/png", data=image_bytes(size))


def truncated_jpeg(size=(300, 300)) -> bytes:
    """A JPEG whose headers parse but whose scan data is cut short."""
    image = Image.effect_noise(size, 64).convert("RGB")
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=95)
    data = out.getvalue()
    return data[: len(data) // 2]
