"""Decoding, normalization and attachment of caller-supplied images."""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from typing import Any, List

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import MalformedRequest

logger = logging.getLogger(__name__)

MAX_INPUT_BYTES = 20 * 1024 * 1024
MAX_SIDE_PX = 2048
MAX_OUTPUT_BYTES = 4 * 1024 * 1024
JPEG_QUALITY_STEPS: tuple[int, ...] = (90, 80, 70, 60, 50, 40)
DEFAULT_MIME_TYPE = "image/jpeg"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*?);base64,(?P<data>.*)$", re.S)


@dataclass(frozen=True)
class DecodedImage:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class NormalizedImage:
    data: bytes
    mime_type: str
    normalized: bool

    def data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_image_payload(value: str) -> DecodedImage:
    text = (value or "").strip()
    if not text:
        raise MalformedRequest("image must be a non-empty base64 string")
    mime_type = DEFAULT_MIME_TYPE
    match = _DATA_URL_RE.match(text)
    if match is not None:
        mime_type = match.group("mime") or DEFAULT_MIME_TYPE
        text = match.group("data")
    elif text.startswith("data:"):
        raise MalformedRequest("image data URL must be base64 encoded")
    compact = "".join(text.split())
    # decoded size is at most 3/4 of the encoded length
    if len(compact) * 3 // 4 > MAX_INPUT_BYTES + 3:
        raise MalformedRequest(f"image exceeds the {MAX_INPUT_BYTES // (1024 * 1024)} MiB limit")
    try:
        data = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedRequest("image is not valid base64") from exc
    if not data:
        raise MalformedRequest("image must be a non-empty base64 string")
    if len(data) > MAX_INPUT_BYTES:
        raise MalformedRequest(f"image exceeds the {MAX_INPUT_BYTES // (1024 * 1024)} MiB limit")
    return DecodedImage(data=data, mime_type=mime_type)


class ImageNormalizer:
    def __init__(self, *, max_side: int = MAX_SIDE_PX, max_bytes: int = MAX_OUTPUT_BYTES) -> None:
        self.max_side = max_side
        self.max_bytes = max_bytes

    def _encode(self, image: Image.Image) -> bytes:
        encoded = b""
        for quality in JPEG_QUALITY_STEPS:
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=quality, optimize=True)
            encoded = buffer.getvalue()
            if len(encoded) <= self.max_bytes:
                return encoded
        return encoded

    def normalize(self, image: DecodedImage) -> NormalizedImage:
        try:
            with Image.open(io.BytesIO(image.data)) as opened:
                working = ImageOps.exif_transpose(opened)
                working.thumbnail((self.max_side, self.max_side))
                if working.mode != "RGB":
                    working = working.convert("RGB")
                encoded = self._encode(working)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            logger.warning(f"image normalization failed; passing original through bytes={len(image.data)} error={exc}")
            return NormalizedImage(data=image.data, mime_type=image.mime_type, normalized=False)
        return NormalizedImage(data=encoded, mime_type="image/jpeg", normalized=True)

    async def normalize_async(self, image: DecodedImage) -> NormalizedImage:
        return await asyncio.to_thread(self.normalize, image)


def attach_image(messages: List[dict[str, Any]], data_url: str) -> List[dict[str, Any]]:
    """Return a copy of ``messages`` with the image on the last user message."""
    attached = [dict(message) for message in messages]
    image_part = {"type": "image_url", "image_url": {"url": data_url}}
    for message in reversed(attached):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, list):
            message["content"] = [*content, image_part]
        else:
            message["content"] = [{"type": "text", "text": content or ""}, image_part]
        return attached
    attached.append({"role": "user", "content": [image_part]})
    return attached
