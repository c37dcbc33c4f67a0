"""Reference classification and inline data helpers used during hydration."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from enum import Enum
from typing import Any
from urllib.parse import unquote_to_bytes, urlparse, urlunparse

import httpx

logger = logging.getLogger(__name__)


MIME_EXTENSION_MAP = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "avif": "image/avif",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "heic": "image/heic",
    "heif": "image/heif",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
}

IMAGE_DATA_KEYS: tuple[str, ...] = (
    "b64_json",
    "image_base64",
    "image_b64",
    "base64",
    "image_bytes",
    "image_data",
)

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*:", re.IGNORECASE)


class ReferenceKind(str, Enum):
    DATA = "data"
    REMOTE = "remote"
    LOCAL_ONLY = "local_only"
    HASH = "hash"


def classify_reference(ref: str) -> ReferenceKind:
    """Classify an attachment reference by how it can be dereferenced."""

    value = ref.strip()
    lower = value.lower()
    if lower.startswith("data:"):
        return ReferenceKind.DATA
    if is_http_url(value):
        return ReferenceKind.REMOTE
    if _SCHEME_PATTERN.match(value):
        # blob:, file:, filesystem: and friends only mean something to the
        # process that minted them.
        return ReferenceKind.LOCAL_ONLY
    return ReferenceKind.HASH


def guess_media_type(
    ref: str,
    data: bytes | None = None,
    declared: str | None = None,
) -> str | None:
    """Heuristic media type for a reference that has no stored metadata.

    Magic bytes win over a declared content type, which wins over the URL
    extension. Callers with stored metadata must use it instead of this guess.
    """

    if data:
        sniffed = sniff_mime_from_bytes(data)
        if sniffed:
            return sniffed
    if declared and declared != "application/octet-stream":
        return declared.lower()
    if ref.lower().startswith("data:"):
        header = ref[5:].split(",", 1)[0]
        mime = header.split(";", 1)[0].strip().lower()
        return mime or None
    try:
        path = urlparse(ref).path
    except ValueError:
        return None
    _, dot, extension = path.rpartition(".")
    if not dot:
        return None
    return MIME_EXTENSION_MAP.get(extension.lower())


def is_image_type(mime_type: str | None) -> bool:
    return bool(mime_type) and mime_type.lower().startswith("image/")


def encode_data_uri(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def decode_data_uri(value: str) -> tuple[bytes | None, str | None]:
    if not isinstance(value, str) or not value.startswith("data:"):
        return None, None

    header, _, data_part = value.partition(",")
    if not data_part:
        return None, None

    meta = header[5:]
    if ";" in meta:
        mime, *params = meta.split(";")
    else:
        mime, params = meta, []

    mime_type = mime or "application/octet-stream"
    params_lower = {param.lower() for param in params}
    is_base64 = "base64" in params_lower

    if is_base64:
        data_bytes = safe_b64decode(data_part)
    else:
        data_bytes = unquote_to_bytes(data_part)

    return data_bytes, mime_type


def safe_b64decode(value: str) -> bytes | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip().replace("\n", "").replace("\r", "")
    padding = len(cleaned) % 4
    if padding:
        cleaned += "=" * (4 - padding)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError):
        return None


def synthesize_data_uri(payload: dict[str, Any]) -> str | None:
    """Build a data URI from a provider part carrying bare base64 image data."""

    mime_type = coalesce_str(
        payload.get("mime_type"),
        payload.get("mimeType"),
        payload.get("media_type"),
    )
    for key in IMAGE_DATA_KEYS:
        candidate = payload.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return _inline_to_data_uri(candidate, mime_type)

    data_field = payload.get("data")
    if isinstance(data_field, str) and data_field.strip():
        return _inline_to_data_uri(data_field, mime_type)
    return None


def _inline_to_data_uri(candidate: str, mime_type: str | None) -> str:
    value = candidate.strip()
    if value.startswith("data:"):
        return value
    cleaned = "".join(value.split())
    return f"data:{mime_type or 'image/png'};base64,{cleaned}"


def is_http_url(value: str) -> bool:
    lower = value.strip().lower()
    return lower.startswith("http://") or lower.startswith("https://")


def redact_url(url: str) -> str:
    if url.lower().startswith("data:"):
        return url[:32] + "..."
    try:
        parsed = urlparse(url)
        return urlunparse(parsed._replace(query="", fragment=""))
    except ValueError:
        return url


class DownloadTooLarge(ValueError):
    """Raised when a remote payload exceeds the configured cap."""


async def download_bytes(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    max_bytes: int,
) -> tuple[bytes, str | None]:
    """Fetch a remote payload with a hard size limit.

    Returns the raw bytes and the declared content type, if any. The whole
    fetch, body included, must finish within ``timeout_seconds`` or
    ``asyncio.TimeoutError`` is raised.
    """

    return await asyncio.wait_for(
        _fetch(client, url, timeout_seconds=timeout_seconds, max_bytes=max_bytes),
        timeout=timeout_seconds,
    )


async def _fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    max_bytes: int,
) -> tuple[bytes, str | None]:
    timeout = httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds))
    headers = {"Accept": "image/*,application/pdf;q=0.9,*/*;q=0.1"}
    async with client.stream("GET", url, timeout=timeout, headers=headers) as resp:
        resp.raise_for_status()

        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise DownloadTooLarge(
                f"Remote payload declares {declared} bytes, limit is {max_bytes}"
            )

        content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()

        chunks: list[bytes] = []
        total = 0
        async for chunk in resp.aiter_bytes():
            if not chunk:
                continue
            total += len(chunk)
            if total > max_bytes:
                raise DownloadTooLarge(
                    f"Downloaded payload exceeds maximum size of {max_bytes} bytes"
                )
            chunks.append(chunk)

    return b"".join(chunks), content_type.lower() or None


def sniff_mime_from_bytes(data: bytes) -> str | None:
    """Guess a mime type from magic bytes for common formats."""

    if not data or len(data) < 12:
        return None
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data.startswith(b"GIF87a") or data.startswith(b"GIF89a"):
        return "image/gif"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"%PDF-"):
        return "application/pdf"
    if data.startswith(b"BM"):
        return "image/bmp"
    if b"ftypheic" in data[:64] or b"ftypheif" in data[:64]:
        return "image/heic"
    if b"ftypavif" in data[:64]:
        return "image/avif"
    return None


def coalesce_str(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str):
            candidate = value.strip()
            if candidate:
                return candidate
    return None


def guess_filename(mime_type: str, *, stem: str = "file") -> str:
    subtype = mime_type.split("/", 1)[-1].lower()
    for extension, known in MIME_EXTENSION_MAP.items():
        if known == mime_type.lower():
            return f"{stem}.{extension}"
    if subtype.isalnum():
        return f"{stem}.{subtype}"
    return f"{stem}.bin"


__all__ = [
    "DownloadTooLarge",
    "IMAGE_DATA_KEYS",
    "ReferenceKind",
    "classify_reference",
    "coalesce_str",
    "decode_data_uri",
    "download_bytes",
    "encode_data_uri",
    "guess_filename",
    "guess_media_type",
    "is_http_url",
    "is_image_type",
    "redact_url",
    "safe_b64decode",
    "sniff_mime_from_bytes",
    "synthesize_data_uri",
]
