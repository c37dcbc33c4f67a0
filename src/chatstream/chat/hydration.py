"""Shared hydration cache and the resolver that turns references into data URIs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from .cancellation import CancellationToken
from .media import (
    ReferenceKind,
    classify_reference,
    decode_data_uri,
    download_bytes,
    encode_data_uri,
    guess_media_type,
    redact_url,
)
from .streaming.types import ContentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class HydratedAttachment:
    """A reference resolved into transmittable inline data."""

    data_uri: str
    media_type: str
    name: Optional[str] = None


class HydrationCache(Generic[T]):
    """Process-scoped memo plus in-flight map keyed by reference.

    At most one loader runs per key; every concurrent caller awaits the same
    task. Settled values, including failures stored as ``None``, never change.
    """

    def __init__(self) -> None:
        self._resolved: dict[str, Optional[T]] = {}
        self._inflight: dict[str, asyncio.Task[Optional[T]]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._resolved

    def __len__(self) -> int:
        return len(self._resolved)

    def peek(self, key: str) -> Optional[T]:
        return self._resolved.get(key)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def resolve(
        self, key: str, loader: Callable[[], Awaitable[Optional[T]]]
    ) -> Optional[T]:
        if key in self._resolved:
            return self._resolved[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, loader))
            self._inflight[key] = task
        # A cancelled caller must not cancel the load other callers share.
        return await asyncio.shield(task)

    async def _run(
        self, key: str, loader: Callable[[], Awaitable[Optional[T]]]
    ) -> Optional[T]:
        try:
            try:
                value = await loader()
            except Exception as exc:
                logger.warning("Hydration failed for %s: %s", redact_url(key), exc)
                value = None
            self._resolved[key] = value
            return value
        finally:
            self._inflight.pop(key, None)


class AttachmentHydrator:
    """Resolve attachment references through a shared ``HydrationCache``."""

    def __init__(
        self,
        cache: HydrationCache[HydratedAttachment],
        content_store: ContentStore,
        http_client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 8.0,
        max_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self._cache = cache
        self._content_store = content_store
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._max_bytes = max_bytes

    @property
    def cache(self) -> HydrationCache[HydratedAttachment]:
        return self._cache

    async def hydrate(
        self,
        ref: str,
        *,
        token: CancellationToken | None = None,
    ) -> Optional[HydratedAttachment]:
        """Return inline data for ``ref`` or ``None`` when it is unavailable."""

        if token is not None:
            token.raise_if_cancelled()

        kind = classify_reference(ref)
        if kind is ReferenceKind.DATA:
            return self._from_data_uri(ref)
        if kind is ReferenceKind.LOCAL_ONLY:
            logger.debug("Reference %s is local-only; unavailable", redact_url(ref))
            return None
        if kind is ReferenceKind.REMOTE:
            return await self._cache.resolve(ref, lambda: self._load_remote(ref))
        return await self._cache.resolve(ref, lambda: self._load_hash(ref))

    @staticmethod
    def _from_data_uri(ref: str) -> Optional[HydratedAttachment]:
        data, mime_type = decode_data_uri(ref)
        if data is None or mime_type is None:
            logger.debug("Discarding undecodable data URI %s", redact_url(ref))
            return None
        return HydratedAttachment(data_uri=ref, media_type=mime_type.lower())

    async def _load_hash(self, file_hash: str) -> Optional[HydratedAttachment]:
        meta = await self._content_store.get_file_meta(file_hash)
        if meta is None:
            logger.debug("No stored metadata for %s", file_hash)
            return None
        blob = await self._content_store.get_file_blob(file_hash)
        if blob is None:
            logger.debug("Stored blob missing for %s", file_hash)
            return None
        return HydratedAttachment(
            data_uri=encode_data_uri(blob, meta.mime_type),
            media_type=meta.mime_type.lower(),
            name=meta.name,
        )

    async def _load_remote(self, url: str) -> Optional[HydratedAttachment]:
        logger.info("Fetching attachment %s", redact_url(url))
        data, declared = await download_bytes(
            self._http_client,
            url,
            timeout_seconds=self._timeout_seconds,
            max_bytes=self._max_bytes,
        )
        if not data:
            return None
        media_type = guess_media_type(url, data, declared)
        if not media_type:
            logger.debug("Unable to determine media type for %s", redact_url(url))
            return None
        return HydratedAttachment(
            data_uri=encode_data_uri(data, media_type),
            media_type=media_type.lower(),
        )


__all__ = ["AttachmentHydrator", "HydratedAttachment", "HydrationCache"]
