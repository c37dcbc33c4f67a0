"""Normalize raw OpenRouter SSE lines into ordered stream events."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Optional

from ..cancellation import CancellationToken
from ..media import coalesce_str, synthesize_data_uri
from .reasoning import reasoning_from_details
from .types import DoneEvent, ImageEvent, ReasoningEvent, StreamEvent, TextEvent

logger = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"
_TEXT_PART_TYPES = {"text", "output_text"}


def extract_image_url(part: Any) -> Optional[str]:
    """Return an image URL from the many provider-specific part layouts."""

    if not isinstance(part, dict):
        return None

    part_type = part.get("type")
    if part_type in _TEXT_PART_TYPES:
        return None

    image_url = part.get("image_url")
    if isinstance(image_url, dict):
        image_url = image_url.get("url")
    media = part.get("media")
    inline = part.get("inline_data") or part.get("inlineData")

    candidate = coalesce_str(
        image_url,
        part.get("url"),
        media.get("url") if isinstance(media, dict) else None,
        inline.get("url") if isinstance(inline, dict) else None,
    )
    if candidate:
        return candidate

    if isinstance(inline, dict):
        synthesized = synthesize_data_uri(inline)
        if synthesized:
            return synthesized
    return synthesize_data_uri(part)


class StreamNormalizer:
    """Stateful per-turn normalizer; owns the set of already emitted images."""

    def __init__(self) -> None:
        self._emitted_images: set[str] = set()
        self._next_index = 0
        self.done = False

    def feed_line(self, line: str) -> list[StreamEvent]:
        """Translate one raw line into zero or more events."""

        if self.done:
            return []
        stripped = line.strip()
        if not stripped.startswith("data:"):
            return []
        data = stripped[5:].strip()
        if not data:
            return []
        if data == _DONE_SENTINEL:
            self.done = True
            return [DoneEvent()]
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE record: %.200s", data)
            return []
        if not isinstance(payload, dict):
            logger.debug("Skipping non-object SSE record: %.200s", data)
            return []
        return self.feed(payload)

    def feed(self, payload: dict[str, Any]) -> list[StreamEvent]:
        """Translate one decoded completion chunk into events."""

        events: list[StreamEvent] = []
        choices = payload.get("choices")
        if not isinstance(choices, list):
            return events

        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta")
            if not isinstance(delta, dict):
                delta = {}
            message = choice.get("message")
            if not isinstance(message, dict):
                message = {}

            reasoning = reasoning_from_details(delta.get("reasoning_details"))
            if reasoning:
                events.extend(ReasoningEvent(text=text) for text in reasoning)
            else:
                fallback = delta.get("reasoning")
                if isinstance(fallback, str) and fallback:
                    events.append(ReasoningEvent(text=fallback))

            content = delta.get("content")
            if isinstance(content, str):
                if content:
                    events.append(TextEvent(text=content))
            elif isinstance(content, list):
                for part in content:
                    if not isinstance(part, dict):
                        continue
                    if part.get("type") in _TEXT_PART_TYPES:
                        text = part.get("text")
                        if isinstance(text, str) and text:
                            events.append(TextEvent(text=text))
            delta_text = delta.get("text")
            if isinstance(delta_text, str) and delta_text:
                events.append(TextEvent(text=delta_text))

            self._collect_images(delta.get("images"), events, final=False)
            if isinstance(content, list):
                self._collect_images(content, events, final=False)
            self._collect_images(message.get("images"), events, final=True)
            final_content = message.get("content")
            if isinstance(final_content, list):
                self._collect_images(final_content, events, final=True)

        return events

    def _collect_images(
        self, parts: Any, events: list[StreamEvent], *, final: bool
    ) -> None:
        if not isinstance(parts, list):
            return
        for part in parts:
            url = extract_image_url(part)
            if not url or url in self._emitted_images:
                continue
            self._emitted_images.add(url)
            events.append(ImageEvent(url=url, final=final, index=self._next_index))
            self._next_index += 1


async def _pull(iterator: AsyncIterator[str]) -> tuple[bool, str]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, ""


async def _next_line(
    iterator: AsyncIterator[str], token: CancellationToken | None
) -> Optional[str]:
    """Return the next line, or ``None`` at EOF or once ``token`` fires.

    A pending read is cancelled as soon as the token is set, so a stalled
    upstream cannot hold the turn open.
    """

    if token is None:
        has_line, line = await _pull(iterator)
        return line if has_line else None
    if token.cancelled:
        return None

    pull = asyncio.ensure_future(_pull(iterator))
    stop = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({pull, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not pull.done():
            pull.cancel()
            await asyncio.wait({pull})
    if pull.cancelled():
        return None
    has_line, line = pull.result()
    return line if has_line else None


async def normalize_stream(
    lines: AsyncIterable[str],
    *,
    token: CancellationToken | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield normalized events for a raw line stream.

    Ends after the first `DoneEvent`. When the upstream closes without the
    `[DONE]` sentinel a single `DoneEvent` is still produced. Cancellation
    stops consumption without a `DoneEvent`.
    """

    normalizer = StreamNormalizer()
    cancelled = False
    iterator = lines.__aiter__()
    try:
        while True:
            line = await _next_line(iterator, token)
            if line is None:
                break
            if token is not None and token.cancelled:
                cancelled = True
                break
            for event in normalizer.feed_line(line):
                yield event
            if normalizer.done:
                break
    finally:
        aclose = getattr(lines, "aclose", None)
        if aclose is not None:
            await aclose()

    if token is not None and token.cancelled:
        cancelled = True
    if not normalizer.done and not cancelled:
        logger.debug("Upstream closed without [DONE]; emitting terminal event")
        yield DoneEvent()


__all__ = ["StreamNormalizer", "extract_image_url", "normalize_stream"]
