"""Turn stored conversation history into the wire request for a completion."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from ..config import ImageInclusionPolicy, Settings
from ..errors import EmptyTurnError
from ..schemas.chat import (
    ChatTurnMessage,
    FilePart,
    ImagePart,
    ImageUrl,
    WireFile,
    WireFilePart,
    WireImagePart,
    WireMessage,
    WirePart,
    WireTextPart,
)
from .cancellation import CancellationToken
from .hydration import AttachmentHydrator, HydratedAttachment
from .media import guess_filename, is_image_type, redact_url

logger = logging.getLogger(__name__)

_IMAGE_INTENT_PATTERN = re.compile(
    r"(generate|create|make|produce|draw)\s+(an?\s+)?"
    r"(image|picture|photo|logo|scene|illustration)",
    re.IGNORECASE,
)

_FILE_MEDIA_TYPES = {"application/pdf"}


@dataclass(frozen=True)
class ImageCandidate:
    """An attachment reference eligible for inclusion in the request."""

    ref: str
    role: str
    message_index: int


CandidateFilter = Callable[
    [list[ImageCandidate]],
    Union[Sequence[ImageCandidate], Awaitable[Sequence[ImageCandidate]]],
]


@dataclass
class AssemblyOptions:
    max_image_inputs: int = 8
    dedupe_images: bool = True
    image_inclusion_policy: ImageInclusionPolicy = "all"
    recent_window: int = 12
    candidate_filter: Optional[CandidateFilter] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        candidate_filter: Optional[CandidateFilter] = None,
    ) -> "AssemblyOptions":
        return cls(
            max_image_inputs=settings.max_image_inputs,
            image_inclusion_policy=settings.image_inclusion_policy,
            recent_window=settings.recent_window,
            candidate_filter=candidate_filter,
        )


@dataclass
class AssembledRequest:
    messages: list[WireMessage]
    modalities: list[str] = field(default_factory=lambda: ["text"])


def collect_candidates(
    history: Sequence[ChatTurnMessage], options: AssemblyOptions
) -> list[ImageCandidate]:
    """Gather attachment references in chronological order under the policy."""

    policy = options.image_inclusion_policy
    if policy == "all":
        start = 0
    else:
        start = max(0, len(history) - options.recent_window)

    allowed_roles = {"user", "assistant"}
    if policy == "recent-user":
        allowed_roles = {"user"}
    elif policy == "recent-assistant":
        allowed_roles = {"assistant"}

    candidates: list[ImageCandidate] = []
    for index in range(start, len(history)):
        message = history[index]
        if message.role not in allowed_roles:
            continue
        for ref in message.attachments:
            if isinstance(ref, str) and ref.strip():
                candidates.append(ImageCandidate(ref.strip(), message.role, index))
        if isinstance(message.content, list):
            for part in message.content:
                if isinstance(part, (ImagePart, FilePart)) and part.source.strip():
                    candidates.append(
                        ImageCandidate(part.source.strip(), message.role, index)
                    )
    return candidates


def select_candidates(
    candidates: Sequence[ImageCandidate],
    *,
    max_inputs: int,
    dedupe: bool = True,
) -> list[ImageCandidate]:
    """Keep the first ``max_inputs`` candidates in priority order."""

    seen: set[str] = set()
    selected: list[ImageCandidate] = []
    for candidate in candidates:
        if len(selected) >= max_inputs:
            break
        if dedupe and candidate.ref in seen:
            continue
        seen.add(candidate.ref)
        selected.append(candidate)
    return selected


def decide_modalities(messages: Sequence[WireMessage]) -> list[str]:
    """Request image output when images are present or the prompt asks for one."""

    has_image_input = any(
        isinstance(part, WireImagePart)
        for message in messages
        for part in message.content
    )
    prompt = ""
    for message in reversed(messages):
        if message.role == "user":
            prompt = message.text()
            break
    modalities = ["text"]
    if has_image_input or _IMAGE_INTENT_PATTERN.search(prompt):
        modalities.append("image")
    return modalities


def to_wire_part(
    ref: str, hydrated: Optional[HydratedAttachment]
) -> Optional[WirePart]:
    """Build the wire part for a hydrated reference, or ``None`` to drop it."""

    if hydrated is None:
        logger.debug("Dropping unavailable attachment %s", redact_url(ref))
        return None
    media_type = hydrated.media_type
    if is_image_type(media_type):
        return WireImagePart(image_url=ImageUrl(url=hydrated.data_uri))
    if media_type in _FILE_MEDIA_TYPES:
        filename = hydrated.name or guess_filename(media_type)
        return WireFilePart(file=WireFile(filename=filename, file_data=hydrated.data_uri))
    logger.debug(
        "Dropping attachment %s with unsupported media type %s",
        redact_url(ref),
        media_type,
    )
    return None


class RequestAssembler:
    """Convert conversation history into wire messages under an attachment budget."""

    def __init__(self, hydrator: AttachmentHydrator):
        self._hydrator = hydrator

    async def assemble(
        self,
        history: Sequence[ChatTurnMessage],
        options: AssemblyOptions | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> AssembledRequest:
        options = options or AssemblyOptions()

        candidates = collect_candidates(history, options)
        prioritized = await self._apply_filter(candidates, options.candidate_filter)
        selected = select_candidates(
            prioritized,
            max_inputs=options.max_image_inputs,
            dedupe=options.dedupe_images,
        )
        logger.debug(
            "Attachment budget: %d candidates, %d selected (max=%d policy=%s)",
            len(candidates),
            len(selected),
            options.max_image_inputs,
            options.image_inclusion_policy,
        )

        by_message: dict[int, list[ImageCandidate]] = defaultdict(list)
        for candidate in selected:
            by_message[candidate.message_index].append(candidate)

        hydrated = await self._hydrate_all(
            [candidate.ref for candidate in selected], token
        )

        messages: list[WireMessage] = []
        for index, message in enumerate(history):
            text = message.text()
            if not text.strip():
                text = ""
            parts: list[WirePart] = [WireTextPart(text=text)]
            for candidate in by_message.get(index, ()):
                part = to_wire_part(candidate.ref, hydrated.get(candidate.ref))
                if part is not None:
                    parts.append(part)
            messages.append(WireMessage(role=message.role, content=parts))

        self._ensure_turn_not_empty(messages)
        return AssembledRequest(messages=messages, modalities=decide_modalities(messages))

    async def _apply_filter(
        self,
        candidates: list[ImageCandidate],
        candidate_filter: Optional[CandidateFilter],
    ) -> list[ImageCandidate]:
        if candidate_filter is None:
            return candidates
        try:
            result: Any = candidate_filter(list(candidates))
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("Image candidate filter failed; ignoring it: %s", exc)
            return candidates
        if not isinstance(result, (list, tuple)):
            logger.warning(
                "Image candidate filter returned %s; ignoring it",
                type(result).__name__,
            )
            return candidates
        return [item for item in result if isinstance(item, ImageCandidate)]

    async def _hydrate_all(
        self, refs: Sequence[str], token: CancellationToken | None
    ) -> dict[str, Optional[HydratedAttachment]]:
        distinct = list(dict.fromkeys(refs))
        if not distinct:
            return {}
        results = await asyncio.gather(
            *[self._hydrator.hydrate(ref, token=token) for ref in distinct]
        )
        return dict(zip(distinct, results))

    @staticmethod
    def _ensure_turn_not_empty(messages: Sequence[WireMessage]) -> None:
        for message in reversed(messages):
            if message.role != "user":
                continue
            if message.text().strip() or message.attachment_parts():
                return
            raise EmptyTurnError(
                "Outgoing message has no text and no resolvable attachments"
            )
        raise EmptyTurnError("Conversation has no user message to send")


__all__ = [
    "AssembledRequest",
    "AssemblyOptions",
    "CandidateFilter",
    "ImageCandidate",
    "RequestAssembler",
    "collect_candidates",
    "decide_modalities",
    "select_candidates",
    "to_wire_part",
]
