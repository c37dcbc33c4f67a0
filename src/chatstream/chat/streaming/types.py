"""Type definitions for the chat streaming subsystem."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol, Union

from ...schemas.chat import ChatTurnMessage, FileMeta


@dataclass(frozen=True)
class TextEvent:
    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class ReasoningEvent:
    text: str
    kind: Literal["reasoning"] = "reasoning"


@dataclass(frozen=True)
class ImageEvent:
    url: str
    final: bool = False
    index: int = 0
    kind: Literal["image"] = "image"


@dataclass(frozen=True)
class DoneEvent:
    kind: Literal["done"] = "done"


StreamEvent = Union[TextEvent, ReasoningEvent, ImageEvent, DoneEvent]


class MessageStore(Protocol):
    async def append_message(
        self, conversation_id: str, message: ChatTurnMessage
    ) -> ChatTurnMessage:
        ...

    async def update_message(self, message_id: str, **changes: Any) -> bool:
        ...

    async def get_message(self, message_id: str) -> ChatTurnMessage | None:
        ...

    async def list_messages(self, conversation_id: str) -> list[ChatTurnMessage]:
        ...

    async def find_nearest(
        self,
        conversation_id: str,
        index: int,
        role: str,
        direction: Literal["before", "after"],
    ) -> ChatTurnMessage | None:
        ...

    async def delete_message(self, message_id: str) -> bool:
        ...


class ContentStore(Protocol):
    async def store_bytes(
        self, data: bytes, mime_type: str, name: str | None = None
    ) -> FileMeta:
        ...

    async def get_file_meta(self, file_hash: str) -> FileMeta | None:
        ...

    async def get_file_blob(self, file_hash: str) -> bytes | None:
        ...


__all__ = [
    "ContentStore",
    "DoneEvent",
    "ImageEvent",
    "MessageStore",
    "ReasoningEvent",
    "StreamEvent",
    "TextEvent",
]
