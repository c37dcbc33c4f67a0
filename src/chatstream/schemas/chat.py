"""Pydantic models for chat turns, wire requests, and stored files."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant", "system"]


def _is_transmittable(value: str) -> bool:
    lower = value.strip().lower()
    return (
        lower.startswith("data:")
        or lower.startswith("http://")
        or lower.startswith("https://")
    )


class TextPart(BaseModel):
    """Plain text fragment of a stored message."""

    type: Literal["text"] = "text"
    text: str = ""

    model_config = ConfigDict(populate_by_name=True)


class ImagePart(BaseModel):
    """Image fragment; `source` is inline data, a URL, or an opaque local reference."""

    type: Literal["image"] = "image"
    source: str
    media_type: Optional[str] = Field(default=None, alias="mediaType")

    model_config = ConfigDict(populate_by_name=True)


class FilePart(BaseModel):
    """Non-image file fragment such as a PDF."""

    type: Literal["file"] = "file"
    source: str
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


ContentPart = Annotated[
    Union[TextPart, ImagePart, FilePart], Field(discriminator="type")
]


class ChatTurnMessage(BaseModel):
    """A message as stored in the conversation history."""

    id: Optional[str] = None
    conversation_id: Optional[str] = None
    index: Optional[int] = None
    role: Role
    content: Union[str, List[ContentPart]] = ""
    stream_id: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    reasoning_text: Optional[str] = None
    pending: bool = False
    error: Optional[str] = None
    created_at: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def text(self) -> str:
        """Return the concatenated text content of the message."""

        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.text for part in self.content if isinstance(part, TextPart)
        )

    def has_content(self) -> bool:
        if self.text().strip() or self.attachments:
            return True
        if isinstance(self.content, list):
            return any(isinstance(part, (ImagePart, FilePart)) for part in self.content)
        return False


class ImageUrl(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def _require_resolved(cls, value: str) -> str:
        if not _is_transmittable(value):
            raise ValueError("image url must be an http(s) or data URI")
        return value


class WireFile(BaseModel):
    filename: str
    file_data: str

    @field_validator("file_data")
    @classmethod
    def _require_resolved(cls, value: str) -> str:
        if not _is_transmittable(value):
            raise ValueError("file data must be an http(s) or data URI")
        return value


class WireTextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class WireImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class WireFilePart(BaseModel):
    type: Literal["file"] = "file"
    file: WireFile


WirePart = Annotated[
    Union[WireTextPart, WireImagePart, WireFilePart], Field(discriminator="type")
]


class WireMessage(BaseModel):
    """Request-shape message sent to the upstream provider."""

    role: Role
    content: List[WirePart] = Field(default_factory=list)

    def text(self) -> str:
        return "".join(
            part.text for part in self.content if isinstance(part, WireTextPart)
        )

    def attachment_parts(self) -> list[Union[WireImagePart, WireFilePart]]:
        return [
            part
            for part in self.content
            if isinstance(part, (WireImagePart, WireFilePart))
        ]


class ChatCompletionRequest(BaseModel):
    """Streaming chat completion request payload."""

    model: str
    messages: List[WireMessage]
    modalities: List[str] = Field(default_factory=lambda: ["text"])
    stream: bool = True
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_openrouter_payload(self) -> Dict[str, Any]:
        """Serialize the request for OpenRouter, enforcing streaming."""

        payload = self.model_dump(exclude_none=True, exclude={"extra"})
        payload.update(self.extra)
        payload["stream"] = True
        return payload


class FileMeta(BaseModel):
    """Metadata returned by the content-addressed file store."""

    hash: str
    mime_type: str
    size_bytes: int
    name: Optional[str] = None
    created_at: Optional[str] = None


__all__ = [
    "ChatCompletionRequest",
    "ChatTurnMessage",
    "ContentPart",
    "FileMeta",
    "FilePart",
    "ImagePart",
    "ImageUrl",
    "Role",
    "TextPart",
    "WireFile",
    "WireFilePart",
    "WireImagePart",
    "WireMessage",
    "WirePart",
    "WireTextPart",
]
