"""Tests for assembling wire requests from conversation history."""

from __future__ import annotations

import base64

import httpx
import pytest

from chatstream.chat.assembler import (
    AssemblyOptions,
    ImageCandidate,
    RequestAssembler,
    collect_candidates,
    decide_modalities,
    select_candidates,
)
from chatstream.chat.hydration import AttachmentHydrator, HydrationCache
from chatstream.errors import EmptyTurnError
from chatstream.schemas.chat import (
    ChatTurnMessage,
    ImagePart,
    TextPart,
    WireFilePart,
    WireImagePart,
    WireMessage,
    WireTextPart,
)


def _data_uri(label: str) -> str:
    encoded = base64.b64encode(label.encode("utf-8")).decode("ascii")
    return f"data:image/png;base64,{encoded}"


@pytest.fixture
async def assembler(repository):
    async with httpx.AsyncClient() as client:
        hydrator = AttachmentHydrator(HydrationCache(), repository, client)
        yield RequestAssembler(hydrator)


async def test_budget_keeps_first_candidates_in_order(assembler) -> None:
    refs = [_data_uri(f"img-{index}") for index in range(10)]
    history = [
        ChatTurnMessage(role="user", content="first", attachments=refs[:5]),
        ChatTurnMessage(role="assistant", content="ok", attachments=refs[5:]),
        ChatTurnMessage(role="user", content="describe them"),
    ]

    result = await assembler.assemble(history, AssemblyOptions(max_image_inputs=3))

    image_parts = [
        part
        for message in result.messages
        for part in message.content
        if isinstance(part, WireImagePart)
    ]
    assert [part.image_url.url for part in image_parts] == refs[:3]
    assert result.modalities == ["text", "image"]


async def test_text_round_trip_and_text_part_first(assembler) -> None:
    history = [
        ChatTurnMessage(role="system", content="be brief"),
        ChatTurnMessage(
            role="user",
            content=[
                TextPart(text="hello "),
                ImagePart(source=_data_uri("inline")),
                TextPart(text="world"),
            ],
        ),
    ]

    result = await assembler.assemble(history)

    assert [message.role for message in result.messages] == ["system", "user"]
    assert result.messages[0].content == [WireTextPart(text="be brief")]
    user_parts = result.messages[1].content
    assert isinstance(user_parts[0], WireTextPart)
    assert user_parts[0].text == "hello world"
    assert isinstance(user_parts[1], WireImagePart)


async def test_whitespace_only_text_becomes_empty_anchor(assembler) -> None:
    history = [
        ChatTurnMessage(role="assistant", content="   "),
        ChatTurnMessage(role="user", content="hi"),
    ]

    result = await assembler.assemble(history)

    assert result.messages[0].content == [WireTextPart(text="")]


async def test_duplicate_references_are_sent_once(assembler) -> None:
    ref = _data_uri("same")
    history = [
        ChatTurnMessage(role="user", content="a", attachments=[ref]),
        ChatTurnMessage(role="user", content="b", attachments=[ref]),
    ]

    result = await assembler.assemble(history)

    counts = [len(message.attachment_parts()) for message in result.messages]
    assert counts == [1, 0]


async def test_hash_references_hydrate_with_stored_type(assembler, repository) -> None:
    image = await repository.store_bytes(b"image-bytes", "image/jpeg", "a.jpg")
    pdf = await repository.store_bytes(b"%PDF-1.4 body", "application/pdf", "doc.pdf")
    other = await repository.store_bytes(b"zip", "application/zip", "a.zip")
    history = [
        ChatTurnMessage(
            role="user",
            content="look",
            attachments=[image.hash, pdf.hash, other.hash, "missing-hash"],
        )
    ]

    result = await assembler.assemble(history)

    parts = result.messages[0].content
    assert len(parts) == 3
    assert isinstance(parts[1], WireImagePart)
    assert parts[1].image_url.url.startswith("data:image/jpeg;base64,")
    assert isinstance(parts[2], WireFilePart)
    assert parts[2].file.filename == "doc.pdf"
    assert parts[2].file.file_data.startswith("data:application/pdf;base64,")


async def test_local_only_reference_is_dropped(assembler) -> None:
    history = [
        ChatTurnMessage(
            role="user", content="see this", attachments=["blob:https://app/1"]
        )
    ]

    result = await assembler.assemble(history)

    assert result.messages[0].attachment_parts() == []
    assert result.modalities == ["text"]


async def test_empty_turn_raises(assembler) -> None:
    history = [
        ChatTurnMessage(role="user", content="earlier"),
        ChatTurnMessage(role="user", content="", attachments=["blob:https://app/1"]),
    ]

    with pytest.raises(EmptyTurnError):
        await assembler.assemble(history)


async def test_failing_filter_is_ignored(assembler) -> None:
    refs = [_data_uri("one"), _data_uri("two")]
    history = [ChatTurnMessage(role="user", content="x", attachments=refs)]

    def broken(candidates):
        raise RuntimeError("nope")

    result = await assembler.assemble(
        history, AssemblyOptions(candidate_filter=broken)
    )

    assert len(result.messages[0].attachment_parts()) == 2


async def test_async_filter_defines_priority(assembler) -> None:
    refs = [_data_uri("one"), _data_uri("two"), _data_uri("three")]
    history = [ChatTurnMessage(role="user", content="x", attachments=refs)]

    async def newest_first(candidates):
        return list(reversed(candidates))

    result = await assembler.assemble(
        history,
        AssemblyOptions(max_image_inputs=1, candidate_filter=newest_first),
    )

    parts = result.messages[0].attachment_parts()
    assert [part.image_url.url for part in parts] == [refs[2]]


def test_recent_policies_window_and_role_filter() -> None:
    history = [
        ChatTurnMessage(role="user", content="old", attachments=["h-old"]),
        ChatTurnMessage(role="assistant", content="a", attachments=["h-assistant"]),
        ChatTurnMessage(role="user", content="u", attachments=["h-user"]),
        ChatTurnMessage(role="system", content="s", attachments=["h-system"]),
    ]

    recent = collect_candidates(
        history,
        AssemblyOptions(image_inclusion_policy="recent", recent_window=3),
    )
    recent_user = collect_candidates(
        history,
        AssemblyOptions(image_inclusion_policy="recent-user", recent_window=3),
    )
    recent_assistant = collect_candidates(
        history,
        AssemblyOptions(image_inclusion_policy="recent-assistant", recent_window=3),
    )

    assert [c.ref for c in recent] == ["h-assistant", "h-user"]
    assert [c.ref for c in recent_user] == ["h-user"]
    assert [c.ref for c in recent_assistant] == ["h-assistant"]


def test_select_candidates_without_dedupe() -> None:
    candidates = [
        ImageCandidate("a", "user", 0),
        ImageCandidate("a", "user", 1),
        ImageCandidate("b", "user", 1),
    ]

    assert select_candidates(candidates, max_inputs=2, dedupe=False) == candidates[:2]
    assert [c.ref for c in select_candidates(candidates, max_inputs=2)] == ["a", "b"]


@pytest.mark.parametrize(
    ("prompt", "expected"),
    [
        ("Please generate an image of a cat", ["text", "image"]),
        ("draw a logo for my shop", ["text", "image"]),
        ("Create picture of the sea", ["text", "image"]),
        ("what is an image format?", ["text"]),
    ],
)
def test_decide_modalities_from_prompt(prompt: str, expected: list[str]) -> None:
    messages = [WireMessage(role="user", content=[WireTextPart(text=prompt)])]

    assert decide_modalities(messages) == expected
