from __future__ import annotations

import hashlib

import pytest

from chatstream.schemas.chat import ChatTurnMessage, ImagePart, TextPart


async def test_append_assigns_ids_and_positions(repository):
    first = await repository.append_message(
        "conv-1", ChatTurnMessage(role="user", content="hello")
    )
    second = await repository.append_message(
        "conv-1", ChatTurnMessage(role="assistant", content="", pending=True)
    )
    other = await repository.append_message(
        "conv-2", ChatTurnMessage(role="user", content="elsewhere")
    )

    assert first.id and second.id and first.id != second.id
    assert (first.index, second.index, other.index) == (0, 1, 0)
    assert second.pending is True
    assert first.created_at is not None
    assert first.conversation_id == "conv-1"


async def test_structured_content_roundtrip(repository):
    message = ChatTurnMessage(
        role="user",
        content=[TextPart(text="look"), ImagePart(source="abc123", media_type="image/png")],
        attachments=["abc123"],
    )

    stored = await repository.append_message("conv-1", message)
    fetched = await repository.get_message(stored.id)

    assert fetched is not None
    assert fetched.content == message.content
    assert fetched.attachments == ["abc123"]
    assert fetched.text() == "look"


async def test_update_message_changes_fields(repository):
    stored = await repository.append_message(
        "conv-1", ChatTurnMessage(role="assistant", content="", pending=True)
    )

    updated = await repository.update_message(
        stored.id,
        content="partial",
        pending=False,
        error="stream_interrupted",
        attachments=["h1"],
        reasoning_text="thinking",
    )

    fetched = await repository.get_message(stored.id)
    assert updated is True
    assert fetched.text() == "partial"
    assert fetched.pending is False
    assert fetched.error == "stream_interrupted"
    assert fetched.attachments == ["h1"]
    assert fetched.reasoning_text == "thinking"


async def test_update_rejects_unknown_fields(repository):
    stored = await repository.append_message(
        "conv-1", ChatTurnMessage(role="user", content="x")
    )

    with pytest.raises(ValueError):
        await repository.update_message(stored.id, role="assistant")


async def test_update_missing_message_returns_false(repository):
    assert await repository.update_message("nope", content="x") is False


async def test_find_nearest_in_both_directions(repository):
    roles = ["user", "assistant", "user", "assistant"]
    stored = [
        await repository.append_message(
            "conv-1", ChatTurnMessage(role=role, content=str(index))
        )
        for index, role in enumerate(roles)
    ]

    before = await repository.find_nearest("conv-1", 3, "user", "before")
    after = await repository.find_nearest("conv-1", 0, "assistant", "after")
    none = await repository.find_nearest("conv-1", 3, "assistant", "after")

    assert before.id == stored[2].id
    assert after.id == stored[1].id
    assert none is None


async def test_delete_message(repository):
    stored = await repository.append_message(
        "conv-1", ChatTurnMessage(role="user", content="x")
    )

    assert await repository.delete_message(stored.id) is True
    assert await repository.delete_message(stored.id) is False
    assert await repository.list_messages("conv-1") == []


async def test_store_bytes_is_content_addressed(repository):
    data = b"\x89PNG\r\n\x1a\npayload"

    first = await repository.store_bytes(data, "image/png", "a.png")
    second = await repository.store_bytes(data, "image/png", "b.png")

    assert first.hash == hashlib.sha256(data).hexdigest()
    assert second.hash == first.hash
    assert second.name == "a.png"
    assert first.size_bytes == len(data)
    assert await repository.get_ref_count(first.hash) == 2
    assert await repository.get_file_blob(first.hash) == data


async def test_missing_file_lookups_return_none(repository):
    assert await repository.get_file_meta("missing") is None
    assert await repository.get_file_blob("missing") is None
    assert await repository.get_ref_count("missing") == 0
