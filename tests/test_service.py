from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx
import pytest

from chatstream.chat.service import ChatService
from chatstream.config import get_settings
from chatstream.logging_handlers import DateStampedFileHandler
from chatstream.hooks import HookBus
from chatstream.repository import ChatRepository
from conftest import make_settings


class EchoTransport:
    def __init__(self) -> None:
        self.models: list[str] = []

    async def stream_lines(self, request, *, token=None) -> AsyncIterator[str]:
        self.models.append(request.model)
        prompt = request.messages[-1].text()
        yield "data: " + json.dumps({"choices": [{"delta": {"content": f"echo: {prompt}"}}]})
        yield "data: [DONE]"


@pytest.fixture
async def service(tmp_path):
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(404))
    )
    chat_service = ChatService(
        make_settings(chat_database_path=tmp_path / "chat.db"),
        transport=EchoTransport(),
        http_client=http_client,
        setup_logging=False,
    )
    await chat_service.initialize()
    try:
        yield chat_service
    finally:
        await chat_service.shutdown()
        await http_client.aclose()


async def test_send_through_service(service):
    result = await service.send("conv-a", "ping")

    assert result is not None
    assert result.text() == "echo: ping"
    messages = await service.list_messages("conv-a")
    assert [m.role for m in messages] == ["user", "assistant"]


async def test_one_orchestrator_per_conversation(service):
    first = service.orchestrator("conv-a")

    assert service.orchestrator("conv-a") is first
    assert service.orchestrator("conv-b") is not first


async def test_conversations_are_isolated(service):
    await service.send("conv-a", "one")
    await service.send("conv-b", "two")

    assert [m.text() for m in await service.list_messages("conv-a")] == ["one", "echo: one"]
    assert [m.text() for m in await service.list_messages("conv-b")] == ["two", "echo: two"]


async def test_retry_through_service(service):
    first = await service.send("conv-a", "again?")
    assert first is not None

    result = await service.retry("conv-a", first.id, model_override="x/y")

    assert result is not None
    assert result.text() == "echo: again?"
    assert len(await service.list_messages("conv-a")) == 2


async def test_abort_without_turn_is_false(service):
    assert service.abort("conv-z") is False


async def test_orchestrator_requires_initialize(tmp_path):
    chat_service = ChatService(
        make_settings(),
        repository=ChatRepository(tmp_path / "chat.db"),
        transport=EchoTransport(),
        hooks=HookBus(),
    )

    with pytest.raises(RuntimeError):
        chat_service.orchestrator("conv-a")


async def test_initialize_configures_logging_until_shutdown(tmp_path) -> None:
    settings_path = tmp_path / "logging_settings.conf"
    settings_path.write_text("terminal = off\nfile = info\n")
    chat_service = ChatService(
        make_settings(
            chat_database_path=tmp_path / "chat.db",
            logging_settings_path=settings_path,
            log_dir=tmp_path / "logs",
        ),
        transport=EchoTransport(),
    )
    root = logging.getLogger()
    root_level = root.level

    try:
        await chat_service.initialize()
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, DateStampedFileHandler)
        ]
        assert len(file_handlers) == 1
        assert (tmp_path / "logs") in file_handlers[0].log_path.parents
    finally:
        await chat_service.shutdown()
        root.setLevel(root_level)

    assert not any(isinstance(handler, DateStampedFileHandler) for handler in root.handlers)


async def test_settings_default_to_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENROUTER_API_KEY", "env-key")
    get_settings.cache_clear()
    try:
        chat_service = ChatService(transport=EchoTransport(), setup_logging=False)
        assert chat_service.repository is not None
        assert get_settings().openrouter_api_key.get_secret_value() == "env-key"
    finally:
        get_settings.cache_clear()
