"""Wire settings, storage, transport, and hooks into per-conversation orchestrators."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx

from ..config import Settings, get_settings
from ..hooks import HookBus
from ..logging_config import configure_logging
from ..openrouter import OpenRouterClient
from ..repository import ChatRepository
from ..schemas.chat import ChatTurnMessage
from .hydration import AttachmentHydrator, HydratedAttachment, HydrationCache
from .orchestrator import SendOptions, SendOrchestrator, StreamTransport

logger = logging.getLogger(__name__)


class ChatService:
    """High-level entry point owning the shared collaborators of every turn."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        repository: ChatRepository | None = None,
        transport: StreamTransport | None = None,
        hooks: HookBus | None = None,
        cache: HydrationCache[HydratedAttachment] | None = None,
        http_client: httpx.AsyncClient | None = None,
        setup_logging: bool = True,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._setup_logging = setup_logging
        self._log_handlers: list[logging.Handler] = []
        self._repository = repository or ChatRepository(settings.chat_database_path)
        self._transport = transport or OpenRouterClient(settings)
        self._hooks = hooks or HookBus()
        self._cache: HydrationCache[HydratedAttachment] = cache or HydrationCache()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._hydrator: AttachmentHydrator | None = None
        self._orchestrators: dict[str, SendOrchestrator] = {}

    async def initialize(self) -> None:
        if self._setup_logging:
            self._log_handlers = configure_logging(self._settings)
        await self._repository.initialize()
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.hydration_timeout_seconds),
                follow_redirects=True,
            )
        self._hydrator = AttachmentHydrator(
            self._cache,
            self._repository,
            self._http_client,
            timeout_seconds=self._settings.hydration_timeout_seconds,
            max_bytes=self._settings.hydration_max_bytes,
        )
        logger.info("Chat service ready (db=%s)", self._settings.chat_database_path)

    async def shutdown(self) -> None:
        for conversation_id, orchestrator in self._orchestrators.items():
            if orchestrator.abort():
                logger.info("Aborted in-flight turn for %s on shutdown", conversation_id)
        self._orchestrators.clear()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if isinstance(self._transport, OpenRouterClient):
            await self._transport.aclose()
        await self._repository.close()
        root = logging.getLogger()
        for handler in self._log_handlers:
            root.removeHandler(handler)
            handler.close()
        self._log_handlers = []

    @property
    def repository(self) -> ChatRepository:
        return self._repository

    @property
    def hooks(self) -> HookBus:
        return self._hooks

    @property
    def cache(self) -> HydrationCache[HydratedAttachment]:
        return self._cache

    def orchestrator(self, conversation_id: str) -> SendOrchestrator:
        """Return the single orchestrator bound to ``conversation_id``."""

        if self._hydrator is None:
            raise RuntimeError("ChatService.initialize() must be awaited first")
        orchestrator = self._orchestrators.get(conversation_id)
        if orchestrator is None:
            orchestrator = SendOrchestrator(
                conversation_id,
                settings=self._settings,
                message_store=self._repository,
                content_store=self._repository,
                hydrator=self._hydrator,
                transport=self._transport,
                hooks=self._hooks,
            )
            self._orchestrators[conversation_id] = orchestrator
        return orchestrator

    async def send(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[str] | None = None,
        options: SendOptions | None = None,
    ) -> ChatTurnMessage | None:
        return await self.orchestrator(conversation_id).send(text, attachments, options)

    def abort(self, conversation_id: str) -> bool:
        orchestrator = self._orchestrators.get(conversation_id)
        if orchestrator is None:
            return False
        return orchestrator.abort()

    async def retry(
        self,
        conversation_id: str,
        message_id: str,
        model_override: str | None = None,
    ) -> ChatTurnMessage | None:
        return await self.orchestrator(conversation_id).retry(message_id, model_override)

    async def list_messages(self, conversation_id: str) -> list[ChatTurnMessage]:
        return await self._repository.list_messages(conversation_id)


__all__ = ["ChatService"]
