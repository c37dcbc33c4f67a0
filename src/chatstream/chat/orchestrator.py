"""Per-conversation send/abort/retry state machine for streamed chat turns."""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Sequence

from ..config import Settings
from ..errors import ChatBusyError, EmptyTurnError, MessageNotFoundError
from ..hooks import HookBus
from ..schemas.chat import ChatCompletionRequest, ChatTurnMessage, FilePart, ImagePart
from .assembler import AssemblyOptions, CandidateFilter, ImageCandidate, RequestAssembler
from .cancellation import CancellationToken, OperationCancelled
from .hydration import AttachmentHydrator
from .media import decode_data_uri, guess_filename, is_image_type, redact_url
from .streaming import (
    ContentStore,
    DoneEvent,
    ImageEvent,
    MessageStore,
    ReasoningEvent,
    StreamEvent,
    TextEvent,
    normalize_stream,
)

logger = logging.getLogger(__name__)

STREAM_INTERRUPTED = "stream_interrupted"

PostProcessor = Callable[[str], Any]


class StreamTransport(Protocol):
    def stream_lines(
        self,
        request: ChatCompletionRequest,
        *,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        ...


class SendState(str, Enum):
    IDLE = "idle"
    BUILDING_CONTEXT = "building_context"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class SendOptions:
    """Per-send overrides."""

    model: Optional[str] = None
    online: bool = False
    system_prompt: Optional[str] = None
    candidate_filter: Optional[CandidateFilter] = None
    post_processors: list[PostProcessor] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


class PersistThrottle:
    """Allow a write once per interval or once every ``every_chunks`` records."""

    def __init__(
        self,
        interval: float,
        every_chunks: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = interval
        self._every_chunks = max(1, every_chunks)
        self._clock = clock
        self._last_flush = clock()
        self._chunks = 0

    def record(self) -> bool:
        """Register one chunk; returns True when a write is due."""

        self._chunks += 1
        now = self._clock()
        if self._chunks >= self._every_chunks or now - self._last_flush >= self._interval:
            self.mark_flushed(now)
            return True
        return False

    def mark_flushed(self, now: float | None = None) -> None:
        self._last_flush = self._clock() if now is None else now
        self._chunks = 0


@dataclass
class SendSession:
    conversation_id: str
    user_message: ChatTurnMessage
    token: CancellationToken
    options: SendOptions
    assistant: Optional[ChatTurnMessage] = None
    text_parts: list[str] = field(default_factory=list)
    reasoning_parts: list[str] = field(default_factory=list)
    attachment_hashes: list[str] = field(default_factory=list)
    pending: bool = True
    chunk_count: int = 0

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def reasoning(self) -> Optional[str]:
        joined = "".join(self.reasoning_parts)
        return joined or None

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or bool(self.attachment_hashes)

    @property
    def touched(self) -> bool:
        return bool(self.text_parts or self.reasoning_parts or self.attachment_hashes)


class SendOrchestrator:
    """Own the send state machine for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        *,
        settings: Settings,
        message_store: MessageStore,
        content_store: ContentStore,
        hydrator: AttachmentHydrator,
        transport: StreamTransport,
        hooks: HookBus | None = None,
        assembler: RequestAssembler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conversation_id = conversation_id
        self._settings = settings
        self._messages = message_store
        self._content = content_store
        self._hydrator = hydrator
        self._transport = transport
        self._hooks = hooks or HookBus()
        self._assembler = assembler or RequestAssembler(hydrator)
        self._clock = clock
        self._state = SendState.IDLE
        self._token: CancellationToken | None = None
        self.last_state: SendState | None = None

    @property
    def state(self) -> SendState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not SendState.IDLE

    @property
    def hooks(self) -> HookBus:
        return self._hooks

    # Public operations --------------------------------------------------

    async def send(
        self,
        text: str,
        attachments: Sequence[str] | None = None,
        options: SendOptions | None = None,
    ) -> ChatTurnMessage | None:
        """Run one turn and return the stored assistant message.

        Returns ``None`` when the turn was aborted before any assistant
        content was persisted.
        """

        if self.busy:
            raise ChatBusyError(self.conversation_id, self._state.value)

        refs = [ref for ref in (attachments or []) if isinstance(ref, str) and ref.strip()]
        if not (text or "").strip() and not refs:
            raise EmptyTurnError("Refusing to send an empty message")

        token = self._reserve()
        return await self._run_turn(text, refs, options or SendOptions(), token)

    def _reserve(self) -> CancellationToken:
        token = CancellationToken()
        self._token = token
        self._state = SendState.BUILDING_CONTEXT
        return token

    async def _run_turn(
        self,
        text: str,
        refs: list[str],
        options: SendOptions,
        token: CancellationToken,
    ) -> ChatTurnMessage | None:
        session: SendSession | None = None
        try:
            outgoing = await self._hooks.apply_filters(
                "chat.message:outgoing", text, self.conversation_id
            )
            if not isinstance(outgoing, str):
                outgoing = text

            user_message = await self._messages.append_message(
                self.conversation_id,
                ChatTurnMessage(role="user", content=outgoing, attachments=refs),
            )
            session = SendSession(
                conversation_id=self.conversation_id,
                user_message=user_message,
                token=token,
                options=options,
            )
            await self._hooks.do_action(
                "chat.send:before",
                {
                    "conversation_id": self.conversation_id,
                    "user_message_id": user_message.id,
                    "attachments": list(refs),
                },
            )
            token.raise_if_cancelled()

            history = await self._load_history(options)
            assembled = await self._assembler.assemble(
                history, self._assembly_options(options), token=token
            )
            model = await self._select_model(options)
            token.raise_if_cancelled()

            session.assistant = await self._messages.append_message(
                self.conversation_id,
                ChatTurnMessage(
                    role="assistant",
                    content="",
                    pending=True,
                    stream_id=uuid.uuid4().hex,
                ),
            )

            self._state = SendState.STREAMING
            request = ChatCompletionRequest(
                model=model,
                messages=assembled.messages,
                modalities=assembled.modalities,
                extra=dict(options.extra),
            )
            logger.info(
                "Streaming turn conversation=%s model=%s messages=%d modalities=%s",
                self.conversation_id,
                model,
                len(request.messages),
                request.modalities,
            )
            await self._consume(session, request)
            token.raise_if_cancelled()

            self._state = SendState.FINALIZING
            final = await self._finalize(session)
            self._state = SendState.DONE
            await self._hooks.do_action(
                "chat.send:after",
                {
                    "conversation_id": self.conversation_id,
                    "user_message_id": user_message.id,
                    "assistant_message_id": final.id if final else None,
                },
            )
            return final
        except OperationCancelled:
            self._state = SendState.ABORTED
            return await self._finish_aborted(session)
        except Exception as exc:
            self._state = SendState.ERROR
            await self._finish_errored(session, exc)
            raise
        finally:
            self._release(self._state)

    def _release(self, final_state: SendState | None = None) -> None:
        if final_state is not None:
            self.last_state = final_state
        self._state = SendState.IDLE
        self._token = None

    def abort(self) -> bool:
        """Signal the running turn to stop; returns whether one was signalled."""

        if self._token is None or self._state not in (
            SendState.BUILDING_CONTEXT,
            SendState.STREAMING,
        ):
            return False
        logger.info(
            "Abort requested conversation=%s state=%s",
            self.conversation_id,
            self._state.value,
        )
        self._token.cancel()
        return True

    async def retry(
        self, message_id: str, model_override: str | None = None
    ) -> ChatTurnMessage | None:
        """Re-send the user turn behind ``message_id`` at the end of the conversation."""

        if self.busy:
            raise ChatBusyError(self.conversation_id, self._state.value)

        # Held from here so no other turn can start between the deletes and the resend.
        token = self._reserve()
        try:
            target = await self._messages.get_message(message_id)
            if target is None or target.conversation_id != self.conversation_id:
                raise MessageNotFoundError(message_id)

            if target.role == "user":
                user_message: ChatTurnMessage | None = target
            elif target.role == "assistant" and target.index is not None:
                user_message = await self._messages.find_nearest(
                    self.conversation_id, target.index, "user", "before"
                )
            else:
                user_message = None
            if user_message is None or user_message.index is None:
                raise MessageNotFoundError(message_id)

            assistant = await self._paired_assistant(user_message)

            text, refs = _resend_payload(user_message)
            if not text.strip() and not refs:
                raise EmptyTurnError("Refusing to resend an empty message")
            await self._hooks.do_action(
                "chat.retry:before",
                {
                    "conversation_id": self.conversation_id,
                    "user_message_id": user_message.id,
                    "assistant_message_id": assistant.id if assistant else None,
                },
            )
            token.raise_if_cancelled()

            if assistant is not None and assistant.id:
                await self._messages.delete_message(assistant.id)
            if user_message.id:
                await self._messages.delete_message(user_message.id)
        except OperationCancelled:
            self._release(SendState.ABORTED)
            return None
        except BaseException:
            self._release()
            raise

        result = await self._run_turn(
            text, refs, SendOptions(model=model_override), token
        )
        await self._hooks.do_action(
            "chat.retry:after",
            {
                "conversation_id": self.conversation_id,
                "original_user_message_id": user_message.id,
                "original_assistant_message_id": assistant.id if assistant else None,
                "assistant_message_id": result.id if result else None,
            },
        )
        return result

    # Turn preparation ---------------------------------------------------

    async def _load_history(self, options: SendOptions) -> list[ChatTurnMessage]:
        stored = await self._messages.list_messages(self.conversation_id)
        history = [
            message
            for message in stored
            if not (message.role == "assistant" and not message.has_content())
        ]

        system_prompt = options.system_prompt or self._settings.system_prompt
        if system_prompt and system_prompt.strip():
            history.insert(0, ChatTurnMessage(role="system", content=system_prompt))

        filtered = await self._hooks.apply_filters(
            "chat.messages:input", history, self.conversation_id
        )
        if isinstance(filtered, list):
            return filtered
        logger.warning("chat.messages:input filter returned a non-list; ignoring it")
        return history

    def _assembly_options(self, options: SendOptions) -> AssemblyOptions:
        async def _include_images(candidates: list[ImageCandidate]) -> Any:
            return await self._hooks.apply_filters(
                "chat.images:include", candidates, self.conversation_id
            )

        candidate_filter = options.candidate_filter
        if candidate_filter is None and self._hooks.has_filter("chat.images:include"):
            candidate_filter = _include_images

        return AssemblyOptions.from_settings(
            self._settings, candidate_filter=candidate_filter
        )

    async def _select_model(self, options: SendOptions) -> str:
        model = options.model or self._settings.default_model
        if options.online and not model.endswith(":online"):
            model = f"{model}:online"
        selected = await self._hooks.apply_filters(
            "chat.model:select", model, self.conversation_id
        )
        if isinstance(selected, str) and selected.strip():
            return selected.strip()
        return model

    async def _paired_assistant(
        self, user_message: ChatTurnMessage
    ) -> ChatTurnMessage | None:
        assert user_message.index is not None
        assistant = await self._messages.find_nearest(
            self.conversation_id, user_message.index, "assistant", "after"
        )
        if assistant is None or assistant.index is None:
            return None
        next_user = await self._messages.find_nearest(
            self.conversation_id, user_message.index, "user", "after"
        )
        if next_user is not None and next_user.index is not None:
            if next_user.index < assistant.index:
                # The following assistant belongs to a later turn.
                return None
        return assistant

    # Streaming ----------------------------------------------------------

    async def _consume(
        self, session: SendSession, request: ChatCompletionRequest
    ) -> None:
        throttle = PersistThrottle(
            self._settings.persist_interval_seconds,
            self._settings.persist_every_chunks,
            clock=self._clock,
        )
        lines = self._transport.stream_lines(request, token=session.token)
        async for event in normalize_stream(lines, token=session.token):
            if isinstance(event, DoneEvent):
                break
            if await self._apply_event(session, event):
                throttle.mark_flushed()
                await self._persist(session)
            elif throttle.record():
                await self._persist(session)

    async def _apply_event(self, session: SendSession, event: StreamEvent) -> bool:
        """Apply one event to the session buffers; True forces a write."""

        session.chunk_count += 1
        context = {
            "conversation_id": session.conversation_id,
            "assistant_message_id": session.assistant.id if session.assistant else None,
            "chunk_index": session.chunk_count,
        }

        if isinstance(event, TextEvent):
            if event.text:
                session.text_parts.append(event.text)
                session.pending = False
            await self._hooks.do_action("chat.stream:delta", event.text, context)
            return False

        if isinstance(event, ReasoningEvent):
            if event.text:
                session.reasoning_parts.append(event.text)
                session.pending = False
            await self._hooks.do_action("chat.stream:reasoning", event.text, context)
            return False

        if isinstance(event, ImageEvent):
            return await self._store_image(session, event)

        return False

    async def _store_image(self, session: SendSession, event: ImageEvent) -> bool:
        cap = self._settings.assistant_image_cap
        if len(session.attachment_hashes) >= cap:
            logger.debug(
                "Skipping streamed image %s; cap of %d reached",
                redact_url(event.url),
                cap,
            )
            return False

        hydrated = await self._hydrator.hydrate(event.url, token=session.token)
        if hydrated is None or not is_image_type(hydrated.media_type):
            logger.debug("Streamed image %s unavailable", redact_url(event.url))
            return False
        data, mime_type = decode_data_uri(hydrated.data_uri)
        if not data or not mime_type:
            return False

        meta = await self._content.store_bytes(
            data, mime_type, guess_filename(mime_type, stem="generated")
        )
        logger.info(
            "Stored streamed image conversation=%s hash=%s size=%d final=%s",
            session.conversation_id,
            meta.hash,
            meta.size_bytes,
            event.final,
        )
        if meta.hash not in session.attachment_hashes:
            session.attachment_hashes.append(meta.hash)
        session.pending = False
        return True

    async def _persist(self, session: SendSession, **extra: Any) -> None:
        assert session.assistant is not None and session.assistant.id is not None
        changes: dict[str, Any] = {
            "content": session.text,
            "reasoning_text": session.reasoning,
            "attachments": list(session.attachment_hashes),
            "pending": session.pending,
        }
        changes.update(extra)
        await self._messages.update_message(session.assistant.id, **changes)

    # Terminal states ----------------------------------------------------

    async def _finalize(self, session: SendSession) -> ChatTurnMessage | None:
        assert session.assistant is not None and session.assistant.id is not None
        text = session.text
        incoming = await self._hooks.apply_filters(
            "chat.message:incoming", text, self.conversation_id
        )
        if isinstance(incoming, str):
            text = incoming
        for processor in session.options.post_processors:
            result = processor(text)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, str):
                text = result

        session.pending = False
        await self._messages.update_message(
            session.assistant.id,
            content=text,
            reasoning_text=session.reasoning,
            attachments=list(session.attachment_hashes),
            pending=False,
            error=None,
        )
        return await self._messages.get_message(session.assistant.id)

    async def _finish_aborted(
        self, session: SendSession | None
    ) -> ChatTurnMessage | None:
        logger.info("Turn aborted conversation=%s", self.conversation_id)
        if session is None or session.assistant is None or session.assistant.id is None:
            return None
        if not session.touched:
            await self._messages.delete_message(session.assistant.id)
            return None
        session.pending = False
        await self._persist(session, error=None)
        return await self._messages.get_message(session.assistant.id)

    async def _finish_errored(
        self, session: SendSession | None, exc: Exception
    ) -> None:
        logger.error(
            "Turn failed conversation=%s state=%s: %s",
            self.conversation_id,
            self._state.value,
            exc,
        )
        await self._hooks.do_action(
            "chat.stream:error",
            {
                "conversation_id": self.conversation_id,
                "assistant_message_id": (
                    session.assistant.id if session and session.assistant else None
                ),
                "error": exc,
            },
        )
        if session is None or session.assistant is None or session.assistant.id is None:
            return
        keep = self._settings.keep_partial_on_error and session.has_content
        if not keep:
            await self._messages.delete_message(session.assistant.id)
            return
        session.pending = False
        await self._persist(session, error=STREAM_INTERRUPTED)


def _resend_payload(message: ChatTurnMessage) -> tuple[str, list[str]]:
    refs = list(message.attachments)
    if isinstance(message.content, list):
        for part in message.content:
            if isinstance(part, (ImagePart, FilePart)) and part.source not in refs:
                refs.append(part.source)
    return message.text(), refs


__all__ = [
    "PersistThrottle",
    "STREAM_INTERRUPTED",
    "SendOptions",
    "SendOrchestrator",
    "SendSession",
    "SendState",
    "StreamTransport",
]
