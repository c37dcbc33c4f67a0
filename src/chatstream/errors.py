"""Exceptions raised by the chat pipeline."""

from __future__ import annotations


class ChatStreamError(Exception):
    """Base class for chat pipeline failures."""


class AssemblyError(ChatStreamError):
    """Raised when a request cannot be assembled from history."""


class EmptyTurnError(AssemblyError):
    """Raised when the final user message carries neither text nor attachments."""


class ChatBusyError(ChatStreamError):
    """Raised when a conversation already has a turn in flight."""

    def __init__(self, conversation_id: str, state: str):
        super().__init__(
            f"Conversation {conversation_id} is busy (state={state})"
        )
        self.conversation_id = conversation_id
        self.state = state


class MessageNotFoundError(ChatStreamError):
    """Raised when a message referenced by id cannot be resolved."""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


__all__ = [
    "AssemblyError",
    "ChatBusyError",
    "ChatStreamError",
    "EmptyTurnError",
    "MessageNotFoundError",
]
