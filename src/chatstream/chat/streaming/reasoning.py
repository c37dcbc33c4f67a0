"""Utilities for working with reasoning payloads in streaming responses."""

from __future__ import annotations

from typing import Any

_TEXT_KEYS = ("text", "summary", "content", "output", "explanation")


def flatten_reasoning_text(payload: Any) -> list[str]:
    """Collect every non-empty text fragment nested inside a reasoning payload."""

    fragments: list[str] = []

    def _walk(node: Any) -> None:
        if node is None:
            return

        if isinstance(node, str):
            if node:
                fragments.append(node)
            return

        if isinstance(node, list):
            for item in node:
                _walk(item)
            return

        if isinstance(node, dict):
            for key in _TEXT_KEYS:
                if key in node:
                    _walk(node[key])

    _walk(payload)
    return fragments


def reasoning_from_details(details: Any) -> list[str]:
    """Return reasoning text for each entry of a `reasoning_details` delta.

    `reasoning.text` entries contribute their `text`, `reasoning.summary`
    entries their (possibly nested) `summary`. Encrypted entries carry nothing
    displayable and are ignored.
    """

    if not isinstance(details, list):
        return []

    texts: list[str] = []
    for entry in details:
        if not isinstance(entry, dict):
            continue
        entry_type = entry.get("type")
        if entry_type == "reasoning.text":
            value = entry.get("text")
            if isinstance(value, str) and value:
                texts.append(value)
        elif entry_type == "reasoning.summary":
            summary = "".join(flatten_reasoning_text(entry.get("summary")))
            if summary:
                texts.append(summary)
    return texts


__all__ = ["flatten_reasoning_text", "reasoning_from_details"]
