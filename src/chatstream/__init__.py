"""Streaming chat-turn pipeline for OpenRouter-compatible endpoints."""

__version__ = "0.1.0"
