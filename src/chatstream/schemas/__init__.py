"""Pydantic schemas shared across the chat pipeline."""
