"""Pydantic response and request schemas."""
