"""Pydantic models for the HTTP contract."""
