"""Ingestion helpers.

This package converts Home Assistant payloads into validated samples.
"""

__all__: list[str] = []
