"""Redaction for DEBUG logs.

Outbound WebSocket frames carry the long-lived access token and the client
configuration carries broker credentials.  Both go through
:func:`redact_for_log` before they are logged.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

REDACTED = "<redacted>"

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "access_token",
        "accesstoken",
        "api_password",
        "authorization",
        "cookie",
        "password",
        "refresh_token",
        "token",
    }
)

_MAX_DEPTH = 20


def is_secret_key(key: object) -> bool:
    return str(key).lower() in _SECRET_KEYS


def _redact_mapping(items: Mapping[Any, Any], max_string: int, depth: int) -> dict[str, Any]:
    return {
        str(key): REDACTED if is_secret_key(key) else _redact(value, max_string, depth + 1)
        for key, value in items.items()
    }


def _redact(value: Any, max_string: int, depth: int) -> Any:
    if depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        # config objects: HassConfig, MqttSettings
        fields = {field.name: getattr(value, field.name) for field in dataclasses.fields(value)}
        return _redact_mapping(fields, max_string, depth)
    if isinstance(value, Mapping):
        return _redact_mapping(value, max_string, depth)
    if isinstance(value, Sequence):
        return [_redact(item, max_string, depth + 1) for item in value]
    return repr(value)


def redact_for_log(value: Any, *, max_string: int = 512) -> Any:
    """Return a copy of *value* with secrets masked and long strings cut.

    Mappings and dataclasses have the values of credential keys
    (``access_token``, ``password``, ``Authorization``, ...) replaced by
    ``"<redacted>"``.  Bytes are summarised by length and unknown objects
    fall back to ``repr``.
    """
    return _redact(value, max_string, 0)
