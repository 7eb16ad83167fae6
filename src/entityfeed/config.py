"""Client configuration for entityfeed."""

from __future__ import annotations

import dataclasses
import os
from typing import Any, Literal

from entityfeed._constants import BASE_URL, MQTT_STATESTREAM_BASE_TOPIC, WEBSOCKET_PATH
from entityfeed.exceptions import EntityFeedConfigError

LiveTransport = Literal["websocket", "mqtt"]


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker settings for the MQTT statestream live transport.

    Home Assistant's ``mqtt_statestream`` integration publishes every
    state change under ``<base_topic>/<domain>/<object_id>/state`` plus
    sibling topics for ``last_changed``, ``last_updated`` and attributes.
    """

    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    base_topic: str = MQTT_STATESTREAM_BASE_TOPIC
    tls: bool = False
    keepalive: int = 60


@dataclasses.dataclass(frozen=True)
class HassConfig:
    """Client configuration.

    Parameters
    ----------
    access_token : str
        Home Assistant long-lived access token.
    base_url : str
        Home Assistant base URL, without a trailing slash.
    live_transport : str
        ``"websocket"`` (default) subscribes to ``state_changed`` over the
        WebSocket API.  ``"mqtt"`` reads the MQTT statestream instead.
    request_timeout : float
        Seconds allowed for a single REST request or WebSocket command.
    reconnect_attempts : int
        Attempts made to (re-)establish a live subscription before giving
        up.  The affected sources keep serving buffered data afterwards.
    reconnect_base_delay : float
        Delay before the second attempt, in seconds.  Doubles per attempt.
    reconnect_max_delay : float
        Upper bound for the backoff delay, in seconds.
    mqtt : MqttSettings
        Broker settings, used when ``live_transport == "mqtt"``.
    """

    access_token: str
    base_url: str = BASE_URL
    live_transport: LiveTransport = "websocket"
    request_timeout: float = 10.0
    reconnect_attempts: int = 5
    reconnect_base_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if not self.access_token or not self.access_token.strip():
            raise EntityFeedConfigError("access_token must be non-empty")
        if self.live_transport not in ("websocket", "mqtt"):
            raise EntityFeedConfigError(f"Unsupported live_transport: {self.live_transport!r}")
        if self.reconnect_attempts < 1:
            raise EntityFeedConfigError("reconnect_attempts must be at least 1")
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    @property
    def websocket_url(self) -> str:
        """WebSocket endpoint derived from :attr:`base_url`."""
        if self.base_url.startswith("https://"):
            return "wss://" + self.base_url[len("https://") :] + WEBSOCKET_PATH
        if self.base_url.startswith("http://"):
            return "ws://" + self.base_url[len("http://") :] + WEBSOCKET_PATH
        return self.base_url + WEBSOCKET_PATH

    @classmethod
    def from_env(cls, **overrides: Any) -> HassConfig:
        """Create configuration from environment variables.

        Reads ``ENTITYFEED_TOKEN`` and optional ``ENTITYFEED_*`` variables.
        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        HassConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "ENTITYFEED_MQTT_HOST": "host",
            "ENTITYFEED_MQTT_USERNAME": "username",
            "ENTITYFEED_MQTT_PASSWORD": "password",
            "ENTITYFEED_MQTT_BASE_TOPIC": "base_topic",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val

        port_env = env.get("ENTITYFEED_MQTT_PORT")
        if port_env is not None:
            mqtt_kwargs["port"] = int(port_env)
        tls_env = env.get("ENTITYFEED_MQTT_TLS")
        if tls_env is not None:
            mqtt_kwargs["tls"] = _env_bool(tls_env, False)

        # Allow overriding broker fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}

        _ENV_CONFIG_MAP = {
            "ENTITYFEED_TOKEN": "access_token",
            "ENTITYFEED_URL": "base_url",
            "ENTITYFEED_LIVE_TRANSPORT": "live_transport",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        timeout_env = env.get("ENTITYFEED_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = float(timeout_env)

        attempts_env = env.get("ENTITYFEED_RECONNECT_ATTEMPTS")
        if attempts_env is not None and "reconnect_attempts" not in overrides:
            config_kwargs["reconnect_attempts"] = int(attempts_env)

        config_kwargs.update(overrides)
        if "access_token" not in config_kwargs:
            raise EntityFeedConfigError("ENTITYFEED_TOKEN is not set")

        return cls(**config_kwargs)
