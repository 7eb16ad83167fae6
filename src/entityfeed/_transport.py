"""REST transport for the Home Assistant HTTP API."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from entityfeed._constants import USER_AGENT
from entityfeed.config import HassConfig
from entityfeed.exceptions import EntityFeedAuthenticationError, EntityFeedTransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the client.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`RestTransport`) concrete.
    """

    async def get_json(self, endpoint: str, params: Mapping[str, str] | None = None) -> Any | None:
        ...


class RestTransport:
    """Authenticated JSON GET requests against Home Assistant."""

    def __init__(self, config: HassConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _headers(self) -> dict[str, str]:
        return {
            "authorization": f"Bearer {self._config.access_token}",
            "content-type": "application/json",
            "user-agent": USER_AGENT,
        }

    async def get_json(self, endpoint: str, params: Mapping[str, str] | None = None) -> Any | None:
        """GET *endpoint* and decode the JSON body.

        Returns ``None`` on 404, which Home Assistant uses for unknown
        entities.

        Raises
        ------
        EntityFeedAuthenticationError
            On 401 / 403.
        EntityFeedTransportError
            On any other non-200 status, network error or invalid JSON.
        """
        url = f"{self._config.base_url}{endpoint}"
        _logger.debug("GET %s params=%s", url, dict(params or {}))

        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)
        try:
            async with self._http.get(url, params=params, headers=self._headers(), timeout=timeout) as resp:
                text = await resp.text()
                if resp.status == 404:
                    return None
                if resp.status in (401, 403):
                    raise EntityFeedAuthenticationError(
                        f"HTTP {resp.status} from {endpoint}: access token rejected",
                        code=str(resp.status),
                        endpoint=endpoint,
                    )
                if resp.status != 200:
                    raise EntityFeedTransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except (EntityFeedTransportError, EntityFeedAuthenticationError):
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise EntityFeedTransportError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise EntityFeedTransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc
