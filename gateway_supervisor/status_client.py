# -*- coding: utf-8 -*-
"""
Gateway auth-status client.

The authoritative answer to "is this session logged in" comes from the
gateway itself, not from the login page text.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from .config import AUTH_STATUS_PATH, HEALTH_REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class GatewayStatusClient:
    """
    Reads /v1/api/iserver/auth/status from the local gateway.

    port_source is called on every request so the client follows the
    supervisor when it moves to an alternate port.
    """

    def __init__(
        self,
        port_source: Callable[[], int],
        host: str = "localhost",
        timeout: float = HEALTH_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._port_source = port_source
        self.host = host
        self.timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return f"https://{self.host}:{self._port_source()}{AUTH_STATUS_PATH}"

    async def auth_status(self) -> Dict[str, Any]:
        """
        Raw status payload.

        Raises:
            httpx.HTTPError on transport failure or non-2xx answer
        """
        async with httpx.AsyncClient(verify=False, timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            data = response.json()
        logger.debug(f"Auth status response: {data}")
        return data if isinstance(data, dict) else {}

    async def is_authenticated(self) -> bool:
        """True only when the gateway reports authenticated=true."""
        try:
            status = await self.auth_status()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Auth status check failed: {e!r}")
            return False
        return bool(status.get("authenticated"))
