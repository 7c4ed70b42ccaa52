# -*- coding: utf-8 -*-
"""
Health Checker: liveness of the gateway's local HTTPS endpoint.

The gateway answers unauthenticated requests with 401 or a 302 to the
login page, so 200/401/302 all count as alive. The endpoint uses a
self-signed certificate: TLS verification is off for these requests only.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from .config import (
    AUTH_STATUS_PATH,
    HEALTH_INTERVAL_SECONDS,
    HEALTH_MAX_ATTEMPTS,
    HEALTH_OK_STATUSES,
    HEALTH_REQUEST_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class HealthChecker:
    """
    Polls https://<host>:<port>/ until the gateway responds.

    A failed attempt is never fatal; only exhausting max_attempts is.
    """

    def __init__(
        self,
        host: str = "localhost",
        timeout: float = HEALTH_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.host = host
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def base_url(self, port: int) -> str:
        return f"https://{self.host}:{port}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            verify=False,
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    async def check(self, port: int) -> bool:
        """One GET against the root endpoint."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url(port)}/")
        except httpx.HTTPError as e:
            logger.debug(f"Health check on port {port} failed: {e!r}")
            return False
        return response.status_code in HEALTH_OK_STATUSES

    async def poll(
        self,
        port: int,
        max_attempts: int = HEALTH_MAX_ATTEMPTS,
        interval: float = HEALTH_INTERVAL_SECONDS,
    ) -> bool:
        """
        Check repeatedly until alive or attempts are exhausted.

        Returns:
            True as soon as one check passes, False after max_attempts failures.
        """
        for attempt in range(1, max_attempts + 1):
            if await self.check(port):
                logger.info(f"✅ Gateway is responding on port {port}")
                return True

            if attempt % 5 == 0:
                logger.info(f"⏳ Still waiting for gateway... ({attempt}/{max_attempts})")

            if attempt < max_attempts:
                await self._sleep(interval)

        return False

    async def identify(self, port: int) -> Optional[bool]:
        """
        Ask the port whether it is a gateway.

        Returns:
            True  - answers the gateway auth-status route (200/401)
            False - an HTTPS server that is not the gateway
            None  - no HTTPS answer; caller falls back to process heuristics
        """
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url(port)}{AUTH_STATUS_PATH}")
        except httpx.HTTPError as e:
            logger.debug(f"Identity probe on port {port} got no answer: {e!r}")
            return None
        return response.status_code in (200, 401)
