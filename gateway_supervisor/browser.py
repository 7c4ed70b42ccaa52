# -*- coding: utf-8 -*-
"""
Browser session providers for the headless login.

Three ways to get a page pointed at the gateway login:
- LocalBrowserProvider: launch headless Chromium on this machine
- RemoteBrowserProvider: connect to a browser service (IB_BROWSER_ENDPOINT)
- TunneledBrowserProvider: remote browser + secure tunnel for loopback targets

A BrowserSession owns everything it opened and closes all of it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from playwright.async_api import async_playwright

from .config import CHROMIUM_ARGS, GatewaySettings
from .tunnel import Tunnel, TunnelManager, is_local_url

logger = logging.getLogger(__name__)


class BrowserSession:
    """Playwright objects for one authentication attempt."""

    def __init__(
        self,
        playwright: Any,
        browser: Any,
        page: Any,
        target_url: str,
        tunnel: Optional[Tunnel] = None,
    ):
        self.playwright = playwright
        self.browser = browser
        self.page = page
        self.target_url = target_url
        self.tunnel = tunnel
        self._closed = False

    async def close(self) -> None:
        """Close page, browser, playwright and tunnel. Never raises."""
        if self._closed:
            return
        self._closed = True

        for name, closer in (
            ("browser", getattr(self.browser, "close", None)),
            ("playwright", getattr(self.playwright, "stop", None)),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.warning(f"⚠️ Error closing {name}: {e!r}")

        if self.tunnel is not None:
            await self.tunnel.cleanup()


class BrowserProvider(ABC):
    """Produces a BrowserSession for a target URL."""

    name = "browser"

    def __init__(self, playwright_factory: Callable[[], Any] = async_playwright):
        self._playwright_factory = playwright_factory

    @abstractmethod
    async def _connect(self, playwright: Any) -> Any:
        """Return a playwright Browser."""

    async def _prepare(self, target_url: str) -> Tuple[str, Optional[Tunnel]]:
        return target_url, None

    def _headers(self, tunnel: Optional[Tunnel]) -> Dict[str, str]:
        return {}

    async def open(self, target_url: str) -> BrowserSession:
        """
        Raises:
            TunnelCreationFailed: tunnel provider could not open its tunnel
            playwright errors on launch/connect failure
        """
        url, tunnel = await self._prepare(target_url)

        playwright = None
        browser = None
        try:
            playwright = await self._playwright_factory().start()
            browser = await self._connect(playwright)
            context = await browser.new_context(ignore_https_errors=True)
            page = await context.new_page()
            headers = self._headers(tunnel)
            if headers:
                await page.set_extra_http_headers(headers)
        except Exception:
            await BrowserSession(playwright, browser, None, url, tunnel).close()
            raise

        logger.info(f"🌐 Browser session opened via {self.name}")
        return BrowserSession(playwright, browser, page, url, tunnel)


class LocalBrowserProvider(BrowserProvider):
    name = "local"

    def __init__(self, headless: bool = True, playwright_factory: Callable[[], Any] = async_playwright):
        super().__init__(playwright_factory)
        self.headless = headless

    async def _connect(self, playwright: Any) -> Any:
        logger.info("🖥️ Launching local Chromium")
        return await playwright.chromium.launch(headless=self.headless, args=list(CHROMIUM_ARGS))


class RemoteBrowserProvider(BrowserProvider):
    """Connects to a browser service; ws:// uses the playwright protocol, http(s):// uses CDP."""

    name = "remote"

    def __init__(self, endpoint: str, playwright_factory: Callable[[], Any] = async_playwright):
        super().__init__(playwright_factory)
        self.endpoint = endpoint

    async def _connect(self, playwright: Any) -> Any:
        logger.info("🔗 Connecting to remote browser service")
        if self.endpoint.startswith(("http://", "https://")):
            return await playwright.chromium.connect_over_cdp(self.endpoint)
        return await playwright.chromium.connect(self.endpoint)


class TunneledBrowserProvider(RemoteBrowserProvider):
    """Remote browser reaching a loopback target through a basic-auth tunnel."""

    name = "remote+tunnel"

    def __init__(
        self,
        endpoint: str,
        tunnels: TunnelManager,
        expiry_minutes: float,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        super().__init__(endpoint, playwright_factory)
        self.tunnels = tunnels
        self.expiry_minutes = expiry_minutes

    async def _prepare(self, target_url: str) -> Tuple[str, Optional[Tunnel]]:
        tunnel = await self.tunnels.create_secure_auth_tunnel(target_url, self.expiry_minutes)
        return tunnel.url_for(target_url), tunnel

    def _headers(self, tunnel: Optional[Tunnel]) -> Dict[str, str]:
        if tunnel is None:
            return {}
        return {"Authorization": tunnel.authorization_header}


def select_browser_provider(
    settings: GatewaySettings,
    target_url: str,
    tunnels: Optional[TunnelManager] = None,
) -> BrowserProvider:
    """Local when no endpoint is configured; tunneled when a remote browser must reach loopback."""
    endpoint = settings.browser_endpoint
    if not endpoint:
        return LocalBrowserProvider()
    if is_local_url(target_url):
        return TunneledBrowserProvider(
            endpoint,
            tunnels or TunnelManager(),
            settings.tunnel_expiry_minutes,
        )
    return RemoteBrowserProvider(endpoint)
