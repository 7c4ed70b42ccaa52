# -*- coding: utf-8 -*-
"""
Supervisor: the one object tool handlers talk to.

Two narrow contracts:
- ensure_gateway_ready(): returns the port of a READY gateway or raises GatewayError
- ensure_authenticated(): returns an AuthResult, never raises for login outcomes

Every shutdown trigger (signals, excepthook, loop exception handler,
atexit, parent exit) funnels into one idempotent shutdown().
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

import psutil

from .auth_driver import AuthenticationDriver, AuthRequest, ProviderFactory
from .browser import BrowserProvider, select_browser_provider
from .config import GatewaySettings, load_settings
from .contracts import AuthResult, DetectionSource, ErrorKind
from .logging_mask import get_mask_filter
from .process_supervisor import ProcessSupervisor
from .status_client import GatewayStatusClient
from .tunnel import TunnelManager

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")
PARENT_CHECK_INTERVAL_SECONDS = 2.0


class Supervisor:
    """
    Composition root for the gateway process and the headless login.

    Usage:
        supervisor = Supervisor(load_settings())
        supervisor.install_signal_handlers()
        port = await supervisor.ensure_gateway_ready()
        result = await supervisor.ensure_authenticated()
        await supervisor.shutdown()
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        process: Optional[ProcessSupervisor] = None,
        status: Optional[GatewayStatusClient] = None,
        tunnels: Optional[TunnelManager] = None,
        provider_factory: Optional[ProviderFactory] = None,
        driver: Optional[AuthenticationDriver] = None,
    ):
        self.settings = settings or load_settings()
        self.process = process or ProcessSupervisor(self.settings)
        self.status = status or GatewayStatusClient(self.process.current_port, host=self.settings.host)
        self.tunnels = tunnels or TunnelManager()
        self.driver = driver or AuthenticationDriver(
            provider_factory or self._select_provider,
            status_check=self.status.is_authenticated,
        )

        self._auth_lock = asyncio.Lock()
        self._shutdown_task: Optional[asyncio.Task] = None
        self._shutdown_done = False
        self._parent_watch: Optional[asyncio.Task] = None
        self._atexit_registered = False
        self._closed = asyncio.Event()

        if self.settings.password:
            get_mask_filter().add_secret(self.settings.password)

    def _select_provider(self, target_url: str) -> BrowserProvider:
        return select_browser_provider(self.settings, target_url, self.tunnels)

    # === Gateway ===

    async def ensure_gateway_ready(self) -> int:
        """
        Raises:
            GatewayError subclasses (GatewayNotFound, StartupTimeout, ...)
        """
        return await self.process.ensure_ready()

    async def quick_start(self) -> Optional[int]:
        return await self.process.quick_start()

    def is_ready(self) -> bool:
        return self.process.is_ready()

    def current_port(self) -> int:
        return self.process.current_port()

    def gateway_url(self) -> str:
        return self.process.gateway_url()

    # === Authentication ===

    async def is_authenticated(self) -> bool:
        if not self.process.is_ready():
            return False
        return await self.status.is_authenticated()

    async def ensure_authenticated(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        force: bool = False,
    ) -> AuthResult:
        """
        Log in through the headless driver unless already authenticated.

        Args:
            username/password: override IB_USERNAME / IB_PASSWORD_AUTH
            timeout: overall budget in seconds (default IB_AUTH_TIMEOUT)
            force: skip the already-authenticated pre-check

        Raises:
            GatewayError only when the gateway itself cannot be brought up
        """
        await self.ensure_gateway_ready()

        async with self._auth_lock:
            if not force and await self.status.is_authenticated():
                logger.info("✅ Gateway session already authenticated")
                return AuthResult.succeeded("Already authenticated", detected_by=DetectionSource.STATUS_CHECK)

            username = username or self.settings.username
            password = password or self.settings.password
            if password:
                get_mask_filter().add_secret(password)

            if not (self.settings.headless_mode or username):
                return AuthResult.failed(
                    ErrorKind.AUTHENTICATION_FAILED,
                    f"Headless authentication is disabled. Open {self.gateway_url()} in a browser to log in.",
                )

            request = AuthRequest(
                url=self.gateway_url(),
                username=username,
                password=password,
                timeout=self.settings.auth_timeout if timeout is None else timeout,
                form_timeout=self.settings.auth_form_timeout,
                poll_interval=self.settings.auth_poll_interval,
            )
            return await self.driver.authenticate(request)

    def status_snapshot(self) -> Dict[str, Any]:
        process = self.process.process
        return {
            "state": self.process.state.value,
            "port": self.current_port(),
            "url": self.gateway_url(),
            "process": process.to_dict() if process else None,
            "active_tunnels": len(self.tunnels.active_tunnels()),
        }

    # === Shutdown ===

    async def shutdown(self) -> None:
        """Stop everything once. Later calls await the same shutdown."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        logger.info("🛑 Shutting down gateway supervisor...")
        watch = self._parent_watch
        if watch is not None and watch is not asyncio.current_task() and not watch.done():
            watch.cancel()
        try:
            await self.tunnels.cleanup_all()
        except Exception as e:
            logger.warning(f"⚠️ Tunnel cleanup failed: {e!r}")
        await self.process.stop()
        self._shutdown_done = True
        self._closed.set()
        logger.info("✅ Gateway supervisor shut down")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def shutdown_sync(self) -> None:
        """Blocking shutdown for atexit / excepthook. Never raises."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        try:
            self.tunnels.cleanup_all_sync()
        except Exception as e:
            logger.warning(f"⚠️ Tunnel cleanup failed: {e!r}")
        self.process.force_kill()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for name in SHUTDOWN_SIGNALS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self._on_signal, name)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Cannot install {name} handler: {e!r}")

    def _on_signal(self, name: str) -> None:
        logger.info(f"📡 Received {name}, cleaning up...")
        asyncio.ensure_future(self.shutdown())

    def install_exit_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """atexit, sys.excepthook and the loop exception handler."""
        if not self._atexit_registered:
            atexit.register(self.shutdown_sync)
            self._atexit_registered = True

        previous_hook = sys.excepthook

        def _excepthook(exc_type, exc, tb):
            logger.error(f"❌ Uncaught exception: {exc!r}")
            self.shutdown_sync()
            previous_hook(exc_type, exc, tb)

        sys.excepthook = _excepthook

        loop = loop or asyncio.get_running_loop()

        def _loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
            loop.default_exception_handler(context)
            if isinstance(context.get("exception"), Exception):
                logger.error("❌ Unhandled exception in event loop, shutting down")
                asyncio.ensure_future(self.shutdown())

        loop.set_exception_handler(_loop_exception)

    # === Parent watcher ===

    def watch_parent(self, interval: float = PARENT_CHECK_INTERVAL_SECONDS) -> asyncio.Task:
        """Shut down when the launching process goes away."""
        if self._parent_watch is None or self._parent_watch.done():
            self._parent_watch = asyncio.ensure_future(self._watch_parent(os.getppid(), interval))
        return self._parent_watch

    async def _watch_parent(self, parent_pid: int, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if os.getppid() != parent_pid or not psutil.pid_exists(parent_pid):
                logger.info(f"🔌 Parent process {parent_pid} disconnected, cleaning up...")
                await self.shutdown()
                return

    async def __aenter__(self) -> "Supervisor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
