# -*- coding: utf-8 -*-
"""
Secure Tunnel: short-lived public URL for a loopback login page.

A remote browser cannot reach https://localhost:<port>. The tunnel exposes
the local gateway through ngrok, guarded by a random per-session basic-auth
credential.

Invariants:
- Every tunnel has an expiry; cleanup runs even if the caller forgets it
- cleanup() is idempotent
- Credentials never appear in logs (registered with the mask filter)
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
import time
from typing import Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit, urlunsplit

from pyngrok import ngrok
from pyngrok.exception import PyngrokError

from .config import LOCAL_HOSTNAMES, TUNNEL_EXPIRY_MINUTES
from .errors import TunnelCreationFailed
from .logging_mask import get_mask_filter

logger = logging.getLogger(__name__)


def is_local_url(url: str) -> bool:
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return False
    return hostname in LOCAL_HOSTNAMES


class TunnelBackend(Protocol):
    """Blocking tunnel operations; called from a worker thread."""

    def connect(self, addr: str, basic_auth: str) -> str: ...

    def disconnect(self, public_url: str) -> None: ...


class NgrokBackend:
    """pyngrok-backed tunnels. Auth token comes from NGROK_AUTHTOKEN / ngrok config."""

    def connect(self, addr: str, basic_auth: str) -> str:
        tunnel = ngrok.connect(addr, proto="http", basic_auth=[basic_auth])
        return tunnel.public_url

    def disconnect(self, public_url: str) -> None:
        ngrok.disconnect(public_url)


class Tunnel:
    """One open tunnel. Created by TunnelManager only."""

    def __init__(
        self,
        manager: "TunnelManager",
        public_url: str,
        original_url: str,
        username: str,
        password: str,
        expires_at: float,
    ):
        self._manager = manager
        self.public_url = public_url
        self.original_url = original_url
        self.username = username
        self.password = password
        self.expires_at = expires_at
        self._timer: Optional[asyncio.TimerHandle] = None
        self._closed = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def basic_auth(self) -> str:
        return f"{self.username}:{self.password}"

    @property
    def authorization_header(self) -> str:
        token = base64.b64encode(self.basic_auth.encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    @property
    def closed(self) -> bool:
        return self._closed

    def url_for(self, local_url: str) -> str:
        """Public URL carrying the path and query of local_url."""
        local = urlsplit(local_url)
        public = urlsplit(self.public_url)
        return urlunsplit((public.scheme, public.netloc, local.path, local.query, local.fragment))

    def _schedule_expiry(self, loop: asyncio.AbstractEventLoop, seconds: float) -> None:
        self._timer = loop.call_later(seconds, self._expire)

    def _expire(self) -> None:
        if self._closed:
            return
        logger.info(f"⏰ Tunnel expired: {self.public_url}")
        self._cleanup_task = asyncio.ensure_future(self.cleanup())

    async def cleanup(self) -> None:
        """Close the tunnel. Safe to call any number of times. Never raises."""
        if self._closed:
            return
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        self._manager._forget(self)
        try:
            await asyncio.to_thread(self._manager.backend.disconnect, self.public_url)
            logger.info(f"🔒 Tunnel closed: {self.public_url}")
        except Exception as e:
            logger.warning(f"⚠️ Error closing tunnel {self.public_url}: {e!r}")


class TunnelManager:
    """
    Registry of active tunnels.

    Usage:
        manager = TunnelManager()
        tunnel = await manager.create_secure_auth_tunnel("https://localhost:5000")
        ...
        await tunnel.cleanup()
    """

    def __init__(self, backend: Optional[TunnelBackend] = None):
        self.backend = backend or NgrokBackend()
        self._active: Dict[str, Tunnel] = {}

    def active_tunnels(self) -> List[Tunnel]:
        return list(self._active.values())

    def _forget(self, tunnel: Tunnel) -> None:
        self._active.pop(tunnel.public_url, None)

    async def create_secure_auth_tunnel(
        self,
        local_url: str,
        expiry_minutes: float = TUNNEL_EXPIRY_MINUTES,
    ) -> Tunnel:
        """
        Open a basic-auth protected tunnel to local_url's host:port.

        Raises:
            TunnelCreationFailed: URL unusable or tunnel backend failed
        """
        parts = urlsplit(local_url)
        if not parts.hostname:
            raise TunnelCreationFailed(f"Cannot tunnel URL without host: {local_url}")
        scheme = parts.scheme or "http"
        port = parts.port or (443 if scheme == "https" else 80)
        addr = f"{scheme}://{parts.hostname}:{port}"

        username = f"ib-{secrets.token_hex(4)}"
        password = secrets.token_urlsafe(16)
        get_mask_filter().add_secret(password)

        logger.info(f"🌐 Creating secure tunnel for {addr} (expires in {expiry_minutes} min)")
        try:
            public_url = await asyncio.to_thread(self.backend.connect, addr, f"{username}:{password}")
        except (PyngrokError, OSError) as e:
            raise TunnelCreationFailed(f"Failed to create secure tunnel: {e}", cause=e) from e

        tunnel = Tunnel(
            manager=self,
            public_url=public_url,
            original_url=local_url,
            username=username,
            password=password,
            expires_at=time.time() + expiry_minutes * 60,
        )
        tunnel._schedule_expiry(asyncio.get_running_loop(), expiry_minutes * 60)
        self._active[public_url] = tunnel

        logger.info(f"✅ Secure tunnel created: {public_url}")
        return tunnel

    async def create_secure_tunnel_url(self, local_url: str) -> Tuple[str, Optional[Tunnel]]:
        """
        Public URL for local_url, or local_url unchanged when it is not loopback.

        Returns:
            (url, tunnel) where tunnel is None if no tunnel was needed
        """
        if not is_local_url(local_url):
            return local_url, None
        tunnel = await self.create_secure_auth_tunnel(local_url)
        return tunnel.url_for(local_url), tunnel

    async def cleanup_all(self) -> None:
        tunnels = self.active_tunnels()
        if tunnels:
            logger.info(f"🧹 Cleaning up {len(tunnels)} active tunnels")
        for tunnel in tunnels:
            await tunnel.cleanup()

    def cleanup_all_sync(self) -> None:
        """Blocking variant for atexit, where no event loop is running."""
        for tunnel in self.active_tunnels():
            tunnel._closed = True
            if tunnel._timer is not None:
                tunnel._timer.cancel()
                tunnel._timer = None
            self._forget(tunnel)
            try:
                self.backend.disconnect(tunnel.public_url)
            except Exception as e:
                logger.warning(f"⚠️ Error closing tunnel {tunnel.public_url}: {e!r}")
