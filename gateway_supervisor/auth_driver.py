# -*- coding: utf-8 -*-
"""
Headless Authentication Driver: automated login against the gateway page.

State machine:
    IDLE -> BROWSER_OPEN -> FORM_SUBMITTED -> POLLING -> SUCCEEDED | TIMED_OUT | FAILED

Detection order on every tick:
1. Status-check callback (gateway auth-status endpoint) - authoritative
2. Login page text (SUCCESS_MARKER) - fallback, tagged page_content

Invariants:
- Outcomes are returned as AuthResult, never raised
- The browser session (and its tunnel) is closed before authenticate() returns
- Errors inside a polling tick never abort the loop
- The login deadline starts after the form is submitted; the form wait has its own timeout
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .browser import BrowserProvider, BrowserSession
from .config import (
    AUTH_FORM_TIMEOUT_SECONDS,
    AUTH_POLL_INTERVAL_SECONDS,
    AUTH_TIMEOUT_SECONDS,
    PASSWORD_SELECTOR,
    SUBMIT_SELECTOR,
    SUCCESS_MARKER,
    TWO_FACTOR_INDICATORS,
    TWO_FACTOR_URL_INDICATORS,
    USERNAME_SELECTOR,
)
from .contracts import AuthResult, AuthState, DetectionSource, ErrorKind
from .errors import AuthenticationError, TunnelCreationFailed

logger = logging.getLogger(__name__)

StatusCheck = Callable[[], Awaitable[bool]]
ProviderFactory = Callable[[str], BrowserProvider]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class AuthRequest:
    """One login attempt. Timeouts in seconds."""
    url: str
    username: str
    password: str
    timeout: float = AUTH_TIMEOUT_SECONDS
    form_timeout: float = AUTH_FORM_TIMEOUT_SECONDS
    poll_interval: float = AUTH_POLL_INTERVAL_SECONDS

    def __repr__(self) -> str:
        return f"AuthRequest(url={self.url!r}, username={self.username!r}, timeout={self.timeout})"


def looks_like_two_factor(content: str, url: str) -> bool:
    text = content.lower()
    if any(indicator.lower() in text for indicator in TWO_FACTOR_INDICATORS):
        return True
    return any(indicator in (url or "").lower() for indicator in TWO_FACTOR_URL_INDICATORS)


class AuthenticationDriver:
    """
    Drives one login at a time.

    Usage:
        driver = AuthenticationDriver(provider_factory, status_check=status.is_authenticated)
        result = await driver.authenticate(AuthRequest(url, user, password))
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        status_check: Optional[StatusCheck] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._provider_factory = provider_factory
        self._status_check = status_check
        self._sleep = sleep
        self._clock = clock
        self.state = AuthState.IDLE

    async def authenticate(self, request: AuthRequest) -> AuthResult:
        self.state = AuthState.IDLE
        started = self._clock()

        if not request.username or not request.password:
            self.state = AuthState.FAILED
            return AuthResult.failed(
                ErrorKind.AUTHENTICATION_FAILED,
                "Username and password are required for headless authentication",
            )

        logger.info(f"🔐 Starting headless authentication at {request.url}")
        session: Optional[BrowserSession] = None
        try:
            try:
                try:
                    session = await self._provider_factory(request.url).open(request.url)
                    self.state = AuthState.BROWSER_OPEN
                    await self._submit_login(session, request)
                except (TunnelCreationFailed, AuthenticationError):
                    raise
                except Exception as e:
                    raise AuthenticationError(f"Headless authentication failed: {e}", cause=e) from e
                self.state = AuthState.FORM_SUBMITTED
            except TunnelCreationFailed as e:
                self.state = AuthState.FAILED
                logger.error(f"❌ {e}")
                return AuthResult.failed(
                    ErrorKind.TUNNEL_CREATION_FAILED,
                    "Could not create secure tunnel for remote browser",
                    detail=str(e),
                    elapsed=self._clock() - started,
                )
            except AuthenticationError as e:
                self.state = AuthState.FAILED
                logger.error(f"❌ Headless authentication setup failed: {e.cause!r}")
                return AuthResult.failed(
                    ErrorKind.AUTHENTICATION_FAILED,
                    str(e),
                    detail=type(e.cause).__name__ if e.cause is not None else None,
                    elapsed=self._clock() - started,
                )

            deadline = self._clock() + request.timeout
            return await self._poll(session.page, started, deadline, request.poll_interval)
        finally:
            if session is not None:
                await session.close()

    async def _submit_login(self, session: BrowserSession, request: AuthRequest) -> None:
        page = session.page
        form_timeout_ms = request.form_timeout * 1000

        await page.goto(session.target_url, wait_until="domcontentloaded", timeout=form_timeout_ms)
        logger.info("⏳ Waiting for login form...")
        await page.wait_for_selector(USERNAME_SELECTOR, timeout=form_timeout_ms)

        await page.fill(USERNAME_SELECTOR, request.username)
        await page.fill(PASSWORD_SELECTOR, request.password)
        await page.click(SUBMIT_SELECTOR)
        logger.info("📨 Login form submitted")

    async def _poll(self, page: Any, started: float, deadline: float, interval: float) -> AuthResult:
        self.state = AuthState.POLLING
        waiting_for_2fa = False
        tick = 0

        while self._clock() < deadline:
            await self._sleep(interval)
            tick += 1
            try:
                source = await self._detect_success(page)
                if source is not None:
                    elapsed = self._clock() - started
                    self.state = AuthState.SUCCEEDED
                    logger.info(f"✅ Authentication succeeded (tick {tick}, {source.value}, {elapsed:.1f}s)")
                    return AuthResult.succeeded(
                        "Authentication completed successfully",
                        detected_by=source,
                        elapsed=elapsed,
                    )

                content = await page.content()
                if looks_like_two_factor(content, getattr(page, "url", "")):
                    if not waiting_for_2fa:
                        logger.info("📱 Two-factor authentication detected - approve the login on your device")
                    waiting_for_2fa = True
                elif tick % 5 == 0:
                    logger.info(f"⏳ Still working on authentication... ({self._clock() - started:.0f}s)")
            except Exception as e:
                logger.warning(f"⚠️ Authentication check failed on tick {tick}: {e!r}")

        elapsed = self._clock() - started
        self.state = AuthState.TIMED_OUT
        logger.warning(f"⏰ Authentication timed out after {elapsed:.1f}s (2FA pending: {waiting_for_2fa})")
        message = "Authentication timed out"
        if waiting_for_2fa:
            message += " while waiting for two-factor approval"
        return AuthResult.failed(
            ErrorKind.AUTHENTICATION_TIMEOUT,
            message,
            waiting_for_2fa=waiting_for_2fa,
            elapsed=elapsed,
        )

    async def _detect_success(self, page: Any) -> Optional[DetectionSource]:
        if self._status_check is not None:
            try:
                if await self._status_check():
                    return DetectionSource.STATUS_CHECK
            except Exception as e:
                logger.debug(f"Status check failed, falling back to page content: {e!r}")

        content = await page.content()
        if SUCCESS_MARKER in content:
            return DetectionSource.PAGE_CONTENT
        return None
