# -*- coding: utf-8 -*-
"""
Gateway Supervisor Errors.

Process-lifecycle failures are raised to the caller of ensure_gateway_ready().
Authentication outcomes are returned as AuthResult; AuthenticationError only
tags setup failures inside the driver before conversion to a result.
"""

from __future__ import annotations

from typing import Optional

from .contracts import ErrorKind


class GatewayError(Exception):
    """
    Base class for supervisor failures.

    Attributes:
        kind: ErrorKind tag
        retryable: whether a later start() may succeed
    """
    kind: ErrorKind = ErrorKind.PROCESS_SPAWN_ERROR
    retryable: bool = True

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class GatewayNotFound(GatewayError):
    """Gateway install or runtime missing on disk. Fatal."""
    kind = ErrorKind.GATEWAY_NOT_FOUND
    retryable = False

    def __init__(self, path: str, what: str = "Gateway"):
        self.path = path
        super().__init__(
            f"{what} not found at {path}. "
            "Please ensure the gateway files are properly installed."
        )


class PortExhausted(GatewayError):
    """Every port in the probed range is occupied."""
    kind = ErrorKind.PORT_EXHAUSTED

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(f"No available ports found in range {start}-{end}")


NoPortsAvailable = PortExhausted


class ProcessSpawnError(GatewayError):
    """Gateway subprocess could not be started or exited during startup."""
    kind = ErrorKind.PROCESS_SPAWN_ERROR


class StartupTimeout(GatewayError):
    """Readiness never observed within the health-check budget."""
    kind = ErrorKind.STARTUP_TIMEOUT

    def __init__(self, port: int, attempts: int, interval: float):
        self.port = port
        self.attempts = attempts
        super().__init__(
            f"Gateway failed to start on port {port} within "
            f"{attempts * interval:.0f} seconds ({attempts} health checks)"
        )


class TunnelCreationFailed(GatewayError):
    """Secure tunnel for a remote browser could not be opened."""
    kind = ErrorKind.TUNNEL_CREATION_FAILED


class AuthenticationError(GatewayError):
    """Browser setup or navigation failed before polling started."""
    kind = ErrorKind.AUTHENTICATION_FAILED
