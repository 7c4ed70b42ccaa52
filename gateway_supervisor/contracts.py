# -*- coding: utf-8 -*-
"""
Gateway Supervisor Contracts: data models shared by the supervisor and its callers.

All values crossing the supervisor boundary conform to these models.
Callers read them; only the supervisor and the auth driver create them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GatewayState(str, Enum):
    """Gateway process lifecycle state."""
    IDLE = "idle"            # Never started
    STARTING = "starting"    # Spawned, waiting for readiness
    READY = "ready"          # Marker seen or health check passed
    FAILED = "failed"        # Startup failed or process crashed
    STOPPED = "stopped"      # Stopped on request


class AuthState(str, Enum):
    """Authentication attempt state."""
    IDLE = "idle"
    BROWSER_OPEN = "browser_open"
    FORM_SUBMITTED = "form_submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Failure taxonomy for raised errors and returned results."""
    GATEWAY_NOT_FOUND = "GatewayNotFound"
    PORT_EXHAUSTED = "PortExhausted"
    PROCESS_SPAWN_ERROR = "ProcessSpawnError"
    STARTUP_TIMEOUT = "StartupTimeout"
    AUTHENTICATION_TIMEOUT = "AuthenticationTimeout"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    TUNNEL_CREATION_FAILED = "TunnelCreationFailed"


class DetectionSource(str, Enum):
    """Where an authentication success was observed."""
    STATUS_CHECK = "status_check"    # Gateway auth-status endpoint (authoritative)
    PAGE_CONTENT = "page_content"    # Login page text (fallback)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Port probing ===

class PortScanResult(BaseModel):
    """Result of probing one port."""
    port: int
    available: bool
    occupant_looks_like_gateway: bool = False


class OccupantInfo(BaseModel):
    """What is listening on an occupied port."""
    port: int
    raw_listing: str = ""
    looks_like_gateway: bool = False
    identified_by: str = Field(default="none", description="endpoint | listing | none")


class ZombieProcess(BaseModel):
    """Gateway instance left running by a previous supervisor."""
    pid: int
    status: str = ""
    cmdline: str = ""


# === Gateway process ===

class GatewayProcess(BaseModel):
    """
    Snapshot of the supervised gateway.

    INVARIANT: at most one live GatewayProcess per ProcessSupervisor.
    Adopted gateways (found already running) have pid=None.
    """
    pid: Optional[int] = None
    listen_port: int
    config_path: str
    state: GatewayState = GatewayState.IDLE
    started_at: datetime = Field(default_factory=_utcnow)
    adopted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["state"] = self.state.value
        data["started_at"] = self.started_at.isoformat()
        return data


# === Authentication ===

class AuthResult(BaseModel):
    """
    Outcome of one automated login attempt.

    A value, not an exception: callers decide whether to fall back
    to manual browser authentication.
    """
    success: bool
    message: str
    error_kind: Optional[ErrorKind] = None
    waiting_for_2fa: bool = False
    detected_by: Optional[DetectionSource] = None
    elapsed_seconds: float = 0.0
    detail: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.error_kind == ErrorKind.AUTHENTICATION_TIMEOUT

    @classmethod
    def succeeded(cls, message: str, detected_by: DetectionSource, elapsed: float = 0.0) -> "AuthResult":
        return cls(success=True, message=message, detected_by=detected_by, elapsed_seconds=elapsed)

    @classmethod
    def failed(
        cls,
        kind: ErrorKind,
        message: str,
        detail: Optional[str] = None,
        waiting_for_2fa: bool = False,
        elapsed: float = 0.0,
    ) -> "AuthResult":
        return cls(
            success=False,
            message=message,
            error_kind=kind,
            detail=detail,
            waiting_for_2fa=waiting_for_2fa,
            elapsed_seconds=elapsed,
        )
