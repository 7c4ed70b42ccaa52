# -*- coding: utf-8 -*-
"""
Gateway Supervisor: process lifecycle and headless login for the local
Client Portal gateway.

Callers use two contracts on Supervisor:
- ensure_gateway_ready(): port of a READY gateway, or a raised GatewayError
- ensure_authenticated(): AuthResult value

Components:
- port_probe: port availability, occupant identification, zombie gateways
- config_rewriter: conf-<port>.yaml for alternate ports
- health: HTTPS liveness polling
- status_client: gateway auth-status endpoint
- process_supervisor: subprocess state machine
- tunnel: basic-auth tunnels for remote browsers
- browser: local / remote / tunneled browser sessions
- auth_driver: login form automation and success polling
- supervisor: composition root and shutdown wiring
"""

__version__ = "1.0.0"

from .contracts import (
    AuthResult,
    AuthState,
    DetectionSource,
    ErrorKind,
    GatewayProcess,
    GatewayState,
    OccupantInfo,
    PortScanResult,
    ZombieProcess,
)

from .errors import (
    AuthenticationError,
    GatewayError,
    GatewayNotFound,
    NoPortsAvailable,
    PortExhausted,
    ProcessSpawnError,
    StartupTimeout,
    TunnelCreationFailed,
)

from .config import (
    GatewaySettings,
    load_settings,
    validate_settings,
)

from .auth_driver import AuthenticationDriver, AuthRequest
from .process_supervisor import ProcessSupervisor
from .supervisor import Supervisor
from .tunnel import Tunnel, TunnelManager, is_local_url

__all__ = [
    # Contracts
    "AuthResult",
    "AuthState",
    "DetectionSource",
    "ErrorKind",
    "GatewayProcess",
    "GatewayState",
    "OccupantInfo",
    "PortScanResult",
    "ZombieProcess",
    # Errors
    "AuthenticationError",
    "GatewayError",
    "GatewayNotFound",
    "NoPortsAvailable",
    "PortExhausted",
    "ProcessSpawnError",
    "StartupTimeout",
    "TunnelCreationFailed",
    # Config
    "GatewaySettings",
    "load_settings",
    "validate_settings",
    # Components
    "AuthenticationDriver",
    "AuthRequest",
    "ProcessSupervisor",
    "Supervisor",
    "Tunnel",
    "TunnelManager",
    "is_local_url",
]
