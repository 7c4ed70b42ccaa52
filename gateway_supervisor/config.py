# -*- coding: utf-8 -*-
"""
Gateway Supervisor Configuration: single source of truth for paths, ports and timings.

Constants describe the vendor gateway and its login page.
GatewaySettings carries everything an operator may override through the
environment (or a .env file).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, List, Optional, Tuple

from dotenv import find_dotenv, load_dotenv


# ============================================================================
# PATHS
# ============================================================================

PROJECT_ROOT: Final[Path] = Path(__file__).resolve().parent.parent

DEFAULT_GATEWAY_DIR: Final[Path] = PROJECT_ROOT / "ib-gateway"
DEFAULT_RUNTIME_DIR: Final[Path] = PROJECT_ROOT / "runtime"

GATEWAY_SUBDIR: Final[str] = "clientportal.gw"
CONFIG_SUBDIR: Final[str] = "root"
CONFIG_FILE: Final[str] = "conf.yaml"
GATEWAY_JAR: Final[str] = "dist/ibgroup.web.core.iblink.router.clientportal.gw.jar"
RUNTIME_LIB_GLOB: Final[str] = "build/lib/runtime/*"
GATEWAY_MAIN_CLASS: Final[str] = "ibgroup.web.core.clientportal.gw.GatewayStart"


# ============================================================================
# PORTS
# ============================================================================

DEFAULT_PORT: Final[int] = 5000
ALTERNATE_PORT_START: Final[int] = 5001
ALTERNATE_PORT_ATTEMPTS: Final[int] = 9          # 5001-5009
EXISTING_GATEWAY_PORTS: Final[Tuple[int, ...]] = (5000, 5001, 5002, 5003, 5004, 5005)


# ============================================================================
# PROCESS
# ============================================================================

JVM_FLAGS: Final[Tuple[str, ...]] = (
    "-server",
    "-Djava.awt.headless=true",
    "-Xmx512m",
    "-Dvertx.disableDnsResolver=true",
    "-Djava.net.preferIPv4Stack=true",
    "-Dvertx.logger-delegate-factory-class-name=io.vertx.core.logging.SLF4JLogDelegateFactory",
    "-Dnologback.statusListenerClass=ch.qos.logback.core.status.OnConsoleStatusListener",
    "-Dnolog4j.debug=true",
    "-Dnolog4j2.debug=true",
)

READINESS_MARKERS: Final[Tuple[str, ...]] = ("Server ready", "started on port")

# Substrings that mark a process listing / command line as a gateway instance
GATEWAY_INDICATORS: Final[Tuple[str, ...]] = ("java", "clientportal", "gateway", "ib")
ZOMBIE_CMDLINE_MARKERS: Final[Tuple[str, ...]] = ("clientportal.gw", "GatewayStart")

HEALTH_OK_STATUSES: Final[frozenset[int]] = frozenset({200, 401, 302})
AUTH_STATUS_PATH: Final[str] = "/v1/api/iserver/auth/status"


# ============================================================================
# LOGIN PAGE
# ============================================================================

USERNAME_SELECTOR: Final[str] = 'input[name="user"], input[id="user"], input[type="text"]'
PASSWORD_SELECTOR: Final[str] = 'input[name="password"], input[id="password"], input[type="password"]'
SUBMIT_SELECTOR: Final[str] = 'input[type="submit"], button[type="submit"], button'

# Vendor-specific; if the page changes detection degrades to timeout
SUCCESS_MARKER: Final[str] = "Client login succeeds"
TWO_FACTOR_INDICATORS: Final[Tuple[str, ...]] = (
    "two-factor",
    "2FA",
    "authentication",
    "verification",
    "code",
)
TWO_FACTOR_URL_INDICATORS: Final[Tuple[str, ...]] = ("sso",)

LOCAL_HOSTNAMES: Final[frozenset[str]] = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})

CHROMIUM_ARGS: Final[Tuple[str, ...]] = (
    "--headless=new",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-web-security",
    "--ignore-certificate-errors",
    "--ignore-ssl-errors",
    "--disable-features=VizDisplayCompositor",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
)


# ============================================================================
# TIMINGS (seconds)
# ============================================================================

HEALTH_MAX_ATTEMPTS: Final[int] = 30
HEALTH_INTERVAL_SECONDS: Final[float] = 1.0
HEALTH_REQUEST_TIMEOUT_SECONDS: Final[float] = 5.0

STOP_GRACE_SECONDS: Final[float] = 5.0
KILL_TIMEOUT_SECONDS: Final[float] = 5.0

AUTH_TIMEOUT_SECONDS: Final[float] = 300.0
AUTH_FORM_TIMEOUT_SECONDS: Final[float] = 30.0
AUTH_POLL_INTERVAL_SECONDS: Final[float] = 3.0

TUNNEL_EXPIRY_MINUTES: Final[float] = 15.0

LISTING_COMMAND_TIMEOUT_SECONDS: Final[float] = 5.0


# ============================================================================
# SETTINGS
# ============================================================================

@dataclass
class GatewaySettings:
    """Operator-tunable settings."""
    host: str = "localhost"
    default_port: int = DEFAULT_PORT
    gateway_dir: Path = DEFAULT_GATEWAY_DIR
    runtime_dir: Path = DEFAULT_RUNTIME_DIR
    java_path: Optional[Path] = None

    username: str = ""
    password: str = ""
    headless_mode: bool = False
    browser_endpoint: str = ""

    health_max_attempts: int = HEALTH_MAX_ATTEMPTS
    health_interval: float = HEALTH_INTERVAL_SECONDS
    stop_grace: float = STOP_GRACE_SECONDS
    kill_timeout: float = KILL_TIMEOUT_SECONDS

    auth_timeout: float = AUTH_TIMEOUT_SECONDS
    auth_form_timeout: float = AUTH_FORM_TIMEOUT_SECONDS
    auth_poll_interval: float = AUTH_POLL_INTERVAL_SECONDS
    tunnel_expiry_minutes: float = TUNNEL_EXPIRY_MINUTES

    existing_gateway_ports: Tuple[int, ...] = EXISTING_GATEWAY_PORTS
    reap_zombies: bool = False
    extra_env: dict = field(default_factory=dict)

    @property
    def gateway_root(self) -> Path:
        return Path(self.gateway_dir) / GATEWAY_SUBDIR

    @property
    def config_dir(self) -> Path:
        return self.gateway_root / CONFIG_SUBDIR

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str, default: Optional[Path]) -> Optional[Path]:
    raw = os.environ.get(name, "").strip()
    return Path(raw) if raw else default


def _configured_port(gateway_dir: Path) -> int:
    """listenPort of the installed conf.yaml, DEFAULT_PORT when absent."""
    from .config_rewriter import ConfigRewriter

    rewriter = ConfigRewriter(Path(gateway_dir) / GATEWAY_SUBDIR / CONFIG_SUBDIR)
    if not rewriter.original_path.exists():
        return DEFAULT_PORT
    return rewriter.read_listen_port() or DEFAULT_PORT


def load_settings(env_file: Optional[str] = None) -> GatewaySettings:
    """
    Build settings from the environment.

    Loads .env first (never overriding variables already set).
    IB_AUTH_TIMEOUT is in milliseconds, everything else in seconds.
    Without IB_GATEWAY_PORT the default port is conf.yaml's listenPort.
    """
    if env_file and os.path.exists(env_file):
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(find_dotenv(usecwd=True), override=False)

    gateway_dir = _env_path("IB_GATEWAY_DIR", DEFAULT_GATEWAY_DIR)
    port_env = os.environ.get("IB_GATEWAY_PORT", "").strip()
    default_port = int(port_env) if port_env else _configured_port(gateway_dir)

    auth_timeout_ms = os.environ.get("IB_AUTH_TIMEOUT")
    return GatewaySettings(
        host=os.environ.get("IB_GATEWAY_HOST", "localhost"),
        default_port=default_port,
        gateway_dir=gateway_dir,
        runtime_dir=_env_path("IB_RUNTIME_DIR", DEFAULT_RUNTIME_DIR),
        java_path=_env_path("IB_JAVA_PATH", None),
        username=os.environ.get("IB_USERNAME", ""),
        password=os.environ.get("IB_PASSWORD_AUTH") or os.environ.get("IB_PASSWORD", ""),
        headless_mode=_env_bool("IB_HEADLESS_MODE"),
        browser_endpoint=os.environ.get("IB_BROWSER_ENDPOINT", "").strip(),
        health_max_attempts=int(os.environ.get("IB_HEALTH_ATTEMPTS", str(HEALTH_MAX_ATTEMPTS))),
        health_interval=float(os.environ.get("IB_HEALTH_INTERVAL", str(HEALTH_INTERVAL_SECONDS))),
        auth_timeout=int(auth_timeout_ms) / 1000.0 if auth_timeout_ms else AUTH_TIMEOUT_SECONDS,
        reap_zombies=_env_bool("IB_REAP_ZOMBIES"),
    )


def validate_settings(settings: GatewaySettings) -> List[str]:
    """
    Validate settings.

    Returns:
        List of problems (empty = OK)
    """
    errors = []

    if not settings.gateway_root.exists():
        errors.append(f"Gateway directory missing: {settings.gateway_root}")

    if settings.headless_mode and not settings.has_credentials:
        errors.append("IB_HEADLESS_MODE is set but IB_USERNAME/IB_PASSWORD_AUTH are empty")

    if settings.health_max_attempts < 1:
        errors.append("IB_HEALTH_ATTEMPTS must be >= 1")

    if settings.auth_timeout <= 0:
        errors.append("IB_AUTH_TIMEOUT must be positive")

    return errors
