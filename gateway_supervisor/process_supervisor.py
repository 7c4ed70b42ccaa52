# -*- coding: utf-8 -*-
"""
Process Supervisor: lifecycle of the vendor gateway subprocess.

State machine:
    IDLE --start--> STARTING --readiness--> READY
    STARTING --spawn/health failure--> FAILED --start--> STARTING
    READY --stop--> STOPPED --start--> STARTING
    process exit while not stopping --> FAILED

Invariants:
- At most one live gateway subprocess per supervisor
- start() while STARTING/READY never spawns
- Concurrent ensure_ready() callers await one shared startup task
- stop() always clears the handle within grace + kill timeout
- Temp configs are removed on every shutdown path
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import psutil

from .config import (
    ALTERNATE_PORT_ATTEMPTS,
    GATEWAY_JAR,
    GATEWAY_MAIN_CLASS,
    CONFIG_SUBDIR,
    JVM_FLAGS,
    READINESS_MARKERS,
    RUNTIME_LIB_GLOB,
    GatewaySettings,
)
from .config_rewriter import ConfigRewriter
from .contracts import GatewayProcess, GatewayState
from .errors import (
    GatewayError,
    GatewayNotFound,
    NoPortsAvailable,
    ProcessSpawnError,
    StartupTimeout,
)
from .health import HealthChecker
from .port_probe import PortProbe

logger = logging.getLogger(__name__)

# asyncio.create_subprocess_exec compatible
Spawner = Callable[..., Awaitable[Any]]

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

LOW_MEMORY_BYTES = 1024 * 1024 * 1024
CGROUP_LIMIT_FILES = (
    Path("/sys/fs/cgroup/memory.max"),
    Path("/sys/fs/cgroup/memory/memory.limit_in_bytes"),
)


def runtime_platform_dir(plat: Optional[str] = None, machine: Optional[str] = None) -> str:
    """Bundled runtime directory name: linux-x64, darwin-arm64, win32-x64, ..."""
    plat = plat or sys.platform
    if plat.startswith("linux"):
        plat = "linux"
    machine = (machine or platform.machine()).lower()
    return f"{plat}-{_ARCH_ALIASES.get(machine, machine)}"


class GatewayLayout:
    """On-disk layout of the gateway install and its Java runtime."""

    def __init__(self, settings: GatewaySettings, plat: Optional[str] = None, machine: Optional[str] = None):
        self.settings = settings
        self.platform = plat or sys.platform
        self.machine = machine

    @property
    def gateway_root(self) -> Path:
        return self.settings.gateway_root

    @property
    def jar_path(self) -> Path:
        return self.gateway_root / GATEWAY_JAR

    @property
    def java_path(self) -> Path:
        if self.settings.java_path:
            return Path(self.settings.java_path)
        exe = "java.exe" if self.platform == "win32" else "java"
        return (
            Path(self.settings.runtime_dir)
            / runtime_platform_dir(self.platform, self.machine)
            / "bin"
            / exe
        )

    @property
    def java_home(self) -> Path:
        return self.java_path.parent.parent

    def verify(self) -> None:
        """
        Raises:
            GatewayNotFound: install dir, jar or runtime executable missing
        """
        if not self.gateway_root.is_dir():
            raise GatewayNotFound(str(self.gateway_root))
        if not self.jar_path.is_file():
            raise GatewayNotFound(str(self.jar_path), what="Gateway jar")
        if not self.java_path.is_file():
            raise GatewayNotFound(str(self.java_path), what="Java runtime")

    def classpath(self) -> str:
        sep = ";" if self.platform == "win32" else ":"
        return sep.join([CONFIG_SUBDIR, GATEWAY_JAR, RUNTIME_LIB_GLOB])

    def command(self, config_rel: str) -> List[str]:
        return [
            str(self.java_path),
            *JVM_FLAGS,
            "-cp",
            self.classpath(),
            GATEWAY_MAIN_CLASS,
            "--conf",
            f"../{config_rel}",
        ]

    def environment(self) -> dict:
        env = dict(os.environ)
        env.update(self.settings.extra_env)
        env["JAVA_HOME"] = str(self.java_home)
        return env


class ProcessSupervisor:
    """
    Owns the gateway subprocess.

    Usage:
        sup = ProcessSupervisor(settings)
        port = await sup.ensure_ready()
        ...
        await sup.stop()
    """

    def __init__(
        self,
        settings: GatewaySettings,
        probe: Optional[PortProbe] = None,
        rewriter: Optional[ConfigRewriter] = None,
        health: Optional[HealthChecker] = None,
        spawner: Spawner = asyncio.create_subprocess_exec,
        layout: Optional[GatewayLayout] = None,
    ):
        self.settings = settings
        self.health = health or HealthChecker(host=settings.host)
        self.probe = probe or PortProbe(identity_probe=self.health.identify)
        self.rewriter = rewriter or ConfigRewriter(settings.config_dir)
        self.layout = layout or GatewayLayout(settings)
        self._spawner = spawner

        self._state = GatewayState.IDLE
        self._proc: Optional[Any] = None
        self._process: Optional[GatewayProcess] = None
        self._port: Optional[int] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._io_tasks: List[asyncio.Task] = []
        self._wake: Optional[asyncio.Event] = None
        self._marker_seen = False
        self._stopping = False

    # === Accessors ===

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def process(self) -> Optional[GatewayProcess]:
        if self._process is None:
            return None
        return self._process.model_copy(update={"state": self._state})

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def is_ready(self) -> bool:
        return self._state == GatewayState.READY

    def current_port(self) -> int:
        return self._port if self._port is not None else self.settings.default_port

    def gateway_url(self) -> str:
        return f"https://{self.settings.host}:{self.current_port()}"

    def _set_state(self, state: GatewayState) -> None:
        if state != self._state:
            logger.debug(f"Gateway state: {self._state.value} -> {state.value}")
        self._state = state

    # === Start ===

    async def start(self) -> None:
        """
        Start the gateway and wait for readiness.

        No-op while STARTING or READY.

        Raises:
            GatewayError subclasses on startup failure
        """
        if self._state in (GatewayState.STARTING, GatewayState.READY):
            logger.info(f"Gateway already {self._state.value}, not starting again")
            return
        await asyncio.shield(self._ensure_startup_task())

    def start_in_background(self) -> Optional[asyncio.Task]:
        """Launch startup without waiting. Returns the startup task (None when READY)."""
        if self._state == GatewayState.READY:
            return None
        return self._ensure_startup_task()

    def _ensure_startup_task(self) -> asyncio.Task:
        task = self._startup_task
        if task is not None and not task.done():
            return task

        # state flips before the first await so concurrent callers see STARTING
        self._set_state(GatewayState.STARTING)
        task = asyncio.ensure_future(self._run_startup())
        task.add_done_callback(self._on_startup_done)
        self._startup_task = task
        return task

    @staticmethod
    def _on_startup_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"❌ Gateway startup failed: {exc}")

    async def _run_startup(self) -> None:
        try:
            logger.info("🚀 Starting IB Gateway...")
            self.layout.verify()
            await asyncio.to_thread(self._log_environment)

            port, config_rel = await self._resolve_port()
            await self._spawn(port, config_rel)

            if not await self._wait_for_ready(port):
                raise StartupTimeout(port, self.settings.health_max_attempts, self.settings.health_interval)

            self._set_state(GatewayState.READY)
            logger.info(f"✅ IB Gateway is ready on port {port}")
        except GatewayError:
            await self._abort_startup()
            raise
        except asyncio.CancelledError:
            await self._abort_startup()
            raise
        except Exception as e:
            await self._abort_startup()
            raise ProcessSpawnError(f"Gateway startup failed: {e}", cause=e) from e

    async def _abort_startup(self) -> None:
        self._set_state(GatewayState.FAILED)
        proc = self._proc
        if proc is not None and proc.returncode is None:
            was_stopping, self._stopping = self._stopping, True
            try:
                await self._terminate(proc, self.settings.stop_grace, self.settings.kill_timeout)
            finally:
                self._stopping = was_stopping
        self._clear_handle()
        self.rewriter.remove_all_temp_configs()

    def _log_environment(self) -> None:
        own = [self.pid] if self.pid is not None else []
        self.probe.log_zombie_gateways(exclude_pids=own, reap=self.settings.reap_zombies)
        self.log_system_resources()
        if self.check_constrained_environment():
            logger.warning("⚠️ Detected constrained environment - will attempt Gateway startup but may fail due to resource limits")

    async def _resolve_port(self) -> Tuple[int, str]:
        default = self.settings.default_port
        logger.info("🔍 Checking port availability for new Gateway...")

        if await self.probe.is_port_available(default):
            logger.info(f"✅ Using default port {default}")
            return default, self.rewriter.relative_config(default, default)

        occupant = await self.probe.identify_occupant(default)
        logger.info(
            f"❌ Default port {default} is occupied "
            f"(gateway={occupant.looks_like_gateway}, via {occupant.identified_by}), trying to find alternative..."
        )

        try:
            port = await self.probe.find_available_port(default + 1, ALTERNATE_PORT_ATTEMPTS)
        except NoPortsAvailable as e:
            logger.warning(f"⚠️ {e}; falling back to default port {default}")
            return default, self.rewriter.relative_config(default, default)

        logger.info(f"✅ Found alternative port {port}")
        self.rewriter.with_port(port)
        return port, self.rewriter.relative_config(port, default)

    async def _spawn(self, port: int, config_rel: str) -> None:
        command = self.layout.command(config_rel)
        logger.info(f"☕ Launching gateway with --conf ../{config_rel}")
        logger.debug(f"Command: {' '.join(command)}")

        self._wake = asyncio.Event()
        self._marker_seen = False
        try:
            proc = await self._spawner(
                *command,
                cwd=str(self.layout.gateway_root),
                env=self.layout.environment(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to spawn gateway process: {e}", cause=e) from e

        self._proc = proc
        self._port = port
        self._process = GatewayProcess(
            pid=proc.pid,
            listen_port=port,
            config_path=config_rel,
            state=GatewayState.STARTING,
        )
        logger.info(f"📋 Gateway process spawned (PID {proc.pid}) on port {port}")

        self._io_tasks = [
            asyncio.ensure_future(self._read_stdout(proc)),
            asyncio.ensure_future(self._read_stderr(proc)),
            asyncio.ensure_future(self._watch_exit(proc)),
        ]

    async def _wait_for_ready(self, port: int) -> bool:
        max_attempts = self.settings.health_max_attempts
        interval = self.settings.health_interval
        logger.info(f"⏳ Waiting for Gateway to be ready on port {port}...")

        for attempt in range(1, max_attempts + 1):
            self._wake.clear()

            if self._marker_seen:
                return True
            if self._proc is None or self._proc.returncode is not None:
                code = self._proc.returncode if self._proc is not None else None
                raise ProcessSpawnError(f"Gateway process exited during startup (code {code})")
            if await self.health.check(port):
                logger.info(f"✅ Gateway is responding on port {port}")
                return True

            if attempt % 5 == 0:
                logger.info(f"⏳ Still waiting for gateway... ({attempt}/{max_attempts})")

            if attempt < max_attempts:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass

        return self._marker_seen

    # === Subprocess IO ===

    async def _read_stdout(self, proc: Any) -> None:
        if proc.stdout is None:
            return
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if any(marker in line for marker in READINESS_MARKERS):
                logger.info(f"🎯 Gateway readiness marker: {line}")
                self._marker_seen = True
                if self._wake is not None:
                    self._wake.set()
            else:
                logger.debug(f"Gateway stdout: {line}")

    async def _read_stderr(self, proc: Any) -> None:
        if proc.stderr is None:
            return
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if "WARNING" in line:
                logger.debug(f"Gateway stderr: {line}")
            else:
                logger.error(f"Gateway stderr: {line}")

    async def _watch_exit(self, proc: Any) -> None:
        code = await proc.wait()
        if self._proc is not proc:
            return
        if self._wake is not None:
            self._wake.set()
        if self._stopping:
            return

        logger.error(f"❌ Gateway process exited unexpectedly (code {code})")
        self._set_state(GatewayState.FAILED)
        if self._startup_task is None or self._startup_task.done():
            self._clear_handle()
            self.rewriter.remove_all_temp_configs()

    def _clear_handle(self) -> None:
        current = asyncio.current_task()
        for task in self._io_tasks:
            if task is not current and not task.done():
                task.cancel()
        self._io_tasks = []
        self._proc = None
        self._process = None

    # === Existing gateways ===

    async def find_existing_gateway(self) -> Optional[int]:
        """Adopt an already-running gateway. Returns its port or None."""
        port = await self.probe.find_existing_gateway(self.settings.existing_gateway_ports)
        if port is not None:
            self._adopt(port)
        return port

    def _adopt(self, port: int) -> None:
        self._port = port
        self._process = GatewayProcess(
            pid=None,
            listen_port=port,
            config_path=self.rewriter.relative_config(port, self.settings.default_port),
            state=GatewayState.READY,
            adopted=True,
        )
        self._set_state(GatewayState.READY)
        logger.info(f"🔗 Using existing Gateway on port {port}")

    async def quick_start(self) -> Optional[int]:
        """
        Non-blocking start.

        Returns the port of an existing gateway, or None when startup was
        launched in the background.
        """
        if self.is_ready():
            return self.current_port()

        logger.info("⚡ Quick Gateway startup - checking for existing gateways...")
        if self._state != GatewayState.STARTING:
            port = await self.find_existing_gateway()
            if port is not None:
                return port

        logger.info("🚀 No existing Gateway found, starting in background...")
        self.start_in_background()
        return None

    async def ensure_ready(self) -> int:
        """
        Return the port of a READY gateway, starting one if needed.

        Raises:
            GatewayError subclasses when no gateway could be brought up
        """
        if self.is_ready():
            return self.current_port()

        if self._state != GatewayState.STARTING:
            if await self.find_existing_gateway() is not None:
                return self.current_port()

        task = self._ensure_startup_task()
        try:
            await asyncio.shield(task)
        except GatewayError as e:
            if not e.retryable:
                raise
            if not self.is_ready():
                logger.warning(f"⚠️ Background startup failed ({e}), retrying once")
                await asyncio.shield(self._ensure_startup_task())

        if not self.is_ready():
            raise ProcessSpawnError(f"Gateway not ready (state={self._state.value})")
        return self.current_port()

    # === Stop ===

    async def stop(self, grace: Optional[float] = None, kill_timeout: Optional[float] = None) -> None:
        """
        Stop the gateway: terminate, wait grace, then kill.

        Never raises; the handle is cleared and temp configs removed in all cases.
        """
        grace = self.settings.stop_grace if grace is None else grace
        kill_timeout = self.settings.kill_timeout if kill_timeout is None else kill_timeout

        self._stopping = True
        proc = self._proc
        try:
            task = self._startup_task
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
                proc = proc or self._proc

            if proc is not None and proc.returncode is None:
                logger.info(f"🛑 Stopping Gateway process (PID {proc.pid})...")
                await self._terminate(proc, grace, kill_timeout)
        except Exception as e:
            logger.error(f"❌ Error while stopping gateway: {e!r}")
        finally:
            self._clear_handle()
            if self._state != GatewayState.IDLE:
                self._set_state(GatewayState.STOPPED)
            self._port = None
            self._stopping = False
            self.rewriter.remove_all_temp_configs()
            self.probe.log_zombie_gateways(reap=False)

    async def _terminate(self, proc: Any, grace: float, kill_timeout: float) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
            logger.info("✅ Gateway process exited")
            return
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Gateway ignored SIGTERM for {grace}s, sending SIGKILL")

        try:
            proc.kill()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=kill_timeout)
        except asyncio.TimeoutError:
            logger.error(f"❌ Gateway PID {proc.pid} still alive after SIGKILL")

    def force_kill(self) -> None:
        """Synchronous kill for atexit / excepthook paths. Never raises."""
        proc = self._proc
        if proc is not None and proc.returncode is None:
            logger.info(f"🔨 Force killing Gateway PID {proc.pid}")
            try:
                proc.kill()
            except (ProcessLookupError, OSError) as e:
                logger.warning(f"⚠️ Force kill failed: {e}")
        self._proc = None
        self._process = None
        if self._state != GatewayState.IDLE:
            self._set_state(GatewayState.STOPPED)
        self.rewriter.remove_all_temp_configs()

    # === Diagnostics ===

    def log_system_resources(self) -> None:
        try:
            vm = psutil.virtual_memory()
            me = psutil.Process()
            logger.info(
                f"📊 System memory: total {vm.total // 2**20}MB, "
                f"available {vm.available // 2**20}MB ({vm.percent}% used)"
            )
            logger.info(f"📊 Supervisor RSS: {me.memory_info().rss // 2**20}MB, CPUs: {psutil.cpu_count()}")
        except (psutil.Error, OSError) as e:
            logger.debug(f"Resource check failed: {e!r}")

        limit = self._cgroup_memory_limit()
        if limit is not None:
            logger.info(f"📊 Container memory limit: {limit // 2**20}MB")

    @staticmethod
    def _cgroup_memory_limit() -> Optional[int]:
        for path in CGROUP_LIMIT_FILES:
            try:
                raw = path.read_text().strip()
            except OSError:
                continue
            if raw.isdigit():
                return int(raw)
        return None

    def check_constrained_environment(self) -> bool:
        """True when at least two resource indicators look tight."""
        indicators = {}
        try:
            indicators["low_memory"] = psutil.virtual_memory().available < LOW_MEMORY_BYTES
            indicators["single_cpu"] = (psutil.cpu_count() or 1) <= 1
        except (psutil.Error, OSError):
            pass
        limit = self._cgroup_memory_limit()
        indicators["cgroup_limit"] = limit is not None and limit < LOW_MEMORY_BYTES
        indicators["container"] = Path("/.dockerenv").exists()

        constrained = sum(bool(v) for v in indicators.values()) >= 2
        if constrained:
            logger.info("🔍 Environment indicators: " + ", ".join(f"{k}:{v}" for k, v in indicators.items()))
        return constrained
