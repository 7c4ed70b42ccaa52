# -*- coding: utf-8 -*-
"""
Process Supervisor Tests: state machine, spawn idempotence, readiness,
alternate ports, stop/kill, existing-gateway adoption.

The gateway subprocess is a FakeProcess; the health endpoint refuses
connections unless a test says otherwise.
"""

import asyncio
import threading
import time

import httpx
import pytest

from conftest import (
    FakeRunner,
    FakeSpawner,
    QuietProbe,
    drain,
    java_listing,
    refused_transport,
)

from gateway_supervisor.contracts import GatewayState
from gateway_supervisor.errors import (
    GatewayNotFound,
    ProcessSpawnError,
    StartupTimeout,
)
from gateway_supervisor.health import HealthChecker
from gateway_supervisor.process_supervisor import (
    GatewayLayout,
    ProcessSupervisor,
    runtime_platform_dir,
)


def make_supervisor(settings, spawner=None, occupied=None, transport=None, identity_probe=None):
    probe = QuietProbe(FakeRunner(occupied), identity_probe=identity_probe)
    health = HealthChecker(transport=transport or refused_transport())
    spawner = spawner or FakeSpawner("marker")
    sup = ProcessSupervisor(settings, probe=probe, health=health, spawner=spawner)
    return sup, spawner


def temp_configs(settings):
    return sorted(p.name for p in settings.config_dir.glob("conf-*.yaml"))


class TestLayout:
    """Runtime paths and gateway command line."""

    @pytest.mark.parametrize("plat,machine,expected", [
        ("linux", "x86_64", "linux-x64"),
        ("linux", "aarch64", "linux-arm64"),
        ("darwin", "arm64", "darwin-arm64"),
        ("win32", "AMD64", "win32-x64"),
    ])
    def test_runtime_platform_dir(self, plat, machine, expected):
        assert runtime_platform_dir(plat, machine) == expected

    def test_bundled_java_path(self, gateway_install):
        gateway_install.java_path = None
        layout = GatewayLayout(gateway_install, plat="win32", machine="AMD64")
        assert layout.java_path == gateway_install.runtime_dir / "win32-x64" / "bin" / "java.exe"
        assert layout.classpath().count(";") == 2

    def test_command_and_env(self, gateway_install):
        layout = GatewayLayout(gateway_install, plat="linux", machine="x86_64")
        cmd = layout.command("root/conf-5003.yaml")

        assert cmd[0] == str(gateway_install.java_path)
        assert "-Djava.awt.headless=true" in cmd
        assert cmd[-3:] == ["ibgroup.web.core.clientportal.gw.GatewayStart", "--conf", "../root/conf-5003.yaml"]
        assert cmd[cmd.index("-cp") + 1] == "root:dist/ibgroup.web.core.iblink.router.clientportal.gw.jar:build/lib/runtime/*"
        assert layout.environment()["JAVA_HOME"] == str(gateway_install.java_path.parent.parent)


class TestStart:
    """start() and readiness."""

    @pytest.mark.asyncio
    async def test_marker_makes_ready(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)

        await sup.start()

        assert sup.is_ready()
        assert sup.state == GatewayState.READY
        assert sup.current_port() == 5000
        assert sup.gateway_url() == "https://localhost:5000"
        call = spawner.calls[0]
        assert call["cwd"] == str(gateway_install.gateway_root)
        assert call["command"][-1] == "../root/conf.yaml"
        assert sup.process.pid == 4000
        assert sup.process.state == GatewayState.READY
        await sup.stop()

    @pytest.mark.asyncio
    async def test_zombie_scan_runs_off_event_loop(self, gateway_install):
        sup, _ = make_supervisor(gateway_install)

        await sup.start()

        assert sup.probe.scan_threads
        assert sup.probe.scan_threads[0] != threading.get_ident()
        await sup.stop()

    @pytest.mark.asyncio
    async def test_concurrent_start_spawns_once(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)

        await asyncio.gather(sup.start(), sup.start())
        await sup.start()

        assert len(spawner.calls) == 1
        assert sup.is_ready()
        await sup.stop()

    @pytest.mark.asyncio
    async def test_start_while_starting_is_noop(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)

        task = sup.start_in_background()
        assert sup.state == GatewayState.STARTING
        await sup.start()
        await task

        assert len(spawner.calls) == 1
        await sup.stop()

    @pytest.mark.asyncio
    async def test_health_check_makes_ready_without_marker(self, gateway_install):
        transport = httpx.MockTransport(lambda r: httpx.Response(401))
        sup, _ = make_supervisor(gateway_install, spawner=FakeSpawner("silent"), transport=transport)

        await sup.start()

        assert sup.is_ready()
        await sup.stop()

    @pytest.mark.asyncio
    async def test_ready_until_stop(self, gateway_install):
        sup, _ = make_supervisor(gateway_install)
        await sup.start()

        await asyncio.sleep(gateway_install.health_interval * 3)
        assert sup.is_ready()

        await sup.stop()
        assert not sup.is_ready()
        assert sup.state == GatewayState.STOPPED
        assert sup.process is None

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)
        await sup.start()
        await sup.stop()

        await sup.start()

        assert sup.is_ready()
        assert len(spawner.calls) == 2
        await sup.stop()


class TestStartupFailures:
    """Typed startup errors."""

    @pytest.mark.asyncio
    async def test_missing_install(self, gateway_install, tmp_path):
        gateway_install.gateway_dir = tmp_path / "nope"
        sup, spawner = make_supervisor(gateway_install)

        with pytest.raises(GatewayNotFound) as exc_info:
            await sup.start()

        assert exc_info.value.retryable is False
        assert sup.state == GatewayState.FAILED
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_missing_runtime(self, gateway_install):
        gateway_install.java_path.unlink()
        sup, _ = make_supervisor(gateway_install)

        with pytest.raises(GatewayNotFound, match="Java runtime"):
            await sup.start()

    @pytest.mark.asyncio
    async def test_startup_timeout(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install, spawner=FakeSpawner("silent"), occupied={5000: "nginx"})

        with pytest.raises(StartupTimeout):
            await sup.start()

        assert sup.state == GatewayState.FAILED
        assert spawner.processes[0].returncode is not None
        assert sup.process is None
        assert temp_configs(gateway_install) == []

    @pytest.mark.asyncio
    async def test_early_exit(self, gateway_install):
        sup, _ = make_supervisor(gateway_install, spawner=FakeSpawner("exit"))

        with pytest.raises(ProcessSpawnError, match="exited during startup"):
            await sup.start()

        assert sup.state == GatewayState.FAILED

    @pytest.mark.asyncio
    async def test_spawn_oserror(self, gateway_install):
        async def broken_spawner(*args, **kwargs):
            raise FileNotFoundError("java")

        sup, _ = make_supervisor(gateway_install, spawner=broken_spawner)

        with pytest.raises(ProcessSpawnError):
            await sup.start()
        assert sup.state == GatewayState.FAILED


class TestPorts:
    """Alternate port selection and temp configs."""

    @pytest.mark.asyncio
    async def test_alternate_port_when_default_busy(self, gateway_install):
        occupied = {5000: "nginx 1 www TCP *:5000", 5001: "nginx 1 www TCP *:5001"}
        sup, spawner = make_supervisor(gateway_install, occupied=occupied)

        await sup.start()

        assert sup.current_port() == 5002
        assert spawner.calls[0]["command"][-1] == "../root/conf-5002.yaml"
        assert temp_configs(gateway_install) == ["conf-5002.yaml"]
        assert "listenPort: 5002" in (gateway_install.config_dir / "conf-5002.yaml").read_text()

        await sup.stop()
        assert temp_configs(gateway_install) == []

    @pytest.mark.asyncio
    async def test_degrades_to_default_when_range_full(self, gateway_install):
        occupied = {p: "nginx" for p in range(5000, 5010)}
        sup, spawner = make_supervisor(gateway_install, occupied=occupied)

        await sup.start()

        assert sup.current_port() == 5000
        assert spawner.calls[0]["command"][-1] == "../root/conf.yaml"
        await sup.stop()


class TestStop:
    """stop() and force_kill()."""

    @pytest.mark.asyncio
    async def test_graceful_stop(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)
        await sup.start()
        proc = spawner.processes[0]

        await sup.stop()

        assert proc.terminate_calls == 1
        assert proc.kill_calls == 0
        assert sup.pid is None

    @pytest.mark.asyncio
    async def test_kill_after_grace(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install, spawner=FakeSpawner("ignore_term"))
        await sup.start()
        proc = spawner.processes[0]

        started = time.monotonic()
        await sup.stop(grace=0.1, kill_timeout=0.1)
        elapsed = time.monotonic() - started

        assert proc.terminate_calls == 1
        assert proc.kill_calls == 1
        assert sup.pid is None
        assert elapsed < 0.2 + 0.5

    @pytest.mark.asyncio
    async def test_stop_idle_is_safe(self, gateway_install):
        sup, _ = make_supervisor(gateway_install)
        await sup.stop()
        assert sup.state == GatewayState.IDLE

    @pytest.mark.asyncio
    async def test_stop_during_startup(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install, spawner=FakeSpawner("silent"))
        gateway_install.health_max_attempts = 1000
        task = sup.start_in_background()
        for _ in range(100):
            if spawner.processes:
                break
            await asyncio.sleep(0.01)

        await sup.stop()

        assert task.cancelled() or task.done()
        assert sup.state == GatewayState.STOPPED
        assert spawner.processes[0].returncode is not None

    @pytest.mark.asyncio
    async def test_force_kill(self, gateway_install):
        occupied = {5000: "nginx"}
        sup, spawner = make_supervisor(gateway_install, occupied=occupied)
        await sup.start()
        assert temp_configs(gateway_install) == ["conf-5001.yaml"]

        sup.force_kill()

        assert spawner.processes[0].kill_calls == 1
        assert sup.pid is None
        assert temp_configs(gateway_install) == []

    @pytest.mark.asyncio
    async def test_unexpected_exit_marks_failed(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)
        await sup.start()

        spawner.processes[0].exit(1)
        await drain()

        assert sup.state == GatewayState.FAILED
        assert not sup.is_ready()
        assert sup.pid is None


class TestExistingGateway:
    """Adoption, quick_start and ensure_ready."""

    @pytest.mark.asyncio
    async def test_adopts_existing_gateway(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install, occupied={5003: java_listing(5003)})

        port = await sup.ensure_ready()

        assert port == 5003
        assert sup.is_ready()
        assert spawner.calls == []
        assert sup.process.adopted is True
        assert sup.process.pid is None

    @pytest.mark.asyncio
    async def test_endpoint_rejects_java_impostor(self, gateway_install):
        async def not_gateway(port):
            return False

        sup, spawner = make_supervisor(gateway_install, occupied={5000: java_listing(5000)}, identity_probe=not_gateway)

        port = await sup.ensure_ready()

        assert port == 5001
        assert len(spawner.calls) == 1
        await sup.stop()

    @pytest.mark.asyncio
    async def test_quick_start_runs_in_background(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)

        assert await sup.quick_start() is None
        assert sup.state == GatewayState.STARTING

        port = await sup.ensure_ready()
        assert port == 5000
        assert len(spawner.calls) == 1
        await sup.stop()

    @pytest.mark.asyncio
    async def test_concurrent_ensure_ready_share_startup(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install)

        ports = await asyncio.gather(sup.ensure_ready(), sup.ensure_ready(), sup.ensure_ready())

        assert ports == [5000, 5000, 5000]
        assert len(spawner.calls) == 1
        await sup.stop()

    @pytest.mark.asyncio
    async def test_ensure_ready_retries_retryable_failure(self, gateway_install):
        sup, spawner = make_supervisor(gateway_install, spawner=FakeSpawner("exit", "marker"))

        assert await sup.ensure_ready() == 5000
        assert len(spawner.calls) == 2
        await sup.stop()

    @pytest.mark.asyncio
    async def test_ensure_ready_does_not_retry_missing_install(self, gateway_install, tmp_path):
        gateway_install.gateway_dir = tmp_path / "nope"
        sup, spawner = make_supervisor(gateway_install)

        with pytest.raises(GatewayNotFound):
            await sup.ensure_ready()
        assert spawner.calls == []
