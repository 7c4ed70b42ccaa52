# -*- coding: utf-8 -*-
"""
Shared fakes for gateway supervisor tests: subprocess, listing command,
HTTP transport and on-disk gateway install.
"""

import asyncio
import re
import threading
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

from gateway_supervisor.config import GatewaySettings
from gateway_supervisor.port_probe import PortProbe


CONF_YAML = """\
ips:
  allow:
    - 127.0.0.1
listenPort: 5000
listenSsl: true
sslCert: "vertx.jks"
"""


class FakeStream:
    """asyncio.StreamReader stand-in fed line by line."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed(self, line: str) -> None:
        self._queue.put_nowait(line.encode("utf-8") + b"\n")

    def close(self) -> None:
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        return await self._queue.get()


class FakeProcess:
    """asyncio.subprocess.Process stand-in."""

    def __init__(self, pid: int, ignore_terminate: bool = False):
        self.pid = pid
        self.returncode = None
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.close()
        self.stderr.close()
        self._exited.set()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """
    Records spawn calls and hands out FakeProcess objects.

    behaviours: one entry per spawn - "marker", "silent", "exit", "ignore_term".
    The last entry repeats.
    """

    def __init__(self, *behaviours: str):
        self.behaviours = list(behaviours) or ["marker"]
        self.calls: List[dict] = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, *command, **kwargs):
        await asyncio.sleep(0)
        index = len(self.calls)
        behaviour = self.behaviours[min(index, len(self.behaviours) - 1)]
        self.calls.append({"command": list(command), **kwargs})

        proc = FakeProcess(pid=4000 + index, ignore_terminate=(behaviour == "ignore_term"))
        self.processes.append(proc)

        proc.stdout.feed("Starting gateway...")
        proc.stderr.feed("WARNING: An illegal reflective access operation has occurred")
        if behaviour in ("marker", "ignore_term"):
            proc.stdout.feed("Server ready: open https://localhost:5000 to login")
        elif behaviour == "exit":
            proc.exit(1)
        return proc


class FakeRunner:
    """Listing-command runner backed by a port -> listing map."""

    PORT_RE = re.compile(r":(\d+)")

    def __init__(self, occupied: Dict[int, str] = None):
        self.occupied = dict(occupied or {})
        self.commands: List[str] = []

    async def __call__(self, command: str):
        self.commands.append(command)
        port = int(self.PORT_RE.search(command).group(1))
        listing = self.occupied.get(port)
        if listing is None:
            return 1, ""
        return 0, listing


class QuietProbe(PortProbe):
    """PortProbe that never looks at real processes."""

    def __init__(self, runner: FakeRunner, identity_probe=None, zombies=None):
        super().__init__(run_command=runner, identity_probe=identity_probe, platform="linux")
        self.zombies = list(zombies or [])
        self.reap_requests: List[bool] = []
        self.scan_threads: List[int] = []

    def find_zombie_gateways(self, exclude_pids=(), markers=()):
        return list(self.zombies)

    def log_zombie_gateways(self, exclude_pids=(), reap=False):
        self.reap_requests.append(reap)
        self.scan_threads.append(threading.get_ident())
        return super().log_zombie_gateways(exclude_pids=exclude_pids, reap=False)


def refused_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    return httpx.MockTransport(handler)


def java_listing(port: int) -> str:
    return f"java    1234 ib   45u  IPv6 0x1  0t0  TCP *:{port} (LISTEN)"


async def drain(rounds: int = 10) -> None:
    """Let pending callbacks and reader tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def gateway_install(tmp_path: Path) -> GatewaySettings:
    """Minimal gateway tree: jar, conf.yaml and a java executable."""
    gateway_dir = tmp_path / "ib-gateway"
    root = gateway_dir / "clientportal.gw"
    (root / "dist").mkdir(parents=True)
    (root / "dist" / "ibgroup.web.core.iblink.router.clientportal.gw.jar").write_bytes(b"PK")
    (root / "root").mkdir()
    (root / "root" / "conf.yaml").write_text(CONF_YAML, encoding="utf-8")

    java = tmp_path / "jre" / "bin" / "java"
    java.parent.mkdir(parents=True)
    java.write_text("#!/bin/sh\n", encoding="utf-8")

    return GatewaySettings(
        gateway_dir=gateway_dir,
        runtime_dir=tmp_path / "runtime",
        java_path=java,
        health_max_attempts=5,
        health_interval=0.02,
        stop_grace=0.05,
        kill_timeout=0.05,
    )
