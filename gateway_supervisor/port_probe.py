# -*- coding: utf-8 -*-
"""
Port Probe: port availability, occupant identification, zombie gateways.

Availability comes from the platform's socket listing command (lsof /
netstat / ss): no output means nothing is listening.

Occupant identification is best-effort:
1. Ask the port itself (gateway auth-status route) when an identity probe is wired in
2. Otherwise match gateway substrings (java, clientportal, ...) in the listing
The substring match can misclassify any java service as a gateway.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

import psutil

from .config import (
    GATEWAY_INDICATORS,
    LISTING_COMMAND_TIMEOUT_SECONDS,
    ZOMBIE_CMDLINE_MARKERS,
)
from .contracts import OccupantInfo, PortScanResult, ZombieProcess
from .errors import NoPortsAvailable

logger = logging.getLogger(__name__)

CommandRunner = Callable[[str], Awaitable[Tuple[int, str]]]
IdentityProbe = Callable[[int], Awaitable[Optional[bool]]]


async def run_shell(command: str, timeout: float = LISTING_COMMAND_TIMEOUT_SECONDS) -> Tuple[int, str]:
    """Run a listing command. Returns (returncode, stdout); failures map to (1, "")."""
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"Listing command failed to start: {command!r}: {e}")
        return 1, ""

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"⚠️ Listing command timed out after {timeout}s: {command!r}")
        proc.kill()
        await proc.wait()
        return 1, ""

    return proc.returncode or 0, stdout.decode("utf-8", errors="replace")


def availability_command(port: int, platform: str) -> str:
    if platform == "win32":
        return f"netstat -an | findstr :{port}"
    if platform in ("darwin", "linux"):
        return f"lsof -i :{port}"
    return f"netstat -an | grep :{port}"


def identification_command(port: int, platform: str) -> str:
    if platform == "win32":
        return f"netstat -ano | findstr :{port}"
    if platform == "linux":
        return f"ss -tlnp | grep :{port} || netstat -tlnp | grep :{port}"
    return f"lsof -i :{port} -n -P"


def _port_lines(output: str, port: int, command: str) -> List[str]:
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    # findstr/grep :500 also matches :5000; lsof shows service names instead of ports
    if not command.startswith("lsof"):
        port_re = re.compile(rf":{port}(?!\d)")
        lines = [line for line in lines if port_re.search(line)]
    return lines


def looks_like_gateway(listing: str, indicators: Iterable[str] = GATEWAY_INDICATORS) -> bool:
    text = listing.lower()
    return any(indicator.lower() in text for indicator in indicators)


class PortProbe:
    """
    Probes local ports for the gateway supervisor.

    Usage:
        probe = PortProbe(identity_probe=health.identify)
        if not await probe.is_port_available(5000):
            port = await probe.find_available_port(5001, 9)
    """

    def __init__(
        self,
        run_command: CommandRunner = run_shell,
        identity_probe: Optional[IdentityProbe] = None,
        platform: Optional[str] = None,
    ):
        self._run = run_command
        self._identity_probe = identity_probe
        self.platform = platform or sys.platform

    async def is_port_available(self, port: int) -> bool:
        command = availability_command(port, self.platform)
        returncode, output = await self._run(command)
        if returncode != 0:
            return True
        return not _port_lines(output, port, command)

    async def identify_occupant(self, port: int) -> OccupantInfo:
        """Raw listing plus a gateway/not-gateway verdict."""
        command = identification_command(port, self.platform)
        returncode, output = await self._run(command)
        lines = _port_lines(output, port, command) if returncode == 0 else []
        raw = "\n".join(lines)

        for index, line in enumerate(lines[:3], start=1):
            logger.info(f"   📋 Port {port} process {index}: {line}")

        if self._identity_probe is not None:
            try:
                verdict = await self._identity_probe(port)
            except Exception as e:
                logger.debug(f"Identity probe on port {port} raised: {e!r}")
                verdict = None
            if verdict is not None:
                return OccupantInfo(
                    port=port,
                    raw_listing=raw,
                    looks_like_gateway=verdict,
                    identified_by="endpoint",
                )

        if not raw:
            return OccupantInfo(port=port, raw_listing="", looks_like_gateway=False, identified_by="none")

        return OccupantInfo(
            port=port,
            raw_listing=raw,
            looks_like_gateway=looks_like_gateway(raw),
            identified_by="listing",
        )

    async def scan(self, port: int) -> PortScanResult:
        if await self.is_port_available(port):
            return PortScanResult(port=port, available=True)
        occupant = await self.identify_occupant(port)
        return PortScanResult(
            port=port,
            available=False,
            occupant_looks_like_gateway=occupant.looks_like_gateway,
        )

    async def find_available_port(self, start: int, max_attempts: int) -> int:
        """
        First free port in [start, start + max_attempts).

        Raises:
            NoPortsAvailable: every port in the range is occupied
        """
        for port in range(start, start + max_attempts):
            if await self.is_port_available(port):
                logger.info(f"✅ Found available port: {port}")
                return port
            logger.info(f"❌ Port {port} is already in use")
        raise NoPortsAvailable(start, start + max_attempts - 1)

    async def find_existing_gateway(self, ports: Sequence[int]) -> Optional[int]:
        """Port of an already-running gateway among ports, or None."""
        logger.info("🔍 Checking for existing Gateway instances...")
        for port in ports:
            try:
                result = await self.scan(port)
            except Exception as e:
                logger.info(f"🔍 Check failed for port {port}, continuing: {e!r}")
                continue

            if result.available:
                continue
            if result.occupant_looks_like_gateway:
                logger.info(f"✅ Found existing Gateway on port {port}")
                return port
            logger.info(f"❌ Port {port} is occupied but not a Gateway process")

        logger.info("🚫 No existing Gateway found")
        return None

    # === Zombie gateways ===

    def find_zombie_gateways(
        self,
        exclude_pids: Iterable[int] = (),
        markers: Iterable[str] = ZOMBIE_CMDLINE_MARKERS,
    ) -> List[ZombieProcess]:
        """Gateway processes not owned by this supervisor."""
        excluded = {os.getpid(), *exclude_pids}
        markers = tuple(markers)
        zombies: List[ZombieProcess] = []

        for proc in psutil.process_iter(["pid", "cmdline", "status"]):
            try:
                info = proc.info
                cmdline = " ".join(info.get("cmdline") or [])
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if info["pid"] in excluded or not cmdline:
                continue
            if any(marker in cmdline for marker in markers):
                zombies.append(ZombieProcess(
                    pid=info["pid"],
                    status=str(info.get("status") or ""),
                    cmdline=cmdline[:200],
                ))

        return zombies

    def log_zombie_gateways(self, exclude_pids: Iterable[int] = (), reap: bool = False) -> List[ZombieProcess]:
        """
        Log leftover gateways; terminate them only when reap=True.

        Never raises.
        """
        try:
            zombies = self.find_zombie_gateways(exclude_pids=exclude_pids)
        except Exception as e:
            logger.warning(f"⚠️ Zombie scan failed: {e!r}")
            return []

        if not zombies:
            logger.info("🧹 No zombie Gateway processes found")
            return []

        logger.info(f"🧹 Found {len(zombies)} potential Gateway processes")
        for index, zombie in enumerate(zombies, start=1):
            logger.info(f"   Process {index}: PID {zombie.pid} [{zombie.status}] - {zombie.cmdline}")

        if reap:
            self._reap(zombies)
        else:
            logger.info("💡 If you have zombie Gateway processes, you may need to kill them manually")

        return zombies

    def _reap(self, zombies: List[ZombieProcess], timeout: float = 3.0) -> None:
        procs = []
        for zombie in zombies:
            try:
                proc = psutil.Process(zombie.pid)
                proc.terminate()
                procs.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning(f"⚠️ Could not terminate PID {zombie.pid}: {e}")

        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            try:
                logger.info(f"🔨 Force killing zombie Gateway PID {proc.pid}")
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning(f"⚠️ Could not kill PID {proc.pid}: {e}")
