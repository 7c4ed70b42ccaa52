# -*- coding: utf-8 -*-
"""
Config Rewriter: port-specific copies of the gateway's conf.yaml.

The gateway has no command-line port override, so an alternate port means
an alternate config file: conf-<port>.yaml next to conf.yaml.

Invariants:
- Only the listenPort field is touched (textual substitution)
- Derived files are removed on every shutdown path (best effort)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

import yaml

from .config import CONFIG_FILE, CONFIG_SUBDIR
from .errors import ProcessSpawnError

logger = logging.getLogger(__name__)

LISTEN_PORT_RE = re.compile(r"listenPort:\s*\d+")
TEMP_CONFIG_RE = re.compile(r"^conf-\d+\.yaml$")


class ConfigRewriter:
    """
    Produces and cleans up derived gateway configs.

    Usage:
        rewriter = ConfigRewriter(settings.config_dir)
        path = rewriter.with_port(5003)      # .../root/conf-5003.yaml
        rewriter.remove_all_temp_configs()
    """

    def __init__(self, config_dir: Path, base_name: str = CONFIG_FILE):
        self.config_dir = Path(config_dir)
        self.base_name = base_name

    @property
    def original_path(self) -> Path:
        return self.config_dir / self.base_name

    def temp_config_path(self, port: int) -> Path:
        return self.config_dir / f"conf-{port}.yaml"

    def relative_config(self, port: int, default_port: int) -> str:
        """Config path relative to the gateway root, as passed to --conf."""
        if port == default_port:
            return f"{CONFIG_SUBDIR}/{self.base_name}"
        return f"{CONFIG_SUBDIR}/{self.temp_config_path(port).name}"

    def read_listen_port(self) -> Optional[int]:
        """listenPort of the original config, None if unreadable."""
        try:
            with self.original_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read listenPort from {self.original_path}: {e}")
            return None

        if isinstance(data, dict) and isinstance(data.get("listenPort"), int):
            return data["listenPort"]
        return None

    def with_port(self, port: int, original: Optional[Path] = None) -> Path:
        """
        Write conf-<port>.yaml with listenPort replaced.

        Overwrites an existing file for the same port.

        Raises:
            OSError: original config unreadable or target unwritable
            ProcessSpawnError: original config has no listenPort to replace
        """
        source = Path(original) if original else self.original_path
        try:
            content = source.read_text(encoding="utf-8")
            updated, replaced = LISTEN_PORT_RE.subn(f"listenPort: {port}", content, count=1)
            if not replaced:
                logger.error(f"❌ No listenPort in {source}, cannot move gateway to port {port}")
                raise ProcessSpawnError(f"No listenPort setting in {source}")
            target = self.temp_config_path(port)
            target.write_text(updated, encoding="utf-8")
        except OSError as e:
            logger.error(f"❌ Failed to create temporary config file for port {port}: {e}")
            raise

        logger.info(f"📝 Created temporary config file with port {port}")
        return target

    def remove_all_temp_configs(self) -> int:
        """
        Delete every conf-<port>.yaml.

        Never raises. Returns number of files removed.
        """
        removed = 0
        try:
            entries = list(self.config_dir.iterdir())
        except OSError as e:
            logger.warning(f"⚠️ Could not clean up temporary config files: {e}")
            return 0

        for entry in entries:
            if not TEMP_CONFIG_RE.match(entry.name):
                continue
            try:
                entry.unlink()
                removed += 1
                logger.info(f"🗑️ Cleaned up temporary config file: {entry.name}")
            except OSError as e:
                logger.warning(f"⚠️ Could not remove {entry.name}: {e}")

        return removed
