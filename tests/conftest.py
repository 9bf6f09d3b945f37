"""Shared fixtures for the rms test suite.

Provides an isolated configuration rooted in tmp_path and a tiny Python
program standing in for the Minecraft server.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from rms.config import Config

FAKE_SERVER = '''
import sys

print("[12:34:56] [Server thread/INFO]: Done (1.0s)!", flush=True)
for line in iter(sys.stdin.readline, ""):
    command = line.strip()
    if command == "quit":
        break
    print("[12:34:57] [Server thread/INFO]: received " + command, flush=True)
'''


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration with every directory inside tmp_path and no cache."""
    server_dir = tmp_path / "server"
    server_dir.mkdir()
    cfg = Config()
    cfg.minecraft.server_dir = str(server_dir)
    cfg.minecraft.backup_dir = str(tmp_path / "backup")
    cfg.cache.active = False
    cfg.cache.sync_every = "1h"
    cfg.cache.quota.grace_period = 0
    cfg.save_flush_delay = 0
    return cfg


@pytest.fixture
def fake_server(tmp_path: Path) -> list[str]:
    """Command line of a fake server that echoes its console input."""
    script = tmp_path / "fake_server.py"
    script.write_text(FAKE_SERVER)
    return [sys.executable, "-u", str(script)]


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds or time runs out."""

    async def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait_until
