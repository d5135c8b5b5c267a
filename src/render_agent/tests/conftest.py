"""Shared fixtures for the render agent tests."""

import asyncio
import sys
import time

import pytest

from src.render_agent.command import join_command


def python_command(code: str) -> str:
    """Command string that runs `code` with the current interpreter."""
    return join_command([sys.executable, "-c", code])


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    """Poll `predicate` on the running loop until it is true or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def py_command():
    return python_command


@pytest.fixture
def agent_env(monkeypatch, tmp_path):
    """Isolate config loading from the developer's environment."""
    for name in (
        "RENDER_AGENT_HOST",
        "RENDER_AGENT_PORT",
        "BLENDER_PATH",
        "ENGINE_VERSION_TIMEOUT",
        "QUEUE_POLL_INTERVAL",
        "TERMINATE_TIMEOUT",
        "FLUSH_DELAY",
        "HISTORY_LIMIT",
        "EVENT_BUFFER_SIZE",
        "DATA_ROOT",
        "LOG_ROOT",
        "AGENT_HOME",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
