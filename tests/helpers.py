"""Helpers shared by the proccompose tests."""

import asyncio
import socket
import sys
from pathlib import Path

import pytest

MOCK_PROCESSES = Path(__file__).parent / "mock_processes"

SLEEPER = "import time; time.sleep(60)"


def python_process(code: str, **fields) -> dict:
    """Spec fields for a process running inline Python code."""
    return {"command": sys.executable, "args": ["-c", code], **fields}


def script_process(script: str, *args: str, **fields) -> dict:
    """Spec fields for a process running one of the mock process scripts."""
    return {
        "command": sys.executable,
        "args": [str(MOCK_PROCESSES / script), *args],
        **fields,
    }


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


async def collect(subscription, until, timeout: float = 10.0) -> list:
    """Read transition events until ``until(event)`` matches."""
    events = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            pytest.fail(f"Expected transition not seen within {timeout}s: {events}")
        event = await subscription.get(timeout=remaining)
        events.append(event)
        if until(event):
            return events
