"""Readiness probes for proccompose."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from datetime import datetime
from typing import Callable

import httpx
import psutil
from loguru import logger

from proccompose.core.events import Event, ProbeFailed, ProbeReported, ProbeSucceeded
from proccompose.models import ProbeKind, ReadinessProbe


class ProbeError(Exception):
    """A single probe attempt failed (timeout, refused connection, bad status...)."""

    pass


class HealthCheckResult:
    """Result of a probe attempt."""

    def __init__(self, healthy: bool, message: str = "", details: dict | None = None):
        self.healthy = healthy
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()

    def __bool__(self) -> bool:
        return self.healthy

    def __repr__(self) -> str:
        status = "healthy" if self.healthy else "unhealthy"
        return f"HealthCheckResult({status}, {self.message!r})"


class HealthChecker:
    """Runs the readiness probe of one running process.

    The checker keeps its own consecutive success/failure counters and only
    talks to the scheduler through ``emit``. It never touches runtime state.
    """

    def __init__(
        self,
        name: str,
        run: int,
        probe: ReadinessProbe,
        emit: Callable[[Event], None],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ):
        """Initialize the health checker.

        Args:
            name: Process name.
            run: Launch generation of the process being probed.
            probe: Probe configuration.
            emit: Callback that enqueues an event for the scheduler.
            cwd: Working directory for exec probes.
            env: Extra environment for exec probes.
        """
        self.name = name
        self.run_id = run
        self.probe = probe
        self._emit = emit
        self._cwd = cwd
        self._env = env or {}
        self._successes = 0
        self._failures = 0

    async def run(self) -> None:
        """Probe until cancelled: once after the initial delay, then every period."""
        probe = self.probe
        logger.debug(
            f"Probing '{self.name}' ({probe.kind.value}) after {probe.initial_delay}s, "
            f"every {probe.period}s"
        )
        if probe.initial_delay:
            await asyncio.sleep(probe.initial_delay)

        while True:
            result = await self.check_once()
            self.record(result)
            await asyncio.sleep(probe.period)

    async def check_once(self) -> HealthCheckResult:
        """Run a single probe attempt bounded by the probe timeout."""
        timeout = self.probe.timeout
        try:
            result = await asyncio.wait_for(self._dispatch(), timeout=timeout)
        except asyncio.TimeoutError:
            result = HealthCheckResult(False, f"Timeout after {timeout}s")
        except ProbeError as e:
            result = HealthCheckResult(False, str(e))
        return result

    def record(self, result: HealthCheckResult) -> None:
        """Update counters with an attempt's outcome and emit threshold events."""
        if result.healthy:
            self._successes += 1
            self._failures = 0
        else:
            self._failures += 1
            self._successes = 0

        self._emit(
            ProbeReported(
                name=self.name,
                run=self.run_id,
                ok=result.healthy,
                message=result.message,
                successes=self._successes,
                failures=self._failures,
            )
        )

        if result.healthy and self._successes == self.probe.success_threshold:
            self._emit(ProbeSucceeded(name=self.name, run=self.run_id, successes=self._successes))
        elif not result.healthy and self._failures == self.probe.failure_threshold:
            self._emit(
                ProbeFailed(
                    name=self.name,
                    run=self.run_id,
                    failures=self._failures,
                    message=result.message,
                )
            )

    async def _dispatch(self) -> HealthCheckResult:
        kind = self.probe.kind
        if kind == ProbeKind.HTTP:
            return await self._check_http()
        elif kind == ProbeKind.TCP:
            return await self._check_tcp()
        return await self._check_exec()

    async def _check_http(self) -> HealthCheckResult:
        """GET the endpoint; any 2xx or 3xx status is ready."""
        config = self.probe.http
        try:
            async with httpx.AsyncClient(timeout=self.probe.timeout, trust_env=False) as client:
                response = await client.get(config.url)
        except httpx.TimeoutException as e:
            raise ProbeError(f"Timeout after {self.probe.timeout}s") from e
        except httpx.RequestError as e:
            raise ProbeError(f"Request error: {e}") from e

        if not 200 <= response.status_code < 400:
            raise ProbeError(f"Unexpected status: {response.status_code}")

        return HealthCheckResult(
            True,
            "HTTP check passed",
            {"status_code": response.status_code},
        )

    async def _check_tcp(self) -> HealthCheckResult:
        """Open and close a TCP connection."""
        config = self.probe.tcp
        try:
            _, writer = await asyncio.open_connection(config.host, config.port)
        except OSError as e:
            raise ProbeError(f"Connection to {config.host}:{config.port} failed: {e}") from e

        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError as e:
            logger.debug(f"TCP probe for '{self.name}' closed uncleanly: {e}")

        return HealthCheckResult(True, "TCP check passed", {"host": config.host, "port": config.port})

    async def _check_exec(self) -> HealthCheckResult:
        """Run the probe command; exit code 0 is ready."""
        command = self.probe.exec.command
        env = os.environ.copy()
        env.update(self._env)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=env,
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            raise ProbeError(f"Could not run probe command: {e}") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Timed out or probing stopped; children of the shell keep the pipe open
            _kill_tree(process)
            await process.wait()
            raise

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip().splitlines()
            tail = f": {detail[-1]}" if detail else ""
            raise ProbeError(f"Probe command exited with code {process.returncode}{tail}")

        return HealthCheckResult(True, "Exec check passed", {"exit_code": 0})


def _kill_tree(process: asyncio.subprocess.Process) -> None:
    """SIGKILL a probe command and everything it spawned."""
    procs: list[psutil.Process] = []
    if process.returncode is None:
        try:
            parent = psutil.Process(process.pid)
            procs = [parent, *parent.children(recursive=True)]
        except psutil.NoSuchProcess:
            pass

    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    if sys.platform != "win32":
        # The shell may already be gone, orphaning its children
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
