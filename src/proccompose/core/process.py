"""Spawning, exit watching and signalling of supervised processes."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable

import psutil
from loguru import logger

from proccompose.core.events import Event, LaunchFailed, ProcessExited, ProcessStarted
from proccompose.core.log_utils import check_and_rotate
from proccompose.models import ProcessSpec


class LaunchError(Exception):
    """A process could not be spawned (missing binary, permissions, bad cwd)."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to launch '{name}': {reason}")


class ProcessRunner:
    """One run of a process: spawn it, then wait for its exit.

    ``run()`` is the body of the process's exit-watching task. It reports
    ``ProcessStarted`` (or ``LaunchFailed``) and later ``ProcessExited``
    through ``emit``, always in that order.
    """

    def __init__(
        self,
        spec: ProcessSpec,
        run: int,
        emit: Callable[[Event], None],
        logs_dir: Path | None = None,
        log_max_size: str = "10MB",
        log_rotate: int = 5,
        log_compress: bool = False,
    ):
        self.spec = spec
        self.run_id = run
        self._emit = emit
        self._logs_dir = logs_dir
        self._log_max_size = log_max_size
        self._log_rotate = log_rotate
        self._log_compress = log_compress
        self._process: asyncio.subprocess.Process | None = None
        self._stdout_file: IO[Any] | None = None
        self._stderr_file: IO[Any] | None = None
        self._exited = asyncio.Event()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    def is_running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    async def run(self) -> None:
        """Spawn the process and report its lifecycle."""
        try:
            process = await self.spawn()
        except LaunchError as e:
            logger.error(str(e))
            self._emit(LaunchFailed(name=self.name, run=self.run_id, error=e.reason))
            self._exited.set()
            return

        self._emit(ProcessStarted(name=self.name, run=self.run_id, pid=process.pid))
        try:
            exit_code = await process.wait()
        finally:
            self._close_files()

        self._emit(ProcessExited(name=self.name, run=self.run_id, exit_code=exit_code))
        self._exited.set()

    async def spawn(self) -> asyncio.subprocess.Process:
        """Start the OS process.

        Raises:
            LaunchError: if the working directory is missing or exec fails.
        """
        spec = self.spec

        cwd = Path(spec.cwd).expanduser() if spec.cwd else Path.cwd()
        if not cwd.is_dir():
            raise LaunchError(spec.name, f"Working directory does not exist: {cwd}")

        env = os.environ.copy()
        env.update(spec.env)
        env["PROCCOMPOSE_PROCESS"] = spec.name
        env["PROCCOMPOSE_RUN"] = str(self.run_id)

        stdout, stderr = self._open_logs()

        try:
            self._process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                start_new_session=sys.platform != "win32",  # own process group
            )
        except OSError as e:
            self._close_files()
            raise LaunchError(spec.name, e.strerror or str(e)) from e

        logger.info(f"Started '{spec.name}' (PID {self._process.pid}, run {self.run_id})")
        return self._process

    def _open_logs(self) -> tuple[Any, Any]:
        if self._logs_dir is None:
            return asyncio.subprocess.DEVNULL, asyncio.subprocess.DEVNULL

        self._logs_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = self.spec.get_log_stdout_path(self._logs_dir)
        stderr_path = self.spec.get_log_stderr_path(self._logs_dir)
        for path in (stdout_path, stderr_path):
            check_and_rotate(path, self._log_max_size, self._log_rotate, self._log_compress)

        self._stdout_file = open(stdout_path, "a")
        self._stderr_file = open(stderr_path, "a")

        # Log header
        timestamp = datetime.now().isoformat()
        self._stdout_file.write(f"\n{'='*60}\n")
        self._stdout_file.write(f"[{timestamp}] Starting process: {self.spec.name}\n")
        self._stdout_file.write(f"Command: {' '.join(self.spec.argv)}\n")
        self._stdout_file.write(f"Run: {self.run_id}\n")
        self._stdout_file.write(f"{'='*60}\n\n")
        self._stdout_file.flush()

        return self._stdout_file, self._stderr_file

    def _close_files(self) -> None:
        for f in (self._stdout_file, self._stderr_file):
            if f is not None and not f.closed:
                f.close()

    async def terminate(self, signum: int = signal.SIGTERM, grace_period: float = 10.0) -> int | None:
        """Signal the process tree and wait for exit, killing it after the grace period.

        Returns:
            The exit code, or None if the process never started.
        """
        if self._process is None:
            return None
        if self._exited.is_set() or self._process.returncode is not None:
            return self._process.returncode

        tree = self._process_tree()
        logger.info(
            f"Stopping '{self.name}' with {signal.Signals(signum).name} "
            f"(grace period: {grace_period:g}s)"
        )
        self._signal(tree, signum)

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Process '{self.name}' did not stop gracefully, killing")
            self._kill(tree + self._process_tree())
            await self._exited.wait()

        return self._process.returncode

    def _process_tree(self) -> list[psutil.Process]:
        try:
            parent = psutil.Process(self._process.pid)
            return [parent, *parent.children(recursive=True)]
        except psutil.NoSuchProcess:
            return []

    @staticmethod
    def _signal(procs: list[psutil.Process], signum: int) -> None:
        for proc in procs:
            try:
                proc.send_signal(signum)
            except psutil.NoSuchProcess:
                pass

    @staticmethod
    def _kill(procs: list[psutil.Process]) -> None:
        for proc in procs:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    async def wait(self) -> None:
        """Wait until the run has ended (exited or failed to launch)."""
        await self._exited.wait()
