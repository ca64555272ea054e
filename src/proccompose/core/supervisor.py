"""Public entry point of proccompose: build, start, observe and stop a process set."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Iterable, Mapping
from typing import Any

from loguru import logger

from proccompose.config import load_specs
from proccompose.core.events import EventBus, Subscription
from proccompose.core.graph import DependencyGraph, GraphBuilder
from proccompose.core.registry import ProcessRegistry
from proccompose.core.scheduler import Scheduler
from proccompose.logs import setup_logging
from proccompose.models import FINAL_PHASES, OrchestratorConfig, Phase, ProcessSpec, ProcessStatus


class Supervisor:
    """Orchestrates a set of interdependent processes.

    Process definitions are validated on construction: a missing dependency or a
    dependency cycle raises ``ConfigError`` before anything is launched.

    Usage:
        async with Supervisor(specs) as supervisor:
            await supervisor.start()
            await supervisor.wait_until_settled(timeout=30)
            print(supervisor.status())
    """

    def __init__(
        self,
        specs: Mapping[str, Mapping[str, Any]] | Iterable[ProcessSpec],
        config: OrchestratorConfig | None = None,
    ):
        """Initialize the supervisor.

        Args:
            specs: Process specs, or a mapping of name -> spec fields.
            config: Orchestrator configuration; defaults apply when omitted.

        Raises:
            ConfigError: if the specs are invalid or their dependencies are not
                an acyclic graph of known processes.
        """
        self.config = config or OrchestratorConfig()
        self.graph: DependencyGraph = GraphBuilder().build(load_specs(specs))
        self.registry = ProcessRegistry(self.graph.specs.values())
        self.bus = EventBus()
        self._scheduler = Scheduler(self.graph, self.registry, self.config, self.bus)
        self._shutdown_event = asyncio.Event()
        self._running = False

        logger.debug(f"Supervisor ready with {len(self.graph)} processes")

    # Status

    def status(self) -> dict[str, ProcessStatus]:
        """Point-in-time status of every process."""
        return self.registry.snapshot()

    def get_status(self, name: str) -> ProcessStatus:
        """Point-in-time status of one process.

        Raises:
            UnknownProcessError: if no such process exists.
        """
        return self.registry.get_status(name)

    def subscribe(self, maxsize: int = 0) -> Subscription:
        """Subscribe to phase transitions.

        With ``maxsize`` set, the oldest undelivered events are dropped when a
        subscriber falls behind.
        """
        return self.bus.subscribe(maxsize=maxsize)

    def get_dependencies_graph(self) -> dict[str, dict[str, str]]:
        return self.graph.to_dict()

    # Control

    async def start(self, names: Iterable[str] | str | None = None) -> None:
        """Start the given processes (and their dependencies), or all of them.

        Returns once every process that can launch right now has been launched;
        the rest follow as their dependency conditions are met.
        """
        await self._scheduler.start(names)

    async def stop(self, names: Iterable[str] | str | None = None) -> None:
        """Stop the given processes, or all of them, and wait for them to exit."""
        await self._scheduler.stop(names)

    async def restart(self, name: str) -> None:
        """Restart one process without consuming its restart budget."""
        await self._scheduler.restart(name)

    def is_settled(self, name: str) -> bool:
        """Whether a process is ready or will not change without intervention.

        One-shot processes only settle once they have exited for good.
        """
        phase = self.registry.state(name).phase
        if phase in FINAL_PHASES:
            return True
        return phase == Phase.HEALTHY and not self.registry.spec(name).is_one_shot

    async def wait_until_settled(
        self,
        names: Iterable[str] | str | None = None,
        timeout: float | None = None,
        interval: float = 0.05,
    ) -> dict[str, ProcessStatus]:
        """Wait until the given processes (default: all requested ones) settle.

        Raises:
            asyncio.TimeoutError: if they have not settled within ``timeout``.
        """
        if names is None:
            targets = [
                name
                for name in self.registry
                if self.registry.state(name).requested or self.registry.state(name).phase != Phase.PENDING
            ]
        else:
            targets = [names] if isinstance(names, str) else list(names)
            for name in targets:
                self.registry.spec(name)

        async def _poll() -> None:
            while not all(self.is_settled(name) for name in targets):
                await asyncio.sleep(interval)

        await asyncio.wait_for(_poll(), timeout=timeout)
        return {name: self.registry.get_status(name) for name in targets}

    # Lifecycle

    async def run(self, install_signal_handlers: bool = True, configure_logging: bool = False) -> None:
        """Start every process and block until ``shutdown()`` or SIGINT/SIGTERM.

        Args:
            install_signal_handlers: Shut down on SIGINT and SIGTERM.
            configure_logging: Replace the loguru sinks with the console sink
                at ``config.log_level``.
        """
        if configure_logging:
            setup_logging(self.config.log_level)

        self._running = True
        logger.info("Supervisor started")

        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, self._handle_signal, signum)

        api_task = None
        if self.config.api.enabled:
            from proccompose.api.server import run_server

            api_task = asyncio.create_task(
                run_server(self, host=self.config.api.host, port=self.config.api.port)
            )

        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            if api_task is not None:
                api_task.cancel()
                try:
                    await api_task
                except asyncio.CancelledError:
                    pass

            await self.close()

            if install_signal_handlers:
                for signum in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(signum)

            self._running = False
            logger.info("Supervisor stopped")

    def _handle_signal(self, signum: int) -> None:
        logger.info(f"Received signal {signal.Signals(signum).name}")
        self.shutdown()

    def shutdown(self) -> None:
        """Signal ``run()`` to stop every process and return."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def close(self) -> None:
        """Stop every process and release background tasks."""
        await self._scheduler.close()

    @property
    def is_running(self) -> bool:
        """Check if the supervisor is running."""
        return self._running

    async def __aenter__(self) -> Supervisor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
