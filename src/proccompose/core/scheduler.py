"""Event-driven scheduler: the single owner of process runtime state."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from loguru import logger

from proccompose.core.events import (
    Barrier,
    Command,
    Event,
    EventBus,
    LaunchFailed,
    ProbeFailed,
    ProbeReported,
    ProbeSucceeded,
    ProcessExited,
    ProcessStarted,
    RestartCommand,
    RestartDue,
    StartCommand,
    StopCommand,
    TransitionEvent,
)
from proccompose.core.graph import DependencyGraph
from proccompose.core.health import HealthChecker
from proccompose.core.process import ProcessRunner
from proccompose.core.registry import ProcessRegistry
from proccompose.core.restart import RestartPolicyManager
from proccompose.models import (
    ALLOWED_TRANSITIONS,
    FINAL_PHASES,
    RUNNING_PHASES,
    Condition,
    OrchestratorConfig,
    Phase,
    ProbeOutcome,
    ProcessRuntimeState,
    Reason,
    ShutdownConfig,
    ShutdownOrder,
)


class InvalidTransition(Exception):
    """A phase change that the lifecycle state machine does not allow."""

    def __init__(self, name: str, old: Phase, new: Phase):
        self.name = name
        self.old = old
        self.new = new
        super().__init__(f"Invalid transition for '{name}': {old.value} -> {new.value}")


def condition_satisfied(condition: Condition, state: ProcessRuntimeState) -> bool:
    """Whether a dependency in ``state`` currently satisfies ``condition``.

    Restarting and terminal-after-exit count as having passed through exited.
    """
    phase = state.phase
    exited = phase == Phase.EXITED or (
        phase == Phase.TERMINAL
        and state.last_exit_code is not None
        and state.reason != Reason.LAUNCH_FAILED
    )

    if condition == Condition.STARTED:
        return phase in RUNNING_PHASES or phase == Phase.RESTARTING or exited
    if condition == Condition.HEALTHY:
        return phase == Phase.HEALTHY
    if condition == Condition.COMPLETED:
        return exited
    if condition == Condition.COMPLETED_SUCCESSFULLY:
        return exited and state.last_exit_code == 0
    raise ValueError(f"Unknown condition: {condition!r}")


def condition_unsatisfiable(condition: Condition, state: ProcessRuntimeState) -> bool:
    """Whether ``condition`` can never be met without manual intervention."""
    return state.phase in FINAL_PHASES and not condition_satisfied(condition, state)


class Scheduler:
    """Launches processes as their dependencies allow and reacts to their events.

    Runner, health and restart tasks only enqueue events; all runtime state
    changes happen in the loop task that consumes the queue.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        registry: ProcessRegistry,
        config: OrchestratorConfig | None = None,
        bus: EventBus | None = None,
    ):
        self.graph = graph
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.bus = bus or EventBus()

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop_task: asyncio.Task | None = None
        self._runners: dict[str, ProcessRunner] = {}
        self._runner_tasks: dict[str, asyncio.Task] = {}
        self._health_tasks: dict[str, asyncio.Task] = {}
        self._stop_tasks: set[asyncio.Task] = set()
        self._halted = False

        self._restarts = RestartPolicyManager(
            emit=self.emit,
            default_backoff=self.config.backoff,
        )

        self._handlers = {
            ProcessStarted: self._on_started,
            LaunchFailed: self._on_launch_failed,
            ProbeReported: self._on_probe_reported,
            ProbeSucceeded: self._on_probe_succeeded,
            ProbeFailed: self._on_probe_failed,
            ProcessExited: self._on_exited,
            RestartDue: self._on_restart_due,
            StartCommand: self._on_start,
            StopCommand: self._on_stop,
            RestartCommand: self._on_restart,
            Barrier: lambda cmd: None,
        }

    # Public API

    def emit(self, event: Event | Command) -> None:
        """Enqueue an event for the loop. Safe to call from any task."""
        self._queue.put_nowait(event)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self, names: Iterable[str] | None = None) -> None:
        """Request processes (all when ``names`` is None) and launch what is launchable.

        Returns once the launchable set has been dispatched.
        """
        self._ensure_loop()
        await self._request(StartCommand, names=self._validate(names))

    async def stop(self, names: Iterable[str] | None = None) -> None:
        """Stop processes (all when ``names`` is None) and wait for them to exit."""
        targets = self._validate(names)
        if not self.is_running:
            return
        selected = list(self.graph) if targets is None else [n for n in self.graph if n in targets]

        shutdown = self.config.shutdown
        if shutdown.order == ShutdownOrder.REVERSE_DEPENDENCY:
            waves = self.graph.shutdown_waves(selected)
        else:
            waves = [selected]

        halt = targets is None
        for wave in waves:
            runners = await self._request(StopCommand, names=frozenset(wave), halt=halt)
            if runners:
                await asyncio.gather(*(runner.wait() for runner in runners))
        await self._request(Barrier)

    async def restart(self, name: str) -> None:
        """Restart one process, relaunching it once its current run has exited."""
        self.registry.spec(name)
        self._ensure_loop()
        runner = await self._request(RestartCommand, name=name)
        if runner is not None:
            await runner.wait()
        await self._request(Barrier)

    async def close(self) -> None:
        """Stop everything and tear down the loop and background tasks."""
        await self.stop()
        self._restarts.cancel_all()

        pending = list(self._health_tasks.values()) + list(self._stop_tasks)
        for task in self._health_tasks.values():
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._health_tasks.clear()

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self.bus.close()
        logger.info("Scheduler stopped")

    # Loop

    def _ensure_loop(self) -> None:
        if not self.is_running:
            self._loop_task = asyncio.create_task(self._run_loop(), name="proccompose-scheduler")
            logger.debug("Scheduler loop started")

    async def _request(self, command_type: type[Command], **fields: Any) -> Any:
        future = asyncio.get_running_loop().create_future()
        self.emit(command_type(future=future, **fields))
        return await future

    def _validate(self, names: Iterable[str] | None) -> frozenset[str] | None:
        if names is None:
            return None
        if isinstance(names, str):
            names = [names]
        names = frozenset(names)
        for name in names:
            self.registry.spec(name)
        return names

    async def _run_loop(self) -> None:
        while True:
            item = await self._queue.get()
            self._dispatch(item)

    def _dispatch(self, item: Event | Command) -> None:
        handler = self._handlers[type(item)]

        if isinstance(item, Command):
            try:
                result = handler(item)
            except Exception as e:
                if not item.future.done():
                    item.future.set_exception(e)
                return
            if not item.future.done():
                item.future.set_result(result)
            return

        state = self.registry.state(item.name)
        if item.run != state.run:
            logger.debug(f"Dropping stale {type(item).__name__} for '{item.name}' (run {item.run})")
            return

        try:
            handler(item)
        except Exception:
            logger.exception(f"Error handling {type(item).__name__} for '{item.name}'")

    # Event handlers

    def _on_started(self, event: ProcessStarted) -> None:
        name = event.name
        state = self.registry.state(name)
        state.pid = event.pid
        state.started_at = datetime.now()
        self._transition(name, Phase.RUNNING)

        if state.stop_requested or state.restart_requested:
            # Being torn down; dependents must not rely on this run
            self._terminate(name)
            return
        if self.registry.spec(name).readiness_probe is not None:
            self._start_health(name)
        else:
            self._transition(name, Phase.HEALTHY, message="Running (no readiness probe)")

        self._reevaluate_dependents(name)

    def _on_launch_failed(self, event: LaunchFailed) -> None:
        name = event.name
        self._runners.pop(name, None)
        self._runner_tasks.pop(name, None)
        self._transition(name, Phase.TERMINAL, reason=Reason.LAUNCH_FAILED, message=event.error)
        self._reevaluate_dependents(name)

    def _on_probe_reported(self, event: ProbeReported) -> None:
        state = self.registry.state(event.name)
        if state.phase not in RUNNING_PHASES:
            return
        state.consecutive_successes = event.successes
        state.consecutive_failures = event.failures
        state.last_probe = ProbeOutcome(ok=event.ok, message=event.message)

    def _on_probe_succeeded(self, event: ProbeSucceeded) -> None:
        name = event.name
        if self.registry.state(name).phase not in (Phase.RUNNING, Phase.UNHEALTHY):
            return
        self._transition(name, Phase.HEALTHY, message=f"{event.successes} consecutive probe successes")
        self._reevaluate_dependents(name)

    def _on_probe_failed(self, event: ProbeFailed) -> None:
        name = event.name
        if self.registry.state(name).phase not in (Phase.RUNNING, Phase.HEALTHY):
            return
        message = f"{event.failures} consecutive probe failures: {event.message}"
        logger.warning(f"Process '{name}' is unhealthy: {message}")
        self._transition(name, Phase.UNHEALTHY, message=message)
        self._reevaluate_dependents(name)

    def _on_exited(self, event: ProcessExited) -> None:
        name = event.name
        spec = self.registry.spec(name)
        state = self.registry.state(name)

        self._cancel_health(name)
        self._runners.pop(name, None)
        self._runner_tasks.pop(name, None)

        state.last_exit_code = event.exit_code
        state.exited_at = datetime.now()
        state.pid = None
        self._transition(name, Phase.EXITED, message=f"Exited with code {event.exit_code}")

        if state.restart_requested:
            state.restart_requested = False
            self._transition(name, Phase.RESTARTING, message="Restart requested")
            self._launch(name)
        else:
            decision = self._restarts.decide(
                spec,
                event.exit_code,
                state.restart_count,
                stop_requested=state.stop_requested or self._halted,
            )
            if decision.should_restart:
                state.restart_count = decision.attempt
                self._transition(
                    name,
                    Phase.RESTARTING,
                    message=f"Restart {decision.attempt} in {decision.delay:g}s",
                )
                self._restarts.schedule(name, state.run, decision.delay)
            else:
                message = f"Exited with code {event.exit_code}"
                if decision.reason == Reason.RESTART_EXHAUSTED:
                    message = f"Gave up after {state.restart_count} restarts (last exit code {event.exit_code})"
                self._transition(name, Phase.TERMINAL, reason=decision.reason, message=message)

        self._reevaluate_dependents(name)

    def _on_restart_due(self, event: RestartDue) -> None:
        name = event.name
        state = self.registry.state(name)
        if state.phase != Phase.RESTARTING or state.stop_requested or self._halted:
            return
        self._launch(name)

    # Command handlers

    def _on_start(self, command: StartCommand) -> None:
        self._halted = False

        if command.names is None:
            targets = {name for name in self.graph if not self.graph.specs[name].disabled}
            explicit: frozenset[str] = frozenset()
        else:
            targets = self.graph.closure(command.names)
            explicit = command.names

        # Explicit targets always run again; other finished processes only
        # if they were stopped or blocked
        order = [name for name in self.graph.start_order() if name in targets]
        for name in order:
            state = self.registry.state(name)
            state.requested = True
            if state.phase in FINAL_PHASES and (
                name in explicit or state.reason in (Reason.STOPPED, Reason.BLOCKED)
            ):
                self._reset(name)

        logger.info(f"Starting {len(order)} processes")
        for name in order:
            if self._evaluate(name):
                self._reevaluate_dependents(name)

    def _on_stop(self, command: StopCommand) -> list[ProcessRunner]:
        if command.halt:
            self._halted = True

        runners = []
        for name in command.names:
            state = self.registry.state(name)
            phase = state.phase
            if phase == Phase.TERMINAL:
                continue

            state.requested = False
            state.stop_requested = True
            state.restart_requested = False
            self._restarts.cancel(name)
            self._cancel_health(name)

            if phase in RUNNING_PHASES or phase == Phase.STARTING:
                runner = self._runners.get(name)
                if runner is not None:
                    runners.append(runner)
                    if phase != Phase.STARTING:
                        self._terminate(name)
            elif phase in (Phase.PENDING, Phase.RESTARTING, Phase.BLOCKED):
                self._transition(name, Phase.TERMINAL, reason=Reason.STOPPED, message="Stopped")
                self._reevaluate_dependents(name)

        return runners

    def _on_restart(self, command: RestartCommand) -> ProcessRunner | None:
        name = command.name
        state = self.registry.state(name)
        state.requested = True
        self._halted = False
        phase = state.phase

        if phase in RUNNING_PHASES or phase == Phase.STARTING:
            state.restart_requested = True
            self._cancel_health(name)
            if phase != Phase.STARTING:
                self._terminate(name)
            return self._runners.get(name)

        if phase == Phase.RESTARTING:
            self._restarts.cancel(name)
            self._launch(name)
        elif phase in FINAL_PHASES:
            self._reset(name)
            if self._evaluate(name):
                self._reevaluate_dependents(name)
        elif phase == Phase.PENDING:
            if self._evaluate(name):
                self._reevaluate_dependents(name)
        return None

    # Helpers

    def _transition(
        self,
        name: str,
        new: Phase,
        reason: Reason | None = None,
        message: str | None = None,
    ) -> None:
        state = self.registry.state(name)
        old = state.phase
        if new not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransition(name, old, new)

        state.phase = new
        state.reason = reason if new in FINAL_PHASES else None
        state.message = message

        exit_code = state.last_exit_code if new in (Phase.EXITED, Phase.TERMINAL) else None
        if new in FINAL_PHASES:
            logger.info(
                f"Process '{name}': {old.value} -> {new.value}"
                f" ({reason.value if reason else 'no reason'}){f': {message}' if message else ''}"
            )
        else:
            logger.debug(f"Process '{name}': {old.value} -> {new.value}")

        self.bus.publish(
            TransitionEvent(
                process=name,
                old=old,
                new=new,
                reason=state.reason,
                exit_code=exit_code,
                message=message,
            )
        )

    def _reset(self, name: str) -> None:
        """Put a terminal or blocked process back to pending for a fresh start."""
        state = self.registry.state(name)
        state.restart_count = 0
        state.last_exit_code = None
        state.stop_requested = False
        state.restart_requested = False
        self._transition(name, Phase.PENDING, message="Reset for start")

    def _evaluate(self, name: str) -> bool:
        """Launch or block a pending process. Returns True if it became blocked."""
        state = self.registry.state(name)
        if state.phase != Phase.PENDING or self._halted:
            return False

        dependencies = self.graph.dependencies[name]
        for dep, condition in dependencies.items():
            dep_state = self.registry.state(dep)
            if condition_unsatisfiable(condition, dep_state):
                message = (
                    f"Dependency '{dep}' is {dep_state.phase.value}"
                    f"{f' ({dep_state.reason.value})' if dep_state.reason else ''}"
                    f" and can no longer reach '{condition.value}'"
                )
                logger.warning(f"Process '{name}' is blocked: {message}")
                self._transition(name, Phase.BLOCKED, reason=Reason.BLOCKED, message=message)
                return True

        if not state.requested:
            return False

        if all(
            condition_satisfied(condition, self.registry.state(dep))
            for dep, condition in dependencies.items()
        ):
            self._launch(name)
        return False

    def _reevaluate_dependents(self, name: str) -> None:
        """Re-check only the dependents of ``name``, cascading blocks downstream."""
        worklist = sorted(self.graph.dependents[name])
        while worklist:
            dependent = worklist.pop(0)
            if self._evaluate(dependent):
                worklist.extend(sorted(self.graph.dependents[dependent]))

    def _launch(self, name: str) -> None:
        spec = self.registry.spec(name)
        state = self.registry.state(name)

        state.run += 1
        state.consecutive_successes = 0
        state.consecutive_failures = 0
        state.last_probe = None
        state.stop_requested = False
        self._transition(name, Phase.STARTING, message=f"Launching run {state.run}")

        runner = ProcessRunner(
            spec,
            state.run,
            self.emit,
            logs_dir=self.config.logs_dir,
            log_max_size=self.config.log_max_size,
            log_rotate=self.config.log_rotate,
            log_compress=self.config.log_compress,
        )
        self._runners[name] = runner
        task = asyncio.create_task(runner.run(), name=f"proccompose-run-{name}")
        task.add_done_callback(self._log_task_error)
        self._runner_tasks[name] = task

    def _start_health(self, name: str) -> None:
        spec = self.registry.spec(name)
        checker = HealthChecker(
            name,
            self.registry.state(name).run,
            spec.readiness_probe,
            self.emit,
            cwd=spec.cwd,
            env=spec.env,
        )
        task = asyncio.create_task(checker.run(), name=f"proccompose-probe-{name}")
        task.add_done_callback(self._log_task_error)
        self._health_tasks[name] = task

    def _cancel_health(self, name: str) -> None:
        task = self._health_tasks.pop(name, None)
        if task is not None:
            task.cancel()

    def _shutdown_config(self, name: str) -> ShutdownConfig:
        return self.registry.spec(name).shutdown or self.config.shutdown

    def _terminate(self, name: str) -> None:
        runner = self._runners.get(name)
        if runner is None:
            return
        shutdown = self._shutdown_config(name)
        task = asyncio.create_task(
            runner.terminate(shutdown.signum, shutdown.grace_period),
            name=f"proccompose-stop-{name}",
        )
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)
        task.add_done_callback(self._log_task_error)

    @staticmethod
    def _log_task_error(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"Task {task.get_name()} failed: {error}")
