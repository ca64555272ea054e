"""Restart policy implementation for proccompose."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from loguru import logger

from proccompose.core.events import Event, RestartDue
from proccompose.models import BackoffConfig, ProcessSpec, Reason, RestartPolicy


class RestartAction(str, Enum):
    """What to do with a process that exited."""

    RESTART = "restart"
    TERMINATE = "terminate"


class RestartDecision:
    """Outcome of applying a restart policy to an exit."""

    def __init__(
        self,
        action: RestartAction,
        delay: float = 0.0,
        reason: Reason | None = None,
        attempt: int = 0,
    ):
        self.action = action
        self.delay = delay
        self.reason = reason
        self.attempt = attempt

    @property
    def should_restart(self) -> bool:
        return self.action == RestartAction.RESTART

    def __repr__(self) -> str:
        if self.should_restart:
            return f"RestartDecision(restart #{self.attempt} in {self.delay}s)"
        return f"RestartDecision(terminate, {self.reason.value if self.reason else None})"


class RestartPolicyManager:
    """Decides restart vs terminate on exit and times the backoff.

    Backoff timers are plain tasks that enqueue ``RestartDue`` once the delay
    has elapsed; the scheduler performs the relaunch.
    """

    def __init__(
        self,
        emit: Callable[[Event], None],
        default_backoff: BackoffConfig | None = None,
    ):
        """Initialize the restart policy manager.

        Args:
            emit: Callback that enqueues an event for the scheduler.
            default_backoff: Backoff used when a spec has none of its own.
        """
        self._emit = emit
        self._default_backoff = default_backoff or BackoffConfig()
        self._timers: dict[str, asyncio.Task] = {}

    def backoff_for(self, spec: ProcessSpec) -> BackoffConfig:
        return spec.backoff or self._default_backoff

    def decide(
        self,
        spec: ProcessSpec,
        exit_code: int,
        restart_count: int,
        stop_requested: bool = False,
    ) -> RestartDecision:
        """Apply the process's restart policy to an exit.

        Args:
            spec: The process specification.
            exit_code: Exit code of the run that just ended.
            restart_count: Restarts already performed.
            stop_requested: The exit was caused by a stop request.

        Returns:
            RestartDecision; for restarts ``attempt`` is the new restart count.
        """
        if stop_requested:
            return RestartDecision(RestartAction.TERMINATE, reason=Reason.STOPPED)

        outcome = Reason.COMPLETED if exit_code == 0 else Reason.FAILED
        policy = spec.restart_policy

        if policy == RestartPolicy.NEVER:
            return RestartDecision(RestartAction.TERMINATE, reason=outcome)

        if policy == RestartPolicy.ON_FAILURE and exit_code == 0:
            return RestartDecision(RestartAction.TERMINATE, reason=outcome)

        if spec.max_restarts is not None and restart_count >= spec.max_restarts:
            logger.error(
                f"Process '{spec.name}' reached max restarts ({spec.max_restarts}), giving up"
            )
            return RestartDecision(RestartAction.TERMINATE, reason=Reason.RESTART_EXHAUSTED)

        delay = self.backoff_for(spec).delay(restart_count)
        return RestartDecision(RestartAction.RESTART, delay=delay, attempt=restart_count + 1)

    def schedule(self, name: str, run: int, delay: float) -> None:
        """Emit ``RestartDue`` for ``name`` after ``delay`` seconds."""
        self.cancel(name)
        due_at = datetime.now() + timedelta(seconds=delay)
        self._timers[name] = asyncio.create_task(
            self._fire(name, run, delay), name=f"restart-{name}"
        )
        logger.info(
            f"Scheduled restart for '{name}' at {due_at.strftime('%H:%M:%S')} "
            f"(delay {delay:g}s)"
        )

    async def _fire(self, name: str, run: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(name, None)
        self._emit(RestartDue(name=name, run=run))

    def cancel(self, name: str) -> None:
        """Cancel a pending restart."""
        timer = self._timers.pop(name, None)
        if timer is not None and not timer.done():
            timer.cancel()
            logger.debug(f"Cancelled restart for '{name}'")

    def cancel_all(self) -> None:
        for name in list(self._timers):
            self.cancel(name)
