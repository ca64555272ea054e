"""Process registry: immutable specs plus mutable runtime state."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from proccompose.config import ConfigError
from proccompose.models import ProcessRuntimeState, ProcessSpec, ProcessStatus


class UnknownProcessError(LookupError):
    """No process with the given name is registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown process '{name}'")


class ProcessRegistry:
    """Holds one spec and one runtime state per process.

    Runtime state objects are handed out by ``state()`` for the scheduler to
    mutate; everything else should read ``snapshot()``.
    """

    def __init__(self, specs: Iterable[ProcessSpec] = ()):
        self._specs: dict[str, ProcessSpec] = {}
        self._states: dict[str, ProcessRuntimeState] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ProcessSpec) -> None:
        """Register a spec and create its runtime state in phase pending."""
        if spec.name in self._specs:
            raise ConfigError(f"Duplicate process name: '{spec.name}'")
        self._specs[spec.name] = spec
        self._states[spec.name] = ProcessRuntimeState(name=spec.name)

    def spec(self, name: str) -> ProcessSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise UnknownProcessError(name) from None

    def state(self, name: str) -> ProcessRuntimeState:
        try:
            return self._states[name]
        except KeyError:
            raise UnknownProcessError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[str]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def get_status(self, name: str) -> ProcessStatus:
        """Point-in-time status of one process."""
        state = self.state(name)
        return ProcessStatus(
            name=state.name,
            phase=state.phase,
            last_exit_code=state.last_exit_code,
            restart_count=state.restart_count,
            last_probe=state.last_probe.model_copy() if state.last_probe else None,
            reason=state.reason,
            message=state.message,
            pid=state.pid,
            started_at=state.started_at,
        )

    def snapshot(self) -> dict[str, ProcessStatus]:
        """Point-in-time copy of every process status."""
        return {name: self.get_status(name) for name in self._specs}
