"""Pydantic models for proccompose specifications, configuration and state."""

from __future__ import annotations

import signal
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class Condition(str, Enum):
    """Condition a dependency must reach before a dependent may launch."""

    STARTED = "started"
    HEALTHY = "healthy"
    COMPLETED = "completed"
    COMPLETED_SUCCESSFULLY = "completed_successfully"

    @classmethod
    def _missing_(cls, value: object) -> Condition | None:
        # Accept the process-compose spellings: process_healthy, process_completed, ...
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_")
            if key.startswith("process_"):
                key = key[len("process_"):]
            for member in cls:
                if member.value == key:
                    return member
        return None


class RestartPolicy(str, Enum):
    """What to do when a process exits."""

    NEVER = "never"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"

    @classmethod
    def _missing_(cls, value: object) -> RestartPolicy | None:
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_")
            if key in ("no", "none"):
                return cls.NEVER
            for member in cls:
                if member.value == key:
                    return member
        return None


class Phase(str, Enum):
    """Lifecycle phase of a supervised process."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EXITED = "exited"
    RESTARTING = "restarting"
    TERMINAL = "terminal"
    BLOCKED = "blocked"


# Phases in which an OS process is alive
RUNNING_PHASES = frozenset({Phase.RUNNING, Phase.HEALTHY, Phase.UNHEALTHY})

# Phases a process never leaves on its own
FINAL_PHASES = frozenset({Phase.TERMINAL, Phase.BLOCKED})

ALLOWED_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PENDING: frozenset({Phase.STARTING, Phase.BLOCKED, Phase.TERMINAL}),
    Phase.STARTING: frozenset({Phase.RUNNING, Phase.TERMINAL}),
    Phase.RUNNING: frozenset({Phase.HEALTHY, Phase.UNHEALTHY, Phase.EXITED}),
    Phase.HEALTHY: frozenset({Phase.UNHEALTHY, Phase.EXITED}),
    Phase.UNHEALTHY: frozenset({Phase.HEALTHY, Phase.EXITED}),
    Phase.EXITED: frozenset({Phase.RESTARTING, Phase.TERMINAL}),
    Phase.RESTARTING: frozenset({Phase.STARTING, Phase.TERMINAL}),
    Phase.TERMINAL: frozenset({Phase.PENDING}),
    Phase.BLOCKED: frozenset({Phase.PENDING, Phase.TERMINAL}),
}


class Reason(str, Enum):
    """Why a process sits in a final phase."""

    COMPLETED = "completed"
    FAILED = "failed"
    RESTART_EXHAUSTED = "restart_exhausted"
    LAUNCH_FAILED = "launch_failed"
    BLOCKED = "blocked"
    STOPPED = "stopped"


class ProbeKind(str, Enum):
    """Type of readiness probe."""

    HTTP = "http"
    TCP = "tcp"
    EXEC = "exec"


class BackoffPreset(str, Enum):
    """Restart backoff curves."""

    EXPONENTIAL = "exponential"  # initial, initial*factor, ... capped at max_delay
    FIXED = "fixed"  # initial, initial, initial...


class ShutdownOrder(str, Enum):
    """Order in which processes are stopped."""

    PARALLEL = "parallel"
    REVERSE_DEPENDENCY = "reverse_dependency"


class HttpProbe(BaseModel):
    """HTTP GET readiness check."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(ge=1, le=65535)
    path: str = "/"
    scheme: str = "http"

    @property
    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{self.scheme}://{self.host}:{self.port}{path}"


class TcpProbe(BaseModel):
    """TCP connect readiness check."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(ge=1, le=65535)


class ExecProbe(BaseModel):
    """Command readiness check; exit code 0 means ready."""

    model_config = ConfigDict(frozen=True)

    command: str


class ReadinessProbe(BaseModel):
    """Readiness probe configuration.

    Exactly one of ``http``, ``tcp`` or ``exec`` must be set. Durations are in
    seconds. The process-compose key names (``http_get``,
    ``initial_delay_seconds``, ``period_seconds``, ...) are accepted as well.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    http: HttpProbe | None = Field(default=None, validation_alias=AliasChoices("http", "http_get"))
    tcp: TcpProbe | None = Field(default=None, validation_alias=AliasChoices("tcp", "tcp_socket"))
    exec: ExecProbe | None = None

    initial_delay: float = Field(
        default=0.0, ge=0, validation_alias=AliasChoices("initial_delay", "initial_delay_seconds")
    )
    period: float = Field(default=10.0, gt=0, validation_alias=AliasChoices("period", "period_seconds"))
    timeout: float = Field(default=1.0, gt=0, validation_alias=AliasChoices("timeout", "timeout_seconds"))
    success_threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> ReadinessProbe:
        configured = [k for k in (self.http, self.tcp, self.exec) if k is not None]
        if len(configured) != 1:
            raise ValueError("readiness probe needs exactly one of http, tcp or exec")
        return self

    @property
    def kind(self) -> ProbeKind:
        if self.http is not None:
            return ProbeKind.HTTP
        if self.tcp is not None:
            return ProbeKind.TCP
        return ProbeKind.EXEC


class ShutdownConfig(BaseModel):
    """Graceful shutdown configuration."""

    model_config = ConfigDict(frozen=True)

    signal: str = "SIGTERM"
    grace_period: float = Field(default=10.0, ge=0)  # seconds
    order: ShutdownOrder = ShutdownOrder.PARALLEL

    @field_validator("signal")
    @classmethod
    def validate_signal(cls, v: str) -> str:
        name = v.upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        if not hasattr(signal, name):
            raise ValueError(f"Unknown signal: {v}")
        return name

    @property
    def signum(self) -> int:
        return int(getattr(signal, self.signal))


class BackoffConfig(BaseModel):
    """Delay between a process exit and its restart."""

    model_config = ConfigDict(frozen=True)

    preset: BackoffPreset = BackoffPreset.EXPONENTIAL
    initial: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def _cap_not_below_initial(self) -> BackoffConfig:
        if self.max_delay < self.initial:
            raise ValueError("max_delay must not be lower than initial")
        return self

    def delay(self, attempt: int) -> float:
        """Delay in seconds before restart number ``attempt`` (0-indexed)."""
        if self.preset == BackoffPreset.FIXED:
            return self.initial
        # Cap the exponent too, factor**attempt overflows for long crash loops
        exponent = min(attempt, 64)
        return min(self.initial * self.factor**exponent, self.max_delay)


class ProcessSpec(BaseModel):
    """Immutable specification of a single process."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Required
    name: str = Field(min_length=1)
    command: str = Field(min_length=1)

    # Optional with defaults
    args: tuple[str, ...] = ()
    cwd: str | None = Field(default=None, validation_alias=AliasChoices("cwd", "working_dir"))
    env: dict[str, str] = Field(default_factory=dict, validation_alias=AliasChoices("env", "environment"))
    depends_on: dict[str, Condition] = Field(default_factory=dict)
    restart_policy: RestartPolicy = Field(
        default=RestartPolicy.NEVER, validation_alias=AliasChoices("restart_policy", "restart")
    )
    max_restarts: int | None = Field(default=None, ge=0)
    is_one_shot: bool = Field(default=False, validation_alias=AliasChoices("is_one_shot", "one_shot"))
    readiness_probe: ReadinessProbe | None = None
    shutdown: ShutdownConfig | None = None
    backoff: BackoffConfig | None = None
    disabled: bool = False

    @field_validator("env", mode="before")
    @classmethod
    def _env_from_list(cls, v: Any) -> Any:
        # process-compose style: ["KEY=value", ...]
        if isinstance(v, (list, tuple)):
            env: dict[str, str] = {}
            for item in v:
                key, sep, value = str(item).partition("=")
                if not sep:
                    raise ValueError(f"Environment entry must be KEY=value: {item!r}")
                if key in env:
                    raise ValueError(f"Duplicate environment variable: {key}")
                env[key] = value
            return env
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def _flatten_conditions(cls, v: Any) -> Any:
        # process-compose style: {"db": {"condition": "process_healthy"}}
        if isinstance(v, dict):
            return {
                dep: Condition(cond.get("condition", Condition.STARTED) if isinstance(cond, dict) else cond)
                for dep, cond in v.items()
            }
        if isinstance(v, (list, tuple, set)):
            return {dep: Condition.STARTED for dep in v}
        return v

    @field_validator("restart_policy", mode="before")
    @classmethod
    def _restart_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return RestartPolicy(v)
        return v

    @model_validator(mode="after")
    def _one_shot_never_restarts(self) -> ProcessSpec:
        if self.is_one_shot and self.restart_policy != RestartPolicy.NEVER:
            raise ValueError(
                f"Process '{self.name}' is one-shot but has restart policy "
                f"'{self.restart_policy.value}'; one-shot processes never restart"
            )
        return self

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def get_log_stdout_path(self, base_dir: Path) -> Path:
        """Get the stdout log path for this process."""
        return base_dir / f"{self.name}.log"

    def get_log_stderr_path(self, base_dir: Path) -> Path:
        """Get the stderr log path for this process."""
        return base_dir / f"{self.name}.error.log"


class ProbeOutcome(BaseModel):
    """Result of the most recent probe attempt."""

    ok: bool
    message: str = ""
    at: datetime = Field(default_factory=datetime.now)


class ProcessRuntimeState(BaseModel):
    """Mutable runtime state of a process. Only the scheduler writes it."""

    name: str
    phase: Phase = Phase.PENDING
    requested: bool = False
    run: int = 0  # launch generation
    pid: int | None = None
    started_at: datetime | None = None
    exited_at: datetime | None = None
    last_exit_code: int | None = None
    restart_count: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_probe: ProbeOutcome | None = None
    reason: Reason | None = None
    message: str | None = None
    stop_requested: bool = False
    restart_requested: bool = False


class ProcessStatus(BaseModel):
    """Point-in-time status of a process, as reported to callers."""

    name: str
    phase: Phase
    last_exit_code: int | None = None
    restart_count: int = 0
    last_probe: ProbeOutcome | None = None
    reason: Reason | None = None
    message: str | None = None
    pid: int | None = None
    started_at: datetime | None = None


class ApiAuthConfig(BaseModel):
    """API authentication configuration."""

    enabled: bool = False
    token: str | None = None


class ApiConfig(BaseModel):
    """HTTP control API configuration."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9877
    auth: ApiAuthConfig = Field(default_factory=ApiAuthConfig)


class OrchestratorConfig(BaseModel):
    """Main proccompose configuration."""

    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    logs_dir: Path | None = Path(".proccompose") / "logs"  # None discards process output
    log_level: str = "INFO"
    log_max_size: str = "10MB"
    log_rotate: int = Field(default=5, ge=0)
    log_compress: bool = False
    api: ApiConfig = Field(default_factory=ApiConfig)
