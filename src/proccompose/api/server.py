"""FastAPI server exposing proccompose status and control."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from proccompose.core.registry import UnknownProcessError
from proccompose.models import RUNNING_PHASES, ProcessStatus

if TYPE_CHECKING:
    from proccompose.core.supervisor import Supervisor

# Global supervisor reference (set by run_server)
_supervisor: "Supervisor | None" = None


def set_supervisor(supervisor: "Supervisor | None") -> None:
    """Set the global supervisor reference."""
    global _supervisor
    _supervisor = supervisor


def get_supervisor() -> "Supervisor":
    """Get the supervisor instance."""
    if _supervisor is None:
        raise HTTPException(status_code=503, detail="Supervisor not initialized")
    return _supervisor


# Security
security = HTTPBearer(auto_error=False)


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> bool:
    """Verify the API token if authentication is enabled."""
    if _supervisor is None:
        return True

    config = _supervisor.config
    if not config.api.auth.enabled:
        return True

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    expected_token = config.api.auth.token
    if credentials.credentials != expected_token:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


# Response Models
class HealthResponse(BaseModel):
    status: str
    version: str
    processes_running: int = 0
    processes_total: int = 0


class ProcessSummary(BaseModel):
    name: str
    phase: str
    reason: str | None = None
    pid: int | None = None
    restart_count: int = 0
    last_exit_code: int | None = None


class ProcessDetail(ProcessSummary):
    message: str | None = None
    started_at: str | None = None
    last_probe_ok: bool | None = None
    last_probe_message: str | None = None
    last_probe_at: str | None = None
    command: list[str] = []
    depends_on: dict[str, str] = {}


class ProcessListResponse(BaseModel):
    processes: list[ProcessSummary]
    total: int


class ActionResponse(BaseModel):
    success: bool
    message: str
    process: str | None = None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _summary(status: ProcessStatus) -> ProcessSummary:
    return ProcessSummary(
        name=status.name,
        phase=status.phase.value,
        reason=status.reason.value if status.reason else None,
        pid=status.pid,
        restart_count=status.restart_count,
        last_exit_code=status.last_exit_code,
    )


def _lookup(supervisor: "Supervisor", name: str) -> ProcessStatus:
    try:
        return supervisor.get_status(name)
    except UnknownProcessError:
        raise HTTPException(status_code=404, detail=f"Process '{name}' not found") from None


# Create FastAPI app
def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="proccompose API",
        description="Status and control of orchestrated processes",
        version="0.1.0",
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Get orchestrator health status."""
        from proccompose import __version__

        supervisor = get_supervisor()
        statuses = supervisor.status()
        running = sum(1 for s in statuses.values() if s.phase in RUNNING_PHASES)

        return HealthResponse(
            status="healthy",
            version=__version__,
            processes_running=running,
            processes_total=len(statuses),
        )

    @app.get("/api/v1/processes", response_model=ProcessListResponse)
    async def list_processes(
        _auth: bool = Depends(verify_token),
    ):
        """List all processes with their phase."""
        supervisor = get_supervisor()
        result = [_summary(status) for status in supervisor.status().values()]
        return ProcessListResponse(processes=result, total=len(result))

    @app.get("/api/v1/processes/{name}", response_model=ProcessDetail)
    async def get_process(
        name: str,
        _auth: bool = Depends(verify_token),
    ):
        """Get detailed status of a process."""
        supervisor = get_supervisor()
        status = _lookup(supervisor, name)
        spec = supervisor.registry.spec(name)
        probe = status.last_probe

        return ProcessDetail(
            **_summary(status).model_dump(),
            message=status.message,
            started_at=_isoformat(status.started_at),
            last_probe_ok=probe.ok if probe else None,
            last_probe_message=probe.message if probe else None,
            last_probe_at=_isoformat(probe.at) if probe else None,
            command=spec.argv,
            depends_on={dep: cond.value for dep, cond in spec.depends_on.items()},
        )

    @app.post("/api/v1/processes/{name}/start", response_model=ActionResponse)
    async def start_process(
        name: str,
        _auth: bool = Depends(verify_token),
    ):
        """Start a process and its dependencies."""
        supervisor = get_supervisor()
        _lookup(supervisor, name)
        await supervisor.start([name])
        return ActionResponse(success=True, message=f"Process '{name}' started", process=name)

    @app.post("/api/v1/processes/{name}/stop", response_model=ActionResponse)
    async def stop_process(
        name: str,
        _auth: bool = Depends(verify_token),
    ):
        """Stop a process."""
        supervisor = get_supervisor()
        _lookup(supervisor, name)
        await supervisor.stop([name])
        return ActionResponse(success=True, message=f"Process '{name}' stopped", process=name)

    @app.post("/api/v1/processes/{name}/restart", response_model=ActionResponse)
    async def restart_process(
        name: str,
        _auth: bool = Depends(verify_token),
    ):
        """Restart a process."""
        supervisor = get_supervisor()
        _lookup(supervisor, name)
        await supervisor.restart(name)
        return ActionResponse(success=True, message=f"Process '{name}' restarted", process=name)

    @app.post("/api/v1/stop", response_model=ActionResponse)
    async def stop_all(
        _auth: bool = Depends(verify_token),
    ):
        """Stop every process."""
        supervisor = get_supervisor()
        await supervisor.stop()
        return ActionResponse(success=True, message="All processes stopped")

    @app.get("/api/v1/dependencies")
    async def get_dependencies(
        _auth: bool = Depends(verify_token),
    ):
        """Get the process dependency graph."""
        supervisor = get_supervisor()
        return supervisor.get_dependencies_graph()

    return app


async def run_server(supervisor: "Supervisor", host: str = "127.0.0.1", port: int = 9877) -> None:
    """Run the API server."""
    import uvicorn

    set_supervisor(supervisor)
    app = create_app()

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",  # Reduce uvicorn noise
    )
    server = uvicorn.Server(config)
    await server.serve()
