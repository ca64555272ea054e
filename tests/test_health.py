"""Tests for readiness probes."""

import asyncio
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from proccompose.core.events import ProbeFailed, ProbeReported, ProbeSucceeded
from proccompose.core.health import HealthChecker, HealthCheckResult
from proccompose.models import ReadinessProbe

from helpers import free_port


class StatusHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        status = 200 if self.path == "/health" else 500
        self.send_response(status)
        self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    """A local HTTP server: /health answers 200, anything else 500."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), StatusHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


def make_checker(probe: ReadinessProbe) -> tuple[HealthChecker, list]:
    events = []
    return HealthChecker("web", 1, probe, events.append), events


class TestThresholds:
    """Counter and threshold behaviour, driven through record()."""

    def test_unhealthy_exactly_on_third_failure(self):
        probe = ReadinessProbe(exec={"command": "false"}, failure_threshold=3)
        checker, events = make_checker(probe)

        checker.record(HealthCheckResult(False, "refused"))
        checker.record(HealthCheckResult(False, "refused"))
        assert not any(isinstance(e, ProbeFailed) for e in events)

        checker.record(HealthCheckResult(False, "refused"))
        failed = [e for e in events if isinstance(e, ProbeFailed)]
        assert len(failed) == 1
        assert failed[0].failures == 3
        assert failed[0].message == "refused"

        # Further failures do not re-emit
        checker.record(HealthCheckResult(False, "refused"))
        assert len([e for e in events if isinstance(e, ProbeFailed)]) == 1

    def test_counters_are_mutually_exclusive(self):
        probe = ReadinessProbe(exec={"command": "true"}, success_threshold=2)
        checker, events = make_checker(probe)

        checker.record(HealthCheckResult(True))
        checker.record(HealthCheckResult(False, "blip"))
        assert (events[-1].successes, events[-1].failures) == (0, 1)

        checker.record(HealthCheckResult(True))
        assert (events[-1].successes, events[-1].failures) == (1, 0)
        assert not any(isinstance(e, ProbeSucceeded) for e in events)

        checker.record(HealthCheckResult(True))
        succeeded = [e for e in events if isinstance(e, ProbeSucceeded)]
        assert len(succeeded) == 1
        assert succeeded[0].successes == 2

    def test_every_attempt_is_reported(self):
        probe = ReadinessProbe(exec={"command": "true"})
        checker, events = make_checker(probe)

        checker.record(HealthCheckResult(True, "ok"))
        checker.record(HealthCheckResult(False, "down"))

        reports = [e for e in events if isinstance(e, ProbeReported)]
        assert [(r.ok, r.successes, r.failures) for r in reports] == [(True, 1, 0), (False, 0, 1)]
        assert all(r.name == "web" and r.run == 1 for r in reports)

    def test_recovery_after_unhealthy(self):
        probe = ReadinessProbe(exec={"command": "true"}, failure_threshold=1)
        checker, events = make_checker(probe)

        checker.record(HealthCheckResult(False, "down"))
        checker.record(HealthCheckResult(True, "up"))

        kinds = [type(e) for e in events if not isinstance(e, ProbeReported)]
        assert kinds == [ProbeFailed, ProbeSucceeded]


class TestProbeKinds:
    """Single probe attempts against real endpoints."""

    @pytest.mark.asyncio
    async def test_http_success(self, http_server):
        checker, _ = make_checker(ReadinessProbe(http={"port": http_server, "path": "/health"}))

        result = await checker.check_once()

        assert result.healthy
        assert result.details["status_code"] == 200

    @pytest.mark.asyncio
    async def test_http_bad_status(self, http_server):
        checker, _ = make_checker(ReadinessProbe(http={"port": http_server, "path": "/broken"}))

        result = await checker.check_once()

        assert not result.healthy
        assert "500" in result.message

    @pytest.mark.asyncio
    async def test_http_connection_refused(self):
        checker, _ = make_checker(ReadinessProbe(http={"port": free_port()}))

        result = await checker.check_once()

        assert not result.healthy

    @pytest.mark.asyncio
    async def test_tcp(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            checker, _ = make_checker(ReadinessProbe(tcp={"port": port}))
            assert (await checker.check_once()).healthy
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_tcp_refused(self):
        checker, _ = make_checker(ReadinessProbe(tcp={"port": free_port()}))

        result = await checker.check_once()

        assert not result.healthy
        assert "failed" in result.message

    @pytest.mark.asyncio
    async def test_exec(self):
        ok, _ = make_checker(ReadinessProbe(exec={"command": "exit 0"}))
        bad, _ = make_checker(ReadinessProbe(exec={"command": "echo nope >&2; exit 3"}))

        assert (await ok.check_once()).healthy

        result = await bad.check_once()
        assert not result.healthy
        assert "code 3" in result.message
        assert "nope" in result.message

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        checker, _ = make_checker(ReadinessProbe(exec={"command": "sleep 5"}, timeout=0.2))

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await checker.check_once()

        assert not result.healthy
        assert "Timeout" in result.message
        assert loop.time() - started < 2

    @pytest.mark.asyncio
    async def test_timeout_kills_commands_spawned_by_the_shell(self):
        checker, _ = make_checker(ReadinessProbe(exec={"command": "sleep 3; true"}, timeout=0.2))

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await checker.check_once()

        assert not result.healthy
        assert result.message == "Timeout after 0.2s"
        assert loop.time() - started < 1

    @pytest.mark.asyncio
    async def test_cancelled_probe_task_ends_promptly(self):
        checker, _ = make_checker(ReadinessProbe(exec={"command": "sleep 3; true"}, timeout=10))
        task = asyncio.create_task(checker.run())
        await asyncio.sleep(0.3)

        loop = asyncio.get_running_loop()
        started = loop.time()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert loop.time() - started < 1


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_first_attempt_after_initial_delay(self):
        probe = ReadinessProbe(exec={"command": "true"}, initial_delay=0.3, period=0.05)
        events = []
        checker = HealthChecker("web", 1, probe, events.append)

        task = asyncio.create_task(checker.run())
        await asyncio.sleep(0.15)
        assert events == []

        await asyncio.sleep(0.5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert any(isinstance(e, ProbeSucceeded) for e in events)
        assert len([e for e in events if isinstance(e, ProbeReported)]) >= 2
