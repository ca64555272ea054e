"""Shared fixtures for proccompose tests."""

import pytest

from proccompose.models import BackoffConfig, OrchestratorConfig, ShutdownConfig


@pytest.fixture
def config(tmp_path):
    """Orchestrator config with short timings and logs under tmp_path."""
    return OrchestratorConfig(
        logs_dir=tmp_path / "logs",
        shutdown=ShutdownConfig(grace_period=2.0),
        backoff=BackoffConfig(initial=0.05, factor=2.0, max_delay=0.2),
    )
