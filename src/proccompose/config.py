"""Configuration loading and management for proccompose."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from proccompose.models import OrchestratorConfig, ProcessSpec

# Default paths
DEFAULT_CONFIG_DIR = Path(".proccompose")
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "proccompose.yaml"


class ConfigError(Exception):
    """Configuration error."""

    pass


class UnknownDependencyError(ConfigError):
    """A process depends on an identifier that is not defined."""

    def __init__(self, process: str, dependency: str):
        self.process = process
        self.dependency = dependency
        super().__init__(f"Process '{process}' depends on unknown process '{dependency}'")


class CycleError(ConfigError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """

    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)

    # Standard environment variable expansion
    value = os.path.expandvars(value)

    return value


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    expanded = os.path.expanduser(path)
    expanded = expand_env_vars(expanded)
    return expanded


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> OrchestratorConfig:
    """Load the orchestrator configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return OrchestratorConfig()

    data = load_yaml_file(path)

    try:
        config = OrchestratorConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def load_specs(processes: Mapping[str, Mapping[str, Any]] | Iterable[ProcessSpec]) -> list[ProcessSpec]:
    """Build process specs from already-resolved mappings.

    Accepts either ready ``ProcessSpec`` objects or a mapping of
    ``name -> fields``. Environment references in ``cwd`` and ``env`` values
    are expanded.

    Raises:
        ConfigError: if a spec does not validate.
    """
    if not isinstance(processes, Mapping):
        return list(processes)

    specs = []
    for name, fields in processes.items():
        data = dict(fields)
        data.setdefault("name", name)

        for key in ("cwd", "working_dir"):
            if data.get(key):
                data[key] = expand_path(data[key])
        for key in ("env", "environment"):
            env = data.get(key)
            if isinstance(env, Mapping):
                data[key] = {k: expand_env_vars(str(v)) for k, v in env.items()}

        try:
            specs.append(ProcessSpec.model_validate(data))
        except ValidationError as e:
            raise ConfigError(f"Invalid process '{name}': {e}") from e

    logger.debug(f"Loaded {len(specs)} process specs")
    return specs
