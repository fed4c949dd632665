"""Project configuration and state-root resolution.

Supports .ripplegate/config.toml or .ripplegate/config.json:

    [build]
    command = "make -s"
    timeout_sec = 300
    cwd = "."

    [index]
    path = "index.yaml"

    [[diagnostics.rules]]
    name = "missing-import"
    pattern = "unresolved import"
    stage = "dependencies_mapped"

Relative paths are resolved against the project root (the directory that
holds ``.ripplegate/``).
"""

from __future__ import annotations

import json
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ripplegate.build.types import DiagnosticRule
from ripplegate.build.verifier import DEFAULT_RULES
from ripplegate.errors import ConfigError
from ripplegate.workflow.types import Stage

STATE_DIRNAME = ".ripplegate"
STATE_DIR_ENV = "RIPPLEGATE_STATE_DIR"
CONFIG_TOML = "config.toml"
CONFIG_JSON = "config.json"


@dataclass(frozen=True)
class BuildSettings:
    command: str | None = None
    timeout_sec: float | None = None
    cwd: Path | None = None


@dataclass(frozen=True)
class RippleGateConfig:
    """Resolved configuration for one project."""

    build: BuildSettings = field(default_factory=BuildSettings)
    index_path: Path | None = None
    # Configured rules are tried before the built-in ones.
    diagnostic_rules: tuple[DiagnosticRule, ...] = DEFAULT_RULES

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, base_dir: Path) -> RippleGateConfig:
        """Parse and validate config dict into RippleGateConfig."""
        build_data = data.get("build", {})
        if not isinstance(build_data, dict):
            raise TypeError("[build] must be a table")
        timeout = build_data.get("timeout_sec")
        if timeout is not None:
            timeout = float(timeout)
            if timeout <= 0:
                raise ValueError("build.timeout_sec must be positive")
        cwd = build_data.get("cwd")
        build = BuildSettings(
            command=build_data.get("command"),
            timeout_sec=timeout,
            cwd=(base_dir / cwd).resolve() if cwd else None,
        )

        index_data = data.get("index", {})
        index_path = index_data.get("path")

        rules: list[DiagnosticRule] = []
        for raw in data.get("diagnostics", {}).get("rules", []):
            try:
                re.compile(raw["pattern"])
            except re.error as e:
                raise ValueError(f"diagnostic rule {raw.get('name')!r}: bad pattern: {e}") from e
            rules.append(
                DiagnosticRule(name=raw["name"], pattern=raw["pattern"], stage=Stage(raw["stage"]))
            )

        return cls(
            build=build,
            index_path=(base_dir / index_path).resolve() if index_path else None,
            diagnostic_rules=tuple(rules) + DEFAULT_RULES,
        )


def find_project_root(start: Path) -> Path | None:
    """Nearest ancestor of ``start`` (inclusive) that contains ``.ripplegate/``."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / STATE_DIRNAME).is_dir():
            return candidate
    return None


def get_state_root(cli_state_dir: Path | None = None, *, cwd: Path | None = None) -> Path:
    """Resolve the state directory using canonical precedence."""
    if cli_state_dir is not None:
        return cli_state_dir.expanduser().resolve()

    env_root = os.getenv(STATE_DIR_ENV, "").strip()
    if env_root:
        return Path(env_root).expanduser().resolve()

    effective_cwd = (cwd or Path.cwd()).resolve()
    project_root = find_project_root(effective_cwd)
    if project_root is not None:
        return project_root / STATE_DIRNAME

    return effective_cwd / STATE_DIRNAME


def load_config(state_root: Path) -> RippleGateConfig:
    """Load configuration from ``config.toml`` (preferred) or ``config.json``.

    Returns defaults when neither file exists.

    Raises:
        ConfigError: If a config file is malformed or invalid
    """
    base_dir = state_root.parent

    toml_path = state_root / CONFIG_TOML
    if toml_path.exists():
        try:
            with open(toml_path, "rb") as f:
                data = tomllib.load(f)
            return RippleGateConfig.from_dict(data, base_dir=base_dir)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Malformed TOML config at {toml_path}: {e}") from e
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid config structure in {toml_path}: {e}") from e

    json_path = state_root / CONFIG_JSON
    if json_path.exists():
        try:
            with open(json_path, encoding="utf-8") as f:
                data = json.load(f)
            return RippleGateConfig.from_dict(data, base_dir=base_dir)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed JSON config at {json_path}: {e}") from e
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid config structure in {json_path}: {e}") from e

    return RippleGateConfig()
