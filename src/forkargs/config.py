"""Run configuration for forkargs."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from .probe import PROBE_TRANSPORTS

# Environment variables that supply defaults
ENV_SLOTS = "FORKARGS_J"
ENV_REMOTE_SHELL = "FORKARGS_RSH"


@dataclass
class RunConfig:
    """Options for a single forkargs run."""

    slots: str | None = None
    keep_going: bool = False
    verbose: bool = False
    probe: bool = True
    probe_transport: str = "shell"
    probe_timeout: float = 30
    remote_shell: str = "ssh"
    input_file: Path | None = None
    trace: str | None = None
    log_dir: Path | None = None
    sync: bool = False
    source_path: Path | None = None  # Path to the YAML file, if one was loaded

    @property
    def remote_shell_argv(self) -> list[str]:
        return shlex.split(self.remote_shell)

    def validate(self) -> None:
        """Raise ValueError for option values the run cannot use."""
        if self.probe_transport not in PROBE_TRANSPORTS:
            raise ValueError(
                f"probe_transport must be one of {', '.join(PROBE_TRANSPORTS)}, "
                f"not {self.probe_transport!r}"
            )
        if self.probe_timeout <= 0:
            raise ValueError(f"probe_timeout must be positive, not {self.probe_timeout}")
        if not self.remote_shell_argv:
            raise ValueError("remote_shell is empty")
        if self.sync:
            raise ValueError("Working-directory synchronization is not supported")


# Expected type for each YAML key
_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "slots": (str, int),
    "keep_going": (bool,),
    "verbose": (bool,),
    "probe": (bool,),
    "probe_transport": (str,),
    "probe_timeout": (int, float),
    "remote_shell": (str,),
    "input_file": (str,),
    "trace": (str,),
    "log_dir": (str,),
    "sync": (bool,),
}


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """Build a RunConfig from defaults, an optional YAML file and the environment."""
    config = RunConfig()

    if config_path is not None:
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            raw = yaml.safe_load(f)

        _apply_raw(config, raw if raw is not None else {})
        config.source_path = config_path

    _apply_environ(config, os.environ if environ is None else environ)
    return config


def _apply_raw(config: RunConfig, raw: Any) -> None:
    """Copy validated YAML values onto ``config``."""
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a mapping")

    known = {f.name for f in fields(RunConfig)} - {"source_path"}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(map(str, unknown))}")

    for key, value in raw.items():
        expected = _FIELD_TYPES[key]
        # bool is an int subclass, but a count of True slots makes no sense
        if not isinstance(value, expected) or (isinstance(value, bool) and bool not in expected):
            raise ValueError(f"Config key '{key}' has the wrong type: {value!r}")

        if key == "slots":
            value = str(value)
        elif key in ("input_file", "log_dir"):
            value = Path(value).expanduser()
        setattr(config, key, value)


def _apply_environ(config: RunConfig, environ: Mapping[str, str]) -> None:
    if environ.get(ENV_SLOTS):
        config.slots = environ[ENV_SLOTS]
    if environ.get(ENV_REMOTE_SHELL):
        config.remote_shell = environ[ENV_REMOTE_SHELL]
