"""
binabstr.config
===============

Analysis configuration.

Values come from a TOML file (``binabstr.toml``, ``.binabstr.toml`` or the
``[tool.binabstr]`` table of ``pyproject.toml``), found by walking up from
the start directory, or from keyword arguments.  Anything not given keeps
its default.

    [tool.binabstr]
    clone_depth = 3
    widening_delay = 2
    strategy = "rpo"
    max_workers = 4
    calling_convention = "x86_64"

    [tool.binabstr.signatures.calloc]
    params = ["count", "size"]
    returns = "ptr"
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from binabstr.errors import ConfigError
from binabstr.frames import CONVENTIONS
from binabstr.ir import Signature

logger = logging.getLogger(__name__)

__all__ = [
    "CONFIG_FILES",
    "AnalysisConfig",
    "find_config_file",
    "load_config",
]

CONFIG_FILES = [
    "binabstr.toml",
    ".binabstr.toml",
    "pyproject.toml",
]

STRATEGIES = ("rpo", "fifo", "lifo")


@dataclass
class AnalysisConfig:
    """Knobs of one analysis run."""
    clone_depth: int = 3
    widening_delay: int = 2
    max_iterations: int = 100_000
    strategy: str = "rpo"
    max_workers: int = 1
    calling_convention: Optional[str] = None  # None: the program's own
    signatures: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    config_file: Optional[Path] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.clone_depth, int) or self.clone_depth < 1:
            raise ConfigError(f"clone_depth must be a positive integer, got {self.clone_depth!r}")
        if not isinstance(self.widening_delay, int) or self.widening_delay < 0:
            raise ConfigError(f"widening_delay must be >= 0, got {self.widening_delay!r}")
        if not isinstance(self.max_iterations, int) or self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {self.max_iterations!r}")
        if self.strategy not in STRATEGIES:
            raise ConfigError(
                f"unknown worklist strategy {self.strategy!r} (expected one of {', '.join(STRATEGIES)})"
            )
        if not isinstance(self.max_workers, int) or self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers!r}")
        if self.calling_convention is not None and self.calling_convention not in CONVENTIONS:
            raise ConfigError(f"unknown calling convention {self.calling_convention!r}")
        if not isinstance(self.signatures, dict):
            raise ConfigError("signatures must be a table of routine names")
        for name, sig in self.signatures.items():
            if not isinstance(sig, dict):
                raise ConfigError(f"signature of {name!r} must be a table")
            unknown = set(sig) - {"params", "returns"}
            if unknown:
                raise ConfigError(f"signature of {name!r} has unknown keys: {sorted(unknown)}")

    def extra_signatures(self) -> List[Signature]:
        return [
            Signature(
                name=name,
                params=tuple(sig.get("params", ())),
                returns=sig.get("returns", "int"),
            )
            for name, sig in sorted(self.signatures.items())
        ]

    def replace(self, **changes: Any) -> "AnalysisConfig":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return AnalysisConfig(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "clone_depth": self.clone_depth,
            "widening_delay": self.widening_delay,
            "max_iterations": self.max_iterations,
            "strategy": self.strategy,
            "max_workers": self.max_workers,
            "calling_convention": self.calling_convention,
            "signatures": {k: dict(v) for k, v in self.signatures.items()},
        }


def find_config_file(start_dir: Optional[Path] = None) -> Optional[Path]:
    """Find a configuration file by walking up the directory tree."""
    if start_dir is None:
        start_dir = Path.cwd()
    current = Path(start_dir).resolve()
    while True:
        for config_name in CONFIG_FILES:
            config_path = current / config_name
            if not config_path.exists():
                continue
            if config_name == "pyproject.toml" and not _has_tool_table(config_path):
                continue
            return config_path
        if current == current.parent:
            return None
        current = current.parent


def _has_tool_table(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return False
    return "binabstr" in data.get("tool", {})


def load_config(
    config_path: Optional[Path] = None,
    start_dir: Optional[Path] = None,
) -> AnalysisConfig:
    """Load configuration from file, or defaults when there is none.

    Args:
        config_path: Explicit path to a config file
        start_dir: Directory to start searching from

    Raises:
        ConfigError: unreadable file or invalid values
    """
    if config_path is None:
        config_path = find_config_file(start_dir)
    if config_path is None:
        return AnalysisConfig()
    config_path = Path(config_path)
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except OSError as exc:
        raise ConfigError(f"cannot read {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc

    if config_path.name == "pyproject.toml":
        section = data.get("tool", {}).get("binabstr", {})
    else:
        section = data.get("tool", {}).get("binabstr", data)

    known = {f.name for f in fields(AnalysisConfig)} - {"config_file"}
    unknown = set(section) - known
    if unknown:
        raise ConfigError(f"{config_path}: unknown option(s) {sorted(unknown)}")
    logger.debug("loading configuration from %s", config_path)
    return AnalysisConfig(config_file=config_path, **section)
