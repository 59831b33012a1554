"""Configuration file loading and merging for aria.

Reads TOML config from ~/.config/aria/config.toml (global) and
<base_dir>/aria.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401 (re-export for convenience)

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "max_steps": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "command_timeout": int,
    "tree_max_depth": int,
    "tree_max_entries": int,
    "deny_patterns": list,
    "confirm_outside_writes": bool,
    "yolo": bool,
    "stream": bool,
    "retry_max_attempts": int,
    "retry_base_delay": (int, float),
    "retry_max_delay": (int, float),
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"deny_patterns"}

_POSITIVE_KEYS = {
    "max_output_tokens",
    "max_context_tokens",
    "max_steps",
    "command_timeout",
    "tree_max_depth",
    "tree_max_entries",
    "retry_max_attempts",
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "deny_patterns": "deny_pattern",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "anthropic",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "max_context_tokens": None,
    "temperature": None,
    "max_steps": 25,
    "system_prompt": None,
    "no_system_prompt": False,
    "command_timeout": 30,
    "tree_max_depth": 8,
    "tree_max_entries": 500,
    "deny_pattern": [],
    "confirm_outside_writes": True,
    "yolo": False,
    "no_stream": False,
    "retry_max_attempts": 5,
    "retry_base_delay": 0.5,
    "retry_max_delay": 8.0,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "aria"
    return Path.home() / ".config" / "aria"


def project_config_path(base_dir: str | Path) -> Path:
    return Path(base_dir).resolve() / "aria.toml"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _POSITIVE_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")

        # Validate list element types
        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    # Mutual exclusion: system_prompt + no_system_prompt
    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # Strip unknown keys after warning (keep only known ones for downstream)
    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: str | Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    deny_patterns from both files are concatenated, global first.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = project_config_path(base_dir)
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}
    if "deny_patterns" in global_config and "deny_patterns" in project_config:
        merged["deny_patterns"] = (
            global_config["deny_patterns"] + project_config["deny_patterns"]
        )

    # Re-validate mutual exclusion on merged result (could conflict across files)
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, maps to the argparse dest name and checks if
    the value is still _UNSET. If so, applies the config value. After
    processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """
    # Dests that use None as sentinel (argparse append actions can't use _UNSET)
    _NONE_SENTINEL_DESTS = {"deny_pattern"}

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest in _NONE_SENTINEL_DESTS:
            return val is None
        return val is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    # stream is positive in config, negative on the command line
    if "stream" in config and _is_unset("no_stream"):
        args.no_stream = not config["stream"]

    for key, value in config.items():
        if key in ("color", "stream"):
            continue  # Already handled above

        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if key == "deny_patterns" and not _is_unset(dest):
            # CLI patterns add to configured ones instead of replacing them
            setattr(args, dest, list(value) + list(getattr(args, dest)))
            continue
        if _is_unset(dest):
            setattr(args, dest, value)

    # Sweep: replace remaining sentinels with hardcoded defaults
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet becomes verbose (inverted); color is a terminal concern and
    is dropped.
    """
    kwargs = {}
    _DROP_KEYS = {"color"}
    _INVERT_KEYS = {"quiet": "verbose"}

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


@dataclass(frozen=True)
class AgentConfig:
    """Effective settings for one session, fixed at setup."""

    base_dir: Path
    provider: str
    model: str
    api_key: str | None = None
    base_url: str | None = None
    max_output_tokens: int = 8192
    max_context_tokens: int | None = None
    temperature: float | None = None
    max_steps: int = 25
    system_prompt: str | None = None
    command_timeout: int = 30
    tree_max_depth: int = 8
    tree_max_entries: int = 500
    deny_patterns: tuple[str, ...] = ()
    confirm_outside_writes: bool = True
    yolo: bool = False
    stream: bool = True
    retry_max_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0

    def report_settings(self) -> dict:
        """Settings worth recording in an audit report (never the key)."""
        return {
            "temperature": self.temperature,
            "max_steps": self.max_steps,
            "max_output_tokens": self.max_output_tokens,
            "context_length": self.max_context_tokens,
            "command_timeout": self.command_timeout,
            "tree_max_depth": self.tree_max_depth,
            "tree_max_entries": self.tree_max_entries,
            "extra_deny_patterns": list(self.deny_patterns),
            "confirm_outside_writes": self.confirm_outside_writes,
            "yolo": self.yolo,
            "stream": self.stream,
        }


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# aria configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/aria.toml' if project else '~/.config/aria/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"         # "anthropic" | "openai" | "openrouter" | "lmstudio"',
        '# model = "claude-3-7-sonnet-20250219"',
        '# api_key = "sk-..."              # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# max_context_tokens = 200000",
        "# temperature = 0.7",
        "# stream = true",
        "",
        "# --- Agent behaviour ---",
        "# max_steps = 25",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# retry_max_attempts = 5",
        "# retry_base_delay = 0.5",
        "# retry_max_delay = 8.0",
        "",
        "# --- Tools ---",
        "# command_timeout = 30",
        "# tree_max_depth = 8",
        "# tree_max_entries = 500",
        "",
        "# --- Safety ---",
        '# deny_patterns = ["\\\\bgit\\\\s+push\\\\b"]   # added to the built-in denylist',
        "# confirm_outside_writes = true",
        "# yolo = false                   # auto-approve confirmations (denials still apply)",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
