"""Configuration file loading and merging for arbiter.

Reads TOML config from ~/.config/arbiter/config.toml (global) and
<base_dir>/arbiter.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import re
import shlex
import sys
import tomllib
from pathlib import Path
from typing import Any

from .constants import (
    DEFAULT_AVAILABLE_TOOLS,
    DEFAULT_MAX_CONTEXT_TOKENS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MEMORY_CAPACITY,
    DEFAULT_TOKEN_BUDGET,
)
from .report import ConfigError

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
    "token_budget": int,
    "max_iterations": int,
    "available_tools": list,
    "auto_validate": bool,
    "memory_capacity": int,
    "system_prompt": str,
    "test_command": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"available_tools"}

_POSITIVE_INT_KEYS = {
    "max_output_tokens",
    "max_context_tokens",
    "token_budget",
    "max_iterations",
    "memory_capacity",
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "auto_validate": "validate",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 4096,
    "max_context_tokens": DEFAULT_MAX_CONTEXT_TOKENS,
    "temperature": None,
    "token_budget": DEFAULT_TOKEN_BUDGET,
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "available_tools": list(DEFAULT_AVAILABLE_TOOLS),
    "validate": True,
    "memory_capacity": DEFAULT_MEMORY_CAPACITY,
    "system_prompt": None,
    "test_command": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "arbiter"
    return Path.home() / ".config" / "arbiter"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int, so reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")

    if "temperature" in config and not 0 <= config["temperature"] <= 2:
        raise ConfigError(f"{source}: 'temperature' must be between 0 and 2")


_PATH_LIKE = re.compile(r"^(?:[/~]|\.\.?/)")


def _resolve_test_command(config: dict, config_dir: Path, source: str) -> None:
    """Shell-split the test command, resolve only a path-like first token."""
    try:
        parts = shlex.split(config["test_command"])
    except ValueError as e:
        raise ConfigError(f"{source}: malformed test_command: {e}")
    if not parts:
        raise ConfigError(f"{source}: test_command is empty")
    exe = parts[0]
    if _PATH_LIKE.match(exe):
        expanded = Path(exe).expanduser()
        if expanded.is_absolute():
            parts[0] = str(expanded)
        else:
            parts[0] = str(config_dir / exe)
    config["test_command"] = shlex.join(parts)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
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

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    if "test_command" in known:
        _resolve_test_command(known, path.parent, label)
    return known


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "arbiter.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Values still holding the ``_UNSET`` sentinel take the config value, and
    whatever remains unset afterwards gets the hardcoded default.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color / --no-color pair.
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet becomes verbose (inverted); color is a CLI concern and is dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# arbiter configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/arbiter.toml' if project else '~/.config/arbiter/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "huggingface" | "openrouter" | "generic"',
        '# model = "qwen/qwen3-coder-30b"',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 4096",
        "# temperature = 0.2",
        "",
        "# --- Reasoning control ---",
        f"# token_budget = {DEFAULT_TOKEN_BUDGET}",
        f"# max_context_tokens = {DEFAULT_MAX_CONTEXT_TOKENS}",
        f"# max_iterations = {DEFAULT_MAX_ITERATIONS}",
        f"# memory_capacity = {DEFAULT_MEMORY_CAPACITY}",
        '# available_tools = ["read", "write", "edit", "bash", "glob", "grep"]',
        "",
        "# --- Validation ---",
        "# auto_validate = true",
        '# test_command = "pytest -q"',
        "",
        '# system_prompt = "You are a careful coding assistant."',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
