"""Configuration file loading and merging for ferry.

Reads TOML config from ~/.config/ferry/config.toml (global) and
./ferry.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "base_url": str,
    "max_output_tokens": int,
    "timeout": (int, float),
    "max_depth": int,
    "safe_mode": bool,
    "system_prompt": str,
    "quiet": bool,
    "color": bool,
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "safe_mode": "safe",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": "claude-3-5-sonnet-20240620",
    "base_url": "https://api.anthropic.com/v1/messages",
    "max_output_tokens": 4096,
    "timeout": 30,
    "max_depth": 25,
    "safe": False,
    "system_prompt": None,
    "quiet": False,
    "color": False,
    "no_color": False,
}

_POSITIVE_KEYS = ("max_output_tokens", "timeout")


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "ferry"
    return Path.home() / ".config" / "ferry"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    for key in _POSITIVE_KEYS:
        if key in config and config[key] <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive")
    if config.get("max_depth", 0) < 0:
        raise ConfigError(f"{source}: 'max_depth' must not be negative")


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
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "ferry.toml"
    project_config = _load_single(project_path, str(project_path))

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels
    and replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
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

    quiet -> verbose (inverted); color is a CLI-only concern and dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        elif key == "max_output_tokens":
            kwargs["max_tokens"] = value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# ferry configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'./ferry.toml' if project else '~/.config/ferry/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "# The API key is read from the ANTHROPIC_KEY environment variable.",
        "",
        "# --- Model ---",
        '# model = "claude-3-5-sonnet-20240620"',
        '# base_url = "https://api.anthropic.com/v1/messages"',
        "# max_output_tokens = 4096",
        "# timeout = 30                # seconds per model request",
        "",
        "# --- Agent behaviour ---",
        "# max_depth = 25              # follow-up requests per message",
        "# safe_mode = false           # confirm every tool call",
        '# system_prompt = "You are a helpful assistant."',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
