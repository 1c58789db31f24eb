"""Configuration loading for stackwatch.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → ~/.config/stackwatch/config.toml → defaults only.
Command-line flags are applied on top by the caller.
"""

from __future__ import annotations

import math
import re
import sys
import tomllib
from pathlib import Path
from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "interval": 2.0,
    "aws": {
        "region": "",
        "profile": "",
        "endpoint_url": "",
    },
}

_DEFAULT_PATH = Path.home() / ".config" / "stackwatch" / "config.toml"

_DURATION_UNITS: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")

# Poll intervals below this hammer the API
MIN_INTERVAL = 0.1


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def parse_duration(text: str | int | float) -> float:
    """Parse a poll interval into seconds.

    Accepts bare numbers (seconds) and unit strings such as ``500ms``,
    ``2s``, ``1m30s`` or ``1h``.

    Raises:
        ValueError: If the value is negative or not a duration.
    """
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        seconds = float(text)
    else:
        raw = str(text).strip().lower()
        if not raw:
            raise ValueError("empty duration")
        try:
            seconds = float(raw)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(raw):
                if match.start() != pos:
                    raise ValueError(f"invalid duration: {text!r}") from None
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(raw):
                raise ValueError(f"invalid duration: {text!r}") from None
    if not math.isfinite(seconds):
        raise ValueError(f"invalid duration: {text!r}")
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {text!r}")
    return seconds


def parse_interval(text: str | int | float) -> float:
    """Parse a poll interval, rejecting anything under MIN_INTERVAL."""
    seconds = parse_duration(text)
    if seconds < MIN_INTERVAL:
        raise ValueError(f"interval must be at least {MIN_INTERVAL * 1000:.0f}ms: {text!r}")
    return seconds


def _validate(config: dict[str, Any], source: Path) -> dict[str, Any]:
    """Check value types and normalise ``interval`` to seconds.

    Raises:
        SystemExit: On a malformed ``aws`` table or interval.
    """
    aws = config.get("aws")
    if not isinstance(aws, dict):
        print(f"stackwatch: [aws] must be a table in {source}", file=sys.stderr)
        raise SystemExit(1)
    for key, value in aws.items():
        if key not in DEFAULT_CONFIG["aws"]:
            print(f"stackwatch: warning: unknown key aws.{key} in {source}", file=sys.stderr)
        elif not isinstance(value, str):
            print(f"stackwatch: aws.{key} must be a string in {source}", file=sys.stderr)
            raise SystemExit(1)

    try:
        interval = parse_interval(config["interval"])
    except ValueError as e:
        print(f"stackwatch: invalid interval in {source}: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    return {**config, "interval": interval}


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/stackwatch/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed,
                    or any loaded file holds malformed values.
    """
    if path is not None:
        if not path.is_file():
            print(f"stackwatch: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"stackwatch: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _validate(_deep_merge(DEFAULT_CONFIG, user_config), path)

    # Try default location silently
    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _validate(_deep_merge(DEFAULT_CONFIG, user_config), _DEFAULT_PATH)
        except tomllib.TOMLDecodeError:
            print(
                f"stackwatch: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return _deep_merge(DEFAULT_CONFIG, {})


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# stackwatch configuration",
        "# Place this file at ~/.config/stackwatch/config.toml",
        "",
        f"interval = {DEFAULT_CONFIG['interval']}",
        "",
        "# Empty values fall back to the boto3 credential and region chain.",
        "[aws]",
    ]
    for key, value in DEFAULT_CONFIG["aws"].items():
        lines.append(f'{key} = "{value}"')

    return "\n".join(lines) + "\n"
