"""Command line interface of the NGINX process wrapper."""

from __future__ import annotations

import argparse
import os
import sys
import tomllib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from nginxwrap.config import (
    CORE_DEFAULTS,
    DEFAULT_CONFIG_PATH,
    LOG_DEFAULTS,
    all_known_elements,
    dynamic_core_defaults,
    keys,
)
from nginxwrap.loader import load_all
from nginxwrap.settings import Settings

_SUB_SUB_KEY_DOTS = 2


@dataclass(frozen=True)
class AppVersionInfo:
    """Version details shown to users."""

    app_version: str
    git_commit_hash: str
    utc_build_time: str

    def __str__(self) -> str:
        return f"nginx-wrapper {self.app_version} ({self.git_commit_hash}) {self.utc_build_time}"


VERSION = AppVersionInfo("0.0.0", "unknown", "unknown")


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = " ".join(f"{k}:{_format_value(value[k])}" for k in sorted(value, key=str))
        return f"map[{items}]"
    return str(value)


def find_unknown_keys(settings: Settings, expected_keys: Iterable[str]) -> list[str]:
    """Loaded keys that are not known settings, sorted.

    Keys with two or more dots are skipped, as are sub-keys of a known key,
    because their contents are free-form.
    """
    expected = set(expected_keys)
    unknown: list[str] = []
    for key in sorted(settings.all_keys()):
        if key.count(".") >= _SUB_SUB_KEY_DOTS:
            continue
        if key in expected or key.partition(".")[0] in expected:
            continue
        unknown.append(key)
    return unknown


def load_settings(config_path: str) -> Settings:
    """Read the TOML configuration file and layer the defaults beneath it."""
    with open(config_path, "rb") as handle:
        loaded = tomllib.load(handle)

    settings = Settings()
    settings.merge(loaded)
    for key, value in CORE_DEFAULTS.items():
        settings.set_default(key, value)
    for key, value in LOG_DEFAULTS.items():
        settings.set_default(f"log.{key}", value)
    for key, value in dynamic_core_defaults(settings).items():
        settings.set_default(key, value)
    load_all(False, settings)
    return settings


def debug_report(settings: Settings) -> str:
    """Every known setting with its effective value, then any unknown ones."""
    ordered_keys = keys()
    elements = all_known_elements(settings, ".")
    width = max([1, *(len(k) for k in ordered_keys)])

    lines = [f"{k:>{width}}: {_format_value(elements.get(k))}" for k in ordered_keys]
    unknown = find_unknown_keys(settings, ordered_keys)
    if unknown:
        lines.append("")
        lines.append("The following configuration settings are unknown:")
        lines.extend(
            f"{k:>{width}}: {_format_value(elements.get(k, settings.get(k)))}" for k in unknown
        )
    return os.linesep.join(lines) + os.linesep


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nginx-wrapper",
        description=(
            "NGINX Wrapper is a process wrapper that monitors NGINX for "
            "(start, reload, and exit) events, provides a templating framework for "
            "NGINX conf files and allows for plugins that extend its functionality."
        ),
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH, help="path to configuration file"
    )
    parser.add_argument(
        "--version", action="version", version=f"nginx-wrapper version {VERSION.app_version}"
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("version", help="Prints the nginx-wrapper version")
    commands.add_parser("debug", help="Display runtime configuration")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "version":
        print(VERSION)
        return 0

    try:
        settings = load_settings(args.config)
        sys.stdout.write(debug_report(settings))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())