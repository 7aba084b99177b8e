"""Default configuration values and helpers for listing known settings."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from typing import Any

from nginxwrap.hostid import DEFAULT_HOST_ID_GENERATORS, host_id
from nginxwrap.settings import Settings

_log = logging.getLogger("nginxwrap.config")

DEFAULT_CONFIG_PATH = "nginx-wrapper.toml"


def _vcpu_count() -> int:
    try:
        return len(os.sched_getaffinity(0))
    except AttributeError:
        return os.cpu_count() or 1


CORE_DEFAULTS: dict[str, Any] = {
    # all environment variables as loaded on start up
    "env": dict(os.environ),
    "host_id": host_id(DEFAULT_HOST_ID_GENERATORS),
    "last_reload_time": "not reloaded",
    "modules_path": "/usr/lib/nginx/modules",
    "nginx_binary": "nginx",
    "nginx_version": "unknown",
    "nginx_is_plus": False,
    "plugin_path": "./plugins",
    "enabled_plugins": [],
    "run_path": os.path.normpath(os.path.join(tempfile.gettempdir(), "nginx-wrapper")),
    # effective cores usable by this process
    "vcpu_count": _vcpu_count(),
}

TEXT_FORMATTER_OPTIONS_DEFAULTS: dict[str, Any] = {
    "full_timestamp": True,
    "pad_level_text": True,
}

LOG_DEFAULTS: dict[str, Any] = {
    "level": "INFO",
    # STDOUT, STDERR or a file path
    "destination": "STDOUT",
    "formatter_name": "TextFormatter",
    "formatter_options": TEXT_FORMATTER_OPTIONS_DEFAULTS,
}

# Defaults registered by plugins, one mapping per plugin name.
PLUGIN_DEFAULTS: dict[str, dict[str, Any]] = {}


def dynamic_core_defaults(settings: Settings) -> dict[str, Any]:
    """Defaults that depend on other runtime settings."""
    return {"conf_path": settings.get_string("run_path") + os.sep + "conf"}


def keys() -> list[str]:
    """Every known default key, sorted."""
    collected: list[str] = [*CORE_DEFAULTS, *dynamic_core_defaults(Settings())]
    collected.extend(f"log.{k}" for k in LOG_DEFAULTS if "." not in k)
    for plugin_name, plugin_config in PLUGIN_DEFAULTS.items():
        collected.extend(f"{plugin_name}.{k}" for k in plugin_config)
    return sorted(collected)


def _add_elements(
    settings: Settings, src: Mapping[str, Any], target: dict[str, Any], prefix: str
) -> None:
    for key, default in src.items():
        value = settings.get(key)
        if value is None or (isinstance(value, str) and value == ""):
            value = default
        target[prefix + key] = value


def all_known_elements(settings: Settings, delimiter: str) -> dict[str, Any]:
    """All known keys with their effective values, sub-keys joined by delimiter."""
    elements: dict[str, Any] = {}
    _add_elements(settings, CORE_DEFAULTS, elements, "")
    _add_elements(settings, dynamic_core_defaults(settings), elements, "")
    _add_elements(sub_config(settings, "log"), LOG_DEFAULTS, elements, "log" + delimiter)
    for plugin_name, plugin_defaults in PLUGIN_DEFAULTS.items():
        _add_elements(
            sub_config(settings, plugin_name), plugin_defaults, elements, plugin_name + delimiter
        )
    return elements


def sub_config(settings: Settings, sub_name: str) -> Settings:
    """A new Settings holding every value under the given key prefix."""
    prefix = sub_name.lower() + "."
    sub = Settings()
    for key in settings.all_keys():
        if key.startswith(prefix):
            sub.set(key[len(prefix):], settings.get(key))
    return sub


def total_plugin_keys(plugin_defaults: Mapping[str, Mapping[str, Any]]) -> int:
    """Count the sub-keys across all plugins."""
    return sum(len(config) for config in plugin_defaults.values())


def env_as_map(env: Iterable[str]) -> dict[str, str]:
    """Turn NAME=VALUE strings into a mapping; later duplicates win."""
    env_map: dict[str, str] = {}
    for entry in env:
        name, _, value = entry.partition("=")
        env_map[name] = value
    return env_map