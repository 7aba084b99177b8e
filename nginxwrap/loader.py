"""Loading and starting of the plugins built into the wrapper."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from nginxwrap import coprocess_plugin, template_plugin
from nginxwrap.config import PLUGIN_DEFAULTS
from nginxwrap.settings import PluginStartupContext, Settings

_log = logging.getLogger("nginxwrap.load-plugin")


@dataclass(frozen=True)
class EmbeddedPlugin:
    """A plugin shipped with the wrapper."""

    name: str
    metadata: Callable[[Settings], dict[str, Any]]
    start: Callable[[PluginStartupContext], None]


class PluginMetadataError(TypeError):
    """Raised when plugin metadata holds a value of the wrong type."""

    def __init__(self, key_name: str, expected_type: type) -> None:
        super().__init__(key_name)
        self.key_name = key_name
        self.expected_type = expected_type

    def __str__(self) -> str:
        return f"plugin metadata with wrong data type for value with key ({self.key_name})"


EMBEDDED_PLUGINS: tuple[EmbeddedPlugin, ...] = (
    EmbeddedPlugin(coprocess_plugin.PLUGIN_NAME, coprocess_plugin.metadata, coprocess_plugin.start),
    EmbeddedPlugin(template_plugin.PLUGIN_NAME, template_plugin.metadata, template_plugin.start),
)


def load_all(start_plugins: bool, settings: Settings) -> None:
    """Load every enabled embedded plugin, starting them if asked to."""
    for plugin in EMBEDDED_PLUGINS:
        if not is_plugin_enabled(plugin.name, settings):
            _log.debug("plugin [%s] was detected but not enabled - not loading", plugin.name)
            continue
        try:
            load_plugin(start_plugins, plugin, settings)
        except Exception as exc:
            _log.error("error loading embedded plugin (%s): %s", plugin.name, exc)


def is_plugin_enabled(plugin_name: str, settings: Settings) -> bool:
    return plugin_name in settings.get_string_slice("enabled_plugins")


def load_plugin(start_plugin: bool, plugin: EmbeddedPlugin, settings: Settings) -> None:
    """Register a plugin's defaults and start it if start_plugin is true."""
    meta = plugin.metadata(settings)
    if meta.get("config_defaults") is None:
        meta["config_defaults"] = {}

    config_defaults = meta["config_defaults"]
    if not isinstance(config_defaults, Mapping):
        raise PluginMetadataError("config_defaults", dict)

    PLUGIN_DEFAULTS[plugin.name] = config_defaults
    for key, value in config_defaults.items():
        settings.set_default(f"{plugin.name}.{key}", value)

    if start_plugin:
        plugin.start(PluginStartupContext(settings=settings))
        _log.info("started plugin: [%s]", plugin.name)
    else:
        _log.info("loaded plugin: [%s]", plugin.name)