"""Layered, case-insensitive settings store with dotted sub-keys."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

_MISSING = object()
_TRUE_STRINGS = frozenset({"1", "t", "T", "TRUE", "true", "True"})


def _copy_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _copy_value(v) for k, v in value.items()}
    return value


def _matching_key(tree: Mapping[str, Any], part: str) -> str:
    if part in tree:
        return part
    lowered = part.lower()
    for key in tree:
        if key.lower() == lowered:
            return key
    return part


def _find(tree: Mapping[str, Any], parts: list[str]) -> Any:
    node: Any = tree
    for part in parts:
        if not isinstance(node, Mapping):
            return _MISSING
        key = _matching_key(node, part)
        if key not in node:
            return _MISSING
        node = node[key]
    return node


def _assign(tree: dict[str, Any], parts: list[str], value: Any) -> None:
    node = tree
    for part in parts[:-1]:
        key = _matching_key(node, part)
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[_matching_key(node, parts[-1])] = value


def _flatten(tree: Mapping[str, Any], prefix: str, out: set[str]) -> None:
    for key, value in tree.items():
        full = prefix + key.lower()
        if isinstance(value, Mapping):
            _flatten(value, full + ".", out)
        else:
            out.add(full)


def _deep_merge(target: dict[str, Any], source: Mapping[str, Any]) -> None:
    for raw_key, value in source.items():
        key = _matching_key(target, str(raw_key))
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _deep_merge(existing, value)
        else:
            target[key] = _copy_value(value)


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, bytes):
        return value.decode()
    return ""


def _to_mapping(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, Mapping):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


class Settings:
    """Key/value settings with override, config and default layers.

    Keys are case-insensitive and dots separate nested sub-keys.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._override: dict[str, Any] = {}
        self._config: dict[str, Any] = {}
        self._defaults: dict[str, Any] = {}
        if values:
            self.merge(values)

    @staticmethod
    def _parts(key: str) -> list[str]:
        return key.lower().split(".")

    def _layers(self) -> Iterable[dict[str, Any]]:
        return (self._override, self._config, self._defaults)

    def set(self, key: str, value: Any) -> None:
        """Set an explicit value that overrides everything else."""
        _assign(self._override, self._parts(key), _copy_value(value))

    def set_default(self, key: str, value: Any) -> None:
        """Set the value used when nothing else provides one."""
        _assign(self._defaults, self._parts(key), _copy_value(value))

    def merge(self, mapping: Mapping[str, Any]) -> None:
        """Deep-merge a mapping (such as a parsed config file) into the config layer."""
        _deep_merge(self._config, mapping)

    def get(self, key: str) -> Any:
        parts = self._parts(key)
        for layer in self._layers():
            value = _find(layer, parts)
            if value is not _MISSING:
                return value
        return None

    def get_string(self, key: str) -> str:
        return _to_string(self.get(key))

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            return value in _TRUE_STRINGS
        return False

    def get_string_slice(self, key: str) -> list[str]:
        value = self.get(key)
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        if isinstance(value, (list, tuple)):
            return [item if isinstance(item, str) else _to_string(item) or str(item) for item in value]
        return []

    def get_string_map(self, key: str) -> dict[str, Any]:
        mapping = _to_mapping(self.get(key))
        return dict(mapping) if mapping is not None else {}

    def get_string_map_string(self, key: str) -> dict[str, str]:
        mapping = _to_mapping(self.get(key))
        if mapping is None:
            return {}
        return {str(k): _to_string(v) for k, v in mapping.items()}

    def is_set(self, key: str) -> bool:
        return self.get(key) is not None

    def all_keys(self) -> list[str]:
        """All leaf keys across every layer, lower case and sorted."""
        found: set[str] = set()
        for layer in self._layers():
            _flatten(layer, "", found)
        return sorted(found)

    def all_settings(self) -> dict[str, Any]:
        """A nested mapping of every effective value."""
        result: dict[str, Any] = {}
        for key in self.all_keys():
            value = self.get(key)
            if value is not None:
                _assign(result, key.split("."), value)
        return result

    def __repr__(self) -> str:
        return f"Settings({self.all_settings()!r})"


@dataclass(frozen=True)
class PluginStartupContext:
    """What a plugin receives when it is started."""

    settings: Settings