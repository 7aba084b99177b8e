"""Plugin that runs coprocesses alongside NGINX based on lifecycle events."""

from __future__ import annotations

import logging
import threading
from typing import Any

from nginxwrap.coprocess import Coprocess, CoprocessInitError
from nginxwrap.events import EventNotFoundError, EventRegistry, Message, Trigger, global_events
from nginxwrap.settings import PluginStartupContext, Settings

PLUGIN_NAME = "coprocess"

_log = logging.getLogger("nginxwrap.coprocess-plugin")


def metadata(settings: Settings) -> dict[str, Any]:
    """Plugin metadata handed to the wrapper when the plugin is loaded."""
    return {"name": PLUGIN_NAME, "config_defaults": {}}


def start(context: PluginStartupContext) -> None:
    """Read every coprocess definition and attach its triggers to the global events."""
    _log.debug("plugin [%s] starting", PLUGIN_NAME)
    registry = global_events()
    for cp in read_coprocesses(context.settings):
        try:
            register_coprocess_triggers(cp, registry)
        except RuntimeError as exc:
            _log.error("%s", exc)


def _run_in_background(cp: Coprocess) -> None:
    try:
        cp.execute()
    except Exception:
        _log.exception("coprocess (%s) failed", cp.name)
    finally:
        cp.done.set()


def register_coprocess_triggers(cp: Coprocess, registry: EventRegistry) -> None:
    """Attach the start, stop-command and terminate triggers of a coprocess."""

    def execute(message: Message) -> None:
        if cp.background:
            threading.Thread(
                target=_run_in_background, args=(cp,), name=f"coprocess-{cp.name}", daemon=True
            ).start()
            return
        try:
            cp.execute()
        finally:
            cp.done.set()

    def pre_stop(message: Message) -> None:
        try:
            cp.execute_stop_cmd()
        except OSError as exc:
            raise RuntimeError(f"error issuing stop command for coprocess ({cp.name})") from exc

    def stop(message: Message) -> None:
        cp.terminate()

    exec_trigger = Trigger(f"{PLUGIN_NAME}.start-coprocess-{cp.name}", execute)
    pre_stop_trigger = Trigger(f"{PLUGIN_NAME}.exec-coprocess-stop-cmd-{cp.name}", pre_stop)
    stop_trigger = Trigger(f"{PLUGIN_NAME}.terminate-coprocess-{cp.name}", stop)

    _log.debug("adding exec event (%s) trigger for coprocess (%s)", cp.exec_event, cp.name)
    try:
        registry.add_trigger_by_event_name(cp.exec_event, exec_trigger)
    except EventNotFoundError as exc:
        raise RuntimeError(
            f"Unable to add exec trigger to event ({cp.exec_event}), "
            f"coprocess ({cp.name}) will be disabled"
        ) from exc

    if len(cp.stop_exec) > 1:
        _log.debug("adding prestop command event (%s) trigger for coprocess (%s)", cp.stop_event, cp.name)
        try:
            registry.add_trigger_by_event_name(cp.stop_event, pre_stop_trigger)
        except EventNotFoundError as exc:
            raise RuntimeError(
                f"Unable to add prestop trigger to event ({cp.stop_event}), "
                f"coprocess ({cp.name}) will be disabled"
            ) from exc

    _log.debug("adding stop command event (%s) trigger for coprocess (%s)", cp.stop_event, cp.name)
    try:
        registry.add_trigger_by_event_name(cp.stop_event, stop_trigger)
    except EventNotFoundError as exc:
        raise RuntimeError(
            f"Unable to add stop trigger to event ({cp.stop_event}), "
            f"coprocess ({cp.name}) will be disabled"
        ) from exc


def read_coprocesses(settings: Settings) -> list[Coprocess]:
    """Build a Coprocess for every valid section under the coprocess key."""
    if not settings.is_set("coprocess"):
        raise ValueError("coprocess section in configuration not found")

    coprocesses: list[Coprocess] = []
    for section in settings.get_string_map("coprocess"):
        try:
            cp = init_coprocess(section, settings)
        except CoprocessInitError as exc:
            _log.warning("error parsing coprocess configuration: %s", exc)
            continue
        _log.debug("parsed coprocess definition (%s) for (%s) coprocess", section, cp.name)
        coprocesses.append(cp)
    return coprocesses


def init_coprocess(section: str, settings: Settings) -> Coprocess:
    """Build the Coprocess described by one configuration section."""
    prefix = f"coprocess.{section}."
    try:
        return Coprocess.create(
            name=settings.get_string(prefix + "name"),
            exec_args=settings.get_string_slice(prefix + "exec"),
            stop_exec=settings.get_string_slice(prefix + "stop_exec"),
            user=settings.get_string(prefix + "user"),
            restarts=settings.get_string(prefix + "restarts"),
            time_between_restarts=settings.get_string(prefix + "time_between_restarts"),
            background=settings.get_bool(prefix + "background"),
            exec_event=settings.get_string(prefix + "exec_event"),
            stop_event=settings.get_string(prefix + "stop_event"),
            settings=settings,
        )
    except CoprocessInitError as exc:
        exc.config_section_name = section
        raise