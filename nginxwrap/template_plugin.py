"""Plugin that renders NGINX configuration templates around lifecycle events."""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timezone
from typing import Any

from nginxwrap.events import EventRegistry, Message, Trigger, global_events
from nginxwrap.settings import PluginStartupContext, Settings
from nginxwrap.templating import PLUGIN_NAME, ProcessingError, Template

_log = logging.getLogger("nginxwrap.template")
_event_log = logging.getLogger("nginxwrap.template-event")

TEMPLATE_DEFAULTS: dict[str, Any] = {
    # if true, deletes all files within the run path upon exit
    "delete_run_path_on_exit": False,
    # if true, deletes only the templated files upon exit
    "delete_templated_conf_on_exit": True,
    # file extension of every NGINX conf file that will be templated
    "template_suffix": ".tmpl",
    "template_var_left_delim": "[[",
    "template_var_right_delim": "]]",
    # subdirectories of the run path created on startup
    "run_path_subdirs": ["client_body", "conf", "proxy", "fastcgi", "uswsgi", "scgi"],
}


def metadata(settings: Settings) -> dict[str, Any]:
    """Plugin metadata, with defaults that depend on the current settings."""
    # The configured suffix is needed to build the default template path.
    template_suffix = settings.get_string(PLUGIN_NAME + ".template_suffix") or str(
        TEMPLATE_DEFAULTS["template_suffix"]
    )
    defaults = dict(TEMPLATE_DEFAULTS)
    defaults["run_path_subdirs"] = list(TEMPLATE_DEFAULTS["run_path_subdirs"])
    defaults["conf_output_path"] = settings.get("conf_path")
    defaults["conf_template_path"] = "./nginx.conf" + template_suffix
    return {"name": PLUGIN_NAME, "config_defaults": defaults}


def start(context: PluginStartupContext) -> None:
    """Attach the templating triggers to the global events."""
    _log.debug("plugin [%s] starting", PLUGIN_NAME)
    init_templating_events(context.settings, global_events())


def _remove_tree(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def init_templating_events(settings: Settings, registry: EventRegistry) -> None:
    """Register run path creation, templating and clean-up triggers."""
    conf_template = Template.from_settings(settings)

    def init_run_path(message: Message) -> None:
        run_path = settings.get_string("run_path")
        _event_log.debug("creating directory/verifying: %s", run_path)
        try:
            os.makedirs(run_path, exist_ok=True)
        except OSError as exc:
            raise OSError(f"error creating run_path directory ({run_path}): {exc}") from exc
        try:
            make_run_path_subdirs(settings)
        except OSError as exc:
            raise OSError(
                f"error creating subdirectory for run_path ({run_path}): {exc}"
            ) from exc

    def apply_templates(message: Message) -> None:
        settings.set("last_reload_time", str(datetime.now(timezone.utc)))
        try:
            conf_template.discover_template_files()
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"error traversing nginx conf template files: {exc}") from exc
        try:
            conf_template.apply_templating(settings)
        except ProcessingError as exc:
            # Template mistakes end the program without a traceback so that
            # users can see plainly what is wrong with their templates.
            if exc.is_templating_problem:
                _event_log.critical("%s", exc)
                raise SystemExit(str(exc)) from exc
            raise

    def clean_up(message: Message) -> None:
        if settings.get_bool("delete_templated_conf_on_exit"):
            conf_template.clean_output_configuration()
        if settings.get_bool(PLUGIN_NAME + ".delete_run_path_on_exit"):
            run_path = settings.get_string("run_path")
            if run_path:
                _event_log.debug("removing nginx working directory (%s)", run_path)
                try:
                    _remove_tree(run_path)
                except OSError as exc:
                    _event_log.error("unable to remove run_path (%s): %s", run_path, exc)

    init_run_path_trigger = Trigger(PLUGIN_NAME + ".init-runpath", init_run_path)
    apply_templates_trigger = Trigger(PLUGIN_NAME + ".apply-templates", apply_templates)
    clean_up_trigger = Trigger(PLUGIN_NAME + ".clean-up-templates", clean_up)

    registry.nginx_pre_start.add_trigger(init_run_path_trigger)
    registry.nginx_pre_start.add_final_trigger(apply_templates_trigger)
    registry.nginx_pre_reload.add_final_trigger(apply_templates_trigger)
    registry.nginx_exit.add_final_trigger(clean_up_trigger)


def make_run_path_subdirs(settings: Settings) -> list[str]:
    """Create the configured subdirectories of the run path and return their paths."""
    run_path = settings.get_string("run_path")
    created: list[str] = []
    for name in settings.get_string_slice(PLUGIN_NAME + ".run_path_subdirs"):
        subdir = run_path + os.sep + name
        try:
            os.makedirs(subdir, exist_ok=True)
        except OSError as exc:
            raise OSError(f"error creating subdirectory ({subdir}): {exc}") from exc
        created.append(subdir)
    _log.debug("creating/verifying directories: %s", " ".join(created))
    return created