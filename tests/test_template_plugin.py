import os

import pytest

from nginxwrap import template_plugin
from nginxwrap.events import EventRegistry, global_events, reset_global_events
from nginxwrap.settings import PluginStartupContext, Settings


def _settings_for(tmp_path, template_text="binary=[[nginx_binary]]"):
    template_dir = tmp_path / "templates"
    template_dir.mkdir()
    (template_dir / "nginx.conf.tmpl").write_text(template_text)
    (template_dir / "mime.types").write_text("static")
    run_path = tmp_path / "run"
    settings = Settings()
    settings.set("run_path", str(run_path))
    settings.set("conf_path", str(run_path / "conf"))
    settings.set("nginx_binary", "nginx")
    for key, value in template_plugin.metadata(settings)["config_defaults"].items():
        settings.set_default(f"template.{key}", value)
    settings.set("template.conf_template_path", str(template_dir))
    return settings, run_path


def test_metadata_default_template_path():
    meta = template_plugin.metadata(Settings())
    assert meta["name"] == "template"
    assert meta["config_defaults"]["conf_template_path"] == "./nginx.conf.tmpl"
    assert meta["config_defaults"]["template_var_left_delim"] == "[["


def test_metadata_uses_configured_suffix():
    settings = Settings()
    settings.set_default("template.template_suffix", ".tmpl2")
    settings.set("conf_path", "/somewhere/conf")
    defaults = template_plugin.metadata(settings)["config_defaults"]
    assert defaults["conf_template_path"] == "./nginx.conf.tmpl2"
    assert defaults["conf_output_path"] == "/somewhere/conf"


def test_make_run_path_subdirs(tmp_path):
    settings = Settings()
    settings.set("run_path", str(tmp_path))
    settings.set("template.run_path_subdirs", ["alpha", "beta"])
    created = template_plugin.make_run_path_subdirs(settings)
    assert created == [str(tmp_path) + os.sep + "alpha", str(tmp_path) + os.sep + "beta"]
    assert all(os.path.isdir(path) for path in created)


def test_pre_start_creates_run_path_and_renders(tmp_path):
    settings, run_path = _settings_for(tmp_path)
    registry = EventRegistry()
    template_plugin.init_templating_events(settings, registry)
    registry.nginx_pre_start.trigger({})
    assert (run_path / "proxy").is_dir()
    assert (run_path / "conf" / "nginx.conf").read_text() == "binary=nginx"
    assert (run_path / "conf" / "mime.types").read_text() == "static"
    assert settings.get_string("last_reload_time") != "not reloaded"
    assert "UTC" in settings.get_string("last_reload_time") or "+00:00" in settings.get_string(
        "last_reload_time"
    )


def test_templating_problem_exits(tmp_path):
    settings, _ = _settings_for(tmp_path, "[[ missing_function() ]]")
    registry = EventRegistry()
    template_plugin.init_templating_events(settings, registry)
    with pytest.raises(SystemExit):
        registry.nginx_pre_start.trigger({})


def test_exit_removes_run_path_when_configured(tmp_path):
    settings, run_path = _settings_for(tmp_path)
    settings.set("template.delete_run_path_on_exit", True)
    registry = EventRegistry()
    template_plugin.init_templating_events(settings, registry)
    registry.nginx_pre_start.trigger({})
    assert run_path.is_dir()
    registry.nginx_exit.trigger({})
    assert not run_path.exists()


def test_exit_removes_templated_conf(tmp_path):
    settings, run_path = _settings_for(tmp_path)
    settings.set("delete_templated_conf_on_exit", True)
    registry = EventRegistry()
    template_plugin.init_templating_events(settings, registry)
    registry.nginx_pre_start.trigger({})
    registry.nginx_exit.trigger({})
    assert not (run_path / "conf" / "nginx.conf").exists()
    assert (run_path / "proxy").is_dir()


def test_start_registers_on_global_events():
    reset_global_events()
    try:
        template_plugin.start(PluginStartupContext(Settings()))
        registry = global_events()
        assert [t.name for t in registry.nginx_pre_start.triggers] == [
            "template.init-runpath",
            "template.apply-templates",
        ]
        assert [t.name for t in registry.nginx_exit.triggers] == ["template.clean-up-templates"]
    finally:
        reset_global_events()