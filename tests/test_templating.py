import os
import stat

import pytest

from nginxwrap import config
from nginxwrap.settings import Settings
from nginxwrap.templating import (
    PathObject,
    ProcessingError,
    Template,
    render_template,
)

TEMPLATE_PLUGIN_DEFAULTS = {
    "delete_run_path_on_exit": False,
    "delete_templated_conf_on_exit": True,
    "template_suffix": ".tmpl",
    "template_var_left_delim": "[[",
    "template_var_right_delim": "]]",
    "run_path_subdirs": ["client_body", "conf", "proxy", "fastcgi", "uswsgi", "scgi"],
    "conf_template_path": "./nginx.conf.tmpl",
}


@pytest.fixture
def plugin_defaults(monkeypatch):
    defaults = dict(TEMPLATE_PLUGIN_DEFAULTS)
    monkeypatch.setitem(config.PLUGIN_DEFAULTS, "template", defaults)
    return defaults


def test_top_level_undefined_default():
    assert render_template("{{ nginx_binary }}", Settings()) == "nginx"


def test_top_level_settings_default():
    settings = Settings()
    settings.set_default("nginx_binary", "something-different")
    assert render_template("{{ nginx_binary }}", settings) == "something-different"


def test_top_level_set_value():
    settings = Settings()
    settings.set("nginx_binary", "nginx")
    assert render_template("{{ nginx_binary }}", settings) == "nginx"


def test_top_level_overrides_default():
    settings = Settings()
    settings.set_default("nginx_binary", "something weird")
    settings.set("nginx_binary", "another")
    assert render_template("{{ nginx_binary }}", settings) == "another"


def test_sub_level_undefined_default():
    assert render_template("{{ log_level }}", Settings()) == "INFO"


def test_sub_level_settings_default():
    settings = Settings()
    settings.set_default("log.level", "WARN")
    assert render_template("{{ log_level }}", settings) == "WARN"


def test_sub_level_set_value():
    settings = Settings()
    settings.set("log.level", "INFO")
    assert render_template("{{ log_level }}", settings) == "INFO"


def test_sub_level_overrides_default():
    settings = Settings()
    settings.set_default("log.level", "ERROR")
    settings.set("log.level", "DEBUG")
    assert render_template("{{ log_level }}", settings) == "DEBUG"


FULL_TIMESTAMP = "{{ log_formatter_options['full_timestamp'] }}"


def test_sub_level_map_undefined_default():
    assert render_template(FULL_TIMESTAMP, Settings()) == "true"


def test_sub_level_map_settings_default():
    settings = Settings()
    settings.set_default("log.formatter_options", {"full_timestamp": False})
    assert render_template(FULL_TIMESTAMP, settings) == "false"


def test_sub_level_map_set_value():
    settings = Settings()
    settings.set("log.formatter_options", {"full_timestamp": False})
    assert render_template(FULL_TIMESTAMP, settings) == "false"


def test_sub_level_map_overrides_default():
    settings = Settings()
    settings.set_default("log.formatter_options", {"full_timestamp": True})
    settings.set("log.formatter_options", {"full_timestamp": False})
    assert render_template(FULL_TIMESTAMP, settings) == "false"


def test_custom_delimiters():
    settings = Settings()
    settings.set("nginx_binary", "/opt/nginx")
    text = "bin = [[ nginx_binary ]] {literal}"
    assert render_template(text, settings, "[[", "]]") == "bin = /opt/nginx {literal}"


def test_parse_error():
    with pytest.raises(ProcessingError) as info:
        render_template("{{ nginx_binary ", Settings())
    assert info.value.message == "unable to parse"
    assert info.value.is_templating_problem is True


def test_render_error():
    with pytest.raises(ProcessingError) as info:
        render_template("{{ nginx_binary.missing.deeper }}", Settings())
    assert info.value.message == "unable to apply template"
    assert info.value.template_name == "nginx-conf"
    assert info.value.is_templating_problem is True


def test_can_template_file(tmp_path, plugin_defaults):
    settings = Settings()
    run_path = str(tmp_path / "run")
    settings.set_default("run_path", run_path)
    settings.set_default("conf_path", run_path + os.sep + "conf")
    settings.set("template.template_var_left_delim", "{{")
    settings.set("template.template_var_right_delim", "}}")
    template = Template.from_settings(settings)
    for key, value in plugin_defaults.items():
        settings.set_default("template." + key, value)

    source = tmp_path / "test.txt.tmpl"
    output = tmp_path / "test.txt"
    source.write_text(
        "\n"
        "nginx_binary = {{ nginx_binary }}\n"
        "template.run_path_subdirs = {{ template_run_path_subdirs }}\n"
        "template.conf_template_path = {{ template_conf_template_path }}\n"
        "template.delete_run_path_on_exit = {{ template_delete_run_path_on_exit }}\n"
        "log.level = {{ log_level }}\n"
        "log.level.formatter_options.full_timestamp = "
        "{{ log_formatter_options['full_timestamp'] }}"
    )

    template.apply_file_template(str(source), str(output), settings)

    assert output.read_text() == (
        "\n"
        "nginx_binary = nginx\n"
        "template.run_path_subdirs = [client_body conf proxy fastcgi uswsgi scgi]\n"
        "template.conf_template_path = ./nginx.conf.tmpl\n"
        "template.delete_run_path_on_exit = false\n"
        "log.level = INFO\n"
        "log.level.formatter_options.full_timestamp = true"
    )


def _template_settings(template_path, output_path):
    settings = Settings()
    settings.set("template.conf_template_path", str(template_path))
    settings.set("template.conf_output_path", str(output_path))
    settings.set("template.template_suffix", ".tmpl")
    settings.set("template.template_var_left_delim", "[[")
    settings.set("template.template_var_right_delim", "]]")
    return settings


def test_discover_single_file(tmp_path):
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    template_file = conf_dir / "nginx.conf.tmpl"
    template_file.write_text("hello")
    output = tmp_path / "out"
    output.mkdir()

    template = Template.from_settings(_template_settings(template_file, output))
    template.discover_template_files()

    assert template.files == {
        str(template_file): PathObject(str(output) + os.sep + "nginx.conf", False)
    }


def test_discover_directory(tmp_path):
    conf = tmp_path / "conf"
    conf.mkdir()
    output = tmp_path / "out"
    output.mkdir()
    (conf / "nginx.conf.tmpl").write_text("hello")
    (conf / "ordinary.text").write_text("hello")
    subdir = conf / "subdir"
    second_level = subdir / "2nd-level"
    second_level.mkdir(parents=True)
    (second_level / "another.conf.tmpl").write_text("hello")

    template = Template.from_settings(_template_settings(conf, output))
    template.discover_template_files()

    out = str(output) + os.sep
    third = out + "subdir" + os.sep
    fourth = third + "2nd-level" + os.sep
    assert list(template.files.items()) == [
        (str(conf / "nginx.conf.tmpl"), PathObject(out + "nginx.conf", False)),
        (str(conf / "ordinary.text"), PathObject(out + "ordinary.text", False)),
        (str(subdir), PathObject(third, True)),
        (str(second_level), PathObject(fourth, True)),
        (str(second_level / "another.conf.tmpl"), PathObject(fourth + "another.conf", False)),
    ]


def test_discover_missing_template_path(tmp_path):
    template = Template.from_settings(_template_settings(tmp_path / "missing", tmp_path))
    with pytest.raises(OSError, match="error opening nginx conf template path"):
        template.discover_template_files()


def test_discover_missing_output_path(tmp_path):
    (tmp_path / "nginx.conf.tmpl").write_text("x")
    template = Template.from_settings(
        _template_settings(tmp_path / "nginx.conf.tmpl", tmp_path / "missing")
    )
    with pytest.raises(OSError, match="template output path"):
        template.discover_template_files()


def _bare_template():
    return Template(
        template_file_suffix=".tmpl",
        conf_template_path="template",
        conf_output_path="/var/run/nginx-wrapper/conf",
    )


def test_process_template_path_file():
    template = _bare_template()
    template.process_template_path("template/conf.d/default.conf.tmpl", stat.S_IFREG | 0o777)
    assert template.files == {
        os.path.normpath("template/conf.d/default.conf.tmpl"): PathObject(
            os.path.normpath("/var/run/nginx-wrapper/conf/conf.d/default.conf"), False
        )
    }


def test_process_template_path_directory():
    template = _bare_template()
    template.process_template_path("template/conf.d", stat.S_IFDIR | 0o755)
    assert len(template.files) == 1
    assert next(iter(template.files.values())).is_dir is True


def test_process_template_path_symbolic_link():
    template = _bare_template()
    template.process_template_path("template/conf.d/etc/nginx.conf", stat.S_IFLNK | 0o777)
    assert len(template.files) == 0


def test_process_template_path_only_suffix():
    template = _bare_template()
    with pytest.raises(ValueError, match="only a suffix"):
        template.process_template_path("template/.tmpl", stat.S_IFREG | 0o644)


def _populated_template_dir(tmp_path):
    conf = tmp_path / "conf"
    (conf / "conf.d").mkdir(parents=True)
    (conf / "nginx.conf.tmpl").write_text("binary [[ nginx_binary ]];\n")
    (conf / "mime.types").write_text("types {}\n")
    (conf / "conf.d" / "default.conf.tmpl").write_text("level [[ log_level ]];\n")
    output = tmp_path / "out"
    output.mkdir()
    return conf, output


def test_apply_templating_and_clean(tmp_path):
    conf, output = _populated_template_dir(tmp_path)
    settings = _template_settings(conf, output)
    settings.set("nginx_binary", "/usr/sbin/nginx")
    template = Template.from_settings(settings)
    template.discover_template_files()

    template.apply_templating(settings)

    assert (output / "nginx.conf").read_text() == "binary /usr/sbin/nginx;\n"
    assert (output / "mime.types").read_text() == "types {}\n"
    assert (output / "conf.d" / "default.conf").read_text() == "level INFO;\n"

    assert template.clean_output_configuration() == []
    assert list(output.iterdir()) == []


def test_apply_templating_reports_files(tmp_path):
    conf = tmp_path / "conf"
    conf.mkdir()
    (conf / "bad.conf.tmpl").write_text("[[ nginx_binary.missing.deeper ]]")
    output = tmp_path / "out"
    output.mkdir()
    settings = _template_settings(conf, output)
    template = Template.from_settings(settings)
    template.discover_template_files()

    with pytest.raises(ProcessingError) as info:
        template.apply_templating(settings)

    assert info.value.template_file == str(conf / "bad.conf.tmpl")
    assert info.value.output_file == str(output / "bad.conf")
    assert info.value.template_name == "bad.conf.tmpl"
    assert info.value.is_templating_problem is True


def test_is_template_file():
    template = _bare_template()
    assert template.is_template_file("nginx.conf.tmpl") is True
    assert template.is_template_file("nginx.conf") is False


def test_clean_without_files_returns_nothing():
    assert Template().clean_output_configuration() == []


def test_processing_error_message():
    error = ProcessingError(
        "unable to parse",
        template_file="a.tmpl",
        output_file="a",
        template_name="n",
        err=ValueError("boom"),
    )
    assert str(error) == (
        "unable to parse with template named (n) with template file (a.tmpl) "
        "to output file (a): boom"
    )


def test_processing_error_message_minimal():
    assert str(ProcessingError("couldn't make directory: x")) == "couldn't make directory: x"


def test_path_object_str():
    assert str(PathObject("/etc/nginx/", True)) == "/etc/nginx/"