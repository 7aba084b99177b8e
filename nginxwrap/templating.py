"""Discovery, templating and copying of NGINX configuration files."""

from __future__ import annotations

import functools
import logging
import os
import shutil
import stat
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import jinja2

from nginxwrap.config import all_known_elements
from nginxwrap.settings import Settings

PLUGIN_NAME = "template"

_log = logging.getLogger("nginxwrap.template")

_TEMPLATE_FILE_MODE = 0o640
_TEMPLATE_DIR_MODE = 0o750
_DEFAULT_TEMPLATE_NAME = "nginx-conf"
_RENDER_ERRORS = (
    jinja2.TemplateError,
    TypeError,
    ValueError,
    LookupError,
    AttributeError,
    ArithmeticError,
)


class ProcessingError(Exception):
    """Raised when templates cannot be applied to the NGINX configuration."""

    def __init__(
        self,
        message: str,
        *,
        template_file: str = "",
        output_file: str = "",
        template_name: str = "",
        is_templating_problem: bool = False,
        err: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.template_file = template_file
        self.output_file = output_file
        self.template_name = template_name
        self.is_templating_problem = is_templating_problem
        self.err = err

    def __str__(self) -> str:
        text = self.message
        if self.template_name:
            text += f" with template named ({self.template_name})"
        if self.template_file:
            text += f" with template file ({self.template_file})"
        if self.output_file:
            text += f" to output file ({self.output_file})"
        if self.err is not None:
            text += f": {self.err}"
        return text


@dataclass(frozen=True)
class PathObject:
    """A file or directory on the file system."""

    name: str
    is_dir: bool = False

    def __str__(self) -> str:
        return self.name


def _format_value(value: Any) -> Any:
    """Render values the way configuration authors expect: true/false, [a b]."""
    if value is None:
        return "<no value>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(str(_format_value(item)) for item in value) + "]"
    if isinstance(value, dict):
        items = " ".join(f"{k}:{_format_value(value[k])}" for k in sorted(value, key=str))
        return f"map[{items}]"
    return value


@functools.lru_cache(maxsize=16)
def _environment(left_delim: str, right_delim: str) -> jinja2.Environment:
    # Statements and comments reuse the variable delimiters with % and # inside.
    return jinja2.Environment(
        variable_start_string=left_delim,
        variable_end_string=right_delim,
        block_start_string=left_delim + "%",
        block_end_string="%" + right_delim,
        comment_start_string=left_delim + "#",
        comment_end_string="#" + right_delim,
        keep_trailing_newline=True,
        autoescape=False,
        finalize=_format_value,
    )


def _compile(text: str, left_delim: str, right_delim: str) -> jinja2.Template:
    return _environment(left_delim or "{{", right_delim or "}}").from_string(text)


def _render(template: jinja2.Template, settings: Settings, template_name: str) -> str:
    # variables use "_" between sub-keys because "." is attribute access
    params = all_known_elements(settings, "_")
    try:
        return template.render(params)
    except _RENDER_ERRORS as exc:
        raise ProcessingError(
            "unable to apply template",
            template_name=template_name,
            is_templating_problem=True,
            err=exc,
        ) from exc


def render_template(
    template_text: str, settings: Settings, left_delim: str = "{{", right_delim: str = "}}"
) -> str:
    """Render template text with every known setting as a variable."""
    try:
        template = _compile(template_text, left_delim, right_delim)
    except jinja2.TemplateSyntaxError as exc:
        raise ProcessingError("unable to parse", is_templating_problem=True, err=exc) from exc
    return _render(template, settings, _DEFAULT_TEMPLATE_NAME)


def _is_regular_file_or_directory(mode: int) -> bool:
    return stat.S_ISREG(mode) or stat.S_ISDIR(mode)


def _walk(root: str) -> Iterator[tuple[str, int]]:
    """Yield (path, mode) depth first in lexical order without following links."""
    mode = os.lstat(root).st_mode
    yield root, mode
    if stat.S_ISDIR(mode):
        for name in sorted(os.listdir(root)):
            yield from _walk(os.path.join(root, name))


def _remove_all(path: str) -> None:
    try:
        mode = os.lstat(path).st_mode
    except FileNotFoundError:
        return
    if stat.S_ISDIR(mode):
        shutil.rmtree(path)
    else:
        os.remove(path)


@dataclass
class Template:
    """A set of files and directories to be templated or copied."""

    files: dict[str, PathObject] = field(default_factory=dict)
    template_file_suffix: str = ""
    conf_template_path: str = ""
    conf_output_path: str = ""
    template_var_left_delim: str = ""
    template_var_right_delim: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> Template:
        def setting(name: str) -> str:
            return settings.get_string(f"{PLUGIN_NAME}.{name}")

        return cls(
            template_file_suffix=setting("template_suffix"),
            conf_template_path=os.path.normpath(setting("conf_template_path")),
            conf_output_path=os.path.normpath(setting("conf_output_path")),
            template_var_left_delim=setting("template_var_left_delim"),
            template_var_right_delim=setting("template_var_right_delim"),
        )

    def apply_templating(self, settings: Settings) -> None:
        """Create directories, render templates and copy static files."""
        for source, output in self.files.items():
            if output.is_dir:
                _log.debug("Recreating directory from (%s) at (%s)", source, output.name)
                try:
                    os.makedirs(output.name, mode=_TEMPLATE_DIR_MODE, exist_ok=True)
                except OSError as exc:
                    raise ProcessingError(
                        f"couldn't make directory: {output.name}", err=exc
                    ) from exc
            elif self.is_template_file(source):
                _log.debug("Templating file from (%s) to (%s)", source, output.name)
                try:
                    self.apply_file_template(source, output.name, settings)
                except ProcessingError as exc:
                    exc.template_file = exc.template_file or source
                    exc.output_file = exc.output_file or output.name
                    raise
            else:
                _log.debug("Copying file from (%s) to (%s)", source, output.name)
                try:
                    shutil.copyfile(source, output.name)
                except OSError as exc:
                    raise ProcessingError(
                        f"unable to copy file ({source}) to ({output.name})", err=exc
                    ) from exc

    def clean_output_configuration(self) -> list[OSError]:
        """Remove every output file and directory; return the failures."""
        _log.debug("removing nginx configuration")
        failures: list[OSError] = []
        for path_object in self.files.values():
            if not path_object.name:
                _log.warning("empty filename encountered when cleaning configuration")
                continue
            _log.debug("removing (%s)", path_object.name)
            try:
                _remove_all(path_object.name)
            except OSError as exc:
                failure = OSError(f"error removing templated file ({path_object}): {exc}")
                failure.__cause__ = exc
                failures.append(failure)
        return failures

    def is_template_file(self, source: str) -> bool:
        return source.endswith(self.template_file_suffix)

    def apply_file_template(self, source: str, output: str, settings: Settings) -> None:
        """Render the source template file into the output file."""
        template_name = os.path.basename(source)
        try:
            with open(source, encoding="utf-8") as handle:
                text = handle.read()
            template = _compile(text, self.template_var_left_delim, self.template_var_right_delim)
        except (OSError, UnicodeDecodeError, jinja2.TemplateSyntaxError) as exc:
            raise ProcessingError(
                "unable to parse", template_file=source, is_templating_problem=True, err=exc
            ) from exc

        try:
            fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _TEMPLATE_FILE_MODE)
        except OSError as exc:
            raise ProcessingError(
                "unable to open destination for write", template_file=source, err=exc
            ) from exc

        with open(fd, "w", encoding="utf-8") as writer:
            writer.write(_render(template, settings, template_name))

    def discover_template_files(self) -> None:
        """Map every file under the template path to its output path."""
        template_path = self.conf_template_path
        output_path = self.conf_output_path

        try:
            template_mode = os.stat(template_path).st_mode
        except OSError as exc:
            raise OSError(
                f"error opening nginx conf template path ({template_path}): {exc}"
            ) from exc
        if not _is_regular_file_or_directory(template_mode):
            raise ValueError(f"template path ({template_path}) is not a valid file or directory")

        try:
            os.stat(output_path)
        except OSError as exc:
            raise OSError(
                f"error opening nginx conf template output path ({output_path}): {exc}"
            ) from exc

        self.files = {}

        if not stat.S_ISDIR(template_mode):
            output_file = PathObject(output_path + os.sep + "nginx.conf", False)
            _log.debug("Adding single template file mapping: %s -> %s", template_path, output_file)
            self.files[template_path] = output_file
            return

        try:
            for path, mode in _walk(template_path):
                self.process_template_path(path, mode)
        except OSError as exc:
            raise OSError(f"error walking conf_template_path ({template_path}): {exc}") from exc

    def process_template_path(self, input_path: str, mode: int) -> None:
        """Add the output mapping for one discovered path with the given st_mode."""
        path = os.path.normpath(input_path)

        if os.path.basename(path) == self.template_file_suffix:
            raise ValueError(f"can't process filename ({path}) that is only a suffix")

        relative = path.removeprefix(self.conf_template_path)
        with_output_path = os.path.normpath(self.conf_output_path + os.sep + relative)

        if not _is_regular_file_or_directory(mode):
            _log.warning(
                "unable to process path (%s) because it isn't a regular file or directory", path
            )
            return

        if stat.S_ISDIR(mode):
            # the root directory is assumed to exist already
            if path == self.conf_template_path:
                return
            output_file = PathObject(with_output_path + os.sep, True)
        else:
            output_file = PathObject(with_output_path.removesuffix(self.template_file_suffix), False)

        _log.debug("Adding template file mapping: %s -> %s", path, output_file)
        self.files[path] = output_file