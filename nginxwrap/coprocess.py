"""Processes that run alongside NGINX, tied to its lifecycle events."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import IO, Any

from nginxwrap.events import global_events
from nginxwrap.settings import Settings

try:
    import pwd
except ImportError:  # not available on every platform
    pwd = None  # type: ignore[assignment]

_log = logging.getLogger("nginxwrap.coprocess")

_EXIT_WAIT_SECONDS = 5
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

_NANOSECONDS_PER_UNIT: dict[str, int] = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]+)")


class RestartPolicy(StrEnum):
    """What happens once a coprocess exits; a count of restarts is also allowed."""

    UNLIMITED = "unlimited"
    NEVER = "never"
    # set internally while the wrapper is ending the process
    TERMINATING = "terminating"


class CoprocessInitError(Exception):
    """Raised when a coprocess definition is not valid."""

    def __init__(self, messages: Iterable[str], config_section_name: str = "") -> None:
        self.messages = list(messages)
        self.config_section_name = config_section_name
        super().__init__(*self.messages)

    def __str__(self) -> str:
        if not self.messages:
            return f"error initializing coprocess section ({self.config_section_name})"
        details = "".join(f"    {message}\n" for message in self.messages)
        return f"error initializing coprocess section ({self.config_section_name}):\n{details}"


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "300ms", "1.5s" or "1h30m"."""
    if not text:
        raise ValueError(f"invalid duration: {text!r}")
    body = text
    negative = False
    if body[0] in "+-":
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration: {text!r}")

    total_ns = 0.0
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if match is None or not (match.group(1) or match.group(2)):
            raise ValueError(f"invalid duration: {text!r}")
        whole, fraction, unit = match.groups()
        unit_ns = _NANOSECONDS_PER_UNIT.get(unit)
        if unit_ns is None:
            raise ValueError(f"unknown unit ({unit}) in duration: {text!r}")
        total_ns += float(f"{whole or '0'}.{fraction or '0'}") * unit_ns
        position = match.end()

    if negative:
        total_ns = -total_ns
    return timedelta(microseconds=total_ns / 1000)


def interpolate_all(source_strings: Iterable[str], substitutions: Mapping[str, str]) -> list[str]:
    """Replace every occurrence of each substitution key in every string.

    Matches are found left to right without overlapping; where several keys
    match at the same position, the earliest key in the mapping wins.
    """
    table = dict(substitutions)
    keys = [key for key in table if key]
    if not keys:
        return list(source_strings)
    pattern = re.compile("|".join(re.escape(key) for key in keys))
    return [pattern.sub(lambda m: table[m.group(0)], text) for text in source_strings]


def is_ascii_digit(s: str) -> bool:
    """True if the string holds only the characters 0123456789."""
    return all(c in "0123456789" for c in s)


def build_substitutions(settings: Settings) -> dict[str, str]:
    """The ${...} placeholders available to exec and stop_exec commands."""
    substitutions = {
        f"${{{name}}}": settings.get_string(name)
        for name in (
            "host_id",
            "modules_path",
            "nginx_binary",
            "plugin_path",
            "run_path",
            "vcpu_count",
            "last_reload_time",
        )
    }
    substitutions["${wrapper_pid}"] = str(os.getpid())
    for name, value in settings.get_string_map_string("env").items():
        substitutions.setdefault(f"${{{name}}}", value)
    return substitutions


def interpolate_command_with_settings(
    arguments: Mapping[str, Iterable[str]], settings: Settings
) -> dict[str, list[str]]:
    """Interpolate settings into each named command."""
    substitutions = build_substitutions(settings)
    return {name: interpolate_all(command, substitutions) for name, command in arguments.items()}


def _pipe_to_log(stream: IO[str], log: logging.Logger) -> None:
    with stream:
        for line in stream:
            line = line.rstrip("\r\n")
            if line:
                log.info("%s", line)


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return str(number)


@dataclass(eq=False)
class Coprocess:
    """A process started and stopped alongside NGINX."""

    name: str
    exec_args: list[str]
    stop_exec: list[str] = field(default_factory=list)
    user: str = ""
    restarts: str = RestartPolicy.NEVER.value
    time_between_restarts: timedelta = timedelta(0)
    background: bool = False
    exec_event: str = ""
    stop_event: str = ""
    done: threading.Event = field(default_factory=threading.Event)

    _process: subprocess.Popen[str] | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _log: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._log = logging.getLogger(f"nginxwrap.coprocess.{self.name}")

    @classmethod
    def create(
        cls,
        name: str,
        exec_args: Iterable[str],
        stop_exec: Iterable[str] | None,
        user: str,
        restarts: str,
        time_between_restarts: str,
        background: bool,
        exec_event: str,
        stop_event: str,
        settings: Settings,
    ) -> Coprocess:
        """Validate a definition and build a Coprocess with interpolated commands."""
        exec_list = list(exec_args)
        stop_list = list(stop_exec or [])
        failures: list[str] = []

        if not name:
            failures.append("coprocess field 'name' is blank")
        if not exec_list:
            failures.append("coprocess field 'exec' is empty")
        # the terminating policy cannot be chosen by users
        if not (
            restarts in (RestartPolicy.UNLIMITED, RestartPolicy.NEVER) or is_ascii_digit(restarts)
        ):
            failures.append(
                f"coprocess field 'restarts' is set to an invalid value ({restarts}) - "
                "it must be 'never' or 'unlimited'"
            )

        pause = timedelta(0)
        if time_between_restarts:
            try:
                pause = parse_duration(time_between_restarts)
            except ValueError:
                failures.append(
                    "coprocess field 'time_between_restarts' has an invalid duration: "
                    f"{time_between_restarts}"
                )

        event_names = global_events().event_names()
        if exec_event not in event_names:
            failures.append(
                f"coprocess field 'exec_event' was not set to a valid event name ({exec_event})"
            )
        if stop_event not in event_names:
            failures.append(
                f"coprocess field 'stop_event' was not set to a valid event name ({stop_event})"
            )

        if failures:
            raise CoprocessInitError(failures)

        commands = interpolate_command_with_settings(
            {"exec": exec_list, "stop_exec": stop_list}, settings
        )
        return cls(
            name=name,
            exec_args=commands["exec"],
            stop_exec=commands["stop_exec"],
            user=user,
            restarts=str(restarts),
            time_between_restarts=pause,
            background=background,
            exec_event=exec_event,
            stop_event=stop_event,
        )

    def __str__(self) -> str:
        return (
            f"{{{self.name} {self.exec_args} {self.restarts} {self.background} "
            f"{self.exec_event} {self.stop_event}}}"
        )

    @property
    def _terminating(self) -> bool:
        return self.restarts == RestartPolicy.TERMINATING

    def max_restarts(self) -> int:
        """The number of restarts allowed; -1 means unlimited."""
        if self.restarts in (RestartPolicy.NEVER, RestartPolicy.TERMINATING):
            return 0
        if self.restarts == RestartPolicy.UNLIMITED:
            return -1
        try:
            return int(self.restarts)
        except ValueError as exc:
            raise ValueError(f"invalid restart policy ({self.restarts})") from exc

    def _process_options(self, log: logging.Logger) -> dict[str, Any]:
        if not self.user:
            return {}
        log.debug("running coprocess (%s) as user (%s)", self.name, self.user)
        if pwd is None:
            raise OSError(
                f"problem looking up user ({self.user}) specified for coprocess ({self.name}): "
                "user lookup is not supported on this platform"
            )
        try:
            entry = pwd.getpwnam(self.user)
        except KeyError as exc:
            raise OSError(
                f"problem looking up user ({self.user}) specified for coprocess ({self.name})"
            ) from exc
        return {"user": entry.pw_uid}

    def _launch(
        self, args: list[str], options: Mapping[str, Any], log: logging.Logger
    ) -> subprocess.Popen[str]:
        log.debug("initiated cmd: %s", args)
        process = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            **options,
        )
        assert process.stdout is not None
        threading.Thread(target=_pipe_to_log, args=(process.stdout, log), daemon=True).start()
        return process

    def _start_failure(self, what: str) -> str:
        if self.user:
            return f"{what} ({self.name}) running as user ({self.user})"
        return f"{what} ({self.name})"

    def _wait(self, process: subprocess.Popen[str], log: logging.Logger) -> None:
        code = process.wait()
        path = process.args[0] if isinstance(process.args, (list, tuple)) else process.args
        if code == 0:
            log.debug("coprocess (%s) process (%s) exited", self.name, path)
        elif code < 0:
            if -code == signal.SIGTERM:
                log.debug(
                    "coprocess (%s) process (%s) exited: signal: terminated", self.name, path
                )
            else:
                log.error(
                    "coprocess (%s) process (%s) exited with error: signal: %s",
                    self.name,
                    path,
                    _signal_name(-code),
                )
        else:
            log.info(
                "coprocess (%s) process (%s) exited with non-zero code: %d", self.name, path, code
            )

    def execute(self) -> None:
        """Run the process, restarting it as the restart policy allows."""
        restart_count = 0
        while True:
            if restart_count < 1:
                self._log.debug("initiating coprocess (%s)", self.name)
            else:
                self.sleep_between_restarts()
                if self._terminating:
                    break
                self._log.debug(
                    "initiating restart (%d) of coprocess (%s) with restart policy (%s)",
                    restart_count,
                    self.name,
                    self.restarts,
                )

            with self._lock:
                # don't start a process that is supposed to end
                if self._terminating:
                    break
                try:
                    options = self._process_options(self._log)
                except OSError as exc:
                    raise OSError(f"unable to initiate coprocess ({self.name})") from exc
                self._log.debug("starting coprocess (%s)", self.name)
                try:
                    process = self._launch(self.exec_args, options, self._log)
                except OSError as exc:
                    raise OSError(self._start_failure("unable to start coprocess")) from exc
                self._process = process

            self._wait(process, self._log)

            if self.restarts != RestartPolicy.UNLIMITED and restart_count >= self.max_restarts():
                break
            restart_count += 1

    def sleep_between_restarts(self) -> None:
        """Pause for the configured time, ending early once terminating."""
        pause = self.time_between_restarts.total_seconds()
        if pause <= 0:
            return
        self._log.debug("sleeping for (%s) before restarting", self.time_between_restarts)
        if pause <= 1:
            time.sleep(pause)
            return
        deadline = time.monotonic() + pause
        while time.monotonic() < deadline and not self._terminating:
            time.sleep(1)

    def execute_stop_cmd(self) -> None:
        """Run the optional stop command and forbid further restarts."""
        stop_log = logging.getLogger(f"nginxwrap.coprocess.stop-{self.name}")
        if not self.stop_exec:
            self._log.debug(
                "no stop command specified for coprocess (%s) exiting immediately", self.name
            )
            return
        try:
            options = self._process_options(stop_log)
        except OSError as exc:
            raise OSError(
                f"unable to initiate stop command for coprocess ({self.name})"
            ) from exc

        # we are now shutting down, so the process must not restart
        self.restarts = RestartPolicy.TERMINATING.value

        stop_log.debug("issuing stop command for coprocess (%s)", self.name)
        try:
            process = self._launch(self.stop_exec, options, stop_log)
        except OSError as exc:
            raise OSError(
                self._start_failure("unable to execute stop command for coprocess")
            ) from exc
        self._wait(process, stop_log)
        stop_log.debug("stop command for coprocess (%s) completed", self.name)

    def _send_signal(self, process: subprocess.Popen[str], sig: signal.Signals) -> None:
        self._log.debug(
            "sending (%s) to coprocess (%s) with pid (%d)", sig.name, self.name, process.pid
        )
        try:
            process.send_signal(sig)
        except ProcessLookupError as exc:
            # the process ended before the signal arrived, which is what we wanted
            self._log.debug(
                "(%s) failed for coprocess (%s) pid (%d): %s", sig.name, self.name, process.pid, exc
            )
        except (OSError, ValueError) as exc:
            raise OSError(
                f"({sig.name}) failed for coprocess ({self.name}) pid ({process.pid})"
            ) from exc

    def terminate(self) -> None:
        """End the process with SIGTERM, then SIGINT, then SIGKILL."""
        self.restarts = RestartPolicy.TERMINATING.value

        if self.done.is_set():
            self._log.debug("coprocess already exited")
            return

        for sig in (signal.SIGTERM, signal.SIGINT):
            # the process may have changed if it was rapidly restarting
            with self._lock:
                process = self._process
            if process is None:
                self._log.debug("coprocess state unavailable")
                return
            try:
                self._send_signal(process, sig)
            except OSError as exc:
                self._log.warning("%s", exc)
            else:
                self.done.wait(_EXIT_WAIT_SECONDS)
            if self.done.is_set():
                return

        # the process did not exit nicely
        with self._lock:
            process = self._process
        assert process is not None
        try:
            self._send_signal(process, signal.Signals(_KILL_SIGNAL))
        except OSError as exc:
            raise OSError(
                f"SIGKILL failed for coprocess ({self.name}) for pid ({process.pid})"
            ) from exc

        if self.done.is_set():
            return

        with self._lock:
            process = self._process
        if process is None:
            raise RuntimeError(
                f"no process information returned after coprocess ({self.name}) was killed - "
                "this is an unexpected state"
            )
        process.wait()
        self._log.debug("coprocess (%s) exited successfully after SIGKILL", self.name)