# nginxwrap

Building blocks for a pluggable NGINX process wrapper: a layered settings
store, named NGINX lifecycle events (`pre-start`, `start`, `pre-reload`,
`exit`) that plugins attach triggers to, a template plugin that renders NGINX
configuration, and a coprocess plugin that runs other programs alongside
NGINX.

## Installation

```
pip install nginxwrap
```

Python 3.11 or later is required.

## Command line

```
nginxwrap --help
nginxwrap --config nginx-wrapper.toml debug
nginxwrap version
```

- `--config` names a TOML configuration file; it defaults to
  `nginx-wrapper.toml` in the current directory.
- `debug` reads the file, layers the built-in defaults beneath it, registers
  the defaults of every enabled plugin, and prints each known setting with its
  effective value, right-aligned by key. Loaded keys with fewer than two dots
  that are not known settings are listed afterwards under "The following
  configuration settings are unknown:". If the file cannot be read or parsed,
  the error goes to standard error and the exit status is 1.
- `version` prints `nginx-wrapper <version> (<commit>) <build time>`;
  `--version` prints `nginx-wrapper version <version>`.
- With no command, the help text is printed.

## What the package does not do

There is no `run` command: nothing in the package launches or monitors the
NGINX process itself, and the command line never fires lifecycle events. To
use the plugins, your own code starts them and fires the events (see
"Library use" below).

## Configuration

Top-level settings and their defaults (`nginxwrap.config.CORE_DEFAULTS`):

- `nginx_binary` (`nginx`), `modules_path` (`/usr/lib/nginx/modules`),
  `plugin_path` (`./plugins`), `enabled_plugins` (empty)
- `run_path` (`nginx-wrapper` in the system temporary directory) and
  `conf_path` (`<run_path>/conf`)
- `nginx_version`, `nginx_is_plus`, `last_reload_time`, `vcpu_count`,
  `host_id`, `env` (the environment at start-up)

The host id is read from `/etc/machine-id` or `/var/lib/dbus/machine-id`
(or the platform's machine id), falling back to an MD5 hash of the network
interfaces' MAC addresses and finally to a random 128-bit hex value.

The `log` table holds `level` (`INFO`), `destination` (`STDOUT`),
`formatter_name` (`TextFormatter`) and `formatter_options`.

### Template plugin

Enable it with `enabled_plugins = ["template"]`. The `template` table sets:

- `conf_template_path`: a template file or a directory of templates
  (default `./nginx.conf` plus the suffix)
- `conf_output_path`: where output is written (default `conf_path`)
- `template_suffix`: extension of files to render (default `.tmpl`)
- `template_var_left_delim` / `template_var_right_delim`: variable
  delimiters (default `[[` and `]]`); statements use the delimiters with `%`
  inside (`[[% ... %]]`) and comments with `#` inside
- `run_path_subdirs`: directories created under the run path before start
- `delete_run_path_on_exit` (false), `delete_templated_conf_on_exit` (true)

A single template file is rendered to `<conf_output_path>/nginx.conf`. A
directory is walked in lexical order: files ending in the suffix are rendered
with the suffix removed, other files are copied, and subdirectories are
recreated. Templates are rendered with Jinja2, and every known setting is a
variable with dots replaced by underscores, such as `[[ log_level ]]` or
`[[ template_run_path_subdirs ]]`. Booleans render as `true`/`false` and lists
as `[a b c]`.

On `pre-start` the plugin creates the run path and its subdirectories, then
renders the templates; it renders them again on `pre-reload`, and cleans up on
`exit`. A mistake in a template ends the program with the error message.

### Coprocess plugin

Enable it with `enabled_plugins = ["coprocess"]` and describe each process in
its own `coprocess.<section>` table:

```toml
[coprocess.agent]
name = "agent"
exec = ["/usr/local/bin/agent", "--host", "${host_id}"]
stop_exec = ["/usr/local/bin/agent-deregister", "${host_id}"]
restarts = "unlimited"
time_between_restarts = "5s"
background = true
exec_event = "pre-start"
stop_event = "exit"
```

- `restarts` is `never`, `unlimited`, or a number of restarts.
- `time_between_restarts` is a duration such as `300ms`, `1.5s` or `1h30m`.
- `exec_event` and `stop_event` must be `pre-start`, `start`, `pre-reload` or
  `exit`.
- `user` runs the process as another user.
- Arguments may use `${host_id}`, `${modules_path}`, `${nginx_binary}`,
  `${plugin_path}`, `${run_path}`, `${vcpu_count}`, `${last_reload_time}`,
  `${wrapper_pid}` and any environment variable as `${NAME}`.

The process's output is logged line by line. On the stop event the stop
command (if any) runs, and the process is sent SIGTERM, then SIGINT, then
SIGKILL, waiting up to five seconds after each. Invalid sections are logged
and skipped.

## Library use

```python
from nginxwrap.cli import load_settings
from nginxwrap.events import global_events
from nginxwrap.loader import load_all

settings = load_settings("nginx-wrapper.toml")
load_all(True, settings)              # start the enabled plugins

events = global_events()
events.nginx_pre_start.trigger({})
# ... start NGINX yourself ...
events.nginx_exit.trigger({})
```

`Event.trigger` runs every trigger and raises an `ExceptionGroup` of the
triggers that failed. Settings can also be built directly:

```python
from nginxwrap.config import all_known_elements
from nginxwrap.settings import Settings

settings = Settings()
settings.set("nginx_binary", "/usr/sbin/nginx")
print(all_known_elements(settings, ".")["nginx_binary"])
```

`nginxwrap.templating.render_template` renders template text against a
`Settings` object, and `nginxwrap.coprocess.Coprocess.create` validates a
coprocess definition, raising `CoprocessInitError` with every problem found.

## Tests

```
pip install -e ".[test]"
pytest
```