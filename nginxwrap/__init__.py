"""Settings, lifecycle events, configuration templating and coprocesses for an NGINX wrapper."""

__version__ = "0.1.0"