[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nginxwrap"
version = "0.1.0"
description = "Configuration templating, coprocess management and lifecycle events for an NGINX process wrapper"
requires-python = ">=3.11"
keywords = ["nginx", "process-wrapper", "templating", "coprocess", "configuration"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "jinja2",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
nginxwrap = "nginxwrap.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["nginxwrap"]

[tool.pytest.ini_options]
addopts = "-ra"
