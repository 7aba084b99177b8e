"""Generation of a unique identifier for the running host."""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import subprocess
import sys
from collections.abc import Callable, Iterable
from pathlib import Path

import psutil

_log = logging.getLogger("nginxwrap.host-id")

MACHINE_ID_PATHS: tuple[str, ...] = ("/etc/machine-id", "/var/lib/dbus/machine-id")

_ZERO_MAC = "00:00:00:00:00:00"


def _windows_machine_guid() -> str:
    import winreg

    with winreg.OpenKey(
        winreg.HKEY_LOCAL_MACHINE,
        r"SOFTWARE\Microsoft\Cryptography",
        0,
        winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
    ) as key:
        value, _ = winreg.QueryValueEx(key, "MachineGuid")
    return str(value).strip()


def _darwin_platform_uuid() -> str:
    result = subprocess.run(
        ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
        capture_output=True,
        text=True,
        check=True,
    )
    match = re.search(r'"IOPlatformUUID"\s*=\s*"([^"]+)"', result.stdout)
    if not match:
        raise OSError("IOPlatformUUID not found in ioreg output")
    return match.group(1)


def machine_id_from_os() -> str:
    """Read the machine id the operating system keeps."""
    for path in MACHINE_ID_PATHS:
        try:
            text = Path(path).read_text().strip()
        except OSError:
            continue
        if text:
            return text
    try:
        if sys.platform == "win32":
            return _windows_machine_guid()
        if sys.platform == "darwin":
            return _darwin_platform_uuid()
    except (OSError, subprocess.SubprocessError) as exc:
        raise OSError(f"unable to read the machine id: {exc}") from exc
    raise OSError("unable to read a machine id from the operating system")


def machine_id_from_mac_addresses() -> str:
    """Hash the MAC addresses of every network interface into a host id."""
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as exc:
        raise OSError("unable to list network interfaces") from exc

    if not interfaces:
        raise OSError("unable to generate a machine id because there are no mac addresses available")

    digest = hashlib.md5(usedforsecurity=False)
    for addresses in interfaces.values():
        for address in addresses:
            if address.family != psutil.AF_LINK:
                continue
            mac = address.address.replace("-", ":").lower()
            if mac and mac != _ZERO_MAC:
                digest.update(mac.encode())
    return digest.hexdigest()


def random_machine_id() -> str:
    """A purely random 128-bit host id as hex."""
    return secrets.token_hex(16)


DEFAULT_HOST_ID_GENERATORS: tuple[Callable[[], str], ...] = (
    machine_id_from_os,
    machine_id_from_mac_addresses,
    random_machine_id,
)


def host_id(generators: Iterable[Callable[[], str]] = DEFAULT_HOST_ID_GENERATORS) -> str:
    """Return the first non-blank id produced by the generators, or ""."""
    for generator in generators:
        try:
            machine_id = generator()
        except Exception as exc:
            _log.warning("%s", exc)
            continue
        if machine_id:
            return machine_id
        _log.warning("host id generator returned a blank id")

    # The host id is not critical, so a blank one is acceptable.
    _log.error("unable to generate a host id")
    return ""