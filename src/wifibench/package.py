"""Package installation on remote hosts."""

import asyncio
import enum
import logging
from collections.abc import Sequence

from wifibench.errors import ControllerError, RemoteCommandError
from wifibench.fanout import join_all
from wifibench.hosts.models import HostOs, OsKind, RemoteHost

logger = logging.getLogger(__name__)


class Package(enum.StrEnum):
    wireshark = "wireshark"


_PACKAGE_NAMES: dict[Package, dict[OsKind, str]] = {
    Package.wireshark: {
        OsKind.ubuntu: "wireshark",
        OsKind.nixos: "wireshark",
    },
}


def package_name(package: Package, os: HostOs) -> str | None:
    """Name of a package in the OS's package manager, None if unavailable."""
    return _PACKAGE_NAMES[package].get(os.kind)


async def install_package(host: RemoteHost, package: Package) -> None:
    """Install a package on the host if it is not yet installed."""
    name = package_name(package, host.os)
    if name is None:
        raise ControllerError(f"package {package} is not available for {host.os} on {host.id}")
    if host.os.kind is not OsKind.ubuntu:
        raise ControllerError(f"installing packages on {host.os} ({host.id}) is not supported")

    result = await host.run(f"sudo apt-get --quiet install {name} -y")
    logger.debug("Package installation output on %s: %r", host.id, result.stdout)
    if result.exit_status != 0:
        raise RemoteCommandError(
            host.id,
            f"installing {name}",
            result.exit_status,
            result.stdout or b"",
            result.stderr or b"",
        )
    logger.info("Installed %s on %s", name, host.id)


async def install_packages(hosts: Sequence[RemoteHost], package: Package) -> None:
    """Install a package on several hosts at once; any failure fails the call.

    Unsupported operating systems are rejected before anything is installed.
    """
    for host in hosts:
        if package_name(package, host.os) is None or host.os.kind is not OsKind.ubuntu:
            raise ControllerError(f"cannot install {package} on {host.id} ({host.os})")
    tasks = [asyncio.create_task(install_package(host, package)) for host in hosts]
    await join_all(tasks)
