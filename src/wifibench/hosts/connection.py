"""SSH session setup and remote host utilities.

Connects to a host through an optional chain of relay hosts, detects its
operating system and exposes small helpers that run well-known commands.
"""

import logging
import shlex

import asyncssh

from wifibench.errors import HostConnectError, RemoteCommandError
from wifibench.hosts.models import HostConfig, HostOs, RemoteHost

logger = logging.getLogger(__name__)


def parse_destination(url: str) -> tuple[str, str | None, int | None]:
    """Split ``[ssh://][user@]host[:port]`` into (host, username, port)."""
    if url.startswith("ssh://"):
        url = url[len("ssh://") :]
    username = None
    if "@" in url:
        username, url = url.rsplit("@", 1)
    host, sep, port = url.rpartition(":")
    if sep and port.isdigit():
        return host, username or None, int(port)
    return url, username or None, None


async def detect_os(host_id: str, conn: asyncssh.SSHClientConnection) -> HostOs:
    """Read the release info of the remote machine and detect its OS."""
    result = await conn.run("cat /etc/*-release", check=False)
    os_info = HostOs.from_release_info(result.stdout or "")
    logger.debug("Detected OS on %s: %s", host_id, os_info)
    return os_info


async def connect_host(config: HostConfig) -> RemoteHost:
    """Open an SSH session to a configured host and gather its metadata."""
    host, username, port = parse_destination(config.url)
    options: dict[str, object] = {
        # Host keys are not checked.
        "known_hosts": None,
    }
    if username:
        options["username"] = username
    if port:
        options["port"] = port
    if config.relays:
        options["tunnel"] = ",".join(config.relays)

    try:
        conn = await asyncssh.connect(host, **options)
    except (OSError, asyncssh.Error) as e:
        logger.error("Could not connect to %s (%s): %s", config.id, config.url, e)
        raise HostConnectError(config.id) from e
    logger.debug("Opened ssh session to %s", config.id)

    try:
        os_info = await detect_os(config.id, conn)
    except (OSError, asyncssh.Error) as e:
        conn.close()
        raise HostConnectError(config.id) from e

    return RemoteHost(
        id=config.id,
        connection=conn,
        os=os_info,
        wifi_driver=config.wifi_driver,
        interface=config.interface,
        monitor_excluded=config.monitor_excluded,
    )


async def join_network(host: RemoteHost, ssid: str, password: str | None = None) -> None:
    """Connect the host's wireless interface to a network."""
    command = f"sudo nmcli device wifi connect {shlex.quote(ssid)}"
    if password is not None:
        command += f" password {shlex.quote(password)}"

    result = await host.run(command)
    if result.exit_status != 0:
        logger.error("%s failed to connect to Wi-Fi network %s", host.id, ssid)
        raise RemoteCommandError(
            host.id,
            "connecting to Wi-Fi network",
            result.exit_status,
            result.stdout or b"",
            result.stderr or b"",
        )
    logger.info("%s joined %s", host.id, ssid)
