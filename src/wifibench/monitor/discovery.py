"""Association ID discovery.

While target hosts join the network, the first monitor host captures
association responses from the access point. Each association response
carries the AID the access point handed out; the AIDs are then assigned to
the monitor hosts one by one, in order.
"""

import asyncio
import logging
import re
from collections.abc import Sequence

import asyncssh

from wifibench.driver.wifi import resolve_driver, set_association_id, validate_bssid
from wifibench.errors import (
    AidCountError,
    AidParseError,
    CommandLaunchError,
    DiscoveryError,
    RemoteCommandError,
)
from wifibench.fanout import join_all
from wifibench.hosts.connection import join_network
from wifibench.hosts.models import RemoteHost, terminate_process, validate_interface_name

logger = logging.getLogger(__name__)

# Management frame, subtype 1: association response.
_ASSOC_RESPONSE_SUBTYPE = "0x0001"

# At most 16 bits, no sign, separators or second prefix.
_AID_DIGITS_RE = re.compile(r"[0-9A-Fa-f]{1,4}")


def discovery_command(interface: str, bssid: str) -> str:
    """tshark command printing the AID of every association response in ``bssid``.

    The display filter is applied while capturing, so nothing else is
    printed. A header line is always printed first.
    """
    display_filter = (
        f"wlan.fc.type_subtype == {_ASSOC_RESPONSE_SUBTYPE} && "
        f"wlan.bssid == {validate_bssid(bssid)}"
    )
    return (
        f"sudo tshark -l -T fields -E header=y "
        f"--interface {validate_interface_name(interface)} "
        f"-e wlan.fixed.aid -Y '{display_filter}'"
    )


def parse_aids(output: str) -> list[int]:
    """Parse discovery output into AIDs, in the order they were captured.

    The first line is a header. Every other non-empty line is a hexadecimal
    AID, optionally prefixed with ``0x``.
    """
    aids = []
    for line in output.splitlines()[1:]:
        value = line.strip()
        if not value:
            continue
        digits = value[2:] if value.lower().startswith("0x") else value
        if not _AID_DIGITS_RE.fullmatch(digits):
            raise AidParseError(line)
        aids.append(int(digits, 16))
    return aids


def pair_aids(aids: Sequence[int], monitors: Sequence[RemoteHost]) -> list[tuple[int, RemoteHost]]:
    """Pair AID *i* with monitor host *i*.

    Extra AIDs are dropped. Fewer AIDs than monitor hosts is an error; no
    placeholder AID is ever used.
    """
    if len(aids) < len(monitors):
        raise AidCountError(len(monitors), len(aids))
    if len(aids) > len(monitors):
        logger.warning(
            "Discovered %d AIDs for %d monitor hosts, ignoring %s",
            len(aids),
            len(monitors),
            list(aids[len(monitors) :]),
        )
    return list(zip(aids, monitors))


async def _read_lines(stream: asyncssh.SSHReader, lines: list[str]) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        lines.append(line)


async def capture_aids(
    monitor: RemoteHost,
    targets: Sequence[RemoteHost],
    ssid: str,
    bssid: str,
    interface: str,
    password: str | None = None,
    settle_delay: float = 1.0,
) -> list[int]:
    """Capture the AIDs handed out while every target joins the network.

    All targets must join successfully; otherwise no AIDs are returned.
    """
    command = discovery_command(interface, bssid)
    lines: list[str] = []
    logger.debug("Listening for AIDs on %s", monitor.id)
    try:
        async with monitor.connection.create_process(
            command, stdin=asyncssh.DEVNULL, stderr=asyncssh.DEVNULL
        ) as process:
            reader = asyncio.create_task(_read_lines(process.stdout, lines))
            try:
                joins = [
                    asyncio.create_task(join_network(target, ssid, password))
                    for target in targets
                ]
                await join_all(joins)
                logger.info("All %d targets joined %s", len(targets), ssid)

                # Give the last association responses time to come through.
                await asyncio.sleep(settle_delay)
                # tshark exited on its own, e.g. the interface is not in monitor mode.
                if process.exit_status not in (None, 0):
                    raise RemoteCommandError(
                        monitor.id, "capturing association responses", process.exit_status
                    )
            finally:
                terminate_process(monitor.id, process)
                try:
                    await asyncio.wait_for(reader, settle_delay)
                except TimeoutError:
                    logger.debug("AID capture on %s did not close, using output so far", monitor.id)
    except (OSError, asyncssh.Error) as e:
        raise CommandLaunchError(monitor.id, command) from e

    return parse_aids("".join(lines))


async def discover_and_assign(
    monitors: Sequence[RemoteHost],
    targets: Sequence[RemoteHost],
    ssid: str,
    bssid: str,
    interface: str,
    password: str | None = None,
    settle_delay: float = 1.0,
) -> list[tuple[int, RemoteHost]]:
    """Discover target AIDs and set one on each monitor host's driver."""
    if not monitors:
        raise DiscoveryError("association ID discovery requires at least one monitor host")
    # Fail on unsupported drivers before any target joins the network.
    for host in monitors:
        resolve_driver(host)

    aids = await capture_aids(
        monitors[0], targets, ssid, bssid, interface, password, settle_delay
    )
    logger.info("Discovered AIDs: %s", aids)
    if len(aids) != len(targets):
        logger.warning("Discovered %d AIDs for %d targets", len(aids), len(targets))

    assignments = pair_aids(aids, monitors)
    for aid, host in assignments:
        await set_association_id(host, aid, bssid)
        logger.info("Monitor %s follows AID %d", host.id, aid)
    return assignments
