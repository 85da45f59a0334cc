"""iperf3 throughput experiment with wireless monitoring.

Runs one iperf3 server per client on the access point, one iperf3 client on
every client host, and captures the wireless traffic on the monitor hosts
while the test runs.
"""

import asyncio
import enum
import logging
import shlex
from pathlib import Path

import asyncssh
from pydantic import BaseModel

from wifibench.config import Settings
from wifibench.driver.wifi import validate_bssid
from wifibench.errors import CommandLaunchError, ConfigurationError, RemoteCommandError
from wifibench.fanout import join_all, race_timeout, run_all
from wifibench.hosts.models import RemoteHost, validate_interface_name
from wifibench.hosts.registry import HostRegistry
from wifibench.monitor.monitor import Monitor, MonitorConfig

logger = logging.getLogger(__name__)

# Extra capture time so the monitor sees the whole test.
CAPTURE_LEEWAY = 4

_READY_MARKER = b"Server listening"


class Direction(enum.StrEnum):
    uplink = "uplink"
    downlink = "downlink"
    bidir = "bidir"


_DIRECTION_FLAGS = {
    Direction.uplink: "",
    Direction.downlink: "-R",
    Direction.bidir: "--bidir",
}


class IperfArgs(BaseModel):
    # Host id of the access point running the iperf servers.
    server: str
    # Host ids running iperf clients. Empty: every host that is not the
    # server, not a monitor and not excluded from monitoring.
    clients: list[str] = []
    monitors: list[str]
    direction: Direction = Direction.downlink
    duration: int = 10
    udp: bool = True
    # Total throughput in bits/s, divided equally over the clients. 0 is unlimited.
    total_throughput: int = 0
    # `iw dev <if> set bitrates` arguments, e.g. "he-mcs-5 1:11"; "auto" resets.
    mcs: str | None = None
    mcs_interface: str = "phy1-ap0"
    frequency: int | None = None
    bandwidth: int | None = None
    ssid: str
    bssid: str
    password: str | None = None
    base_port: int = 5000


def _check(host: RemoteHost, what: str, result: asyncssh.SSHCompletedProcess) -> None:
    if result.exit_status != 0:
        logger.debug("%s failed on %s: %r %r", what, host.id, result.stdout, result.stderr)
        raise RemoteCommandError(
            host.id, what, result.exit_status, result.stdout or b"", result.stderr or b""
        )


def resolve_clients(args: IperfArgs, registry: HostRegistry) -> list[RemoteHost]:
    if args.clients:
        return registry.get_many(args.clients)
    excluded = [args.server, *args.monitors]
    return [host for host in registry.all_except(excluded) if not host.monitor_excluded]


async def server_ip(host: RemoteHost, interface: str) -> str:
    """IPv4 address of ``interface`` on the host."""
    result = await host.run(
        f"ip -4 a show {shlex.quote(interface)} | awk '/inet/ {{print $2}}' | cut -d/ -f1"
    )
    _check(host, "getting IP address of server", result)
    ip = (result.stdout or b"").decode().strip()
    if not ip:
        raise RemoteCommandError(host.id, "getting IP address of server (empty output)", 0)
    return ip.splitlines()[0]


def client_command(
    args: IperfArgs, host: RemoteHost, ip: str, port: int, client_count: int
) -> str:
    bind = f"--bind-dev {host.interface}" if host.interface else ""
    bitrate = args.total_throughput // client_count
    parts = [
        f"iperf3 -c {ip} -p {port}",
        bind,
        f"-b {bitrate}",
        "-u" if args.udp else "",
        _DIRECTION_FLAGS[args.direction],
    ]
    return " ".join(p for p in parts if p)


async def run_server(
    host: RemoteHost, command: str, ready: asyncio.Future[None]
) -> asyncssh.SSHCompletedProcess:
    """Run one iperf3 server, resolving ``ready`` once it is listening.

    If the server cannot be started, or exits before it listens, ``ready``
    fails with the corresponding error.
    """
    try:
        async with host.connection.create_process(
            command, stdin=asyncssh.DEVNULL, encoding=None
        ) as process:
            while not ready.done():
                line = await process.stdout.readline()
                if not line:
                    break
                if _READY_MARKER in line:
                    ready.set_result(None)
            result = await process.wait(check=False)
        if not ready.done():
            ready.set_exception(
                RemoteCommandError(
                    host.id,
                    "starting iperf3 server",
                    result.exit_status,
                    result.stdout or b"",
                    result.stderr or b"",
                )
            )
    except (OSError, asyncssh.Error) as e:
        error = CommandLaunchError(host.id, command)
        if not ready.done():
            ready.set_exception(error)
        raise error from e
    finally:
        if not ready.done():
            ready.cancel()
    return result


async def _kill_servers(host: RemoteHost) -> None:
    await host.run("killall iperf3")


def _write_new(path: Path, data: bytes) -> None:
    with open(path, "xb") as f:
        f.write(data)


async def run_iperf(
    args: IperfArgs, registry: HostRegistry, out_path: Path, settings: Settings
) -> None:
    clients = resolve_clients(args, registry)
    if not clients:
        raise ConfigurationError("no iperf client hosts")
    access_point = registry.get(args.server)
    if access_point is None:
        raise ConfigurationError(f"access point id `{args.server}` not found")
    if access_point.interface is None:
        raise ConfigurationError("access point should have a wireless interface configured")
    try:
        validate_bssid(args.bssid)
        validate_interface_name(args.mcs_interface)
    except ValueError as e:
        raise ConfigurationError(str(e)) from None

    ip = await server_ip(access_point, access_point.interface)
    logger.debug("Found server ip: %s", ip)

    out_path.mkdir(parents=True, exist_ok=True)
    # Keep the arguments next to the results.
    (out_path / "arguments.json").write_text(args.model_dump_json(indent=2), encoding="utf-8")

    if args.mcs is not None:
        logger.debug("Setting MCS")
        mcs = "" if args.mcs.lower() == "auto" else args.mcs
        result = await access_point.run(f"iw dev {args.mcs_interface} set bitrates {mcs}")
        _check(access_point, "setting MCS", result)

    monitor = await Monitor.start(
        MonitorConfig(
            ssid=args.ssid,
            bssid=args.bssid,
            monitors=args.monitors,
            targets=[host.id for host in clients],
            duration=args.duration + CAPTURE_LEEWAY,
            output_dir=out_path,
            discover_associations=True,
            password=args.password,
            frequency=args.frequency,
            bandwidth=args.bandwidth,
            interface=settings.monitor_interface,
            settle_delay=settings.discovery_settle_delay,
        ),
        registry,
    )

    loop = asyncio.get_running_loop()
    servers: list[asyncio.Task[asyncssh.SSHCompletedProcess]] = []
    try:
        logger.info("Starting iperf servers")
        ports = {host.id: args.base_port + n for n, host in enumerate(clients, start=1)}
        ready: list[asyncio.Future[None]] = []
        for port in ports.values():
            future = loop.create_future()
            # The banner is only flushed to a pipe with --forceflush.
            command = (
                f"iperf3 -s --bind-dev {access_point.interface} -p {port} -1 --forceflush"
            )
            servers.append(asyncio.create_task(run_server(access_point, command, future)))
            ready.append(future)
        await race_timeout(
            asyncio.gather(*ready),
            settings.server_ready_timeout,
            lambda: _kill_servers(access_point),
            what="iperf servers startup",
        )

        logger.info("Starting iperf clients")
        results = await run_all(
            clients,
            lambda h: client_command(args, h, ip, ports[h.id], len(clients)),
        )

        for host, result in results:
            if result.exit_status != 0:
                logger.error("Iperf failed on %s", host.id)
            _write_new(out_path / f"{host.id}.txt", result.stdout or b"")
            if result.stderr:
                _write_new(out_path / f"{host.id}.stderr.txt", result.stderr)

        logger.info("Waiting for capture to finish")
        for capture in (await monitor.wait()).values():
            capture.close()
    except BaseException:
        monitor.abort()
        for task in servers:
            task.cancel()
        await asyncio.gather(*servers, return_exceptions=True)
        raise

    logger.debug("Waiting for AP to finish")
    await race_timeout(
        join_all(servers),
        settings.server_exit_timeout,
        lambda: _kill_servers(access_point),
        what="AP iperf servers",
    )
