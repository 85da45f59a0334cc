"""wifibench command-line entrypoint."""

import argparse
import asyncio
import logging
import time
from pathlib import Path

from wifibench.config import Settings, load_config
from wifibench.errors import ControllerError
from wifibench.hosts.registry import HostRegistry, read_hosts_config
from wifibench.package import Package, install_packages
from wifibench.scripts.iperf import Direction, IperfArgs, run_iperf

logger = logging.getLogger(__name__)


def _csv(value: str) -> list[str]:
    return [s.strip() for s in value.split(",") if s.strip()]


def _bool(value: str) -> bool:
    if value.lower() in {"true", "1", "yes"}:
        return True
    if value.lower() in {"false", "0", "no"}:
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def explain(error: BaseException) -> str:
    """Join an exception and its causes into one line."""
    parts = []
    current: BaseException | None = error
    while current is not None:
        parts.append(str(current) or type(current).__name__)
        current = current.__cause__
    return ": ".join(parts)


def build_parser(cfg: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wifibench",
        description="Controller program for Wi-Fi experiments and benchmarks.",
    )
    parser.add_argument("-L", "--log-level", default=cfg.log_level, help="logging verbosity")
    parser.add_argument(
        "-H", "--hosts-file", type=Path, default=cfg.hosts_file, help="hosts configuration file"
    )
    sub = parser.add_subparsers(dest="script", required=True)

    iperf = sub.add_parser("iperf", help="iperf3 throughput test with monitoring")
    iperf.add_argument("--server", required=True, help="host id of the access point")
    iperf.add_argument("--clients", type=_csv, default=[], help="comma-separated host ids")
    iperf.add_argument("--monitors", type=_csv, required=True, help="comma-separated host ids")
    iperf.add_argument(
        "-D", "--direction", type=Direction, choices=list(Direction), default=Direction.downlink
    )
    iperf.add_argument("-d", "--duration", type=int, default=10, help="test length in seconds")
    iperf.add_argument("-U", "--udp", type=_bool, default=True)
    iperf.add_argument(
        "-T", "--throughput", dest="total_throughput", type=int, default=0,
        help="total bits/s over all clients, 0 for unlimited",
    )
    iperf.add_argument("--mcs", help="`iw set bitrates` arguments, or `auto`")
    iperf.add_argument("-F", "--frequency", type=int, help="AP frequency in MHz")
    iperf.add_argument("-B", "--bandwidth", type=int, help="AP bandwidth in MHz")
    iperf.add_argument("--ssid", required=True)
    iperf.add_argument("--bssid", required=True)
    iperf.add_argument("--password")

    install = sub.add_parser("install", help="install a package on hosts")
    install.add_argument("--hosts", type=_csv, required=True, help="comma-separated host ids")
    install.add_argument(
        "--package", type=Package, choices=list(Package), default=Package.wireshark
    )
    return parser


async def _run_iperf(args: argparse.Namespace, registry: HostRegistry, cfg: Settings) -> None:
    out_path = cfg.results_dir / str(int(time.time()))
    iperf_args = IperfArgs(
        server=args.server,
        clients=args.clients,
        monitors=args.monitors,
        direction=args.direction,
        duration=args.duration,
        udp=args.udp,
        total_throughput=args.total_throughput,
        mcs=args.mcs,
        frequency=args.frequency,
        bandwidth=args.bandwidth,
        ssid=args.ssid,
        bssid=args.bssid,
        password=args.password,
    )
    logger.info("Writing results to %s", out_path)
    await run_iperf(iperf_args, registry, out_path, cfg)


async def _run(args: argparse.Namespace, cfg: Settings) -> None:
    hosts_config = read_hosts_config(args.hosts_file)
    registry = await HostRegistry.connect(hosts_config)
    try:
        if args.script == "install":
            await install_packages(registry.get_many(args.hosts), args.package)
        else:
            await _run_iperf(args, registry, cfg)
    finally:
        registry.close()


def main(argv: list[str] | None = None) -> int:
    cfg = load_config()
    args = build_parser(cfg).parse_args(argv)

    logging.basicConfig(level=args.log_level.upper())
    logger.debug("Debug logging is enabled")

    try:
        asyncio.run(_run(args, cfg))
    except ControllerError as e:
        logger.error("%s", explain(e), exc_info=logger.isEnabledFor(logging.DEBUG))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
