"""Coordinated passive monitoring on a set of monitor hosts.

A monitoring run optionally discovers the association IDs of the target
hosts first, then starts one capture per monitor host. The captures run in
the background until ``wait()`` collects them or ``abort()`` cancels them.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path

from wifibench.capture.session import Capture, CaptureConfig, Duration, capture
from wifibench.driver.wifi import resolve_driver, validate_bssid
from wifibench.errors import ConfigurationError, ControllerError, RemoteCommandError
from wifibench.fanout import join_all, run_all
from wifibench.hosts.models import HostId, RemoteHost, validate_interface_name
from wifibench.hosts.registry import HostRegistry
from wifibench.monitor.discovery import discover_and_assign

logger = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    # The network to monitor.
    ssid: str
    bssid: str
    # Hosts that perform the monitoring, in AID assignment order.
    monitors: list[HostId]
    # Hosts to monitor.
    targets: list[HostId]
    duration: float  # seconds
    # Captures are written to <output_dir>/<host id>.pcapng, or kept in memory.
    output_dir: Path | None = None
    # Gather the association IDs of the targets and assign each one to a
    # different monitor host. Requires a driver that supports setting the AID.
    discover_associations: bool = False
    password: str | None = None
    # Monitor radio channel in MHz; only applied when both are set.
    frequency: int | None = None
    bandwidth: int | None = None
    interface: str = "mon0"
    settle_delay: float = 1.0


class MonitorState(enum.StrEnum):
    configured = "configured"
    discovering = "discovering"
    capturing = "capturing"
    completed = "completed"
    aborted = "aborted"


@dataclass
class Monitor:
    """A running monitoring session, one capture task per monitor host."""

    config: MonitorConfig
    state: MonitorState = MonitorState.configured
    _captures: dict[HostId, asyncio.Task[Capture]] = field(
        default_factory=dict, init=False, repr=False
    )

    @classmethod
    async def start(cls, config: MonitorConfig, registry: HostRegistry) -> "Monitor":
        """Start monitoring and return as soon as all captures are launched.

        Host ids, the interface name, the BSSID and the monitor drivers are
        all checked before anything happens remotely. A failed association ID
        discovery fails the start; no capture is attempted.
        """
        monitor_hosts = registry.get_many(config.monitors)
        target_hosts = registry.get_many(config.targets)
        try:
            validate_interface_name(config.interface)
            stop_condition = Duration(config.duration)
            if config.discover_associations:
                validate_bssid(config.bssid)
        except ValueError as e:
            raise ConfigurationError(str(e)) from None
        if config.discover_associations:
            for host in monitor_hosts:
                resolve_driver(host)

        if config.output_dir is not None:
            try:
                config.output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ControllerError(f"could not create output path `{config.output_dir}`") from e

        monitor = cls(config)
        await monitor._tune(monitor_hosts)

        if config.discover_associations:
            monitor.state = MonitorState.discovering
            await discover_and_assign(
                monitor_hosts,
                target_hosts,
                config.ssid,
                config.bssid,
                config.interface,
                password=config.password,
                settle_delay=config.settle_delay,
            )

        monitor._launch(monitor_hosts, stop_condition)
        return monitor

    async def _tune(self, hosts: list[RemoteHost]) -> None:
        """Set the monitor interface of every host to the configured channel."""
        cfg = self.config
        if cfg.frequency is None or cfg.bandwidth is None:
            return

        command = f"sudo iw dev {cfg.interface} set freq {cfg.frequency} {cfg.bandwidth}MHz"
        for host, result in await run_all(hosts, lambda _: command):
            if result.exit_status != 0:
                raise RemoteCommandError(
                    host.id,
                    "setting monitor frequency",
                    result.exit_status,
                    result.stdout or b"",
                    result.stderr or b"",
                )
        logger.debug("Monitors tuned to %d MHz (%d MHz wide)", cfg.frequency, cfg.bandwidth)

    def _launch(self, hosts: list[RemoteHost], stop_condition: Duration) -> None:
        logger.info("Starting monitor with %d monitor hosts", len(hosts))
        for host in hosts:
            output_path = None
            if self.config.output_dir is not None:
                output_path = self.config.output_dir / f"{host.id}.pcapng"
            capture_config = CaptureConfig(
                interface=self.config.interface,
                stop_condition=stop_condition,
                output_path=output_path,
            )
            self._captures[host.id] = asyncio.create_task(capture(host, capture_config))
        self.state = MonitorState.capturing

    async def wait(self) -> dict[HostId, Capture]:
        """Wait for every capture to finish.

        If any capture fails, the whole wait fails and the captures that did
        succeed are discarded.
        """
        if self.state is MonitorState.aborted:
            raise ControllerError("monitor was aborted")

        async def _labelled(host_id: HostId, task: asyncio.Task[Capture]) -> tuple[HostId, Capture]:
            return host_id, await task

        labelled = [
            asyncio.create_task(_labelled(host_id, task))
            for host_id, task in self._captures.items()
        ]
        try:
            results = await join_all(labelled)
        except BaseException:
            self.abort()
            raise

        self.state = MonitorState.completed
        logger.info("Monitor complete")
        return dict(results)

    def abort(self) -> None:
        """Cancel every capture immediately, throwing away the results.

        Does nothing once the monitor has completed.
        """
        if self.state is MonitorState.completed:
            return
        for task in self._captures.values():
            task.cancel()
        self._discard_finished()
        self.state = MonitorState.aborted
        logger.info("Monitor aborted")

    def _discard_finished(self) -> None:
        for task in self._captures.values():
            if task.done() and not task.cancelled() and task.exception() is None:
                task.result().close()
