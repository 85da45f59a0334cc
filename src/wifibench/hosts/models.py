"""Host configuration and connected host models."""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import asyncssh
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wifibench.errors import CommandLaunchError, DuplicateHostError

logger = logging.getLogger(__name__)

HostId = str

_VALID_INTERFACE_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")


def validate_interface_name(name: str) -> str:
    """Validate a network interface name to prevent command injection."""
    if not name or len(name) > 15:
        raise ValueError(f"Invalid interface name: {name!r}")
    if not _VALID_INTERFACE_RE.match(name):
        raise ValueError(f"Interface name contains invalid characters: {name!r}")
    return name


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class HostConfig(BaseModel):
    """Configuration for a single host in the hosts file."""

    model_config = ConfigDict(alias_generator=_kebab, populate_by_name=True, frozen=True)

    # Identifier used in experiments; can differ from the hostname.
    id: HostId
    # SSH destination. With relays set, it must be reachable from the last relay.
    url: str
    # Jump hosts, first entry is connected to first.
    relays: list[str] = []
    wifi_driver: str | None = None
    # Name of the main wireless (measurement) interface.
    interface: str | None = None
    # Never pick this host as a monitoring target.
    monitor_excluded: bool = False

    @field_validator("interface")
    @classmethod
    def check_interface(cls, v: str | None) -> str | None:
        return validate_interface_name(v) if v is not None else None


class HostsConfig(BaseModel):
    """All hosts used in the setup."""

    model_config = ConfigDict(populate_by_name=True)

    hosts: list[HostConfig] = Field(default_factory=list, alias="host")

    def validate_ids(self) -> None:
        """Raise DuplicateHostError for the first repeated host id."""
        seen: set[str] = set()
        for host in self.hosts:
            if host.id in seen:
                raise DuplicateHostError(host.id)
            seen.add(host.id)


class OsKind(enum.StrEnum):
    nixos = "nixos"
    ubuntu = "ubuntu"
    other = "other"


_DISTRIB_IDS = {
    "nixos": OsKind.nixos,
    "Ubuntu": OsKind.ubuntu,
}


@dataclass(frozen=True)
class HostOs:
    """Operating system of a host. ``raw`` keeps the unrecognised DISTRIB_ID."""

    kind: OsKind
    raw: str = ""

    @classmethod
    def from_distrib_id(cls, distrib_id: str) -> "HostOs":
        kind = _DISTRIB_IDS.get(distrib_id)
        if kind is None:
            return cls(OsKind.other, distrib_id)
        return cls(kind)

    @classmethod
    def from_release_info(cls, text: str) -> "HostOs":
        """Parse ``/etc/*-release`` contents, looking for ``DISTRIB_ID=<id>``."""
        for line in text.split("\n"):
            key, sep, value = line.partition("=")
            if sep and key.strip().lower() == "distrib_id":
                return cls.from_distrib_id(value.strip().strip('"'))
        return cls(OsKind.other)

    def is_other(self) -> bool:
        return self.kind is OsKind.other

    def __str__(self) -> str:
        if self.kind is OsKind.nixos:
            return "NixOS"
        if self.kind is OsKind.ubuntu:
            return "Ubuntu"
        return f"Other OS ({self.raw})" if self.raw else "Other OS"


@dataclass(frozen=True, eq=False)
class RemoteHost:
    """A connected remote host on which commands can be run.

    Immutable after connecting; the SSH connection multiplexes concurrent
    commands, so a host can be shared freely between tasks.
    """

    id: HostId
    connection: Any  # asyncssh.SSHClientConnection
    os: HostOs = field(default_factory=lambda: HostOs(OsKind.other))
    wifi_driver: str | None = None
    interface: str | None = None
    monitor_excluded: bool = False

    async def run(self, command: str) -> asyncssh.SSHCompletedProcess:
        """Run a shell command and collect its exit status and output as bytes.

        A non-zero exit status is returned, not raised.
        """
        logger.debug("Running on %s: %s", self.id, command)
        try:
            async with self.connection.create_process(
                command, stdin=asyncssh.DEVNULL, encoding=None
            ) as process:
                return await process.wait(check=False)
        except (OSError, asyncssh.Error) as e:
            logger.error("Running command on %s failed: %s", self.id, e)
            raise CommandLaunchError(self.id, command) from e

    def close(self) -> None:
        self.connection.close()


def terminate_process(host_id: str, process: asyncssh.SSHClientProcess) -> None:
    """Send SIGTERM to a remote process that may already have exited."""
    try:
        process.terminate()
    except OSError:
        logger.debug("Remote process on %s already closed", host_id)
