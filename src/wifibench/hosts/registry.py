"""Registry of connected hosts and hosts file loading."""

import asyncio
import logging
import tomllib
from collections.abc import Iterable, Iterator
from pathlib import Path

from pydantic import ValidationError

from wifibench.errors import ConfigurationError, DuplicateHostError, UnknownHostError
from wifibench.fanout import join_all
from wifibench.hosts.connection import connect_host
from wifibench.hosts.models import HostId, HostsConfig, RemoteHost

logger = logging.getLogger(__name__)


def read_hosts_config(path: Path) -> HostsConfig:
    """Read and validate a TOML hosts file."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"unable to read hosts file `{path}`") from e

    try:
        config = HostsConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid hosts file `{path}`: {e}") from e
    config.validate_ids()
    return config


class HostRegistry:
    """Immutable mapping of host id to connected host."""

    def __init__(self, hosts: Iterable[RemoteHost]) -> None:
        self._hosts: dict[HostId, RemoteHost] = {}
        for host in hosts:
            if host.id in self._hosts:
                raise DuplicateHostError(host.id)
            self._hosts[host.id] = host

    @classmethod
    async def connect(cls, config: HostsConfig) -> "HostRegistry":
        """Concurrently connect to every configured host.

        Fails as a whole if any single connection fails; the remaining
        connection attempts are cancelled and no partial registry is returned.
        """
        config.validate_ids()

        tasks = [asyncio.create_task(connect_host(host)) for host in config.hosts]
        try:
            hosts = await join_all(tasks)
        except BaseException:
            # Close sessions that were opened before the failure.
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is None:
                    task.result().close()
            raise

        for host in hosts:
            logger.info("Successfully connected to host %s (%s)", host.id, host.os)
        return cls(hosts)

    def get(self, host_id: HostId) -> RemoteHost | None:
        return self._hosts.get(host_id)

    def get_many(self, host_ids: Iterable[HostId]) -> list[RemoteHost]:
        """Resolve host ids in order, failing on the first unknown id."""
        host_ids = list(host_ids)
        for host_id in host_ids:
            if host_id not in self._hosts:
                raise UnknownHostError(host_id)
        return [self._hosts[host_id] for host_id in host_ids]

    def all_except(self, excluded_ids: Iterable[HostId]) -> Iterator[RemoteHost]:
        """Iterate over all hosts not in ``excluded_ids``. Unknown ids are ignored."""
        excluded = set(excluded_ids)
        return (host for host_id, host in self._hosts.items() if host_id not in excluded)

    def close(self) -> None:
        for host in self._hosts.values():
            host.close()

    def __iter__(self) -> Iterator[RemoteHost]:
        return iter(self._hosts.values())

    def __len__(self) -> int:
        return len(self._hosts)

    def __contains__(self, host_id: object) -> bool:
        return host_id in self._hosts
