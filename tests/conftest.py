"""Shared test fixtures and fake SSH transport."""

import asyncio
from collections.abc import Callable
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from wifibench.hosts.models import HostOs, OsKind, RemoteHost
from wifibench.hosts.registry import HostRegistry


class FakeStream:
    """Stand-in for an asyncssh reader, fed from fixed data.

    With ``block=True`` the stream never reaches EOF, like a process that
    keeps running until it is killed.
    """

    def __init__(self, data: bytes | str = b"", chunk_size: int = 4, block: bool = False) -> None:
        self._data = data
        self._pos = 0
        self._chunk_size = chunk_size
        self._block = block

    async def _eof(self) -> bytes | str:
        if self._block:
            await asyncio.Event().wait()
        return self._data[:0]

    async def read(self, n: int = -1) -> bytes | str:
        if self._pos >= len(self._data):
            return await self._eof()
        size = self._chunk_size if n < 0 else min(n, self._chunk_size)
        chunk = self._data[self._pos : self._pos + size]
        self._pos += len(chunk)
        return chunk

    def remaining(self) -> bytes | str:
        rest = self._data[self._pos :]
        self._pos = len(self._data)
        return rest

    async def readline(self) -> bytes | str:
        if self._pos >= len(self._data):
            return await self._eof()
        sep = "\n" if isinstance(self._data, str) else b"\n"
        end = self._data.find(sep, self._pos)
        end = len(self._data) if end == -1 else end + 1
        line = self._data[self._pos : end]
        self._pos = end
        return line


class FakeProcess:
    """Stand-in for an asyncssh SSHClientProcess used as a context manager."""

    def __init__(
        self,
        stdout: bytes | str = b"",
        exit_status: int | None = 0,
        stderr: bytes = b"",
        block: bool = False,
    ) -> None:
        self.stdout = FakeStream(stdout, block=block)
        self.exit_status = exit_status
        self.stderr = stderr
        self.terminated = False
        self.closed = False

    async def __aenter__(self) -> "FakeProcess":
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        self.closed = True
        return False

    async def wait(self, check: bool = False) -> SimpleNamespace:
        rest = self.stdout.remaining()
        return SimpleNamespace(exit_status=self.exit_status, stdout=rest, stderr=self.stderr)

    def terminate(self) -> None:
        self.terminated = True


Responder = Callable[[str], FakeProcess]


def make_host(
    host_id: str,
    responder: Responder | None = None,
    **kwargs: object,
) -> RemoteHost:
    """Build a RemoteHost whose connection answers commands via ``responder``.

    Every command is recorded in ``host.connection.commands``.
    """
    conn = MagicMock()
    conn.commands = []

    def _create_process(command: str, **_: object) -> FakeProcess:
        conn.commands.append(command)
        return responder(command) if responder else FakeProcess()

    conn.create_process = MagicMock(side_effect=_create_process)
    kwargs.setdefault("os", HostOs(OsKind.ubuntu))
    return RemoteHost(id=host_id, connection=conn, **kwargs)  # type: ignore[arg-type]


@pytest.fixture
def registry() -> HostRegistry:
    """Three idle hosts: an access point, a monitor and a station."""
    return HostRegistry(
        [
            make_host("ap", interface="phy1-ap0"),
            make_host("mon1", wifi_driver="iwlwifi"),
            make_host("sta1", interface="wlp2s0"),
        ]
    )
