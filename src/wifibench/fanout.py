"""Concurrent fan-out/fan-in helpers for remote commands.

``run_all`` runs one command per host concurrently and returns every result,
or fails as a whole. ``join_all`` is the underlying combinator: it gathers
tasks in completion order and, on the first failure, cancels the remainder.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import asyncssh

from wifibench.errors import RemoteTimeoutError
from wifibench.hosts.models import RemoteHost

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def join_all(tasks: Iterable[asyncio.Task[T]]) -> list[T]:
    """Wait for all tasks and return their results in completion order.

    If any task raises, every other task is cancelled and the exception is
    re-raised once the cancelled tasks have finished unwinding, so remote
    channels are closed before the caller sees the error.
    """
    tasks = list(tasks)
    results: list[T] = []
    try:
        for next_done in asyncio.as_completed(tasks):
            results.append(await next_done)
    except BaseException:
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        raise
    return results


async def run_all(
    hosts: Iterable[RemoteHost],
    build_command: Callable[[RemoteHost], str],
) -> list[tuple[RemoteHost, asyncssh.SSHCompletedProcess]]:
    """Run a command on every host concurrently.

    ``build_command`` is called exactly once per host before anything is
    started. Results come back in completion order. A non-zero exit status is
    part of the result; only a failure to launch or await a command fails the
    whole call.
    """

    async def _run(
        host: RemoteHost, command: str
    ) -> tuple[RemoteHost, asyncssh.SSHCompletedProcess]:
        return host, await host.run(command)

    commands = [(host, build_command(host)) for host in hosts]
    tasks = [asyncio.create_task(_run(host, command)) for host, command in commands]
    return await join_all(tasks)


async def race_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    on_timeout: Callable[[], Awaitable[object]],
    what: str = "remote task",
) -> T:
    """Wait for ``awaitable`` for at most ``timeout`` seconds.

    On timeout the awaitable is cancelled, ``on_timeout`` is awaited (to kill
    the remote side) and RemoteTimeoutError is raised.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError:
        logger.warning("%s did not finish within %gs, killing", what, timeout)
        await on_timeout()
        raise RemoteTimeoutError(what, timeout) from None
