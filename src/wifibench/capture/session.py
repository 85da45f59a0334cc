"""Remote passive captures streamed back over SSH.

Runs tshark on a remote host with its pcapng output written to stdout and
copies that stream into a local file or an in-memory buffer.
"""

import asyncio
import io
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import asyncssh

from wifibench.errors import CaptureError, CaptureOutputError
from wifibench.hosts.models import RemoteHost, terminate_process, validate_interface_name

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class Duration:
    """Stop after a number of seconds, rounded up to whole seconds."""

    seconds: float

    def __post_init__(self) -> None:
        if not self.seconds > 0:
            raise ValueError(f"capture duration must be positive, got {self.seconds!r}")


@dataclass(frozen=True)
class PacketCount:
    """Stop after a number of captured packets."""

    packets: int

    def __post_init__(self) -> None:
        if self.packets < 1:
            raise ValueError(f"packet count must be positive, got {self.packets!r}")


StopCondition = Duration | PacketCount


def autostop_expression(condition: StopCondition) -> str:
    """Translate a stop condition into a tshark ``--autostop`` argument."""
    if isinstance(condition, Duration):
        return f"duration:{math.ceil(condition.seconds)}"
    return f"packets:{condition.packets}"


@dataclass
class CaptureConfig:
    """Options for capturing on a network interface.

    ``output_path`` must not exist yet; its parent directory must.
    """

    interface: str
    stop_condition: StopCondition
    output_path: Path | None = None


@dataclass
class Capture:
    """A capture in pcapng format, stored in a file or in memory.

    The contents are not validated and may be truncated or corrupt.
    """

    file: BinaryIO | None = None
    path: Path | None = None
    buffer: bytes | None = None

    def reader(self) -> BinaryIO:
        """Return a binary stream positioned at the start of the capture."""
        if self.file is not None:
            self.file.seek(0)
            return self.file
        return io.BytesIO(self.buffer or b"")

    def read(self) -> bytes:
        return self.reader().read()

    def close(self) -> None:
        if self.file is not None:
            self.file.close()


def capture_command(config: CaptureConfig) -> str:
    interface = validate_interface_name(config.interface)
    return (
        f"tshark -F pcapng --interface {interface} "
        f"--autostop {autostop_expression(config.stop_condition)} -w -"
    )


def _open_sink(config: CaptureConfig) -> BinaryIO:
    if config.output_path is None:
        return io.BytesIO()
    try:
        # Exclusive create: never overwrite an earlier capture.
        return open(config.output_path, "x+b")
    except FileExistsError as e:
        raise CaptureOutputError(f"capture output `{config.output_path}` already exists") from e
    except OSError as e:
        raise CaptureOutputError(
            f"could not create capture output file `{config.output_path}`"
        ) from e


async def _copy_stream(stdout: asyncssh.SSHReader, sink: BinaryIO) -> int:
    total = 0
    while True:
        chunk = await stdout.read(_CHUNK_SIZE)
        if not chunk:
            return total
        sink.write(chunk)
        total += len(chunk)


async def _stream_capture(host: RemoteHost, command: str, sink: BinaryIO) -> None:
    try:
        async with host.connection.create_process(
            command, stdin=asyncssh.DEVNULL, encoding=None
        ) as process:
            try:
                copied = await _copy_stream(process.stdout, sink)
                result = await process.wait(check=False)
            except asyncio.CancelledError:
                # Stop the remote tshark too, not just the local reader.
                terminate_process(host.id, process)
                raise
            except (OSError, asyncssh.Error) as e:
                terminate_process(host.id, process)
                raise CaptureError(f"failed to write capture from `{host.id}`") from e
    except (OSError, asyncssh.Error) as e:
        raise CaptureError(f"failed to start remote capture on `{host.id}`") from e

    if result.exit_status != 0:
        logger.debug(
            "Remote capture on %s failed with status %s, stdout: %r, stderr: %r",
            host.id,
            result.exit_status,
            result.stdout,
            result.stderr,
        )
        raise CaptureError(
            f"remote capture on `{host.id}` failed with status {result.exit_status}",
            exit_status=result.exit_status,
            stdout=result.stdout or b"",
            stderr=result.stderr or b"",
        )
    logger.debug("Capture on %s finished, %d bytes", host.id, copied)


async def capture(host: RemoteHost, config: CaptureConfig) -> Capture:
    """Capture on a remote host and copy the pcapng stream back.

    The output sink is created before tshark is started, so an existing
    output file fails without any remote work. Assumes tshark is installed
    on the remote machine.
    """
    command = capture_command(config)
    sink = _open_sink(config)
    logger.info("Starting capture on %s (%s)", host.id, config.interface)
    try:
        await _stream_capture(host, command, sink)
    except BaseException:
        sink.close()
        if config.output_path is not None:
            config.output_path.unlink(missing_ok=True)
        raise

    if isinstance(sink, io.BytesIO):
        return Capture(buffer=sink.getvalue())
    sink.flush()
    return Capture(file=sink, path=config.output_path)
