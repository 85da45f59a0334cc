"""Exception hierarchy for testbed orchestration."""


class ControllerError(Exception):
    """Base exception for all orchestration errors."""


class ConfigurationError(ControllerError):
    """Raised when the hosts configuration or a host reference is invalid."""


class DuplicateHostError(ConfigurationError):
    def __init__(self, host_id: str) -> None:
        super().__init__(f"duplicate host id: `{host_id}`")
        self.host_id = host_id


class UnknownHostError(ConfigurationError):
    def __init__(self, host_id: str) -> None:
        super().__init__(f"no host with id `{host_id}`")
        self.host_id = host_id


class HostConnectError(ControllerError):
    """Raised when an SSH session to a host could not be opened."""

    def __init__(self, host_id: str) -> None:
        super().__init__(f"error while opening session to `{host_id}`")
        self.host_id = host_id


class CommandLaunchError(ControllerError):
    """Raised when a remote command could not be started or awaited.

    A command that starts and then exits non-zero is not a launch error.
    """

    def __init__(self, host_id: str, command: str) -> None:
        super().__init__(f"failed to run command on `{host_id}`: {command}")
        self.host_id = host_id
        self.command = command


class RemoteCommandError(ControllerError):
    """Raised when a command that is required to succeed exits non-zero."""

    def __init__(
        self,
        host_id: str,
        what: str,
        exit_status: int | None,
        stdout: bytes = b"",
        stderr: bytes = b"",
    ) -> None:
        super().__init__(f"{what} on `{host_id}` exited with status {exit_status}")
        self.host_id = host_id
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class CaptureError(ControllerError):
    """Raised when a remote capture fails."""

    def __init__(
        self,
        message: str,
        exit_status: int | None = None,
        stdout: bytes = b"",
        stderr: bytes = b"",
    ) -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class CaptureOutputError(CaptureError):
    """Raised when the capture output file cannot be created."""


class DiscoveryError(ControllerError):
    """Raised when association ID discovery fails."""


class AidParseError(DiscoveryError):
    def __init__(self, line: str) -> None:
        super().__init__(f"could not parse association ID from {line!r}")
        self.line = line


class AidCountError(DiscoveryError):
    def __init__(self, expected: int, found: int) -> None:
        super().__init__(f"expected at least {expected} association IDs, got {found}")
        self.expected = expected
        self.found = found


class UnsupportedDriverError(DiscoveryError):
    def __init__(self, driver: str | None, host_id: str) -> None:
        super().__init__(
            f"cannot set association ID for unsupported driver ({driver or 'unknown'}) "
            f"on host {host_id}"
        )
        self.driver = driver
        self.host_id = host_id


class RemoteTimeoutError(ControllerError):
    def __init__(self, what: str, timeout: float) -> None:
        super().__init__(f"{what} did not finish within {timeout:g}s")
        self.timeout = timeout
