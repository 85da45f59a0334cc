"""Wireless driver capabilities.

Monitor radios that do not track full 802.11 state need to be told which
association ID (AID) to decode. How that is done depends on the driver.
"""

import enum
import logging
import re
import shlex

from wifibench.errors import RemoteCommandError, UnsupportedDriverError
from wifibench.hosts.models import RemoteHost

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


class WifiDriver(enum.StrEnum):
    iwlwifi = "iwlwifi"


# The AID is written as a hexadecimal number.
_SET_AID_COMMANDS: dict[WifiDriver, str] = {
    WifiDriver.iwlwifi: (
        "echo {aid:x} {bssid} > /sys/kernel/debug/iwlwifi/*/iwlmvm/he_sniffer_params"
    ),
}


def validate_bssid(bssid: str) -> str:
    """Validate a BSSID (colon-separated MAC address) to prevent command injection."""
    if not _MAC_RE.match(bssid):
        raise ValueError(f"Invalid BSSID: {bssid!r}")
    return bssid


def resolve_driver(host: RemoteHost) -> WifiDriver:
    try:
        return WifiDriver(host.wifi_driver)
    except ValueError:
        raise UnsupportedDriverError(host.wifi_driver, host.id) from None


def set_association_id_command(driver: WifiDriver, aid: int, bssid: str) -> str:
    inner = _SET_AID_COMMANDS[driver].format(aid=aid, bssid=validate_bssid(bssid))
    return f"sudo sh -c {shlex.quote(inner)}"


async def set_association_id(host: RemoteHost, aid: int, bssid: str) -> None:
    """Make the host's monitor radio decode frames for ``aid`` in ``bssid``."""
    driver = resolve_driver(host)
    logger.debug("Changing association ID on %s to %d (%s)", host.id, aid, driver)
    result = await host.run(set_association_id_command(driver, aid, bssid))
    if result.exit_status != 0:
        raise RemoteCommandError(
            host.id,
            "changing AID",
            result.exit_status,
            result.stdout or b"",
            result.stderr or b"",
        )
