"""Tests for association ID discovery and driver control."""

import pytest

from wifibench.driver.wifi import set_association_id, set_association_id_command, WifiDriver
from wifibench.errors import (
    AidCountError,
    AidParseError,
    DiscoveryError,
    RemoteCommandError,
    UnsupportedDriverError,
)
from wifibench.monitor.discovery import (
    capture_aids,
    discover_and_assign,
    discovery_command,
    pair_aids,
    parse_aids,
)

from conftest import FakeProcess, make_host

BSSID = "10:7c:61:df:7a:d2"


def _aid_output(*aids: str) -> str:
    return "wlan.fixed.aid\n" + "".join(f"{aid}\n" for aid in aids)


def _monitor(host_id: str, aid_output: str = "", driver: str | None = "iwlwifi"):
    def _respond(cmd: str) -> FakeProcess:
        if "wlan.fixed.aid" in cmd:
            return FakeProcess(aid_output)
        return FakeProcess()

    return make_host(host_id, _respond, wifi_driver=driver)


class TestParseAids:
    def test_skips_header(self):
        assert parse_aids(_aid_output("0x0001", "0x0002")) == [1, 2]

    def test_prefix_is_optional(self):
        assert parse_aids(_aid_output("0x000a", "1f", "0X0003")) == [10, 31, 3]

    def test_header_only(self):
        assert parse_aids("wlan.fixed.aid\n") == []

    def test_empty_output(self):
        assert parse_aids("") == []

    def test_invalid_line(self):
        with pytest.raises(AidParseError) as exc_info:
            parse_aids(_aid_output("0x0001", "garbage"))
        assert exc_info.value.line == "garbage"

    def test_out_of_range(self):
        with pytest.raises(AidParseError):
            parse_aids(_aid_output("0x10000"))

    def test_negative(self):
        with pytest.raises(AidParseError):
            parse_aids(_aid_output("-1"))

    @pytest.mark.parametrize("line", ["0x0x1", "1_0", "+1", "0x", " 0x 1"])
    def test_rejects_loose_hex(self, line):
        with pytest.raises(AidParseError):
            parse_aids(_aid_output(line))


class TestPairAids:
    @pytest.mark.parametrize("n_aids,n_monitors", [(1, 1), (3, 2), (4, 1)])
    def test_pairs_by_position(self, n_aids, n_monitors):
        aids = list(range(1, n_aids + 1))
        monitors = [make_host(f"mon{i}") for i in range(n_monitors)]

        pairs = pair_aids(aids, monitors)

        assert len(pairs) == min(n_aids, n_monitors)
        assert [(aid, host.id) for aid, host in pairs] == [
            (i + 1, f"mon{i}") for i in range(n_monitors)
        ]

    def test_fewer_aids_than_monitors(self):
        monitors = [make_host("mon0"), make_host("mon1")]
        with pytest.raises(AidCountError) as exc_info:
            pair_aids([7], monitors)
        assert exc_info.value.expected == 2
        assert exc_info.value.found == 1

    def test_no_aids(self):
        with pytest.raises(AidCountError):
            pair_aids([], [make_host("mon0")])


class TestDriver:
    def test_iwlwifi_command(self):
        assert set_association_id_command(WifiDriver.iwlwifi, 26, BSSID) == (
            "sudo sh -c 'echo 1a 10:7c:61:df:7a:d2 > "
            "/sys/kernel/debug/iwlwifi/*/iwlmvm/he_sniffer_params'"
        )

    def test_rejects_bad_bssid(self):
        with pytest.raises(ValueError):
            set_association_id_command(WifiDriver.iwlwifi, 1, "10:7c; reboot")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("driver", [None, "ath9k"])
    async def test_unsupported_driver(self, driver):
        host = make_host("mon1", wifi_driver=driver)
        with pytest.raises(UnsupportedDriverError) as exc_info:
            await set_association_id(host, 1, BSSID)
        assert exc_info.value.host_id == "mon1"
        assert (driver or "unknown") in str(exc_info.value)
        host.connection.create_process.assert_not_called()

    @pytest.mark.asyncio
    async def test_command_failure(self):
        host = make_host("mon1", lambda cmd: FakeProcess(exit_status=1), wifi_driver="iwlwifi")
        with pytest.raises(RemoteCommandError):
            await set_association_id(host, 1, BSSID)


class TestCaptureAids:
    def test_discovery_command(self):
        assert discovery_command("mon0", BSSID) == (
            "sudo tshark -l -T fields -E header=y --interface mon0 -e wlan.fixed.aid "
            "-Y 'wlan.fc.type_subtype == 0x0001 && wlan.bssid == 10:7c:61:df:7a:d2'"
        )

    @pytest.mark.asyncio
    async def test_targets_join_while_capturing(self):
        monitor = _monitor("mon1", _aid_output("0x0001", "0x0002"))
        targets = [make_host("sta1"), make_host("sta2")]

        aids = await capture_aids(monitor, targets, "OpenWrt", BSSID, "mon0", settle_delay=0.01)

        assert aids == [1, 2]
        for target in targets:
            assert target.connection.commands == ["sudo nmcli device wifi connect OpenWrt"]

    @pytest.mark.asyncio
    async def test_failed_join_fails_discovery(self):
        monitor = _monitor("mon1", _aid_output("0x0001"))
        targets = [make_host("sta1"), make_host("sta2", lambda cmd: FakeProcess(exit_status=4))]

        with pytest.raises(RemoteCommandError) as exc_info:
            await capture_aids(monitor, targets, "OpenWrt", BSSID, "mon0", settle_delay=0.01)
        assert exc_info.value.host_id == "sta2"

    @pytest.mark.asyncio
    async def test_capture_that_died_is_reported(self):
        def _respond(cmd: str) -> FakeProcess:
            return FakeProcess("wlan.fixed.aid\n", exit_status=2)

        monitor = make_host("mon1", _respond, wifi_driver="iwlwifi")

        with pytest.raises(RemoteCommandError) as exc_info:
            await capture_aids(
                monitor, [make_host("sta1")], "OpenWrt", BSSID, "mon0", settle_delay=0.01
            )
        assert exc_info.value.host_id == "mon1"
        assert exc_info.value.exit_status == 2


class TestDiscoverAndAssign:
    @pytest.mark.asyncio
    async def test_assigns_aids_in_monitor_order(self):
        mon1 = _monitor("mon1", _aid_output("0x0003", "0x0005"))
        mon2 = _monitor("mon2")
        targets = [make_host("sta1"), make_host("sta2")]

        pairs = await discover_and_assign(
            [mon1, mon2], targets, "OpenWrt", BSSID, "mon0", settle_delay=0.01
        )

        assert [(aid, host.id) for aid, host in pairs] == [(3, "mon1"), (5, "mon2")]
        assert "echo 3 10:7c:61:df:7a:d2" in mon1.connection.commands[-1]
        assert "echo 5 10:7c:61:df:7a:d2" in mon2.connection.commands[-1]

    @pytest.mark.asyncio
    async def test_requires_a_monitor(self):
        with pytest.raises(DiscoveryError):
            await discover_and_assign([], [make_host("sta1")], "OpenWrt", BSSID, "mon0")

    @pytest.mark.asyncio
    async def test_shortfall_is_an_error_not_a_placeholder(self):
        mon1 = _monitor("mon1", _aid_output("0x0001"))
        mon2 = _monitor("mon2")

        with pytest.raises(AidCountError):
            await discover_and_assign(
                [mon1, mon2], [make_host("sta1")], "OpenWrt", BSSID, "mon0", settle_delay=0.01
            )

        # No monitor had its AID changed.
        assert not any("he_sniffer_params" in c for c in mon1.connection.commands)
        assert mon2.connection.commands == []

    @pytest.mark.asyncio
    async def test_unsupported_driver_fails_before_joining(self):
        mon1 = _monitor("mon1", _aid_output("0x0001"), driver="mt76")
        target = make_host("sta1")

        with pytest.raises(UnsupportedDriverError):
            await discover_and_assign([mon1], [target], "OpenWrt", BSSID, "mon0")
        assert target.connection.commands == []
        assert mon1.connection.commands == []
