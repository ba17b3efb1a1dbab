import pytest

from conftest import IW_PHY_INFO, IW_PHY_INFO_NO_CONCURRENCY
from shareap.engine import iface
from shareap.errors import InterfaceCreationError
from shareap.registry import ResourceKind, ResourceRegistry


def test_combination_parsing():
    assert iface.parse_supports_sta_and_ap(IW_PHY_INFO) is True
    assert iface.parse_supports_sta_and_ap(IW_PHY_INFO_NO_CONCURRENCY) is False
    # AP listed as a supported mode but not in any combination with managed.
    assert iface.parse_supports_sta_and_ap("Supported interface modes:\n\t * managed\n\t * AP\n") is False


def test_create_registers_interface(fake_system):
    reg = ResourceRegistry()
    iface.create_virtual_interface(reg, "wlan0", "wlan0ap")

    assert "wlan0ap" in fake_system.links
    assert fake_system.ran("iw dev wlan0 interface add wlan0ap type __ap")
    assert [(h.kind, h.identity) for h in reg.handles()] == [(ResourceKind.VIRTUAL_INTERFACE, "wlan0ap")]

    reg.unwind_all()
    assert "wlan0ap" not in fake_system.links


def test_create_removes_stale_interface_first(fake_system):
    fake_system.links.add("wlan0ap")
    reg = ResourceRegistry()
    iface.create_virtual_interface(reg, "wlan0", "wlan0ap")

    cmds = [" ".join(c) for c in fake_system.calls]
    assert cmds.index("iw dev wlan0ap del") < cmds.index("iw dev wlan0 interface add wlan0ap type __ap")


def test_create_failure_leaves_nothing_registered(fake_system):
    fake_system.fail_on("interface add", rc=161, out="command failed: Device or resource busy (-16)")
    reg = ResourceRegistry()

    with pytest.raises(InterfaceCreationError) as exc:
        iface.create_virtual_interface(reg, "wlan0", "wlan0ap")

    assert "iface_add_failed" in str(exc.value)
    assert "Device or resource busy" in str(exc.value)
    assert len(reg) == 0
    assert len(fake_system.ran("iw dev wlan0ap del")) == 2


def test_create_refuses_radio_without_concurrency(fake_system):
    fake_system.phy_info = IW_PHY_INFO_NO_CONCURRENCY
    reg = ResourceRegistry()

    with pytest.raises(InterfaceCreationError) as exc:
        iface.create_virtual_interface(reg, "wlan0", "wlan0ap")

    assert "ap_concurrency_unsupported" in str(exc.value)
    assert not fake_system.ran("interface add")


def test_create_refuses_non_wireless_parent(fake_system):
    with pytest.raises(InterfaceCreationError):
        iface.create_virtual_interface(ResourceRegistry(), "eth9", "eth9ap")


def test_bring_up_addresses_and_registers_link_state(fake_system):
    reg = ResourceRegistry()
    iface.bring_up(reg, "wlan0ap", "192.168.12.1/24")

    assert fake_system.ran("ip addr add 192.168.12.1/24 broadcast + dev wlan0ap")
    assert fake_system.calls[-1] == ["ip", "link", "set", "dev", "wlan0ap", "up"]
    assert [h.kind for h in reg.handles()] == [ResourceKind.LINK_STATE]

    reg.unwind_all()
    assert fake_system.calls[-2:] == [
        ["ip", "link", "set", "dev", "wlan0ap", "down"],
        ["ip", "addr", "flush", "dev", "wlan0ap"],
    ]


def test_bring_up_without_address_for_bridge(fake_system):
    iface.bring_up(ResourceRegistry(), "wlan0ap", None)
    assert not fake_system.ran("addr add")


def test_bring_up_failure_still_registers_link_state(fake_system):
    fake_system.fail_on("ip addr add", out="RTNETLINK answers: File exists")
    reg = ResourceRegistry()

    with pytest.raises(InterfaceCreationError):
        iface.bring_up(reg, "wlan0ap", "192.168.12.1/24")

    assert [h.kind for h in reg.handles()] == [ResourceKind.LINK_STATE]


def test_current_channel_and_phy(fake_system):
    assert iface.current_channel("wlan0") is None
    fake_system.channel = 6
    assert iface.current_channel("wlan0") == 6
    assert iface.iface_phy("wlan0") == "phy0"
    assert iface.iface_phy("nope0") is None


def test_hw_address_falls_back_to_ip_link(fake_system, tmp_path):
    assert iface.hw_address("wlan0ap") == "02:00:00:aa:bb:cc"

    sysfs = tmp_path / "sys_class_net" / "wlan0ap"
    sysfs.mkdir(parents=True)
    (sysfs / "address").write_text("02:11:22:33:44:55\n")
    assert iface.hw_address("wlan0ap") == "02:11:22:33:44:55"


def test_delete_tolerates_missing(fake_system):
    iface.delete_iface("wlan0ap")
    fake_system.fail_on("iw dev wlan0ap del", rc=1, out="command failed: Operation not permitted (-1)")
    with pytest.raises(RuntimeError):
        iface.delete_iface("wlan0ap")
