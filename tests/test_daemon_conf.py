import stat

import pytest

from shareap import config
from shareap.engine import daemon_conf

from conftest import read_kv


def _cfg(**kw):
    opts = {"wifi_iface": "wlan0", "internet_iface": "eth0", "ssid": "TestNet", "passphrase": "12345678"}
    opts.update(kw)
    return config.build_session_config(opts, dict(config.DEFAULT_CONFIG))


def test_nat_scenario_dnsmasq_serves_whole_subnet(tmp_path):
    path = daemon_conf.write_dnsmasq_conf(tmp_path / daemon_conf.DNSMASQ_CONF, _cfg())
    kv = path.read_text().splitlines()

    assert "interface=wlan0ap" in kv
    assert "dhcp-range=192.168.12.1,192.168.12.254,255.255.255.0,24h" in kv
    assert "dhcp-option=option:router,192.168.12.1" in kv
    assert "no-hosts" in kv


def test_dnsmasq_etc_hosts_toggle():
    assert "no-hosts" not in daemon_conf.dnsmasq_lines(_cfg(use_etc_hosts=True))


def test_dnsmasq_refuses_bridge_config():
    with pytest.raises(RuntimeError):
        daemon_conf.dnsmasq_lines(_cfg(share_method="bridge"))


def test_hostapd_wpa_block(tmp_path):
    path = daemon_conf.write_hostapd_conf(tmp_path / daemon_conf.HOSTAPD_CONF, _cfg())
    kv = read_kv(path)

    assert kv["interface"] == "wlan0ap"
    assert kv["driver"] == "nl80211"
    assert kv["ssid"] == "TestNet"
    assert kv["hw_mode"] == "g"
    assert kv["channel"] == "1"
    assert kv["wpa"] == "3"
    assert kv["wpa_passphrase"] == "12345678"
    assert kv["ctrl_interface"] == str(tmp_path / daemon_conf.HOSTAPD_CTRL_DIR)
    assert kv["ignore_broadcast_ssid"] == "0"
    assert "bridge" not in kv
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_hostapd_open_network_has_no_security_lines():
    lines = daemon_conf.hostapd_lines(_cfg(passphrase=None), ctrl_dir="/tmp/ctrl")
    assert not [l for l in lines if l.startswith(("wpa", "rsn_"))]


def test_hostapd_optional_settings():
    cfg = _cfg(
        wpa_version="2",
        hidden=True,
        country="us",
        freq_band="5",
        channel=36,
        isolate_clients=True,
        share_method="bridge",
    )
    lines = daemon_conf.hostapd_lines(cfg, ctrl_dir="/tmp/ctrl", bridge="br0")
    assert "wpa=2" in lines
    assert "ignore_broadcast_ssid=1" in lines
    assert "country_code=US" in lines
    assert "ieee80211d=1" in lines
    assert "hw_mode=a" in lines
    assert "channel=36" in lines
    assert "ap_isolate=1" in lines
    assert "bridge=br0" in lines


def test_pid_file_helpers(tmp_path):
    daemon_conf.write_pid_file(tmp_path / "dnsmasq.pid", 4242)
    (tmp_path / "garbage.pid").write_text("not-a-pid")
    (tmp_path / "hostapd.conf").write_text("x")

    files = daemon_conf.pid_files(tmp_path)
    assert [p.name for p in files] == ["dnsmasq.pid", "garbage.pid"]
    assert daemon_conf.read_pid_file(tmp_path / "dnsmasq.pid") == 4242
    assert daemon_conf.read_pid_file(tmp_path / "garbage.pid") is None
    assert daemon_conf.read_pid_file(tmp_path / "missing.pid") is None
    assert daemon_conf.pid_files(tmp_path / "gone") == []
