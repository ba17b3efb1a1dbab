import os
import sys
import tempfile
from pathlib import Path

# Add backend to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))

from shareap.config import DEFAULT_CONFIG, build_session_config
from shareap.engine import daemon_conf


def render(name, **options):
    print(f"--- {name} ---")
    cfg = build_session_config(options, dict(DEFAULT_CONFIG))
    bridge = "br0" if cfg.share_method == "bridge" else None
    with tempfile.TemporaryDirectory(prefix="shareap-render.") as tmp:
        hostapd = daemon_conf.write_hostapd_conf(Path(tmp) / daemon_conf.HOSTAPD_CONF, cfg, bridge=bridge)
        print(f"# {hostapd.name}")
        print(hostapd.read_text())
        if cfg.gateway:
            dnsmasq = daemon_conf.write_dnsmasq_conf(Path(tmp) / daemon_conf.DNSMASQ_CONF, cfg)
            print(f"# {dnsmasq.name}")
            print(dnsmasq.read_text())
        else:
            print("# dnsmasq not used (bridge hands out addresses upstream)\n")
    print("------------------------------------------------\n")


if __name__ == "__main__":
    # Usage: render_configs.py [wifi-iface [internet-iface]]
    wifi = sys.argv[1] if len(sys.argv) > 1 else "wlan0"
    inet = sys.argv[2] if len(sys.argv) > 2 else "eth0"

    render("NAT_WPA2", wifi_iface=wifi, internet_iface=inet, ssid="Test", passphrase="password", wpa_version="2")
    render("Open_no_sharing", wifi_iface=wifi, ssid="Open", share_method="none", hidden=True)
    render(
        "Bridge_5GHz",
        wifi_iface=wifi,
        internet_iface=inet,
        ssid="Test5",
        passphrase="password",
        share_method="bridge",
        freq_band="5",
        channel=36,
        country="US",
    )
