import os
from pathlib import Path
from typing import List, Optional

from shareap.config import SessionConfig

HOSTAPD_CONF = "hostapd.conf"
DNSMASQ_CONF = "dnsmasq.conf"
HOSTAPD_CTRL_DIR = "hostapd_ctrl"

_WPA_BITS = {"1": 1, "2": 2, "1+2": 3}


def hostapd_lines(cfg: SessionConfig, *, ctrl_dir: str, bridge: Optional[str] = None) -> List[str]:
    lines = [
        f"interface={cfg.virt_iface}",
        f"driver={cfg.driver}",
        f"ctrl_interface={ctrl_dir}",
        "ctrl_interface_group=0",
        f"ssid={cfg.ssid}",
        "beacon_int=100",
        f"hw_mode={'a' if cfg.freq_band == '5' else 'g'}",
        f"channel={int(cfg.channel)}",
        f"ignore_broadcast_ssid={1 if cfg.hidden else 0}",
    ]

    if cfg.country:
        lines += [f"country_code={cfg.country}", "ieee80211d=1"]

    if cfg.isolate_clients:
        lines.append("ap_isolate=1")

    if bridge:
        lines.append(f"bridge={bridge}")

    # No passphrase: open network, no security section at all.
    if cfg.passphrase:
        lines += [
            f"wpa={_WPA_BITS[cfg.wpa_version]}",
            f"wpa_passphrase={cfg.passphrase}",
            "wpa_key_mgmt=WPA-PSK",
            "wpa_pairwise=TKIP CCMP",
            "rsn_pairwise=CCMP",
        ]
    return lines


def write_hostapd_conf(path: Path, cfg: SessionConfig, *, bridge: Optional[str] = None) -> Path:
    ctrl_dir = path.parent / HOSTAPD_CTRL_DIR
    lines = hostapd_lines(cfg, ctrl_dir=str(ctrl_dir), bridge=bridge)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    # Holds the passphrase.
    os.chmod(path, 0o600)
    return path


def dnsmasq_lines(cfg: SessionConfig) -> List[str]:
    if not cfg.gateway or not cfg.dhcp_range:
        raise RuntimeError("dnsmasq_requires_gateway")
    start, end = cfg.dhcp_range
    lines = [
        f"interface={cfg.virt_iface}",
        "bind-interfaces",
        "except-interface=lo",
        "dhcp-authoritative",
        f"dhcp-range={start},{end},255.255.255.0,24h",
        f"dhcp-option=option:router,{cfg.gateway}",
        f"dhcp-option=option:dns-server,{cfg.gateway}",
        "domain-needed",
        "bogus-priv",
        "log-facility=-",
    ]
    if not cfg.use_etc_hosts:
        lines.append("no-hosts")
    return lines


def write_dnsmasq_conf(path: Path, cfg: SessionConfig) -> Path:
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(dnsmasq_lines(cfg)) + "\n")
    return path


def write_pid_file(path: Path, pid: int) -> None:
    path.write_text(f"{pid}\n", encoding="utf-8")


def read_pid_file(path: Path) -> Optional[int]:
    if not path.exists():
        return None
    try:
        raw = path.read_text(errors="ignore").strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        return int(raw.split()[0])
    except ValueError:
        return None


def pid_files(conf_dir: Path) -> List[Path]:
    if not conf_dir.is_dir():
        return []
    return sorted(p for p in conf_dir.glob("*.pid") if p.is_file())


def pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    return Path(f"/proc/{pid}").exists()
