import logging
import re
from pathlib import Path
from typing import Optional

from shareap.engine import cmd
from shareap.errors import InterfaceCreationError
from shareap.registry import ResourceHandle, ResourceKind, ResourceRegistry

log = logging.getLogger("shareap.engine.iface")

SYSFS_NET = Path("/sys/class/net")

_IW_CHANNEL_RE = re.compile(r"^channel\s+(\d+)(?:\s+\((\d+(?:\.\d+)?)\s+MHz\))?")
# Same line must allow both a station and an AP interface.
_STA_AP_COMBO_RE = re.compile(r"\{.*\bmanaged\b.*\bAP\b.*\}|\{.*\bAP\b.*\bmanaged\b.*\}")


def _is_missing_iface_text(text: str) -> bool:
    low = (text or "").lower()
    return "no such device" in low or "does not exist" in low or "cannot find device" in low


def iface_exists(ifname: str) -> bool:
    return cmd.run([cmd.tool("ip"), "link", "show", "dev", ifname]).ok


def delete_iface(ifname: str) -> None:
    res = cmd.run([cmd.tool("iw"), "dev", ifname, "del"])
    if res.ok or _is_missing_iface_text(res.out):
        return
    raise RuntimeError(f"iface_delete_failed iface={ifname} out={res.out}")


def iface_phy(ifname: str) -> Optional[str]:
    res = cmd.run([cmd.tool("iw"), "dev", ifname, "info"])
    if not res.ok:
        return None
    for raw in res.out.splitlines():
        line = raw.strip()
        if line.startswith("wiphy "):
            idx = line.split(" ", 1)[1].strip()
            if idx.isdigit():
                return f"phy{idx}"
    return None


def current_channel(ifname: str) -> Optional[int]:
    """Channel the radio is already tuned to (e.g. associated as a station)."""
    res = cmd.run([cmd.tool("iw"), "dev", ifname, "info"])
    if not res.ok:
        return None
    for raw in res.out.splitlines():
        m = _IW_CHANNEL_RE.match(raw.strip())
        if m:
            return int(m.group(1))
    return None


def parse_supports_sta_and_ap(phy_info: str) -> bool:
    in_combos = False
    for raw in phy_info.splitlines():
        line = raw.strip()
        if line.lower().startswith("valid interface combinations"):
            in_combos = True
            continue
        if not in_combos:
            continue
        if line.endswith(":"):
            in_combos = False
            continue
        if line.startswith("*") and _STA_AP_COMBO_RE.search(line):
            return True
    return False


def phy_supports_sta_and_ap(phy: str) -> bool:
    res = cmd.run([cmd.tool("iw"), "phy", phy, "info"])
    return res.ok and parse_supports_sta_and_ap(res.out)


def hw_address(ifname: str) -> Optional[str]:
    path = SYSFS_NET / ifname / "address"
    try:
        mac = path.read_text(errors="ignore").strip().lower()
    except OSError:
        mac = ""
    if mac:
        return mac
    res = cmd.run([cmd.tool("ip"), "-o", "link", "show", "dev", ifname])
    parts = res.out.split()
    if "link/ether" in parts:
        idx = parts.index("link/ether")
        if idx + 1 < len(parts):
            return parts[idx + 1].lower()
    return None


def create_virtual_interface(registry: ResourceRegistry, phys: str, virt: str) -> str:
    """
    Create `virt` as an AP-mode interface on the radio behind `phys` and
    register it. Any stale interface with the same name is removed first.
    """
    phy = iface_phy(phys)
    if not phy:
        raise InterfaceCreationError(f"not_a_wifi_iface iface={phys}")
    if not phy_supports_sta_and_ap(phy):
        raise InterfaceCreationError(f"ap_concurrency_unsupported phy={phy}")

    try:
        delete_iface(virt)
    except RuntimeError as exc:
        raise InterfaceCreationError(f"stale_iface_delete_failed iface={virt}", detail=str(exc)) from exc

    res = cmd.run([cmd.tool("iw"), "dev", phys, "interface", "add", virt, "type", "__ap"])
    if not res.ok:
        # Creation may have half-succeeded; make sure nothing is left behind.
        try:
            delete_iface(virt)
        except RuntimeError:
            log.warning("partial_iface_delete_failed", extra={"ifname": virt})
        raise InterfaceCreationError(f"iface_add_failed parent={phys} iface={virt}", detail=res.out)

    registry.register(
        ResourceHandle(
            kind=ResourceKind.VIRTUAL_INTERFACE,
            identity=virt,
            undo=lambda: delete_iface(virt),
            description=f"iw dev {virt} del",
        )
    )
    log.info("virtual_iface_created", extra={"ifname": virt, "identity": phy})
    return virt


def take_down(ifname: str) -> None:
    ip = cmd.tool("ip")
    down = cmd.run([ip, "link", "set", "dev", ifname, "down"])
    flush = cmd.run([ip, "addr", "flush", "dev", ifname])
    for res in (down, flush):
        if not res.ok and not _is_missing_iface_text(res.out):
            raise RuntimeError(f"iface_down_failed iface={ifname} out={res.out}")


def bring_up(registry: ResourceRegistry, ifname: str, gateway_cidr: Optional[str]) -> None:
    """
    Flush, optionally address, and raise `ifname`. With gateway_cidr None
    (bridge sharing) the bridge device owns the address instead.
    """
    ip = cmd.tool("ip")
    steps = [[ip, "link", "set", "dev", ifname, "down"], [ip, "addr", "flush", "dev", ifname]]
    if gateway_cidr:
        steps.append([ip, "addr", "add", gateway_cidr, "broadcast", "+", "dev", ifname])
    steps.append([ip, "link", "set", "dev", ifname, "up"])

    registered = False
    for step in steps:
        res = cmd.run(step)
        if not res.ok:
            raise InterfaceCreationError(f"iface_up_failed iface={ifname} step={' '.join(step[1:4])}", detail=res.out)
        if not registered:
            # From the first state change on the link needs restoring.
            registry.register(
                ResourceHandle(
                    kind=ResourceKind.LINK_STATE,
                    identity=ifname,
                    undo=lambda: take_down(ifname),
                    description=f"ip link set {ifname} down; ip addr flush dev {ifname}",
                )
            )
            registered = True
    log.info("iface_up", extra={"ifname": ifname, "identity": gateway_cidr or "unaddressed"})
