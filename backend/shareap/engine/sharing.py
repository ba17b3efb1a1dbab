import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Type

from shareap.engine import cmd
from shareap.errors import NoAvailableBridgeError, RuleInsertionError, SharingSetupError
from shareap.registry import ResourceHandle, ResourceKind, UnwindReport

if TYPE_CHECKING:
    from shareap.session import Session

log = logging.getLogger("shareap.engine.sharing")

PROC_SYS = Path("/proc/sys")
IP_FORWARD_KEY = "net.ipv4.ip_forward"

BRIDGE_PREFIX = "br"
BRIDGE_SCAN_MAX = 100


def _sysctl_path(key: str) -> Path:
    return PROC_SYS / Path(key.replace(".", "/"))


def read_sysctl(key: str) -> str:
    return _sysctl_path(key).read_text(errors="ignore").strip()


def write_sysctl(key: str, value: str) -> None:
    _sysctl_path(key).write_text(str(value).strip() + "\n")


def _is_missing_rule_text(text: str) -> bool:
    low = (text or "").lower()
    return "does a matching rule exist" in low or "bad rule" in low or "no chain/target/match" in low


def iptables_insert(rule: List[str]) -> None:
    """`rule` is [table args..., chain, match...]; inserted at the head of chain."""
    ins = list(rule)
    idx = 2 if ins[:1] == ["-t"] else 0
    ins.insert(idx, "-I")
    res = cmd.run([cmd.tool("iptables"), "-w"] + ins)
    if not res.ok:
        raise RuleInsertionError(f"iptables_insert_failed rule={' '.join(rule)}", detail=res.out)


def iptables_delete(rule: List[str]) -> None:
    dele = list(rule)
    idx = 2 if dele[:1] == ["-t"] else 0
    dele.insert(idx, "-D")
    res = cmd.run([cmd.tool("iptables"), "-w"] + dele)
    if res.ok or _is_missing_rule_text(res.out):
        return
    raise RuntimeError(f"iptables_delete_failed rule={' '.join(rule)} out={res.out}")


def list_bridges() -> List[str]:
    res = cmd.run([cmd.tool("ip"), "-o", "link", "show", "type", "bridge"])
    if not res.ok:
        raise SharingSetupError("bridge_list_failed", detail=res.out)
    names: List[str] = []
    for raw in res.out.splitlines():
        parts = raw.split(":", 2)
        if len(parts) < 2:
            continue
        name = parts[1].strip().split("@", 1)[0]
        if name:
            names.append(name)
    return names


def select_bridge_name(existing: List[str], limit: int = BRIDGE_SCAN_MAX) -> str:
    taken = set(existing)
    for i in range(limit):
        cand = f"{BRIDGE_PREFIX}{i}"
        if cand not in taken:
            return cand
    raise NoAvailableBridgeError(f"no_available_bridge scanned={BRIDGE_PREFIX}0..{BRIDGE_PREFIX}{limit - 1}")


def delete_bridge(name: str) -> None:
    ip = cmd.tool("ip")
    cmd.run([ip, "link", "set", "dev", name, "down"])
    res = cmd.run([ip, "link", "delete", name, "type", "bridge"])
    low = res.out.lower()
    if res.ok or "cannot find device" in low or "does not exist" in low:
        return
    raise RuntimeError(f"bridge_delete_failed bridge={name} out={res.out}")


class SharingStrategy:
    """
    How AP traffic reaches the internet interface.

    enable() registers one handle per acquired resource with the session's
    registry as soon as it exists; disable() releases exactly those handles,
    newest first.
    """

    method = ""
    # Whether the session runs its own DHCP/DNS server on the AP interface.
    serves_dhcp = True
    # Whether the AP interface itself carries the gateway address.
    addresses_ap_iface = True
    # Whether the session needs a DHCP lease from the upstream network.
    needs_lease = False

    def __init__(self) -> None:
        self.handles: List[ResourceHandle] = []

    def _register(self, session: "Session", handle: ResourceHandle) -> ResourceHandle:
        self.handles.append(session.registry.register(handle))
        return handle

    def enable(self, session: "Session") -> List[ResourceHandle]:
        raise NotImplementedError

    def disable(self, session: "Session") -> UnwindReport:
        return session.registry.release(self.handles)

    def hostapd_bridge(self) -> Optional[str]:
        return None


class NoSharing(SharingStrategy):
    method = "none"

    def enable(self, session: "Session") -> List[ResourceHandle]:
        log.info("sharing_disabled", extra={"ifname": session.config.virt_iface})
        return []


class NatSharing(SharingStrategy):
    method = "nat"

    def __init__(self) -> None:
        super().__init__()
        self.saved_forwarding: Optional[str] = None

    def rules(self, session: "Session") -> List[List[str]]:
        cfg = session.config
        return [
            ["-t", "nat", "POSTROUTING", "-o", str(cfg.internet_iface), "-j", "MASQUERADE"],
            ["FORWARD", "-i", cfg.virt_iface, "-s", str(cfg.subnet), "-j", "ACCEPT"],
        ]

    def enable(self, session: "Session") -> List[ResourceHandle]:
        try:
            saved = read_sysctl(IP_FORWARD_KEY)
        except OSError as exc:
            raise SharingSetupError("ip_forward_read_failed", detail=str(exc)) from exc
        self.saved_forwarding = saved
        session.saved_forwarding = saved

        for rule in self.rules(session):
            iptables_insert(rule)
            self._register(
                session,
                ResourceHandle(
                    kind=ResourceKind.NAT_RULE,
                    identity=" ".join(rule),
                    undo=lambda r=rule: iptables_delete(r),
                    description="iptables -D " + " ".join(rule),
                ),
            )
            log.info("nat_rule_inserted", extra={"identity": " ".join(rule)})

        try:
            write_sysctl(IP_FORWARD_KEY, "1")
        except OSError as exc:
            raise SharingSetupError("ip_forward_write_failed", detail=str(exc)) from exc
        self._register(
            session,
            ResourceHandle(
                kind=ResourceKind.FORWARDING_SYSCTL,
                identity=IP_FORWARD_KEY,
                undo=lambda: write_sysctl(IP_FORWARD_KEY, saved),
                description=f"{IP_FORWARD_KEY}={saved}",
            ),
        )
        log.info("ip_forward_enabled", extra={"identity": f"saved={saved}"})
        return list(self.handles)


class BridgeSharing(SharingStrategy):
    method = "bridge"
    serves_dhcp = False
    addresses_ap_iface = False
    needs_lease = True

    def __init__(self) -> None:
        super().__init__()
        self.bridge: Optional[str] = None

    def hostapd_bridge(self) -> Optional[str]:
        return self.bridge

    def enable(self, session: "Session") -> List[ResourceHandle]:
        cfg = session.config
        ip = cmd.tool("ip")

        # Nothing is acquired until a free name is known.
        name = select_bridge_name(list_bridges())

        res = cmd.run([ip, "link", "add", "name", name, "type", "bridge"])
        if not res.ok:
            raise SharingSetupError(f"bridge_create_failed bridge={name}", detail=res.out)
        self.bridge = name
        session.bridge = name
        self._register(
            session,
            ResourceHandle(
                kind=ResourceKind.BRIDGE_DEVICE,
                identity=name,
                undo=lambda: delete_bridge(name),
                description=f"ip link set {name} down; ip link delete {name}",
            ),
        )
        log.info("bridge_created", extra={"ifname": name})

        for step in (
            [ip, "link", "set", "dev", str(cfg.internet_iface), "master", name],
            [ip, "link", "set", "dev", name, "up"],
        ):
            res = cmd.run(step)
            if not res.ok:
                raise SharingSetupError(f"bridge_setup_failed bridge={name} step={' '.join(step[1:])}", detail=res.out)

        lease = session.supervisor.acquire_lease(name, session.binaries.get("dhclient"))
        if lease.handle is not None:
            self.handles.append(lease.handle)
        log.info("bridge_lease_acquired", extra={"ifname": name, "pid": lease.pid})
        return list(self.handles)


_STRATEGIES: Dict[str, Type[SharingStrategy]] = {
    "none": NoSharing,
    "nat": NatSharing,
    "bridge": BridgeSharing,
}


def select_strategy(method: str) -> SharingStrategy:
    try:
        return _STRATEGIES[method]()
    except KeyError:
        raise SharingSetupError(f"unknown_share_method:{method}") from None
