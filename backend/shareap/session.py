import enum
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from shareap import state
from shareap.config import SessionConfig
from shareap.engine import cmd, daemon_conf, iface, nm_unmanaged
from shareap.engine.nm_unmanaged import UnmanagedPatch
from shareap.engine.sharing import SharingStrategy, select_strategy
from shareap.engine.supervisor import CLEAN_EXIT_CODES, Supervisor
from shareap.errors import (
    ConfigValidationError,
    ServiceStartError,
    SessionStateError,
    ShareapError,
    UnexpectedDaemonExit,
)
from shareap.registry import ResourceHandle, ResourceKind, ResourceRegistry

if TYPE_CHECKING:
    from shareap.teardown import TeardownCoordinator

log = logging.getLogger("shareap.session")


class Phase(str, enum.Enum):
    CREATED = "created"
    INTERFACE_READY = "interface_ready"
    SHARING_READY = "sharing_ready"
    SERVING = "serving"
    TEARING_DOWN = "tearing_down"
    TERMINATED = "terminated"


_FORWARD: Dict[Phase, Phase] = {
    Phase.CREATED: Phase.INTERFACE_READY,
    Phase.INTERFACE_READY: Phase.SHARING_READY,
    Phase.SHARING_READY: Phase.SERVING,
    Phase.TEARING_DOWN: Phase.TERMINATED,
}


def resolve_channel(cfg: SessionConfig) -> SessionConfig:
    """
    A radio already tuned to a channel (e.g. associated as a station) can
    only host the AP on that same channel; the request follows the radio.
    """
    current = iface.current_channel(cfg.wifi_iface)
    if current is None or current == cfg.channel:
        return cfg
    log.info(
        "channel_overridden requested=%d radio=%d",
        cfg.channel,
        current,
        extra={"ifname": cfg.wifi_iface},
    )
    return cfg.with_channel(current)


class Session:
    """
    Everything one AP session acquires, plus the state the teardown path
    needs. One instance per invocation.
    """

    def __init__(self, config: SessionConfig, *, scratch_root: Optional[Path] = None):
        self.config = config
        self.registry = ResourceRegistry()
        self.phase = Phase.CREATED
        self.strategy: SharingStrategy = select_strategy(config.share_method)
        self.scratch_root = Path(scratch_root) if scratch_root else state.scratch_root()
        self.scratch_dir: Optional[Path] = None
        self.supervisor: Optional[Supervisor] = None
        self.unmanaged: Optional[UnmanagedPatch] = None
        self.saved_forwarding: Optional[str] = None
        self.bridge: Optional[str] = None
        # Set once interface creation was attempted, even if it never got registered.
        self.virt_attempted = False
        self.exit_code: Optional[int] = None
        self.binaries: Dict[str, str] = {}

    # -- lifecycle ---------------------------------------------------------

    def advance(self, target: Phase) -> None:
        if target == Phase.TEARING_DOWN:
            if self.phase in (Phase.TEARING_DOWN, Phase.TERMINATED):
                raise SessionStateError(f"{self.phase.value}->{target.value}")
        elif _FORWARD.get(self.phase) != target:
            raise SessionStateError(f"{self.phase.value}->{target.value}")
        self.phase = target
        log.info("phase", extra={"phase": target.value})
        if self.scratch_dir is not None:
            state.update_record(self.scratch_dir, phase=target.value)

    # -- acquisition -------------------------------------------------------

    def preflight(self) -> None:
        """Checks that need no resources; failures here exit without cleanup."""
        if os.geteuid() != 0:
            raise ShareapError("must_run_as_root")
        needed = {"hostapd": "HOSTAPD"}
        if self.strategy.serves_dhcp:
            needed["dnsmasq"] = "DNSMASQ"
        if self.strategy.needs_lease:
            needed["dhclient"] = "DHCLIENT"
        for name, env_key in needed.items():
            path = cmd.resolve_binary(name, env_key)
            if not path:
                raise ServiceStartError(f"{name}_not_found")
            self.binaries[name] = path
        if not iface.iface_exists(self.config.wifi_iface):
            raise ConfigValidationError(f"iface_not_found:{self.config.wifi_iface}")
        inet = self.config.internet_iface
        if inet and not iface.iface_exists(inet):
            raise ConfigValidationError(f"iface_not_found:{inet}")

    def create_scratch_dir(self) -> Path:
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"shareap.{self.config.wifi_iface}.conf.", dir=str(self.scratch_root)))
        os.chmod(path, 0o700)
        self.scratch_dir = path
        self.registry.register(
            ResourceHandle(
                kind=ResourceKind.SCRATCH_DIRECTORY,
                identity=str(path),
                undo=lambda: shutil.rmtree(path, ignore_errors=True),
                description=f"rm -rf {path}",
            )
        )
        self.supervisor = Supervisor(self.registry, path)
        cfg = self.config
        state.update_record(
            path,
            pid=os.getpid(),
            phase=self.phase.value,
            wifi_iface=cfg.wifi_iface,
            virt_iface=cfg.virt_iface,
            internet_iface=cfg.internet_iface,
            share_method=cfg.share_method,
            started_ts=int(time.time()),
        )
        return path

    def setup_interface(self) -> None:
        cfg = self.config
        self.virt_attempted = True
        iface.create_virtual_interface(self.registry, cfg.wifi_iface, cfg.virt_iface)
        mac = iface.hw_address(cfg.virt_iface)
        self.unmanaged = nm_unmanaged.register_as_unmanaged(self.registry, cfg.virt_iface, mac)
        gateway_cidr = cfg.gateway_cidr if self.strategy.addresses_ap_iface else None
        iface.bring_up(self.registry, cfg.virt_iface, gateway_cidr)

    def setup_sharing(self) -> None:
        self.strategy.enable(self)
        if self.bridge and self.scratch_dir is not None:
            state.update_record(self.scratch_dir, bridge=self.bridge)

    def serve(self) -> int:
        if self.scratch_dir is None or self.supervisor is None:
            raise RuntimeError("session_not_prepared")
        cfg = self.config
        sup = self.supervisor

        hostapd_conf = daemon_conf.write_hostapd_conf(
            self.scratch_dir / daemon_conf.HOSTAPD_CONF,
            cfg,
            bridge=self.strategy.hostapd_bridge(),
        )

        sup.spawn_entropy_booster()

        if self.strategy.serves_dhcp:
            dnsmasq_conf = daemon_conf.write_dnsmasq_conf(self.scratch_dir / daemon_conf.DNSMASQ_CONF, cfg)
            sup.spawn_service(
                "dnsmasq",
                [self.binaries["dnsmasq"], "--keep-in-foreground", "-C", str(dnsmasq_conf)],
            )
        else:
            sup.skip_service("bridge_delegates_dhcp")

        self.advance(Phase.SERVING)
        return sup.run_foreground("hostapd", [self.binaries["hostapd"], str(hostapd_conf)])

    def run(self, coordinator: "TeardownCoordinator") -> int:
        """
        Acquire everything, serve until hostapd exits, then tear down.
        Teardown runs on every path out of here.
        """
        reason = "error"
        try:
            self.create_scratch_dir()
            self.config = resolve_channel(self.config)
            self.setup_interface()
            self.advance(Phase.INTERFACE_READY)
            self.setup_sharing()
            self.advance(Phase.SHARING_READY)
            self.exit_code = self.serve()
            reason = "hostapd_exited"
        finally:
            coordinator.run(reason)

        if self.exit_code not in CLEAN_EXIT_CODES:
            raise UnexpectedDaemonExit("hostapd", int(self.exit_code or 1))
        return 0
