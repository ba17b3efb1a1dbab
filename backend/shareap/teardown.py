import logging
import shutil
import threading
from dataclasses import dataclass, field
from typing import Callable, List

from shareap.engine import daemon_conf, iface
from shareap.engine.supervisor import kill_pid
from shareap.registry import ResourceKind, UnwindReport
from shareap.session import Phase, Session

log = logging.getLogger("shareap.teardown")


@dataclass
class TeardownReport:
    reason: str = ""
    released: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class TeardownCoordinator:
    """
    The one place session cleanup happens.

    Called from normal completion, from the error path, and from the
    termination signal handler. Only the first call does anything; a call
    arriving while another is in progress returns False immediately.
    """

    def __init__(self, session: Session):
        self.session = session
        self.report = TeardownReport()
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def run(self, reason: str) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        try:
            if self._done:
                return False
            self._done = True
            self.report.reason = reason
            log.info("teardown_start", extra={"reason": reason, "phase": self.session.phase.value})
            self.session.advance(Phase.TEARING_DOWN)

            for name, step in (
                ("children", self._terminate_children),
                ("scratch_dir", self._remove_scratch_dir),
                ("sharing", self._disable_sharing),
                ("unwind", self._unwind_rest),
                ("virt_iface_sweep", self._sweep_virt_iface),
            ):
                self._step(name, step)

            self.session.advance(Phase.TERMINATED)
            if self.report.ok:
                log.info("teardown_complete", extra={"reason": reason})
            else:
                log.warning("teardown_incomplete: %s", "; ".join(self.report.failed), extra={"reason": reason})
        finally:
            self._lock.release()
        return True

    def _step(self, name: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception as exc:
            log.exception("teardown_step_failed:%s", name)
            self.report.failed.append(f"{name}:{exc}")

    def _absorb(self, unwind: UnwindReport) -> None:
        self.report.released.extend(unwind.undone)
        self.report.failed.extend(unwind.failed)

    def _terminate_children(self) -> None:
        registry = self.session.registry
        self._absorb(registry.release(registry.handles(ResourceKind.CHILD_PROCESS)))

        # Anything spawned but not yet registered still left a pid marker.
        conf_dir = self.session.scratch_dir
        if conf_dir is None:
            return
        for pid_file in daemon_conf.pid_files(conf_dir):
            pid = daemon_conf.read_pid_file(pid_file)
            if pid is not None and daemon_conf.pid_running(pid):
                kill_pid(pid)
                self.report.released.append(f"stray_child:{pid_file.stem}:{pid}")
                log.info("stray_child_killed", extra={"op": pid_file.stem, "pid": pid})
            pid_file.unlink(missing_ok=True)

    def _remove_scratch_dir(self) -> None:
        registry = self.session.registry
        self._absorb(registry.release(registry.handles(ResourceKind.SCRATCH_DIRECTORY)))
        conf_dir = self.session.scratch_dir
        if conf_dir is not None and conf_dir.exists():
            shutil.rmtree(conf_dir)

    def _disable_sharing(self) -> None:
        strategy = self.session.strategy
        unwind = strategy.disable(self.session)
        self._absorb(unwind)
        if unwind.undone:
            log.info("sharing_disabled", extra={"op": strategy.method})

    def _unwind_rest(self) -> None:
        # Link state, unmanaged registration, virtual interface: newest first.
        self._absorb(self.session.registry.unwind_all())

    def _sweep_virt_iface(self) -> None:
        virt = self.session.config.virt_iface
        if not self.session.virt_attempted or not iface.iface_exists(virt):
            return
        iface.delete_iface(virt)
        self.report.released.append(f"virtual_interface_sweep:{virt}")
        log.info("virt_iface_swept", extra={"ifname": virt})
