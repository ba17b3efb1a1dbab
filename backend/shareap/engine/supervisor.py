import enum
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, List, Optional

from shareap.engine import cmd
from shareap.engine.daemon_conf import pid_running, read_pid_file, write_pid_file
from shareap.errors import LeaseAcquisitionError, ServiceStartError
from shareap.registry import ResourceHandle, ResourceKind, ResourceRegistry

log = logging.getLogger("shareap.engine.supervisor")

OUTPUT_TAIL_MAX_LINES = 50
EARLY_FAIL_WINDOW_S = 1.0
TERM_TIMEOUT_S = 3.0
FOREGROUND_POLL_S = 0.2

# A foreground daemon stopped by a plain termination request is a clean stop.
CLEAN_EXIT_CODES = (0, -signal.SIGTERM, -signal.SIGINT)

ENTROPY_AVAIL = Path("/proc/sys/kernel/random/entropy_avail")
LOW_ENTROPY_THRESHOLD = 1000

_LEASE_TIMEOUT_S = 90.0


class SupervisorState(str, enum.Enum):
    IDLE = "idle"
    AUX_STARTED = "aux_started"
    SERVICE_STARTED = "service_started"
    FOREGROUND_RUNNING = "foreground_running"
    EXITED = "exited"


_ORDER = list(SupervisorState)


@dataclass
class ChildProcess:
    name: str
    pid: int
    pid_file: Path
    popen: Optional[subprocess.Popen] = field(default=None, repr=False)
    tail: Deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_MAX_LINES), repr=False)
    handle: Optional[ResourceHandle] = field(default=None, repr=False)
    relay: Optional[threading.Thread] = field(default=None, repr=False)


def _relay_thread(stream, tail: Deque[str], label: str) -> None:
    try:
        for line in iter(stream.readline, ""):
            if not line:
                break
            tail.append(line.rstrip("\n"))
            sys.stdout.write(line)
            sys.stdout.flush()
    except (OSError, ValueError):
        tail.append(f"[{label}] reader error")
    finally:
        try:
            stream.close()
        except OSError:
            pass


def kill_pid(pid: int, timeout_s: Optional[float] = None) -> bool:
    """
    SIGTERM, then SIGKILL if still alive after timeout_s.
    Returns False when the process was already gone.
    """
    if timeout_s is None:
        timeout_s = TERM_TIMEOUT_S
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False

    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if not pid_running(pid):
            return True
        time.sleep(0.05)

    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return True


def terminate_child(child: ChildProcess, timeout_s: Optional[float] = None) -> None:
    if timeout_s is None:
        timeout_s = TERM_TIMEOUT_S
    p = child.popen
    if p is None:
        if kill_pid(child.pid, timeout_s):
            log.info("child_terminated", extra={"op": child.name, "pid": child.pid})
    elif p.poll() is None:
        p.terminate()
        try:
            p.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            log.warning("child_kill_escalated", extra={"op": child.name, "pid": child.pid})
            p.kill()
            p.wait(timeout=timeout_s)
        log.info("child_terminated", extra={"op": child.name, "pid": child.pid, "rc": p.returncode})
    try:
        child.pid_file.unlink()
    except FileNotFoundError:
        pass


def entropy_available() -> Optional[int]:
    try:
        return int(ENTROPY_AVAIL.read_text(errors="ignore").strip())
    except (OSError, ValueError):
        return None


class Supervisor:
    """
    Starts the session's daemons as children of this process.

    Every child gets a <name>.pid marker in the scratch directory as soon as
    it is spawned, and a registry handle once its start is confirmed.
    """

    def __init__(self, registry: ResourceRegistry, scratch_dir: Path):
        self.registry = registry
        self.scratch_dir = Path(scratch_dir)
        self.state = SupervisorState.IDLE
        self.children: List[ChildProcess] = []

    def _advance(self, target: SupervisorState) -> None:
        if _ORDER.index(target) != _ORDER.index(self.state) + 1:
            raise RuntimeError(f"supervisor_state_skip {self.state.value}->{target.value}")
        self.state = target
        log.debug("supervisor_state", extra={"phase": target.value})

    def _pid_path(self, name: str) -> Path:
        return self.scratch_dir / f"{name}.pid"

    def _spawn(self, name: str, argv: List[str]) -> ChildProcess:
        p = subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,
            close_fds=True,
            # Own session: terminal ^C goes to us, and we stop children in order.
            start_new_session=True,
        )
        child = ChildProcess(name=name, pid=p.pid, pid_file=self._pid_path(name), popen=p)
        write_pid_file(child.pid_file, p.pid)
        child.relay = threading.Thread(
            target=_relay_thread,
            args=(p.stdout, child.tail, name),
            name=f"relay-{name}",
            daemon=True,
        )
        child.relay.start()
        return child

    def _exited_early(self, child: ChildProcess, window_s: Optional[float]) -> Optional[int]:
        if child.popen is None:
            raise RuntimeError(f"child_not_spawned:{child.name}")
        if window_s is None:
            window_s = EARLY_FAIL_WINDOW_S
        deadline = time.time() + window_s
        while time.time() < deadline:
            rc = child.popen.poll()
            if rc is not None:
                return rc
            time.sleep(0.05)
        return None

    def _track(self, child: ChildProcess) -> ChildProcess:
        self.children.append(child)
        child.handle = self.registry.register(
            ResourceHandle(
                kind=ResourceKind.CHILD_PROCESS,
                identity=f"{child.name}:{child.pid}",
                undo=lambda: terminate_child(child),
                description=f"kill {child.pid}",
            )
        )
        log.info("child_started", extra={"op": child.name, "pid": child.pid})
        return child

    def _discard(self, child: ChildProcess) -> None:
        # Let the relay drain what the child printed before dying.
        if child.relay is not None:
            child.relay.join(timeout=1.0)
        try:
            child.pid_file.unlink()
        except FileNotFoundError:
            pass

    def spawn_supporting(self, name: str, argv: List[str], window_s: Optional[float] = None) -> Optional[ChildProcess]:
        """Best-effort auxiliary daemon; failure is logged, never raised."""
        try:
            child = self._spawn(name, argv)
        except OSError as exc:
            log.warning("aux_spawn_failed: %s", exc, extra={"op": name})
            self._advance(SupervisorState.AUX_STARTED)
            return None
        rc = self._exited_early(child, window_s)
        self._advance(SupervisorState.AUX_STARTED)
        if rc is not None:
            log.warning("aux_exited_early", extra={"op": name, "rc": rc})
            self._discard(child)
            return None
        return self._track(child)

    def spawn_entropy_booster(self) -> Optional[ChildProcess]:
        haveged = cmd.resolve_binary("haveged", "HAVEGED")
        entropy = entropy_available()
        if entropy is None or entropy >= LOW_ENTROPY_THRESHOLD:
            log.debug("entropy_sufficient", extra={"identity": str(entropy)})
            self._advance(SupervisorState.AUX_STARTED)
            return None
        if not haveged:
            log.info("haveged_not_found_low_entropy", extra={"identity": str(entropy)})
            self._advance(SupervisorState.AUX_STARTED)
            return None
        log.info("low_entropy_starting_haveged", extra={"identity": str(entropy)})
        return self.spawn_supporting("haveged", [haveged, "-F", "-w", "1024"])

    def spawn_service(self, name: str, argv: List[str], window_s: Optional[float] = None) -> ChildProcess:
        """Required daemon; ServiceStartError if it cannot be started."""
        try:
            child = self._spawn(name, argv)
        except OSError as exc:
            raise ServiceStartError(f"{name}_spawn_failed", detail=str(exc)) from exc
        rc = self._exited_early(child, window_s)
        if rc is not None:
            self._discard(child)
            raise ServiceStartError(f"{name}_exited_early rc={rc}", detail="\n".join(child.tail))
        self._advance(SupervisorState.SERVICE_STARTED)
        return self._track(child)

    def skip_service(self, reason: str) -> None:
        log.info("service_skipped", extra={"reason": reason})
        self._advance(SupervisorState.SERVICE_STARTED)

    def run_foreground(self, name: str, argv: List[str], window_s: Optional[float] = None) -> int:
        """
        Start the primary daemon and block until it exits. Returns its exit
        status. An early exit with a clean status counts as a normal stop;
        any other early exit raises ServiceStartError.
        """
        try:
            child = self._spawn(name, argv)
        except OSError as exc:
            raise ServiceStartError(f"{name}_spawn_failed", detail=str(exc)) from exc
        rc = self._exited_early(child, window_s)
        if rc is not None and rc not in CLEAN_EXIT_CODES:
            self._discard(child)
            raise ServiceStartError(f"{name}_exited_early rc={rc}", detail="\n".join(child.tail))

        if rc is None:
            self._track(child)
        else:
            self._discard(child)
        self._advance(SupervisorState.FOREGROUND_RUNNING)
        # The signal handler reaps this child; never block in wait() here.
        while rc is None:
            time.sleep(FOREGROUND_POLL_S)
            rc = child.popen.poll()
        self._advance(SupervisorState.EXITED)
        log.info("foreground_exited", extra={"op": name, "pid": child.pid, "rc": rc})
        return rc

    def acquire_lease(self, ifname: str, dhclient: Optional[str] = None) -> ChildProcess:
        """
        One-shot DHCP request on `ifname`; dhclient daemonizes after a lease
        and the daemon's pid (from its pid file) is tracked.
        """
        dhclient = dhclient or cmd.resolve_binary("dhclient", "DHCLIENT")
        if not dhclient:
            raise LeaseAcquisitionError("dhclient_not_found")
        pid_path = self._pid_path("dhclient")
        lease_path = self.scratch_dir / "dhclient.leases"
        res = cmd.run(
            [dhclient, "-1", "-pf", str(pid_path), "-lf", str(lease_path), ifname],
            timeout_s=_LEASE_TIMEOUT_S,
        )
        if not res.ok:
            raise LeaseAcquisitionError(f"lease_failed iface={ifname} rc={res.rc}", detail=res.out)
        pid = read_pid_file(pid_path)
        if pid is None:
            raise LeaseAcquisitionError(f"lease_pid_missing iface={ifname}")
        return self._track(ChildProcess(name="dhclient", pid=pid, pid_file=pid_path))
