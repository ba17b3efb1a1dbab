import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

log = logging.getLogger("shareap.registry")


class ResourceKind(str, enum.Enum):
    SCRATCH_DIRECTORY = "scratch_directory"
    VIRTUAL_INTERFACE = "virtual_interface"
    UNMANAGED_REGISTRATION = "unmanaged_registration"
    LINK_STATE = "link_state"
    NAT_RULE = "nat_rule"
    FORWARDING_SYSCTL = "forwarding_sysctl"
    BRIDGE_DEVICE = "bridge_device"
    CHILD_PROCESS = "child_process"


@dataclass(frozen=True)
class ResourceHandle:
    """
    One acquired OS resource.

    `identity` is the OS-level name / pid / path; `undo` reverses exactly
    this acquisition and must tolerate the resource already being gone.
    """

    kind: ResourceKind
    identity: str
    undo: Callable[[], None] = field(compare=False)
    description: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identity}"


@dataclass
class UnwindReport:
    undone: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class ResourceRegistry:
    """
    LIFO stack of acquired resources.

    unwind_all() runs once; later calls (signal handler racing the main
    failure path) return an empty report without touching anything.
    """

    def __init__(self) -> None:
        self._handles: List[ResourceHandle] = []
        self._lock = threading.Lock()
        self._drained = False

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def drained(self) -> bool:
        return self._drained

    def handles(self, kind: Optional[ResourceKind] = None) -> List[ResourceHandle]:
        return [h for h in self._handles if kind is None or h.kind == kind]

    def register(self, handle: ResourceHandle) -> ResourceHandle:
        if self._drained:
            # Acquired after teardown already ran: release right away.
            log.warning("late_registration_undone", extra={"kind": handle.kind.value, "identity": handle.identity})
            self._undo_one(handle, UnwindReport())
            return handle
        self._handles.append(handle)
        log.debug("registered", extra={"kind": handle.kind.value, "identity": handle.identity})
        return handle

    def release(self, handles: List[ResourceHandle]) -> UnwindReport:
        """
        Undo a subset of registered handles, newest first. Handles no longer
        on the stack are skipped, so repeating a release is a no-op.
        """
        report = UnwindReport()
        wanted = {id(h) for h in handles}
        for i in range(len(self._handles) - 1, -1, -1):
            handle = self._handles[i]
            if id(handle) not in wanted:
                continue
            del self._handles[i]
            self._undo_one(handle, report)
        return report

    def unwind_all(self) -> UnwindReport:
        report = UnwindReport()
        # Non-blocking: a signal handler interrupting an unwind in progress
        # on the same thread must not deadlock.
        if not self._lock.acquire(blocking=False):
            return report
        try:
            if self._drained:
                return report
            self._drained = True
            while self._handles:
                self._undo_one(self._handles.pop(), report)
        finally:
            self._lock.release()
        return report

    @staticmethod
    def _undo_one(handle: ResourceHandle, report: UnwindReport) -> None:
        try:
            handle.undo()
            report.undone.append(str(handle))
            log.info("released", extra={"kind": handle.kind.value, "identity": handle.identity})
        except Exception as exc:
            report.failed.append(f"{handle}:{exc}")
            log.warning(
                "release_failed: %s",
                exc,
                extra={"kind": handle.kind.value, "identity": handle.identity},
            )
