import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional

log = logging.getLogger("shareap.engine.cmd")

_CMD_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class CmdResult:
    cmd: List[str]
    rc: int
    out: str

    @property
    def ok(self) -> bool:
        return self.rc == 0

    def check(self) -> "CmdResult":
        if not self.ok:
            raise RuntimeError(f"cmd_failed rc={self.rc} cmd={' '.join(self.cmd)} out={self.out.strip()}")
        return self


def run(cmd: List[str], timeout_s: float = _CMD_TIMEOUT_S) -> CmdResult:
    """
    Run a short-lived tool. Never raises; spawn errors and timeouts come back
    as a failed CmdResult (rc 127 / 124).
    """
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
    except subprocess.TimeoutExpired as exc:
        out = exc.stdout if isinstance(exc.stdout, str) else ""
        err = exc.stderr if isinstance(exc.stderr, str) else ""
        return CmdResult(list(cmd), 124, (out + "\n" + err).strip())
    except OSError as exc:
        return CmdResult(list(cmd), 127, f"{type(exc).__name__}: {exc}")
    out = (p.stdout or "") + ("\n" + p.stderr if p.stderr else "")
    res = CmdResult(list(cmd), p.returncode, out.strip())
    if not res.ok:
        log.debug("cmd_rc_nonzero", extra={"op": cmd[0], "rc": res.rc})
    return res


def tool(name: str) -> str:
    """Absolute path of a system tool, falling back to /usr/sbin/<name>."""
    return shutil.which(name) or f"/usr/sbin/{name}"


def resolve_binary(name: str, env_key: str) -> Optional[str]:
    override = os.environ.get(env_key)
    if override and os.path.isfile(override) and os.access(override, os.X_OK):
        return override
    return shutil.which(name)
