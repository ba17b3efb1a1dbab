"""
NetworkManager "unmanaged-devices" registration for the AP interface.

NetworkManager grabs any new wireless interface it sees and will fight
hostapd for it. Adding the interface's MAC to `[keyfile] unmanaged-devices`
keeps it away. The patch is recorded so teardown removes only what was added.
"""

import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from shareap.engine import cmd
from shareap.registry import ResourceHandle, ResourceKind, ResourceRegistry

log = logging.getLogger("shareap.engine.nm_unmanaged")

NM_CONF = Path("/etc/NetworkManager/NetworkManager.conf")
NM_CONF_ENV = "SHAREAP_NM_CONF"

_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_UNMANAGED_RE = re.compile(r"^\s*unmanaged-devices\s*=(.*)$")

# NetworkManager re-reads its config asynchronously after a reload request.
_NM_SETTLE_S = 0.5


@dataclass(frozen=True)
class UnmanagedPatch:
    mac: str
    created_line: bool
    created_section: bool


def nm_conf_path() -> Path:
    return Path(os.environ.get(NM_CONF_ENV) or NM_CONF)


def _entry(mac: str) -> str:
    return f"mac:{mac.lower()}"


def _split_entries(value: str) -> List[str]:
    return [e.strip() for e in value.split(";") if e.strip()]


def _keyfile_bounds(lines: List[str]) -> Optional[Tuple[int, int]]:
    start = None
    for i, line in enumerate(lines):
        m = _SECTION_RE.match(line)
        if not m:
            continue
        if start is not None:
            return start, i
        if m.group(1).strip() == "keyfile":
            start = i
    if start is None:
        return None
    return start, len(lines)


def add_unmanaged_mac(text: str, mac: str) -> Tuple[str, Optional[UnmanagedPatch]]:
    """
    Returns (new_text, patch). patch is None when the MAC is already listed.
    """
    entry = _entry(mac)
    lines = text.splitlines()

    for line in lines:
        m = _UNMANAGED_RE.match(line)
        if m and entry in [e.lower() for e in _split_entries(m.group(1))]:
            return text, None

    bounds = _keyfile_bounds(lines)
    if bounds is None:
        if lines and lines[-1].strip():
            lines.append("")
        lines += ["[keyfile]", f"unmanaged-devices={entry}"]
        return "\n".join(lines) + "\n", UnmanagedPatch(mac.lower(), True, True)

    start, end = bounds
    for i in range(start + 1, end):
        m = _UNMANAGED_RE.match(lines[i])
        if m:
            entries = _split_entries(m.group(1)) + [entry]
            lines[i] = "unmanaged-devices=" + ";".join(entries)
            return "\n".join(lines) + "\n", UnmanagedPatch(mac.lower(), False, False)

    lines.insert(start + 1, f"unmanaged-devices={entry}")
    return "\n".join(lines) + "\n", UnmanagedPatch(mac.lower(), True, False)


def remove_unmanaged_mac(text: str, patch: UnmanagedPatch) -> str:
    entry = _entry(patch.mac)
    out: List[str] = []
    for line in text.splitlines():
        m = _UNMANAGED_RE.match(line)
        if not m:
            out.append(line)
            continue
        current = _split_entries(m.group(1))
        entries = [e for e in current if e.lower() != entry]
        if len(entries) == len(current):
            out.append(line)
        elif entries:
            out.append("unmanaged-devices=" + ";".join(entries))
        elif not patch.created_line:
            out.append(line)

    if patch.created_section:
        bounds = _keyfile_bounds(out)
        if bounds is not None:
            start, end = bounds
            if not any(l.strip() for l in out[start + 1:end]):
                del out[start:end]
                while out and not out[-1].strip():
                    out.pop()
    return "\n".join(out) + "\n" if out else ""


def _write_keep_mode(path: Path, payload: str) -> None:
    tmp = path.with_name(path.name + ".shareap.tmp")
    mode = path.stat().st_mode & 0o7777
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            pass
    os.chmod(tmp, mode)
    os.replace(tmp, path)


def is_nm_running() -> bool:
    nmcli = cmd.resolve_binary("nmcli", "NMCLI")
    if not nmcli:
        return False
    res = cmd.run([nmcli, "-t", "-f", "RUNNING", "general"])
    return res.ok and res.out.strip() == "running"


def _nm_reload() -> None:
    nmcli = cmd.resolve_binary("nmcli", "NMCLI")
    if not nmcli:
        return
    res = cmd.run([nmcli, "general", "reload", "conf"])
    if not res.ok:
        log.info("nm_reload_failed: %s", res.out[:120])
        return
    time.sleep(_NM_SETTLE_S)


def unregister(patch: UnmanagedPatch, path: Optional[Path] = None) -> None:
    path = path or nm_conf_path()
    if not path.exists():
        return
    before = path.read_text(errors="ignore")
    after = remove_unmanaged_mac(before, patch)
    if after != before:
        _write_keep_mode(path, after)
        _nm_reload()


def register_as_unmanaged(registry: ResourceRegistry, ifname: str, mac: Optional[str]) -> Optional[UnmanagedPatch]:
    """
    Best-effort: a missing NetworkManager or config file is not an error.
    """
    path = nm_conf_path()
    if not is_nm_running():
        log.info("nm_not_running_skip_unmanaged", extra={"ifname": ifname})
        return None
    if not path.exists():
        log.info("nm_conf_missing_skip_unmanaged", extra={"ifname": ifname, "identity": str(path)})
        return None
    if not mac:
        log.warning("nm_unmanaged_no_mac", extra={"ifname": ifname})
        return None

    before = path.read_text(errors="ignore")
    after, patch = add_unmanaged_mac(before, mac)
    if patch is None:
        log.info("nm_unmanaged_already_listed", extra={"ifname": ifname, "identity": mac})
        return None

    _write_keep_mode(path, after)
    registry.register(
        ResourceHandle(
            kind=ResourceKind.UNMANAGED_REGISTRATION,
            identity=mac,
            undo=lambda: unregister(patch, path),
            description=f"remove mac:{mac} from {path}",
        )
    )
    log.info("nm_unmanaged_added", extra={"ifname": ifname, "identity": mac})
    _nm_reload()
    return patch
