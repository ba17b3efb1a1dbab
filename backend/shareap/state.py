import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from shareap.engine.daemon_conf import pid_running

SCRATCH_ROOT = Path("/dev/shm/shareap_tmp")
SCRATCH_ROOT_ENV = "SHAREAP_TMPDIR"
SESSION_FILE = "session.json"

SCHEMA_VERSION = 1

DEFAULT_RECORD: Dict[str, Any] = {
    "schema_version": SCHEMA_VERSION,
    "pid": None,
    "phase": "created",
    "wifi_iface": None,
    "virt_iface": None,
    "internet_iface": None,
    "share_method": None,
    "bridge": None,
    "started_ts": None,
    "last_update_ts": None,
}


def scratch_root() -> Path:
    override = (os.environ.get(SCRATCH_ROOT_ENV) or "").strip()
    return Path(override) if override else SCRATCH_ROOT


def _write_atomic(path: Path, tmp: Path, payload: str) -> None:
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            # tmpfs and some sandboxes refuse fsync; best-effort.
            pass
    os.replace(tmp, path)


def load_record(conf_dir: Path) -> Dict[str, Any]:
    """
    Load a session record merged into defaults. Never throws.
    """
    merged = dict(DEFAULT_RECORD)
    path = conf_dir / SESSION_FILE
    if not path.exists():
        return merged
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError):
        return merged
    if isinstance(data, dict):
        merged.update(data)
    return merged


def update_record(conf_dir: Path, **kwargs: Any) -> Dict[str, Any]:
    """
    Load-modify-save of <conf_dir>/session.json. Silently does nothing once
    the directory is gone (teardown already removed it).
    """
    if not conf_dir.is_dir():
        return {}
    record = load_record(conf_dir)
    record.update(kwargs)
    record["last_update_ts"] = int(time.time())
    payload = json.dumps(record, indent=2, sort_keys=True)
    try:
        _write_atomic(conf_dir / SESSION_FILE, conf_dir / (SESSION_FILE + ".tmp"), payload)
    except FileNotFoundError:
        return {}
    return record


def list_running(root: Optional[Path] = None) -> List[Dict[str, Any]]:
    base = root or scratch_root()
    if not base.is_dir():
        return []
    out: List[Dict[str, Any]] = []
    for conf_dir in sorted(base.glob("shareap.*.conf.*")):
        if not conf_dir.is_dir():
            continue
        record = load_record(conf_dir)
        pid = record.get("pid")
        if not isinstance(pid, int) or not pid_running(pid):
            continue
        record["conf_dir"] = str(conf_dir)
        out.append(record)
    return out


def find_running(target: str, root: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Match a running session by pid, wifi interface or AP interface name."""
    for record in list_running(root):
        if target.isdigit() and record.get("pid") == int(target):
            return record
        if target in (record.get("wifi_iface"), record.get("virt_iface")):
            return record
    return None
