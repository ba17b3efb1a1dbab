import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional

LOG_LEVEL_ENV = "SHAREAP_LOG_LEVEL"

_STRUCTURED_FIELDS = ("session", "op", "kind", "identity", "ifname", "pid", "phase", "rc", "reason")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in _STRUCTURED_FIELDS:
            value = getattr(record, k, None)
            if value is not None:
                payload[k] = value

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"))


class _SessionFilter(logging.Filter):
    """Stamps records with the session they belong to (several may share a journal)."""

    def __init__(self) -> None:
        super().__init__()
        self.session: Optional[str] = None

    def filter(self, record: logging.LogRecord) -> bool:
        if self.session and getattr(record, "session", None) is None:
            record.session = self.session
        return True


_session_filter = _SessionFilter()


def bind_session(name: Optional[str]) -> None:
    _session_filter.session = name


def setup_logging(level: Optional[str] = None) -> None:
    # stdout carries relayed hostapd/dnsmasq output, so our own records go to stderr.
    lvl = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(_session_filter)
    root.addHandler(handler)
