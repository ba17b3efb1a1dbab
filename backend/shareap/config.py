import ipaddress
import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from shareap.errors import ConfigValidationError

CONFIG_PATH = Path("/etc/shareap/config.json")
CONFIG_ENV = "SHAREAP_CONFIG"

SHARE_METHODS = ("none", "nat", "bridge")
WPA_VERSIONS = ("1", "2", "1+2")
FREQ_BANDS = ("2.4", "5")

# Kernel IFNAMSIZ minus the trailing NUL.
IFNAME_MAX = 15

DEFAULT_CONFIG: Dict[str, Any] = {
    "channel": 1,
    "wpa_version": "1+2",
    "gateway": "192.168.12.1",
    "share_method": "nat",
    "hidden": False,
    "use_etc_hosts": False,

    # Radio
    "country": None,
    "freq_band": "2.4",
    "driver": "nl80211",
    "isolate_clients": False,
}


def read_config_file() -> Dict[str, Any]:
    """
    Returns the raw JSON defaults on disk (or {} if missing/invalid).
    """
    path = Path(os.environ.get(CONFIG_ENV) or CONFIG_PATH)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def load_config() -> Dict[str, Any]:
    """
    Returns DEFAULT_CONFIG merged with the on-disk defaults file.
    Unknown keys are dropped.
    """
    cfg = DEFAULT_CONFIG.copy()
    for k, v in read_config_file().items():
        if k in DEFAULT_CONFIG:
            cfg[k] = v
    return cfg


def virt_ifname(wifi_iface: str) -> str:
    return f"{wifi_iface.strip()}ap"[:IFNAME_MAX]


@dataclass(frozen=True)
class SessionConfig:
    wifi_iface: str
    virt_iface: str
    internet_iface: Optional[str]
    ssid: str
    passphrase: Optional[str]
    channel: int
    wpa_version: str
    gateway: Optional[str]
    share_method: str
    hidden: bool = False
    use_etc_hosts: bool = False
    country: Optional[str] = None
    freq_band: str = "2.4"
    driver: str = "nl80211"
    isolate_clients: bool = False

    @property
    def gateway_cidr(self) -> Optional[str]:
        return f"{self.gateway}/24" if self.gateway else None

    @property
    def subnet(self) -> Optional[str]:
        if not self.gateway:
            return None
        return str(ipaddress.IPv4Network(f"{self.gateway}/24", strict=False))

    @property
    def dhcp_range(self) -> Optional[tuple]:
        if not self.gateway:
            return None
        prefix = ".".join(self.gateway.split(".")[:3])
        return f"{prefix}.1", f"{prefix}.254"

    def with_channel(self, channel: int) -> "SessionConfig":
        return replace(self, channel=int(channel))


def _truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on", "y")
    return False


def _pick(options: Dict[str, Any], defaults: Dict[str, Any], key: str) -> Any:
    value = options.get(key)
    return defaults.get(key) if value is None else value


def build_session_config(options: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> SessionConfig:
    """
    Validate resolved CLI options into a SessionConfig.

    `options` holds what the operator supplied (None = not given); `defaults`
    comes from load_config(). Nothing on the system is touched here.
    """
    if defaults is None:
        defaults = load_config()

    wifi_iface = str(options.get("wifi_iface") or "").strip()
    if not wifi_iface:
        raise ConfigValidationError("missing_wifi_iface")
    if len(wifi_iface) > IFNAME_MAX:
        raise ConfigValidationError("invalid_wifi_iface")

    method = str(_pick(options, defaults, "share_method") or "").strip().lower()
    if _truthy(options.get("no_internet")):
        method = "none"
    if method not in SHARE_METHODS:
        raise ConfigValidationError(f"invalid_share_method:{method}")

    internet_iface = (options.get("internet_iface") or "").strip() or None
    if method == "none":
        internet_iface = None
    elif not internet_iface:
        raise ConfigValidationError(f"{method}_requires_internet_iface")
    if internet_iface and internet_iface == wifi_iface:
        raise ConfigValidationError("internet_iface_same_as_wifi_iface")

    explicit_gateway = options.get("gateway")
    if method == "bridge":
        if explicit_gateway:
            raise ConfigValidationError("bridge_forbids_gateway")
        gateway = None
    else:
        gateway = str(_pick(options, defaults, "gateway") or "").strip()
        try:
            addr = ipaddress.IPv4Address(gateway)
        except ValueError as exc:
            raise ConfigValidationError("invalid_gateway") from exc
        if addr.is_unspecified or addr.is_multicast or addr.is_loopback:
            raise ConfigValidationError("invalid_gateway")

    ssid = str(options.get("ssid") or "")
    if not (1 <= len(ssid) <= 32):
        raise ConfigValidationError("invalid_ssid_length")

    passphrase = options.get("passphrase") or None
    if passphrase is not None and not (8 <= len(passphrase) <= 63):
        raise ConfigValidationError("invalid_passphrase_length")

    try:
        channel = int(_pick(options, defaults, "channel"))
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError("invalid_channel") from exc
    if not (1 <= channel <= 196):
        raise ConfigValidationError("invalid_channel")

    wpa_version = str(_pick(options, defaults, "wpa_version")).strip()
    if wpa_version not in WPA_VERSIONS:
        raise ConfigValidationError("invalid_wpa_version")

    freq_band = str(_pick(options, defaults, "freq_band")).strip()
    if freq_band not in FREQ_BANDS:
        raise ConfigValidationError("invalid_freq_band")

    country = _pick(options, defaults, "country")
    if country:
        country = str(country).strip().upper()
        if len(country) != 2 or not country.isalpha():
            raise ConfigValidationError("invalid_country")
    else:
        country = None

    return SessionConfig(
        wifi_iface=wifi_iface,
        virt_iface=virt_ifname(wifi_iface),
        internet_iface=internet_iface,
        ssid=ssid,
        passphrase=passphrase,
        channel=channel,
        wpa_version=wpa_version,
        gateway=gateway,
        share_method=method,
        hidden=_truthy(_pick(options, defaults, "hidden")),
        use_etc_hosts=_truthy(_pick(options, defaults, "use_etc_hosts")),
        country=country,
        freq_band=freq_band,
        driver=str(_pick(options, defaults, "driver") or "nl80211").strip(),
        isolate_clients=_truthy(_pick(options, defaults, "isolate_clients")),
    )
