import argparse
import getpass
import sys
from typing import Any, Dict, List, Optional, TextIO, Tuple

from shareap.config import FREQ_BANDS, SHARE_METHODS, WPA_VERSIONS
from shareap.errors import ConfigValidationError

USAGE = "shareap [options] <wifi-iface> [<internet-iface>] [<ssid> [<passphrase>]]"

HELP_TEXT = f"""Usage: {USAGE}

Options:
  -h, --help            Show this help
  -c <channel>          Channel number (default: 1)
  -w <1|2|1+2>          WPA version (default: 1+2)
  -g <gateway>          IPv4 gateway for the access point (default: 192.168.12.1)
  -m <method>           Internet sharing method: none, nat, bridge (default: nat)
  -n                    Disable Internet sharing (same as '-m none')
  --hidden              Do not broadcast the SSID
  -d, --etc-hosts       DNS server answers from /etc/hosts as well
  --country <CC>        Regulatory country code, e.g. US
  --freq-band <2.4|5>   Frequency band (default: 2.4)
  --driver <name>       hostapd driver (default: nl80211)
  --isolate-clients     Clients on the access point cannot reach each other
  --list-running        List running sessions and exit
  --stop <iface|pid>    Stop a running session and exit
  --log-level <level>   DEBUG, INFO, WARNING, ERROR

Without sharing ('-n' or '-m none') the second positional is the SSID.
If the SSID is not given it is read from stdin (first line SSID, second line
passphrase) or prompted for on a terminal. An empty passphrase gives an open
network.

Examples:
  shareap wlan0 eth0 MyAccessPoint MyPassPhrase
  echo -e 'MyAccessPoint\\nMyPassPhrase' | shareap wlan0 eth0
  shareap -n wlan0 MyAccessPoint MyPassPhrase
  shareap -m bridge wlan0 eth0 MyAccessPoint MyPassPhrase
"""

_PASS_PROMPT_TRIES = 5


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ConfigValidationError(f"invalid_arguments: {message}")


def build_parser() -> argparse.ArgumentParser:
    ap = _Parser(prog="shareap", usage=USAGE, add_help=False)
    ap.add_argument("-h", "--help", action="store_true")
    ap.add_argument("-c", dest="channel", type=int, default=None)
    ap.add_argument("-w", dest="wpa_version", choices=WPA_VERSIONS, default=None)
    ap.add_argument("-g", dest="gateway", default=None)
    ap.add_argument("-m", dest="share_method", choices=SHARE_METHODS, default=None)
    ap.add_argument("-n", dest="no_internet", action="store_true")
    ap.add_argument("--hidden", action="store_true", default=None)
    ap.add_argument("-d", "--etc-hosts", dest="use_etc_hosts", action="store_true", default=None)
    ap.add_argument("--country", default=None)
    ap.add_argument("--freq-band", dest="freq_band", choices=FREQ_BANDS, default=None)
    ap.add_argument("--driver", default=None)
    ap.add_argument("--isolate-clients", dest="isolate_clients", action="store_true", default=None)
    ap.add_argument("--list-running", dest="list_running", action="store_true")
    ap.add_argument("--stop", dest="stop", default=None)
    ap.add_argument("--log-level", dest="log_level", default=None)
    ap.add_argument("positional", nargs="*")
    return ap


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def sharing_disabled(args: argparse.Namespace, defaults: Dict[str, Any]) -> bool:
    if args.no_internet:
        return True
    method = args.share_method or defaults.get("share_method")
    return str(method or "").strip().lower() == "none"


def split_positionals(positional: List[str], no_sharing: bool) -> Dict[str, Optional[str]]:
    """
    <wifi-iface> [<internet-iface>] [<ssid> [<passphrase>]]; the internet
    interface slot does not exist when sharing is disabled.
    """
    names = ["wifi_iface", "ssid", "passphrase"] if no_sharing else ["wifi_iface", "internet_iface", "ssid", "passphrase"]
    if not positional:
        raise ConfigValidationError("missing_wifi_iface")
    if len(positional) > len(names):
        raise ConfigValidationError(f"too_many_arguments: {' '.join(positional[len(names):])}")
    out: Dict[str, Optional[str]] = {k: None for k in ("wifi_iface", "internet_iface", "ssid", "passphrase")}
    for key, value in zip(names, positional):
        out[key] = value
    return out


def read_credentials_from_stream(stream: TextIO) -> Tuple[str, Optional[str]]:
    """Line 1 is the SSID, line 2 (optional) the passphrase."""
    ssid = stream.readline().rstrip("\r\n")
    passphrase = stream.readline().rstrip("\r\n")
    return ssid, (passphrase or None)


def prompt_credentials(ssid: Optional[str] = None) -> Tuple[str, Optional[str]]:
    while not ssid:
        ssid = input("SSID: ").strip()

    for _ in range(_PASS_PROMPT_TRIES):
        first = getpass.getpass("Passphrase (empty for an open network): ")
        if not first:
            return ssid, None
        if not (8 <= len(first) <= 63):
            print("ERROR: passphrase must be 8..63 characters", file=sys.stderr)
            continue
        second = getpass.getpass("Retype passphrase: ")
        if first != second:
            print("ERROR: passphrases do not match", file=sys.stderr)
            continue
        return ssid, first
    raise ConfigValidationError("passphrase_prompt_exhausted")


def resolve_options(
    args: argparse.Namespace,
    defaults: Dict[str, Any],
    stdin: Optional[TextIO] = None,
) -> Dict[str, Any]:
    """
    Merge positionals and flags into the options dict consumed by
    build_session_config(); fills SSID/passphrase from stdin when missing.
    """
    stdin = stdin if stdin is not None else sys.stdin
    opts: Dict[str, Any] = split_positionals(args.positional, sharing_disabled(args, defaults))

    if opts["ssid"] is None:
        if stdin.isatty():
            opts["ssid"], opts["passphrase"] = prompt_credentials()
        else:
            opts["ssid"], opts["passphrase"] = read_credentials_from_stream(stdin)

    for key in (
        "channel",
        "wpa_version",
        "gateway",
        "share_method",
        "no_internet",
        "hidden",
        "use_etc_hosts",
        "country",
        "freq_band",
        "driver",
        "isolate_clients",
    ):
        opts[key] = getattr(args, key)
    return opts
