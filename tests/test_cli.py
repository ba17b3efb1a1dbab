import io

import pytest

from shareap import cli, config
from shareap.errors import ConfigValidationError


class _Tty(io.StringIO):
    def isatty(self):
        return True


def _resolve(argv, stdin=None, defaults=None):
    args = cli.parse_args(argv)
    return cli.resolve_options(args, defaults or dict(config.DEFAULT_CONFIG), stdin=stdin or io.StringIO(""))


def test_positionals_with_sharing():
    opts = _resolve(["wlan0", "eth0", "MyAccessPoint", "MyPassPhrase"])
    assert opts["wifi_iface"] == "wlan0"
    assert opts["internet_iface"] == "eth0"
    assert opts["ssid"] == "MyAccessPoint"
    assert opts["passphrase"] == "MyPassPhrase"


def test_positionals_without_sharing_shift_ssid():
    opts = _resolve(["-n", "wlan0", "MyAccessPoint", "MyPassPhrase"])
    assert opts["internet_iface"] is None
    assert opts["ssid"] == "MyAccessPoint"
    assert opts["no_internet"] is True

    opts = _resolve(["-m", "none", "wlan0", "MyAccessPoint"])
    assert opts["ssid"] == "MyAccessPoint"
    assert opts["passphrase"] is None


def test_defaults_file_method_none_shifts_ssid():
    defaults = dict(config.DEFAULT_CONFIG, share_method="none")
    opts = _resolve(["wlan0", "MyAccessPoint"], defaults=defaults)
    assert opts["ssid"] == "MyAccessPoint"


def test_too_many_positionals():
    with pytest.raises(ConfigValidationError) as exc:
        _resolve(["-n", "wlan0", "ap", "12345678", "extra"])
    assert "too_many_arguments" in str(exc.value)


def test_missing_wifi_iface():
    with pytest.raises(ConfigValidationError):
        _resolve([])


def test_credentials_from_piped_stdin():
    opts = _resolve(["wlan0", "eth0"], stdin=io.StringIO("MyAccessPoint\nMyPassPhrase\n"))
    assert opts["ssid"] == "MyAccessPoint"
    assert opts["passphrase"] == "MyPassPhrase"


def test_piped_stdin_without_passphrase_is_open():
    opts = _resolve(["wlan0", "eth0"], stdin=io.StringIO("OpenNet\n"))
    assert opts["ssid"] == "OpenNet"
    assert opts["passphrase"] is None


def test_tty_prompt_retries_until_passphrases_match(monkeypatch):
    answers = iter(["short", "12345678", "87654321", "12345678", "12345678"])
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": next(answers))
    monkeypatch.setattr("builtins.input", lambda prompt="": "PromptNet")

    opts = _resolve(["wlan0", "eth0"], stdin=_Tty())

    assert opts["ssid"] == "PromptNet"
    assert opts["passphrase"] == "12345678"


def test_tty_prompt_empty_passphrase_is_open(monkeypatch):
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": "")
    monkeypatch.setattr("builtins.input", lambda prompt="": "OpenNet")
    opts = _resolve(["wlan0", "eth0"], stdin=_Tty())
    assert opts["passphrase"] is None


def test_flags_map_to_options():
    opts = _resolve(
        [
            "-c", "11", "-w", "2", "-g", "10.0.0.1", "--hidden", "-d",
            "--country", "de", "--freq-band", "5", "--isolate-clients",
            "wlan0", "eth0", "ap", "12345678",
        ]
    )
    assert opts["channel"] == 11
    assert opts["wpa_version"] == "2"
    assert opts["gateway"] == "10.0.0.1"
    assert opts["hidden"] is True
    assert opts["use_etc_hosts"] is True
    assert opts["country"] == "de"
    assert opts["freq_band"] == "5"
    assert opts["isolate_clients"] is True


def test_unset_flags_stay_none_so_defaults_apply():
    opts = _resolve(["wlan0", "eth0", "ap", "12345678"])
    assert opts["channel"] is None
    assert opts["hidden"] is None
    cfg = config.build_session_config(opts, dict(config.DEFAULT_CONFIG, hidden=True, channel=6))
    assert cfg.hidden is True
    assert cfg.channel == 6


def test_bad_flag_value_is_config_error():
    with pytest.raises(ConfigValidationError):
        cli.parse_args(["-w", "3", "wlan0"])
    with pytest.raises(ConfigValidationError):
        cli.parse_args(["-c", "six", "wlan0"])
