import logging
import os
import stat
import sys
from pathlib import Path

import pytest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))

from shareap.engine.cmd import CmdResult  # noqa: E402


IW_PHY_INFO = """Wiphy phy0
	max # scan SSIDs: 4
	Supported interface modes:
		 * IBSS
		 * managed
		 * AP
		 * monitor
	valid interface combinations:
		 * #{ managed } <= 1, #{ AP, P2P-client, P2P-GO } <= 1, #{ P2P-device } <= 1,
		   total <= 3, #channels <= 2
	HT Capability overrides:
		 * MCS: ff ff ff ff ff ff ff ff ff ff
"""

IW_PHY_INFO_NO_CONCURRENCY = """Wiphy phy0
	valid interface combinations:
		 * #{ managed } <= 1, #{ IBSS } <= 1,
		   total <= 1, #channels <= 1
"""

NO_SUCH_DEVICE = "command failed: No such device (-19)"


class FakeSystem:
    """
    Stands in for `ip`, `iw` and `iptables`: keeps just enough link, bridge
    and rule state that acquire/undo pairs can be checked against it.
    """

    def __init__(self, links=("wlan0", "eth0"), phy_info=IW_PHY_INFO):
        self.links = set(links)
        self.bridges = set()
        self.rules = []
        self.calls = []
        self.phy_info = phy_info
        self.channel = None
        self.mac = "02:00:00:aa:bb:cc"
        self.failures = {}
        self.handlers = {}

    def fail_on(self, text, rc=1, out="RTNETLINK answers: Operation not permitted"):
        self.failures[text] = (rc, out)

    def ran(self, text):
        return [c for c in self.calls if text in " ".join(c)]

    def __call__(self, argv, timeout_s=10.0):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        line = " ".join(argv)
        for text, (rc, out) in self.failures.items():
            if text in line:
                return CmdResult(argv, rc, out)
        handler = self.handlers.get(argv[0])
        if handler is not None:
            return handler(argv)
        rc, out = self._dispatch(argv[0], argv[1:])
        return CmdResult(argv, rc, out)

    def _dispatch(self, tool, args):
        if tool == "iw":
            return self._iw(args)
        if tool == "ip":
            return self._ip(args)
        if tool == "iptables":
            return self._iptables(args)
        return 0, ""

    def _iw(self, args):
        if args[:1] == ["phy"]:
            return 0, self.phy_info
        if len(args) == 3 and args[0] == "dev" and args[2] == "info":
            if args[1] not in self.links:
                return 237, NO_SUCH_DEVICE
            out = f"Interface {args[1]}\n\tifindex 3\n\twiphy 0\n\ttype managed\n"
            if self.channel:
                out += f"\tchannel {self.channel} (2437 MHz), width: 20 MHz\n"
            return 0, out
        if len(args) == 3 and args[0] == "dev" and args[2] == "del":
            if args[1] not in self.links:
                return 237, NO_SUCH_DEVICE
            self.links.discard(args[1])
            return 0, ""
        if args[:1] == ["dev"] and args[2:4] == ["interface", "add"]:
            self.links.add(args[4])
            return 0, ""
        return 0, ""

    def _ip(self, args):
        if args[:3] == ["link", "show", "dev"]:
            name = args[3]
            if name in self.links or name in self.bridges:
                return 0, f"5: {name}: <BROADCAST,MULTICAST> mtu 1500"
            return 1, f'Device "{name}" does not exist.'
        if args == ["-o", "link", "show", "type", "bridge"]:
            rows = [f"{i + 10}: {b}: <BROADCAST,MULTICAST> mtu 1500" for i, b in enumerate(sorted(self.bridges))]
            return 0, "\n".join(rows)
        if args[:4] == ["-o", "link", "show", "dev"]:
            return 0, f"5: {args[4]}: <BROADCAST> mtu 1500 qdisc noop\\    link/ether {self.mac} brd ff:ff:ff:ff:ff:ff"
        if args[:3] == ["link", "add", "name"]:
            self.bridges.add(args[3])
            return 0, ""
        if args[:2] == ["link", "delete"]:
            if args[2] not in self.bridges:
                return 1, "Cannot find device"
            self.bridges.discard(args[2])
            return 0, ""
        return 0, ""

    def _iptables(self, args):
        rest = [a for a in args if a != "-w"]
        for flag in ("-I", "-D"):
            if flag in rest:
                rule = list(rest)
                rule.remove(flag)
                if flag == "-I":
                    self.rules.append(rule)
                    return 0, ""
                if rule not in self.rules:
                    return 1, "iptables: Bad rule (does a matching rule exist in that chain?)."
                self.rules.remove(rule)
                return 0, ""
        return 0, ""


@pytest.fixture
def fake_system(monkeypatch, tmp_path):
    from shareap.engine import cmd, iface, nm_unmanaged, sharing

    system = FakeSystem()
    monkeypatch.setattr(cmd, "run", system)
    monkeypatch.setattr(cmd, "tool", lambda name: name)
    monkeypatch.setattr(iface, "SYSFS_NET", tmp_path / "sys_class_net")
    monkeypatch.setattr(nm_unmanaged, "is_nm_running", lambda: False)

    proc_sys = tmp_path / "proc_sys"
    (proc_sys / "net" / "ipv4").mkdir(parents=True)
    (proc_sys / "net" / "ipv4" / "ip_forward").write_text("0\n")
    monkeypatch.setattr(sharing, "PROC_SYS", proc_sys)
    system.ip_forward = proc_sys / "net" / "ipv4" / "ip_forward"
    return system


@pytest.fixture
def fast_supervisor(monkeypatch, tmp_path):
    from shareap.engine import supervisor

    entropy = tmp_path / "entropy_avail"
    entropy.write_text("3500\n")
    monkeypatch.setattr(supervisor, "ENTROPY_AVAIL", entropy)
    monkeypatch.setattr(supervisor, "EARLY_FAIL_WINDOW_S", 0.3)
    monkeypatch.setattr(supervisor, "TERM_TIMEOUT_S", 1.0)
    return supervisor


def make_script(directory: Path, name: str, body: str) -> str:
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def daemon_script(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name: str, body: str) -> str:
        return make_script(bin_dir, name, body)

    return _make


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def read_kv(path: Path) -> dict:
    kv = {}
    for line in path.read_text().splitlines():
        if "=" in line and not line.startswith("#"):
            k, v = line.split("=", 1)
            kv[k.strip()] = v.strip()
    return kv
