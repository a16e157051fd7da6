"""Shared fixtures: an in-memory stand-in for ip/wg/iptables/easyrsa/openvpn."""

import json
import logging
import subprocess
import uuid
from pathlib import Path

import pytest

from gw_backend import logs
from gw_backend.settings import get_settings
from gw_backend.system import CommandRunner

WG_CONF = """\
[Interface]
PrivateKey = cHJpdmF0ZWtleXByaXZhdGVrZXlwcml2YXRla2V5MDA=
Address = 10.66.0.2/32, fd00:66::2/128
DNS = 10.64.0.1
MTU = 1280

[Peer]
PublicKey = cHVibGlja2V5cHVibGlja2V5cHVibGlja2V5cHViMDA=
PresharedKey = cHNrcHNrcHNrcHNrcHNrcHNrcHNrcHNrcHNrcHNrMDA=
AllowedIPs = 0.0.0.0/0, ::/0
Endpoint = 203.0.113.7:51820
"""

BASE_RULES = [
    {"priority": 0, "src": "all", "table": "local"},
    {"priority": 32766, "src": "all", "table": "main"},
    {"priority": 32767, "src": "all", "table": "default"},
]


def _pem(label, body, text_dump=""):
    return f"{text_dump}-----BEGIN {label}-----\n{body}\n-----END {label}-----\n"


class FakeProc:
    def __init__(self, returncode):
        self.pid = 4242
        self.returncode = returncode
        self.signals = []

    def send_signal(self, signum):
        self.signals.append(signum)

    def wait(self):
        return self.returncode


class FakeRunner(CommandRunner):
    """
    Records every command and keeps just enough kernel/PKI state for
    check-then-add logic to behave as on a real host.
    """

    def __init__(self):
        self.calls = []
        self.inputs = {}
        self.failures = {}
        self.links = {}
        self.ip_rules = []
        self.routes = {"main": [{"dst": "default", "gateway": "192.0.2.1", "dev": "eth0"}]}
        self.iptables = {}
        self.sysctl = {}
        self.exec_calls = []
        self.spawn_calls = []
        self.spawn_returncode = 0

    # -- helpers for tests --

    def fail(self, *prefix, returncode=1, stderr="simulated failure"):
        self.failures[tuple(prefix)] = (returncode, stderr)

    def commands(self, *prefix):
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    def rules(self, table, chain):
        return self.iptables.get((table, chain), [])

    # -- CommandRunner overrides --

    def replace_process(self, cmd):
        self.exec_calls.append([str(c) for c in cmd])

    def spawn(self, cmd):
        self.spawn_calls.append([str(c) for c in cmd])
        return FakeProc(self.spawn_returncode)

    def _execute(self, cmd, input=None, cwd=None, env=None):
        self.calls.append(cmd)
        if input is not None:
            self.inputs[tuple(cmd)] = input
        for prefix, (rc, err) in self.failures.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(cmd, rc, "", err)

        if cmd[0] == "ip":
            rc, out, err = self._ip(cmd[1:])
        elif cmd[0] == "wg":
            rc, out, err = 0, f"interface: {cmd[-1]}\n", ""
        elif cmd[0] == "iptables":
            rc, out, err = self._iptables(cmd[1:])
        elif cmd[0] == "sysctl":
            key, value = cmd[-1].split("=")
            self.sysctl[key] = value
            rc, out, err = 0, f"{key} = {value}\n", ""
        elif cmd[0] == "openvpn":
            rc, out, err = self._openvpn(cmd[1:])
        elif cmd[0].endswith("easyrsa"):
            if not Path(cmd[0]).is_file():
                raise FileNotFoundError(cmd[0])
            rc, out, err = self._easyrsa(cmd[1:], Path(env["EASYRSA_PKI"]))
        else:
            raise FileNotFoundError(cmd[0])
        return subprocess.CompletedProcess(cmd, rc, out, err)

    # -- ip / iproute2 --

    def _ip(self, args):
        if args[:2] == ["link", "del"]:
            name = args[-1]
            if name not in self.links:
                return 1, "", f'Cannot find device "{name}"'
            del self.links[name]
            return 0, "", ""
        if args[:2] == ["link", "add"]:
            name = args[2]
            if name in self.links:
                return 2, "", "RTNETLINK answers: File exists"
            self.links[name] = {"type": args[-1], "addresses": [], "mtu": None, "up": False}
            return 0, "", ""
        if args[:2] == ["address", "add"]:
            link = self.links.get(args[-1])
            if link is None:
                return 1, "", "Cannot find device"
            link["addresses"].append(args[2])
            return 0, "", ""
        if args[:2] == ["address", "show"]:
            return 0, f"5: {args[-1]}: <POINTOPOINT,NOARP,UP,LOWER_UP>\n", ""
        if args[:3] == ["link", "set", "mtu"]:
            self.links[args[-1]]["mtu"] = int(args[3])
            return 0, "", ""
        if args[:3] == ["link", "set", "up"]:
            self.links[args[-1]]["up"] = True
            return 0, "", ""
        if args[:3] == ["-j", "rule", "show"]:
            return 0, json.dumps(BASE_RULES[:1] + self.ip_rules + BASE_RULES[1:]), ""
        if args[:2] == ["rule", "add"]:
            self.ip_rules.append({
                "priority": 32765 - len(self.ip_rules),
                "src": "all",
                "fwmark": args[args.index("fwmark") + 1],
                "table": args[args.index("table") + 1],
            })
            return 0, "", ""
        if args[:3] == ["-j", "route", "show"]:
            return 0, json.dumps(self.routes.get(args[-1], [])), ""
        if args[:1] == ["route"] and args[1] in ("add", "replace"):
            table = args[args.index("table") + 1]
            routes = self.routes.setdefault(table, [])
            existing = [r for r in routes if r["dst"] == "default"]
            if existing and args[1] == "add":
                return 2, "", "RTNETLINK answers: File exists"
            for r in existing:
                routes.remove(r)
            routes.append({"dst": "default", "dev": args[args.index("dev") + 1], "scope": "link", "flags": []})
            return 0, "", ""
        return 2, "", f"fake ip: unsupported {args}"

    # -- iptables --

    def _iptables(self, args):
        table = "filter"
        if args[0] == "-t":
            table, args = args[1], args[2:]
        action, chain, spec = args[0], args[1], tuple(args[2:])
        rules = self.iptables.setdefault((table, chain), [])
        if action == "-C":
            return (0, "", "") if spec in rules else (1, "", "iptables: Bad rule (does a matching rule exist in that chain?).")
        if action == "-A":
            rules.append(spec)
            return 0, "", ""
        if action == "-S":
            lines = [f"-P {chain} ACCEPT"] + [f"-A {chain} {' '.join(s)}" for s in rules]
            return 0, "\n".join(lines) + "\n", ""
        return 2, "", f"fake iptables: unsupported {args}"

    # -- openvpn / easyrsa --

    def _openvpn(self, args):
        if args[:2] == ["--genkey", "secret"]:
            Path(args[2]).write_text(_pem("OpenVPN Static key V1", uuid.uuid4().hex))
            return 0, "", ""
        return 1, "", "fake openvpn: unsupported"

    def _easyrsa(self, args, pki):
        cmd = args[0]
        if cmd == "init-pki":
            for sub in ("private", "reqs", "issued"):
                (pki / sub).mkdir(parents=True, exist_ok=True)
        elif cmd == "build-ca":
            (pki / "ca.crt").write_text(_pem("CERTIFICATE", uuid.uuid4().hex))
            (pki / "private" / "ca.key").write_text(_pem("PRIVATE KEY", uuid.uuid4().hex))
        elif cmd == "gen-req":
            name = args[1]
            (pki / "private" / f"{name}.key").write_text(_pem("PRIVATE KEY", uuid.uuid4().hex))
            (pki / "reqs" / f"{name}.req").write_text(_pem("CERTIFICATE REQUEST", uuid.uuid4().hex))
        elif cmd == "sign-req":
            cert_type, name = args[1], args[2]
            if not (pki / "reqs" / f"{name}.req").is_file() or not (pki / "ca.crt").is_file():
                return 1, "", "Easy-RSA error: no request"
            dump = f"Certificate:\n    Data:\n        Subject: CN={name} ({cert_type})\n"
            (pki / "issued" / f"{name}.crt").write_text(_pem("CERTIFICATE", uuid.uuid4().hex, dump))
        elif cmd == "gen-dh":
            (pki / "dh.pem").write_text(_pem("DH PARAMETERS", uuid.uuid4().hex))
        else:
            return 1, "", f"fake easyrsa: unsupported {args}"
        return 0, "", ""


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def wg_conf(tmp_path):
    path = tmp_path / "wireguard" / "wg0.conf"
    path.parent.mkdir()
    path.write_text(WG_CONF)
    return path


@pytest.fixture
def easyrsa_source(tmp_path):
    src = tmp_path / "share" / "easy-rsa"
    src.mkdir(parents=True)
    (src / "easyrsa").write_text("#!/bin/sh\n")
    (src / "easyrsa").chmod(0o755)
    (src / "openssl-easyrsa.cnf").write_text("# fake\n")
    return src


@pytest.fixture
def gateway_env(tmp_path, monkeypatch, wg_conf, easyrsa_source):
    """Environment for a full gateway run rooted in tmp_path."""
    monkeypatch.chdir(tmp_path)
    env = {
        "VPN_PUBLIC_HOST": "vpn.example.org",
        "WG_CONF": str(wg_conf),
        "OVPN_SERVER_DIR": str(tmp_path / "openvpn" / "server"),
        "OVPN_SERVER_CONF": str(tmp_path / "openvpn" / "server" / "server.conf"),
        "EASYRSA_DIR": str(tmp_path / "openvpn" / "easy-rsa"),
        "EASYRSA_SOURCE_DIR": str(easyrsa_source),
        "PEER_OUTPUT_DIR": str(tmp_path / "vpn-data"),
        "RT_TABLES_PATH": str(tmp_path / "iproute2" / "rt_tables"),
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield env
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def detach_log_handlers():
    # setup_logging() binds handlers to the streams of the current test
    yield
    root = logging.getLogger()
    for handler in logs._installed:
        root.removeHandler(handler)
    logs._installed.clear()
