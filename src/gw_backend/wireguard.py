# src/gw_backend/wireguard.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import CommandError, ConfigurationError, InterfaceError
from .models import UpstreamDescriptor, UpstreamPeer
from .system import CommandRunner

logger = logging.getLogger(__name__)

SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
KEY_VALUE_RE = re.compile(r"^\s*([A-Za-z]+)\s*=\s*(.*?)\s*$")
TABLE_OFF = "Table = off"


# ---------- Lecture du descriptor ----------

def _strip_comment(line: str) -> str:
    return line.split("#", 1)[0]


def _split_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _sections(text: str) -> List[Tuple[str, Dict[str, List[str]]]]:
    """
    Returns [(section_name, {lowercased_key: [values...]})] in file order.
    Keys may repeat (Address, AllowedIPs), so values are lists.
    """
    sections: List[Tuple[str, Dict[str, List[str]]]] = []
    current: Optional[Dict[str, List[str]]] = None

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = _strip_comment(raw).strip()
        if not line:
            continue
        m = SECTION_RE.match(line)
        if m:
            current = {}
            sections.append((m.group(1).strip().lower(), current))
            continue
        m = KEY_VALUE_RE.match(line)
        if not m:
            raise ConfigurationError(f"Malformed line {lineno} in WireGuard config: {raw.strip()!r}")
        if current is None:
            raise ConfigurationError(f"Line {lineno} in WireGuard config is outside any section")
        current.setdefault(m.group(1).lower(), []).append(m.group(2))

    return sections


def _first(values: Dict[str, List[str]], key: str) -> Optional[str]:
    vals = values.get(key)
    return vals[0] if vals else None


def _int_or_fail(value: Optional[str], what: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{what} must be an integer, got {value!r}")


def parse_descriptor(text: str) -> UpstreamDescriptor:
    sections = _sections(text)

    iface = next((vals for name, vals in sections if name == "interface"), None)
    if iface is None:
        raise ConfigurationError("WireGuard config has no [Interface] section")

    private_key = _first(iface, "privatekey")
    if not private_key:
        raise ConfigurationError("WireGuard config [Interface] has no PrivateKey")

    addresses: List[str] = []
    for value in iface.get("address", []):
        addresses.extend(_split_list(value))
    if not addresses:
        raise ConfigurationError("WireGuard config [Interface] has no Address")

    peers: List[UpstreamPeer] = []
    for index, (name, vals) in enumerate((s for s in sections if s[0] == "peer"), start=1):
        public_key = _first(vals, "publickey")
        if not public_key:
            raise ConfigurationError(f"WireGuard config [Peer] #{index} has no PublicKey")
        allowed: List[str] = []
        for value in vals.get("allowedips", []):
            allowed.extend(_split_list(value))
        peers.append(UpstreamPeer(
            public_key=public_key,
            preshared_key=_first(vals, "presharedkey"),
            allowed_ips=allowed,
            endpoint=_first(vals, "endpoint"),
            persistent_keepalive=_int_or_fail(_first(vals, "persistentkeepalive"), "PersistentKeepalive"),
        ))
    if not peers:
        raise ConfigurationError("WireGuard config has no [Peer] section")

    return UpstreamDescriptor(
        private_key=private_key,
        addresses=addresses,
        peers=peers,
        mtu=_int_or_fail(_first(iface, "mtu"), "MTU"),
        listen_port=_int_or_fail(_first(iface, "listenport"), "ListenPort"),
        fwmark=_first(iface, "fwmark"),
    )


def load_descriptor(path: Path) -> UpstreamDescriptor:
    if not path.is_file():
        raise ConfigurationError(
            f"WireGuard config {path} not found. Mount it from the host "
            f"(e.g. ./wireguard/wg0.conf:/etc/wireguard/wg0.conf)."
        )
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read WireGuard config {path}: {e}") from e
    return parse_descriptor(text)


# ---------- Table = off ----------

def apply_table_off(text: str) -> str:
    """
    Returns text whose [Interface] section carries 'Table = off'.
    Unchanged text if it already does.
    """
    lines = text.splitlines(keepends=True)

    start = None
    for i, line in enumerate(lines):
        m = SECTION_RE.match(_strip_comment(line))
        if m and m.group(1).strip().lower() == "interface":
            start = i
            break
    if start is None:
        raise ConfigurationError("WireGuard config has no [Interface] section")

    end = len(lines)
    for i in range(start + 1, len(lines)):
        if SECTION_RE.match(_strip_comment(lines[i])):
            end = i
            break

    for i in range(start + 1, end):
        m = KEY_VALUE_RE.match(_strip_comment(lines[i]))
        if m and m.group(1).lower() == "table":
            if m.group(2).lower() == "off":
                return text
            logger.warning(f"Replacing 'Table = {m.group(2)}' with '{TABLE_OFF}' in [Interface]")
            newline = "\n" if lines[i].endswith("\n") else ""
            lines[i] = TABLE_OFF + newline
            return "".join(lines)

    # insert after the last non-blank line of [Interface], ahead of the
    # blank lines separating it from the next section
    insert_at = end
    while insert_at > start + 1 and not lines[insert_at - 1].strip():
        insert_at -= 1
    if not lines[insert_at - 1].endswith("\n"):
        lines[insert_at - 1] += "\n"
    lines.insert(insert_at, TABLE_OFF + "\n")
    return "".join(lines)


def ensure_table_off(path: Path) -> bool:
    """
    Rewrites the descriptor so wg-quick-style tooling never installs its
    routes in the main table. Returns True if the file was written.
    """
    text = path.read_text(encoding="utf-8")
    updated = apply_table_off(text)
    if updated == text:
        logger.info(f"'{TABLE_OFF}' already present in {path}")
        return False

    logger.warning(f"Adding '{TABLE_OFF}' to [Interface] section in {path}...")
    try:
        path.write_text(updated, encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot add '{TABLE_OFF}' to {path}: {e}") from e
    return True


# ---------- Rendu ----------

def render_stripped_conf(descriptor: UpstreamDescriptor) -> str:
    """
    Only the keys wg(8) understands, the equivalent of 'wg-quick strip':
    no Address, MTU, DNS, Table or hooks.
    """
    lines = [
        "[Interface]",
        f"PrivateKey = {descriptor.private_key}",
    ]
    if descriptor.listen_port is not None:
        lines.append(f"ListenPort = {descriptor.listen_port}")
    if descriptor.fwmark:
        lines.append(f"FwMark = {descriptor.fwmark}")

    for p in descriptor.peers:
        lines += ["", "[Peer]", f"PublicKey = {p.public_key}"]
        if p.preshared_key:
            lines.append(f"PresharedKey = {p.preshared_key}")
        if p.allowed_ips:
            lines.append(f"AllowedIPs = {', '.join(p.allowed_ips)}")
        if p.endpoint:
            lines.append(f"Endpoint = {p.endpoint}")
        if p.persistent_keepalive is not None:
            lines.append(f"PersistentKeepalive = {p.persistent_keepalive}")

    return "\n".join(lines) + "\n"


# ---------- Application système ----------

def _remove_stale_interface(runner: CommandRunner, interface: str) -> None:
    try:
        if runner.succeeds(["ip", "link", "del", "dev", interface]):
            logger.warning(f"Removed stale interface {interface} left by a previous run")
    except CommandError as e:
        logger.warning(f"Could not remove stale interface {interface}: {e}")


def _assign_addresses(runner: CommandRunner, interface: str, addresses: List[str]) -> List[str]:
    assigned = []
    for addr in addresses:
        try:
            runner.run(["ip", "address", "add", addr, "dev", interface])
            assigned.append(addr)
        except CommandError as e:
            logger.warning(f"Failed to assign {addr} to {interface}: {e}")
    return assigned


def _log_status(runner: CommandRunner, interface: str) -> None:
    for cmd in (["ip", "address", "show", "dev", interface], ["wg", "show", interface]):
        try:
            result = runner.run(cmd, check=False)
        except CommandError:
            continue
        for line in result.stdout.splitlines():
            logger.debug(line)


def bring_up(descriptor_path, interface: str, runner: CommandRunner) -> str:
    path = Path(descriptor_path)
    descriptor = load_descriptor(path)
    ensure_table_off(path)

    logger.info(f"Bringing up WireGuard interface {interface} manually (no wg-quick)...")
    _remove_stale_interface(runner, interface)

    try:
        runner.run(["ip", "link", "add", interface, "type", "wireguard"])
        runner.run(["wg", "setconf", interface, "/dev/stdin"], input=render_stripped_conf(descriptor))
    except CommandError as e:
        raise InterfaceError(f"Cannot create WireGuard interface {interface}: {e}") from e

    assigned = _assign_addresses(runner, interface, descriptor.addresses)
    if not assigned:
        raise InterfaceError(f"No address could be assigned to {interface}")

    if descriptor.mtu is not None:
        try:
            runner.run(["ip", "link", "set", "mtu", str(descriptor.mtu), "dev", interface])
        except CommandError as e:
            logger.warning(f"Failed to set MTU {descriptor.mtu} on {interface}: {e}")

    try:
        runner.run(["ip", "link", "set", "up", "dev", interface])
    except CommandError as e:
        raise InterfaceError(f"Cannot set {interface} up: {e}") from e

    logger.info(f"WireGuard {interface} is up with {', '.join(assigned)}")
    _log_status(runner, interface)
    return interface
