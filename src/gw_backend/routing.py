# src/gw_backend/routing.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CommandError, ConfigurationError, RuleCheckError, RuleInstallError
from .models import RoutingDomain
from .system import CommandRunner

logger = logging.getLogger(__name__)

DEFAULT_RT_TABLES = Path("/etc/iproute2/rt_tables")


# -----------------------------
# Low-level helpers
# -----------------------------

def _ip_json(runner: CommandRunner, *args: str) -> List[Dict[str, Any]]:
    """
    'ip -j ...' as parsed JSON. A failing or unparseable check means we
    cannot know whether an insert would duplicate something: fatal.
    """
    cmd = ["ip", "-j", *args]
    try:
        out = runner.run(cmd).stdout.strip()
    except CommandError as e:
        raise RuleCheckError(f"Cannot inspect current state: {e}") from e
    if not out:
        return []
    try:
        data = json.loads(out)
    except json.JSONDecodeError as e:
        raise RuleCheckError(f"Unparseable output from '{' '.join(cmd)}': {e}") from e
    if not isinstance(data, list):
        raise RuleCheckError(f"Unexpected output from '{' '.join(cmd)}'")
    return data


def _ip(runner: CommandRunner, *args: str) -> None:
    try:
        runner.run(["ip", *args])
    except CommandError as e:
        raise RuleInstallError(str(e)) from e


def _normalize_mark(value: Any) -> Optional[int]:
    if value is None:
        return None
    # "0x1" or "0x1/0xffffffff"
    mark = str(value).split("/")[0]
    try:
        return int(mark, 0)
    except ValueError:
        return None


def read_rt_tables(path: Path) -> Dict[int, str]:
    entries: Dict[int, str] = {}
    if not path.exists():
        return entries
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            entries[int(parts[0], 0)] = parts[1]
        except ValueError:
            continue
    return entries


# -----------------------------
# Public API
# -----------------------------

def check_rt_table_entry(table_id: int, name: str, path: Path = DEFAULT_RT_TABLES) -> bool:
    """
    True if '<id> <name>' is already registered. Read-only: run before
    anything is mutated so a conflicting registry stops startup early.
    """
    path = Path(path)
    try:
        entries = read_rt_tables(path)
    except OSError as e:
        raise RuleCheckError(f"Cannot read {path}: {e}") from e

    if entries.get(table_id) == name:
        return True
    if table_id in entries:
        raise ConfigurationError(
            f"Routing table id {table_id} is already registered as '{entries[table_id]}' in {path}"
        )
    for other_id, other_name in entries.items():
        if other_name == name:
            raise ConfigurationError(f"Routing table name '{name}' is already bound to id {other_id} in {path}")
    return False


def ensure_rt_table_entry(table_id: int, name: str, path: Path = DEFAULT_RT_TABLES) -> bool:
    """
    Append '<id> <name>' to the routing table registry if missing.
    Never removes or renames an existing entry.
    """
    path = Path(path)
    if check_rt_table_entry(table_id, name, path):
        logger.info(f"Routing table {table_id} {name} already registered in {path}")
        return False

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        prefix = ""
        if path.exists():
            current = path.read_text(encoding="utf-8")
            if current and not current.endswith("\n"):
                prefix = "\n"
        with path.open("a", encoding="utf-8") as f:
            f.write(f"{prefix}{table_id} {name}\n")
    except OSError as e:
        raise RuleInstallError(f"Cannot register routing table in {path}: {e}") from e
    logger.info(f"Registered routing table {table_id} {name} in {path}")
    return True


def mark_rule_exists(runner: CommandRunner, domain: RoutingDomain) -> bool:
    for rule in _ip_json(runner, "rule", "show"):
        if _normalize_mark(rule.get("fwmark")) != domain.mark:
            continue
        if str(rule.get("table")) in (domain.name, str(domain.table_id)):
            return True
    return False


def ensure_mark_rule(runner: CommandRunner, domain: RoutingDomain) -> bool:
    if mark_rule_exists(runner, domain):
        logger.info(f"Rule 'fwmark {domain.mark_hex} lookup {domain.name}' already present")
        return False
    _ip(runner, "rule", "add", "fwmark", domain.mark_hex, "table", domain.name)
    logger.info(f"Added rule 'fwmark {domain.mark_hex} lookup {domain.name}'")
    return True


def ensure_default_route(runner: CommandRunner, domain: RoutingDomain) -> bool:
    routes = _ip_json(runner, "route", "show", "table", domain.name)
    default = next((r for r in routes if r.get("dst") == "default"), None)

    if default is not None and default.get("dev") == domain.interface:
        logger.info(f"Default route via {domain.interface} already present in table {domain.name}")
        return False

    if default is not None:
        logger.warning(
            f"Table {domain.name} has a default route via {default.get('dev')}; "
            f"replacing it with {domain.interface}"
        )
        _ip(runner, "route", "replace", "default", "dev", domain.interface, "table", domain.name)
    else:
        _ip(runner, "route", "add", "default", "dev", domain.interface, "table", domain.name)
    logger.info(f"Default route via {domain.interface} installed in table {domain.name}")
    return True


def ensure_routing_domain(
    domain: RoutingDomain,
    runner: CommandRunner,
    rt_tables_path: Path = DEFAULT_RT_TABLES,
) -> Dict[str, bool]:
    """
    Isolated table reachable only by marked packets. Purely additive:
    the main table is never read nor written.
    """
    logger.info(
        f"Configuring policy routing: fwmark {domain.mark_hex} -> table "
        f"{domain.name} ({domain.table_id}) -> {domain.interface}"
    )
    changes = {
        "rt_table": ensure_rt_table_entry(domain.table_id, domain.name, rt_tables_path),
        "rule": ensure_mark_rule(runner, domain),
        "route": ensure_default_route(runner, domain),
    }
    return changes


def enable_ip_forwarding(runner: CommandRunner) -> None:
    logger.info("Enabling IPv4 forwarding...")
    try:
        runner.run(["sysctl", "-w", "net.ipv4.ip_forward=1"])
    except CommandError as e:
        raise RuleInstallError(f"Cannot enable IPv4 forwarding: {e}") from e
