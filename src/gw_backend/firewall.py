# src/gw_backend/firewall.py
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import CommandError, RuleCheckError, RuleInstallError
from .system import CommandRunner

logger = logging.getLogger(__name__)


# -----------------------------
# Data
# -----------------------------

@dataclass
class ClassificationResult:
    subnet: str
    upstream_iface: str
    downstream_iface: str
    backend: str = "iptables"
    added: List[str] = field(default_factory=list)
    present: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Rule:
    label: str
    table: str
    chain: str
    spec: Tuple[str, ...]

    def argv(self, action: str) -> List[str]:
        return ["iptables", "-t", self.table, action, self.chain, *self.spec]


# -----------------------------
# Low-level helpers
# -----------------------------

# iptables -C: 0 = rule present, 1 = rule absent, anything else = the
# check itself failed (bad table, missing module, ...)
CHECK_PRESENT = 0
CHECK_ABSENT = 1


def _rule_exists(runner: CommandRunner, rule: Rule) -> bool:
    try:
        result = runner.run(rule.argv("-C"), check=False)
    except CommandError as e:
        raise RuleCheckError(f"Cannot check {rule.label} rule: {e}") from e
    if result.returncode == CHECK_PRESENT:
        return True
    if result.returncode == CHECK_ABSENT:
        return False
    raise RuleCheckError(
        f"Cannot check {rule.label} rule: '{' '.join(rule.argv('-C'))}' "
        f"exited with status {result.returncode}: {result.stderr.strip()}"
    )


def _ensure_rule(runner: CommandRunner, rule: Rule, res: ClassificationResult) -> bool:
    if _rule_exists(runner, rule):
        logger.info(f"iptables {rule.label} rule already present")
        res.present.append(rule.label)
        return False
    try:
        runner.run(rule.argv("-A"))
    except CommandError as e:
        raise RuleInstallError(f"Cannot add {rule.label} rule: {e}") from e
    logger.info(f"iptables {rule.label} rule added")
    res.added.append(rule.label)
    return True


def classification_rules(subnet: str, mark: int, downstream_if: str, upstream_if: str) -> List[Rule]:
    net = str(ipaddress.IPv4Network(subnet))
    return [
        # stamp everything the downstream peers send, before routing decision
        Rule("mark", "mangle", "PREROUTING",
             ("-s", net, "-j", "MARK", "--set-mark", hex(mark))),
        Rule("forward-out", "filter", "FORWARD",
             ("-i", downstream_if, "-o", upstream_if, "-s", net, "-j", "ACCEPT")),
        Rule("forward-in", "filter", "FORWARD",
             ("-i", upstream_if, "-o", downstream_if, "-d", net, "-j", "ACCEPT")),
        # only egress via the upstream tunnel is translated: if it is down,
        # marked packets are dropped instead of leaking out another interface
        Rule("masquerade", "nat", "POSTROUTING",
             ("-s", net, "-o", upstream_if, "-j", "MASQUERADE")),
    ]


def hardening_rules(downstream_if: str) -> List[Rule]:
    return [
        Rule("drop-unmatched-in", "filter", "FORWARD", ("-i", downstream_if, "-j", "DROP")),
        Rule("drop-unmatched-out", "filter", "FORWARD", ("-o", downstream_if, "-j", "DROP")),
    ]


# -----------------------------
# Public API
# -----------------------------

def install_classification(
    subnet: str,
    mark: int,
    downstream_if: str,
    upstream_if: str,
    runner: CommandRunner,
    drop_unmatched: bool = False,
) -> ClassificationResult:
    logger.info("Configuring iptables rules...")
    res = ClassificationResult(subnet=subnet, upstream_iface=upstream_if, downstream_iface=downstream_if)

    for rule in classification_rules(subnet, mark, downstream_if, upstream_if):
        _ensure_rule(runner, rule, res)

    if drop_unmatched:
        # appended after the accepts, so only unmatched forwarding is dropped
        for rule in hardening_rules(downstream_if):
            _ensure_rule(runner, rule, res)
    else:
        logger.info(f"Forwarding outside {subnet} <-> {upstream_if} left to the host FORWARD policy")

    return res


def nat_egress_interfaces(runner: CommandRunner, subnet: str) -> Optional[List[str]]:
    """
    Interfaces for which a MASQUERADE rule covers the subnet, from
    'iptables -t nat -S POSTROUTING'. None if the table cannot be listed.
    """
    try:
        out = runner.run(["iptables", "-t", "nat", "-S", "POSTROUTING"]).stdout
    except CommandError:
        return None
    net = str(ipaddress.IPv4Network(subnet))
    interfaces = []
    for line in out.splitlines():
        parts = line.split()
        if "MASQUERADE" not in parts or "-s" not in parts:
            continue
        if parts[parts.index("-s") + 1] != net:
            continue
        if "-o" in parts:
            interfaces.append(parts[parts.index("-o") + 1])
        else:
            interfaces.append("*")
    return interfaces
