
# src/gw_backend/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class Outcome(str, Enum):
    CREATED = "created"
    REUSED = "reused"


@dataclass
class Credential:
    name: str
    key_path: Path
    cert_path: Path
    outcome: Outcome = Outcome.REUSED


@dataclass
class UpstreamPeer:
    public_key: str
    preshared_key: Optional[str] = None
    allowed_ips: List[str] = field(default_factory=list)
    endpoint: Optional[str] = None            # ex "203.0.113.7:51820"
    persistent_keepalive: Optional[int] = None


@dataclass
class UpstreamDescriptor:
    private_key: str
    addresses: List[str]                      # ex ["10.66.0.2/32", "fd00::2/128"]
    peers: List[UpstreamPeer]
    mtu: Optional[int] = None
    listen_port: Optional[int] = None
    fwmark: Optional[str] = None


@dataclass
class RoutingDomain:
    name: str                                 # ex "vpnwg"
    table_id: int                             # ex 100
    interface: str                            # ex "wg0"
    mark: int                                 # ex 0x1

    @property
    def mark_hex(self) -> str:
        return hex(self.mark)


@dataclass
class ServerParams:
    port: int
    proto: str                                # "udp" | "tcp"
    dev: str                                  # ex "tun0"
    network: str                              # ex "10.8.0.0"
    netmask: str                              # ex "255.255.255.0"
    ca_path: Path
    cert_path: Path
    key_path: Path
    dh_path: Path
    tls_auth_path: Path
    cipher: str = "AES-256-GCM"
    auth: str = "SHA256"
    tls_version_min: str = "1.2"
    dns: List[str] = field(default_factory=list)
    keepalive: Tuple[int, int] = (10, 120)
    user: str = "nobody"
    group: str = "nogroup"
    status_log: str = "/var/log/openvpn-status.log"
    log_append: str = "/var/log/openvpn.log"
    verb: int = 3


@dataclass
class ProfileOptions:
    cipher: str = "AES-256-GCM"
    auth: str = "SHA256"
    tls_version_min: str = "1.2"
    tun_mtu: Optional[int] = 1200
    mssfix: Optional[int] = 1160
    verb: int = 3
