# src/gw_backend/settings.py
from __future__ import annotations

import ipaddress
import logging
from functools import lru_cache
from typing import List, Literal, Tuple

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from .errors import ConfigurationError
from .pki import NAME_RE

logger = logging.getLogger(__name__)

MISSING_PUBLIC_HOST = (
    "VPN_PUBLIC_HOST environment variable must be set (external hostname or IP)."
)
RESERVED_TABLE_IDS = {0, 253, 254, 255}  # unspec, default, main, local


class Settings(BaseSettings):
    # Where downstream peers reach this gateway. Required, no default.
    VPN_PUBLIC_HOST: str

    # Upstream WireGuard tunnel
    WG_INTERFACE: str = "wg0"
    WG_CONF: str = "/etc/wireguard/wg0.conf"

    # Downstream OpenVPN server
    OVPN_NET: str = "10.8.0.0/24"
    OVPN_PORT: int = 1194
    OVPN_PROTO: Literal["udp", "tcp"] = "udp"
    OVPN_DEV: str = "tun0"
    OVPN_SERVER_NAME: str = "server"
    OVPN_SERVER_DIR: str = "/etc/openvpn/server"
    OVPN_SERVER_CONF: str = "/etc/openvpn/server/server.conf"
    OVPN_DNS: str = "1.1.1.1,1.0.0.1"
    OVPN_CIPHER: str = "AES-256-GCM"
    OVPN_AUTH: str = "SHA256"
    OVPN_TLS_VERSION_MIN: str = "1.2"
    OVPN_KEEPALIVE: str = "10 120"  # ping interval, restart timeout (seconds)

    # PKI (easy-rsa)
    EASYRSA_DIR: str = "/etc/openvpn/easy-rsa"
    EASYRSA_SOURCE_DIR: str = "/usr/local/share/easy-rsa"

    # Peer profiles
    CLIENT_NAMES: str = "client1"
    PEER_OUTPUT_DIR: str = "/vpn-data"
    CLIENT_TUN_MTU: int = 1200  # fits inside a WireGuard MTU of 1280
    CLIENT_MSSFIX: int = 1160

    # Policy routing / classification
    RT_TABLE_ID: int = 100
    RT_TABLE_NAME: str = "vpnwg"
    FWMARK: int = 0x1
    RT_TABLES_PATH: str = "/etc/iproute2/rt_tables"
    FORWARD_DROP_UNMATCHED: bool = False

    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }

    @field_validator("VPN_PUBLIC_HOST")
    @classmethod
    def _public_host_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError(MISSING_PUBLIC_HOST)
        return v

    @field_validator("OVPN_NET")
    @classmethod
    def _valid_ipv4_network(cls, v: str) -> str:
        return str(ipaddress.IPv4Network(v.strip()))

    @field_validator("FWMARK", mode="before")
    @classmethod
    def _parse_mark(cls, v):
        if isinstance(v, str):
            v = int(v.strip(), 0)
        if v <= 0:
            raise ValueError("FWMARK must be a positive integer")
        return v

    @field_validator("RT_TABLE_ID")
    @classmethod
    def _usable_table_id(cls, v: int) -> int:
        if v in RESERVED_TABLE_IDS or v < 0:
            raise ValueError(f"routing table id {v} is reserved")
        return v

    @field_validator("CLIENT_NAMES")
    @classmethod
    def _valid_client_names(cls, v: str) -> str:
        for name in (n.strip() for n in v.split(",")):
            if name and not NAME_RE.match(name):
                raise ValueError(f"invalid client name {name!r}")
        return v

    @field_validator("OVPN_KEEPALIVE")
    @classmethod
    def _two_ints(cls, v: str) -> str:
        parts = v.split()
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError("OVPN_KEEPALIVE must be '<interval> <timeout>'")
        return " ".join(parts)

    @model_validator(mode="after")
    def _peers_distinct_from_server(self) -> "Settings":
        if self.OVPN_SERVER_NAME in self.client_names:
            raise ValueError(
                f"CLIENT_NAMES: peer name '{self.OVPN_SERVER_NAME}' clashes with OVPN_SERVER_NAME"
            )
        return self

    @property
    def client_names(self) -> List[str]:
        return [n.strip() for n in self.CLIENT_NAMES.split(",") if n.strip()]

    @property
    def dns_servers(self) -> List[str]:
        return [d.strip() for d in self.OVPN_DNS.split(",") if d.strip()]

    @property
    def keepalive(self) -> Tuple[int, int]:
        interval, timeout = self.OVPN_KEEPALIVE.split()
        return int(interval), int(timeout)

    @property
    def pki_dir(self) -> str:
        return f"{self.EASYRSA_DIR.rstrip('/')}/pki"


def load_settings(**overrides) -> Settings:
    """Build settings from the environment, turning validation errors into
    a ConfigurationError with a readable message."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field = ".".join(str(p) for p in err.get("loc", ()))
            if field == "VPN_PUBLIC_HOST":
                problems.append(MISSING_PUBLIC_HOST)
            elif field:
                problems.append(f"{field}: {err.get('msg')}")
            else:
                # cross-field checks carry the field names in their message
                problems.append(str(err.get("msg")))
        raise ConfigurationError("; ".join(problems)) from e


@lru_cache()
def get_settings() -> Settings:
    settings = load_settings()
    logger.debug(f"Loaded settings: VPN_PUBLIC_HOST={settings.VPN_PUBLIC_HOST}")
    return settings
