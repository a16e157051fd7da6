# src/gw_backend/ipam.py
from __future__ import annotations
import ipaddress
from typing import Tuple


def pool_network(cidr: str) -> Tuple[str, str]:
    """
    '10.8.0.0/24' -> ('10.8.0.0', '255.255.255.0'), the form the
    OpenVPN 'server' directive expects.
    """
    net = ipaddress.IPv4Network(cidr)
    return str(net.network_address), str(net.netmask)


def server_address(cidr: str) -> str:
    # OpenVPN's server directive takes the first host for itself
    net = ipaddress.IPv4Network(cidr)
    return str(next(net.hosts()))
