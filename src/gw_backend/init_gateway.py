# src/gw_backend/init_gateway.py

from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, List

from .firewall import install_classification, nat_egress_interfaces
from .ipam import server_address
from .models import ProfileOptions, RoutingDomain
from .openvpn import server_params_from_settings, write_server_config
from .pki import CredentialStore
from .profile import write_peer_profile
from .routing import check_rt_table_entry, enable_ip_forwarding, ensure_routing_domain
from .settings import Settings
from .system import CommandRunner
from .wireguard import bring_up

logger = logging.getLogger(__name__)


def build_store(settings: Settings, runner: CommandRunner) -> CredentialStore:
    return CredentialStore(
        easyrsa_dir=settings.EASYRSA_DIR,
        runner=runner,
        source_dir=settings.EASYRSA_SOURCE_DIR,
        server_name=settings.OVPN_SERVER_NAME,
    )


def profile_options(settings: Settings) -> ProfileOptions:
    return ProfileOptions(
        cipher=settings.OVPN_CIPHER,
        auth=settings.OVPN_AUTH,
        tls_version_min=settings.OVPN_TLS_VERSION_MIN,
        tun_mtu=settings.CLIENT_TUN_MTU,
        mssfix=settings.CLIENT_MSSFIX,
    )


def provision_server_credentials(settings: Settings, store: CredentialStore) -> Dict[str, Path]:
    store.ensure_easyrsa()
    store.ensure_ca()
    store.ensure_dh_params()
    store.ensure_tls_auth_key()
    store.ensure_server_credential()
    return store.deploy_server_credentials(settings.OVPN_SERVER_DIR)


def issue_peer(settings: Settings, store: CredentialStore, name: str) -> Path:
    store.ensure_peer_credential(name)
    return write_peer_profile(
        store,
        name,
        endpoint_host=settings.VPN_PUBLIC_HOST,
        endpoint_port=settings.OVPN_PORT,
        protocol=settings.OVPN_PROTO,
        output_dir=settings.PEER_OUTPUT_DIR,
        options=profile_options(settings),
    )


def check_fail_closed(settings: Settings, runner: CommandRunner) -> None:
    interfaces = nat_egress_interfaces(runner, settings.OVPN_NET)
    if interfaces is None:
        logger.warning("Could not list NAT rules to verify fail-closed egress")
        return
    leaks = [i for i in interfaces if i != settings.WG_INTERFACE]
    for iface in leaks:
        where = "any interface" if iface == "*" else iface
        logger.warning(
            f"{settings.OVPN_NET} is also masqueraded via {where}: "
            f"traffic may leave outside {settings.WG_INTERFACE} if it goes down"
        )


def init_gateway(settings: Settings, runner: CommandRunner) -> Path:
    """
    One-shot provisioning, in order. Each step either completes or raises;
    returns the OpenVPN server config path, ready to launch.
    """
    logger.info(f"Starting VPN gateway with VPN_PUBLIC_HOST={settings.VPN_PUBLIC_HOST}")

    # 0. configuration conflicts, before any kernel state changes
    check_rt_table_entry(settings.RT_TABLE_ID, settings.RT_TABLE_NAME, Path(settings.RT_TABLES_PATH))

    # 1. upstream tunnel
    upstream_if = bring_up(settings.WG_CONF, settings.WG_INTERFACE, runner)

    # 2. PKI + server credentials
    store = build_store(settings, runner)
    deployed = provision_server_credentials(settings, store)

    # 3. OpenVPN server config
    params = server_params_from_settings(settings, deployed)
    server_conf = write_server_config(params, settings.OVPN_SERVER_CONF)
    logger.info(f"OpenVPN server will serve {settings.OVPN_NET} from {server_address(settings.OVPN_NET)}")

    # 4. policy routing: only OpenVPN clients go through the tunnel
    enable_ip_forwarding(runner)
    domain = RoutingDomain(
        name=settings.RT_TABLE_NAME,
        table_id=settings.RT_TABLE_ID,
        interface=upstream_if,
        mark=settings.FWMARK,
    )
    ensure_routing_domain(domain, runner, Path(settings.RT_TABLES_PATH))

    # 5. marking, forwarding, NAT
    install_classification(
        settings.OVPN_NET,
        settings.FWMARK,
        downstream_if=settings.OVPN_DEV,
        upstream_if=upstream_if,
        runner=runner,
        drop_unmatched=settings.FORWARD_DROP_UNMATCHED,
    )
    check_fail_closed(settings, runner)

    # 6. peer credentials and profiles
    profiles: List[Path] = []
    for name in settings.client_names:
        logger.info(f"Generating client certificate {name} (if needed)...")
        profiles.append(issue_peer(settings, store, name))
    if not profiles:
        logger.warning("CLIENT_NAMES is empty: no peer profile written")

    return server_conf
