# src/gw_backend/profile.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from core.config_builder import generate_client_config
from core.keys import read_pem_block, read_secret

from .errors import CredentialError
from .models import ProfileOptions
from .pki import CredentialStore

logger = logging.getLogger(__name__)

PROFILE_MODE = 0o600


def render_peer_profile(
    store: CredentialStore,
    peer_name: str,
    endpoint_host: str,
    endpoint_port: int,
    protocol: str,
    options: Optional[ProfileOptions] = None,
) -> str:
    """
    Self-contained .ovpn: every credential is inlined, nothing refers to
    a file on the gateway.
    """
    options = options or ProfileOptions()
    cred = store.peer_credential(peer_name)

    for label, path in (("CA certificate", store.ca_cert_path), ("TLS-auth key", store.tls_auth_path)):
        if not path.is_file():
            raise CredentialError(f"Cannot render profile for '{peer_name}': {label} {path} is missing")

    try:
        ca = read_pem_block(store.ca_cert_path)
        cert = read_pem_block(cred.cert_path)
        key = read_secret(cred.key_path)
        tls_auth = read_secret(store.tls_auth_path)
    except (OSError, ValueError) as e:
        raise CredentialError(f"Cannot read credentials for '{peer_name}': {e}") from e

    return generate_client_config(
        host=endpoint_host,
        port=endpoint_port,
        proto=protocol,
        options=options,
        ca=ca,
        cert=cert,
        key=key,
        tls_auth=tls_auth,
    )


def write_peer_profile(
    store: CredentialStore,
    peer_name: str,
    endpoint_host: str,
    endpoint_port: int,
    protocol: str,
    output_dir,
    options: Optional[ProfileOptions] = None,
) -> Path:
    conf = render_peer_profile(store, peer_name, endpoint_host, endpoint_port, protocol, options)

    out = Path(output_dir)
    path = out / f"{peer_name}.ovpn"
    logger.info(f"Writing client config to {path}...")
    try:
        out.mkdir(parents=True, exist_ok=True)
        # contains the peer's private key: never world-readable, even briefly
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PROFILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(conf)
        path.chmod(PROFILE_MODE)
    except OSError as e:
        raise CredentialError(f"Cannot write profile {path}: {e}") from e
    logger.info(f"Client config generated at {path}")
    return path
