# src/gw_backend/openvpn.py
from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Dict, Optional

from core.config_builder import generate_server_config

from .errors import LaunchError
from .ipam import pool_network
from .models import ServerParams
from .settings import Settings
from .system import CommandRunner

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def server_params_from_settings(settings: Settings, deployed: Dict[str, Path]) -> ServerParams:
    """deployed: output of CredentialStore.deploy_server_credentials()."""
    network, netmask = pool_network(settings.OVPN_NET)
    return ServerParams(
        port=settings.OVPN_PORT,
        proto=settings.OVPN_PROTO,
        dev=settings.OVPN_DEV,
        network=network,
        netmask=netmask,
        ca_path=deployed["ca"],
        cert_path=deployed["cert"],
        key_path=deployed["key"],
        dh_path=deployed["dh"],
        tls_auth_path=deployed["tls_auth"],
        cipher=settings.OVPN_CIPHER,
        auth=settings.OVPN_AUTH,
        tls_version_min=settings.OVPN_TLS_VERSION_MIN,
        dns=settings.dns_servers,
        keepalive=settings.keepalive,
    )


def write_server_config(params: ServerParams, path) -> Path:
    """
    Always rewritten: cheap, and must follow the current credential paths.
    """
    path = Path(path)
    logger.info(f"Writing OpenVPN server config to {path}...")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            f.write(generate_server_config(params))
        path.chmod(0o644)
    except OSError as e:
        raise LaunchError(f"Cannot write OpenVPN server config {path}: {e}") from e
    return path


def _wait_forwarding_signals(proc) -> int:
    def forward(signum, frame):
        logger.info(f"Forwarding signal {signum} to OpenVPN (pid {proc.pid})")
        proc.send_signal(signum)

    previous = {s: signal.signal(s, forward) for s in FORWARDED_SIGNALS}
    try:
        return proc.wait()
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)


def launch(config_path, runner: CommandRunner, replace: bool = True) -> Optional[int]:
    """
    Hands control to the OpenVPN server.

    replace=True: exec, the server becomes this process and its exit
    status is the gateway's. replace=False: spawn it, relay signals and
    return its exit status.
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise LaunchError(f"OpenVPN config {config_path} does not exist")

    cmd = ["openvpn", "--config", str(config_path)]
    logger.info("Starting OpenVPN server process...")

    if replace:
        try:
            runner.replace_process(cmd)
        except OSError as e:
            raise LaunchError(f"Cannot exec openvpn: {e}", exit_code=127) from e
        return None

    try:
        proc = runner.spawn(cmd)
    except OSError as e:
        raise LaunchError(f"Cannot start openvpn: {e}", exit_code=127) from e
    returncode = _wait_forwarding_signals(proc)
    if returncode < 0:
        # killed by a signal: shell convention
        returncode = 128 - returncode
    if returncode != 0:
        logger.error(f"OpenVPN exited with status {returncode}")
    else:
        logger.info("OpenVPN exited normally")
    return returncode
