# src/gw_backend/pki.py
from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import List, Optional

from .errors import CommandError, ConfigurationError, CredentialError
from .models import Credential, Outcome
from .system import CommandRunner

logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
KEY_MODE = 0o600


def _copy_private(src: Path, dst: Path) -> None:
    # never readable by others, not even between create and chmod
    fd = os.open(dst, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEY_MODE)
    with os.fdopen(fd, "wb") as f:
        f.write(src.read_bytes())
    dst.chmod(KEY_MODE)


def validate_name(name: str) -> str:
    if not NAME_RE.match(name or ""):
        raise ConfigurationError(f"Invalid certificate name {name!r} (allowed: letters, digits, '_', '.', '-')")
    return name


class CredentialStore:
    """
    easy-rsa backed PKI living on a persistent volume.

    Every ensure_* method is safe to call on each start: existing material
    is detected on disk and returned untouched, so the CA is built exactly
    once per volume.
    """

    def __init__(self, easyrsa_dir, runner: CommandRunner, source_dir=None, server_name: str = "server"):
        self.easyrsa_dir = Path(easyrsa_dir)
        self.pki_dir = self.easyrsa_dir / "pki"
        self.source_dir = Path(source_dir) if source_dir else None
        self.server_name = validate_name(server_name)
        self.runner = runner

    # -----------------------------
    # Paths
    # -----------------------------

    @property
    def easyrsa(self) -> Path:
        return self.easyrsa_dir / "easyrsa"

    @property
    def ca_cert_path(self) -> Path:
        return self.pki_dir / "ca.crt"

    @property
    def ca_key_path(self) -> Path:
        return self.pki_dir / "private" / "ca.key"

    @property
    def dh_path(self) -> Path:
        return self.pki_dir / "dh.pem"

    @property
    def tls_auth_path(self) -> Path:
        return self.easyrsa_dir / "ta.key"

    def cert_path(self, name: str) -> Path:
        return self.pki_dir / "issued" / f"{name}.crt"

    def key_path(self, name: str) -> Path:
        return self.pki_dir / "private" / f"{name}.key"

    def req_path(self, name: str) -> Path:
        return self.pki_dir / "reqs" / f"{name}.req"

    # -----------------------------
    # Low-level helpers
    # -----------------------------

    def _easyrsa(self, *args: str) -> None:
        env = {"EASYRSA_BATCH": "1", "EASYRSA_PKI": str(self.pki_dir)}
        try:
            self.runner.run([str(self.easyrsa), *args], cwd=str(self.easyrsa_dir), env=env)
        except CommandError as e:
            raise CredentialError(f"easyrsa {' '.join(args)} failed: {e}") from e

    def _restrict(self, path: Path) -> None:
        if not path.is_file():
            raise CredentialError(f"Expected {path} to exist after generation")
        try:
            path.chmod(KEY_MODE)
        except OSError as e:
            raise CredentialError(f"Cannot restrict permissions on {path}: {e}") from e

    # -----------------------------
    # Public API
    # -----------------------------

    def ensure_easyrsa(self) -> bool:
        """
        The easy-rsa directory is usually a volume: seed it with the
        scripts shipped in the image if it is empty.
        """
        if self.easyrsa.is_file():
            return False
        if self.source_dir is None or not (self.source_dir / "easyrsa").is_file():
            raise CredentialError(
                f"easyrsa not found in {self.easyrsa_dir} and no usable source directory ({self.source_dir})"
            )
        logger.info(f"Copying Easy-RSA scripts into {self.easyrsa_dir}...")
        try:
            self.easyrsa_dir.mkdir(parents=True, exist_ok=True)
            shutil.copytree(self.source_dir, self.easyrsa_dir, dirs_exist_ok=True)
        except OSError as e:
            raise CredentialError(f"Cannot copy Easy-RSA into {self.easyrsa_dir}: {e}") from e
        return True

    def ensure_ca(self) -> Credential:
        ca = Credential("ca", self.ca_key_path, self.ca_cert_path)

        if self.ca_cert_path.is_file() and self.ca_key_path.is_file():
            logger.info("CA already exists; reused.")
            ca.outcome = Outcome.REUSED
            return ca

        if self.pki_dir.is_dir():
            issued = self.pki_dir / "issued"
            if issued.is_dir() and any(issued.glob("*.crt")):
                raise CredentialError(
                    f"PKI in {self.pki_dir} has issued certificates but no complete CA; "
                    f"wipe the PKI volume to start over"
                )
            logger.warning(f"PKI directory {self.pki_dir} exists without a CA; building the CA")
        else:
            logger.info("Initializing PKI...")
            self._easyrsa("init-pki")

        logger.info("Building CA (no passphrase)...")
        self._easyrsa("build-ca", "nopass")
        self._restrict(self.ca_key_path)
        ca.outcome = Outcome.CREATED
        logger.info("CA created.")
        return ca

    def _ensure_leaf(self, name: str, cert_type: str) -> Credential:
        validate_name(name)
        cred = Credential(name, self.key_path(name), self.cert_path(name))

        if not self.ca_cert_path.is_file():
            raise CredentialError(f"Cannot issue '{name}': no CA in {self.pki_dir}")

        if cred.cert_path.is_file():
            if not cred.key_path.is_file():
                raise CredentialError(f"Certificate for '{name}' exists but its key {cred.key_path} is missing")
            logger.info(f"{cert_type.capitalize()} certificate '{name}' already exists; reused.")
            cred.outcome = Outcome.REUSED
            return cred

        logger.info(f"Generating {cert_type} key and certificate '{name}'...")
        if self.req_path(name).is_file() and cred.key_path.is_file():
            logger.warning(f"Found pending request for '{name}' from an interrupted run; signing it")
        else:
            self._easyrsa("gen-req", name, "nopass")
        self._easyrsa("sign-req", cert_type, name)

        if not cred.cert_path.is_file():
            raise CredentialError(f"easyrsa did not produce {cred.cert_path}")
        self._restrict(cred.key_path)
        cred.outcome = Outcome.CREATED
        logger.info(f"{cert_type.capitalize()} certificate '{name}' created.")
        return cred

    def ensure_server_credential(self, name: Optional[str] = None) -> Credential:
        return self._ensure_leaf(name or self.server_name, "server")

    def ensure_peer_credential(self, name: str) -> Credential:
        if name == self.server_name:
            raise ConfigurationError(f"Peer name '{name}' clashes with the server certificate name")
        return self._ensure_leaf(name, "client")

    def ensure_dh_params(self) -> Outcome:
        if self.dh_path.is_file():
            logger.info("DH params already exist; reused.")
            return Outcome.REUSED
        logger.info("Generating DH params...")
        self._easyrsa("gen-dh")
        if not self.dh_path.is_file():
            raise CredentialError(f"easyrsa did not produce {self.dh_path}")
        return Outcome.CREATED

    def ensure_tls_auth_key(self) -> Outcome:
        if self.tls_auth_path.is_file():
            logger.info("TLS-auth key already exists; reused.")
            return Outcome.REUSED
        logger.info("Generating TLS-auth key...")
        try:
            self.runner.run(["openvpn", "--genkey", "secret", str(self.tls_auth_path)])
        except CommandError as e:
            raise CredentialError(f"Cannot generate TLS-auth key: {e}") from e
        self._restrict(self.tls_auth_path)
        return Outcome.CREATED

    def deploy_server_credentials(self, target_dir, name: Optional[str] = None) -> dict:
        """
        Copies what the OpenVPN server reads into its own directory.
        Done on every start so the server always sees the current material.
        """
        name = name or self.server_name
        target = Path(target_dir)
        files = {
            "ca": (self.ca_cert_path, target / "ca.crt", False),
            "cert": (self.cert_path(name), target / "server.crt", False),
            "key": (self.key_path(name), target / "server.key", True),
            "dh": (self.dh_path, target / "dh.pem", False),
            "tls_auth": (self.tls_auth_path, target / "ta.key", True),
        }
        deployed = {}
        try:
            target.mkdir(parents=True, exist_ok=True)
            for label, (src, dst, secret) in files.items():
                if not src.is_file():
                    raise CredentialError(f"Cannot deploy {label}: {src} does not exist")
                if secret:
                    _copy_private(src, dst)
                else:
                    shutil.copyfile(src, dst)
                deployed[label] = dst
        except OSError as e:
            raise CredentialError(f"Cannot deploy server credentials to {target}: {e}") from e
        logger.info(f"Server credentials deployed to {target}")
        return deployed

    def peer_credential(self, name: str) -> Credential:
        """Issued peer credential, without issuing anything."""
        validate_name(name)
        cred = Credential(name, self.key_path(name), self.cert_path(name))
        if not cred.cert_path.is_file() or not cred.key_path.is_file():
            raise CredentialError(f"No issued credential for peer '{name}'")
        return cred

    def list_peers(self) -> List[str]:
        issued = self.pki_dir / "issued"
        if not issued.is_dir():
            return []
        return sorted(p.stem for p in issued.glob("*.crt") if p.stem != self.server_name)
