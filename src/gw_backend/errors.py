# src/gw_backend/errors.py
from __future__ import annotations

from typing import Optional, Sequence


class GatewayError(RuntimeError):
    """Base class for every fatal startup failure. Carries the process exit code."""

    exit_code = 1
    kind = "gateway error"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class CommandError(GatewayError):
    kind = "command failure"

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        msg = f"'{' '.join(self.cmd)}' exited with status {returncode}"
        if self.stderr:
            msg += f": {self.stderr}"
        super().__init__(msg)


class ConfigurationError(GatewayError):
    exit_code = 2
    kind = "configuration error"


class CredentialError(GatewayError):
    exit_code = 3
    kind = "credential provisioning error"


class InterfaceError(GatewayError):
    exit_code = 4
    kind = "interface error"


class RuleCheckError(GatewayError):
    exit_code = 5
    kind = "idempotency check failure"


class RuleInstallError(GatewayError):
    exit_code = 6
    kind = "rule installation error"


class LaunchError(GatewayError):
    exit_code = 7
    kind = "downstream server launch failure"
