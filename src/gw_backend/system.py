# src/gw_backend/system.py
from __future__ import annotations

import logging
import os
import subprocess
from typing import Dict, List, Optional, Sequence

from .errors import CommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """
    Single entry point for every external command the gateway runs
    (ip, wg, iptables, sysctl, easyrsa, openvpn).

    Commands are argv lists, never shell strings. Tests substitute a
    subclass overriding _execute().
    """

    def run(
        self,
        cmd: Sequence[str],
        check: bool = True,
        input: Optional[str] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        cmd = [str(c) for c in cmd]
        logger.debug("Running command: %s", " ".join(cmd))
        try:
            result = self._execute(cmd, input=input, cwd=cwd, env=env)
        except FileNotFoundError:
            raise CommandError(cmd, 127, f"command not found: {cmd[0]}")
        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)
        return result

    def succeeds(self, cmd: Sequence[str]) -> bool:
        return self.run(cmd, check=False).returncode == 0

    def replace_process(self, cmd: Sequence[str]) -> None:
        cmd = [str(c) for c in cmd]
        logger.debug("Replacing process image: %s", " ".join(cmd))
        os.execvp(cmd[0], cmd)

    def spawn(self, cmd: Sequence[str]) -> subprocess.Popen:
        cmd = [str(c) for c in cmd]
        logger.debug("Spawning: %s", " ".join(cmd))
        return subprocess.Popen(cmd)

    def _execute(
        self,
        cmd: List[str],
        input: Optional[str] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            input=input,
            cwd=cwd,
            env=full_env,
        )
