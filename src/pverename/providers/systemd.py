"""Systemd provider for managing the PVE service units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl`` satisfying the service manager interface."""

    systemctl_bin: str = "systemctl"

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* reports ``active``."""
        try:
            result = self._systemctl("is-active", unit, "--quiet", check=False)
        except SystemdError:
            return False
        return result.returncode == 0

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit)

    def kill(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Send the unit's kill signal to every process of *unit*."""
        return self._systemctl("kill", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str,
        *extra: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *extra, unit]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command} {unit}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
