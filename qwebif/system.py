from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Sequence

from qwebif.core import DeviceConfig, RestoreConfig


EXTRA_BIN_PATHS = ("/scripts", "/usr/local/sbin", "/usr/sbin", "/sbin")
TIMEOUT_RETURNCODE = 124


@dataclass
class CommandResult:
    returncode: int
    stdout: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _find_command(name: str) -> str | None:
    if os.sep in name:
        return name
    path_entries = [entry for entry in os.environ.get("PATH", "").split(os.pathsep) if entry]
    for extra in EXTRA_BIN_PATHS:
        if extra not in path_entries:
            path_entries.append(extra)
    return shutil.which(name, path=os.pathsep.join(path_entries))


def _run(command: Sequence[str], timeout: float | None = None) -> CommandResult:
    executable = _find_command(command[0]) or command[0]
    try:
        result = subprocess.run(
            [executable, *command[1:]],
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
        return CommandResult(returncode=result.returncode, stdout=result.stdout)
    except FileNotFoundError:
        return CommandResult(returncode=127, stdout=f"command not found: {command[0]}")
    except PermissionError:
        return CommandResult(returncode=126, stdout=f"permission denied: {command[0]}")
    except subprocess.TimeoutExpired as exc:
        output = exc.output or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return CommandResult(
            returncode=TIMEOUT_RETURNCODE,
            stdout=f"{output}timed out after {timeout:g}s: {command[0]}",
        )


def restore_command(config: RestoreConfig, keep_ip: bool) -> list[str]:
    """Build the argument vector for the factory-restore script.

    The script is always told not to reboot by itself; the reboot happens later
    from the confirmation page. Without ``keep_ip`` the network identity is
    reset as well.
    """
    command = [config.command, config.no_reboot_flag]
    if not keep_ip:
        command.append(config.reset_ip_flag)
    return command


def restore_default_config(config: RestoreConfig, keep_ip: bool) -> CommandResult:
    return _run(restore_command(config, keep_ip), timeout=config.timeout_seconds)


def device_mode(config: DeviceConfig) -> str:
    result = _run(config.mode_command, timeout=10)
    mode = result.stdout.strip()
    if result.returncode != 0 or not mode:
        return "unknown"
    return mode.splitlines()[0]


def system_reboot(config: DeviceConfig) -> CommandResult:
    return _run(config.reboot_command)
