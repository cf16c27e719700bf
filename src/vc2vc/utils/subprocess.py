"""Subprocess wrapper with logging, used for host reachability probes."""

from __future__ import annotations

import os
import platform
import subprocess

from vc2vc.utils.logging import get_logger

logger = get_logger(__name__)


class CommandResult:
    """Result of a subprocess execution."""

    def __init__(self, returncode: int, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_command(
    cmd: list[str],
    check: bool = True,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a system command and capture its output.

    Args:
        cmd: Command and arguments as list
        check: Raise on non-zero exit code
        timeout: Command timeout in seconds
        env: Additional environment variables (merged with current env)

    Returns:
        CommandResult with returncode, stdout, stderr

    Raises:
        RuntimeError: If check=True and command fails, or the binary is missing
        TimeoutError: If command exceeds timeout
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    logger.debug(f"Running: {' '.join(cmd)}")

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=full_env,
        )
    except subprocess.TimeoutExpired:
        raise TimeoutError(f"Command timed out after {timeout}s: {' '.join(cmd)}")
    except FileNotFoundError:
        raise RuntimeError(f"Command not found: {cmd[0]}")

    cmd_result = CommandResult(result.returncode, result.stdout, result.stderr)
    if check and not cmd_result.success:
        error_msg = cmd_result.stderr.strip() if cmd_result.stderr else f"exit code {cmd_result.returncode}"
        raise RuntimeError(f"Command failed ({' '.join(cmd)}): {error_msg}")

    return cmd_result


def ping_command(ip_address: str, timeout_s: int = 2) -> list[str]:
    """Build a single-echo ping command for the current OS."""
    if platform.system().lower() == "windows":
        return ["ping", "-n", "1", "-w", str(timeout_s * 1000), ip_address]
    return ["ping", "-c", "1", "-W", str(timeout_s), ip_address]


def ping(ip_address: str, timeout_s: int = 2) -> bool:
    """Send one ICMP echo to ip_address. True when it answered."""
    result = run_command(ping_command(ip_address, timeout_s), check=False, timeout=timeout_s + 5)
    return result.success
