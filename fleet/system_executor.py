"""Validated execution of the external commands the fleet monitor relies on."""

import subprocess
import logging
import shlex
from collections import deque
from dataclasses import dataclass
from typing import List, Dict, Optional
from enum import Enum
import re


logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Supported command types for validation."""
    BLKID = "blkid"
    LSPCI = "lspci"


class ProbeResult(Enum):
    """Outcome of a bounded liveness probe against a drive."""
    RESPONSIVE = "responsive"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class CommandResult:
    """Result of an executed command."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    returncode: Optional[int] = None


class SystemCommandExecutor:
    """Runs allow-listed commands with argument validation and logging."""

    ALLOWED_COMMANDS = {
        CommandType.BLKID: {
            'binary': 'blkid',
            'allowed_args': {'-p', '-o', 'value', 'export', '-s', 'TYPE', 'LABEL'},
        },
        CommandType.LSPCI: {
            'binary': 'lspci',
            'allowed_args': {'-s', '-mm', '-nn'},
        },
    }

    DEVICE_PATH_PATTERN = re.compile(r'^/dev/[a-zA-Z0-9]+[0-9]*$')
    PCI_ADDRESS_PATTERN = re.compile(r'^[0-9a-fA-F]{4}:[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-7]$')

    # Grace period for reaping a killed process; a drive wedged in firmware can
    # leave the child in uninterruptible sleep, in which case it is abandoned.
    KILL_GRACE_SECONDS = 1.0

    HISTORY_LIMIT = 200

    def __init__(self, dry_run: bool = False, default_timeout: float = 30.0):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            default_timeout: Timeout in seconds for commands without an explicit one
        """
        self.dry_run = dry_run
        self.default_timeout = default_timeout
        self._command_history: deque = deque(maxlen=self.HISTORY_LIMIT)

    def probe_device(self, device_path: str, timeout: float = 5.0) -> ProbeResult:
        """
        Issue a bounded identification probe against a drive.

        A probe that completes, successfully or not, proves the drive firmware
        still answers. Only a probe that exceeds ``timeout`` is crash evidence.

        Args:
            device_path: Device path (e.g., '/dev/sr0')
            timeout: Hard upper bound in seconds

        Returns:
            ProbeResult
        """
        if not self._validate_device_path(device_path):
            raise ValueError(f"Invalid device path: {device_path}")

        result = self._execute_command(CommandType.BLKID, ['-p', device_path], timeout=timeout)
        if result.timed_out:
            return ProbeResult.TIMEOUT
        if result.success:
            return ProbeResult.RESPONSIVE
        return ProbeResult.FAILED

    def describe_pci_device(self, address: str) -> Optional[str]:
        """
        Get the human-readable name of a PCI device from lspci.

        Args:
            address: PCI address (e.g., '0000:03:00.0')

        Returns:
            Description text, or None if lspci is unavailable or silent
        """
        if not self._validate_pci_address(address):
            raise ValueError(f"Invalid PCI address: {address}")

        result = self._execute_command(CommandType.LSPCI, ['-s', address], timeout=5.0)
        if not result.success or not result.stdout.strip():
            return None

        match = re.search(r': (.+)$', result.stdout.strip().splitlines()[0])
        if match:
            return match.group(1).strip()
        return None

    def _execute_command(self,
                        command_type: CommandType,
                        args: List[str],
                        timeout: Optional[float] = None) -> CommandResult:
        """
        Execute a validated command with proper logging and error handling.

        Args:
            command_type: Type of command to execute
            args: Command arguments
            timeout: Seconds before the command is killed

        Returns:
            CommandResult
        """
        binary = self.ALLOWED_COMMANDS[command_type]['binary']
        self._validate_command_args(command_type, args)

        full_command = [binary] + args
        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug(f"Executing command: {command_str}")

        self._command_history.append({
            'command': command_str,
            'type': command_type.value,
            'dry_run': self.dry_run
        })

        if self.dry_run:
            logger.info(f"DRY RUN: {command_str} would be executed")
            return CommandResult(success=True, stdout="DRY RUN")

        try:
            proc = subprocess.Popen(
                full_command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            logger.warning(f"{binary} not installed")
            return CommandResult(success=False, stderr=f"{binary} not installed")
        except OSError as e:
            logger.error(f"Error executing command {command_str}: {e}")
            return CommandResult(success=False, stderr=str(e))

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {timeout}s: {command_str}")
            self._abandon(proc, command_str)
            return CommandResult(success=False, stderr="Command timed out", timed_out=True)

        success = proc.returncode == 0
        if not success:
            logger.debug(f"Command exited with {proc.returncode}: {command_str}: {stderr.strip()}")
        return CommandResult(
            success=success,
            stdout=stdout,
            stderr=stderr,
            returncode=proc.returncode,
        )

    def _abandon(self, proc: subprocess.Popen, command_str: str) -> None:
        """Kill a timed-out process without waiting on it indefinitely."""
        proc.kill()
        try:
            proc.communicate(timeout=self.KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error(f"Process did not exit after kill, abandoning: {command_str}")

    def _validate_command_args(self, command_type: CommandType, args: List[str]) -> None:
        """
        Validate command arguments against allowed patterns.

        Raises:
            ValueError: If any argument is not allowed
        """
        allowed_args = self.ALLOWED_COMMANDS[command_type]['allowed_args']

        for arg in args:
            if (self.DEVICE_PATH_PATTERN.match(arg) or
                    self.PCI_ADDRESS_PATTERN.match(arg) or
                    arg in allowed_args):
                continue
            raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")

    def _validate_device_path(self, path: str) -> bool:
        """Validate device path format."""
        return bool(self.DEVICE_PATH_PATTERN.match(path))

    def _validate_pci_address(self, address: str) -> bool:
        """Validate PCI address format."""
        return bool(self.PCI_ADDRESS_PATTERN.match(address))

    def get_command_history(self) -> List[Dict]:
        """Get the history of executed commands."""
        return list(self._command_history)

    def clear_command_history(self) -> None:
        """Clear the command history."""
        self._command_history.clear()
