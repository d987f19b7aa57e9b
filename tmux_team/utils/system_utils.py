"""
System Utilities Module

Process-level helpers: command availability, pid liveness and the
terminate-then-kill escalation used when a job times out.
"""

import logging
import shutil
import subprocess
import time
from typing import List, Optional, Tuple

import psutil

logger = logging.getLogger(__name__)


class SystemUtils:
    """
    System-level utilities and process management.
    """

    @staticmethod
    def check_command_availability(command: str) -> bool:
        """
        Check if a command is available in PATH.

        Args:
            command: Command name to check

        Returns:
            bool: True if command is available
        """
        return shutil.which(command) is not None

    @staticmethod
    def run_command(command: List[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
        """
        Run system command with proper error handling.

        Args:
            command: Command and arguments as list
            timeout: Command timeout in seconds

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
            return (result.returncode, result.stdout or "", result.stderr or "")

        except subprocess.TimeoutExpired:
            logger.warning(f"Command timeout: {' '.join(command)}")
            return (124, "", f"Command timed out after {timeout} seconds")

        except FileNotFoundError:
            return (127, "", f"Command not found: {command[0]}")

        except OSError as e:
            logger.error(f"Error running command {' '.join(command)}: {e}")
            return (1, "", str(e))

    @staticmethod
    def is_pid_alive(pid: Optional[int]) -> bool:
        """
        Check if a process is still running.

        A zombie counts as dead: it has exited and is only waiting to be reaped.

        Args:
            pid: Process ID to check

        Returns:
            True if process exists and is running, False otherwise
        """
        if pid is None:
            return False
        try:
            p = psutil.Process(pid)
            return p.is_running() and p.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True

    @staticmethod
    def terminate_process(pid: int, grace_seconds: float = 10.0, poll_seconds: float = 0.5) -> bool:
        """
        SIGTERM a process, wait up to grace_seconds, then SIGKILL if still alive.

        Args:
            pid: Process ID to stop
            grace_seconds: Time allowed for a clean exit
            poll_seconds: Liveness polling interval during the grace window

        Returns:
            True if a signal was delivered, False if the process was already gone
        """
        try:
            p = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return False

        try:
            logger.warning(f"Sending SIGTERM to process {pid}")
            p.terminate()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            logger.error(f"Cannot signal process {pid}: {e}")
            return False

        deadline = time.monotonic() + grace_seconds
        while time.monotonic() < deadline:
            if not SystemUtils.is_pid_alive(pid):
                return True
            time.sleep(poll_seconds)

        try:
            logger.warning(f"Process {pid} didn't terminate gracefully, force killing")
            p.kill()
        except psutil.NoSuchProcess:
            pass
        return True
