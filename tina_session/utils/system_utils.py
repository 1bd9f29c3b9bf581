"""
System Utilities Module

Command helpers shared by the project checks and phase startup: run an
external tool in a project directory and look tools up on the PATH.
"""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class SystemUtils:
    """
    Process helpers that report failures as exit codes instead of raising.
    """

    @staticmethod
    def run_command(command: List[str],
                    cwd: Optional[Path] = None,
                    timeout: Optional[int] = None,
                    capture_output: bool = True) -> Tuple[int, str, str]:
        """
        Run system command with proper error handling.

        Args:
            command: Command and arguments as list
            cwd: Working directory for command
            timeout: Command timeout in seconds
            capture_output: Whether to capture stdout/stderr

        Returns:
            Tuple of (return_code, stdout, stderr); 124 on timeout, 127 when
            the program is missing
        """
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                timeout=timeout,
                capture_output=capture_output,
                text=True
            )
            return (result.returncode, result.stdout or "", result.stderr or "")

        except subprocess.TimeoutExpired:
            logger.error(f"Command timeout: {' '.join(command)}")
            return (124, "", f"Command timed out after {timeout} seconds")

        except FileNotFoundError:
            logger.error(f"Command not found: {command[0]}")
            return (127, "", f"Command not found: {command[0]}")

        except OSError as e:
            logger.error(f"Error running command {' '.join(command)}: {e}")
            return (1, "", str(e))

    @staticmethod
    def check_command_availability(command: str) -> bool:
        """
        Check if a command is available in PATH.

        Args:
            command: Command name to check

        Returns:
            bool: True if command is available
        """
        try:
            result = subprocess.run(['which', command], capture_output=True)
        except OSError:
            return False
        return result.returncode == 0
