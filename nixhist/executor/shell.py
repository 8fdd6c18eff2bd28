"""
Subprocess executor for nixhist.

Runs plan commands on the local machine, prefixing privileged ones with
``sudo``. stdin stays attached to the terminal so sudo can ask for a password.
"""

import logging
import subprocess

from nixhist.executor import Command, CommandExecutor, CommandResult

logger = logging.getLogger("nixhist.executor.shell")


class SubprocessExecutor(CommandExecutor):
    """Executor that spawns real processes."""

    def __init__(self, sudo_binary: str = "sudo"):
        self.sudo_binary = sudo_binary

    def run(self, command: Command) -> CommandResult:
        argv = list(command.argv)
        if command.privileged:
            argv = [self.sudo_binary] + argv

        cmd_str = command.render()
        logger.info(f"Running command: {cmd_str}")

        try:
            result = subprocess.run(
                argv,
                stdin=None,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.error(f"Failed to execute {cmd_str}: {e}")
            return CommandResult(command, False, f"Failed to execute: {e}")

        if result.returncode == 0:
            logger.debug(f"stdout: {result.stdout}")
            return CommandResult(command, True, f"Completed: {command.description}")

        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        error = stderr or stdout or f"Command failed with exit code {result.returncode}"
        logger.error(f"Command failed: {cmd_str}")
        logger.error(f"Return code: {result.returncode}")
        logger.error(f"Stderr: {stderr}")
        return CommandResult(command, False, f"Failed to {command.description}: {error}")
