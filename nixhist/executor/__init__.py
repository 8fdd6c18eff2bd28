"""
Command executors for nixhist.

This module provides the command descriptors produced by the mutation
planner and the interface that runs them. Implementations may run commands
with elevated privileges; callers only see per-command results.
"""

import abc
import logging
import shlex
from dataclasses import dataclass
from typing import List, Sequence, Tuple

logger = logging.getLogger("nixhist.executor")


@dataclass(frozen=True)
class Command:
    """A single external command of a mutation plan."""

    argv: Tuple[str, ...]
    description: str
    privileged: bool = False

    def render(self) -> str:
        """Return the exact command line that will run."""
        argv = ("sudo",) + self.argv if self.privileged else self.argv
        return " ".join(shlex.quote(arg) for arg in argv)

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command."""

    command: Command
    ok: bool
    message: str
    simulated: bool = False


class CommandExecutor(abc.ABC):
    """Base class for command executors."""

    @abc.abstractmethod
    def run(self, command: Command) -> CommandResult:
        """
        Run a single command.

        Failures are reported through ``CommandResult.ok``; implementations
        should not raise for a command that could not be started.
        """
        pass

    def execute(self, commands: Sequence[Command]) -> List[CommandResult]:
        """
        Run commands in order, stopping at the first failure.

        A command whose ``run`` raises counts as failed.

        Returns:
            Results of the commands that ran, the failing one last
        """
        results = []
        for command in commands:
            try:
                result = self.run(command)
            except Exception as e:
                logger.exception(f"Executor raised while running {command.render()}")
                result = CommandResult(command, False, f"Executor error: {e}")
            results.append(result)
            if not result.ok:
                break
        return results
