"""Interactive prompting.

Components never prompt directly; they receive a Prompter so tests (and
non-interactive runs) can swap it out.
"""

import shutil
import subprocess
import sys
from typing import Protocol

import typer


class PromptCancelled(Exception):
    """Raised when the user aborts a selection."""

    pass


class Prompter(Protocol):
    """Questions the installer may need to ask the user."""

    def select(self, message: str, options: list[str]) -> str: ...

    def text(self, message: str) -> str: ...

    def password(self, message: str) -> str: ...

    def confirm(self, message: str) -> bool: ...


class TerminalPrompter:
    """Prompter backed by fzf for selections and typer for everything else."""

    def select(self, message: str, options: list[str]) -> str:
        """Pick one option with fzf.

        Raises:
            PromptCancelled: If fzf is missing or exits non-zero (Esc / Ctrl-C).
        """
        if not shutil.which("fzf"):
            raise PromptCancelled("fzf is required for interactive selection but not found on $PATH.")
        result = subprocess.run(
            ["fzf", "--prompt", f"{message} "],
            input="\n".join(options),
            text=True,
            capture_output=True,
        )
        if result.returncode != 0:
            raise PromptCancelled("Selection cancelled.")
        return result.stdout.strip()

    def text(self, message: str) -> str:
        return typer.prompt(message)

    def password(self, message: str) -> str:
        return typer.prompt(message, hide_input=True)

    def confirm(self, message: str) -> bool:
        # Reason: the question is multi-line; keep it off the progress output.
        typer.echo("", err=True)
        return typer.confirm(message, default=False, err=True)


def stdin_is_tty() -> bool:
    """Check if stdin is an interactive terminal.

    Returns:
        bool: True if stdin is a tty.
    """
    return sys.stdin.isatty()
