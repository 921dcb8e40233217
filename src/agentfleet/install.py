"""Idempotency probe and install executor for SSH reachable runners."""

import logging
import shlex

from agentfleet.errors import InstallError
from agentfleet.runner import ExecResult, Runner


logger = logging.getLogger(__name__)

# Side-effect free: prints the agent version, fails if the agent is absent.
AGENT_VERSION_CMD = 'sudo sh -c "/var/lib/lacework/datacollector -v"'


def build_install_cmd(download_url: str, token: str) -> str:
    """Format the one-line installer invocation.

    Args:
        download_url: URL of the install script.
        token: Agent access token handed to the script.

    Returns:
        str: ``sudo sh -c 'curl -sSL <url> | sh -s -- <token>'`` with every
            value shell-quoted.
    """
    inner = f"curl -sSL {shlex.quote(download_url)} | sh -s -- {shlex.quote(token)}"
    return f"sudo sh -c {shlex.quote(inner)}"


async def is_agent_installed(runner: Runner) -> bool:
    """Run the version query on the runner.

    A failing command means "not installed" and is not an error. Transport
    failures still raise, since the runner is then not usable at all.

    Returns:
        bool: True if the agent answered the version query.
    """
    result = await runner.exec(AGENT_VERSION_CMD)
    logger.debug(
        "version probe on %s: exit=%s stdout=%r stderr=%r",
        runner.descriptor.label, result.exit_status, result.stdout, result.stderr,
    )
    return result.ok


async def run_install(runner: Runner, command: str) -> ExecResult:
    """Execute the install command and classify its result.

    Returns:
        ExecResult: The successful command result.

    Raises:
        InstallError: If the command exits non-zero; carries stdout/stderr.
    """
    result = await runner.exec(command)
    if not result.ok:
        raise InstallError(
            f"unable to install agent on {runner.descriptor.label} (exit status {result.exit_status})",
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


def summarize_install_output(stdout: str, max_len: int = 120) -> str:
    """Reduce installer output to the last meaningful line.

    Args:
        stdout: Installer standard output.
        max_len: Truncate the line to this many characters.

    Returns:
        str: The last non-empty line, or "" if there is none.
    """
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return ""
    last = lines[-1]
    if len(last) > max_len:
        return last[: max_len - 3] + "..."
    return last
