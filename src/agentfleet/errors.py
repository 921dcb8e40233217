"""Exception hierarchy.

PreconditionError subclasses abort the whole run. AccessError and
InstallError subclasses are isolated to a single runner and are turned
into an InstallOutcome by the fleet coordinator.
"""


class AgentFleetError(Exception):
    """Base class for every error raised by agentfleet."""

    pass


class PreconditionError(AgentFleetError):
    """Raised when the run as a whole cannot proceed."""

    pass


class DiscoveryError(PreconditionError):
    """Raised when region, zone, or project enumeration fails."""

    pass


class TokenError(PreconditionError):
    """Raised when no agent token can be obtained."""

    pass


class AccessError(AgentFleetError):
    """Raised when a runner cannot be reached or authenticated."""

    pass


class CredentialError(AccessError):
    """Raised when an identity file or password cannot be used."""

    pass


class HostKeyMismatch(AccessError):
    """Raised when a host presents a key different from the trusted one."""

    pass


class HostNotTrusted(AccessError):
    """Raised when an unknown host key is refused."""

    pass


class HostKeyRevoked(AccessError):
    """Raised when a host presents a key marked @revoked in known_hosts."""

    pass


class KeyInjectionError(AccessError):
    """Raised when pushing an ephemeral public key to an instance fails."""

    pass


class ManagedChannelError(AccessError):
    """Raised when the managed command service rejects or loses a command."""

    pass


class ManagedChannelTimeout(ManagedChannelError):
    """Raised when the managed channel never becomes ready for a runner."""

    pass


class InstallError(AgentFleetError):
    """Raised when the install command runs but does not succeed.

    Attributes:
        stdout: Captured standard output of the failed command.
        stderr: Captured standard error of the failed command.
    """

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(format_command_output(message, stdout, stderr))
        self.stdout = stdout
        self.stderr = stderr


class TeardownError(AgentFleetError):
    """Raised when managed-channel infrastructure cannot be removed."""

    pass


def format_command_output(message: str, stdout: str = "", stderr: str = "") -> str:
    """Append captured command output to an error message.

    Args:
        message: Leading error description.
        stdout: Captured stdout, omitted when empty.
        stderr: Captured stderr, omitted when empty.

    Returns:
        str: The message followed by STDOUT/STDERR sections.
    """
    formatted = message
    if stdout.strip():
        formatted += f"\n\nSTDOUT:\n{stdout.rstrip()}"
    if stderr.strip():
        formatted += f"\n\nSTDERR:\n{stderr.rstrip()}"
    return formatted
