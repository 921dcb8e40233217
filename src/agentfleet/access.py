"""Access establishment for SSH based access methods.

IdentityFile and Password credentials are resolved once per run with a
fixed precedence and applied to each runner inside its own task, so a
key that fails to load only fails that runner. Ephemeral keys are
generated once per run and pushed to each instance separately.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from agentfleet.errors import AccessError, PreconditionError, format_command_output
from agentfleet.models import AccessMethod
from agentfleet.prompt import Prompter
from agentfleet.runner import Runner


logger = logging.getLogger(__name__)

ACCESS_CHECK_MARKER = "we-are-in"

_IDENTITY_CHOICE = "Identity File"
_PASSWORD_CHOICE = "Password"


@dataclass(frozen=True)
class Credentials:
    """Resolved SSH credentials shared (read-only) by every task.

    Attributes:
        method: IDENTITY_FILE or PASSWORD.
        identity_file: Private key path when method is IDENTITY_FILE.
        password: Secret when method is PASSWORD.
    """

    method: AccessMethod
    identity_file: Path | None = None
    password: str | None = None

    def apply(self, runner: Runner) -> None:
        """Configure a runner with these credentials.

        Raises:
            CredentialError: If the identity file cannot be loaded.
        """
        if self.method is AccessMethod.IDENTITY_FILE:
            runner.use_identity_file(self.identity_file)
        else:
            runner.use_password(self.password)


def _key_loads(path: Path) -> bool:
    try:
        asyncssh.read_private_key(str(path))
    except (OSError, asyncssh.KeyImportError) as exc:
        logger.debug("unable to use default identity file %s: %s", path, exc)
        return False
    return True


def resolve_credentials(
    identity_file: Path | None,
    password: str | None,
    default_identity_file: Path,
    prompter: Prompter | None = None,
) -> Credentials:
    """Pick the SSH credentials for this run.

    Precedence: explicit identity file, explicit password, the default
    identity file (if it loads), then an interactive prompt.

    Args:
        identity_file: Identity file passed on the command line.
        password: Password passed on the command line.
        default_identity_file: Fallback private key path.
        prompter: Used when nothing else applies. None disables prompting.

    Returns:
        Credentials: The resolved credentials.

    Raises:
        PreconditionError: If no credentials can be resolved.
    """
    if identity_file is not None:
        logger.debug("ssh settings: identity_file=%s", identity_file)
        return Credentials(AccessMethod.IDENTITY_FILE, identity_file=identity_file)

    if password:
        logger.debug("ssh settings: auth=password_from_flag")
        return Credentials(AccessMethod.PASSWORD, password=password)

    if _key_loads(default_identity_file):
        logger.debug("ssh settings: identity_file=%s (default)", default_identity_file)
        return Credentials(AccessMethod.IDENTITY_FILE, identity_file=default_identity_file)

    if prompter is None:
        raise PreconditionError(
            "no SSH credentials available: use --identity_file or --ssh_password, "
            f"or provide {default_identity_file}"
        )

    choice = prompter.select("Choose SSH authentication method:", [_IDENTITY_CHOICE, _PASSWORD_CHOICE])
    if choice == _PASSWORD_CHOICE:
        return Credentials(AccessMethod.PASSWORD, password=prompter.password("SSH password"))

    path = Path(prompter.text("SSH identity file")).expanduser()
    if not _key_loads(path):
        raise PreconditionError(f"unable to use provided identity file {path}")
    return Credentials(AccessMethod.IDENTITY_FILE, identity_file=path)


@dataclass(frozen=True)
class EphemeralKey:
    """A short-lived key pair for instance-connect style access.

    Attributes:
        private_key: Private half, kept in memory only.
        public_key: Public half in OpenSSH format.
    """

    private_key: asyncssh.SSHKey
    public_key: str

    @classmethod
    def generate(cls, comment: str = "agentfleet-ephemeral") -> "EphemeralKey":
        """Generate a fresh ed25519 key pair."""
        key = asyncssh.generate_private_key("ssh-ed25519", comment=comment)
        public = key.export_public_key("openssh").decode().strip()
        return cls(private_key=key, public_key=public)


async def establish_ephemeral_access(runner: Runner, key: EphemeralKey) -> None:
    """Push the public key to the instance and authenticate with it.

    Raises:
        KeyInjectionError: If the provider refuses the key.
    """
    await runner.inject_public_key(key.public_key)
    runner.use_private_key(key.private_key, AccessMethod.EPHEMERAL_KEY)


async def verify_access(runner: Runner) -> None:
    """Check that commands can be run on the runner.

    Raises:
        AccessError: If the echo round-trip fails.
    """
    result = await runner.exec(f"echo {ACCESS_CHECK_MARKER}")
    if not result.ok or ACCESS_CHECK_MARKER not in result.stdout:
        raise AccessError(
            format_command_output(
                f"unable to connect to the remote host {runner.descriptor.label}",
                result.stdout,
                result.stderr,
            )
        )
