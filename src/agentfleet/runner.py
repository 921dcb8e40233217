"""Runner: one target host plus its resolved access and an exec capability.

A Runner is created per dispatched task and owned by that task only.
Provider variants (AWSRunner, GCPRunner) subclass it solely to add
ephemeral public key injection.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from agentfleet.errors import AccessError, CredentialError, HostNotTrusted, KeyInjectionError
from agentfleet.models import AccessMethod, RunnerDescriptor
from agentfleet.trust import HostKeyVerifier


logger = logging.getLogger(__name__)

# Reason: asyncssh treats this tuple as (trusted host keys, trusted CA keys,
# revoked keys). Empty lists force every host key through the client's
# validate_host_public_key, i.e. through our verifier.
_VERIFY_EVERY_KEY = ([], [], [])


@dataclass
class ExecResult:
    """Result of executing a command on a runner.

    Attributes:
        stdout: Standard output from the command.
        stderr: Standard error from the command.
        exit_status: Exit code of the command (-1 if killed by a signal).
        host: Address the command ran on.
    """

    stdout: str
    stderr: str
    exit_status: int
    host: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class _VerifyingClient(asyncssh.SSHClient):
    """asyncssh client that delegates host key checks to a HostKeyVerifier.

    The verifier's rejection is kept so the caller can re-raise the precise
    error instead of asyncssh's generic HostKeyNotVerifiable.
    """

    def __init__(self, verifier: HostKeyVerifier, port: int):
        self._verifier = verifier
        self._port = port
        self.rejection: AccessError | None = None

    def validate_host_public_key(self, host, addr, port, key) -> bool:
        try:
            self._verifier.verify(host, key, port or self._port, addr or "")
        except AccessError as exc:
            self.rejection = exc
            return False
        return True


class Runner:
    """A reachable (or soon reachable) host.

    Args:
        descriptor: Immutable description of the host.
        verifier: Host key verifier used at handshake time. None falls back
            to asyncssh's default ~/.ssh/known_hosts handling.
        connect_timeout: SSH connect timeout in seconds.
        command_timeout: Per-command timeout in seconds, or None.
    """

    def __init__(
        self,
        descriptor: RunnerDescriptor,
        verifier: HostKeyVerifier | None = None,
        connect_timeout: float = 10,
        command_timeout: float | None = None,
    ):
        self.descriptor = descriptor
        self.hostname = descriptor.address
        self.port = descriptor.port
        self.user = descriptor.user or os.environ.get("AGENTFLEET_SSH_USER", "")
        self.verifier = verifier
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.method: AccessMethod | None = None
        self._client_keys: list[asyncssh.SSHKey] | None = None
        self._password: str | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.user}@{self.hostname}:{self.port} {self.method}>"

    def use_identity_file(self, path: Path) -> None:
        """Authenticate with a private key read from disk.

        Args:
            path: Path to an OpenSSH/PEM private key.

        Raises:
            CredentialError: If the key cannot be read or parsed.
        """
        try:
            key = asyncssh.read_private_key(str(path))
        except (OSError, asyncssh.KeyImportError) as exc:
            raise CredentialError(f"unable to use identity file {path}: {exc}") from exc
        self.use_private_key(key, AccessMethod.IDENTITY_FILE)

    def use_private_key(
        self, key: asyncssh.SSHKey, method: AccessMethod = AccessMethod.EPHEMERAL_KEY
    ) -> None:
        """Authenticate with an in-memory private key."""
        self._client_keys = [key]
        self._password = None
        self.method = method

    def use_password(self, secret: str) -> None:
        """Authenticate with a password."""
        self._client_keys = None
        self._password = secret
        self.method = AccessMethod.PASSWORD

    async def inject_public_key(self, public_key: str) -> None:
        """Push an ephemeral public key to the instance.

        Plain hosts have no key injection API; provider runners override this.

        Raises:
            KeyInjectionError: Always, for plain hosts.
        """
        raise KeyInjectionError(
            f"{self.descriptor.provider.value} runner {self.descriptor.label} "
            "does not support key injection"
        )

    async def _confirm_host_key(self) -> None:
        """Fetch the server's host key and settle trust before connecting.

        asyncssh checks host keys synchronously inside the handshake, so a
        question asked there would freeze every other task. Unknown hosts
        that need the user's answer are resolved here instead, in a worker
        thread; the handshake that follows then sees a known key.

        Raises:
            AccessError: If the key cannot be fetched or is not trusted.
        """
        try:
            key = await asyncio.wait_for(
                asyncssh.get_server_host_key(self.hostname, self.port), timeout=self.connect_timeout
            )
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as exc:
            raise AccessError(f"unable to fetch host key from {self.hostname}:{self.port}: {exc}") from exc
        if key is None:
            raise HostNotTrusted(f"{self.hostname}:{self.port} did not present a host key")
        await asyncio.to_thread(self.verifier.verify, self.hostname, key, self.port)

    async def exec(self, command: str) -> ExecResult:
        """Run a command over SSH.

        A non-zero exit is reported in the result; only failures to connect,
        authenticate, or keep the session alive raise.

        Args:
            command: Shell command line to run.

        Returns:
            ExecResult: Captured output and exit status.

        Raises:
            AccessError: No access method was resolved, or the transport failed.
            HostKeyMismatch: The verifier rejected a changed host key.
            HostNotTrusted: The verifier refused an unknown host key.
        """
        if self.method is None:
            raise AccessError(f"no access method resolved for {self.descriptor.label}")

        if self.verifier is not None and self.verifier.wants_confirmation(self.hostname, self.port):
            await self._confirm_host_key()

        client = _VerifyingClient(self.verifier, self.port) if self.verifier else None
        options: dict = {
            "port": self.port,
            "username": self.user or None,
            "connect_timeout": self.connect_timeout,
            "client_keys": self._client_keys,
            "password": self._password,
            "agent_path": None,
        }
        if client is not None:
            options["known_hosts"] = _VERIFY_EVERY_KEY
            options["client_factory"] = lambda: client

        logger.debug("exec on %s@%s: %s", self.user, self.hostname, command)
        try:
            conn = await asyncssh.connect(self.hostname, **options)
        except asyncssh.HostKeyNotVerifiable as exc:
            if client is not None and client.rejection is not None:
                raise client.rejection from exc
            raise HostNotTrusted(f"host key for {self.hostname} not verifiable: {exc}") from exc
        except asyncssh.PermissionDenied as exc:
            raise AccessError(
                f"authentication failed for {self.user}@{self.hostname} ({self.method.value})"
            ) from exc
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as exc:
            raise AccessError(f"unable to connect to {self.hostname}:{self.port}: {exc}") from exc

        try:
            completed = await conn.run(command, check=False, timeout=self.command_timeout)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as exc:
            raise AccessError(f"command failed to run on {self.hostname}: {exc}") from exc
        finally:
            conn.close()
            await conn.wait_closed()

        exit_status = completed.exit_status if completed.exit_status is not None else -1
        return ExecResult(
            stdout=_as_text(completed.stdout),
            stderr=_as_text(completed.stderr),
            exit_status=exit_status,
            host=self.hostname,
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
