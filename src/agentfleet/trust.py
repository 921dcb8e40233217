"""Host key trust: an OpenSSH known_hosts store with trust-on-first-use.

Matching (hashed names, wildcard patterns, ``@revoked`` markers) is done
by asyncssh's known_hosts reader; this module only decides what a match
means and appends newly trusted keys. The runner adapts asyncssh's
handshake callback onto :meth:`TofuVerifier.verify`.
"""

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import asyncssh

from agentfleet.errors import AccessError, HostKeyMismatch, HostKeyRevoked, HostNotTrusted


logger = logging.getLogger(__name__)


def fingerprint(key: asyncssh.SSHKey) -> str:
    """OpenSSH style SHA256 fingerprint, as printed by ``ssh-keygen -l``."""
    return key.get_fingerprint("sha256")


def openssh_entry(key: asyncssh.SSHKey) -> str:
    """Render the "<type> <base64>" part of a known_hosts line, without comment."""
    return " ".join(key.export_public_key("openssh").decode().split()[:2])


def _contains(keys: list[asyncssh.SSHKey], key: asyncssh.SSHKey) -> bool:
    return any(k.public_data == key.public_data for k in keys)


@dataclass
class HostKeyMatch:
    """Keys a known_hosts file holds for one host.

    Attributes:
        trusted: Plain host keys trusted for the host.
        revoked: Keys marked ``@revoked`` for the host.
    """

    trusted: list[asyncssh.SSHKey] = field(default_factory=list)
    revoked: list[asyncssh.SSHKey] = field(default_factory=list)


class HostKeyVerifier(Protocol):
    """Decides whether a host key presented at handshake time is acceptable."""

    def verify(self, host: str, key: asyncssh.SSHKey, port: int = 22, address: str = "") -> None:
        """Return if the key is accepted, raise an AccessError otherwise."""
        ...

    def wants_confirmation(self, host: str, port: int = 22) -> bool:
        """Whether contacting the host would mean asking the user first."""
        ...


def host_pattern(host: str, port: int = 22) -> str:
    """Normalize a host the way OpenSSH writes it to known_hosts.

    Args:
        host: Hostname or address.
        port: SSH port.

    Returns:
        str: "host" for port 22, "[host]:port" otherwise.
    """
    if port == 22:
        return host
    return f"[{host}]:{port}"


class KnownHostsStore:
    """File-backed host -> key store in OpenSSH known_hosts format.

    Reads are lock-free; appends are serialized so concurrent tasks
    contacting new hosts never interleave partial lines.

    Args:
        path: Path to the known_hosts file. Need not exist yet.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def match(self, host: str, port: int = 22, address: str = "") -> HostKeyMatch:
        """Look up a host by name and, when given, by peer address.

        Args:
            host: Hostname or address the user connected to.
            port: SSH port.
            address: Resolved peer address.

        Returns:
            HostKeyMatch: Trusted and revoked keys; both empty if unknown.

        Raises:
            AccessError: If the file exists but cannot be read or parsed.
        """
        if not self.path.exists():
            return HostKeyMatch()
        try:
            known_hosts = asyncssh.read_known_hosts(str(self.path))
        except (OSError, ValueError, asyncssh.KeyImportError) as exc:
            raise AccessError(f"unable to read {self.path}: {exc}") from exc
        # match() returns (host keys, CA keys, revoked keys, x509 ...).
        result = known_hosts.match(host, address, port)
        return HostKeyMatch(trusted=list(result[0]), revoked=list(result[2]))

    def lookup(self, host: str, port: int = 22, address: str = "") -> list[asyncssh.SSHKey]:
        """Return the trusted keys recorded for a host; empty if unknown."""
        return self.match(host, port, address).trusted

    def add(self, host: str, key: asyncssh.SSHKey, port: int = 22, address: str = "") -> None:
        """Append a trusted (host, key) entry.

        Creates the parent directory (0700) and the file (0600) when needed.
        A pair that is already present is not written twice.

        Args:
            host: Hostname the user connected to.
            key: Key to trust.
            port: SSH port.
            address: Resolved peer address, recorded alongside the hostname
                when it differs.
        """
        names = [host_pattern(host, port)]
        if address and address != host:
            names.append(host_pattern(address, port))

        with self._lock:
            if _contains(self.lookup(host, port), key):
                return
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
            with os.fdopen(fd, "a") as f:
                f.write(f"{','.join(names)} {openssh_entry(key)}\n")
        logger.debug("added %s to %s", ",".join(names), self.path)


class TofuVerifier:
    """Trust-on-first-use host key verifier.

    1. Key revoked for the host: raise HostKeyRevoked, always.
    2. Host known and key matches: accept.
    3. Host known with different key(s): raise HostKeyMismatch, always.
    4. Host unknown: accept and persist when ``trust_unknown`` is set or the
       user confirms; raise HostNotTrusted otherwise.

    ``verify`` may block on ``confirm``. The runner calls it from a worker
    thread whenever :meth:`wants_confirmation` is true, so the question
    never stalls the event loop.

    Args:
        store: Persisted known_hosts store.
        trust_unknown: Accept unknown hosts without asking.
        confirm: Callback asking the user a yes/no question. None means
            unknown hosts are refused unless ``trust_unknown`` is set.
    """

    def __init__(
        self,
        store: KnownHostsStore,
        trust_unknown: bool = False,
        confirm: Callable[[str], bool] | None = None,
    ):
        self.store = store
        self.trust_unknown = trust_unknown
        self.confirm = confirm
        # Reason: several worker threads can hit unknown hosts at once;
        # questions must reach the terminal one at a time.
        self._prompt_lock = threading.Lock()

    def wants_confirmation(self, host: str, port: int = 22) -> bool:
        if self.trust_unknown or self.confirm is None:
            return False
        return not self.store.lookup(host, port)

    def verify(self, host: str, key: asyncssh.SSHKey, port: int = 22, address: str = "") -> None:
        """Accept or reject a host key.

        Args:
            host: Host being connected to.
            key: Key presented by the server.
            port: SSH port.
            address: Peer address the connection resolved to.

        Raises:
            HostKeyRevoked: The key is marked revoked.
            HostKeyMismatch: The host is known under a different key.
            HostNotTrusted: The host is unknown and was not accepted.
        """
        known = self.store.match(host, port, address)
        if _contains(known.revoked, key):
            raise HostKeyRevoked(
                f"host key {fingerprint(key)} presented by {host} is revoked in {self.store.path}"
            )
        if _contains(known.trusted, key):
            return

        if known.trusted:
            raise HostKeyMismatch(
                f"host key verification failed for {host}: presented {key.get_algorithm()} "
                f"{fingerprint(key)} does not match {self.store.path} "
                "(possible man-in-the-middle attack)"
            )

        if self.trust_unknown or self._ask(host, key, port):
            self.store.add(host, key, port, address)
            return

        raise HostNotTrusted(f"host key for {host} ({fingerprint(key)}) was not trusted")

    def _ask(self, host: str, key: asyncssh.SSHKey, port: int) -> bool:
        if self.confirm is None:
            return False
        question = (
            f"Unknown Host: {host}\nFingerprint: {fingerprint(key)}\n"
            "Would you like to continue connecting?"
        )
        with self._prompt_lock:
            # Reason: another task may have accepted this host while we waited.
            known = self.store.lookup(host, port)
            if known:
                return _contains(known, key)
            return self.confirm(question)
