"""Core value types shared by discovery, access, and installation."""

from dataclasses import dataclass
from enum import Enum


class Provider(str, Enum):
    """Where a runner was discovered."""

    AWS = "aws"
    GCP = "gcp"
    HOST = "host"


class AccessMethod(str, Enum):
    """How a runner is reached. Exactly one is active per runner."""

    IDENTITY_FILE = "identity_file"
    PASSWORD = "password"
    EPHEMERAL_KEY = "ephemeral_key"
    MANAGED_CHANNEL = "managed_channel"


class InstallOutcome(str, Enum):
    """Terminal result of processing one runner."""

    ALREADY_INSTALLED = "already_installed"
    INSTALLED = "installed"
    ACCESS_FAILED = "access_failed"
    INSTALL_FAILED = "install_failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunnerDescriptor:
    """An immutable description of one discovered target host.

    Attributes:
        provider: Cloud provider (or HOST for a directly addressed machine).
        location: AWS region or GCP zone.
        instance_id: Provider instance identifier (hostname for HOST).
        address: Public network address used for SSH.
        user: Login user. Empty when not yet known (e.g. OS Login).
        image: AMI name or boot image/license name.
        availability_zone: AWS availability zone, needed for key injection.
        project: GCP project the instance lives in.
        port: SSH port.
    """

    provider: Provider
    location: str
    instance_id: str
    address: str
    user: str = ""
    image: str = ""
    availability_zone: str = ""
    project: str = ""
    port: int = 22

    @property
    def label(self) -> str:
        """Short identity used in logs and error messages."""
        if not self.address or self.instance_id == self.address:
            return self.instance_id or self.address
        return f"{self.instance_id} ({self.address})"


@dataclass(frozen=True)
class DiscoveryFilter:
    """Instance selection criteria.

    Attributes:
        locations: Region (AWS) or zone (GCP) allow-list; empty means all.
        tag_key: Only instances carrying this tag/metadata key.
        tag: Only instances where tag/metadata ``tag[0]`` equals ``tag[1]``.
        project_id: GCP project to scope discovery to.
    """

    locations: tuple[str, ...] = ()
    tag_key: str | None = None
    tag: tuple[str, str] | None = None
    project_id: str | None = None


@dataclass
class RunnerResult:
    """Outcome of one dispatched task.

    Attributes:
        descriptor: The runner the task processed.
        outcome: Terminal outcome.
        method: Access method that was active, if one was resolved.
        detail: Human-readable diagnostics (errors, captured output).
    """

    descriptor: RunnerDescriptor
    outcome: InstallOutcome
    method: AccessMethod | None = None
    detail: str = ""
