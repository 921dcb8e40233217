"""Installer configuration loading and validation."""

import os
from pathlib import Path

import tomllib
from pydantic import BaseModel, field_validator


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "agentfleet" / "config.toml"

# Official download url for the Linux agent installer.
DEFAULT_INSTALLER_URL = "https://packages.lacework.net/install.sh"


class InstallConfig(BaseModel):
    """Installer configuration model.

    Attributes:
        max_parallelism: Max concurrent workers (discovery scans and installs).
        trust_host_key: Add unknown host keys to known_hosts without asking.
        known_hosts: Path of the persisted host-trust store.
        identity_file: Default SSH private key. Supports ~ and env vars.
        ssh_port: Default SSH port.
        connect_timeout: SSH connect timeout in seconds.
        command_timeout: Remote command timeout in seconds (None = no limit).
        agent_download_url: URL of the agent install script.
        aws_default_region: Region used for region enumeration when AWS_REGION
            is not set.
        ssm_poll_attempts: Readiness attempts for the managed channel.
        ssm_poll_interval: Seconds slept before each readiness attempt.
        ssm_command_checks: Status checks per managed command.
        ssm_command_check_interval: Seconds between status checks.
        api_url: Base URL of the backend API used to list agent tokens.
        api_key: Bearer credential for the backend API.
    """

    max_parallelism: int = 50
    trust_host_key: bool = True
    known_hosts: str = "~/.ssh/known_hosts"
    identity_file: str = "~/.ssh/id_rsa"
    ssh_port: int = 22
    connect_timeout: int = 10
    command_timeout: int | None = None
    agent_download_url: str = DEFAULT_INSTALLER_URL
    aws_default_region: str = "us-west-2"
    ssm_poll_attempts: int = 6
    ssm_poll_interval: float = 60.0
    ssm_command_checks: int = 12
    ssm_command_check_interval: float = 10.0
    api_url: str | None = None
    api_key: str | None = None

    @field_validator("known_hosts", "identity_file", "api_url", "api_key", mode="before")
    @classmethod
    def expand_env_vars(cls, v: str | None) -> str | None:
        """Expand environment variables in string fields.

        Args:
            v: Raw string value that may contain env var references.

        Returns:
            str | None: String with env vars expanded.
        """
        if v is None:
            return v
        return os.path.expandvars(v)

    @field_validator("max_parallelism", "ssm_poll_attempts", "ssm_command_checks")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        """Reject counts that would stall the run.

        Raises:
            ValueError: If the value is lower than 1.
        """
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def known_hosts_path(self) -> Path:
        """Expanded path of the known_hosts file."""
        return Path(self.known_hosts).expanduser()

    @property
    def identity_file_path(self) -> Path:
        """Expanded default identity file.

        AGENTFLEET_SSH_IDENTITY_FILE overrides the configured value.
        """
        override = os.environ.get("AGENTFLEET_SSH_IDENTITY_FILE")
        return Path(override or self.identity_file).expanduser()


def load_config(path: Path | None = None) -> InstallConfig:
    """Load installer configuration from a TOML file.

    If the file doesn't exist, returns an InstallConfig with default values.

    Args:
        path: Path to the config file. Defaults to ~/.config/agentfleet/config.toml.

    Returns:
        InstallConfig: The loaded and validated configuration.

    Raises:
        pydantic.ValidationError: If the config file contains invalid values.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return InstallConfig()

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    return InstallConfig(**data)
