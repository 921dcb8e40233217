"""Shared test fixtures for the agentfleet test suite."""

import pytest

from agentfleet.config import InstallConfig
from agentfleet.models import Provider, RunnerDescriptor


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host environment variables from leaking into tests."""
    for name in (
        "AGENTFLEET_SSH_USER",
        "AGENTFLEET_SSH_IDENTITY_FILE",
        "AGENTFLEET_LOG_LEVEL",
        "AWS_REGION",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    """InstallConfig pointing every path into tmp_path, with instant polling.

    Args:
        tmp_path: pytest built-in fixture for temp directory.

    Returns:
        InstallConfig: Config safe to use without touching ~/.ssh.
    """
    return InstallConfig(
        known_hosts=str(tmp_path / "ssh" / "known_hosts"),
        identity_file=str(tmp_path / "ssh" / "id_missing"),
        ssm_poll_interval=0,
        ssm_command_check_interval=0,
    )


@pytest.fixture
def make_descriptor():
    """Factory for AWS-looking RunnerDescriptors.

    Returns:
        Callable: ``make_descriptor("i-1", address="1.2.3.4", ...)``.
    """

    def _make(instance_id: str = "i-0001", **overrides) -> RunnerDescriptor:
        fields = {
            "provider": Provider.AWS,
            "location": "us-west-2",
            "instance_id": instance_id,
            "address": "203.0.113.10",
            "user": "ec2-user",
            "availability_zone": "us-west-2a",
        }
        fields.update(overrides)
        return RunnerDescriptor(**fields)

    return _make


class FakePrompter:
    """Prompter that answers from queues and records every question.

    Attributes:
        selections: Answers returned by select(), in order.
        texts: Answers returned by text() and password(), in order.
        confirmations: Answers returned by confirm(), in order.
        asked: Every message received, in order.
    """

    def __init__(self, selections=None, texts=None, confirmations=None):
        self.selections = list(selections or [])
        self.texts = list(texts or [])
        self.confirmations = list(confirmations or [])
        self.asked: list[str] = []

    def select(self, message, options):
        self.asked.append(message)
        return self.selections.pop(0)

    def text(self, message):
        self.asked.append(message)
        return self.texts.pop(0)

    def password(self, message):
        self.asked.append(message)
        return self.texts.pop(0)

    def confirm(self, message):
        self.asked.append(message)
        return self.confirmations.pop(0)


@pytest.fixture
def prompter_factory():
    """Factory for FakePrompter instances."""
    return FakePrompter
