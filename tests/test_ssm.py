"""Tests for the SSM managed channel (ssm.py).

IAM, EC2 and SSM clients are stateful fakes; sleeps are replaced with
no-op coroutines that count how often they were awaited.
"""

import pytest
from botocore.exceptions import ClientError

from agentfleet.errors import InstallError, ManagedChannelError, ManagedChannelTimeout, PreconditionError
from agentfleet.install import AGENT_VERSION_CMD
from agentfleet.providers.aws import AWSClients
from agentfleet.ssm import (
    INSTANCE_PROFILE_NAME,
    ROLE_NAME,
    SSM_INSTANCE_POLICY_ARN,
    CommandStatus,
    ManagedInfra,
    ProbeState,
    SSMChannel,
    SSMInfrastructure,
    install_via_channel,
    poll_until_ready,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def client_error(code: str, op: str = "Op") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeIAM:
    """In-memory IAM with just enough behavior for setup and teardown."""

    def __init__(self, roles=None, profiles=None, fail=()):
        self.roles = dict(roles or {})  # name -> {"Arn", "policies"}
        self.profiles = dict(profiles or {})  # name -> {"Arn", "Roles"}
        self.fail = set(fail)
        self.calls: list[str] = []

    def _record(self, op):
        self.calls.append(op)
        if op in self.fail:
            raise client_error("AccessDenied", op)

    def get_role(self, RoleName):
        self._record("get_role")
        if RoleName not in self.roles:
            raise client_error("NoSuchEntity", "GetRole")
        return {"Role": {"RoleName": RoleName, "Arn": self.roles[RoleName]["Arn"]}}

    def create_role(self, RoleName, AssumeRolePolicyDocument, Description):
        self._record("create_role")
        assert "ec2.amazonaws.com" in AssumeRolePolicyDocument
        self.roles[RoleName] = {"Arn": f"arn:aws:iam::1:role/{RoleName}", "policies": []}
        return {"Role": {"RoleName": RoleName, "Arn": self.roles[RoleName]["Arn"]}}

    def attach_role_policy(self, RoleName, PolicyArn):
        self._record("attach_role_policy")
        self.roles[RoleName]["policies"].append(PolicyArn)

    def list_attached_role_policies(self, RoleName):
        self._record("list_attached_role_policies")
        return {"AttachedPolicies": [{"PolicyArn": arn} for arn in self.roles[RoleName]["policies"]]}

    def detach_role_policy(self, RoleName, PolicyArn):
        self._record("detach_role_policy")
        self.roles[RoleName]["policies"].remove(PolicyArn)

    def delete_role(self, RoleName):
        self._record("delete_role")
        del self.roles[RoleName]

    def get_instance_profile(self, InstanceProfileName):
        self._record("get_instance_profile")
        if InstanceProfileName not in self.profiles:
            raise client_error("NoSuchEntity", "GetInstanceProfile")
        return {"InstanceProfile": self.profiles[InstanceProfileName]}

    def create_instance_profile(self, InstanceProfileName):
        self._record("create_instance_profile")
        self.profiles[InstanceProfileName] = {
            "InstanceProfileName": InstanceProfileName,
            "Arn": f"arn:aws:iam::1:instance-profile/{InstanceProfileName}",
            "Roles": [],
        }
        return {"InstanceProfile": self.profiles[InstanceProfileName]}

    def add_role_to_instance_profile(self, InstanceProfileName, RoleName):
        self._record("add_role_to_instance_profile")
        self.profiles[InstanceProfileName]["Roles"].append(
            {"RoleName": RoleName, "Arn": self.roles[RoleName]["Arn"]}
        )

    def remove_role_from_instance_profile(self, InstanceProfileName, RoleName):
        self._record("remove_role_from_instance_profile")
        self.profiles[InstanceProfileName]["Roles"] = []

    def delete_instance_profile(self, InstanceProfileName):
        self._record("delete_instance_profile")
        del self.profiles[InstanceProfileName]


class FakeEC2Associations:
    def __init__(self, existing=None):
        self.existing = dict(existing or {})  # instance id -> profile arn
        self.associated: list[tuple[str, str]] = []
        self.disassociated: list[str] = []

    def describe_iam_instance_profile_associations(self, Filters):
        instance_id = Filters[0]["Values"][0]
        if instance_id not in self.existing:
            return {"IamInstanceProfileAssociations": []}
        return {"IamInstanceProfileAssociations": [{
            "AssociationId": f"iip-existing-{instance_id}",
            "IamInstanceProfile": {"Arn": self.existing[instance_id]},
        }]}

    def associate_iam_instance_profile(self, IamInstanceProfile, InstanceId):
        self.associated.append((InstanceId, IamInstanceProfile["Arn"]))
        return {"IamInstanceProfileAssociation": {"AssociationId": f"iip-{InstanceId}"}}

    def disassociate_iam_instance_profile(self, AssociationId):
        self.disassociated.append(AssociationId)


class FakeSSM:
    """Answers get_command_invocation from a script of statuses/exceptions."""

    def __init__(self, script):
        self.script = list(script)
        self.sent: list[str] = []

    def send_command(self, InstanceIds, DocumentName, Comment, Parameters):
        assert DocumentName == "AWS-RunShellScript"
        self.sent.append(Parameters["commands"][0])
        return {"Command": {"CommandId": f"cmd-{len(self.sent)}"}}

    def get_command_invocation(self, CommandId, InstanceId):
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        status, stdout = item if isinstance(item, tuple) else (item, "")
        return {"Status": status, "StandardOutputContent": stdout, "StandardErrorContent": ""}


class ServiceSession:
    """boto3.Session stand-in returning one client per service, any region."""

    def __init__(self, **clients):
        self.clients = clients

    def client(self, service, region_name=None):
        return self.clients[service]


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_channel(ssm, ec2=None, iam=None, infra=None, checks=3):
    clients = AWSClients(ServiceSession(ssm=ssm, ec2=ec2 or FakeEC2Associations(), iam=iam or FakeIAM()))
    return SSMChannel(clients, infra, command_checks=checks, check_interval=0, sleep=SleepRecorder())


# ---------------------------------------------------------------------------
# Infrastructure setup and teardown
# ---------------------------------------------------------------------------


def test_setup_creates_role_and_profile():
    iam = FakeIAM()
    sleeps = []
    infra = SSMInfrastructure(AWSClients(ServiceSession(iam=iam)), "us-west-2", sleep=sleeps.append).setup()

    assert infra.role_name == ROLE_NAME
    assert infra.owns_role is True
    assert infra.profile_name == INSTANCE_PROFILE_NAME
    assert iam.roles[ROLE_NAME]["policies"] == [SSM_INSTANCE_POLICY_ARN]
    assert iam.profiles[INSTANCE_PROFILE_NAME]["Roles"][0]["RoleName"] == ROLE_NAME
    # Reason: new instance profiles need time before EC2 accepts them.
    assert sleeps == [15.0]


def test_setup_with_user_role_and_teardown_keeps_it():
    """A user supplied role is used but never detached or deleted."""
    iam = FakeIAM(roles={"my-role": {"Arn": "arn:aws:iam::1:role/my-role", "policies": []}})
    infrastructure = SSMInfrastructure(AWSClients(ServiceSession(iam=iam)), "us-west-2", sleep=lambda s: None)

    infra = infrastructure.setup("my-role")
    problems = infrastructure.teardown(infra)

    assert infra.owns_role is False
    assert problems == []
    assert "my-role" in iam.roles
    assert INSTANCE_PROFILE_NAME not in iam.profiles
    assert "delete_role" not in iam.calls


def test_setup_missing_user_role_is_precondition_error():
    iam = FakeIAM()
    infrastructure = SSMInfrastructure(AWSClients(ServiceSession(iam=iam)), "us-west-2", sleep=lambda s: None)

    with pytest.raises(PreconditionError):
        infrastructure.setup("does-not-exist")

    assert "create_role" not in iam.calls


def test_setup_failure_cleans_up():
    """If the profile cannot be created, the role created so far is removed."""
    iam = FakeIAM(fail={"create_instance_profile"})
    infrastructure = SSMInfrastructure(AWSClients(ServiceSession(iam=iam)), "us-west-2", sleep=lambda s: None)

    with pytest.raises(PreconditionError, match="unable to set up SSM access"):
        infrastructure.setup()

    assert iam.roles == {}


def test_teardown_removes_everything_created():
    iam = FakeIAM()
    ec2 = FakeEC2Associations()
    infrastructure = SSMInfrastructure(AWSClients(ServiceSession(iam=iam, ec2=ec2)), "us-west-2", sleep=lambda s: None)
    infra = infrastructure.setup()
    infra.track_association("us-east-1", "iip-1")

    problems = infrastructure.teardown(infra)

    assert problems == []
    assert ec2.disassociated == ["iip-1"]
    assert iam.roles == {}
    assert iam.profiles == {}


def test_teardown_errors_are_reported_not_raised():
    iam = FakeIAM()
    infrastructure = SSMInfrastructure(AWSClients(ServiceSession(iam=iam)), "us-west-2", sleep=lambda s: None)
    infra = infrastructure.setup()
    iam.fail = {"delete_instance_profile"}

    problems = infrastructure.teardown(infra)

    assert len(problems) == 1
    assert "delete instance profile" in problems[0]
    # Reason: later steps still run after one fails.
    assert ROLE_NAME not in iam.roles


# ---------------------------------------------------------------------------
# Association
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_associate_new_profile_is_tracked(make_descriptor):
    ec2 = FakeEC2Associations()
    infra = ManagedInfra(role_name=ROLE_NAME, profile_name=INSTANCE_PROFILE_NAME, profile_arn="arn:profile")
    channel = make_channel(FakeSSM([]), ec2=ec2, infra=infra)

    await channel.associate(make_descriptor("i-1"))

    assert ec2.associated == [("i-1", "arn:profile")]
    assert infra.associations == [("us-west-2", "iip-i-1")]


@pytest.mark.asyncio
async def test_associate_reuses_existing_ssm_profile(make_descriptor):
    """An instance already carrying the SSM policy keeps its own profile."""
    iam = FakeIAM(
        roles={"theirs": {"Arn": "arn:aws:iam::1:role/theirs", "policies": [SSM_INSTANCE_POLICY_ARN]}},
        profiles={"their-profile": {"Arn": "arn:p", "Roles": [{"RoleName": "theirs", "Arn": "arn:r"}]}},
    )
    ec2 = FakeEC2Associations({"i-1": "arn:aws:iam::1:instance-profile/their-profile"})
    infra = ManagedInfra(role_name=ROLE_NAME, profile_name=INSTANCE_PROFILE_NAME, profile_arn="arn:profile")
    channel = make_channel(FakeSSM([]), ec2=ec2, iam=iam, infra=infra)

    await channel.associate(make_descriptor("i-1"))

    assert ec2.associated == []
    assert infra.associations == []


@pytest.mark.asyncio
async def test_associate_refuses_foreign_profile(make_descriptor):
    iam = FakeIAM(
        roles={"theirs": {"Arn": "arn:aws:iam::1:role/theirs", "policies": []}},
        profiles={"their-profile": {"Arn": "arn:p", "Roles": [{"RoleName": "theirs", "Arn": "arn:r"}]}},
    )
    ec2 = FakeEC2Associations({"i-1": "arn:aws:iam::1:instance-profile/their-profile"})
    infra = ManagedInfra(role_name=ROLE_NAME, profile_name=INSTANCE_PROFILE_NAME, profile_arn="arn:profile")
    channel = make_channel(FakeSSM([]), ec2=ec2, iam=iam, infra=infra)

    with pytest.raises(ManagedChannelError, match="AmazonSSMManagedInstanceCore"):
        await channel.associate(make_descriptor("i-1"))


@pytest.mark.asyncio
async def test_associate_skipped_without_infra(make_descriptor):
    ec2 = FakeEC2Associations()
    channel = make_channel(FakeSSM([]), ec2=ec2, infra=None)

    await channel.associate(make_descriptor("i-1"))

    assert ec2.associated == []


# ---------------------------------------------------------------------------
# Commands and the readiness poll
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_command_waits_for_terminal_status(make_descriptor):
    """Pending and missing invocations are waited out."""
    ssm = FakeSSM([client_error("InvocationDoesNotExist"), "Pending", "InProgress", ("Success", "6.2.0")])
    channel = make_channel(ssm, checks=5)

    invocation = await channel.run_command(make_descriptor(), "echo hi")

    assert invocation.status is CommandStatus.SUCCESS
    assert invocation.stdout == "6.2.0"
    assert channel._sleep.calls == [0, 0, 0, 0]


@pytest.mark.asyncio
async def test_run_command_unfinished_raises(make_descriptor):
    channel = make_channel(FakeSSM(["InProgress"] * 3), checks=3)

    with pytest.raises(ManagedChannelError, match="did not finish"):
        await channel.run_command(make_descriptor(), "echo hi")


@pytest.mark.asyncio
async def test_poll_retries_transient_then_proceeds(make_descriptor):
    """Cancelled and TimedOut are retried; Failed on the third attempt means not installed."""
    ssm = FakeSSM(["Cancelled", "TimedOut", "Failed"])
    channel = make_channel(ssm)
    sleep = SleepRecorder()

    state = await poll_until_ready(channel, make_descriptor(), attempts=6, interval=60, sleep=sleep)

    assert state is ProbeState.NOT_INSTALLED
    assert ssm.sent == [AGENT_VERSION_CMD] * 3
    # Reason: every attempt, including the first, waits for the association.
    assert sleep.calls == [60, 60, 60]


@pytest.mark.asyncio
async def test_poll_success_means_installed(make_descriptor):
    state = await poll_until_ready(make_channel(FakeSSM(["Success"])), make_descriptor(), sleep=SleepRecorder())

    assert state is ProbeState.INSTALLED


@pytest.mark.asyncio
async def test_poll_unexpected_status(make_descriptor):
    state = await poll_until_ready(make_channel(FakeSSM(["Undeliverable"])), make_descriptor(), sleep=SleepRecorder())

    assert state is ProbeState.UNEXPECTED


@pytest.mark.asyncio
async def test_poll_budget_exhausted(make_descriptor):
    """Six transient answers in a row time the runner out."""
    ssm = FakeSSM(["Cancelled", "TimedOut"] * 3)
    sleep = SleepRecorder()

    with pytest.raises(ManagedChannelTimeout):
        await poll_until_ready(make_channel(ssm), make_descriptor(), attempts=6, interval=1, sleep=sleep)

    assert len(sleep.calls) == 6


@pytest.mark.asyncio
async def test_poll_retries_api_errors(make_descriptor):
    ssm = FakeSSM([client_error("ThrottlingException"), "Success"])

    state = await poll_until_ready(make_channel(ssm), make_descriptor(), attempts=2, interval=0, sleep=SleepRecorder())

    assert state is ProbeState.INSTALLED


@pytest.mark.asyncio
@pytest.mark.parametrize("status, message", [("Failed", "unable to install"), ("Cancelled", "unexpected status Cancelled")])
async def test_install_via_channel_failures(status, message, make_descriptor):
    channel = make_channel(FakeSSM([(status, "partial output")]))

    with pytest.raises(InstallError, match=message) as excinfo:
        await install_via_channel(channel, make_descriptor(), "install")

    assert excinfo.value.stdout == "partial output"


@pytest.mark.asyncio
async def test_install_via_channel_success(make_descriptor):
    channel = make_channel(FakeSSM([("Success", "installed")]))

    invocation = await install_via_channel(channel, make_descriptor(), "install")

    assert invocation.stdout == "installed"
