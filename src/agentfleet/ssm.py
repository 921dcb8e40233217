"""Managed channel over AWS Systems Manager (SSM).

Fleet-wide IAM setup happens once before dispatch and teardown once after
every task has finished. Per instance, the instance profile is associated,
the version probe is polled until the SSM agent picks the instance up, and
the installer is submitted as an ``AWS-RunShellScript`` command.
"""

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from botocore.exceptions import ClientError

from agentfleet.errors import (
    InstallError,
    ManagedChannelError,
    ManagedChannelTimeout,
    PreconditionError,
    TeardownError,
)
from agentfleet.install import AGENT_VERSION_CMD
from agentfleet.models import RunnerDescriptor
from agentfleet.providers.aws import AWS_ERRORS, AWSClients


logger = logging.getLogger(__name__)

ROLE_NAME = "agentfleet-ssm-install-role"
INSTANCE_PROFILE_NAME = "agentfleet-ssm-install-profile"
SSM_INSTANCE_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
RUN_SHELL_DOCUMENT = "AWS-RunShellScript"
COMMAND_COMMENT = "agentfleet agent install"

# New instance profiles are not usable by EC2 right away.
PROFILE_SETTLE_SECONDS = 15.0

ASSUME_ROLE_POLICY = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": "ec2.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }
        ],
    }
)


class CommandStatus(str, Enum):
    """Status of an SSM command invocation."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    DELAYED = "Delayed"
    CANCELLING = "Cancelling"
    SUCCESS = "Success"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> "CommandStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def finished(self) -> bool:
        return self not in (self.PENDING, self.IN_PROGRESS, self.DELAYED, self.CANCELLING)


class ProbeState(str, Enum):
    """What the managed-channel version probe concluded."""

    INSTALLED = "installed"
    NOT_INSTALLED = "not_installed"
    UNEXPECTED = "unexpected"


@dataclass
class CommandInvocation:
    command_id: str
    instance_id: str
    status: CommandStatus
    stdout: str = ""
    stderr: str = ""
    status_details: str = ""


@dataclass
class ManagedInfra:
    """IAM resources backing the managed channel for one run.

    Attributes:
        role_name: Role assumed by the instances.
        profile_name: Instance profile holding the role.
        profile_arn: ARN used when associating the profile.
        owns_role: False when the role was supplied by the user; such a role
            is never modified on teardown.
        associations: (region, association id) pairs created by this run.
    """

    role_name: str
    profile_name: str = ""
    profile_arn: str = ""
    owns_role: bool = True
    associations: list[tuple[str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def track_association(self, region: str, association_id: str) -> None:
        with self._lock:
            self.associations.append((region, association_id))


class SSMInfrastructure:
    """Creates and removes the fleet-wide IAM role and instance profile.

    Args:
        clients: Shared boto3 client cache.
        region: Region used for the (global) IAM endpoint.
        sleep: Blocking sleep used while the new profile settles.
    """

    def __init__(self, clients: AWSClients, region: str, sleep=time.sleep):
        self.clients = clients
        self.region = region
        self._sleep = sleep

    @property
    def iam(self):
        return self.clients.client("iam", self.region)

    def setup(self, role_name: str | None = None) -> ManagedInfra:
        """Prepare a role carrying the SSM policy and an instance profile.

        Args:
            role_name: Existing role to use instead of creating one.

        Returns:
            ManagedInfra: The resources to associate and later tear down.

        Raises:
            PreconditionError: If any IAM call fails. Whatever was created
                before the failure is removed again.
        """
        infra = ManagedInfra(role_name=role_name or ROLE_NAME, owns_role=role_name is None)
        try:
            role_arn = self._ensure_role(infra)
            self.iam.attach_role_policy(RoleName=infra.role_name, PolicyArn=SSM_INSTANCE_POLICY_ARN)
            self._ensure_profile(infra, role_arn)
        except (PreconditionError, *AWS_ERRORS) as exc:
            for problem in self.teardown(infra):
                logger.warning("cleanup after failed setup: %s", problem)
            if isinstance(exc, PreconditionError):
                raise
            raise PreconditionError(f"unable to set up SSM access: {exc}") from exc
        logger.info("using role %s through instance profile %s", infra.role_name, infra.profile_name)
        return infra

    def _ensure_role(self, infra: ManagedInfra) -> str:
        try:
            return self.iam.get_role(RoleName=infra.role_name)["Role"]["Arn"]
        except ClientError as exc:
            if exc.response["Error"]["Code"] != "NoSuchEntity" or not infra.owns_role:
                raise
        logger.debug("creating role %s", infra.role_name)
        response = self.iam.create_role(
            RoleName=infra.role_name,
            AssumeRolePolicyDocument=ASSUME_ROLE_POLICY,
            Description="Ephemeral role used to install agents through SSM. Safe to delete if found.",
        )
        return response["Role"]["Arn"]

    def _ensure_profile(self, infra: ManagedInfra, role_arn: str) -> None:
        try:
            profile = self.iam.get_instance_profile(InstanceProfileName=INSTANCE_PROFILE_NAME)["InstanceProfile"]
        except ClientError as exc:
            if exc.response["Error"]["Code"] != "NoSuchEntity":
                raise
            logger.debug("creating instance profile %s", INSTANCE_PROFILE_NAME)
            profile = self.iam.create_instance_profile(InstanceProfileName=INSTANCE_PROFILE_NAME)["InstanceProfile"]
            self._sleep(PROFILE_SETTLE_SECONDS)

        roles = profile.get("Roles", [])
        if roles and roles[0]["Arn"] != role_arn:
            raise PreconditionError(
                f"instance profile {INSTANCE_PROFILE_NAME} already holds role {roles[0]['Arn']}"
            )
        infra.profile_name = INSTANCE_PROFILE_NAME
        infra.profile_arn = profile["Arn"]
        if not roles:
            self.iam.add_role_to_instance_profile(InstanceProfileName=infra.profile_name, RoleName=infra.role_name)

    def teardown(self, infra: ManagedInfra) -> list[str]:
        """Remove everything this run created.

        Every step is attempted even if an earlier one fails.

        Returns:
            list[str]: One message per failed step; empty on a clean teardown.
        """
        problems: list[str] = []

        def _step(description: str, call, **kwargs) -> None:
            try:
                call(**kwargs)
            except AWS_ERRORS as exc:
                error = TeardownError(f"{description}: {exc}")
                logger.warning("%s", error)
                problems.append(str(error))

        for region, association_id in infra.associations:
            ec2 = self.clients.client("ec2", region)
            _step(
                f"disassociate {association_id}",
                ec2.disassociate_iam_instance_profile,
                AssociationId=association_id,
            )

        if infra.profile_name:
            _step(
                f"remove role {infra.role_name} from {infra.profile_name}",
                self.iam.remove_role_from_instance_profile,
                InstanceProfileName=infra.profile_name,
                RoleName=infra.role_name,
            )
            _step(
                f"delete instance profile {infra.profile_name}",
                self.iam.delete_instance_profile,
                InstanceProfileName=infra.profile_name,
            )

        if not infra.owns_role:
            return problems

        try:
            attached = self.iam.list_attached_role_policies(RoleName=infra.role_name)["AttachedPolicies"]
        except AWS_ERRORS as exc:
            problems.append(str(TeardownError(f"list policies of {infra.role_name}: {exc}")))
            logger.warning("%s", problems[-1])
            attached = []
        for policy in attached:
            _step(
                f"detach {policy['PolicyArn']}",
                self.iam.detach_role_policy,
                RoleName=infra.role_name,
                PolicyArn=policy["PolicyArn"],
            )
        _step(f"delete role {infra.role_name}", self.iam.delete_role, RoleName=infra.role_name)
        return problems


class SSMChannel:
    """Per-instance operations of the managed channel.

    Args:
        clients: Shared boto3 client cache.
        infra: IAM resources to associate. None when instances are assumed
            to be managed already.
        command_checks: How many times to look at a submitted command.
        check_interval: Seconds to wait before each look.
        sleep: Async sleep, replaceable in tests.
    """

    def __init__(
        self,
        clients: AWSClients,
        infra: ManagedInfra | None = None,
        command_checks: int = 12,
        check_interval: float = 10.0,
        sleep=asyncio.sleep,
    ):
        self.clients = clients
        self.infra = infra
        self.command_checks = command_checks
        self.check_interval = check_interval
        self._sleep = sleep

    async def associate(self, descriptor: RunnerDescriptor) -> None:
        """Attach the run's instance profile to the instance.

        Raises:
            ManagedChannelError: If the instance carries a profile without
                the SSM policy, or an API call fails.
        """
        if self.infra is None:
            return
        await asyncio.to_thread(self._associate, descriptor)

    def _associate(self, descriptor: RunnerDescriptor) -> None:
        ec2 = self.clients.client("ec2", descriptor.location)
        iam = self.clients.client("iam", descriptor.location)
        try:
            existing = ec2.describe_iam_instance_profile_associations(
                Filters=[{"Name": "instance-id", "Values": [descriptor.instance_id]}]
            )["IamInstanceProfileAssociations"]
            if existing:
                association = existing[0]
                profile_name = association["IamInstanceProfile"]["Arn"].split("instance-profile/", 1)[1]
                profile = iam.get_instance_profile(InstanceProfileName=profile_name)["InstanceProfile"]
                if not profile.get("Roles"):
                    raise ManagedChannelError(f"{descriptor.label} has instance profile {profile_name} without a role")
                role_name = profile["Roles"][0]["RoleName"]
                attached = iam.list_attached_role_policies(RoleName=role_name)["AttachedPolicies"]
                if not any(p["PolicyArn"] == SSM_INSTANCE_POLICY_ARN for p in attached):
                    raise ManagedChannelError(
                        f"{descriptor.label} has instance profile {profile_name} "
                        f"without {SSM_INSTANCE_POLICY_ARN}"
                    )
                logger.debug("reusing association %s on %s", association["AssociationId"], descriptor.label)
                return

            response = ec2.associate_iam_instance_profile(
                IamInstanceProfile={"Arn": self.infra.profile_arn},
                InstanceId=descriptor.instance_id,
            )
        except AWS_ERRORS as exc:
            raise ManagedChannelError(f"unable to associate instance profile with {descriptor.label}: {exc}") from exc
        association_id = response["IamInstanceProfileAssociation"]["AssociationId"]
        self.infra.track_association(descriptor.location, association_id)
        logger.debug("associated %s with %s", self.infra.profile_name, descriptor.label)

    async def run_command(self, descriptor: RunnerDescriptor, command: str) -> CommandInvocation:
        """Submit a shell command and wait for it to reach a terminal status.

        Raises:
            ManagedChannelError: If submission or status lookup fails, or the
                command is still running after every check.
        """
        ssm = self.clients.client("ssm", descriptor.location)
        try:
            response = await asyncio.to_thread(
                ssm.send_command,
                InstanceIds=[descriptor.instance_id],
                DocumentName=RUN_SHELL_DOCUMENT,
                Comment=COMMAND_COMMENT,
                Parameters={"commands": [command]},
            )
        except AWS_ERRORS as exc:
            raise ManagedChannelError(f"unable to send command to {descriptor.label}: {exc}") from exc
        command_id = response["Command"]["CommandId"]

        status = CommandStatus.PENDING
        for _ in range(self.command_checks):
            await self._sleep(self.check_interval)
            try:
                output = await asyncio.to_thread(
                    ssm.get_command_invocation,
                    CommandId=command_id,
                    InstanceId=descriptor.instance_id,
                )
            except ClientError as exc:
                # Reason: the invocation shows up a little after send_command returns.
                if exc.response["Error"]["Code"] == "InvocationDoesNotExist":
                    continue
                raise ManagedChannelError(f"unable to read command {command_id}: {exc}") from exc
            except AWS_ERRORS as exc:
                raise ManagedChannelError(f"unable to read command {command_id}: {exc}") from exc

            status = CommandStatus.parse(output.get("Status"))
            if status.finished:
                return CommandInvocation(
                    command_id=command_id,
                    instance_id=descriptor.instance_id,
                    status=status,
                    stdout=output.get("StandardOutputContent", ""),
                    stderr=output.get("StandardErrorContent", ""),
                    status_details=output.get("StatusDetails", ""),
                )

        raise ManagedChannelError(
            f"command {command_id} on {descriptor.label} did not finish, last status {status.value}"
        )


async def poll_until_ready(
    channel: SSMChannel,
    descriptor: RunnerDescriptor,
    attempts: int = 6,
    interval: float = 60.0,
    sleep=asyncio.sleep,
) -> ProbeState:
    """Run the version probe until the instance answers through SSM.

    A fresh association takes minutes to reach the SSM agent, so each
    attempt waits ``interval`` seconds first. Cancelled, timed out,
    unfinished and failed-to-submit probes are retried.

    Returns:
        ProbeState: INSTALLED on Success, NOT_INSTALLED on Failed, UNEXPECTED
            on any other terminal status.

    Raises:
        ManagedChannelTimeout: If no attempt produced a usable answer.
    """
    for attempt in range(1, attempts + 1):
        await sleep(interval)
        try:
            invocation = await channel.run_command(descriptor, AGENT_VERSION_CMD)
        except ManagedChannelError as exc:
            logger.debug("probe attempt %d/%d on %s: %s", attempt, attempts, descriptor.label, exc)
            continue

        status = invocation.status
        logger.debug("probe attempt %d/%d on %s: %s", attempt, attempts, descriptor.label, status.value)
        if status in (CommandStatus.CANCELLED, CommandStatus.TIMED_OUT):
            continue
        if status is CommandStatus.SUCCESS:
            return ProbeState.INSTALLED
        if status is CommandStatus.FAILED:
            return ProbeState.NOT_INSTALLED
        return ProbeState.UNEXPECTED

    raise ManagedChannelTimeout(f"{descriptor.label} did not become reachable through SSM after {attempts} attempts")


async def install_via_channel(channel: SSMChannel, descriptor: RunnerDescriptor, command: str) -> CommandInvocation:
    """Run the installer through SSM and classify the invocation.

    Raises:
        InstallError: On a Failed or otherwise unsuccessful terminal status.
        ManagedChannelError: If the command could not be run at all.
    """
    invocation = await channel.run_command(descriptor, command)
    if invocation.status is CommandStatus.SUCCESS:
        return invocation
    if invocation.status is CommandStatus.FAILED:
        raise InstallError(
            f"unable to install agent on {descriptor.label}",
            stdout=invocation.stdout,
            stderr=invocation.stderr,
        )
    raise InstallError(
        f"unexpected status {invocation.status.value} installing agent on {descriptor.label}",
        stdout=invocation.stdout,
        stderr=invocation.stderr,
    )
