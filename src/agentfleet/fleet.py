"""Fleet coordination: dispatch one task per runner and aggregate outcomes.

Entry points (``install_host``, ``aws_install_*``, ``gcp_install_osl``)
resolve every fleet-wide precondition first (token, credentials,
discovery, managed-channel infrastructure) and only then dispatch. Once a
task is dispatched its failures are contained: each descriptor yields
exactly one RunnerResult, whatever happens inside the task.
"""

import asyncio
import dataclasses
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from google.cloud import oslogin_v1

from agentfleet.access import (
    Credentials,
    EphemeralKey,
    establish_ephemeral_access,
    resolve_credentials,
    verify_access,
)
from agentfleet.config import InstallConfig
from agentfleet.errors import AccessError, InstallError, PreconditionError
from agentfleet.install import build_install_cmd, is_agent_installed, run_install, summarize_install_output
from agentfleet.models import AccessMethod, DiscoveryFilter, InstallOutcome, Provider, RunnerDescriptor, RunnerResult
from agentfleet.prompt import Prompter
from agentfleet.providers.aws import AWSClients, AWSDiscovery, AWSRunner
from agentfleet.providers.gcp import GCPDiscovery, GCPRunner, default_account
from agentfleet.runner import Runner
from agentfleet.ssm import ProbeState, SSMChannel, SSMInfrastructure, install_via_channel, poll_until_ready
from agentfleet.summary import FleetSummary
from agentfleet.tokens import TokenSource, select_agent_token
from agentfleet.trust import KnownHostsStore, TofuVerifier


logger = logging.getLogger(__name__)

Task = Callable[[RunnerDescriptor], Awaitable[RunnerResult]]

_TARGET_RE = re.compile(r"^(?:(?P<user>[^@]+)@)?(?P<host>\[[^\]]+\]|[^:]+)(?::(?P<port>\d+))?$")


@dataclass
class Context:
    """Everything an entry point needs besides its own options.

    Attributes:
        config: Loaded installer configuration.
        prompter: Asks the user questions; None disables prompting.
        token_source: Backend that lists agent tokens, if configured.
        interactive: Whether questions may be asked at all.
    """

    config: InstallConfig
    prompter: Prompter | None = None
    token_source: TokenSource | None = None
    interactive: bool = False

    @property
    def active_prompter(self) -> Prompter | None:
        return self.prompter if self.interactive else None


@dataclass
class InstallOptions:
    """Per-invocation options shared by every install entry point.

    None means "use the configured value".
    """

    token: str | None = None
    force: bool = False
    ssh_username: str | None = None
    identity_file: Path | None = None
    ssh_password: str | None = None
    ssh_port: int | None = None
    trust_host_key: bool | None = None
    max_parallelism: int | None = None

    def parallelism(self, config: InstallConfig) -> int:
        return self.max_parallelism or config.max_parallelism

    def port(self, config: InstallConfig) -> int:
        return self.ssh_port or config.ssh_port


# ----------------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------------


async def _guarded(task: Task, descriptor: RunnerDescriptor, method: AccessMethod | None) -> RunnerResult:
    """Run one task and turn any failure into a RunnerResult."""
    try:
        return await task(descriptor)
    except AccessError as exc:
        logger.error("%s: %s", descriptor.label, exc)
        return RunnerResult(descriptor, InstallOutcome.ACCESS_FAILED, method, str(exc))
    except InstallError as exc:
        logger.error("%s: %s", descriptor.label, exc)
        return RunnerResult(descriptor, InstallOutcome.INSTALL_FAILED, method, str(exc))
    except Exception as exc:
        # Reason: one runner must never take the rest of the fleet down.
        logger.exception("%s: unexpected error", descriptor.label)
        return RunnerResult(descriptor, InstallOutcome.ACCESS_FAILED, method, f"{type(exc).__name__}: {exc}")


async def run_fleet(
    descriptors: list[RunnerDescriptor],
    task: Task,
    max_parallelism: int,
    method: AccessMethod | None = None,
    summary: FleetSummary | None = None,
) -> FleetSummary:
    """Process every descriptor with at most ``max_parallelism`` tasks in flight.

    Workers take descriptors from a queue, so each descriptor is owned by
    exactly one worker. There is no early exit: the call returns once every
    descriptor has a recorded outcome.

    Args:
        descriptors: Runners to process.
        task: Coroutine function producing the outcome for one descriptor.
        max_parallelism: Upper bound on concurrently running tasks.
        method: Access method reported for failures raised by ``task``.
        summary: Summary to record into. A new one is created if None.

    Returns:
        FleetSummary: Counts and per-runner results.
    """
    summary = summary if summary is not None else FleetSummary()
    if not descriptors:
        return summary

    queue: asyncio.Queue[RunnerDescriptor] = asyncio.Queue()
    for descriptor in descriptors:
        queue.put_nowait(descriptor)

    async def _worker() -> None:
        while True:
            try:
                descriptor = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            summary.record(await _guarded(task, descriptor, method))
            queue.task_done()

    workers = min(max_parallelism, len(descriptors))
    logger.info("processing %d runner(s) with %d worker(s)", len(descriptors), workers)
    await asyncio.gather(*[_worker() for _ in range(workers)])
    return summary


# ----------------------------------------------------------------------------
# Per-runner pipelines
# ----------------------------------------------------------------------------


async def probe_and_install(runner: Runner, install_cmd: str, force: bool = False) -> RunnerResult:
    """Verify access, skip if the agent is present, otherwise install.

    Raises:
        AccessError: If the runner cannot be reached.
        InstallError: If the installer fails.
    """
    await verify_access(runner)
    if not force and await is_agent_installed(runner):
        logger.info("%s: agent already installed", runner.descriptor.label)
        return RunnerResult(runner.descriptor, InstallOutcome.ALREADY_INSTALLED, runner.method, "agent already installed")

    result = await run_install(runner, install_cmd)
    logger.info("%s: agent installed", runner.descriptor.label)
    return RunnerResult(
        runner.descriptor, InstallOutcome.INSTALLED, runner.method, summarize_install_output(result.stdout)
    )


async def credentials_pipeline(
    runner: Runner, credentials: Credentials, install_cmd: str, force: bool = False
) -> RunnerResult:
    """Identity file or password access, then probe and install."""
    credentials.apply(runner)
    return await probe_and_install(runner, install_cmd, force)


async def ephemeral_key_pipeline(
    runner: Runner, key: EphemeralKey, install_cmd: str, force: bool = False
) -> RunnerResult:
    """Inject the run's public key, then probe and install."""
    await establish_ephemeral_access(runner, key)
    return await probe_and_install(runner, install_cmd, force)


async def managed_channel_pipeline(
    descriptor: RunnerDescriptor,
    channel: SSMChannel,
    install_cmd: str,
    config: InstallConfig,
    force: bool = False,
    sleep=asyncio.sleep,
) -> RunnerResult:
    """Associate, wait for the instance to answer through SSM, then install.

    The readiness poll always runs because it is also what waits for a new
    association to reach the instance. ``force`` only ignores an
    "already installed" answer.
    """
    method = AccessMethod.MANAGED_CHANNEL
    await channel.associate(descriptor)
    state = await poll_until_ready(
        channel, descriptor, attempts=config.ssm_poll_attempts, interval=config.ssm_poll_interval, sleep=sleep
    )
    if state is ProbeState.UNEXPECTED:
        logger.warning("%s: unexpected command exit, skipping", descriptor.label)
        return RunnerResult(descriptor, InstallOutcome.SKIPPED, method, "unexpected command exit")
    if state is ProbeState.INSTALLED and not force:
        logger.info("%s: agent already installed", descriptor.label)
        return RunnerResult(descriptor, InstallOutcome.ALREADY_INSTALLED, method, "agent already installed")

    invocation = await install_via_channel(channel, descriptor, install_cmd)
    logger.info("%s: agent installed", descriptor.label)
    return RunnerResult(descriptor, InstallOutcome.INSTALLED, method, summarize_install_output(invocation.stdout))


# ----------------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------------


def _install_command(ctx: Context, options: InstallOptions) -> str:
    token = select_agent_token(options.token, ctx.token_source, ctx.active_prompter, ctx.interactive)
    return build_install_cmd(ctx.config.agent_download_url, token)


def _verifier(ctx: Context, options: InstallOptions) -> TofuVerifier:
    trust = ctx.config.trust_host_key if options.trust_host_key is None else options.trust_host_key
    prompter = ctx.active_prompter
    return TofuVerifier(
        KnownHostsStore(ctx.config.known_hosts_path),
        trust_unknown=trust,
        confirm=prompter.confirm if prompter is not None else None,
    )


def _credentials(ctx: Context, options: InstallOptions) -> Credentials:
    return resolve_credentials(
        options.identity_file,
        options.ssh_password,
        ctx.config.identity_file_path,
        ctx.active_prompter,
    )


def _runner_kwargs(ctx: Context, options: InstallOptions) -> dict:
    return {
        "verifier": _verifier(ctx, options),
        "connect_timeout": ctx.config.connect_timeout,
        "command_timeout": ctx.config.command_timeout,
    }


def _with_port(descriptors: list[RunnerDescriptor], port: int) -> list[RunnerDescriptor]:
    return [dataclasses.replace(d, port=port) for d in descriptors]


def parse_target(target: str, default_port: int = 22) -> RunnerDescriptor:
    """Parse ``[user@]host[:port]`` into a descriptor.

    Raises:
        PreconditionError: If the target is malformed.
    """
    match = _TARGET_RE.match(target.strip())
    if not match:
        raise PreconditionError(f"invalid target {target!r}, expected [user@]host[:port]")
    host = match.group("host").strip("[]")
    port = int(match.group("port")) if match.group("port") else default_port
    return RunnerDescriptor(
        provider=Provider.HOST,
        location="",
        instance_id=host,
        address=host,
        user=match.group("user") or "",
        port=port,
    )


async def install_host(ctx: Context, target: str, options: InstallOptions) -> FleetSummary:
    """Install on a single ``[user@]host[:port]`` with SSH credentials."""
    descriptor = parse_target(target, options.port(ctx.config))
    if options.ssh_username and not descriptor.user:
        descriptor = dataclasses.replace(descriptor, user=options.ssh_username)
    install_cmd = _install_command(ctx, options)
    credentials = _credentials(ctx, options)
    runner_kwargs = _runner_kwargs(ctx, options)

    async def _task(d: RunnerDescriptor) -> RunnerResult:
        return await credentials_pipeline(Runner(d, **runner_kwargs), credentials, install_cmd, options.force)

    return await run_fleet([descriptor], _task, 1, method=credentials.method)


async def aws_install_ec2ssh(
    ctx: Context,
    filt: DiscoveryFilter,
    options: InstallOptions,
    clients: AWSClients | None = None,
) -> FleetSummary:
    """Install on running EC2 instances over SSH with existing credentials."""
    install_cmd = _install_command(ctx, options)
    clients = clients or AWSClients()
    credentials = _credentials(ctx, options)
    discovery = AWSDiscovery(
        clients,
        max_parallelism=options.parallelism(ctx.config),
        default_region=ctx.config.aws_default_region,
        ssh_user=options.ssh_username,
    )
    descriptors = _with_port(await discovery.discover(filt), options.port(ctx.config))
    runner_kwargs = _runner_kwargs(ctx, options)

    async def _task(d: RunnerDescriptor) -> RunnerResult:
        runner = AWSRunner(d, clients, **runner_kwargs)
        return await credentials_pipeline(runner, credentials, install_cmd, options.force)

    return await run_fleet(descriptors, _task, options.parallelism(ctx.config), method=credentials.method)


async def aws_install_ec2ic(
    ctx: Context,
    filt: DiscoveryFilter,
    options: InstallOptions,
    clients: AWSClients | None = None,
) -> FleetSummary:
    """Install on running EC2 instances through EC2 Instance Connect keys."""
    install_cmd = _install_command(ctx, options)
    clients = clients or AWSClients()
    discovery = AWSDiscovery(
        clients,
        max_parallelism=options.parallelism(ctx.config),
        default_region=ctx.config.aws_default_region,
        ssh_user=options.ssh_username,
    )
    descriptors = _with_port(await discovery.discover(filt), options.port(ctx.config))
    key = EphemeralKey.generate()
    runner_kwargs = _runner_kwargs(ctx, options)

    async def _task(d: RunnerDescriptor) -> RunnerResult:
        runner = AWSRunner(d, clients, **runner_kwargs)
        return await ephemeral_key_pipeline(runner, key, install_cmd, options.force)

    return await run_fleet(
        descriptors, _task, options.parallelism(ctx.config), method=AccessMethod.EPHEMERAL_KEY
    )


async def aws_install_ssm(
    ctx: Context,
    filt: DiscoveryFilter,
    options: InstallOptions,
    iam_role_name: str | None = None,
    dry_run: bool = False,
    skip_iam_role_creation: bool = False,
    clients: AWSClients | None = None,
    sleep=asyncio.sleep,
) -> FleetSummary:
    """Install on running EC2 instances through SSM Run Command.

    IAM setup happens before any task is dispatched and teardown after all
    of them have finished, even if the run is interrupted. Teardown problems
    are reported in the summary and never change recorded outcomes.

    Args:
        ctx: Run context.
        filt: Region allow-list and tag predicates.
        options: Shared install options.
        iam_role_name: Existing role to use instead of creating one.
        dry_run: Discover and report only; no IAM change, no command.
        skip_iam_role_creation: Assume instances are already SSM managed.
        clients: boto3 client cache.
        sleep: Async sleep used while polling, replaceable in tests.

    Returns:
        FleetSummary: Counts, per-runner results, teardown problems.
    """
    method = AccessMethod.MANAGED_CHANNEL
    install_cmd = _install_command(ctx, options)
    clients = clients or AWSClients()
    discovery = AWSDiscovery(
        clients,
        max_parallelism=options.parallelism(ctx.config),
        default_region=ctx.config.aws_default_region,
        resolve_user=False,
        require_address=False,
    )
    descriptors = await discovery.discover(filt)

    if dry_run:
        async def _report(d: RunnerDescriptor) -> RunnerResult:
            return RunnerResult(d, InstallOutcome.SKIPPED, method, "dry run")

        return await run_fleet(descriptors, _report, options.parallelism(ctx.config), method=method)

    infrastructure = SSMInfrastructure(clients, ctx.config.aws_default_region)
    infra = None
    if not skip_iam_role_creation and descriptors:
        infra = await asyncio.to_thread(infrastructure.setup, iam_role_name)

    channel = SSMChannel(
        clients,
        infra,
        command_checks=ctx.config.ssm_command_checks,
        check_interval=ctx.config.ssm_command_check_interval,
        sleep=sleep,
    )

    async def _task(d: RunnerDescriptor) -> RunnerResult:
        return await managed_channel_pipeline(d, channel, install_cmd, ctx.config, options.force, sleep)

    summary = FleetSummary()
    try:
        await run_fleet(descriptors, _task, options.parallelism(ctx.config), method=method, summary=summary)
    finally:
        if infra is not None:
            summary.teardown_errors.extend(await asyncio.to_thread(infrastructure.teardown, infra))
    return summary


async def gcp_install_osl(
    ctx: Context,
    filt: DiscoveryFilter,
    options: InstallOptions,
    organization: str | None = None,
    account: str | None = None,
    discovery=None,
    oslogin_client=None,
) -> FleetSummary:
    """Install on running Compute Engine instances through OS Login keys.

    Args:
        ctx: Run context.
        filt: Zone allow-list, metadata predicates, optional project.
        options: Shared install options.
        organization: Organization whose projects are scanned when no project
            can be determined otherwise.
        account: OS Login account email. Defaults to the service account of
            the application default credentials.
        discovery: GCPDiscovery to use, replaceable in tests.
        oslogin_client: OS Login client, replaceable in tests.
    """
    install_cmd = _install_command(ctx, options)
    account = account or await asyncio.to_thread(default_account)
    if not account:
        raise PreconditionError("no OS Login account: pass --account or use service account credentials")

    discovery = discovery or GCPDiscovery(max_parallelism=options.parallelism(ctx.config), ssh_user=options.ssh_username)
    descriptors = _with_port(await discovery.discover(filt, organization), options.port(ctx.config))
    oslogin_client = oslogin_client or oslogin_v1.OsLoginServiceClient()
    key = EphemeralKey.generate()
    runner_kwargs = _runner_kwargs(ctx, options)

    async def _task(d: RunnerDescriptor) -> RunnerResult:
        runner = GCPRunner(d, account, oslogin_client, **runner_kwargs)
        return await ephemeral_key_pipeline(runner, key, install_cmd, options.force)

    return await run_fleet(
        descriptors, _task, options.parallelism(ctx.config), method=AccessMethod.EPHEMERAL_KEY
    )
