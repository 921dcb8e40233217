"""agentfleet CLI entry point."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from agentfleet import __version__
from agentfleet.config import InstallConfig, load_config
from agentfleet.errors import PreconditionError
from agentfleet.fleet import (
    Context,
    InstallOptions,
    aws_install_ec2ic,
    aws_install_ec2ssh,
    aws_install_ssm,
    gcp_install_osl,
    install_host,
)
from agentfleet.log import configure_logging
from agentfleet.models import DiscoveryFilter
from agentfleet.prompt import PromptCancelled, TerminalPrompter, stdin_is_tty
from agentfleet.summary import FleetSummary, build_results_table
from agentfleet.tokens import AgentTokenClient


app = typer.Typer(
    name="agentfleet",
    help="agentfleet: install the monitoring agent across cloud fleets.",
    no_args_is_help=True,
)
aws_app = typer.Typer(help="Discover EC2 instances and install the agent on them.", no_args_is_help=True)
gcp_app = typer.Typer(help="Discover Compute Engine instances and install the agent on them.", no_args_is_help=True)
app.add_typer(aws_app, name="aws-install")
app.add_typer(gcp_app, name="gcp-install")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"agentfleet {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    debug: bool = typer.Option(False, "--debug", help="Log every step, including SSH and AWS calls."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file to load."),
) -> None:
    """agentfleet: install the monitoring agent across cloud fleets."""
    configure_logging(debug)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except ValidationError as exc:
        console.print(f"Error: invalid configuration: {exc}")
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------------
# Shared option parsing
# ----------------------------------------------------------------------------


def _split_list(values: Optional[list[str]]) -> tuple[str, ...]:
    """Flatten repeated and comma separated values (``-r a,b -r c``)."""
    if not values:
        return ()
    return tuple(item.strip() for value in values for item in value.split(",") if item.strip())


def _parse_tag(value: Optional[str], flag: str) -> Optional[tuple[str, str]]:
    """Parse ``key,value`` into a pair.

    Raises:
        typer.BadParameter: If the value has no comma or an empty key.
    """
    if value is None:
        return None
    key, sep, tag_value = value.partition(",")
    if not sep or not key.strip():
        raise typer.BadParameter(f"expected KEY,VALUE, got {value!r}", param_hint=flag)
    return key.strip(), tag_value.strip()


def _make_context(ctx: typer.Context) -> Context:
    config: InstallConfig = ctx.obj["config"]
    token_source = None
    if config.api_url and config.api_key:
        token_source = AgentTokenClient(config.api_url, config.api_key)
    return Context(
        config=config,
        prompter=TerminalPrompter(),
        token_source=token_source,
        interactive=stdin_is_tty(),
    )


def _report(summary: FleetSummary, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(summary.to_dict(), indent=2))
        return
    if summary.results:
        console.print(build_results_table(summary))
    console.print(summary.headline())
    for problem in summary.teardown_errors:
        console.print(f"Warning: cleanup failed: {problem}")


def _execute(coro, json_output: bool) -> None:
    """Run an entry point; precondition failures exit 1, partial failures exit 0."""
    try:
        summary = asyncio.run(coro)
    except (PreconditionError, PromptCancelled) as exc:
        console.print(f"Error: {exc}")
        raise typer.Exit(code=1)
    _report(summary, json_output)


# Typer options reused by several commands.
TOKEN_OPTION = typer.Option(None, "--token", help="Agent access token.")
FORCE_OPTION = typer.Option(False, "--force", help="Install even if the agent is already running.")
TRUST_OPTION = typer.Option(
    None,
    "--trust_host_key/--no-trust_host_key",
    help="Add unknown host keys to known_hosts without asking.",
    show_default=False,
)
PARALLELISM_OPTION = typer.Option(None, "--max_parallelism", "-n", help="Maximum concurrent workers.", min=1)
SSH_USER_OPTION = typer.Option(None, "--ssh_username", help="Login user for every instance.")
SSH_PORT_OPTION = typer.Option(None, "--ssh_port", help="SSH port.", min=1, max=65535)
JSON_OPTION = typer.Option(False, "--json", help="Print the summary as JSON.")
TAG_KEY_OPTION = typer.Option(None, "--tag_key", help="Only instances that have this tag key.")
TAG_OPTION = typer.Option(None, "--tag", help="Only instances with this tag, as KEY,VALUE.")
REGIONS_OPTION = typer.Option(None, "--include_regions", "-r", help="Regions to scan (default: all enabled).")


# ----------------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------------


@app.command("install")
def install(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Host to install on, as [user@]host[:port]."),
    token: Optional[str] = TOKEN_OPTION,
    identity_file: Optional[Path] = typer.Option(None, "--identity_file", "-i", help="SSH private key."),
    ssh_password: Optional[str] = typer.Option(None, "--ssh_password", help="SSH password."),
    ssh_username: Optional[str] = SSH_USER_OPTION,
    ssh_port: Optional[int] = SSH_PORT_OPTION,
    trust_host_key: Optional[bool] = TRUST_OPTION,
    force: bool = FORCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install the agent on a single host over SSH."""
    options = InstallOptions(
        token=token,
        force=force,
        ssh_username=ssh_username,
        identity_file=identity_file.expanduser() if identity_file else None,
        ssh_password=ssh_password,
        ssh_port=ssh_port,
        trust_host_key=trust_host_key,
    )
    _execute(install_host(_make_context(ctx), target, options), json_output)


@aws_app.command("ec2ssh")
def aws_ec2ssh(
    ctx: typer.Context,
    token: Optional[str] = TOKEN_OPTION,
    tag_key: Optional[str] = TAG_KEY_OPTION,
    tag: Optional[str] = TAG_OPTION,
    include_regions: Optional[list[str]] = REGIONS_OPTION,
    identity_file: Optional[Path] = typer.Option(None, "--identity_file", "-i", help="SSH private key."),
    ssh_password: Optional[str] = typer.Option(None, "--ssh_password", help="SSH password."),
    ssh_username: Optional[str] = SSH_USER_OPTION,
    ssh_port: Optional[int] = SSH_PORT_OPTION,
    trust_host_key: Optional[bool] = TRUST_OPTION,
    max_parallelism: Optional[int] = PARALLELISM_OPTION,
    force: bool = FORCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install on running EC2 instances over SSH with existing credentials."""
    filt = DiscoveryFilter(
        locations=_split_list(include_regions),
        tag_key=tag_key,
        tag=_parse_tag(tag, "--tag"),
    )
    options = InstallOptions(
        token=token,
        force=force,
        ssh_username=ssh_username,
        identity_file=identity_file.expanduser() if identity_file else None,
        ssh_password=ssh_password,
        ssh_port=ssh_port,
        trust_host_key=trust_host_key,
        max_parallelism=max_parallelism,
    )
    _execute(aws_install_ec2ssh(_make_context(ctx), filt, options), json_output)


@aws_app.command("ec2ic")
def aws_ec2ic(
    ctx: typer.Context,
    token: Optional[str] = TOKEN_OPTION,
    tag_key: Optional[str] = TAG_KEY_OPTION,
    tag: Optional[str] = TAG_OPTION,
    include_regions: Optional[list[str]] = REGIONS_OPTION,
    ssh_username: Optional[str] = SSH_USER_OPTION,
    ssh_port: Optional[int] = SSH_PORT_OPTION,
    trust_host_key: Optional[bool] = TRUST_OPTION,
    max_parallelism: Optional[int] = PARALLELISM_OPTION,
    force: bool = FORCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install on running EC2 instances using EC2 Instance Connect.

    A key pair is generated for this run and its public half is pushed to
    each instance right before connecting.
    """
    filt = DiscoveryFilter(
        locations=_split_list(include_regions),
        tag_key=tag_key,
        tag=_parse_tag(tag, "--tag"),
    )
    options = InstallOptions(
        token=token,
        force=force,
        ssh_username=ssh_username,
        ssh_port=ssh_port,
        trust_host_key=trust_host_key,
        max_parallelism=max_parallelism,
    )
    _execute(aws_install_ec2ic(_make_context(ctx), filt, options), json_output)


@aws_app.command("ssm")
def aws_ssm(
    ctx: typer.Context,
    token: Optional[str] = TOKEN_OPTION,
    tag_key: Optional[str] = TAG_KEY_OPTION,
    tag: Optional[str] = TAG_OPTION,
    include_regions: Optional[list[str]] = REGIONS_OPTION,
    iam_role_name: Optional[str] = typer.Option(
        None, "--iam_role_name", help="Existing IAM role to use instead of creating one."
    ),
    dry_run: bool = typer.Option(False, "--dry_run", help="List the instances only; change nothing."),
    skip_iam_role_creation: bool = typer.Option(
        False, "--skip_iam_role_creation", help="Assume instances are already managed by SSM."
    ),
    max_parallelism: Optional[int] = PARALLELISM_OPTION,
    force: bool = FORCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install on running EC2 instances through SSM Run Command.

    A temporary IAM role and instance profile are created, associated with
    each instance, and removed again when every instance is done.
    """
    filt = DiscoveryFilter(
        locations=_split_list(include_regions),
        tag_key=tag_key,
        tag=_parse_tag(tag, "--tag"),
    )
    options = InstallOptions(token=token, force=force, max_parallelism=max_parallelism)
    _execute(
        aws_install_ssm(
            _make_context(ctx),
            filt,
            options,
            iam_role_name=iam_role_name,
            dry_run=dry_run,
            skip_iam_role_creation=skip_iam_role_creation,
        ),
        json_output,
    )


@gcp_app.command("osl")
def gcp_osl(
    ctx: typer.Context,
    organization: Optional[str] = typer.Argument(
        None, help="Organization id; its active projects are scanned when no project is known."
    ),
    token: Optional[str] = TOKEN_OPTION,
    project_id: Optional[str] = typer.Option(None, "--project_id", help="Only scan this project."),
    include_zones: Optional[list[str]] = typer.Option(None, "--include_zones", "-z", help="Zones to scan."),
    metadata_key: Optional[str] = typer.Option(None, "--metadata_key", help="Only instances with this metadata key."),
    metadata: Optional[str] = typer.Option(None, "--metadata", help="Only instances with this metadata, as KEY,VALUE."),
    account: Optional[str] = typer.Option(None, "--account", help="OS Login account email."),
    ssh_port: Optional[int] = SSH_PORT_OPTION,
    trust_host_key: Optional[bool] = TRUST_OPTION,
    max_parallelism: Optional[int] = PARALLELISM_OPTION,
    force: bool = FORCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install on running Compute Engine instances using OS Login."""
    filt = DiscoveryFilter(
        locations=_split_list(include_zones),
        tag_key=metadata_key,
        tag=_parse_tag(metadata, "--metadata"),
        project_id=project_id,
    )
    options = InstallOptions(
        token=token,
        force=force,
        ssh_port=ssh_port,
        trust_host_key=trust_host_key,
        max_parallelism=max_parallelism,
    )
    _execute(
        gcp_install_osl(_make_context(ctx), filt, options, organization=organization, account=account),
        json_output,
    )
