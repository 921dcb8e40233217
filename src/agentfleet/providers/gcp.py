"""GCP: Compute Engine instance discovery and OS Login key injection."""

import asyncio
import logging
import time

import google.auth
import google.auth.transport.requests
import requests
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import compute_v1, oslogin_v1, resourcemanager_v3

from agentfleet.errors import DiscoveryError, KeyInjectionError, PreconditionError
from agentfleet.models import DiscoveryFilter, Provider, RunnerDescriptor
from agentfleet.runner import Runner


logger = logging.getLogger(__name__)

METADATA_PROJECT_URL = "http://metadata.google.internal/computeMetadata/v1/project/project-id"

GOOGLE_ERRORS = (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError)


def project_from_metadata_server(timeout: float = 2.0) -> str | None:
    """Ask the GCE metadata server which project we are running in.

    Args:
        timeout: Request timeout in seconds.

    Returns:
        str | None: The project id, or None when not running on GCE.
    """
    try:
        response = requests.get(METADATA_PROJECT_URL, headers={"Metadata-Flavor": "Google"}, timeout=timeout)
    except requests.RequestException as exc:
        logger.debug("metadata server unavailable: %s", exc)
        return None
    if response.status_code != 200:
        logger.debug("metadata server answered %s", response.status_code)
        return None
    return response.text.strip() or None


def default_account() -> str | None:
    """Return the service account email of the application default credentials.

    Returns:
        str | None: The email, or None for credentials without one (e.g. user
            credentials from gcloud).
    """
    try:
        credentials, _ = google.auth.default()
    except auth_exceptions.DefaultCredentialsError as exc:
        raise PreconditionError(f"no GCP credentials found: {exc}") from exc

    email = getattr(credentials, "service_account_email", None)
    # Reason: GCE credentials report "default" until they have been refreshed.
    if email == "default":
        credentials.refresh(google.auth.transport.requests.Request())
        email = credentials.service_account_email
    return email


def _external_ip(instance: compute_v1.Instance) -> str | None:
    for nic in instance.network_interfaces:
        for access_config in nic.access_configs:
            if access_config.nat_i_p:
                return access_config.nat_i_p
    return None


def _boot_image(instance: compute_v1.Instance) -> str:
    for disk in instance.disks:
        if disk.boot and disk.licenses:
            return disk.licenses[0].rsplit("/", 1)[-1]
    return ""


def metadata_matches(instance: compute_v1.Instance, filt: DiscoveryFilter) -> bool:
    """Apply the metadata key and key/value predicates (AND).

    Args:
        instance: Compute Engine instance.
        filt: Discovery criteria; ``tag_key``/``tag`` refer to metadata items.

    Returns:
        bool: True if every configured predicate holds.
    """
    items = {item.key: item.value for item in instance.metadata.items}
    if filt.tag_key and filt.tag_key not in items:
        return False
    if filt.tag:
        key, value = filt.tag
        if items.get(key) != value:
            return False
    return True


class GCPDiscovery:
    """Enumerates running Compute Engine instances with an external IP.

    Args:
        instances_client: Compute instances client. Created on first use.
        projects_client: Resource Manager projects client. Created on first use.
        max_parallelism: Upper bound on concurrent project scans.
        ssh_user: Login user to record on descriptors. OS Login replaces it
            with the POSIX account name when the key is imported.
    """

    def __init__(
        self,
        instances_client: compute_v1.InstancesClient | None = None,
        projects_client: resourcemanager_v3.ProjectsClient | None = None,
        max_parallelism: int = 50,
        ssh_user: str | None = None,
    ):
        self._instances_client = instances_client
        self._projects_client = projects_client
        self.max_parallelism = max_parallelism
        self.ssh_user = ssh_user or ""

    @property
    def instances_client(self) -> compute_v1.InstancesClient:
        if self._instances_client is None:
            self._instances_client = compute_v1.InstancesClient()
        return self._instances_client

    @property
    def projects_client(self) -> resourcemanager_v3.ProjectsClient:
        if self._projects_client is None:
            self._projects_client = resourcemanager_v3.ProjectsClient()
        return self._projects_client

    async def resolve_projects(self, filt: DiscoveryFilter, organization: str | None = None) -> list[str]:
        """Decide which projects to scan.

        Order: explicit project, the project reported by the metadata
        server, then every active project of the organization.

        Raises:
            PreconditionError: If no project can be determined.
            DiscoveryError: If the organization's projects cannot be listed.
        """
        if filt.project_id:
            return [filt.project_id]
        project = await asyncio.to_thread(project_from_metadata_server)
        if project:
            return [project]
        if organization:
            return await asyncio.to_thread(self._organization_projects, organization)
        raise PreconditionError(
            "could not find project ID: no metadata server, and neither --project_id "
            "nor an organization was given"
        )

    async def discover(self, filt: DiscoveryFilter, organization: str | None = None) -> list[RunnerDescriptor]:
        """Discover candidate runners.

        Args:
            filt: Zone allow-list, metadata predicates, optional project.
            organization: Numeric organization id to enumerate projects from.

        Returns:
            list[RunnerDescriptor]: One descriptor per eligible instance.

        Raises:
            DiscoveryError: If projects or instances cannot be listed.
        """
        projects = await self.resolve_projects(filt, organization)
        slots = asyncio.Semaphore(self.max_parallelism)

        async def _scan(project: str) -> list[RunnerDescriptor]:
            async with slots:
                return await asyncio.to_thread(self._list_instances, project, filt)

        per_project = await asyncio.gather(*[_scan(project) for project in projects])
        return [descriptor for found in per_project for descriptor in found]

    def _organization_projects(self, organization: str) -> list[str]:
        query = f"parent:organizations/{organization} state:ACTIVE"
        try:
            projects = [p.project_id for p in self.projects_client.search_projects(query=query)]
        except GOOGLE_ERRORS as exc:
            raise DiscoveryError(f"unable to list projects in organization {organization}: {exc}") from exc
        logger.debug("organization %s has %d active project(s)", organization, len(projects))
        return projects

    def _list_instances(self, project: str, filt: DiscoveryFilter) -> list[RunnerDescriptor]:
        request = compute_v1.AggregatedListInstancesRequest(project=project, filter="status = RUNNING")
        descriptors: list[RunnerDescriptor] = []
        try:
            for zone_path, scoped in self.instances_client.aggregated_list(request=request):
                zone = zone_path.rsplit("/", 1)[-1]
                if filt.locations and zone not in filt.locations:
                    continue
                for instance in scoped.instances:
                    descriptor = self._build_descriptor(project, zone, instance, filt)
                    if descriptor is not None:
                        descriptors.append(descriptor)
        except GOOGLE_ERRORS as exc:
            raise DiscoveryError(f"unable to list instances in project {project}: {exc}") from exc
        logger.debug("found %d candidate instance(s) in %s", len(descriptors), project)
        return descriptors

    def _build_descriptor(
        self, project: str, zone: str, instance: compute_v1.Instance, filt: DiscoveryFilter
    ) -> RunnerDescriptor | None:
        try:
            if instance.status != "RUNNING" or not metadata_matches(instance, filt):
                return None
            address = _external_ip(instance)
            image = _boot_image(instance)
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            logger.warning("skipping instance %s in %s: %s", instance.name or "?", zone, exc)
            return None
        if address is None:
            logger.debug("skipping %s in %s: no external address", instance.name, zone)
            return None
        return RunnerDescriptor(
            provider=Provider.GCP,
            location=zone,
            instance_id=instance.name,
            address=address,
            user=self.ssh_user,
            image=image,
            project=project,
        )


class GCPRunner(Runner):
    """Compute Engine runner; adds OS Login public key import.

    Args:
        descriptor: Compute Engine instance descriptor.
        account: Email of the identity whose OS Login profile receives the key.
        oslogin_client: Shared OS Login client.
        key_ttl: Seconds the imported key stays valid.
        **kwargs: Passed through to Runner.
    """

    def __init__(
        self,
        descriptor: RunnerDescriptor,
        account: str,
        oslogin_client: oslogin_v1.OsLoginServiceClient,
        key_ttl: int = 300,
        **kwargs,
    ):
        super().__init__(descriptor, **kwargs)
        self.account = account
        self.oslogin_client = oslogin_client
        self.key_ttl = key_ttl

    async def inject_public_key(self, public_key: str) -> None:
        """Import the key into the OS Login profile and adopt its POSIX user.

        Raises:
            KeyInjectionError: If OS Login refuses the key or has no POSIX account.
        """
        expiration_usec = int((time.time() + self.key_ttl) * 1_000_000)
        request = {
            "parent": f"users/{self.account}",
            "ssh_public_key": {"key": public_key, "expiration_time_usec": expiration_usec},
            "project_id": self.descriptor.project,
        }
        try:
            response = await asyncio.to_thread(self.oslogin_client.import_ssh_public_key, request=request)
        except GOOGLE_ERRORS as exc:
            raise KeyInjectionError(f"os login key import failed for {self.descriptor.label}: {exc}") from exc

        accounts = list(response.login_profile.posix_accounts)
        if not accounts:
            raise KeyInjectionError(f"os login profile of {self.account} has no POSIX account")
        primary = next((a for a in accounts if a.primary), accounts[0])
        logger.debug("os login user for %s is %s", self.descriptor.label, primary.username)
        self.user = primary.username
