"""AWS: EC2 instance discovery and EC2 Instance Connect key injection.

boto3 is synchronous; every API call runs in a worker thread through
asyncio.to_thread so a slow region never stalls the event loop.
"""

import asyncio
import logging
import os
import threading

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from agentfleet.errors import DiscoveryError, KeyInjectionError
from agentfleet.models import DiscoveryFilter, Provider, RunnerDescriptor
from agentfleet.runner import Runner


logger = logging.getLogger(__name__)

AWS_ERRORS = (ClientError, BotoCoreError)

# Substring of the AMI name -> default login user. First match wins.
SSH_USERNAME_HINTS: tuple[tuple[str, str], ...] = (
    ("ubuntu", "ubuntu"),
    ("amazon_linux", "ec2-user"),
    ("amzn2-ami", "ec2-user"),
    ("amzn-ami", "ec2-user"),
    ("al2023-ami", "ec2-user"),
)


class AWSClients:
    """Cache of boto3 clients keyed by (service, region).

    boto3 sessions are not thread-safe but clients are, so clients are
    created under a lock and then shared by worker threads.

    Args:
        session: boto3 session. Defaults to one built from the environment.
    """

    def __init__(self, session: boto3.Session | None = None):
        self.session = session or boto3.Session()
        self._clients: dict[tuple[str, str], object] = {}
        self._lock = threading.Lock()

    def client(self, service: str, region: str):
        """Return a (cached) boto3 client for a service in a region."""
        with self._lock:
            key = (service, region)
            if key not in self._clients:
                self._clients[key] = self.session.client(service, region_name=region)
            return self._clients[key]


def build_instance_filters(filt: DiscoveryFilter) -> list[dict]:
    """Translate a DiscoveryFilter into DescribeInstances filters.

    EC2 ANDs distinct filters, so a tag-key filter plus a tag filter selects
    instances that satisfy both.

    Args:
        filt: Discovery criteria.

    Returns:
        list[dict]: Filters in boto3 ``Filters=`` form.
    """
    filters = [{"Name": "instance-state-name", "Values": ["running"]}]
    if filt.tag_key:
        filters.append({"Name": "tag-key", "Values": [filt.tag_key]})
    if filt.tag:
        key, value = filt.tag
        filters.append({"Name": f"tag:{key}", "Values": [value]})
    return filters


def detect_ssh_user(image_name: str, explicit: str | None = None) -> str:
    """Pick the SSH login user for an instance.

    Order: explicit user, AGENTFLEET_SSH_USER, then SSH_USERNAME_HINTS
    matched against the AMI name.

    Args:
        image_name: AMI name of the instance.
        explicit: User passed on the command line.

    Returns:
        str: The login user.

    Raises:
        ValueError: If no user can be determined.
    """
    if explicit:
        return explicit
    from_env = os.environ.get("AGENTFLEET_SSH_USER")
    if from_env:
        return from_env
    lowered = image_name.lower()
    for needle, user in SSH_USERNAME_HINTS:
        if needle in lowered:
            return user
    raise ValueError(f"no SSH username found for AMI {image_name!r}, set --ssh_username or AGENTFLEET_SSH_USER")


class AWSDiscovery:
    """Enumerates running EC2 instances with a public address.

    Args:
        clients: boto3 client cache.
        max_parallelism: Upper bound on concurrent region scans and on
            concurrent descriptor builds.
        default_region: Region used to list regions when AWS_REGION is unset.
        ssh_user: Explicit login user for every instance.
        resolve_user: Whether a login user is needed at all. The managed
            channel needs none, so AMI-based user detection is skipped.
        require_address: Keep only instances with a public address. The
            managed channel reaches instances without one.
    """

    def __init__(
        self,
        clients: AWSClients,
        max_parallelism: int = 50,
        default_region: str = "us-west-2",
        ssh_user: str | None = None,
        resolve_user: bool = True,
        require_address: bool = True,
    ):
        self.clients = clients
        self.max_parallelism = max_parallelism
        self.default_region = default_region
        self.ssh_user = ssh_user
        self.resolve_user = resolve_user
        self.require_address = require_address
        self._image_names: dict[tuple[str, str], str] = {}
        self._image_lock = threading.Lock()

    async def discover(self, filt: DiscoveryFilter) -> list[RunnerDescriptor]:
        """Discover candidate runners across all enabled regions.

        Args:
            filt: Region allow-list and tag predicates.

        Returns:
            list[RunnerDescriptor]: One descriptor per eligible instance.

        Raises:
            DiscoveryError: If regions or instances cannot be listed.
        """
        regions = await asyncio.to_thread(self._describe_regions, filt.locations)
        logger.debug("scanning %d region(s): %s", len(regions), ", ".join(regions))

        region_slots = asyncio.Semaphore(self.max_parallelism)
        build_slots = asyncio.Semaphore(self.max_parallelism)

        per_region = await asyncio.gather(
            *[self._discover_region(region, filt, region_slots, build_slots) for region in regions]
        )
        return [descriptor for found in per_region for descriptor in found]

    async def _discover_region(
        self,
        region: str,
        filt: DiscoveryFilter,
        region_slots: asyncio.Semaphore,
        build_slots: asyncio.Semaphore,
    ) -> list[RunnerDescriptor]:
        async with region_slots:
            instances = await asyncio.to_thread(self._list_instances, region, filt)

        async def _build(instance: dict) -> RunnerDescriptor | None:
            async with build_slots:
                return await asyncio.to_thread(self._build_descriptor, region, instance)

        built = await asyncio.gather(*[_build(instance) for instance in instances])
        return [descriptor for descriptor in built if descriptor is not None]

    def _describe_regions(self, locations: tuple[str, ...]) -> list[str]:
        region = os.environ.get("AWS_REGION") or self.default_region
        ec2 = self.clients.client("ec2", region)
        kwargs: dict = {}
        if locations:
            kwargs["Filters"] = [{"Name": "region-name", "Values": list(locations)}]
        try:
            response = ec2.describe_regions(**kwargs)
        except AWS_ERRORS as exc:
            raise DiscoveryError(f"unable to list AWS regions: {exc}") from exc
        return sorted(r["RegionName"] for r in response.get("Regions", []))

    def _list_instances(self, region: str, filt: DiscoveryFilter) -> list[dict]:
        ec2 = self.clients.client("ec2", region)
        paginator = ec2.get_paginator("describe_instances")
        instances: list[dict] = []
        try:
            for page in paginator.paginate(Filters=build_instance_filters(filt)):
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        if self.require_address and not instance.get("PublicIpAddress"):
                            logger.debug("skipping %s in %s: no public address", instance.get("InstanceId"), region)
                            continue
                        if instance.get("State", {}).get("Name") != "running":
                            continue
                        instances.append(instance)
        except AWS_ERRORS as exc:
            raise DiscoveryError(f"unable to list instances in {region}: {exc}") from exc
        logger.debug("found %d candidate instance(s) in %s", len(instances), region)
        return instances

    def _build_descriptor(self, region: str, instance: dict) -> RunnerDescriptor | None:
        instance_id = instance.get("InstanceId", "?")
        try:
            image_name = self._image_name(region, instance["ImageId"])
            user = detect_ssh_user(image_name, self.ssh_user) if self.resolve_user else ""
        except (*AWS_ERRORS, KeyError, ValueError) as exc:
            logger.warning("skipping instance %s in %s: %s", instance_id, region, exc)
            return None

        return RunnerDescriptor(
            provider=Provider.AWS,
            location=region,
            instance_id=instance_id,
            address=instance.get("PublicIpAddress") or instance.get("PrivateIpAddress", ""),
            user=user,
            image=image_name,
            availability_zone=instance.get("Placement", {}).get("AvailabilityZone", ""),
        )

    def _image_name(self, region: str, image_id: str) -> str:
        with self._image_lock:
            cached = self._image_names.get((region, image_id))
        if cached is not None:
            return cached

        response = self.clients.client("ec2", region).describe_images(ImageIds=[image_id])
        images = response.get("Images", [])
        if len(images) != 1:
            raise ValueError(f"expected to find one AMI for {image_id}, found {len(images)}")
        name = images[0].get("Name", "")
        with self._image_lock:
            self._image_names[(region, image_id)] = name
        return name


class AWSRunner(Runner):
    """EC2 runner; adds EC2 Instance Connect public key injection.

    Args:
        descriptor: EC2 instance descriptor.
        clients: boto3 client cache.
        **kwargs: Passed through to Runner.
    """

    def __init__(self, descriptor: RunnerDescriptor, clients: AWSClients, **kwargs):
        super().__init__(descriptor, **kwargs)
        self.clients = clients

    async def inject_public_key(self, public_key: str) -> None:
        """Send a public key valid for 60 seconds for ``self.user``.

        Raises:
            KeyInjectionError: If EC2 Instance Connect refuses the key.
        """
        client = self.clients.client("ec2-instance-connect", self.descriptor.location)
        kwargs = {
            "InstanceId": self.descriptor.instance_id,
            "InstanceOSUser": self.user,
            "SSHPublicKey": public_key,
        }
        if self.descriptor.availability_zone:
            kwargs["AvailabilityZone"] = self.descriptor.availability_zone
        try:
            response = await asyncio.to_thread(client.send_ssh_public_key, **kwargs)
        except AWS_ERRORS as exc:
            raise KeyInjectionError(f"ec2 instance connect key send failed for {self.descriptor.label}: {exc}") from exc
        if not response.get("Success", False):
            raise KeyInjectionError(f"ec2 instance connect rejected the key for {self.descriptor.label}")
