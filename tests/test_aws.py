"""Tests for AWS discovery and EC2 Instance Connect injection (providers/aws.py).

boto3 is never reached: AWSClients is given a fake session whose clients
serve canned responses.
"""

import pytest
from botocore.exceptions import ClientError

from agentfleet.errors import DiscoveryError, KeyInjectionError
from agentfleet.models import DiscoveryFilter, Provider
from agentfleet.providers.aws import (
    AWSClients,
    AWSDiscovery,
    AWSRunner,
    build_instance_filters,
    detect_ssh_user,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def client_error(code: str = "UnauthorizedOperation", op: str = "DescribeInstances") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


def instance(instance_id, ip="198.51.100.1", image="ami-ubuntu", state="running", az="us-east-1a"):
    data = {
        "InstanceId": instance_id,
        "ImageId": image,
        "State": {"Name": state},
        "Placement": {"AvailabilityZone": az},
        "PrivateIpAddress": "10.0.0.1",
    }
    if ip:
        data["PublicIpAddress"] = ip
    return data


class FakePaginator:
    def __init__(self, ec2):
        self.ec2 = ec2

    def paginate(self, Filters):
        self.ec2.filters.append(Filters)
        if self.ec2.list_error:
            raise self.ec2.list_error
        # Reason: two pages prove every page is consumed.
        half = len(self.ec2.instances) // 2
        return [
            {"Reservations": [{"Instances": self.ec2.instances[:half]}]},
            {"Reservations": [{"Instances": self.ec2.instances[half:]}]},
        ]


class FakeEC2:
    IMAGES = {
        "ami-ubuntu": "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server",
        "ami-amzn": "amzn2-ami-kernel-5.10-hvm-2.0.20230101-x86_64-gp2",
        "ami-mystery": "custom-golden-image",
    }

    def __init__(self, regions=(), instances=(), list_error=None, regions_error=None):
        self.regions = list(regions)
        self.instances = list(instances)
        self.list_error = list_error
        self.regions_error = regions_error
        self.filters: list = []
        self.region_calls: list[dict] = []
        self.image_calls: list[list[str]] = []

    def describe_regions(self, **kwargs):
        self.region_calls.append(kwargs)
        if self.regions_error:
            raise self.regions_error
        return {"Regions": [{"RegionName": r} for r in self.regions]}

    def get_paginator(self, name):
        assert name == "describe_instances"
        return FakePaginator(self)

    def describe_images(self, ImageIds):
        self.image_calls.append(ImageIds)
        name = self.IMAGES.get(ImageIds[0])
        return {"Images": [{"Name": name}] if name else []}


class FakeEC2InstanceConnect:
    def __init__(self, success=True, error=None):
        self.success = success
        self.error = error
        self.calls: list[dict] = []

    def send_ssh_public_key(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return {"Success": self.success, "RequestId": "r-1"}


class FakeSession:
    """boto3.Session stand-in serving clients from a (service, region) map."""

    def __init__(self, clients):
        self.clients = clients
        self.created: list[tuple[str, str]] = []

    def client(self, service, region_name=None):
        self.created.append((service, region_name))
        return self.clients[(service, region_name)]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_filters_and_semantics():
    """tag-key and tag filters are added next to the running-state filter."""
    filters = build_instance_filters(DiscoveryFilter(tag_key="team", tag=("env", "prod")))

    assert filters == [
        {"Name": "instance-state-name", "Values": ["running"]},
        {"Name": "tag-key", "Values": ["team"]},
        {"Name": "tag:env", "Values": ["prod"]},
    ]


def test_filters_default_running_only():
    assert build_instance_filters(DiscoveryFilter()) == [
        {"Name": "instance-state-name", "Values": ["running"]},
    ]


@pytest.mark.parametrize(
    "image_name, expected",
    [
        ("ubuntu/images/hvm-ssd/ubuntu-focal", "ubuntu"),
        ("amzn2-ami-hvm-2.0", "ec2-user"),
        ("al2023-ami-2023.1", "ec2-user"),
        ("Amazon_Linux_2", "ec2-user"),
    ],
)
def test_detect_ssh_user_hints(image_name, expected):
    assert detect_ssh_user(image_name) == expected


def test_detect_ssh_user_precedence(monkeypatch):
    """Explicit option > AGENTFLEET_SSH_USER > AMI heuristic."""
    monkeypatch.setenv("AGENTFLEET_SSH_USER", "from-env")

    assert detect_ssh_user("ubuntu-jammy", explicit="admin") == "admin"
    assert detect_ssh_user("ubuntu-jammy") == "from-env"


def test_detect_ssh_user_unknown_image():
    with pytest.raises(ValueError, match="no SSH username"):
        detect_ssh_user("custom-golden-image")


def test_clients_are_cached():
    """One client per (service, region), however often it is requested."""
    ec2 = FakeEC2()
    session = FakeSession({("ec2", "us-east-1"): ec2})
    clients = AWSClients(session)

    assert clients.client("ec2", "us-east-1") is clients.client("ec2", "us-east-1")
    assert session.created == [("ec2", "us-east-1")]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_discover_across_regions():
    """Instances from every region are found and carry region, AZ, and user."""
    listing = FakeEC2(regions=["us-east-1", "eu-west-1"])
    east = FakeEC2(instances=[instance("i-east", ip="198.51.100.1", image="ami-ubuntu")])
    west = FakeEC2(instances=[instance("i-eu", ip="198.51.100.2", image="ami-amzn", az="eu-west-1b")])
    session = FakeSession({
        ("ec2", "us-west-2"): listing,
        ("ec2", "us-east-1"): east,
        ("ec2", "eu-west-1"): west,
    })
    discovery = AWSDiscovery(AWSClients(session), max_parallelism=2)

    found = await discovery.discover(DiscoveryFilter())

    by_id = {d.instance_id: d for d in found}
    assert set(by_id) == {"i-east", "i-eu"}
    assert by_id["i-east"].user == "ubuntu"
    assert by_id["i-east"].location == "us-east-1"
    assert by_id["i-eu"].user == "ec2-user"
    assert by_id["i-eu"].availability_zone == "eu-west-1b"
    assert by_id["i-eu"].provider is Provider.AWS


@pytest.mark.asyncio
async def test_region_allow_list_and_aws_region(monkeypatch):
    """Region listing goes to AWS_REGION and is filtered by the allow-list."""
    monkeypatch.setenv("AWS_REGION", "ap-south-1")
    listing = FakeEC2(regions=["us-east-1"])
    session = FakeSession({("ec2", "ap-south-1"): listing, ("ec2", "us-east-1"): FakeEC2()})
    discovery = AWSDiscovery(AWSClients(session))

    await discovery.discover(DiscoveryFilter(locations=("us-east-1",)))

    assert listing.region_calls == [{"Filters": [{"Name": "region-name", "Values": ["us-east-1"]}]}]


@pytest.mark.asyncio
async def test_only_public_running_instances():
    """Instances without a public address are dropped."""
    region = FakeEC2(instances=[
        instance("i-public"),
        instance("i-private", ip=None),
        instance("i-stopping", state="stopping"),
    ])
    session = FakeSession({("ec2", "us-west-2"): FakeEC2(regions=["us-east-1"]), ("ec2", "us-east-1"): region})

    found = await AWSDiscovery(AWSClients(session)).discover(DiscoveryFilter(tag_key="team", tag=("env", "prod")))

    assert [d.instance_id for d in found] == ["i-public"]
    assert {"Name": "tag:env", "Values": ["prod"]} in region.filters[0]


@pytest.mark.asyncio
async def test_managed_channel_discovery_keeps_private_instances():
    """Without the address requirement, private instances use their private IP."""
    region = FakeEC2(instances=[instance("i-private", ip=None, image="ami-mystery")])
    session = FakeSession({("ec2", "us-west-2"): FakeEC2(regions=["us-east-1"]), ("ec2", "us-east-1"): region})
    discovery = AWSDiscovery(AWSClients(session), resolve_user=False, require_address=False)

    found = await discovery.discover(DiscoveryFilter())

    assert [(d.instance_id, d.address, d.user) for d in found] == [("i-private", "10.0.0.1", "")]


@pytest.mark.asyncio
async def test_zero_matches_is_empty():
    session = FakeSession({("ec2", "us-west-2"): FakeEC2(regions=["us-east-1"]), ("ec2", "us-east-1"): FakeEC2()})

    assert await AWSDiscovery(AWSClients(session)).discover(DiscoveryFilter()) == []


@pytest.mark.asyncio
async def test_bad_descriptor_is_skipped():
    """An instance whose user cannot be determined is skipped, not fatal."""
    region = FakeEC2(instances=[instance("i-ok"), instance("i-odd", image="ami-mystery"), instance("i-gone", image="ami-x")])
    session = FakeSession({("ec2", "us-west-2"): FakeEC2(regions=["us-east-1"]), ("ec2", "us-east-1"): region})

    found = await AWSDiscovery(AWSClients(session)).discover(DiscoveryFilter())

    assert [d.instance_id for d in found] == ["i-ok"]


@pytest.mark.asyncio
async def test_image_lookups_are_cached():
    region = FakeEC2(instances=[instance("i-1"), instance("i-2"), instance("i-3")])
    session = FakeSession({("ec2", "us-west-2"): FakeEC2(regions=["us-east-1"]), ("ec2", "us-east-1"): region})

    await AWSDiscovery(AWSClients(session), max_parallelism=1).discover(DiscoveryFilter())

    assert region.image_calls == [["ami-ubuntu"]]


@pytest.mark.asyncio
async def test_region_listing_error_aborts():
    session = FakeSession({("ec2", "us-west-2"): FakeEC2(regions_error=client_error(op="DescribeRegions"))})

    with pytest.raises(DiscoveryError, match="regions"):
        await AWSDiscovery(AWSClients(session)).discover(DiscoveryFilter())


@pytest.mark.asyncio
async def test_instance_listing_error_aborts():
    session = FakeSession({
        ("ec2", "us-west-2"): FakeEC2(regions=["us-east-1"]),
        ("ec2", "us-east-1"): FakeEC2(list_error=client_error()),
    })

    with pytest.raises(DiscoveryError, match="us-east-1"):
        await AWSDiscovery(AWSClients(session)).discover(DiscoveryFilter())


# ---------------------------------------------------------------------------
# EC2 Instance Connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_public_key(make_descriptor):
    eic = FakeEC2InstanceConnect()
    clients = AWSClients(FakeSession({("ec2-instance-connect", "us-west-2"): eic}))
    runner = AWSRunner(make_descriptor("i-9", user="ubuntu"), clients)

    await runner.inject_public_key("ssh-ed25519 AAAA test")

    assert eic.calls == [{
        "InstanceId": "i-9",
        "InstanceOSUser": "ubuntu",
        "SSHPublicKey": "ssh-ed25519 AAAA test",
        "AvailabilityZone": "us-west-2a",
    }]


@pytest.mark.asyncio
@pytest.mark.parametrize("eic", [
    FakeEC2InstanceConnect(success=False),
    FakeEC2InstanceConnect(error=client_error("AccessDeniedException", "SendSSHPublicKey")),
])
async def test_send_public_key_failure(eic, make_descriptor):
    clients = AWSClients(FakeSession({("ec2-instance-connect", "us-west-2"): eic}))
    runner = AWSRunner(make_descriptor(), clients)

    with pytest.raises(KeyInjectionError):
        await runner.inject_public_key("ssh-ed25519 AAAA")
