import pytest

from eksforge.errors import INCOMPATIBLE_FLAGS, ConfigurationConflict, InsufficientResources, InvalidSpecification
from eksforge.models import TOPOLOGY_PRIVATE, TOPOLOGY_PUBLIC, NodeGroup, SubnetSpec, VPCSpec
from eksforge.modules.network import (
    FLAG_CIDR,
    FLAG_FROM_CLUSTER,
    FLAG_SUBNETS,
    FLAG_ZONES,
    NetworkFlags,
    ResolutionMode,
    derive_subnets,
    resolve_network,
)
from eksforge.providers.base import ClusterNetwork, Subnet
from eksforge.tests.fakes import FakeProvider, make_spec


def subnet(sid, zone, vpc="vpc-1"):
    return Subnet(id=sid, availability_zone=zone, cidr=None, vpc_id=vpc)


def test_from_cluster_and_cidr_conflict_without_provider_calls(provider):
    flags = NetworkFlags(from_cluster="other", cidr="10.0.0.0/16")

    with pytest.raises(ConfigurationConflict) as excinfo:
        resolve_network(make_spec(), flags, provider)

    assert excinfo.value.flags == (FLAG_FROM_CLUSTER, FLAG_CIDR)
    assert INCOMPATIBLE_FLAGS in str(excinfo.value)
    assert provider.calls == []


@pytest.mark.parametrize("flags,expected", [
    (NetworkFlags(from_cluster="other", zones=["us-west-2a", "us-west-2b"]), (FLAG_FROM_CLUSTER, FLAG_ZONES)),
    (NetworkFlags(from_cluster="other", private_subnets=["subnet-1"]), (FLAG_FROM_CLUSTER, FLAG_SUBNETS)),
    (NetworkFlags(public_subnets=["subnet-1"], zones=["us-west-2a"]), (FLAG_SUBNETS, FLAG_ZONES)),
    (NetworkFlags(public_subnets=["subnet-1"], cidr="10.0.0.0/16"), (FLAG_SUBNETS, FLAG_CIDR)),
])
def test_mode_conflicts(provider, flags, expected):
    with pytest.raises(ConfigurationConflict) as excinfo:
        resolve_network(make_spec(), flags, provider)
    assert excinfo.value.flags == expected
    assert provider.calls == []


def test_subnets_from_config_conflict_with_from_cluster(provider):
    spec = make_spec(vpc=VPCSpec(subnets={TOPOLOGY_PRIVATE: (SubnetSpec("subnet-1"),)}))
    with pytest.raises(ConfigurationConflict):
        resolve_network(spec, NetworkFlags(from_cluster="other"), provider)


def test_derive_uses_provider_zones_when_none_given(provider):
    network = resolve_network(make_spec(), NetworkFlags(), provider)

    assert network.mode is ResolutionMode.DERIVE
    assert network.zones == ["us-west-2a", "us-west-2b", "us-west-2c"]
    assert network.cidr == "192.168.0.0/16"
    assert len(network.subnets[TOPOLOGY_PUBLIC]) == 3
    assert len(network.subnets[TOPOLOGY_PRIVATE]) == 3
    assert network.is_new_vpc()


def test_derive_prefers_flag_zones(provider):
    network = resolve_network(make_spec(), NetworkFlags(zones=["us-west-2b", "us-west-2c"]), provider)
    assert network.zones == ["us-west-2b", "us-west-2c"]
    assert provider.called("available_zones") == []


def test_derive_requires_two_zones():
    provider = FakeProvider(zones=["us-west-2a"])
    with pytest.raises(InsufficientResources):
        resolve_network(make_spec(), NetworkFlags(), provider)


def test_derive_dry_run_skips_subnets(provider):
    network = resolve_network(make_spec(), NetworkFlags(dry_run=True), provider)
    assert network.dry_run
    assert network.zones
    assert network.subnets == {}


def test_derive_subnets_splits_cidr():
    subnets = derive_subnets("192.168.0.0/16", ["a", "b", "c"])

    assert [s.cidr for s in subnets[TOPOLOGY_PUBLIC]] == ["192.168.0.0/19", "192.168.32.0/19", "192.168.64.0/19"]
    assert [s.cidr for s in subnets[TOPOLOGY_PRIVATE]] == ["192.168.96.0/19", "192.168.128.0/19", "192.168.160.0/19"]
    assert [s.availability_zone for s in subnets[TOPOLOGY_PRIVATE]] == ["a", "b", "c"]


def test_derive_subnets_rejects_bad_prefix():
    with pytest.raises(InvalidSpecification):
        derive_subnets("10.0.0.0/8", ["a", "b"])


def test_import_subnets():
    provider = FakeProvider(subnets=[subnet("subnet-a", "us-west-2a"), subnet("subnet-b", "us-west-2b")])
    spec = make_spec(
        nodegroups=[NodeGroup(name="ng-1", private_networking=True)],
        availability_zones=("us-west-2a", "us-west-2b"),
    )

    network = resolve_network(spec, NetworkFlags(private_subnets=["subnet-a", "subnet-b"]), provider)

    assert network.mode is ResolutionMode.IMPORT_SUBNETS
    assert network.vpc_id == "vpc-1"
    assert network.zones == ["us-west-2a", "us-west-2b"]
    assert network.subnet_ids(TOPOLOGY_PRIVATE) == ["subnet-a", "subnet-b"]
    assert provider.mutating_calls == []


def test_import_subnets_missing_zone_fails_before_mutation():
    provider = FakeProvider(subnets=[subnet("subnet-a", "us-west-2a"), subnet("subnet-b", "us-west-2b")])
    spec = make_spec(
        nodegroups=["ng-1"],
        availability_zones=("us-west-2a", "us-west-2b", "us-west-2c"),
    )

    with pytest.raises(InsufficientResources) as excinfo:
        resolve_network(spec, NetworkFlags(public_subnets=["subnet-a", "subnet-b"]), provider)

    assert "us-west-2c" in str(excinfo.value)
    assert provider.mutating_calls == []


def test_import_subnets_requires_two_per_topology():
    provider = FakeProvider(subnets=[subnet("subnet-a", "us-west-2a")])
    with pytest.raises(InsufficientResources):
        resolve_network(make_spec(), NetworkFlags(public_subnets=["subnet-a"]), provider)


def test_import_subnets_must_share_a_vpc():
    provider = FakeProvider(subnets=[subnet("subnet-a", "us-west-2a", "vpc-1"), subnet("subnet-b", "us-west-2b", "vpc-2")])
    with pytest.raises(InsufficientResources):
        resolve_network(make_spec(), NetworkFlags(public_subnets=["subnet-a", "subnet-b"]), provider)


def test_private_nodegroups_need_private_subnets():
    provider = FakeProvider(subnets=[subnet("subnet-a", "us-west-2a"), subnet("subnet-b", "us-west-2b")])
    spec = make_spec(nodegroups=[NodeGroup(name="ng-1", private_networking=True)])

    with pytest.raises(InsufficientResources):
        resolve_network(spec, NetworkFlags(public_subnets=["subnet-a", "subnet-b"]), provider)


def test_nodegroup_zones_must_be_covered():
    provider = FakeProvider(subnets=[subnet("subnet-a", "us-west-2a"), subnet("subnet-b", "us-west-2b")])
    spec = make_spec(nodegroups=[NodeGroup(name="ng-1", availability_zones=("us-west-2d",))])

    with pytest.raises(InsufficientResources):
        resolve_network(spec, NetworkFlags(public_subnets=["subnet-a", "subnet-b"]), provider)


def test_import_from_cluster():
    source = ClusterNetwork(vpc_id="vpc-9", cidr="10.10.0.0/16", subnets={
        TOPOLOGY_PUBLIC: [subnet("subnet-b", "us-west-2b", "vpc-9"), subnet("subnet-a", "us-west-2a", "vpc-9")],
    })
    provider = FakeProvider(cluster_networks={"other": source})

    network = resolve_network(make_spec(nodegroups=["ng-1"]), NetworkFlags(from_cluster="other"), provider)

    assert network.mode is ResolutionMode.IMPORT_CLUSTER
    assert network.vpc_id == "vpc-9"
    assert network.zones == ["us-west-2a", "us-west-2b"]
    assert not network.is_new_vpc()


def test_import_from_cluster_dry_run_only_reads_source():
    source = ClusterNetwork(vpc_id="vpc-9", cidr="10.10.0.0/16", subnets={
        TOPOLOGY_PUBLIC: [subnet("subnet-a", "us-west-2a", "vpc-9"), subnet("subnet-b", "us-west-2b", "vpc-9")],
    })
    provider = FakeProvider(cluster_networks={"other": source})

    network = resolve_network(make_spec(), NetworkFlags(from_cluster="other", dry_run=True), provider)

    assert network.dry_run
    assert network.zones == ["us-west-2a", "us-west-2b"]
    assert provider.calls == [("describe_cluster_network", "other")]
    assert provider.mutating_calls == []


def test_import_from_missing_cluster_fails_dry_run(provider):
    with pytest.raises(InsufficientResources, match="does not exist"):
        resolve_network(make_spec(), NetworkFlags(from_cluster="missing", dry_run=True), provider)
    assert provider.mutating_calls == []
