"""Network resolution.

Decides whether the cluster gets a new dedicated VPC, reuses the network of
another cluster, or uses explicitly given subnets. Exactly one mode applies
per run; inputs belonging to different modes are rejected, never silently
overridden.
"""
import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from ..config import Config
from ..errors import ConfigurationConflict, InsufficientResources, InvalidSpecification
from ..logging import OutputSink
from ..models import (
    MIN_REQUIRED_SUBNETS,
    MIN_REQUIRED_ZONES,
    TOPOLOGIES,
    TOPOLOGY_PRIVATE,
    TOPOLOGY_PUBLIC,
    ClusterSpec,
)
from ..providers.base import Provider, Subnet

logger = logging.getLogger("eksforge.network")

FLAG_ZONES = "--zones"
FLAG_CIDR = "--vpc-cidr"
FLAG_SUBNETS = "--vpc-private-subnets/--vpc-public-subnets"
FLAG_FROM_CLUSTER = "--vpc-from-cluster"

CUSTOM_NETWORKING_NOTICE = (
    "custom VPC/subnets will be used; if resulting cluster doesn't function as expected, "
    "make sure to review the configuration of VPC/subnets"
)


class ResolutionMode(str, Enum):
    DERIVE = "derive"
    IMPORT_CLUSTER = "import-cluster"
    IMPORT_SUBNETS = "import-subnets"


@dataclass
class NetworkFlags:
    """Network inputs given on the command line.

    ``cidr`` is only set when the operator explicitly overrode it.
    """
    zones: List[str] = field(default_factory=list)
    cidr: Optional[str] = None
    private_subnets: List[str] = field(default_factory=list)
    public_subnets: List[str] = field(default_factory=list)
    from_cluster: Optional[str] = None
    dry_run: bool = False

    def subnets_given(self) -> bool:
        return bool(self.private_subnets or self.public_subnets)


@dataclass
class ResolvedNetwork:
    mode: ResolutionMode
    zones: List[str]
    cidr: Optional[str] = None
    vpc_id: Optional[str] = None
    subnets: Dict[str, List[Subnet]] = field(default_factory=dict)
    dry_run: bool = False

    def subnet_ids(self, topology: str) -> List[str]:
        return [s.id for s in self.subnets.get(topology, []) if s.id]

    def subnet_info(self) -> str:
        parts = []
        for topology in TOPOLOGIES:
            subnets = self.subnets.get(topology, [])
            if subnets:
                ids = ", ".join(s.id or s.cidr or "?" for s in subnets)
                parts.append(f"{topology}:{{{ids}}}")
        vpc = self.vpc_id or "new VPC"
        return f"VPC ({vpc}) and subnets ({' '.join(parts) or 'none'})"

    def is_new_vpc(self) -> bool:
        return self.mode is ResolutionMode.DERIVE


def select_mode(spec: ClusterSpec, flags: NetworkFlags) -> ResolutionMode:
    """Pick the resolution mode, rejecting inputs from more than one mode."""
    subnets_given = spec.vpc.has_any_subnets() or flags.subnets_given()

    if flags.from_cluster:
        if flags.zones:
            raise ConfigurationConflict(FLAG_FROM_CLUSTER, FLAG_ZONES)
        if flags.cidr:
            raise ConfigurationConflict(FLAG_FROM_CLUSTER, FLAG_CIDR)
        if subnets_given:
            raise ConfigurationConflict(FLAG_FROM_CLUSTER, FLAG_SUBNETS)
        return ResolutionMode.IMPORT_CLUSTER

    if subnets_given:
        if flags.zones:
            raise ConfigurationConflict(FLAG_SUBNETS, FLAG_ZONES)
        if flags.cidr:
            raise ConfigurationConflict(FLAG_SUBNETS, FLAG_CIDR)
        return ResolutionMode.IMPORT_SUBNETS

    return ResolutionMode.DERIVE


def resolve_network(
    spec: ClusterSpec,
    flags: NetworkFlags,
    provider: Provider,
    sink: Optional[OutputSink] = None,
) -> ResolvedNetwork:
    """Resolve the subnets and zones the cluster will use."""
    sink = sink or OutputSink()
    mode = select_mode(spec, flags)
    logger.debug("network resolution mode: %s", mode.value)

    if mode is ResolutionMode.DERIVE:
        return _derive(spec, flags, provider)
    if mode is ResolutionMode.IMPORT_CLUSTER:
        return _import_from_cluster(spec, flags, provider, sink)
    return _import_subnets(spec, flags, provider, sink)


def _derive(spec: ClusterSpec, flags: NetworkFlags, provider: Provider) -> ResolvedNetwork:
    zones = list(flags.zones or spec.availability_zones)
    if not zones:
        zones = provider.available_zones()
    if len(zones) < MIN_REQUIRED_ZONES:
        raise InsufficientResources(
            f"only {len(zones)} zones specified {zones}, {MIN_REQUIRED_ZONES} are required (can be non-unique)"
        )

    cidr = flags.cidr or spec.vpc.cidr or Config.DEFAULT_VPC_CIDR
    network = ResolvedNetwork(mode=ResolutionMode.DERIVE, zones=zones, cidr=cidr)

    # zones are still needed for defaults, subnets are not
    if flags.dry_run:
        network.dry_run = True
        return network

    network.subnets = derive_subnets(cidr, zones)
    return network


def derive_subnets(cidr: str, zones: List[str]) -> Dict[str, List[Subnet]]:
    """Split the VPC CIDR into one public and one private subnet per zone."""
    try:
        vpc = ipaddress.ip_network(cidr)
    except ValueError as e:
        raise InvalidSpecification(f"invalid VPC CIDR {cidr!r}: {e}")
    if not 16 <= vpc.prefixlen <= 24:
        raise InvalidSpecification(f"VPC CIDR prefix must be between /16 and /24, got {cidr}")

    count = len(zones)
    # two subnets per zone: split into 8 for up to 4 zones, 16 for up to 8
    if count <= 4:
        prefixlen_diff = 3
    elif count <= 8:
        prefixlen_diff = 4
    else:
        raise InvalidSpecification(f"cannot derive subnets for {count} zones, at most 8 are supported")
    blocks = [str(block) for block in vpc.subnets(prefixlen_diff=prefixlen_diff)]

    return {
        TOPOLOGY_PUBLIC: [Subnet(None, zone, blocks[i]) for i, zone in enumerate(zones)],
        TOPOLOGY_PRIVATE: [Subnet(None, zone, blocks[i + count]) for i, zone in enumerate(zones)],
    }


def _import_from_cluster(
    spec: ClusterSpec, flags: NetworkFlags, provider: Provider, sink: OutputSink
) -> ResolvedNetwork:
    # read-only, so dry runs still fail on a missing source cluster
    source = provider.describe_cluster_network(flags.from_cluster)
    subnets = {t: list(source.subnets.get(t, [])) for t in TOPOLOGIES if source.subnets.get(t)}
    zones = sorted({s.availability_zone for group in subnets.values() for s in group})
    network = ResolvedNetwork(
        mode=ResolutionMode.IMPORT_CLUSTER,
        zones=zones,
        cidr=source.cidr,
        vpc_id=source.vpc_id,
        subnets=subnets,
        dry_run=flags.dry_run,
    )
    check_private_nodegroups(spec, network)
    if flags.dry_run:
        return network

    sink.success(f"using {network.subnet_info()} from cluster {flags.from_cluster!r}")
    sink.warning(CUSTOM_NETWORKING_NOTICE)
    return network


def _import_subnets(
    spec: ClusterSpec, flags: NetworkFlags, provider: Provider, sink: OutputSink
) -> ResolvedNetwork:
    if flags.dry_run:
        return ResolvedNetwork(mode=ResolutionMode.IMPORT_SUBNETS, zones=list(spec.availability_zones), dry_run=True)

    requested = _requested_subnet_ids(spec, flags)
    subnets: Dict[str, List[Subnet]] = {}
    for topology in TOPOLOGIES:
        ids = requested.get(topology)
        if ids:
            subnets[topology] = list(provider.describe_subnets(ids))

    vpc_ids = {s.vpc_id for group in subnets.values() for s in group if s.vpc_id}
    if len(vpc_ids) > 1:
        raise InsufficientResources(f"given subnets belong to more than one VPC: {', '.join(sorted(vpc_ids))}")

    zones = sorted({s.availability_zone for group in subnets.values() for s in group})
    network = ResolvedNetwork(
        mode=ResolutionMode.IMPORT_SUBNETS,
        zones=zones,
        vpc_id=next(iter(vpc_ids), None),
        subnets=subnets,
    )

    try:
        check_sufficient_subnets(spec, network)
    except InsufficientResources:
        sink.critical(f"unable to use given {network.subnet_info()}")
        raise
    check_private_nodegroups(spec, network)

    sink.success(f"using existing {network.subnet_info()}")
    sink.warning(CUSTOM_NETWORKING_NOTICE)
    return network


def _requested_subnet_ids(spec: ClusterSpec, flags: NetworkFlags) -> Dict[str, List[str]]:
    requested = {
        TOPOLOGY_PRIVATE: list(flags.private_subnets),
        TOPOLOGY_PUBLIC: list(flags.public_subnets),
    }
    for topology in TOPOLOGIES:
        for subnet in spec.vpc.subnets.get(topology, ()):
            if subnet.id not in requested[topology]:
                requested[topology].append(subnet.id)
    return requested


def required_topologies(spec: ClusterSpec, network: ResolvedNetwork) -> Set[str]:
    nodegroups = spec.all_nodegroups
    if nodegroups:
        return {ng.topology for ng in nodegroups}
    return {t for t in TOPOLOGIES if network.subnets.get(t)}


def check_sufficient_subnets(spec: ClusterSpec, network: ResolvedNetwork) -> None:
    """Fail unless the subnets cover every zone and topology the cluster needs."""
    if not any(network.subnets.get(t) for t in TOPOLOGIES):
        raise InsufficientResources("no subnets were given, at least 2x public and/or 2x private subnets are required")

    for topology in TOPOLOGIES:
        count = len(network.subnets.get(topology, []))
        if 0 < count < MIN_REQUIRED_SUBNETS:
            raise InsufficientResources(
                f"insufficient number of {topology} subnets (have {count}, "
                f"need at least {MIN_REQUIRED_SUBNETS})"
            )

    covered = {
        t: {s.availability_zone for s in network.subnets.get(t, [])}
        for t in TOPOLOGIES
    }
    requirements: Set[Tuple[str, str]] = set()
    for topology in required_topologies(spec, network):
        for zone in spec.availability_zones:
            requirements.add((topology, zone))
    for ng in spec.all_nodegroups:
        for zone in ng.availability_zones:
            requirements.add((ng.topology, zone))

    missing = sorted((t, z) for t, z in requirements if z not in covered[t])
    if missing:
        detail = ", ".join(f"{zone} ({topology})" for topology, zone in missing)
        raise InsufficientResources(f"given subnets do not cover required availability zones: {detail}")


def check_private_nodegroups(spec: ClusterSpec, network: ResolvedNetwork) -> None:
    private_groups = [ng.name for ng in spec.all_nodegroups if ng.private_networking]
    if private_groups and not network.subnets.get(TOPOLOGY_PRIVATE):
        raise InsufficientResources(
            "none of the private subnets are available for nodegroups with private networking: "
            f"{', '.join(private_groups)}"
        )
