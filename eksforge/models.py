"""
Data models for cluster specifications.

The specification is immutable once loaded; validation returns a new
instance with the resolved version instead of mutating in place.
"""
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from .errors import InvalidSpecification

DEFAULT_VERSION = "1.21"
LATEST_VERSION = "1.22"
DEPRECATED_VERSIONS = ["1.10", "1.11"]
SUPPORTED_VERSIONS = [
    "1.12", "1.13", "1.14", "1.15", "1.16", "1.17",
    "1.18", "1.19", "1.20", "1.21", "1.22",
]

MANAGED_NODES_MIN_VERSION = "1.14"
FARGATE_MIN_VERSION = "1.14"
ADDONS_MIN_VERSION = "1.18"

MIN_REQUIRED_ZONES = 2
MIN_REQUIRED_SUBNETS = 2

TOPOLOGY_PRIVATE = "private"
TOPOLOGY_PUBLIC = "public"
TOPOLOGIES = (TOPOLOGY_PRIVATE, TOPOLOGY_PUBLIC)

NAT_SINGLE = "Single"
NAT_HIGHLY_AVAILABLE = "HighlyAvailable"
NAT_DISABLE = "Disable"
NAT_MODES = (NAT_SINGLE, NAT_HIGHLY_AVAILABLE, NAT_DISABLE)

NODEGROUP_LABEL = "eksforge.io/nodegroup-name"
MANAGED_NODEGROUP_LABEL = "eks.amazonaws.com/nodegroup"

NVIDIA_INSTANCE_FAMILIES = ("p2", "p3", "p4", "g3", "g4", "g5")
NEURON_INSTANCE_FAMILIES = ("inf1",)

_NAME_RE = re.compile(r"^[a-zA-Z][-a-zA-Z0-9]*$")
# series letters and generation, without size or attribute suffixes (g4dn -> g4)
_FAMILY_RE = re.compile(r"^([a-z]+[0-9]+)")


def parse_version(version: str) -> Tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except (AttributeError, ValueError):
        raise InvalidSpecification(f"invalid Kubernetes version {version!r}")


def is_min_version(minimum: str, version: str) -> bool:
    """Return True if ``version`` is at least ``minimum``."""
    return parse_version(version) >= parse_version(minimum)


def is_valid_name(name: str) -> bool:
    return bool(name) and len(name) <= 100 and bool(_NAME_RE.match(name))


def instance_family(instance_type: str) -> str:
    """Return the base family of an EC2 instance type, e.g. "g4" for "g4dn.xlarge"."""
    prefix = instance_type.lower().split(".")[0]
    match = _FAMILY_RE.match(prefix)
    return match.group(1) if match else prefix


def is_nvidia_instance(instance_type: str) -> bool:
    return instance_family(instance_type) in NVIDIA_INSTANCE_FAMILIES


def is_neuron_instance(instance_type: str) -> bool:
    return instance_family(instance_type) in NEURON_INSTANCE_FAMILIES


def is_gpu_instance(instance_type: str) -> bool:
    """True for instance types that need the accelerated AMI."""
    return is_nvidia_instance(instance_type) or is_neuron_instance(instance_type)


@dataclass(frozen=True)
class ClusterMeta:
    name: str
    region: str
    version: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def log_string(self) -> str:
        return f'EKS cluster "{self.name}" in "{self.region}" region'


@dataclass(frozen=True)
class SubnetSpec:
    """A pre-existing subnet referenced by the specification."""
    id: str
    az: Optional[str] = None
    cidr: Optional[str] = None


@dataclass(frozen=True)
class VPCSpec:
    cidr: Optional[str] = None
    nat_mode: str = NAT_SINGLE
    subnets: Dict[str, Tuple[SubnetSpec, ...]] = field(default_factory=dict)
    public_access: bool = True
    private_access: bool = False

    def has_any_subnets(self) -> bool:
        return any(self.subnets.get(topology) for topology in TOPOLOGIES)


@dataclass(frozen=True)
class NodeGroupBase:
    """Fields shared by unmanaged and managed node groups."""
    name: str
    instance_type: str = "m5.large"
    desired_capacity: int = 2
    min_size: int = 2
    max_size: int = 2
    availability_zones: Tuple[str, ...] = ()
    private_networking: bool = False
    volume_size: int = 80
    labels: Dict[str, str] = field(default_factory=dict)
    ssh_public_key: Optional[str] = None

    managed = False

    @property
    def topology(self) -> str:
        return TOPOLOGY_PRIVATE if self.private_networking else TOPOLOGY_PUBLIC

    @property
    def label_selector(self) -> str:
        return f"{NODEGROUP_LABEL}={self.name}"


@dataclass(frozen=True)
class NodeGroup(NodeGroupBase):
    """Node group backed by a self-managed auto scaling group stack."""


@dataclass(frozen=True)
class ManagedNodeGroup(NodeGroupBase):
    """Node group backed by the EKS managed node group service."""

    managed = True

    @property
    def label_selector(self) -> str:
        return f"{MANAGED_NODEGROUP_LABEL}={self.name}"


@dataclass(frozen=True)
class Addon:
    name: str
    version: Optional[str] = None
    service_account_role_arn: Optional[str] = None
    wait: bool = False


@dataclass(frozen=True)
class FargateSelector:
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FargateProfile:
    name: str
    selectors: Tuple[FargateSelector, ...] = ()


@dataclass(frozen=True)
class GitOpsSpec:
    """Flux v2 bootstrap settings."""
    owner: str
    repository: str
    provider: str = "github"
    branch: str = "main"
    path: str = "clusters"
    personal: bool = False


@dataclass(frozen=True)
class ClusterSpec:
    metadata: ClusterMeta
    vpc: VPCSpec = field(default_factory=VPCSpec)
    availability_zones: Tuple[str, ...] = ()
    nodegroups: Tuple[NodeGroup, ...] = ()
    managed_nodegroups: Tuple[ManagedNodeGroup, ...] = ()
    addons: Tuple[Addon, ...] = ()
    fargate_profiles: Tuple[FargateProfile, ...] = ()
    gitops: Optional[GitOpsSpec] = None
    with_oidc: bool = False
    private_cluster: bool = False

    @property
    def all_nodegroups(self) -> List[NodeGroupBase]:
        return list(self.nodegroups) + list(self.managed_nodegroups)

    def has_nodes(self) -> bool:
        return any(ng.desired_capacity > 0 for ng in self.all_nodegroups)

    def with_version(self, version: str) -> "ClusterSpec":
        return replace(self, metadata=replace(self.metadata, version=version))


def resolve_version(version: Optional[str]) -> str:
    """Expand version aliases and reject unsupported releases."""
    if not version or version == "auto":
        return DEFAULT_VERSION
    if version == "latest":
        return LATEST_VERSION
    if version not in SUPPORTED_VERSIONS:
        supported = ", ".join(SUPPORTED_VERSIONS)
        if version in DEPRECATED_VERSIONS:
            raise InvalidSpecification(
                f"invalid version, {version} is no longer supported, supported values: {supported}\n"
                "see also: https://docs.aws.amazon.com/eks/latest/userguide/kubernetes-versions.html"
            )
        raise InvalidSpecification(f"invalid version, supported values: {supported}")
    return version


def validate_spec(spec: ClusterSpec) -> ClusterSpec:
    """Check structural invariants and return it with the version resolved."""
    name = spec.metadata.name
    if not is_valid_name(name):
        raise InvalidSpecification(
            f"validation for {name!r} failed, name must satisfy regular expression pattern: {_NAME_RE.pattern}"
        )
    if not spec.metadata.region:
        raise InvalidSpecification("region is required")

    seen = set()
    for ng in spec.all_nodegroups:
        if not is_valid_name(ng.name):
            raise InvalidSpecification(f"invalid nodegroup name {ng.name!r}")
        if ng.name in seen:
            raise InvalidSpecification(f"nodegroup name {ng.name!r} is used more than once")
        seen.add(ng.name)
        if not ng.min_size <= ng.desired_capacity <= ng.max_size:
            raise InvalidSpecification(
                f"nodegroup {ng.name!r}: desired capacity ({ng.desired_capacity}) must be between "
                f"min size ({ng.min_size}) and max size ({ng.max_size})"
            )

    if spec.vpc.nat_mode not in NAT_MODES:
        raise InvalidSpecification(
            f"invalid NAT mode {spec.vpc.nat_mode!r}, valid options: {', '.join(NAT_MODES)}"
        )

    if not spec.vpc.public_access and not spec.vpc.private_access:
        raise InvalidSpecification(
            "Kubernetes API access must have one of public or private clusterEndpoints enabled"
        )

    profile_names = [p.name for p in spec.fargate_profiles]
    if len(profile_names) != len(set(profile_names)):
        raise InvalidSpecification("fargate profile names must be unique")
    for profile in spec.fargate_profiles:
        if not profile.selectors:
            raise InvalidSpecification(f"fargate profile {profile.name!r} has no selectors")

    if spec.private_cluster:
        public_groups = [ng.name for ng in spec.all_nodegroups if not ng.private_networking]
        if public_groups:
            raise InvalidSpecification(
                "private cluster requires all nodegroups to use private networking, "
                f"found: {', '.join(public_groups)}"
            )

    return spec.with_version(resolve_version(spec.metadata.version))
