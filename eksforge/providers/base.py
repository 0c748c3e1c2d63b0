"""Provider boundary: the calls tasks make against the cloud provider."""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from ..models import Addon, ClusterSpec, FargateProfile, ManagedNodeGroup, NodeGroup


@dataclass(frozen=True)
class Subnet:
    id: Optional[str]
    availability_zone: str
    cidr: Optional[str] = None
    vpc_id: Optional[str] = None


@dataclass
class ClusterNetwork:
    """Network layout of an existing cluster."""
    vpc_id: str
    cidr: Optional[str] = None
    subnets: Dict[str, List[Subnet]] = field(default_factory=dict)


@dataclass
class ClusterInfo:
    name: str
    endpoint: str
    certificate_authority: str
    arn: str = ""
    status: str = "ACTIVE"
    oidc_issuer: Optional[str] = None


class Provider(Protocol):
    """Everything the planner's tasks need from the provider.

    Every call blocks until the operation has settled. Mutating calls must
    be idempotent: re-running them against existing resources is a no-op.
    """

    region: str

    # network reads
    def available_zones(self) -> List[str]: ...

    def describe_subnets(self, subnet_ids: List[str]) -> List[Subnet]: ...

    def describe_cluster_network(self, cluster_name: str) -> ClusterNetwork: ...

    # control plane and node groups
    def create_control_plane(self, spec: ClusterSpec, network) -> None: ...

    def wait_for_control_plane(self, cluster_name: str, timeout: Optional[float] = None) -> None: ...

    def describe_cluster(self, cluster_name: str) -> ClusterInfo: ...

    def create_nodegroup(self, spec: ClusterSpec, nodegroup: NodeGroup) -> None: ...

    def create_managed_nodegroup(self, spec: ClusterSpec, nodegroup: ManagedNodeGroup) -> None: ...

    def nodegroup_instance_role_arn(self, cluster_name: str, nodegroup_name: str) -> str: ...

    # post-cluster-creation
    def associate_oidc_provider(self, cluster_name: str) -> None: ...

    def create_fargate_profile(self, spec: ClusterSpec, profile: FargateProfile,
                               timeout: Optional[float] = None) -> None: ...

    def create_addon(self, spec: ClusterSpec, addon: Addon, wait: bool, timeout: Optional[float] = None) -> None: ...

    def update_cluster_endpoints(self, cluster_name: str, public_access: bool, private_access: bool) -> None: ...

    def caller_identity(self) -> str: ...

    # teardown
    def list_nodegroup_stacks(self, cluster_name: str) -> List[str]: ...

    def list_fargate_profiles(self, cluster_name: str) -> List[str]: ...

    def delete_fargate_profile(self, cluster_name: str, profile_name: str) -> None: ...

    def delete_stack(self, stack_name: str) -> None: ...

    def cluster_stack_name(self, cluster_name: str) -> str: ...
