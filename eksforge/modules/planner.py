"""Plan builder.

Turns a validated cluster specification and its resolved network into the
task tree that creates the cluster. Nothing here runs a task; the tree is
handed to the engine by the workflow.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from ..errors import CapabilityUnsupported
from ..logging import OutputSink
from ..models import (
    ADDONS_MIN_VERSION,
    DEFAULT_VERSION,
    FARGATE_MIN_VERSION,
    MANAGED_NODES_MIN_VERSION,
    ClusterSpec,
    FargateProfile,
    is_min_version,
)
from ..providers.base import Provider
from ..tasks import Kind, Task, TaskGroup, TaskTree
from .addons import create_addon_plans
from .network import ResolvedNetwork
from .nodegroups import creation_task

logger = logging.getLogger("eksforge.planner")


@dataclass
class Features:
    """Switches that change which tasks are planned and how long they wait.

    ``wait_timeout`` bounds each control plane, Fargate profile and add-on
    wait in seconds. None falls back to ``Config.WAIT_TIMEOUT``.
    """
    install_nvidia_device_plugin: bool = True
    install_neuron_device_plugin: bool = True
    wait_timeout: Optional[float] = None


class CreateControlPlaneTask(Task):
    def __init__(self, provider: Provider, spec: ClusterSpec, network: ResolvedNetwork,
                 sink: Optional[OutputSink] = None):
        self.provider = provider
        self.spec = spec
        self.network = network
        self.sink = sink or OutputSink()
        self.name = f'create cluster control plane "{spec.metadata.name}"'

    def run(self) -> None:
        self.sink.info(f"🚀 Building cluster stack for {self.spec.metadata.name!r}")
        self.provider.create_control_plane(self.spec, self.network)


class WaitForControlPlaneTask(Task):
    def __init__(self, provider: Provider, cluster_name: str, sink: Optional[OutputSink] = None,
                 timeout: Optional[float] = None):
        self.provider = provider
        self.cluster_name = cluster_name
        self.timeout = timeout
        self.sink = sink or OutputSink()
        self.name = "wait for control plane to become ready"

    def run(self) -> None:
        self.sink.info("⏳ Waiting for the control plane availability...")
        self.provider.wait_for_control_plane(self.cluster_name, self.timeout)


class AssociateOIDCProviderTask(Task):
    def __init__(self, provider: Provider, cluster_name: str, sink: Optional[OutputSink] = None):
        self.provider = provider
        self.cluster_name = cluster_name
        self.sink = sink or OutputSink()
        self.name = "associate IAM OIDC provider"

    def run(self) -> None:
        self.provider.associate_oidc_provider(self.cluster_name)
        self.sink.success(f"IAM OIDC provider associated with cluster {self.cluster_name!r}")


class CreateFargateProfileTask(Task):
    def __init__(self, provider: Provider, spec: ClusterSpec, profile: FargateProfile,
                 sink: Optional[OutputSink] = None, timeout: Optional[float] = None):
        self.provider = provider
        self.spec = spec
        self.profile = profile
        self.timeout = timeout
        self.sink = sink or OutputSink()
        self.name = f'create fargate profile "{profile.name}"'

    def run(self) -> None:
        self.provider.create_fargate_profile(self.spec, self.profile, self.timeout)
        namespaces = ", ".join(s.namespace for s in self.profile.selectors)
        self.sink.success(f"created Fargate profile {self.profile.name!r} selecting namespaces: {namespaces}")


def check_capabilities(spec: ClusterSpec) -> None:
    """Reject features the cluster version cannot run before anything is planned."""
    version = spec.metadata.version or DEFAULT_VERSION
    if spec.managed_nodegroups and not is_min_version(MANAGED_NODES_MIN_VERSION, version):
        raise CapabilityUnsupported("managed nodegroups", version, MANAGED_NODES_MIN_VERSION)
    if spec.fargate_profiles and not is_min_version(FARGATE_MIN_VERSION, version):
        raise CapabilityUnsupported("Fargate", version, FARGATE_MIN_VERSION)
    if spec.addons and not is_min_version(ADDONS_MIN_VERSION, version):
        raise CapabilityUnsupported("addons", version, ADDONS_MIN_VERSION)


class PlanBuilder:
    """Builds the task trees for creating a cluster.

    Args:
        provider: Provider the planned tasks will call
        sink: Output sink handed to every task
        features: Optional planning switches
    """

    def __init__(self, provider: Provider, sink: Optional[OutputSink] = None,
                 features: Optional[Features] = None):
        self.provider = provider
        self.sink = sink or OutputSink()
        self.features = features or Features()

    def build_addon_plans(self, spec: ClusterSpec) -> Tuple[TaskTree, TaskTree]:
        check_capabilities(spec)
        return create_addon_plans(self.provider, spec, self.sink, self.features.wait_timeout)

    def build_post_cluster_creation_plan(
        self, spec: ClusterSpec, pre_nodegroup_addons: Optional[TaskTree] = None
    ) -> TaskTree:
        """Tasks that need the control plane but must finish before node groups."""
        name = spec.metadata.name
        timeout = self.features.wait_timeout
        tree = TaskTree(kind=Kind.SEQUENTIAL, label="post-cluster-creation tasks")
        tree.append(WaitForControlPlaneTask(self.provider, name, self.sink, timeout))
        if spec.with_oidc:
            tree.append(AssociateOIDCProviderTask(self.provider, name, self.sink))
        if spec.fargate_profiles:
            profiles = [
                CreateFargateProfileTask(self.provider, spec, p, self.sink, timeout) for p in spec.fargate_profiles
            ]
            tree.append(TaskGroup(Kind.SEQUENTIAL, profiles, label="create fargate profiles"))
        if pre_nodegroup_addons is not None and pre_nodegroup_addons.length > 0:
            tree.append(pre_nodegroup_addons)
        return tree

    def build_cluster_plan(
        self,
        spec: ClusterSpec,
        network: ResolvedNetwork,
        features: Optional[Features] = None,
        post_cluster_creation: Optional[TaskTree] = None,
    ) -> TaskTree:
        """Build the tree creating the control plane, its follow-ups and node groups.

        Raises CapabilityUnsupported without returning a partial plan when the
        cluster version cannot support a requested feature.
        """
        if features is not None:
            self.features = features
        check_capabilities(spec)

        tree = TaskTree(kind=Kind.SEQUENTIAL, label=f'create cluster "{spec.metadata.name}"')
        tree.append(CreateControlPlaneTask(self.provider, spec, network, self.sink))

        if post_cluster_creation is None:
            pre_addons, _ = self.build_addon_plans(spec)
            post_cluster_creation = self.build_post_cluster_creation_plan(spec, pre_addons)
        if post_cluster_creation.length > 0:
            tree.append(post_cluster_creation)

        nodegroup_tasks = [creation_task(self.provider, spec, ng, self.sink) for ng in spec.all_nodegroups]
        if len(nodegroup_tasks) == 1:
            tree.append(nodegroup_tasks[0])
        elif nodegroup_tasks:
            tree.append(TaskGroup(Kind.PARALLEL, nodegroup_tasks, label="create nodegroups"))

        return tree
