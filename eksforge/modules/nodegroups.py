"""Node group tasks: stack creation, join authorization and readiness waits."""
import fnmatch
import logging
import threading
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import yaml

from ..config import Config
from ..logging import OutputSink
from ..models import ClusterSpec, ManagedNodeGroup, NodeGroup, NodeGroupBase
from ..providers.base import Provider
from ..tasks import Kind, Task, TaskGroup, TaskTree

logger = logging.getLogger("eksforge.nodegroups")

AUTH_CONFIGMAP = "aws-auth"
AUTH_NAMESPACE = "kube-system"
NODE_USERNAME = "system:node:{{EC2PrivateDNSName}}"
NODE_GROUPS = ["system:bootstrappers", "system:nodes"]

# aws-auth is read-modify-write; node groups are authorized in parallel
_auth_lock = threading.Lock()


class NodeGroupCreationTask(Task):
    def __init__(self, provider: Provider, spec: ClusterSpec, nodegroup: NodeGroupBase,
                 sink: Optional[OutputSink] = None):
        self.provider = provider
        self.spec = spec
        self.nodegroup = nodegroup
        self.sink = sink or OutputSink()


class CreateNodeGroupTask(NodeGroupCreationTask):
    @property
    def name(self) -> str:
        return f'create nodegroup "{self.nodegroup.name}"'

    def run(self) -> None:
        self.sink.info(f"🚀 Building nodegroup stack for {self.nodegroup.name!r}")
        self.provider.create_nodegroup(self.spec, self.nodegroup)


class CreateManagedNodeGroupTask(NodeGroupCreationTask):
    @property
    def name(self) -> str:
        return f'create managed nodegroup "{self.nodegroup.name}"'

    def run(self) -> None:
        self.sink.info(f"🚀 Building managed nodegroup stack for {self.nodegroup.name!r}")
        self.provider.create_managed_nodegroup(self.spec, self.nodegroup)


def creation_task(provider: Provider, spec: ClusterSpec, nodegroup: NodeGroupBase,
                  sink: Optional[OutputSink] = None) -> NodeGroupCreationTask:
    if isinstance(nodegroup, ManagedNodeGroup):
        return CreateManagedNodeGroupTask(provider, spec, nodegroup, sink)
    return CreateNodeGroupTask(provider, spec, nodegroup, sink)


def _matches(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def filter_nodegroups(
    spec: ClusterSpec, include: Sequence[str] = (), exclude: Sequence[str] = ()
) -> Tuple[ClusterSpec, List[str]]:
    """Select node groups by name using shell-style patterns.

    A group is kept when it matches an ``include`` pattern (or ``include`` is
    empty) and matches no ``exclude`` pattern. Returns the filtered
    specification and the names of the excluded groups.
    """
    def keep(ng: NodeGroupBase) -> bool:
        if include and not _matches(ng.name, include):
            return False
        return not _matches(ng.name, exclude)

    excluded = [ng.name for ng in spec.all_nodegroups if not keep(ng)]
    filtered = replace(
        spec,
        nodegroups=tuple(ng for ng in spec.nodegroups if keep(ng)),
        managed_nodegroups=tuple(ng for ng in spec.managed_nodegroups if keep(ng)),
    )
    return filtered, excluded


def add_nodegroup_role(kube, role_arn: str) -> bool:
    """Map the node instance role in aws-auth. Returns False if already mapped."""
    with _auth_lock:
        data = kube.get_config_map(AUTH_CONFIGMAP, AUTH_NAMESPACE) or {}
        roles = yaml.safe_load(data.get("mapRoles") or "[]") or []
        if any(entry.get("rolearn") == role_arn for entry in roles):
            return False
        roles.append({
            "rolearn": role_arn,
            "username": NODE_USERNAME,
            "groups": list(NODE_GROUPS),
        })
        data["mapRoles"] = yaml.safe_dump(roles, default_flow_style=False)
        kube.upsert_config_map(AUTH_CONFIGMAP, AUTH_NAMESPACE, data)
        return True


class AuthorizeNodeGroupTask(Task):
    """Allow instances of an unmanaged node group to join the cluster."""

    def __init__(self, provider: Provider, kube, cluster_name: str, nodegroup: NodeGroup,
                 sink: Optional[OutputSink] = None):
        self.provider = provider
        self.kube = kube
        self.cluster_name = cluster_name
        self.nodegroup = nodegroup
        self.sink = sink or OutputSink()
        self.name = f'authorize nodegroup "{nodegroup.name}" to join the cluster'

    def run(self) -> None:
        role_arn = self.provider.nodegroup_instance_role_arn(self.cluster_name, self.nodegroup.name)
        if add_nodegroup_role(self.kube, role_arn):
            self.sink.info(f"🔐 Added nodegroup {self.nodegroup.name!r} role {role_arn} to {AUTH_CONFIGMAP}")
        else:
            logger.debug("role %s already mapped in %s", role_arn, AUTH_CONFIGMAP)


class WaitForNodesTask(Task):
    """Block until the node group has at least ``min_size`` ready nodes."""

    def __init__(self, kube, nodegroup: NodeGroupBase, timeout: Optional[float] = None,
                 sink: Optional[OutputSink] = None):
        self.kube = kube
        self.nodegroup = nodegroup
        self.timeout = timeout or Config.NODE_READY_TIMEOUT
        self.sink = sink or OutputSink()
        self.name = f'wait for nodes of nodegroup "{nodegroup.name}" to become ready'

    def ready_count(self) -> int:
        return sum(1 for node in self.kube.list_nodes(self.nodegroup.label_selector) if node.ready)

    def run(self) -> None:
        expected = self.nodegroup.min_size
        if expected == 0:
            self.sink.info(f"nodegroup {self.nodegroup.name!r} has min size 0, not waiting for nodes")
            return
        self.sink.info(f"⏳ Waiting for at least {expected} node(s) to become ready in {self.nodegroup.name!r}")
        ok = self.kube.wait_for(
            lambda: self.ready_count() >= expected,
            timeout=self.timeout,
            description=f"nodes of {self.nodegroup.name!r}",
        )
        if not ok:
            raise TimeoutError(
                f"timed out (after {self.timeout}s) waiting for at least {expected} nodes "
                f"to join the cluster and become ready in {self.nodegroup.name!r}"
            )
        self.sink.success(f"nodegroup {self.nodegroup.name!r} has {self.ready_count()} node(s) ready")


def build_readiness_plan(
    provider: Provider,
    kube,
    spec: ClusterSpec,
    nodegroups: Optional[List[NodeGroupBase]] = None,
    timeout: Optional[float] = None,
    sink: Optional[OutputSink] = None,
) -> TaskTree:
    """Authorize and await every node group, groups in parallel, steps in sequence."""
    if nodegroups is None:
        nodegroups = spec.all_nodegroups
    tree = TaskTree(kind=Kind.PARALLEL, label="authorize and await nodegroups")
    for ng in nodegroups:
        steps = []
        if not ng.managed:
            steps.append(AuthorizeNodeGroupTask(provider, kube, spec.metadata.name, ng, sink))
        steps.append(WaitForNodesTask(kube, ng, timeout, sink))
        tree.append(TaskGroup(Kind.SEQUENTIAL, steps, label=f'nodegroup "{ng.name}"'))
    return tree
