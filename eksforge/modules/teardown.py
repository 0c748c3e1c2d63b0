"""Cluster deletion, built on the same task engine as creation."""
import logging
from typing import List, Optional

from ..logging import OutputSink
from ..providers.base import Provider
from ..tasks import Kind, Task, TaskGroup, TaskTree

logger = logging.getLogger("eksforge.teardown")


class DeleteStackTask(Task):
    def __init__(self, provider: Provider, stack_name: str, sink: Optional[OutputSink] = None):
        self.provider = provider
        self.stack_name = stack_name
        self.sink = sink or OutputSink()
        self.name = f'delete stack "{stack_name}"'

    def run(self) -> None:
        self.sink.info(f"🗑️ Deleting stack {self.stack_name!r}")
        self.provider.delete_stack(self.stack_name)
        self.sink.success(f"deleted stack {self.stack_name!r}")


class DeleteFargateProfileTask(Task):
    def __init__(self, provider: Provider, cluster_name: str, profile_name: str,
                 sink: Optional[OutputSink] = None):
        self.provider = provider
        self.cluster_name = cluster_name
        self.profile_name = profile_name
        self.sink = sink or OutputSink()
        self.name = f'delete fargate profile "{profile_name}"'

    def run(self) -> None:
        self.provider.delete_fargate_profile(self.cluster_name, self.profile_name)
        self.sink.success(f"deleted Fargate profile {self.profile_name!r}")


def build_delete_plan(provider: Provider, cluster_name: str, sink: Optional[OutputSink] = None) -> TaskTree:
    """Node group stacks go first (in parallel), then Fargate profiles, then the cluster stack."""
    tree = TaskTree(kind=Kind.SEQUENTIAL, label=f'delete cluster "{cluster_name}"')

    nodegroup_stacks = provider.list_nodegroup_stacks(cluster_name)
    if nodegroup_stacks:
        tree.append(TaskGroup(
            Kind.PARALLEL,
            [DeleteStackTask(provider, stack, sink) for stack in nodegroup_stacks],
            label="delete nodegroups",
        ))

    profiles = provider.list_fargate_profiles(cluster_name)
    if profiles:
        # EKS allows one profile deletion at a time per cluster
        tree.append(TaskGroup(
            Kind.SEQUENTIAL,
            [DeleteFargateProfileTask(provider, cluster_name, p, sink) for p in profiles],
            label="delete fargate profiles",
        ))

    tree.append(DeleteStackTask(provider, provider.cluster_stack_name(cluster_name), sink))
    return tree


def delete_cluster(provider: Provider, cluster_name: str, sink: Optional[OutputSink] = None) -> List:
    """Delete every resource eksforge created for ``cluster_name``; returns the failures."""
    sink = sink or OutputSink()
    tree = build_delete_plan(provider, cluster_name, sink)
    sink.info(tree.describe())
    failures = tree.execute()
    if failures:
        sink.warning(f"{len(failures)} error(s) occurred while deleting cluster {cluster_name!r}")
        for failure in failures:
            sink.critical(str(failure))
    else:
        sink.success(f"all cluster resources were deleted for {cluster_name!r}")
    return failures
