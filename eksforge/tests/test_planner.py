import pytest

from eksforge.errors import CapabilityUnsupported
from eksforge.models import Addon, FargateProfile, FargateSelector
from eksforge.modules.network import NetworkFlags, resolve_network
from eksforge.modules.nodegroups import CreateManagedNodeGroupTask, CreateNodeGroupTask
from eksforge.modules.planner import Features, PlanBuilder
from eksforge.tasks import Kind, TaskGroup
from eksforge.tests.fakes import make_spec


def plan_for(provider, spec):
    network = resolve_network(spec, NetworkFlags(), provider)
    return PlanBuilder(provider).build_cluster_plan(spec, network)


def test_cluster_plan_structure(provider):
    spec = make_spec(nodegroups=["ng-1"], managed=["mng-1"])

    plan = plan_for(provider, spec)

    assert plan.describe() == "\n".join([
        'create cluster "test-cluster" [3 sequential tasks]',
        '    create cluster control plane "test-cluster"',
        '    post-cluster-creation tasks [1 sequential task]',
        '        wait for control plane to become ready',
        '    create nodegroups [2 parallel tasks]',
        '        create nodegroup "ng-1"',
        '        create managed nodegroup "mng-1"',
    ])
    assert plan.length == 4

    nodegroups = plan.root.children[-1]
    assert isinstance(nodegroups, TaskGroup)
    assert nodegroups.kind is Kind.PARALLEL
    assert isinstance(nodegroups.children[0], CreateNodeGroupTask)
    assert isinstance(nodegroups.children[1], CreateManagedNodeGroupTask)


def test_single_nodegroup_is_not_wrapped(provider):
    plan = plan_for(provider, make_spec(nodegroups=["ng-1"]))
    assert isinstance(plan.root.children[-1], CreateNodeGroupTask)


def test_plan_execution_order(provider):
    plan = plan_for(provider, make_spec(nodegroups=["ng-1"], managed=["mng-1"]))

    assert plan.execute() == []
    mutating = [call[0] for call in provider.calls if call[0] != "available_zones"]
    assert mutating[:2] == ["create_control_plane", "wait_for_control_plane"]
    assert sorted(mutating[2:]) == ["create_managed_nodegroup", "create_nodegroup"]


def test_post_cluster_creation_tasks(provider):
    spec = make_spec(
        with_oidc=True,
        fargate_profiles=(FargateProfile("fp-default", (FargateSelector("default"),)),),
        addons=(Addon("vpc-cni"), Addon("coredns")),
    )
    builder = PlanBuilder(provider)
    pre, post = builder.build_addon_plans(spec)

    tree = builder.build_post_cluster_creation_plan(spec, pre)

    assert tree.describe() == "\n".join([
        "post-cluster-creation tasks [4 sequential tasks]",
        "    wait for control plane to become ready",
        "    associate IAM OIDC provider",
        "    create fargate profiles [1 sequential task]",
        '        create fargate profile "fp-default"',
        "    create pre-nodegroup addons [1 sequential task]",
        '        create addon "vpc-cni"',
    ])
    assert post.describe() == "\n".join([
        "create addons [1 parallel task]",
        '    create addon "coredns"',
    ])


def test_addons_wait_only_when_nodes_exist(provider):
    with_nodes = make_spec(nodegroups=["ng-1"], addons=(Addon("coredns"),))
    _, post = PlanBuilder(provider).build_addon_plans(with_nodes)
    post.execute()
    assert provider.addon_waits == {"coredns": True}

    without_nodes = make_spec(addons=(Addon("kube-proxy"), Addon("coredns", wait=True)))
    _, post = PlanBuilder(provider).build_addon_plans(without_nodes)
    post.execute()
    assert provider.addon_waits["kube-proxy"] is False
    assert provider.addon_waits["coredns"] is True


@pytest.mark.parametrize("version,kwargs", [
    ("1.13", {"managed": ["mng-1"]}),
    ("1.13", {"fargate_profiles": (FargateProfile("fp", (FargateSelector("default"),)),)}),
    ("1.17", {"addons": (Addon("vpc-cni"),)}),
])
def test_unsupported_features_block_planning(provider, version, kwargs):
    spec = make_spec(version=version, **kwargs)
    network = resolve_network(spec, NetworkFlags(), provider)

    with pytest.raises(CapabilityUnsupported):
        PlanBuilder(provider).build_cluster_plan(spec, network)
    assert provider.mutating_calls == []


@pytest.mark.parametrize("wait_timeout", [None, 600])
def test_wait_timeout_reaches_provider_waits(provider, wait_timeout):
    spec = make_spec(
        nodegroups=["ng-1"],
        fargate_profiles=(FargateProfile("fp-default", (FargateSelector("default"),)),),
        addons=(Addon("vpc-cni"), Addon("coredns")),
    )
    network = resolve_network(spec, NetworkFlags(), provider)
    builder = PlanBuilder(provider, features=Features(wait_timeout=wait_timeout))
    pre, post = builder.build_addon_plans(spec)
    post_cluster = builder.build_post_cluster_creation_plan(spec, pre)

    assert builder.build_cluster_plan(spec, network, post_cluster_creation=post_cluster).execute() == []
    assert post.execute() == []

    assert provider.timeouts == {
        ("wait_for_control_plane", "test-cluster"): wait_timeout,
        ("create_fargate_profile", "fp-default"): wait_timeout,
        ("create_addon", "vpc-cni"): wait_timeout,
        ("create_addon", "coredns"): wait_timeout,
    }
