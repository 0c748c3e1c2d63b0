import pytest
import yaml

from eksforge.models import ManagedNodeGroup, NodeGroup
from eksforge.modules.nodegroups import (
    AUTH_CONFIGMAP,
    AUTH_NAMESPACE,
    WaitForNodesTask,
    add_nodegroup_role,
    build_readiness_plan,
    filter_nodegroups,
)
from eksforge.tests.fakes import FakeKube, make_spec, role_arn


def mapped_roles(kube):
    data = kube.get_config_map(AUTH_CONFIGMAP, AUTH_NAMESPACE)
    return [entry["rolearn"] for entry in yaml.safe_load(data["mapRoles"])]


def test_add_nodegroup_role_is_idempotent(kube):
    assert add_nodegroup_role(kube, role_arn("ng-1")) is True
    assert add_nodegroup_role(kube, role_arn("ng-1")) is False
    assert mapped_roles(kube) == [role_arn("ng-1")]


def test_add_nodegroup_role_keeps_existing_entries(kube):
    existing = [{"rolearn": "arn:aws:iam::123456789012:role/admin", "username": "admin", "groups": ["system:masters"]}]
    kube.upsert_config_map(AUTH_CONFIGMAP, AUTH_NAMESPACE, {"mapRoles": yaml.safe_dump(existing)})

    add_nodegroup_role(kube, role_arn("ng-1"))

    assert mapped_roles(kube) == ["arn:aws:iam::123456789012:role/admin", role_arn("ng-1")]


def test_readiness_plan_shape(provider, kube):
    spec = make_spec(nodegroups=["ng-1"], managed=["mng-1"])

    tree = build_readiness_plan(provider, kube, spec)

    assert tree.describe() == "\n".join([
        "authorize and await nodegroups [2 parallel tasks]",
        '    nodegroup "ng-1" [2 sequential tasks]',
        '        authorize nodegroup "ng-1" to join the cluster',
        '        wait for nodes of nodegroup "ng-1" to become ready',
        '    nodegroup "mng-1" [1 sequential task]',
        '        wait for nodes of nodegroup "mng-1" to become ready',
    ])


def test_parallel_authorization_maps_every_role(provider, kube):
    spec = make_spec(nodegroups=["ng-1", "ng-2", "ng-3"])
    for ng in spec.all_nodegroups:
        kube.add_ready_nodes(ng, 2)

    assert build_readiness_plan(provider, kube, spec).execute() == []
    assert sorted(mapped_roles(kube)) == sorted(role_arn(n) for n in ("ng-1", "ng-2", "ng-3"))


def test_one_group_not_ready_does_not_block_others(provider, kube):
    spec = make_spec(nodegroups=["ng-1"], managed=["mng-1"])
    kube.add_ready_nodes(spec.nodegroups[0], 2)

    failures = build_readiness_plan(provider, kube, spec, timeout=1).execute()

    assert len(failures) == 1
    assert failures[0].task.nodegroup.name == "mng-1"
    assert isinstance(failures[0].payload, TimeoutError)
    assert mapped_roles(kube) == [role_arn("ng-1")]


def test_wait_requires_min_size_ready_nodes():
    ng = NodeGroup(name="ng-1", min_size=2, desired_capacity=3, max_size=3)
    kube = FakeKube()
    kube.add_ready_nodes(ng, 2)

    WaitForNodesTask(kube, ng, timeout=1).run()

    assert kube.waits == ["nodes of 'ng-1'"]


def test_wait_times_out():
    ng = ManagedNodeGroup(name="mng-1")
    with pytest.raises(TimeoutError):
        WaitForNodesTask(FakeKube(), ng, timeout=1).run()


def test_wait_skipped_for_empty_groups():
    ng = NodeGroup(name="ng-1", min_size=0, desired_capacity=0, max_size=2)
    kube = FakeKube()

    WaitForNodesTask(kube, ng, timeout=1).run()

    assert kube.waits == []


@pytest.mark.parametrize("include,exclude,kept,excluded", [
    ([], [], ["ng-1", "ng-2", "mng-gpu"], []),
    (["ng-*"], [], ["ng-1", "ng-2"], ["mng-gpu"]),
    ([], ["*-gpu", "ng-2"], ["ng-1"], ["ng-2", "mng-gpu"]),
    (["ng-*", "mng-gpu"], ["ng-1"], ["ng-2", "mng-gpu"], ["ng-1"]),
])
def test_filter_nodegroups(include, exclude, kept, excluded):
    spec = make_spec(nodegroups=["ng-1", "ng-2"], managed=["mng-gpu"])

    filtered, skipped = filter_nodegroups(spec, include, exclude)

    assert [ng.name for ng in filtered.all_nodegroups] == kept
    assert skipped == excluded
    assert all(isinstance(ng, ManagedNodeGroup) for ng in filtered.managed_nodegroups)
