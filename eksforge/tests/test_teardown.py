from eksforge.modules.teardown import build_delete_plan, delete_cluster
from eksforge.tests.fakes import FakeProvider

NODEGROUP_STACKS = ["eksforge-demo-nodegroup-ng-1", "eksforge-demo-nodegroup-ng-2"]


def test_delete_plan_structure():
    provider = FakeProvider(nodegroup_stacks=NODEGROUP_STACKS, fargate_profiles=["fp-default"])

    tree = build_delete_plan(provider, "demo")

    assert tree.describe() == "\n".join([
        'delete cluster "demo" [3 sequential tasks]',
        "    delete nodegroups [2 parallel tasks]",
        '        delete stack "eksforge-demo-nodegroup-ng-1"',
        '        delete stack "eksforge-demo-nodegroup-ng-2"',
        "    delete fargate profiles [1 sequential task]",
        '        delete fargate profile "fp-default"',
        '    delete stack "eksforge-demo-cluster"',
    ])


def test_cluster_stack_is_deleted_last(sink):
    provider = FakeProvider(nodegroup_stacks=NODEGROUP_STACKS, fargate_profiles=["fp-default"])

    assert delete_cluster(provider, "demo", sink) == []

    deletions = [call for call in provider.calls if call[0].startswith("delete_")]
    assert sorted(deletions[:2]) == [("delete_stack", s) for s in NODEGROUP_STACKS]
    assert deletions[2:] == [("delete_fargate_profile", "fp-default"), ("delete_stack", "eksforge-demo-cluster")]


def test_cluster_without_nodegroups(sink):
    provider = FakeProvider()

    assert delete_cluster(provider, "demo", sink) == []
    assert provider.called("delete_stack") == ["eksforge-demo-cluster"]


def test_failed_nodegroup_keeps_cluster_stack(sink):
    provider = FakeProvider(
        nodegroup_stacks=NODEGROUP_STACKS,
        fail={"delete_stack": {"eksforge-demo-nodegroup-ng-2": RuntimeError("DELETE_FAILED")}},
    )

    failures = delete_cluster(provider, "demo", sink)

    assert [f.task_name for f in failures] == ['delete stack "eksforge-demo-nodegroup-ng-2"']
    assert "eksforge-demo-cluster" not in provider.called("delete_stack")
