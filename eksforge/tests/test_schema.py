import pytest
import yaml
from jsonschema import ValidationError, validate

from eksforge.errors import InvalidSpecification
from eksforge.models import TOPOLOGY_PRIVATE, ManagedNodeGroup, NodeGroup
from eksforge.schema import CLUSTER_SCHEMA, load_cluster_config, parse_cluster_config, spec_to_dict

CLUSTER_YAML = """
metadata:
  name: kevin-vu
  region: us-west-2
  version: "1.21"
  tags:
    env: dev
vpc:
  subnets:
    private:
      - id: subnet-0a1
        az: us-west-2a
      - id: subnet-0b2
        az: us-west-2b
nodegroups:
  - name: ng-1
    instance_type: m5.xlarge
    desired_capacity: 3
    private_networking: true
managed_nodegroups:
  - name: mng-1
    labels:
      role: worker
addons:
  - name: vpc-cni
  - name: coredns
    version: v1.8.4-eksbuild.1
fargate_profiles:
  - name: fp-default
    selectors:
      - namespace: default
iam:
  with_oidc: true
gitops:
  flux:
    owner: acme
    repository: fleet
"""


def test_valid_cluster_yaml():
    validate(instance=yaml.safe_load(CLUSTER_YAML), schema=CLUSTER_SCHEMA)


def test_invalid_cluster_yaml():
    with pytest.raises(ValidationError):
        validate(instance={"nodegroups": []}, schema=CLUSTER_SCHEMA)


def test_parse_cluster_config():
    spec = parse_cluster_config(yaml.safe_load(CLUSTER_YAML))

    assert spec.metadata.name == "kevin-vu"
    assert spec.metadata.tags == {"env": "dev"}
    assert [s.id for s in spec.vpc.subnets[TOPOLOGY_PRIVATE]] == ["subnet-0a1", "subnet-0b2"]
    assert spec.nodegroups == (NodeGroup(
        name="ng-1", instance_type="m5.xlarge", desired_capacity=3, min_size=3, max_size=3,
        private_networking=True,
    ),)
    assert isinstance(spec.managed_nodegroups[0], ManagedNodeGroup)
    assert spec.managed_nodegroups[0].labels == {"role": "worker"}
    assert [a.name for a in spec.addons] == ["vpc-cni", "coredns"]
    assert spec.fargate_profiles[0].selectors[0].namespace == "default"
    assert spec.with_oidc
    assert spec.gitops.repository == "fleet"
    assert spec.gitops.branch == "main"
    assert not spec.private_cluster


def test_nodegroup_defaults():
    spec = parse_cluster_config({
        "metadata": {"name": "c", "region": "us-east-1"},
        "nodegroups": [{"name": "ng", "max_size": 5}],
    })
    ng = spec.nodegroups[0]
    assert ng.instance_type == "m5.large"
    assert (ng.min_size, ng.desired_capacity, ng.max_size) == (2, 2, 5)


@pytest.mark.parametrize("data,where", [
    ({"metadata": {"region": "us-west-2"}}, "metadata"),
    ({"metadata": {"name": "c", "region": "us-west-2"}, "nodegroups": [{"name": "ng", "desired_capacity": -1}]},
     "nodegroups/0/desired_capacity"),
    ({"metadata": {"name": "c", "region": "us-west-2"}, "unknown": True}, "<root>"),
])
def test_schema_errors_are_invalid_specifications(data, where):
    with pytest.raises(InvalidSpecification) as excinfo:
        parse_cluster_config(data)
    assert f"Schema validation error at {where}" in str(excinfo.value)


def test_load_cluster_config(tmp_path):
    path = tmp_path / "cluster.yaml"
    path.write_text(CLUSTER_YAML)

    assert load_cluster_config(path).metadata.region == "us-west-2"


@pytest.mark.parametrize("content", ["metadata: [unclosed", "- just\n- a list\n"])
def test_load_rejects_non_config_documents(tmp_path, content):
    path = tmp_path / "cluster.yaml"
    path.write_text(content)

    with pytest.raises(InvalidSpecification):
        load_cluster_config(path)


def test_spec_to_dict_reads_back_to_the_same_spec():
    spec = parse_cluster_config(yaml.safe_load(CLUSTER_YAML))

    rendered = yaml.safe_load(yaml.safe_dump(spec_to_dict(spec)))

    validate(instance=rendered, schema=CLUSTER_SCHEMA)
    assert parse_cluster_config(rendered) == spec
