import logging
import os
import subprocess
import sys

import pytest

from eksforge.commands import parse_tags, split_list
from eksforge.commands.create import (
    DEFAULT_FARGATE_PROFILE,
    apply_nodegroup_filter,
    build_spec,
    check_config_file_flags,
    generate_nodegroup_name,
    resolve_kubeconfig_path,
)
from eksforge.errors import ConfigurationConflict, InvalidSpecification
from eksforge.tests.fakes import make_spec


def run_cli_command(cmd):
    env = dict(os.environ, COLUMNS="200")
    return subprocess.run([sys.executable, "-m", "eksforge.cli"] + cmd.split(),
                          capture_output=True, text=True, env=env)


def test_help():
    result = run_cli_command("--help")
    assert "Usage" in result.stdout
    assert "create" in result.stdout
    assert "delete" in result.stdout


def test_create_cluster_help():
    result = run_cli_command("create cluster --help")
    assert "--vpc-from-cluster" in result.stdout
    assert "--dry-run" in result.stdout


def test_delete_cluster_help():
    result = run_cli_command("delete cluster --help")
    assert "--name" in result.stdout


def test_validate_cluster_file(tmp_path):
    path = tmp_path / "cluster.yaml"
    path.write_text("metadata:\n  name: demo\n  region: us-west-2\nmanaged_nodegroups:\n  - name: mng-1\n")

    result = run_cli_command(f"validate cluster -f {path}")

    assert result.returncode == 0
    assert "✅" in result.stdout


def test_validate_rejects_bad_file(tmp_path):
    path = tmp_path / "cluster.yaml"
    path.write_text("metadata:\n  region: us-west-2\n")

    result = run_cli_command(f"validate cluster -f {path}")

    assert result.returncode == 1
    assert "❌" in result.stdout


def test_config_file_with_name_flag_fails(tmp_path):
    path = tmp_path / "cluster.yaml"
    path.write_text("metadata:\n  name: demo\n  region: us-west-2\n")

    result = run_cli_command(f"create cluster -f {path} --name other")

    assert result.returncode == 1
    assert "cannot be used at the same time" in result.stderr


def test_include_requires_config_file():
    result = run_cli_command("create cluster --name demo --include ng-*")

    assert result.returncode == 1
    assert "can only be used with --config-file" in result.stderr


def test_nodegroup_filter_logs_included_and_excluded(caplog):
    caplog.set_level(logging.INFO)
    spec = make_spec(nodegroups=["ng-1", "ng-2"], managed=["mng-1"])

    filtered = apply_nodegroup_filter(spec, "ng-*,mng-*", "ng-2")

    assert [ng.name for ng in filtered.all_nodegroups] == ["ng-1", "mng-1"]
    assert "2 nodegroup(s) (ng-1, mng-1) included" in caplog.text
    assert "1 nodegroup(s) (ng-2) excluded" in caplog.text


def test_nodegroup_filter_is_skipped_without_rules():
    spec = make_spec(nodegroups=["ng-1"])
    assert apply_nodegroup_filter(spec, None, None) is spec


def test_build_spec_defaults_to_one_managed_nodegroup():
    spec = build_spec(name="demo", region="eu-west-1")

    assert spec.nodegroups == ()
    assert len(spec.managed_nodegroups) == 1
    assert spec.managed_nodegroups[0].name.startswith("ng-")


def test_build_spec_unmanaged():
    spec = build_spec(name="demo", nodegroup_name="workers", managed=False, nodes=3, nodes_max=5)

    ng = spec.nodegroups[0]
    assert (ng.name, ng.min_size, ng.desired_capacity, ng.max_size) == ("workers", 3, 3, 5)
    assert spec.managed_nodegroups == ()


def test_build_spec_fargate_has_no_nodegroup():
    spec = build_spec(name="demo", fargate=True)

    assert spec.all_nodegroups == []
    profile = spec.fargate_profiles[0]
    assert profile.name == DEFAULT_FARGATE_PROFILE
    assert [s.namespace for s in profile.selectors] == ["default", "kube-system"]


def test_generated_nodegroup_names_are_unique():
    assert generate_nodegroup_name() != generate_nodegroup_name()


def test_config_file_flag_conflicts():
    check_config_file_flags(**{"--name": None, "--fargate": False})
    with pytest.raises(ConfigurationConflict) as excinfo:
        check_config_file_flags(**{"--name": "demo"})
    assert excinfo.value.flags == ("--name", "--config-file")


def test_kubeconfig_flags():
    assert resolve_kubeconfig_path("demo", "/tmp/kc", False) == "/tmp/kc"
    assert resolve_kubeconfig_path("demo", None, True).endswith("/.kube/eksforge/clusters/demo")
    with pytest.raises(ConfigurationConflict):
        resolve_kubeconfig_path("demo", "/tmp/kc", True)


def test_list_and_tag_parsing():
    assert split_list(" us-west-2a, us-west-2b ,") == ["us-west-2a", "us-west-2b"]
    assert split_list(None) == []
    assert parse_tags("env=dev,team=platform") == {"env": "dev", "team": "platform"}
    with pytest.raises(InvalidSpecification):
        parse_tags("env")
