import os
import stat

import yaml

from eksforge.modules import kubeconfig
from eksforge.providers.base import ClusterInfo
from eksforge.tests.fakes import make_spec

CLUSTER = ClusterInfo(
    name="test-cluster",
    endpoint="https://ABCDEF.gr7.us-west-2.eks.amazonaws.com",
    certificate_authority="Y2VydGlmaWNhdGU=",
    arn="arn:aws:eks:us-west-2:123456789012:cluster/test-cluster",
)


def test_build_kubeconfig():
    config = kubeconfig.build(make_spec(), CLUSTER, "tester")

    assert config["current-context"] == "tester@test-cluster.us-west-2.eksforge.io"
    assert config["clusters"][0]["cluster"]["server"] == CLUSTER.endpoint
    exec_config = config["users"][0]["user"]["exec"]
    assert exec_config["command"] == "aws"
    assert exec_config["args"] == ["eks", "get-token", "--cluster-name", "test-cluster", "--region", "us-west-2"]
    assert "env" not in exec_config


def test_build_with_role_and_profile():
    config = kubeconfig.build(
        make_spec(), CLUSTER, "tester",
        authenticator_role_arn="arn:aws:iam::123456789012:role/admin", profile="prod",
    )
    exec_config = config["users"][0]["user"]["exec"]
    assert exec_config["args"][-2:] == ["--role-arn", "arn:aws:iam::123456789012:role/admin"]
    assert exec_config["env"] == [{"name": "AWS_PROFILE", "value": "prod"}]


def test_write_merges_into_existing_file(tmp_path):
    path = tmp_path / "nested" / "config"
    path.parent.mkdir()
    existing = {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": "other",
        "clusters": [{"name": "other", "cluster": {"server": "https://other"}}],
        "contexts": [{"name": "other", "context": {"cluster": "other", "user": "other"}}],
        "users": [{"name": "other", "user": {}}],
    }
    path.write_text(yaml.safe_dump(existing))

    written = kubeconfig.write(str(path), kubeconfig.build(make_spec(), CLUSTER, "tester"))

    merged = yaml.safe_load(open(written))
    assert [c["name"] for c in merged["clusters"]] == ["other", "test-cluster.us-west-2.eksforge.io"]
    assert merged["current-context"] == "tester@test-cluster.us-west-2.eksforge.io"
    assert stat.S_IMODE(os.stat(written).st_mode) == 0o600


def test_new_file_is_owner_only_before_credentials_are_written(tmp_path, monkeypatch):
    path = tmp_path / "config"
    modes = []
    safe_dump = yaml.safe_dump

    def recording_dump(data, stream, **kwargs):
        modes.append(stat.S_IMODE(os.stat(path).st_mode))
        return safe_dump(data, stream, **kwargs)

    monkeypatch.setattr(kubeconfig.yaml, "safe_dump", recording_dump)
    kubeconfig.write(str(path), kubeconfig.build(make_spec(), CLUSTER, "tester"))

    assert modes == [0o600]


def test_existing_file_is_tightened(tmp_path):
    path = tmp_path / "config"
    path.write_text("")
    os.chmod(path, 0o644)

    kubeconfig.write(str(path), kubeconfig.build(make_spec(), CLUSTER, "tester"))

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_write_can_keep_current_context(tmp_path):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump({"current-context": "other"}))

    kubeconfig.write(str(path), kubeconfig.build(make_spec(), CLUSTER, "tester"), set_context=False)

    assert yaml.safe_load(path.read_text())["current-context"] == "other"


def test_rewriting_replaces_entries_by_name(tmp_path):
    path = str(tmp_path / "config")
    config = kubeconfig.build(make_spec(), CLUSTER, "tester")

    kubeconfig.write(path, config)
    kubeconfig.write(path, config)

    merged = yaml.safe_load(open(path))
    assert len(merged["clusters"]) == len(merged["contexts"]) == len(merged["users"]) == 1


def test_default_path_honours_kubeconfig_env(monkeypatch):
    monkeypatch.setenv("KUBECONFIG", os.pathsep.join(["/tmp/a", "/tmp/b"]))
    assert kubeconfig.default_path() == "/tmp/a"
