"""Kubeconfig generation and writing."""
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..models import ClusterSpec
from ..providers.base import ClusterInfo
from ..utils import run_command

logger = logging.getLogger("eksforge.kubeconfig")

AUTHENTICATOR_API_VERSION = "client.authentication.k8s.io/v1beta1"


def default_path() -> str:
    env = os.getenv("KUBECONFIG")
    if env:
        return env.split(os.pathsep)[0]
    return os.path.expanduser("~/.kube/config")


def auto_path(cluster_name: str) -> str:
    return os.path.expanduser(f"~/.kube/eksforge/clusters/{cluster_name}")


def build(
    spec: ClusterSpec,
    cluster: ClusterInfo,
    username: str,
    authenticator_role_arn: Optional[str] = None,
    profile: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a kubeconfig with one cluster, user and context."""
    cluster_id = f"{spec.metadata.name}.{spec.metadata.region}.eksforge.io"
    context = f"{username}@{cluster_id}"

    args = ["eks", "get-token", "--cluster-name", spec.metadata.name, "--region", spec.metadata.region]
    if authenticator_role_arn:
        args += ["--role-arn", authenticator_role_arn]
    exec_config: Dict[str, Any] = {
        "apiVersion": AUTHENTICATOR_API_VERSION,
        "command": "aws",
        "args": args,
    }
    if profile:
        exec_config["env"] = [{"name": "AWS_PROFILE", "value": profile}]

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "current-context": context,
        "clusters": [{
            "name": cluster_id,
            "cluster": {
                "server": cluster.endpoint,
                "certificate-authority-data": cluster.certificate_authority,
            },
        }],
        "contexts": [{
            "name": context,
            "context": {"cluster": cluster_id, "user": context},
        }],
        "users": [{
            "name": context,
            "user": {"exec": exec_config},
        }],
    }


def _merge_named(existing: List[Dict[str, Any]], new: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    names = {item["name"] for item in new}
    return [item for item in existing if item.get("name") not in names] + new


def merge(existing: Dict[str, Any], new: Dict[str, Any], set_context: bool = True) -> Dict[str, Any]:
    merged = dict(existing) if existing else {"apiVersion": "v1", "kind": "Config", "preferences": {}}
    for key in ("clusters", "contexts", "users"):
        merged[key] = _merge_named(merged.get(key) or [], new[key])
    if set_context or not merged.get("current-context"):
        merged["current-context"] = new["current-context"]
    return merged


def write(path: str, config: Dict[str, Any], set_context: bool = True) -> str:
    """Merge ``config`` into the kubeconfig at ``path`` and return the path."""
    target = Path(os.path.expanduser(path))
    target.parent.mkdir(parents=True, exist_ok=True)
    existing: Dict[str, Any] = {}
    if target.exists():
        with open(target) as f:
            existing = yaml.safe_load(f) or {}
    merged = merge(existing, config, set_context)
    # created owner-only; an existing file is tightened before credentials go in
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.chmod(target, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(merged, f, default_flow_style=False, sort_keys=False)
    return str(target)


def check_kubectl(kubeconfig_path: Optional[str], context: Optional[str]) -> None:
    """Make sure kubectl is installed and can reach the cluster."""
    if not shutil.which("kubectl"):
        raise FileNotFoundError("kubectl not found, v1.10.0 or newer is required")
    run_command(["kubectl", "version", "--client"], capture_output=True)
    if kubeconfig_path:
        cmd = ["kubectl", "--kubeconfig", kubeconfig_path]
        if context:
            cmd += ["--context", context]
        run_command(cmd + ["get", "nodes"], capture_output=True)
