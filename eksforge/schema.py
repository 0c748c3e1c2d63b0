"""
Cluster config files.

A cluster config is a YAML document validated against ``CLUSTER_SCHEMA``
and turned into a frozen ``ClusterSpec``. ``spec_to_dict`` goes the other
way and is what a dry run prints.
"""
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from jsonschema import ValidationError, validate

from .config import Config
from .errors import InvalidSpecification
from .models import (
    TOPOLOGIES,
    Addon,
    ClusterMeta,
    ClusterSpec,
    FargateProfile,
    FargateSelector,
    GitOpsSpec,
    ManagedNodeGroup,
    NodeGroup,
    SubnetSpec,
    VPCSpec,
)

_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}

_NODEGROUP_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "instance_type": {"type": "string"},
        "desired_capacity": {"type": "integer", "minimum": 0},
        "min_size": {"type": "integer", "minimum": 0},
        "max_size": {"type": "integer", "minimum": 0},
        "availability_zones": _STRING_LIST,
        "private_networking": {"type": "boolean"},
        "volume_size": {"type": "integer", "minimum": 1},
        "labels": _STRING_MAP,
        "ssh_public_key": {"type": "string"},
    },
    "required": ["name"],
    "additionalProperties": False,
}

_SUBNET_LIST = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "az": {"type": "string"},
            "cidr": {"type": "string"},
        },
        "required": ["id"],
        "additionalProperties": False,
    },
}

CLUSTER_SCHEMA = {
    "type": "object",
    "properties": {
        "metadata": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "region": {"type": "string"},
                "version": {"type": "string"},
                "tags": _STRING_MAP,
            },
            "required": ["name", "region"],
            "additionalProperties": False,
        },
        "availability_zones": _STRING_LIST,
        "vpc": {
            "type": "object",
            "properties": {
                "cidr": {"type": "string"},
                "nat_mode": {"type": "string"},
                "subnets": {
                    "type": "object",
                    "properties": {"private": _SUBNET_LIST, "public": _SUBNET_LIST},
                    "additionalProperties": False,
                },
                "public_access": {"type": "boolean"},
                "private_access": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "nodegroups": {"type": "array", "items": _NODEGROUP_SCHEMA},
        "managed_nodegroups": {"type": "array", "items": _NODEGROUP_SCHEMA},
        "addons": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "version": {"type": "string"},
                    "service_account_role_arn": {"type": "string"},
                    "wait": {"type": "boolean"},
                },
                "required": ["name"],
                "additionalProperties": False,
            },
        },
        "fargate_profiles": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "selectors": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"namespace": {"type": "string"}, "labels": _STRING_MAP},
                            "required": ["namespace"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["name", "selectors"],
                "additionalProperties": False,
            },
        },
        "iam": {
            "type": "object",
            "properties": {"with_oidc": {"type": "boolean"}},
            "additionalProperties": False,
        },
        "gitops": {
            "type": "object",
            "properties": {
                "flux": {
                    "type": "object",
                    "properties": {
                        "owner": {"type": "string"},
                        "repository": {"type": "string"},
                        "provider": {"type": "string"},
                        "branch": {"type": "string"},
                        "path": {"type": "string"},
                        "personal": {"type": "boolean"},
                    },
                    "required": ["owner", "repository"],
                    "additionalProperties": False,
                },
            },
            "required": ["flux"],
            "additionalProperties": False,
        },
        "private_cluster": {
            "type": "object",
            "properties": {"enabled": {"type": "boolean"}},
            "additionalProperties": False,
        },
    },
    "required": ["metadata"],
    "additionalProperties": False,
}


def _nodegroup_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
    desired = data.get("desired_capacity", Config.DEFAULT_NODE_COUNT)
    kwargs = {
        "name": data["name"],
        "instance_type": data.get("instance_type", Config.DEFAULT_NODE_TYPE),
        "desired_capacity": desired,
        "min_size": data.get("min_size", min(desired, data.get("max_size", desired))),
        "max_size": data.get("max_size", max(desired, data.get("min_size", desired))),
        "availability_zones": tuple(data.get("availability_zones", ())),
        "private_networking": data.get("private_networking", False),
        "labels": dict(data.get("labels", {})),
        "ssh_public_key": data.get("ssh_public_key"),
    }
    if "volume_size" in data:
        kwargs["volume_size"] = data["volume_size"]
    return kwargs


def parse_cluster_config(data: Dict[str, Any]) -> ClusterSpec:
    """Validate a decoded cluster config and build the specification."""
    try:
        validate(instance=data, schema=CLUSTER_SCHEMA)
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise InvalidSpecification(f"Schema validation error at {where}: {e.message}")

    meta = data["metadata"]
    vpc = data.get("vpc", {})
    subnets = {
        topology: tuple(SubnetSpec(s["id"], s.get("az"), s.get("cidr")) for s in vpc.get("subnets", {}).get(topology, []))
        for topology in TOPOLOGIES
        if vpc.get("subnets", {}).get(topology)
    }
    vpc_kwargs: Dict[str, Any] = {"subnets": subnets}
    for key in ("cidr", "nat_mode", "public_access", "private_access"):
        if key in vpc:
            vpc_kwargs[key] = vpc[key]

    gitops = None
    if "gitops" in data:
        gitops = GitOpsSpec(**data["gitops"]["flux"])

    return ClusterSpec(
        metadata=ClusterMeta(
            name=meta["name"],
            region=meta["region"],
            version=meta.get("version"),
            tags=dict(meta.get("tags", {})),
        ),
        vpc=VPCSpec(**vpc_kwargs),
        availability_zones=tuple(data.get("availability_zones", ())),
        nodegroups=tuple(NodeGroup(**_nodegroup_kwargs(ng)) for ng in data.get("nodegroups", [])),
        managed_nodegroups=tuple(
            ManagedNodeGroup(**_nodegroup_kwargs(ng)) for ng in data.get("managed_nodegroups", [])
        ),
        addons=tuple(Addon(**addon) for addon in data.get("addons", [])),
        fargate_profiles=tuple(
            FargateProfile(
                name=p["name"],
                selectors=tuple(FargateSelector(s["namespace"], dict(s.get("labels", {}))) for s in p["selectors"]),
            )
            for p in data.get("fargate_profiles", [])
        ),
        gitops=gitops,
        with_oidc=data.get("iam", {}).get("with_oidc", False),
        private_cluster=data.get("private_cluster", {}).get("enabled", False),
    )


def load_cluster_config(path: Union[str, Path]) -> ClusterSpec:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidSpecification(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise InvalidSpecification(f"{path} does not contain a cluster config")
    return parse_cluster_config(data)


def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v not in (None, {}, [], ())}


def _nodegroup_to_dict(ng) -> Dict[str, Any]:
    return _drop_empty({
        "name": ng.name,
        "instance_type": ng.instance_type,
        "desired_capacity": ng.desired_capacity,
        "min_size": ng.min_size,
        "max_size": ng.max_size,
        "availability_zones": list(ng.availability_zones),
        "private_networking": ng.private_networking,
        "volume_size": ng.volume_size,
        "labels": dict(ng.labels),
        "ssh_public_key": ng.ssh_public_key,
    })


def spec_to_dict(spec: ClusterSpec) -> Dict[str, Any]:
    """Render a specification in cluster config form."""
    subnets: Dict[str, List[Dict[str, Any]]] = {
        topology: [_drop_empty({"id": s.id, "az": s.az, "cidr": s.cidr}) for s in spec.vpc.subnets[topology]]
        for topology in TOPOLOGIES
        if spec.vpc.subnets.get(topology)
    }
    data: Dict[str, Any] = {
        "metadata": _drop_empty({
            "name": spec.metadata.name,
            "region": spec.metadata.region,
            "version": spec.metadata.version,
            "tags": dict(spec.metadata.tags),
        }),
        "availability_zones": list(spec.availability_zones),
        "vpc": _drop_empty({
            "cidr": spec.vpc.cidr,
            "nat_mode": spec.vpc.nat_mode,
            "subnets": subnets,
            "public_access": spec.vpc.public_access,
            "private_access": spec.vpc.private_access,
        }),
        "nodegroups": [_nodegroup_to_dict(ng) for ng in spec.nodegroups],
        "managed_nodegroups": [_nodegroup_to_dict(ng) for ng in spec.managed_nodegroups],
        "addons": [
            _drop_empty({
                "name": a.name,
                "version": a.version,
                "service_account_role_arn": a.service_account_role_arn,
                "wait": a.wait,
            })
            for a in spec.addons
        ],
        "fargate_profiles": [
            {
                "name": p.name,
                "selectors": [_drop_empty({"namespace": s.namespace, "labels": dict(s.labels)}) for s in p.selectors],
            }
            for p in spec.fargate_profiles
        ],
        "iam": {"with_oidc": spec.with_oidc},
        "private_cluster": {"enabled": spec.private_cluster},
    }
    if spec.gitops is not None:
        g = spec.gitops
        data["gitops"] = {"flux": {
            "owner": g.owner,
            "repository": g.repository,
            "provider": g.provider,
            "branch": g.branch,
            "path": g.path,
            "personal": g.personal,
        }}
    return _drop_empty(data)
