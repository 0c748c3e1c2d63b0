import logging
import random
import time
import uuid
from dataclasses import replace
from typing import Optional

import typer

from eksforge.commands import parse_tags, split_list
from eksforge.config import Config
from eksforge.errors import ConfigurationConflict, EksforgeError, InvalidSpecification
from eksforge.logging import OutputSink
from eksforge.models import (
    NAT_SINGLE,
    ClusterMeta,
    ClusterSpec,
    FargateProfile,
    FargateSelector,
    ManagedNodeGroup,
    NodeGroup,
    VPCSpec,
)
from eksforge.modules import kubeconfig
from eksforge.modules.network import NetworkFlags
from eksforge.modules.nodegroups import filter_nodegroups
from eksforge.modules.planner import Features
from eksforge.modules.workflow import ClusterWorkflow, WorkflowOptions
from eksforge.providers import get_provider
from eksforge.schema import load_cluster_config

app = typer.Typer()

DEFAULT_FARGATE_PROFILE = "fp-default"
DEFAULT_FARGATE_NAMESPACES = ("default", "kube-system")

_ADJECTIVES = ["attractive", "beautiful", "brave", "calm", "fabulous", "floral", "hilarious", "ridiculous", "wonderful"]
_NOUNS = ["badger", "creature", "gopher", "hideout", "mongoose", "party", "sculpture", "unicorn", "wardrobe"]


def generate_cluster_name() -> str:
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}-{int(time.time())}"


def generate_nodegroup_name() -> str:
    return f"ng-{uuid.uuid4().hex[:8]}"


def build_spec(
    name: Optional[str] = None,
    region: Optional[str] = None,
    version: Optional[str] = None,
    tags: Optional[dict] = None,
    nodegroup_name: Optional[str] = None,
    node_type: str = Config.DEFAULT_NODE_TYPE,
    nodes: int = Config.DEFAULT_NODE_COUNT,
    nodes_min: Optional[int] = None,
    nodes_max: Optional[int] = None,
    node_volume_size: int = 80,
    node_private_networking: bool = False,
    ssh_public_key: Optional[str] = None,
    managed: bool = True,
    without_nodegroup: bool = False,
    fargate: bool = False,
    with_oidc: bool = False,
    vpc_nat_mode: str = NAT_SINGLE,
) -> ClusterSpec:
    """Build a cluster specification from command line flags."""
    nodegroups = ()
    managed_nodegroups = ()
    # Fargate-only clusters get no initial node group
    if not without_nodegroup and not fargate:
        kwargs = dict(
            name=nodegroup_name or generate_nodegroup_name(),
            instance_type=node_type,
            desired_capacity=nodes,
            min_size=nodes if nodes_min is None else nodes_min,
            max_size=nodes if nodes_max is None else nodes_max,
            private_networking=node_private_networking,
            volume_size=node_volume_size,
            ssh_public_key=ssh_public_key,
        )
        if managed:
            managed_nodegroups = (ManagedNodeGroup(**kwargs),)
        else:
            nodegroups = (NodeGroup(**kwargs),)

    fargate_profiles = ()
    if fargate:
        fargate_profiles = (FargateProfile(
            name=DEFAULT_FARGATE_PROFILE,
            selectors=tuple(FargateSelector(ns) for ns in DEFAULT_FARGATE_NAMESPACES),
        ),)

    return ClusterSpec(
        metadata=ClusterMeta(
            name=name or generate_cluster_name(),
            region=region or Config.AWS_REGION,
            version=version,
            tags=tags or {},
        ),
        vpc=VPCSpec(nat_mode=vpc_nat_mode),
        nodegroups=nodegroups,
        managed_nodegroups=managed_nodegroups,
        fargate_profiles=fargate_profiles,
        with_oidc=with_oidc,
    )


def check_config_file_flags(**flags) -> None:
    """Reject cluster-level flags given together with a config file."""
    for flag, value in flags.items():
        if value:
            raise ConfigurationConflict(flag, "--config-file")


def apply_nodegroup_filter(spec: ClusterSpec, include: Optional[str], exclude: Optional[str]) -> ClusterSpec:
    """Apply --include/--exclude name patterns to the node groups of a config file."""
    if not include and not exclude:
        return spec
    spec, excluded = filter_nodegroups(spec, split_list(include), split_list(exclude))
    included = [ng.name for ng in spec.all_nodegroups]
    if included:
        logging.info(
            f"🔎 {len(included)} nodegroup(s) ({', '.join(included)}) included (based on the include/exclude rules)"
        )
    if excluded:
        logging.info(
            f"🔎 {len(excluded)} nodegroup(s) ({', '.join(excluded)}) excluded (based on the include/exclude rules)"
        )
    return spec


def resolve_kubeconfig_path(cluster_name: str, path: Optional[str], auto: bool) -> Optional[str]:
    if path and auto:
        raise ConfigurationConflict("--kubeconfig", "--auto-kubeconfig")
    if auto:
        return kubeconfig.auto_path(cluster_name)
    return path


@app.command("cluster")
def create_cluster_cmd(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="EKS cluster name (generated if unspecified)"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="AWS region"),
    version: Optional[str] = typer.Option(None, "--version", help="Kubernetes version (also 'auto' or 'latest')"),
    tags: Optional[str] = typer.Option(None, "--tags", help="Comma-separated key=value tags for AWS resources"),
    zones: Optional[str] = typer.Option(None, "--zones", help="Comma-separated availability zones"),
    config_file: Optional[str] = typer.Option(None, "--config-file", "-f", help="Load configuration from a file"),
    include: Optional[str] = typer.Option(
        None, "--include", help="Nodegroup name patterns to create from the config file (comma-separated globs)"
    ),
    exclude: Optional[str] = typer.Option(
        None, "--exclude", help="Nodegroup name patterns to skip from the config file (comma-separated globs)"
    ),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", help="Maximum seconds to wait for the control plane, addons and nodes"
    ),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="AWS credentials profile"),
    nodegroup_name: Optional[str] = typer.Option(None, "--nodegroup-name", help="Name of the initial nodegroup"),
    node_type: str = typer.Option(Config.DEFAULT_NODE_TYPE, "--node-type", help="Node instance type"),
    nodes: int = typer.Option(Config.DEFAULT_NODE_COUNT, "--nodes", "-N", help="Total number of nodes"),
    nodes_min: Optional[int] = typer.Option(None, "--nodes-min", help="Minimum nodes in ASG"),
    nodes_max: Optional[int] = typer.Option(None, "--nodes-max", help="Maximum nodes in ASG"),
    node_volume_size: int = typer.Option(80, "--node-volume-size", help="Node volume size in GB"),
    node_private_networking: bool = typer.Option(False, "--node-private-networking", help="Use private subnets for nodes"),
    ssh_public_key: Optional[str] = typer.Option(None, "--ssh-public-key", help="EC2 key pair name for node SSH access"),
    managed: bool = typer.Option(True, "--managed/--unmanaged", help="Create an EKS-managed nodegroup"),
    without_nodegroup: bool = typer.Option(False, "--without-nodegroup", help="Don't create an initial nodegroup"),
    fargate: bool = typer.Option(False, "--fargate", help="Create a Fargate profile scheduling pods in default and kube-system"),
    with_oidc: bool = typer.Option(False, "--with-oidc", help="Enable the IAM OIDC provider"),
    vpc_cidr: Optional[str] = typer.Option(None, "--vpc-cidr", help=f"Global CIDR to use for VPC (default {Config.DEFAULT_VPC_CIDR})"),
    vpc_private_subnets: Optional[str] = typer.Option(None, "--vpc-private-subnets", help="Re-use private subnets of an existing VPC"),
    vpc_public_subnets: Optional[str] = typer.Option(None, "--vpc-public-subnets", help="Re-use public subnets of an existing VPC"),
    vpc_from_cluster: Optional[str] = typer.Option(None, "--vpc-from-cluster", help="Re-use the VPC of another cluster"),
    vpc_nat_mode: str = typer.Option(NAT_SINGLE, "--vpc-nat-mode", help="VPC NAT mode: HighlyAvailable, Single, Disable"),
    kubeconfig_path: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to write kubeconfig"),
    auto_kubeconfig: bool = typer.Option(False, "--auto-kubeconfig", help="Save kubeconfig under ~/.kube/eksforge/clusters/<name>"),
    write_kubeconfig: bool = typer.Option(True, "--write-kubeconfig/--no-write-kubeconfig", help="Write or update the kubeconfig"),
    set_kubeconfig_context: bool = typer.Option(True, "--set-kubeconfig-context/--no-set-kubeconfig-context", help="Switch current-context to the new cluster"),
    authenticator_role_arn: Optional[str] = typer.Option(None, "--authenticator-role-arn", help="Role ARN for the AWS authenticator"),
    install_nvidia_plugin: bool = typer.Option(True, "--install-nvidia-plugin/--no-install-nvidia-plugin", help="Install the NVIDIA device plugin for GPU nodes"),
    install_neuron_plugin: bool = typer.Option(True, "--install-neuron-plugin/--no-install-neuron-plugin", help="Install the Neuron device plugin for Inferentia nodes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the effective config as YAML without creating anything"),
):
    """Create a cluster."""
    try:
        if config_file:
            check_config_file_flags(**{
                "--name": name, "--version": version, "--tags": tags,
                "--nodegroup-name": nodegroup_name, "--without-nodegroup": without_nodegroup,
                "--fargate": fargate, "--with-oidc": with_oidc,
            })
            spec = load_cluster_config(config_file)
            if region and region != spec.metadata.region:
                raise ConfigurationConflict("--region", "--config-file")
            logging.info(f"📄 Loaded config from {config_file}")
            spec = apply_nodegroup_filter(spec, include, exclude)
        elif include or exclude:
            raise InvalidSpecification("--include and --exclude can only be used with --config-file")
        else:
            spec = build_spec(
                name=name, region=region, version=version, tags=parse_tags(tags),
                nodegroup_name=nodegroup_name, node_type=node_type, nodes=nodes,
                nodes_min=nodes_min, nodes_max=nodes_max, node_volume_size=node_volume_size,
                node_private_networking=node_private_networking, ssh_public_key=ssh_public_key,
                managed=managed, without_nodegroup=without_nodegroup, fargate=fargate,
                with_oidc=with_oidc, vpc_nat_mode=vpc_nat_mode,
            )

        flags = NetworkFlags(
            zones=split_list(zones),
            cidr=vpc_cidr,
            private_subnets=split_list(vpc_private_subnets),
            public_subnets=split_list(vpc_public_subnets),
            from_cluster=vpc_from_cluster,
            dry_run=dry_run,
        )
        path = resolve_kubeconfig_path(spec.metadata.name, kubeconfig_path, auto_kubeconfig)
        options = WorkflowOptions(
            kubeconfig_path=path,
            write_kubeconfig=write_kubeconfig,
            set_context=set_kubeconfig_context,
            authenticator_role_arn=authenticator_role_arn,
            profile=profile,
            features=Features(
                install_nvidia_device_plugin=install_nvidia_plugin,
                install_neuron_device_plugin=install_neuron_plugin,
                wait_timeout=timeout,
            ),
            node_ready_timeout=timeout,
        )

        provider = get_provider(spec.metadata.region, profile)
        spec = replace(spec, metadata=replace(spec.metadata, region=provider.region or spec.metadata.region))
        result = ClusterWorkflow(spec, flags, provider, OutputSink(), options).run()
    except EksforgeError as e:
        logging.error(f"❌ {e}")
        raise typer.Exit(code=1)

    if not result.succeeded:
        raise typer.Exit(code=1)
