"""
AWS provider backed by boto3.

Clusters and node groups are CloudFormation stacks named
``eksforge-<cluster>-cluster`` and ``eksforge-<cluster>-nodegroup-<name>``.
Every mutating call checks for an existing resource first, so re-running a
partially failed plan picks up where it stopped.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from ..config import Config
from ..errors import CapabilityUnsupported, InsufficientResources
from ..models import (
    MIN_REQUIRED_ZONES,
    TOPOLOGY_PRIVATE,
    TOPOLOGY_PUBLIC,
    Addon,
    ClusterSpec,
    FargateProfile,
    ManagedNodeGroup,
    NodeGroup,
    NodeGroupBase,
)
from ..utils import retry
from .base import ClusterInfo, ClusterNetwork, Subnet
from .templates import cluster_template, managed_nodegroup_template, nodegroup_template

logger = logging.getLogger("eksforge.providers.aws")

STACK_PREFIX = "eksforge"
DEFAULT_ZONE_COUNT = 3
COMPLETE_STATES = ("CREATE_COMPLETE", "UPDATE_COMPLETE", "UPDATE_ROLLBACK_COMPLETE")
# root CA thumbprint of the EKS OIDC issuer endpoints
OIDC_THUMBPRINT = "9e99a48a9960b14926bb7f3b02e22da2b0ab7280"
OIDC_CLIENT_ID = "sts.amazonaws.com"


def _is_not_found(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", "")
    return code in ("ResourceNotFoundException", "NoSuchEntity") or "does not exist" in message


class AWSProvider:
    """Provider implementation talking to EC2, CloudFormation, EKS, IAM and STS."""

    def __init__(self, region: Optional[str] = None, profile: Optional[str] = None,
                 session: Optional[boto3.Session] = None):
        self.session = session or boto3.Session(
            profile_name=profile or None,
            region_name=region or Config.AWS_REGION,
        )
        self.region = self.session.region_name
        self.ec2 = self.session.client("ec2")
        self.cfn = self.session.client("cloudformation")
        self.eks = self.session.client("eks")
        self.iam = self.session.client("iam")
        self.sts = self.session.client("sts")

    # -- naming -----------------------------------------------------------

    def cluster_stack_name(self, cluster_name: str) -> str:
        return f"{STACK_PREFIX}-{cluster_name}-cluster"

    def nodegroup_stack_name(self, cluster_name: str, nodegroup_name: str) -> str:
        return f"{STACK_PREFIX}-{cluster_name}-nodegroup-{nodegroup_name}"

    def _waiter_config(self, timeout: Optional[float] = None) -> Dict[str, int]:
        delay = max(int(Config.POLL_INTERVAL), 1)
        timeout = int(timeout or Config.WAIT_TIMEOUT)
        return {"Delay": delay, "MaxAttempts": max(timeout // delay, 1)}

    # -- network reads ----------------------------------------------------

    @retry(exceptions=(ClientError,))
    def available_zones(self) -> List[str]:
        response = self.ec2.describe_availability_zones(Filters=[
            {"Name": "state", "Values": ["available"]},
            {"Name": "zone-type", "Values": ["availability-zone"]},
        ])
        zones = sorted(z["ZoneName"] for z in response["AvailabilityZones"])
        count = max(MIN_REQUIRED_ZONES, min(DEFAULT_ZONE_COUNT, len(zones)))
        logger.debug("available zones in %s: %s", self.region, zones)
        return zones[:count]

    def describe_subnets(self, subnet_ids: List[str]) -> List[Subnet]:
        response = self.ec2.describe_subnets(SubnetIds=list(subnet_ids))
        by_id = {
            s["SubnetId"]: Subnet(
                id=s["SubnetId"],
                availability_zone=s["AvailabilityZone"],
                cidr=s.get("CidrBlock"),
                vpc_id=s.get("VpcId"),
            )
            for s in response["Subnets"]
        }
        return [by_id[i] for i in subnet_ids if i in by_id]

    def describe_cluster_network(self, cluster_name: str) -> ClusterNetwork:
        try:
            cluster = self.eks.describe_cluster(name=cluster_name)["cluster"]
        except ClientError as e:
            if _is_not_found(e):
                raise InsufficientResources(
                    f"cluster {cluster_name!r} to import the network from does not exist"
                ) from e
            raise
        vpc_config = cluster["resourcesVpcConfig"]
        vpc_id = vpc_config["vpcId"]
        vpcs = self.ec2.describe_vpcs(VpcIds=[vpc_id])["Vpcs"]
        cidr = vpcs[0].get("CidrBlock") if vpcs else None

        outputs = self._stack_outputs(self.cluster_stack_name(cluster_name))
        subnets: Dict[str, List[Subnet]] = {}
        if outputs:
            for topology, key in ((TOPOLOGY_PRIVATE, "SubnetsPrivate"), (TOPOLOGY_PUBLIC, "SubnetsPublic")):
                ids = [i for i in outputs.get(key, "").split(",") if i]
                if ids:
                    subnets[topology] = self.describe_subnets(ids)
        else:
            # not created by eksforge: classify by public IP mapping
            response = self.ec2.describe_subnets(SubnetIds=vpc_config["subnetIds"])
            for s in response["Subnets"]:
                topology = TOPOLOGY_PUBLIC if s.get("MapPublicIpOnLaunch") else TOPOLOGY_PRIVATE
                subnets.setdefault(topology, []).append(
                    Subnet(s["SubnetId"], s["AvailabilityZone"], s.get("CidrBlock"), s.get("VpcId"))
                )
        return ClusterNetwork(vpc_id=vpc_id, cidr=cidr, subnets=subnets)

    # -- stacks -----------------------------------------------------------

    def _stack_status(self, stack_name: str) -> Optional[str]:
        try:
            stacks = self.cfn.describe_stacks(StackName=stack_name)["Stacks"]
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise
        return stacks[0]["StackStatus"] if stacks else None

    def _stack_outputs(self, stack_name: str) -> Dict[str, str]:
        try:
            stacks = self.cfn.describe_stacks(StackName=stack_name)["Stacks"]
        except ClientError as e:
            if _is_not_found(e):
                return {}
            raise
        if not stacks:
            return {}
        return {o["OutputKey"]: o["OutputValue"] for o in stacks[0].get("Outputs", [])}

    def _create_stack(self, stack_name: str, template: Dict[str, Any], tags: Dict[str, str]) -> None:
        status = self._stack_status(stack_name)
        if status in COMPLETE_STATES:
            logger.info(f"✅ Stack {stack_name} already exists ({status})")
            return
        if status is None:
            logger.info(f"🚀 Deploying stack {stack_name}")
            self.cfn.create_stack(
                StackName=stack_name,
                TemplateBody=json.dumps(template),
                Capabilities=["CAPABILITY_IAM"],
                Tags=[{"Key": k, "Value": v} for k, v in sorted(tags.items())],
            )
        elif not status.endswith("_IN_PROGRESS"):
            raise RuntimeError(
                f"stack {stack_name} is in state {status}, delete it before retrying"
            )

        logger.info(f"⏳ Waiting for CloudFormation stack {stack_name}")
        try:
            self.cfn.get_waiter("stack_create_complete").wait(
                StackName=stack_name, WaiterConfig=self._waiter_config()
            )
        except WaiterError as e:
            raise RuntimeError(f"stack {stack_name} was not created: {e}") from e

    def create_control_plane(self, spec: ClusterSpec, network) -> None:
        name = spec.metadata.name
        self._create_stack(self.cluster_stack_name(name), cluster_template(spec, network), self._stack_tags(spec))

    @retry(exceptions=(ClientError,))
    def wait_for_control_plane(self, cluster_name: str, timeout: Optional[float] = None) -> None:
        try:
            self.eks.get_waiter("cluster_active").wait(name=cluster_name, WaiterConfig=self._waiter_config(timeout))
        except WaiterError as e:
            raise RuntimeError(f"control plane of {cluster_name} did not become active: {e}") from e

    def describe_cluster(self, cluster_name: str) -> ClusterInfo:
        cluster = self.eks.describe_cluster(name=cluster_name)["cluster"]
        return ClusterInfo(
            name=cluster["name"],
            endpoint=cluster["endpoint"],
            certificate_authority=cluster["certificateAuthority"]["data"],
            arn=cluster.get("arn", ""),
            status=cluster.get("status", ""),
            oidc_issuer=cluster.get("identity", {}).get("oidc", {}).get("issuer"),
        )

    def _stack_tags(self, spec: ClusterSpec, nodegroup: Optional[NodeGroupBase] = None) -> Dict[str, str]:
        tags = dict(spec.metadata.tags)
        tags["eksforge.io/cluster-name"] = spec.metadata.name
        if nodegroup is not None:
            tags["eksforge.io/nodegroup-name"] = nodegroup.name
        return tags

    def _nodegroup_subnets(self, spec: ClusterSpec, nodegroup: NodeGroupBase) -> List[str]:
        outputs = self._stack_outputs(self.cluster_stack_name(spec.metadata.name))
        key = "SubnetsPrivate" if nodegroup.private_networking else "SubnetsPublic"
        ids = [i for i in outputs.get(key, "").split(",") if i]
        if not ids:
            raise RuntimeError(f"cluster stack has no {nodegroup.topology} subnets for nodegroup {nodegroup.name!r}")
        if nodegroup.availability_zones:
            zones = set(nodegroup.availability_zones)
            ids = [s.id for s in self.describe_subnets(ids) if s.availability_zone in zones]
        return ids

    def create_nodegroup(self, spec: ClusterSpec, nodegroup: NodeGroup) -> None:
        cluster_stack = self.cluster_stack_name(spec.metadata.name)
        template = nodegroup_template(spec, nodegroup, cluster_stack, self._nodegroup_subnets(spec, nodegroup))
        stack = self.nodegroup_stack_name(spec.metadata.name, nodegroup.name)
        self._create_stack(stack, template, self._stack_tags(spec, nodegroup))

    def create_managed_nodegroup(self, spec: ClusterSpec, nodegroup: ManagedNodeGroup) -> None:
        template = managed_nodegroup_template(spec, nodegroup, self._nodegroup_subnets(spec, nodegroup))
        stack = self.nodegroup_stack_name(spec.metadata.name, nodegroup.name)
        self._create_stack(stack, template, self._stack_tags(spec, nodegroup))

    def nodegroup_instance_role_arn(self, cluster_name: str, nodegroup_name: str) -> str:
        outputs = self._stack_outputs(self.nodegroup_stack_name(cluster_name, nodegroup_name))
        if "InstanceRoleARN" not in outputs:
            raise RuntimeError(f"nodegroup stack for {nodegroup_name!r} has no InstanceRoleARN output")
        return outputs["InstanceRoleARN"]

    # -- post-cluster-creation --------------------------------------------

    def associate_oidc_provider(self, cluster_name: str) -> None:
        issuer = self.describe_cluster(cluster_name).oidc_issuer
        if not issuer:
            raise RuntimeError(f"cluster {cluster_name} has no OIDC issuer")
        host_path = issuer.replace("https://", "", 1)
        for entry in self.iam.list_open_id_connect_providers()["OpenIDConnectProviderList"]:
            if entry["Arn"].endswith(host_path):
                logger.info(f"✅ IAM OIDC provider for {cluster_name} already exists")
                return
        self.iam.create_open_id_connect_provider(
            Url=issuer,
            ClientIDList=[OIDC_CLIENT_ID],
            ThumbprintList=[OIDC_THUMBPRINT],
        )

    def list_fargate_profiles(self, cluster_name: str) -> List[str]:
        try:
            return list(self.eks.list_fargate_profiles(clusterName=cluster_name)["fargateProfileNames"])
        except ClientError as e:
            if _is_not_found(e):
                return []
            raise

    def create_fargate_profile(self, spec: ClusterSpec, profile: FargateProfile,
                               timeout: Optional[float] = None) -> None:
        name = spec.metadata.name
        if profile.name in self.list_fargate_profiles(name):
            logger.info(f"✅ Fargate profile {profile.name} already exists")
            return
        outputs = self._stack_outputs(self.cluster_stack_name(name))
        role = outputs.get("FargatePodExecutionRoleARN")
        if not role:
            raise RuntimeError(f"cluster stack for {name} has no Fargate pod execution role")
        subnets = [i for i in outputs.get("SubnetsPrivate", "").split(",") if i]
        self.eks.create_fargate_profile(
            fargateProfileName=profile.name,
            clusterName=name,
            podExecutionRoleArn=role,
            subnets=subnets,
            selectors=[{"namespace": s.namespace, "labels": dict(s.labels)} for s in profile.selectors],
        )
        try:
            self.eks.get_waiter("fargate_profile_active").wait(
                clusterName=name, fargateProfileName=profile.name, WaiterConfig=self._waiter_config(timeout)
            )
        except WaiterError as e:
            raise RuntimeError(f"Fargate profile {profile.name} did not become active: {e}") from e

    def create_addon(self, spec: ClusterSpec, addon: Addon, wait: bool, timeout: Optional[float] = None) -> None:
        name = spec.metadata.name
        try:
            self.eks.describe_addon(clusterName=name, addonName=addon.name)
            logger.info(f"✅ Addon {addon.name} already exists")
            return
        except ClientError as e:
            if not _is_not_found(e):
                raise

        kwargs: Dict[str, Any] = {"clusterName": name, "addonName": addon.name, "resolveConflicts": "OVERWRITE"}
        if addon.version and addon.version != "latest":
            kwargs["addonVersion"] = addon.version
        if addon.service_account_role_arn:
            kwargs["serviceAccountRoleArn"] = addon.service_account_role_arn
        try:
            self.eks.create_addon(**kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "InvalidParameterException":
                raise CapabilityUnsupported(f"addon {addon.name!r}", spec.metadata.version or "") from e
            raise

        if wait:
            try:
                self.eks.get_waiter("addon_active").wait(
                    clusterName=name, addonName=addon.name, WaiterConfig=self._waiter_config(timeout)
                )
            except WaiterError as e:
                raise RuntimeError(f"addon {addon.name} did not become active: {e}") from e

    def update_cluster_endpoints(self, cluster_name: str, public_access: bool, private_access: bool) -> None:
        update = self.eks.update_cluster_config(
            name=cluster_name,
            resourcesVpcConfig={
                "endpointPublicAccess": public_access,
                "endpointPrivateAccess": private_access,
            },
        )["update"]
        logger.debug("endpoint update %s started", update["id"])
        try:
            self.eks.get_waiter("cluster_active").wait(name=cluster_name, WaiterConfig=self._waiter_config())
        except WaiterError as e:
            raise RuntimeError(f"endpoint update of {cluster_name} did not complete: {e}") from e

    @retry(exceptions=(ClientError,))
    def caller_identity(self) -> str:
        arn = self.sts.get_caller_identity()["Arn"]
        # kubeconfig context names use the bare user or role session name
        return arn.split("/")[-1]

    # -- teardown ---------------------------------------------------------

    def list_nodegroup_stacks(self, cluster_name: str) -> List[str]:
        prefix = f"{STACK_PREFIX}-{cluster_name}-nodegroup-"
        names = []
        paginator = self.cfn.get_paginator("describe_stacks")
        for page in paginator.paginate():
            for stack in page["Stacks"]:
                if stack["StackName"].startswith(prefix) and stack["StackStatus"] != "DELETE_COMPLETE":
                    names.append(stack["StackName"])
        return sorted(names)

    def delete_fargate_profile(self, cluster_name: str, profile_name: str) -> None:
        try:
            self.eks.delete_fargate_profile(clusterName=cluster_name, fargateProfileName=profile_name)
        except ClientError as e:
            if _is_not_found(e):
                return
            raise
        try:
            self.eks.get_waiter("fargate_profile_deleted").wait(
                clusterName=cluster_name, fargateProfileName=profile_name, WaiterConfig=self._waiter_config()
            )
        except WaiterError as e:
            raise RuntimeError(f"Fargate profile {profile_name} was not deleted: {e}") from e

    def delete_stack(self, stack_name: str) -> None:
        if self._stack_status(stack_name) is None:
            logger.info(f"Stack {stack_name} does not exist, nothing to delete")
            return
        self.cfn.delete_stack(StackName=stack_name)
        try:
            self.cfn.get_waiter("stack_delete_complete").wait(
                StackName=stack_name, WaiterConfig=self._waiter_config()
            )
        except WaiterError as e:
            raise RuntimeError(f"stack {stack_name} was not deleted: {e}") from e
