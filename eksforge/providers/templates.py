"""
CloudFormation templates for the cluster and node group stacks.

Templates are built as plain dictionaries and serialized by the provider.
The cluster stack exports its outputs as ``<stack>::<Output>`` so node group
stacks can import them.
"""
from typing import Any, Dict, List, Optional, Tuple

from ..models import (
    NAT_DISABLE,
    NAT_HIGHLY_AVAILABLE,
    NODEGROUP_LABEL,
    TOPOLOGY_PRIVATE,
    TOPOLOGY_PUBLIC,
    ClusterSpec,
    ManagedNodeGroup,
    NodeGroup,
    is_gpu_instance,
)

TEMPLATE_VERSION = "2010-09-09"

CLUSTER_POLICIES = ["arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"]
NODE_POLICIES = [
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
]
FARGATE_POLICIES = ["arn:aws:iam::aws:policy/AmazonEKSFargatePodExecutionRolePolicy"]

AMI_PARAMETER = "/aws/service/eks/optimized-ami/{version}/amazon-linux-2/recommended/image_id"
AMI_PARAMETER_GPU = "/aws/service/eks/optimized-ami/{version}/amazon-linux-2-gpu/recommended/image_id"
AMI_TYPE = "AL2_x86_64"
AMI_TYPE_GPU = "AL2_x86_64_GPU"


def ref(name: str) -> Dict[str, str]:
    return {"Ref": name}


def get_att(name: str, attribute: str) -> Dict[str, List[str]]:
    return {"Fn::GetAtt": [name, attribute]}


def import_value(stack_name: str, output: str) -> Dict[str, str]:
    return {"Fn::ImportValue": f"{stack_name}::{output}"}


def export_name(output: str) -> Dict[str, Any]:
    return {"Fn::Sub": "${AWS::StackName}::" + output}


def _tags(tags: Dict[str, str], name: Optional[str] = None) -> List[Dict[str, str]]:
    items = dict(tags)
    if name:
        items["Name"] = name
    return [{"Key": k, "Value": v} for k, v in sorted(items.items())]


def _assume_role(*services: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": list(services)},
            "Action": ["sts:AssumeRole"],
        }],
    }


def _zone_suffix(zone: str) -> str:
    return "".join(part.capitalize() for part in zone.split("-"))


def _name_subnets(network) -> Dict[str, List[Tuple[str, Any]]]:
    """Pair every derived subnet with a unique logical resource name."""
    named: Dict[str, List[Tuple[str, Any]]] = {}
    for topology in (TOPOLOGY_PUBLIC, TOPOLOGY_PRIVATE):
        seen = set()
        named[topology] = []
        for index, subnet in enumerate(network.subnets.get(topology, [])):
            suffix = topology.capitalize() + _zone_suffix(subnet.availability_zone)
            if suffix in seen:
                suffix += str(index)
            seen.add(suffix)
            named[topology].append((suffix, subnet))
    return named


def _vpc_resources(spec: ClusterSpec, network, resources: Dict[str, Any]) -> Dict[str, List[Any]]:
    """Add a new VPC with derived subnets; return the subnet refs per topology."""
    name = spec.metadata.name
    tags = spec.metadata.tags
    resources["VPC"] = {
        "Type": "AWS::EC2::VPC",
        "Properties": {
            "CidrBlock": network.cidr,
            "EnableDnsHostnames": True,
            "EnableDnsSupport": True,
            "Tags": _tags(tags, f"eksforge-{name}-cluster/VPC"),
        },
    }
    resources["InternetGateway"] = {"Type": "AWS::EC2::InternetGateway", "Properties": {"Tags": _tags(tags)}}
    resources["VPCGatewayAttachment"] = {
        "Type": "AWS::EC2::VPCGatewayAttachment",
        "Properties": {"InternetGatewayId": ref("InternetGateway"), "VpcId": ref("VPC")},
    }
    resources["PublicRouteTable"] = {
        "Type": "AWS::EC2::RouteTable",
        "Properties": {"VpcId": ref("VPC"), "Tags": _tags(tags)},
    }
    resources["PublicSubnetRoute"] = {
        "Type": "AWS::EC2::Route",
        "DependsOn": "VPCGatewayAttachment",
        "Properties": {
            "RouteTableId": ref("PublicRouteTable"),
            "DestinationCidrBlock": "0.0.0.0/0",
            "GatewayId": ref("InternetGateway"),
        },
    }

    named = _name_subnets(network)
    refs: Dict[str, List[Any]] = {TOPOLOGY_PUBLIC: [], TOPOLOGY_PRIVATE: []}
    for topology, subnets in named.items():
        elb_tag = "kubernetes.io/role/elb" if topology == TOPOLOGY_PUBLIC else "kubernetes.io/role/internal-elb"
        for suffix, subnet in subnets:
            resources["Subnet" + suffix] = {
                "Type": "AWS::EC2::Subnet",
                "Properties": {
                    "AvailabilityZone": subnet.availability_zone,
                    "CidrBlock": subnet.cidr,
                    "MapPublicIpOnLaunch": topology == TOPOLOGY_PUBLIC,
                    "VpcId": ref("VPC"),
                    "Tags": _tags({**tags, elb_tag: "1"}, f"eksforge-{name}-cluster/Subnet{suffix}"),
                },
            }
            refs[topology].append(ref("Subnet" + suffix))

    public = named[TOPOLOGY_PUBLIC]
    for suffix, _ in public:
        resources["RouteTableAssociation" + suffix] = {
            "Type": "AWS::EC2::SubnetRouteTableAssociation",
            "Properties": {"RouteTableId": ref("PublicRouteTable"), "SubnetId": ref("Subnet" + suffix)},
        }

    nat_mode = spec.vpc.nat_mode
    # zone -> NAT gateway serving private subnets in that zone
    nat_by_zone: Dict[str, str] = {}
    if nat_mode != NAT_DISABLE and public:
        nat_subnets = public if nat_mode == NAT_HIGHLY_AVAILABLE else public[:1]
        for suffix, subnet in nat_subnets:
            resources["NATIP" + suffix] = {
                "Type": "AWS::EC2::EIP",
                "DependsOn": "VPCGatewayAttachment",
                "Properties": {"Domain": "vpc", "Tags": _tags(tags)},
            }
            resources["NATGateway" + suffix] = {
                "Type": "AWS::EC2::NatGateway",
                "Properties": {
                    "AllocationId": get_att("NATIP" + suffix, "AllocationId"),
                    "SubnetId": ref("Subnet" + suffix),
                    "Tags": _tags(tags),
                },
            }
            nat_by_zone.setdefault(subnet.availability_zone, "NATGateway" + suffix)
    default_nat = next(iter(nat_by_zone.values()), None)

    for suffix, subnet in named[TOPOLOGY_PRIVATE]:
        resources["PrivateRouteTable" + suffix] = {
            "Type": "AWS::EC2::RouteTable",
            "Properties": {"VpcId": ref("VPC"), "Tags": _tags(tags)},
        }
        resources["RouteTableAssociation" + suffix] = {
            "Type": "AWS::EC2::SubnetRouteTableAssociation",
            "Properties": {
                "RouteTableId": ref("PrivateRouteTable" + suffix),
                "SubnetId": ref("Subnet" + suffix),
            },
        }
        nat = nat_by_zone.get(subnet.availability_zone, default_nat)
        if nat:
            resources["NATPrivateSubnetRoute" + suffix] = {
                "Type": "AWS::EC2::Route",
                "Properties": {
                    "RouteTableId": ref("PrivateRouteTable" + suffix),
                    "DestinationCidrBlock": "0.0.0.0/0",
                    "NatGatewayId": ref(nat),
                },
            }
    return refs


def cluster_template(spec: ClusterSpec, network) -> Dict[str, Any]:
    """Template for the cluster stack: network, security groups, roles and the control plane."""
    name = spec.metadata.name
    tags = spec.metadata.tags
    resources: Dict[str, Any] = {}

    if network.is_new_vpc():
        subnet_refs = _vpc_resources(spec, network, resources)
        vpc_id: Any = ref("VPC")
    else:
        subnet_refs = {t: network.subnet_ids(t) for t in (TOPOLOGY_PUBLIC, TOPOLOGY_PRIVATE)}
        vpc_id = network.vpc_id

    all_subnets = subnet_refs[TOPOLOGY_PUBLIC] + subnet_refs[TOPOLOGY_PRIVATE]

    resources["ControlPlaneSecurityGroup"] = {
        "Type": "AWS::EC2::SecurityGroup",
        "Properties": {
            "GroupDescription": "Communication between the control plane and worker nodegroups",
            "VpcId": vpc_id,
            "Tags": _tags(tags, f"eksforge-{name}-cluster/ControlPlaneSecurityGroup"),
        },
    }
    resources["ClusterSharedNodeSecurityGroup"] = {
        "Type": "AWS::EC2::SecurityGroup",
        "Properties": {
            "GroupDescription": "Communication between all nodes in the cluster",
            "VpcId": vpc_id,
            "Tags": _tags(tags, f"eksforge-{name}-cluster/ClusterSharedNodeSecurityGroup"),
        },
    }
    resources["IngressInterNodeGroupSG"] = {
        "Type": "AWS::EC2::SecurityGroupIngress",
        "Properties": {
            "Description": "Allow nodes to communicate with each other (all ports)",
            "GroupId": ref("ClusterSharedNodeSecurityGroup"),
            "SourceSecurityGroupId": ref("ClusterSharedNodeSecurityGroup"),
            "IpProtocol": "-1",
            "FromPort": 0,
            "ToPort": 65535,
        },
    }
    resources["ServiceRole"] = {
        "Type": "AWS::IAM::Role",
        "Properties": {
            "AssumeRolePolicyDocument": _assume_role("eks.amazonaws.com"),
            "ManagedPolicyArns": list(CLUSTER_POLICIES),
            "Tags": _tags(tags),
        },
    }

    cluster_props: Dict[str, Any] = {
        "Name": name,
        "RoleArn": get_att("ServiceRole", "Arn"),
        "Version": spec.metadata.version,
        "ResourcesVpcConfig": {
            "SecurityGroupIds": [ref("ControlPlaneSecurityGroup")],
            "SubnetIds": all_subnets,
            # private clusters stay reachable until the final lockdown
            "EndpointPublicAccess": spec.vpc.public_access or spec.private_cluster,
            "EndpointPrivateAccess": spec.vpc.private_access or spec.private_cluster,
        },
        "Tags": _tags(tags),
    }
    resources["ControlPlane"] = {"Type": "AWS::EKS::Cluster", "Properties": cluster_props}

    outputs: Dict[str, Any] = {
        "VPC": {"Value": vpc_id},
        "SecurityGroup": {"Value": ref("ControlPlaneSecurityGroup")},
        "SharedNodeSecurityGroup": {"Value": ref("ClusterSharedNodeSecurityGroup")},
        "ARN": {"Value": get_att("ControlPlane", "Arn")},
        "Endpoint": {"Value": get_att("ControlPlane", "Endpoint")},
        "CertificateAuthorityData": {"Value": get_att("ControlPlane", "CertificateAuthorityData")},
        "ClusterStackName": {"Value": ref("AWS::StackName")},
    }
    for topology, output in ((TOPOLOGY_PUBLIC, "SubnetsPublic"), (TOPOLOGY_PRIVATE, "SubnetsPrivate")):
        if subnet_refs[topology]:
            outputs[output] = {"Value": {"Fn::Join": [",", subnet_refs[topology]]}}

    if spec.fargate_profiles:
        resources["FargatePodExecutionRole"] = {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role("eks-fargate-pods.amazonaws.com", "eks.amazonaws.com"),
                "ManagedPolicyArns": list(FARGATE_POLICIES),
                "Tags": _tags(tags),
            },
        }
        outputs["FargatePodExecutionRoleARN"] = {"Value": get_att("FargatePodExecutionRole", "Arn")}

    for key, output in outputs.items():
        output["Export"] = {"Name": export_name(key)}

    return {
        "AWSTemplateFormatVersion": TEMPLATE_VERSION,
        "Description": f"EKS cluster (dedicated VPC: {network.is_new_vpc()}, version {spec.metadata.version}) [created by eksforge]",
        "Resources": resources,
        "Outputs": outputs,
    }


def _node_role(tags: Dict[str, str]) -> Dict[str, Any]:
    return {
        "Type": "AWS::IAM::Role",
        "Properties": {
            "AssumeRolePolicyDocument": _assume_role("ec2.amazonaws.com"),
            "ManagedPolicyArns": list(NODE_POLICIES),
            "Path": "/",
            "Tags": _tags(tags),
        },
    }


def node_labels(nodegroup: NodeGroup) -> Dict[str, str]:
    labels = {NODEGROUP_LABEL: nodegroup.name}
    labels.update(nodegroup.labels)
    return labels


def bootstrap_user_data(cluster_name: str, nodegroup: NodeGroup) -> Dict[str, Any]:
    labels = ",".join(f"{k}={v}" for k, v in sorted(node_labels(nodegroup).items()))
    script = "\n".join([
        "#!/bin/bash",
        "set -o errexit",
        f"/etc/eks/bootstrap.sh {cluster_name} --kubelet-extra-args '--node-labels={labels}'",
        "",
    ])
    return {"Fn::Base64": script}


def nodegroup_template(
    spec: ClusterSpec, nodegroup: NodeGroup, cluster_stack: str, subnet_ids: List[str]
) -> Dict[str, Any]:
    """Template for an unmanaged node group: instance role, launch template and auto scaling group."""
    name = spec.metadata.name
    tags = spec.metadata.tags
    ami_path = AMI_PARAMETER_GPU if is_gpu_instance(nodegroup.instance_type) else AMI_PARAMETER

    launch_data: Dict[str, Any] = {
        "ImageId": ref("AMI"),
        "InstanceType": nodegroup.instance_type,
        "IamInstanceProfile": {"Arn": get_att("NodeInstanceProfile", "Arn")},
        "SecurityGroupIds": [
            import_value(cluster_stack, "SharedNodeSecurityGroup"),
            ref("SG"),
        ],
        "BlockDeviceMappings": [{
            "DeviceName": "/dev/xvda",
            "Ebs": {"VolumeSize": nodegroup.volume_size, "VolumeType": "gp3"},
        }],
        "UserData": bootstrap_user_data(name, nodegroup),
    }
    if nodegroup.ssh_public_key:
        launch_data["KeyName"] = nodegroup.ssh_public_key

    asg_tags = _tags({**tags, f"kubernetes.io/cluster/{name}": "owned"}, f"{name}-{nodegroup.name}-Node")
    resources = {
        "NodeInstanceRole": _node_role(tags),
        "NodeInstanceProfile": {
            "Type": "AWS::IAM::InstanceProfile",
            "Properties": {"Path": "/", "Roles": [ref("NodeInstanceRole")]},
        },
        "SG": {
            "Type": "AWS::EC2::SecurityGroup",
            "Properties": {
                "GroupDescription": f"Communication between the control plane and worker nodes in group {nodegroup.name}",
                "VpcId": import_value(cluster_stack, "VPC"),
                "SecurityGroupIngress": [{
                    "Description": "Allow nodes to communicate with control plane (kubelet and workload TCP ports)",
                    "SourceSecurityGroupId": import_value(cluster_stack, "SecurityGroup"),
                    "IpProtocol": "tcp",
                    "FromPort": 1025,
                    "ToPort": 65535,
                }, {
                    "Description": "Allow nodes to communicate with control plane (workloads using HTTPS port)",
                    "SourceSecurityGroupId": import_value(cluster_stack, "SecurityGroup"),
                    "IpProtocol": "tcp",
                    "FromPort": 443,
                    "ToPort": 443,
                }],
                "Tags": _tags(tags),
            },
        },
        "NodeGroupLaunchTemplate": {
            "Type": "AWS::EC2::LaunchTemplate",
            "Properties": {
                "LaunchTemplateName": {"Fn::Sub": "${AWS::StackName}"},
                "LaunchTemplateData": launch_data,
            },
        },
        "NodeGroup": {
            "Type": "AWS::AutoScaling::AutoScalingGroup",
            "Properties": {
                "LaunchTemplate": {
                    "LaunchTemplateId": ref("NodeGroupLaunchTemplate"),
                    "Version": get_att("NodeGroupLaunchTemplate", "LatestVersionNumber"),
                },
                "DesiredCapacity": str(nodegroup.desired_capacity),
                "MinSize": str(nodegroup.min_size),
                "MaxSize": str(nodegroup.max_size),
                "VPCZoneIdentifier": list(subnet_ids),
                "Tags": [dict(tag, PropagateAtLaunch="true") for tag in asg_tags],
            },
            "UpdatePolicy": {
                "AutoScalingRollingUpdate": {"MaxBatchSize": "1", "MinInstancesInService": "0"},
            },
        },
    }

    return {
        "AWSTemplateFormatVersion": TEMPLATE_VERSION,
        "Description": f"EKS nodes (AMI family: AmazonLinux2, SSH access: {bool(nodegroup.ssh_public_key)}, "
                       f"private networking: {nodegroup.private_networking}) [created by eksforge]",
        "Parameters": {
            "AMI": {
                "Type": "AWS::SSM::Parameter::Value<AWS::EC2::Image::Id>",
                "Default": ami_path.format(version=spec.metadata.version),
            },
        },
        "Resources": resources,
        "Outputs": {
            "InstanceRoleARN": {"Value": get_att("NodeInstanceRole", "Arn"),
                                "Export": {"Name": export_name("InstanceRoleARN")}},
            "InstanceProfileARN": {"Value": get_att("NodeInstanceProfile", "Arn"),
                                   "Export": {"Name": export_name("InstanceProfileARN")}},
        },
    }


def managed_nodegroup_template(
    spec: ClusterSpec, nodegroup: ManagedNodeGroup, subnet_ids: List[str]
) -> Dict[str, Any]:
    """Template for a managed node group; EKS maps its role in aws-auth itself."""
    tags = spec.metadata.tags
    props: Dict[str, Any] = {
        "ClusterName": spec.metadata.name,
        "NodegroupName": nodegroup.name,
        "NodeRole": get_att("NodeInstanceRole", "Arn"),
        "InstanceTypes": [nodegroup.instance_type],
        "AmiType": AMI_TYPE_GPU if is_gpu_instance(nodegroup.instance_type) else AMI_TYPE,
        "DiskSize": nodegroup.volume_size,
        "ScalingConfig": {
            "DesiredSize": nodegroup.desired_capacity,
            "MinSize": nodegroup.min_size,
            "MaxSize": nodegroup.max_size,
        },
        "Subnets": list(subnet_ids),
        "Labels": dict(nodegroup.labels),
        "Tags": dict(tags),
    }
    if nodegroup.ssh_public_key:
        props["RemoteAccess"] = {"Ec2SshKey": nodegroup.ssh_public_key}

    return {
        "AWSTemplateFormatVersion": TEMPLATE_VERSION,
        "Description": "EKS Managed Nodes (SSH access: "
                       f"{bool(nodegroup.ssh_public_key)}) [created by eksforge]",
        "Resources": {
            "NodeInstanceRole": _node_role(tags),
            "ManagedNodeGroup": {"Type": "AWS::EKS::Nodegroup", "Properties": props},
        },
        "Outputs": {
            "InstanceRoleARN": {"Value": get_att("NodeInstanceRole", "Arn"),
                                "Export": {"Name": export_name("InstanceRoleARN")}},
        },
    }
