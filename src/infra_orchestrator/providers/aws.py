"""AWS provider - provisions the resource graph with EC2 and EKS via boto3.

Resource type mapping:
- network: VPC
- subnet: VPC subnet (VpcId taken from the network it depends on)
- security-group: VPC security group
- cluster: EKS control plane (subnets and security groups from dependencies)
- node-pool: EKS managed node group (cluster and subnets from dependencies)

Cloud ids are not derivable from resource identifiers, so the provider reads
the last applied snapshot from a StateStore and refreshes it against the
EC2/EKS describe APIs.
"""

import logging
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from infra_orchestrator.core.errors import ProviderError
from infra_orchestrator.core.models import (
    CredentialBundle,
    ObservedResource,
    ObservedState,
    ResourceNode,
    ResourceType,
)
from infra_orchestrator.providers.base import Provider
from infra_orchestrator.providers.state import StateStore

logger = logging.getLogger(__name__)

_EC2_TAG_RESOURCE_TYPES = {
    ResourceType.NETWORK: "vpc",
    ResourceType.SUBNET: "subnet",
    ResourceType.SECURITY_GROUP: "security-group",
}

_NOT_FOUND_CODES = {
    "InvalidVpcID.NotFound",
    "InvalidSubnetID.NotFound",
    "InvalidGroup.NotFound",
    "ResourceNotFoundException",
}

# Attributes an in-place update can change, per resource type
_UPDATABLE = {
    ResourceType.NETWORK: {"tags"},
    ResourceType.SUBNET: {"tags"},
    ResourceType.SECURITY_GROUP: {"tags"},
    ResourceType.CLUSTER: {"version"},
    ResourceType.NODE_POOL: {"min_size", "max_size", "desired_size"},
}


def _tag_list(node: ResourceNode) -> list[dict[str, str]]:
    tags = {"Name": node.id, **{str(k): str(v) for k, v in node.attributes.get("tags", {}).items()}}
    return [{"Key": key, "Value": value} for key, value in tags.items()]


class AwsProvider(Provider):
    """Provider backed by the EC2 and EKS APIs."""

    name = "aws"

    def __init__(
        self,
        store: StateStore,
        region: str = "us-east-1",
        credentials: Optional[CredentialBundle] = None,
        session: Optional[boto3.Session] = None,
        ec2_client: Any = None,
        eks_client: Any = None,
        wait: bool = True,
    ):
        """
        Initialize the provider.

        Args:
            store: Snapshot of previously applied resources
            region: AWS region
            credentials: Optional explicit credentials; the default boto3
                credential chain is used otherwise
            session: Pre-built boto3 session
            ec2_client: Pre-built EC2 client (mainly for tests)
            eks_client: Pre-built EKS client (mainly for tests)
            wait: Block on EKS waiters until clusters and node groups settle
        """
        self._store = store
        self._wait = wait
        if session is None and (ec2_client is None or eks_client is None):
            kwargs: dict[str, Any] = {"region_name": region}
            if credentials and credentials.cloud_access_key_id:
                kwargs["aws_access_key_id"] = credentials.cloud_access_key_id
                kwargs["aws_secret_access_key"] = credentials.cloud_secret_access_key
                kwargs["aws_session_token"] = credentials.cloud_session_token
            session = boto3.Session(**kwargs)
        self._ec2 = ec2_client or session.client("ec2")
        self._eks = eks_client or session.client("eks")

    # -------------------------------------------------------------------------
    # Call wrapper
    # -------------------------------------------------------------------------

    def _call(self, description: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """Invoke a boto3 operation, converting botocore failures to ProviderError."""
        try:
            response = func(**kwargs)
            logger.info(f"AWS API call: {description} - Success")
            return response

        except NoCredentialsError as e:
            logger.error(f"AWS API call: {description} - No credentials")
            raise ProviderError(
                f"{description}: AWS credentials not configured",
                details={"hint": "Set AWS credentials via environment variables or ~/.aws/credentials"},
            ) from e

        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"AWS API call: {description} - ClientError: {error_code}")
            raise ProviderError(
                f"{description}: {error_message}",
                details={"code": error_code},
            ) from e

        except BotoCoreError as e:
            logger.error(f"AWS API call: {description} - BotoCoreError: {e}")
            raise ProviderError(f"{description}: {e}") from e

    def _waiter(self, name: str, /, **kwargs: Any) -> None:
        if not self._wait:
            return
        self._call(f"eks.wait({name})", self._eks.get_waiter(name).wait, **kwargs)

    def _describe(self, description: str, func: Callable[..., Any], **kwargs: Any) -> Optional[Any]:
        """Invoke a describe call, returning None when the resource does not exist."""
        try:
            return func(**kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                return None
            raise ProviderError(
                f"{description}: {e.response.get('Error', {}).get('Message', str(e))}",
                details={"code": e.response.get("Error", {}).get("Code", "Unknown")},
            ) from e
        except BotoCoreError as e:
            raise ProviderError(f"{description}: {e}") from e

    # -------------------------------------------------------------------------
    # Adoption
    #
    # A create that failed after its first call (ingress rules, waiters) leaves
    # a named resource behind. Creating again adopts it instead of failing.
    # -------------------------------------------------------------------------

    def _find_security_group(self, name: str, vpc_id: str) -> Optional[str]:
        response = self._call(
            f"ec2.describe_security_groups({name})",
            self._ec2.describe_security_groups,
            Filters=[
                {"Name": "group-name", "Values": [name]},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ],
        )
        groups = response.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def _authorize_ingress(self, node: ResourceNode, group_id: str, ingress: list[dict[str, Any]]) -> None:
        try:
            self._call(
                f"ec2.authorize_security_group_ingress({node.id})",
                self._ec2.authorize_security_group_ingress,
                GroupId=group_id,
                IpPermissions=[
                    {
                        "IpProtocol": str(rule.get("protocol", "tcp")),
                        "FromPort": int(rule["from_port"]),
                        "ToPort": int(rule.get("to_port", rule["from_port"])),
                        "IpRanges": [{"CidrIp": rule.get("cidr", "0.0.0.0/0")}],
                    }
                    for rule in ingress
                ],
            )
        except ProviderError as e:
            if e.details.get("code") != "InvalidPermission.Duplicate":
                raise
            logger.info(f"Ingress rules for {node.id} already present")

    def _single(self, node: ResourceNode, observed: ObservedState, key: str) -> Any:
        values = self.dependency_output(node, observed, key)
        if not values:
            raise ProviderError(f"{node.id}: no dependency provides '{key}'")
        return values[0]

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(self, node: ResourceNode, observed: ObservedState) -> dict[str, Any]:
        attrs = node.attributes

        if node.type == ResourceType.NETWORK:
            response = self._call(
                f"ec2.create_vpc({node.id})",
                self._ec2.create_vpc,
                CidrBlock=attrs.get("cidr_block", "10.0.0.0/16"),
                TagSpecifications=[{"ResourceType": "vpc", "Tags": _tag_list(node)}],
            )
            return {"vpc_id": response["Vpc"]["VpcId"]}

        if node.type == ResourceType.SUBNET:
            params: dict[str, Any] = {
                "VpcId": self._single(node, observed, "vpc_id"),
                "CidrBlock": attrs["cidr_block"],
                "TagSpecifications": [{"ResourceType": "subnet", "Tags": _tag_list(node)}],
            }
            if attrs.get("availability_zone"):
                params["AvailabilityZone"] = attrs["availability_zone"]
            response = self._call(f"ec2.create_subnet({node.id})", self._ec2.create_subnet, **params)
            return {"subnet_id": response["Subnet"]["SubnetId"]}

        if node.type == ResourceType.SECURITY_GROUP:
            group_name = attrs.get("name", node.id)
            vpc_id = self._single(node, observed, "vpc_id")
            group_id = self._find_security_group(group_name, vpc_id)
            if group_id:
                logger.warning(f"Adopting existing security group {group_id} for {node.id}")
            else:
                response = self._call(
                    f"ec2.create_security_group({node.id})",
                    self._ec2.create_security_group,
                    GroupName=group_name,
                    Description=attrs.get("description", f"Managed by infra-orchestrator: {node.id}"),
                    VpcId=vpc_id,
                    TagSpecifications=[{"ResourceType": "security-group", "Tags": _tag_list(node)}],
                )
                group_id = response["GroupId"]
            ingress = attrs.get("ingress", [])
            if ingress:
                self._authorize_ingress(node, group_id, ingress)
            return {"security_group_id": group_id}

        if node.type == ResourceType.CLUSTER:
            cluster_name = attrs.get("name", node.id)
            existing = self._describe(
                f"eks.describe_cluster({node.id})", self._eks.describe_cluster, name=cluster_name
            )
            if existing is not None:
                logger.warning(f"Adopting existing EKS cluster {cluster_name} for {node.id}")
                cluster = existing["cluster"]
            else:
                params = {
                    "name": cluster_name,
                    "roleArn": attrs["role_arn"],
                    "resourcesVpcConfig": {
                        "subnetIds": self.dependency_output(node, observed, "subnet_id"),
                        "securityGroupIds": self.dependency_output(node, observed, "security_group_id"),
                    },
                    "tags": {str(k): str(v) for k, v in attrs.get("tags", {}).items()},
                }
                if attrs.get("version"):
                    params["version"] = str(attrs["version"])
                cluster = self._call(f"eks.create_cluster({node.id})", self._eks.create_cluster, **params)["cluster"]
            self._waiter("cluster_active", name=cluster_name)
            return {"cluster_name": cluster_name, "cluster_arn": cluster.get("arn")}

        if node.type == ResourceType.NODE_POOL:
            cluster_name = self._single(node, observed, "cluster_name")
            nodegroup_name = attrs.get("name", node.id)
            existing = self._describe(
                f"eks.describe_nodegroup({node.id})",
                self._eks.describe_nodegroup,
                clusterName=cluster_name,
                nodegroupName=nodegroup_name,
            )
            if existing is not None:
                logger.warning(f"Adopting existing node group {nodegroup_name} for {node.id}")
                nodegroup = existing["nodegroup"]
            else:
                nodegroup = self._call(
                    f"eks.create_nodegroup({node.id})",
                    self._eks.create_nodegroup,
                    clusterName=cluster_name,
                    nodegroupName=nodegroup_name,
                    nodeRole=attrs["node_role_arn"],
                    subnets=self.dependency_output(node, observed, "subnet_id"),
                    instanceTypes=list(attrs.get("instance_types", ["t3.medium"])),
                    scalingConfig=self._scaling_config(attrs),
                    diskSize=int(attrs.get("disk_size", 20)),
                )["nodegroup"]
            self._waiter("nodegroup_active", clusterName=cluster_name, nodegroupName=nodegroup_name)
            return {
                "cluster_name": cluster_name,
                "nodegroup_name": nodegroup_name,
                "nodegroup_arn": nodegroup.get("nodegroupArn"),
            }

        raise ProviderError(f"{node.id}: unsupported resource type {node.type.value}")

    @staticmethod
    def _scaling_config(attrs: dict[str, Any]) -> dict[str, int]:
        desired = int(attrs.get("desired_size", 2))
        return {
            "minSize": int(attrs.get("min_size", 1)),
            "maxSize": int(attrs.get("max_size", max(desired, 1))),
            "desiredSize": desired,
        }

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def update(self, node: ResourceNode, current: ObservedResource, observed: ObservedState) -> dict[str, Any]:
        changed = node.changed_fields(current.as_node())
        changed_attrs = {f.split(".", 1)[1] for f in changed if f.startswith("attributes.")}
        not_updatable = [f for f in changed if not f.startswith("attributes.")]
        not_updatable += sorted(changed_attrs - _UPDATABLE[node.type])
        if not_updatable:
            raise ProviderError(
                f"update {node.id}: {', '.join(not_updatable)} cannot change in place (requires replacement)",
                details={"fields": not_updatable},
            )

        outputs = dict(current.outputs)

        if node.type in _EC2_TAG_RESOURCE_TYPES:
            resource_key = {
                ResourceType.NETWORK: "vpc_id",
                ResourceType.SUBNET: "subnet_id",
                ResourceType.SECURITY_GROUP: "security_group_id",
            }[node.type]
            self._call(
                f"ec2.create_tags({node.id})",
                self._ec2.create_tags,
                Resources=[outputs[resource_key]],
                Tags=_tag_list(node),
            )

        elif node.type == ResourceType.CLUSTER:
            self._call(
                f"eks.update_cluster_version({node.id})",
                self._eks.update_cluster_version,
                name=outputs["cluster_name"],
                version=str(node.attributes["version"]),
            )
            self._waiter("cluster_active", name=outputs["cluster_name"])

        elif node.type == ResourceType.NODE_POOL:
            self._call(
                f"eks.update_nodegroup_config({node.id})",
                self._eks.update_nodegroup_config,
                clusterName=outputs["cluster_name"],
                nodegroupName=outputs["nodegroup_name"],
                scalingConfig=self._scaling_config(node.attributes),
            )
            self._waiter(
                "nodegroup_active",
                clusterName=outputs["cluster_name"],
                nodegroupName=outputs["nodegroup_name"],
            )

        return outputs

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, resource: ObservedResource, observed: ObservedState) -> None:
        outputs = resource.outputs

        if resource.type == ResourceType.NETWORK:
            self._call(f"ec2.delete_vpc({resource.id})", self._ec2.delete_vpc, VpcId=outputs["vpc_id"])
        elif resource.type == ResourceType.SUBNET:
            self._call(
                f"ec2.delete_subnet({resource.id})", self._ec2.delete_subnet, SubnetId=outputs["subnet_id"]
            )
        elif resource.type == ResourceType.SECURITY_GROUP:
            self._call(
                f"ec2.delete_security_group({resource.id})",
                self._ec2.delete_security_group,
                GroupId=outputs["security_group_id"],
            )
        elif resource.type == ResourceType.CLUSTER:
            self._call(
                f"eks.delete_cluster({resource.id})", self._eks.delete_cluster, name=outputs["cluster_name"]
            )
            self._waiter("cluster_deleted", name=outputs["cluster_name"])
        elif resource.type == ResourceType.NODE_POOL:
            self._call(
                f"eks.delete_nodegroup({resource.id})",
                self._eks.delete_nodegroup,
                clusterName=outputs["cluster_name"],
                nodegroupName=outputs["nodegroup_name"],
            )
            self._waiter(
                "nodegroup_deleted",
                clusterName=outputs["cluster_name"],
                nodegroupName=outputs["nodegroup_name"],
            )

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def _exists(self, resource: ObservedResource) -> bool:
        outputs = resource.outputs
        describe: dict[ResourceType, tuple[Callable[..., Any], dict[str, Any]]] = {
            ResourceType.NETWORK: (self._ec2.describe_vpcs, {"VpcIds": [outputs.get("vpc_id")]}),
            ResourceType.SUBNET: (self._ec2.describe_subnets, {"SubnetIds": [outputs.get("subnet_id")]}),
            ResourceType.SECURITY_GROUP: (
                self._ec2.describe_security_groups,
                {"GroupIds": [outputs.get("security_group_id")]},
            ),
            ResourceType.CLUSTER: (self._eks.describe_cluster, {"name": outputs.get("cluster_name")}),
            ResourceType.NODE_POOL: (
                self._eks.describe_nodegroup,
                {"clusterName": outputs.get("cluster_name"), "nodegroupName": outputs.get("nodegroup_name")},
            ),
        }
        func, kwargs = describe[resource.type]
        return self._describe(f"refresh {resource.id}", func, **kwargs) is not None

    def current_state(self) -> ObservedState:
        state = self._store.load()
        for resource_id in sorted(state.resources):
            resource = state.resources[resource_id]
            if not self._exists(resource):
                logger.warning(f"Drift: {resource.type.value} {resource_id} no longer exists in AWS")
                state.forget(resource_id)
        return state
