"""
provisio/providers/aws.py

AWS EC2 provider built on boto3. Handles the resource kinds of a single-VM
stack: network (VPC), subnet, internet_gateway, route_table, route,
route_table_association, security_group, key_pair and instance.

boto3 is synchronous, so every call runs in a worker thread via
asyncio.to_thread. Errors are classified as:
  - ProviderTransientError: throttling, service unavailability, timeouts,
    connection failures, DependencyViolation (ENIs that linger after an
    instance terminates).
  - ProviderFatalError: everything else.
Deleting or reading an object that no longer exists is not an error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from provisio.errors import ProviderError, ProviderFatalError, ProviderTransientError
from provisio.providers.base import Provider, ResourceHandler

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "RequestThrottled",
        "InternalError",
        "InternalFailure",
        "ServiceUnavailable",
        "Unavailable",
        "DependencyViolation",
    }
)

TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc).endswith("NotFound")


def classify_error(address: str, operation: str, exc: BaseException) -> ProviderError:
    """Map a boto3/botocore exception onto the provider error taxonomy."""
    if isinstance(exc, ClientError):
        code = error_code(exc)
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in TRANSIENT_ERROR_CODES:
            return ProviderTransientError(address, operation, f"{code}: {message}")
        return ProviderFatalError(address, operation, f"{code}: {message}")
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return ProviderTransientError(address, operation, str(exc))
    return ProviderFatalError(address, operation, f"{type(exc).__name__}: {exc}")


def tag_specifications(resource_type: str, tags: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not tags:
        return []
    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": str(k), "Value": str(v)} for k, v in tags.items()],
        }
    ]


def ip_permissions(rules: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Convert declared ingress/egress blocks into EC2 IpPermissions."""
    permissions = []
    for rule in rules or []:
        protocol = str(rule.get("protocol", "-1"))
        perm: Dict[str, Any] = {
            "IpProtocol": protocol,
            "IpRanges": [{"CidrIp": cidr} for cidr in rule.get("cidr_blocks", [])],
        }
        if protocol != "-1":
            perm["FromPort"] = int(rule.get("from_port", 0))
            perm["ToPort"] = int(rule.get("to_port", 0))
        permissions.append(perm)
    return permissions


class AwsHandler(ResourceHandler):
    """Shared plumbing: threaded calls, error mapping, tag updates."""

    tag_resource_type: str = ""

    def __init__(self, client: Any) -> None:
        self.client = client

    async def call(
        self,
        address: str,
        operation: str,
        method: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self.client, method), **kwargs)
        except Exception as exc:
            raise classify_error(address, operation, exc) from exc

    async def wait(self, address: str, operation: str, waiter: str, **kwargs: Any) -> None:
        try:
            await asyncio.to_thread(self.client.get_waiter(waiter).wait, **kwargs)
        except Exception as exc:
            raise classify_error(address, operation, exc) from exc

    async def call_ignoring_missing(
        self, address: str, operation: str, method: str, **kwargs: Any
    ) -> Optional[Dict[str, Any]]:
        try:
            return await self.call(address, operation, method, **kwargs)
        except ProviderError as exc:
            if exc.__cause__ is not None and is_not_found(exc.__cause__):
                return None
            raise

    async def update_tags(
        self,
        address: str,
        object_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        old = prior.get("tags") or {}
        new = attrs.get("tags") or {}
        removed = [{"Key": k} for k in old if k not in new]
        if removed:
            await self.call(address, "update", "delete_tags", Resources=[object_id], Tags=removed)
        changed = [{"Key": k, "Value": str(v)} for k, v in new.items() if old.get(k) != v]
        if changed:
            await self.call(address, "update", "create_tags", Resources=[object_id], Tags=changed)

    async def update_in_place(
        self,
        address: str,
        object_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        """Apply kind-specific mutable attributes. Tags are handled separately."""

    async def update(
        self,
        address: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> Dict[str, Any]:
        object_id = prior["id"]
        await self.update_in_place(address, object_id, prior, attrs)
        if self.tag_resource_type:
            await self.update_tags(address, object_id, prior, attrs)
        return {"id": object_id}


class NetworkHandler(AwsHandler):
    kind = "network"
    immutable = frozenset({"cidr_block"})
    tag_resource_type = "vpc"

    async def _dns_attributes(
        self,
        address: str,
        operation: str,
        vpc_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        for attr, api_name in (
            ("enable_dns_support", "EnableDnsSupport"),
            ("enable_dns_hostnames", "EnableDnsHostnames"),
        ):
            if attr in attrs and attrs[attr] != prior.get(attr):
                await self.call(
                    address, operation, "modify_vpc_attribute",
                    VpcId=vpc_id, **{api_name: {"Value": bool(attrs[attr])}},
                )

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.call(
            address, "create", "create_vpc",
            CidrBlock=attrs["cidr_block"],
            TagSpecifications=tag_specifications("vpc", attrs.get("tags")),
        )
        vpc_id = resp["Vpc"]["VpcId"]
        await self.wait(address, "create", "vpc_available", VpcIds=[vpc_id])
        await self._dns_attributes(address, "create", vpc_id, {}, attrs)
        return {"id": vpc_id}

    async def update_in_place(
        self,
        address: str,
        object_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        await self._dns_attributes(address, "update", object_id, prior, attrs)

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_vpcs", VpcIds=[attrs["id"]]
        )
        if not resp or not resp.get("Vpcs"):
            return None
        vpc = resp["Vpcs"][0]
        return {"id": vpc["VpcId"], "cidr_block": vpc["CidrBlock"]}

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(address, "delete", "delete_vpc", VpcId=attrs["id"])


class SubnetHandler(AwsHandler):
    kind = "subnet"
    immutable = frozenset({"network_id", "cidr_block", "availability_zone"})
    tag_resource_type = "subnet"

    async def _map_public_ip(
        self,
        address: str,
        operation: str,
        subnet_id: str,
        attrs: Dict[str, Any],
    ) -> None:
        if "map_public_ip_on_launch" in attrs:
            await self.call(
                address, operation, "modify_subnet_attribute",
                SubnetId=subnet_id,
                MapPublicIpOnLaunch={"Value": bool(attrs["map_public_ip_on_launch"])},
            )

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "VpcId": attrs["network_id"],
            "CidrBlock": attrs["cidr_block"],
            "TagSpecifications": tag_specifications("subnet", attrs.get("tags")),
        }
        if attrs.get("availability_zone"):
            kwargs["AvailabilityZone"] = attrs["availability_zone"]
        resp = await self.call(address, "create", "create_subnet", **kwargs)
        subnet = resp["Subnet"]
        await self._map_public_ip(address, "create", subnet["SubnetId"], attrs)
        return {"id": subnet["SubnetId"], "availability_zone": subnet.get("AvailabilityZone")}

    async def update_in_place(
        self,
        address: str,
        object_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        if attrs.get("map_public_ip_on_launch") != prior.get("map_public_ip_on_launch"):
            await self._map_public_ip(address, "update", object_id, attrs)

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_subnets", SubnetIds=[attrs["id"]]
        )
        if not resp or not resp.get("Subnets"):
            return None
        subnet = resp["Subnets"][0]
        return {
            "id": subnet["SubnetId"],
            "cidr_block": subnet["CidrBlock"],
            "availability_zone": subnet["AvailabilityZone"],
        }

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(address, "delete", "delete_subnet", SubnetId=attrs["id"])


class InternetGatewayHandler(AwsHandler):
    kind = "internet_gateway"
    immutable = frozenset({"network_id"})
    tag_resource_type = "internet-gateway"

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.call(
            address, "create", "create_internet_gateway",
            TagSpecifications=tag_specifications("internet-gateway", attrs.get("tags")),
        )
        igw_id = resp["InternetGateway"]["InternetGatewayId"]
        await self.call(
            address, "create", "attach_internet_gateway",
            InternetGatewayId=igw_id, VpcId=attrs["network_id"],
        )
        return {"id": igw_id}

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_internet_gateways", InternetGatewayIds=[attrs["id"]]
        )
        if not resp or not resp.get("InternetGateways"):
            return None
        return {"id": resp["InternetGateways"][0]["InternetGatewayId"]}

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        try:
            await self.call(
                address, "delete", "detach_internet_gateway",
                InternetGatewayId=attrs["id"], VpcId=attrs["network_id"],
            )
        except ProviderFatalError as exc:
            # Already detached or already gone
            if not (exc.__cause__ is not None and (
                is_not_found(exc.__cause__) or error_code(exc.__cause__) == "Gateway.NotAttached"
            )):
                raise
        await self.call_ignoring_missing(
            address, "delete", "delete_internet_gateway", InternetGatewayId=attrs["id"]
        )


class RouteTableHandler(AwsHandler):
    kind = "route_table"
    immutable = frozenset({"network_id"})
    tag_resource_type = "route-table"

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.call(
            address, "create", "create_route_table",
            VpcId=attrs["network_id"],
            TagSpecifications=tag_specifications("route-table", attrs.get("tags")),
        )
        return {"id": resp["RouteTable"]["RouteTableId"]}

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_route_tables", RouteTableIds=[attrs["id"]]
        )
        if not resp or not resp.get("RouteTables"):
            return None
        return {"id": resp["RouteTables"][0]["RouteTableId"]}

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(
            address, "delete", "delete_route_table", RouteTableId=attrs["id"]
        )


class RouteHandler(AwsHandler):
    kind = "route"
    immutable = frozenset({"route_table_id", "destination_cidr_block", "gateway_id"})

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        await self.call(
            address, "create", "create_route",
            RouteTableId=attrs["route_table_id"],
            DestinationCidrBlock=attrs["destination_cidr_block"],
            GatewayId=attrs["gateway_id"],
        )
        return {"id": f"{attrs['route_table_id']}_{attrs['destination_cidr_block']}"}

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_route_tables", RouteTableIds=[attrs["route_table_id"]]
        )
        if not resp or not resp.get("RouteTables"):
            return None
        for route in resp["RouteTables"][0].get("Routes", []):
            if route.get("DestinationCidrBlock") == attrs["destination_cidr_block"]:
                return {"id": attrs["id"], "gateway_id": route.get("GatewayId")}
        return None

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(
            address, "delete", "delete_route",
            RouteTableId=attrs["route_table_id"],
            DestinationCidrBlock=attrs["destination_cidr_block"],
        )


class RouteTableAssociationHandler(AwsHandler):
    kind = "route_table_association"
    immutable = frozenset({"subnet_id", "route_table_id"})

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.call(
            address, "create", "associate_route_table",
            RouteTableId=attrs["route_table_id"], SubnetId=attrs["subnet_id"],
        )
        return {"id": resp["AssociationId"]}

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_route_tables",
            Filters=[{"Name": "association.route-table-association-id", "Values": [attrs["id"]]}],
        )
        if not resp or not resp.get("RouteTables"):
            return None
        return {"id": attrs["id"]}

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(
            address, "delete", "disassociate_route_table", AssociationId=attrs["id"]
        )


class SecurityGroupHandler(AwsHandler):
    kind = "security_group"
    immutable = frozenset({"network_id", "name", "description"})
    tag_resource_type = "security-group"

    async def _set_rules(
        self,
        address: str,
        operation: str,
        group_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        for direction in ("ingress", "egress"):
            old = ip_permissions(prior.get(direction))
            new = ip_permissions(attrs.get(direction))
            if old == new:
                continue
            if old:
                await self.call(
                    address, operation, f"revoke_security_group_{direction}",
                    GroupId=group_id, IpPermissions=old,
                )
            if new:
                await self.call(
                    address, operation, f"authorize_security_group_{direction}",
                    GroupId=group_id, IpPermissions=new,
                )

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.call(
            address, "create", "create_security_group",
            GroupName=attrs.get("name", address.replace(".", "-")),
            Description=attrs.get("description", "managed by provisio"),
            VpcId=attrs["network_id"],
            TagSpecifications=tag_specifications("security-group", attrs.get("tags")),
        )
        group_id = resp["GroupId"]
        # New groups start with an allow-all egress rule
        default_egress = [{"protocol": "-1", "cidr_blocks": ["0.0.0.0/0"]}]
        await self._set_rules(address, "create", group_id, {"egress": default_egress}, attrs)
        return {"id": group_id}

    async def update_in_place(
        self,
        address: str,
        object_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        await self._set_rules(address, "update", object_id, prior, attrs)

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_security_groups", GroupIds=[attrs["id"]]
        )
        if not resp or not resp.get("SecurityGroups"):
            return None
        return {"id": resp["SecurityGroups"][0]["GroupId"]}

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(
            address, "delete", "delete_security_group", GroupId=attrs["id"]
        )


class KeyPairHandler(AwsHandler):
    kind = "key_pair"
    immutable = frozenset({"key_name", "public_key"})
    tag_resource_type = "key-pair"

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.call(
            address, "create", "import_key_pair",
            KeyName=attrs["key_name"],
            PublicKeyMaterial=str(attrs["public_key"]).encode("utf-8"),
            TagSpecifications=tag_specifications("key-pair", attrs.get("tags")),
        )
        return {"id": resp["KeyPairId"], "fingerprint": resp.get("KeyFingerprint")}

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_key_pairs", KeyPairIds=[attrs["id"]]
        )
        if not resp or not resp.get("KeyPairs"):
            return None
        pair = resp["KeyPairs"][0]
        return {"id": pair["KeyPairId"], "fingerprint": pair.get("KeyFingerprint")}

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.call_ignoring_missing(
            address, "delete", "delete_key_pair", KeyPairId=attrs["id"]
        )


class InstanceHandler(AwsHandler):
    kind = "instance"
    immutable = frozenset(
        {"ami", "instance_type", "subnet_id", "key_name", "user_data", "root_block_device"}
    )
    tag_resource_type = "instance"

    @staticmethod
    def _describe_fields(instance: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": instance["InstanceId"],
            "public_ip": instance.get("PublicIpAddress"),
            "private_ip": instance.get("PrivateIpAddress"),
            "public_dns": instance.get("PublicDnsName"),
            "state": instance.get("State", {}).get("Name"),
        }

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "ImageId": attrs["ami"],
            "InstanceType": attrs["instance_type"],
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": tag_specifications("instance", attrs.get("tags")),
        }
        if attrs.get("key_name"):
            kwargs["KeyName"] = attrs["key_name"]
        if attrs.get("subnet_id"):
            kwargs["SubnetId"] = attrs["subnet_id"]
        if attrs.get("security_group_ids"):
            kwargs["SecurityGroupIds"] = list(attrs["security_group_ids"])
        if attrs.get("user_data"):
            kwargs["UserData"] = attrs["user_data"]
        root = attrs.get("root_block_device")
        if root:
            kwargs["BlockDeviceMappings"] = [
                {
                    "DeviceName": root.get("device_name", "/dev/sda1"),
                    "Ebs": {
                        "VolumeSize": int(root.get("volume_size", 8)),
                        "VolumeType": root.get("volume_type", "gp3"),
                        "DeleteOnTermination": True,
                    },
                }
            ]

        resp = await self.call(address, "create", "run_instances", **kwargs)
        instance_id = resp["Instances"][0]["InstanceId"]
        logger.info("%s: waiting for %s to be running", address, instance_id)
        await self.wait(address, "create", "instance_running", InstanceIds=[instance_id])
        described = await self.read(address, {"id": instance_id})
        return described or {"id": instance_id}

    async def update_in_place(
        self,
        address: str,
        object_id: str,
        prior: Dict[str, Any],
        attrs: Dict[str, Any],
    ) -> None:
        groups = attrs.get("security_group_ids")
        if groups and groups != prior.get("security_group_ids"):
            await self.call(
                address, "update", "modify_instance_attribute",
                InstanceId=object_id, Groups=list(groups),
            )

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = await self.call_ignoring_missing(
            address, "read", "describe_instances", InstanceIds=[attrs["id"]]
        )
        if not resp:
            return None
        instances = [i for r in resp.get("Reservations", []) for i in r.get("Instances", [])]
        if not instances or instances[0].get("State", {}).get("Name") == "terminated":
            return None
        return self._describe_fields(instances[0])

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        resp = await self.call_ignoring_missing(
            address, "delete", "terminate_instances", InstanceIds=[attrs["id"]]
        )
        if resp is not None:
            await self.wait(address, "delete", "instance_terminated", InstanceIds=[attrs["id"]])


HANDLER_TYPES = (
    NetworkHandler,
    SubnetHandler,
    InternetGatewayHandler,
    RouteTableHandler,
    RouteHandler,
    RouteTableAssociationHandler,
    SecurityGroupHandler,
    KeyPairHandler,
    InstanceHandler,
)


class AwsProvider(Provider):
    """Provider backed by a boto3 EC2 client."""

    def __init__(self, client: Any) -> None:
        self.client = client
        super().__init__("aws", [cls(client) for cls in HANDLER_TYPES])


def build_aws_provider(options: Dict[str, Any]) -> AwsProvider:
    """Build an AwsProvider from the declaration's provider options (region, profile)."""
    session = boto3.Session(
        profile_name=options.get("profile"),
        region_name=options.get("region"),
    )
    return AwsProvider(session.client("ec2"))
