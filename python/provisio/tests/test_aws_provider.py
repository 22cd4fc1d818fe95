"""Tests for the boto3-backed provider, with a mocked EC2 client."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from provisio.engine.executor import Executor
from provisio.engine.planner import build_plan
from provisio.engine.renderer import resolve_outputs
from provisio.errors import ProviderFatalError, ProviderTransientError
from provisio.providers import ProviderName, get_provider
from provisio.providers.aws import (
    AwsProvider,
    InstanceHandler,
    NetworkHandler,
    SecurityGroupHandler,
    build_aws_provider,
    classify_error,
    ip_permissions,
)
from provisio.models.resource import ProviderDecl
from provisio.models.state import State


def _client_error(code, operation="CreateVpc"):
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)


class TestClassifyError:
    @pytest.mark.parametrize(
        "code", ["RequestLimitExceeded", "Throttling", "ServiceUnavailable", "DependencyViolation"]
    )
    def test_transient_codes(self, code):
        err = classify_error("network.n", "create", _client_error(code))
        assert isinstance(err, ProviderTransientError)
        assert code in err.provider_message

    def test_other_client_errors_are_fatal(self):
        err = classify_error("network.n", "create", _client_error("InvalidParameterValue"))
        assert isinstance(err, ProviderFatalError)
        assert err.address == "network.n"
        assert err.operation == "create"

    def test_connection_errors_are_transient(self):
        err = classify_error(
            "network.n", "read", EndpointConnectionError(endpoint_url="https://ec2.example")
        )
        assert isinstance(err, ProviderTransientError)


class TestHandlers:
    @pytest.mark.asyncio
    async def test_network_create_sets_dns_attributes(self):
        client = MagicMock()
        client.create_vpc.return_value = {"Vpc": {"VpcId": "vpc-1"}}
        handler = NetworkHandler(client)

        assigned = await handler.create(
            "network.main",
            {"cidr_block": "10.123.0.0/16", "enable_dns_hostnames": True, "tags": {"Name": "dev"}},
        )

        assert assigned == {"id": "vpc-1"}
        kwargs = client.create_vpc.call_args.kwargs
        assert kwargs["CidrBlock"] == "10.123.0.0/16"
        assert kwargs["TagSpecifications"][0]["Tags"] == [{"Key": "Name", "Value": "dev"}]
        client.modify_vpc_attribute.assert_called_once_with(
            VpcId="vpc-1", EnableDnsHostnames={"Value": True}
        )

    @pytest.mark.asyncio
    async def test_create_maps_throttling_to_transient(self):
        client = MagicMock()
        client.create_vpc.side_effect = _client_error("RequestLimitExceeded")

        with pytest.raises(ProviderTransientError):
            await NetworkHandler(client).create("network.main", {"cidr_block": "10.0.0.0/16"})

    @pytest.mark.asyncio
    async def test_delete_of_missing_object_succeeds(self):
        client = MagicMock()
        client.delete_vpc.side_effect = _client_error("InvalidVpcID.NotFound", "DeleteVpc")

        await NetworkHandler(client).delete("network.main", {"id": "vpc-1"})

    @pytest.mark.asyncio
    async def test_read_of_missing_object_returns_none(self):
        client = MagicMock()
        client.describe_vpcs.side_effect = _client_error("InvalidVpcID.NotFound", "DescribeVpcs")

        assert await NetworkHandler(client).read("network.main", {"id": "vpc-1"}) is None

    @pytest.mark.asyncio
    async def test_instance_create_waits_and_reports_addresses(self):
        client = MagicMock()
        client.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        client.describe_instances.return_value = {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-1",
                            "PublicIpAddress": "198.51.100.4",
                            "PrivateIpAddress": "10.123.1.5",
                            "PublicDnsName": "ec2-198-51-100-4.example",
                            "State": {"Name": "running"},
                        }
                    ]
                }
            ]
        }

        assigned = await InstanceHandler(client).create(
            "instance.dev_node",
            {
                "ami": "ami-1",
                "instance_type": "t2.micro",
                "subnet_id": "subnet-1",
                "security_group_ids": ["sg-1"],
                "key_name": "devkey",
                "user_data": "#!/bin/bash\n",
                "root_block_device": {"volume_size": 10},
            },
        )

        assert assigned["public_ip"] == "198.51.100.4"
        assert assigned["state"] == "running"
        client.get_waiter.assert_called_with("instance_running")
        kwargs = client.run_instances.call_args.kwargs
        assert kwargs["SecurityGroupIds"] == ["sg-1"]
        assert kwargs["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 10

    @pytest.mark.asyncio
    async def test_security_group_update_replaces_changed_rules(self):
        client = MagicMock()
        old = [{"protocol": "tcp", "from_port": 22, "to_port": 22, "cidr_blocks": ["203.0.113.7/32"]}]
        new = [{"protocol": "tcp", "from_port": 22, "to_port": 22, "cidr_blocks": ["198.51.100.9/32"]}]
        egress = [{"protocol": "-1", "cidr_blocks": ["0.0.0.0/0"]}]

        await SecurityGroupHandler(client).update(
            "security_group.dev",
            {"id": "sg-1", "ingress": old, "egress": egress},
            {"ingress": new, "egress": egress},
        )

        client.revoke_security_group_ingress.assert_called_once_with(
            GroupId="sg-1", IpPermissions=ip_permissions(old)
        )
        client.authorize_security_group_ingress.assert_called_once_with(
            GroupId="sg-1", IpPermissions=ip_permissions(new)
        )
        client.revoke_security_group_egress.assert_not_called()


TAGGED_INSTANCE_YAML = """
resources:
  - kind: instance
    name: i
    attributes:
      ami: ami-1
      instance_type: t3.micro
      tags: {Name: a}
outputs:
  ip: "${instance.i.public_ip}"
"""


class TestApplyThroughAws:
    @pytest.mark.asyncio
    async def test_tag_update_keeps_assigned_addresses(self, load, storage, settings):
        client = MagicMock()
        client.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        client.describe_instances.return_value = {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-1",
                            "PublicIpAddress": "198.51.100.4",
                            "State": {"Name": "running"},
                        }
                    ]
                }
            ]
        }
        provider = AwsProvider(client)
        executor = Executor(provider, storage, settings)
        state = State()
        decls = load(TAGGED_INSTANCE_YAML)
        await executor.apply(build_plan(decls, state, provider), state, decls)

        retagged = load(TAGGED_INSTANCE_YAML.replace("{Name: a}", "{Name: b}"))
        plan = build_plan(retagged, state, provider)
        assert plan.keys() == ["update:instance.i"]
        await executor.apply(plan, state, retagged)

        instance = state.resources["instance.i"]
        assert instance.attributes["id"] == "i-1"
        assert instance.attributes["public_ip"] == "198.51.100.4"
        assert instance.attributes["tags"] == {"Name": "b"}
        assert resolve_outputs(retagged, state)["ip"].value == "198.51.100.4"
        client.create_tags.assert_called_once_with(
            Resources=["i-1"], Tags=[{"Key": "Name", "Value": "b"}]
        )
        client.run_instances.assert_called_once()
        assert build_plan(retagged, state, provider).is_empty()


class TestProviderFactory:
    def test_build_uses_region_and_profile(self):
        with patch("provisio.providers.aws.boto3.Session") as session_cls:
            provider = build_aws_provider({"region": "us-west-2", "profile": "dev"})

        session_cls.assert_called_once_with(profile_name="dev", region_name="us-west-2")
        session_cls.return_value.client.assert_called_once_with("ec2")
        assert isinstance(provider, AwsProvider)
        assert provider.supports("route_table_association")

    def test_get_provider_dispatch(self):
        assert get_provider(None).name == ProviderName.memory.value
        assert get_provider(ProviderDecl(name="memory")).name == "memory"
        with pytest.raises(ValueError):
            get_provider(ProviderDecl(name="gcp"))
