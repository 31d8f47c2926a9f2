"""Idempotent get-or-create of the EC2 network an instance lands in.

Lookups go by id when the configured value looks like one (``vpc-...``,
``subnet-...``), otherwise by ``Name`` tag. Creation is the fallback when
nothing matches. Nothing is rolled back on failure; ``converge`` reports
what it created so the user can clean up.
"""

import re
import time
from dataclasses import dataclass, field

from botocore.exceptions import ClientError

from .cidr import DEFAULT_VPC_CIDR, allocate_new_cidr_block, ipv6_subnet_block
from .config import ProviderConfig
from .errors import (
    NotFoundError,
    OpsError,
    PartialCreateError,
    SecurityGroupNotFoundError,
    VpcMismatchError,
)
from .firewall import ANY_IPV4, ANY_IPV6, build_ingress_rules
from .tags import build_tags, tag_specifications, tag_value
from .utils import log

VPC_ID_RE = re.compile(r"^vpc-.+")
SUBNET_ID_RE = re.compile(r"^subnet-.+")
SG_ID_RE = re.compile(r"^sg-.+")
AZ_RE = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+[a-z]$")

OPS_CREATED_TAG = {"Key": "ops-created", "Value": "true"}


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def aws_call(client, method: str, what: str, **kwargs) -> dict:
    """Call a boto3 client method, naming the failing resource on error."""
    try:
        return getattr(client, method)(**kwargs)
    except ClientError as e:
        raise OpsError(f"{what}: {e}") from e


def sg_description(instance_name: str) -> str:
    return f"security group for {instance_name}"


@dataclass
class NetworkIds:
    vpc_id: str
    subnet_id: str
    security_group_id: str


@dataclass
class NetworkConverger:
    """Converge VPC, subnet and security group for one instance.

    :param ec2: boto3 EC2 client
    :param cloud: Provider settings naming the VPC, subnet and group
    """

    ec2: object
    cloud: ProviderConfig
    created: list[str] = field(default_factory=list)

    def _call(self, what: str, method: str, **kwargs) -> dict:
        return aws_call(self.ec2, method, what, **kwargs)

    # VPC

    def get_vpc(self, name: str = "") -> dict | None:
        """Find a VPC by id, by Name tag, or the account default.

        With no name, prefer the VPC marked IsDefault, else the first one.
        """
        try:
            if name and VPC_ID_RE.match(name):
                vpcs = self.ec2.describe_vpcs(VpcIds=[name])["Vpcs"]
            elif name:
                vpcs = self.ec2.describe_vpcs(
                    Filters=[{"Name": "tag:Name", "Values": [name]}]
                )["Vpcs"]
            else:
                vpcs = self.ec2.describe_vpcs()["Vpcs"]
        except ClientError as e:
            if error_code(e) == "InvalidVpcID.NotFound":
                return None
            raise OpsError(f"describe vpc '{name}': {e}") from e

        if not vpcs:
            return None
        if name:
            return vpcs[0]
        return next((v for v in vpcs if v.get("IsDefault")), vpcs[0])

    def create_vpc(self, name: str) -> dict:
        """Create a tagged VPC on a free CIDR block with internet access."""
        existing = self._call("list vpcs", "describe_vpcs")["Vpcs"]
        blocks = [v["CidrBlock"] for v in existing if v.get("CidrBlock")]
        cidr = allocate_new_cidr_block(blocks) or DEFAULT_VPC_CIDR

        tags, _ = build_tags([], name)
        params = {"CidrBlock": cidr, "TagSpecifications": tag_specifications("vpc", tags)}
        if self.cloud.enable_ipv6:
            params["AmazonProvidedIpv6CidrBlock"] = True
        vpc_id = self._call(f"create vpc '{name}'", "create_vpc", **params)["Vpc"]["VpcId"]
        self.created.append(f"vpc {vpc_id}")
        log(f"Created VPC: '{name}' ({vpc_id}, {cidr})")

        self._ensure_internet_access(vpc_id, name)
        return self._call(f"describe vpc '{vpc_id}'", "describe_vpcs", VpcIds=[vpc_id])["Vpcs"][0]

    def _ensure_internet_access(self, vpc_id: str, name: str) -> None:
        route_tables = self._call(
            f"list route tables of '{vpc_id}'",
            "describe_route_tables",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )["RouteTables"]
        if not route_tables:
            raise OpsError(f"vpc '{vpc_id}' has no route table")
        rt_id = route_tables[0]["RouteTableId"]

        igws = self._call(
            f"list internet gateways of '{vpc_id}'",
            "describe_internet_gateways",
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}],
        )["InternetGateways"]
        if igws:
            igw_id = igws[0]["InternetGatewayId"]
        else:
            tags, _ = build_tags([], name)
            igw_id = self._call(
                "create internet gateway",
                "create_internet_gateway",
                TagSpecifications=tag_specifications("internet-gateway", tags),
            )["InternetGateway"]["InternetGatewayId"]
            self.created.append(f"internet gateway {igw_id}")
            self._call(
                f"attach internet gateway '{igw_id}'",
                "attach_internet_gateway",
                InternetGatewayId=igw_id,
                VpcId=vpc_id,
            )
            log(f"Created and attached internet gateway: {igw_id}")

        if self.cloud.enable_ipv6:
            self._add_route(rt_id, igw_id, DestinationIpv6CidrBlock=ANY_IPV6)
        self._add_route(rt_id, igw_id, DestinationCidrBlock=ANY_IPV4)

    def _add_route(self, rt_id: str, igw_id: str, **destination) -> None:
        try:
            self.ec2.create_route(RouteTableId=rt_id, GatewayId=igw_id, **destination)
        except ClientError as e:
            if error_code(e) == "RouteAlreadyExists":
                return
            raise OpsError(f"create route in '{rt_id}': {e}") from e
        log(f"Added route: {next(iter(destination.values()))} → {igw_id}")

    def get_or_create_vpc(self, name: str, default_name: str) -> dict:
        vpc = self.get_vpc(name)
        if vpc:
            log(f"Using VPC: '{vpc['VpcId']}'")
            return vpc
        if VPC_ID_RE.match(name):
            raise NotFoundError(f"vpc '{name}' not found")
        return self.create_vpc(name or default_name)

    # Subnet

    def get_subnet(self, vpc_id: str, name: str = "") -> dict | None:
        """Find a subnet inside vpc_id by id, by Name tag, or the AZ default."""
        filters = [{"Name": "vpc-id", "Values": [vpc_id]}]
        kwargs: dict = {"Filters": filters}
        if name and SUBNET_ID_RE.match(name):
            kwargs["SubnetIds"] = [name]
        elif name:
            filters.append({"Name": "tag:Name", "Values": [name]})

        try:
            subnets = self.ec2.describe_subnets(**kwargs)["Subnets"]
        except ClientError as e:
            if error_code(e) == "InvalidSubnetID.NotFound":
                return None
            raise OpsError(f"describe subnet '{name}': {e}") from e

        if not subnets:
            return None
        if name:
            return subnets[0]
        return next((s for s in subnets if s.get("DefaultForAz")), subnets[0])

    def create_subnet(self, vpc: dict, name: str) -> dict:
        """Create a subnet spanning the VPC's CIDR (and a /64 of its IPv6 block)."""
        tags, _ = build_tags([], name)
        params = {
            "VpcId": vpc["VpcId"],
            "CidrBlock": vpc["CidrBlock"],
            "TagSpecifications": tag_specifications("subnet", tags),
        }
        if AZ_RE.match(self.cloud.zone):
            params["AvailabilityZone"] = self.cloud.zone
        associations = vpc.get("Ipv6CidrBlockAssociationSet") or []
        if associations:
            params["Ipv6CidrBlock"] = ipv6_subnet_block(associations[0]["Ipv6CidrBlock"])

        subnet = self._call(f"create subnet '{name}'", "create_subnet", **params)["Subnet"]
        self.created.append(f"subnet {subnet['SubnetId']}")
        log(f"Created subnet: '{name}' ({subnet['SubnetId']})")
        return subnet

    def get_or_create_subnet(self, vpc: dict, name: str) -> dict:
        subnet = self.get_subnet(vpc["VpcId"], name)
        if subnet:
            return subnet
        if SUBNET_ID_RE.match(name):
            raise NotFoundError(f"subnet '{name}' not found in vpc '{vpc['VpcId']}'")
        return self.create_subnet(vpc, name or tag_value(vpc, "Name", vpc["VpcId"]))

    # Security group

    def get_security_group(self, name: str, vpc_id: str) -> dict:
        """Look a group up by name, then by id, and check its VPC.

        :raises SecurityGroupNotFoundError: If neither lookup matches
        :raises VpcMismatchError: If the group belongs to another VPC
        """
        groups = self._call(
            f"describe security group '{name}'",
            "describe_security_groups",
            Filters=[{"Name": "group-name", "Values": [name]}],
        )["SecurityGroups"]
        if not groups and SG_ID_RE.match(name):
            try:
                groups = self.ec2.describe_security_groups(GroupIds=[name])["SecurityGroups"]
            except ClientError as e:
                if error_code(e) not in ("InvalidGroup.NotFound", "InvalidGroupId.Malformed"):
                    raise OpsError(f"describe security group '{name}': {e}") from e
                groups = []

        if not groups:
            raise SecurityGroupNotFoundError(name)
        match = next((g for g in groups if g.get("VpcId") == vpc_id), None)
        if match is None:
            raise VpcMismatchError(name, vpc_id, groups[0].get("VpcId", ""))
        return match

    def create_security_group(
        self,
        instance_name: str,
        vpc_id: str,
        tcp_ports: list[str] | None = None,
        udp_ports: list[str] | None = None,
    ) -> dict:
        """Create a per-instance group and open the given ports.

        :param instance_name: Instance the group is for
        :param vpc_id: VPC to create the group in
        :param tcp_ports: TCP port or range strings
        :param udp_ports: UDP port or range strings
        :return: The created group's description
        :raises PortSpecError: Before any API call, on a malformed port
        """
        rules = build_ingress_rules(tcp_ports, udp_ports, self.cloud.enable_ipv6)

        group_name = f"{instance_name}-{time.time_ns()}"
        tags, _ = build_tags([OPS_CREATED_TAG], group_name)
        try:
            group_id = self.ec2.create_security_group(
                GroupName=group_name,
                Description=sg_description(instance_name),
                VpcId=vpc_id,
                TagSpecifications=tag_specifications("security-group", tags),
            )["GroupId"]
        except ClientError as e:
            code = error_code(e)
            if code == "InvalidVpcID.NotFound":
                raise NotFoundError(
                    f"vpc '{vpc_id}' not found creating security group '{group_name}'"
                ) from e
            if code == "InvalidGroup.Duplicate":
                raise OpsError(f"security group '{group_name}' already exists") from e
            raise OpsError(f"create security group '{group_name}': {e}") from e
        self.created.append(f"security group {group_id}")
        log(f"Created security group: '{group_name}'")

        if rules:
            self._call(
                f"authorize ingress on '{group_name}'",
                "authorize_security_group_ingress",
                GroupId=group_id,
                IpPermissions=rules,
            )

        return self._call(
            f"describe security group '{group_id}'",
            "describe_security_groups",
            GroupIds=[group_id],
        )["SecurityGroups"][0]

    def get_or_create_security_group(
        self,
        name: str,
        instance_name: str,
        vpc_id: str,
        tcp_ports: list[str] | None = None,
        udp_ports: list[str] | None = None,
    ) -> dict:
        if name:
            group = self.get_security_group(name, vpc_id)
            log(f"Using existing security group: '{name}'")
            return group
        return self.create_security_group(instance_name, vpc_id, tcp_ports, udp_ports)

    def find_instance_security_group(self, instance_name: str) -> dict | None:
        """Find the group created for an instance, if any."""
        groups = self._call(
            f"find security group for '{instance_name}'",
            "describe_security_groups",
            Filters=[
                {"Name": f"tag:{OPS_CREATED_TAG['Key']}", "Values": [OPS_CREATED_TAG["Value"]]},
                {"Name": "description", "Values": [sg_description(instance_name)]},
            ],
        )["SecurityGroups"]
        return groups[0] if groups else None

    def delete_security_group(self, group_id: str) -> None:
        self._call(
            f"delete security group '{group_id}'", "delete_security_group", GroupId=group_id
        )
        log(f"Deleted security group: '{group_id}'")

    def converge(
        self,
        instance_name: str,
        tcp_ports: list[str] | None = None,
        udp_ports: list[str] | None = None,
    ) -> NetworkIds:
        """Get or create VPC, security group and subnet, in that order.

        :raises PartialCreateError: If a step fails after something was created
        """
        build_ingress_rules(tcp_ports, udp_ports, self.cloud.enable_ipv6)
        self.created = []
        try:
            vpc = self.get_or_create_vpc(self.cloud.vpc, instance_name)
            group = self.get_or_create_security_group(
                self.cloud.security_group,
                instance_name,
                vpc["VpcId"],
                tcp_ports,
                udp_ports,
            )
            subnet = self.get_or_create_subnet(vpc, self.cloud.subnet)
        except OpsError as e:
            if self.created and not isinstance(e, PartialCreateError):
                raise PartialCreateError(str(e), self.created) from e
            raise
        return NetworkIds(vpc["VpcId"], subnet["SubnetId"], group["GroupId"])
