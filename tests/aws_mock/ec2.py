"""In-memory EC2 networking client.

Models the dependency rules the deletion order exists for: a VPC cannot be
deleted while it has subnets, route tables, security groups or an attached
internet gateway; a subnet cannot be deleted while a NAT gateway lives in
it; a security group cannot be deleted while another group references it;
an elastic IP cannot be released while associated.

NAT gateways and VPC endpoints delete asynchronously: they report
"deleting" for a configurable number of describe calls before "deleted".
Once a NAT gateway is deleted its addresses disappear from its record and
its elastic IP loses the association, as on AWS.
"""

from __future__ import annotations

import copy
import itertools
from typing import Any

from .base import MockClientBase, aws_tags, client_error, matches_filters

_ids = itertools.count(1)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{next(_ids):08x}"


class MockEC2Client(MockClientBase):
    """Subset of the boto3 EC2 client used by the engine."""

    def __init__(
        self,
        nat_deletion_polls: int = 1,
        endpoint_deletion_polls: int = 1,
        journal: list[str] | None = None,
    ) -> None:
        super().__init__(journal)
        self.nat_deletion_polls = nat_deletion_polls
        self.endpoint_deletion_polls = endpoint_deletion_polls

        self.vpcs: dict[str, dict[str, Any]] = {}
        self.subnets: dict[str, dict[str, Any]] = {}
        self.internet_gateways: dict[str, dict[str, Any]] = {}
        self.nat_gateways: dict[str, dict[str, Any]] = {}
        self.addresses: dict[str, dict[str, Any]] = {}
        self.route_tables: dict[str, dict[str, Any]] = {}
        self.security_groups: dict[str, dict[str, Any]] = {}
        self.vpc_endpoints: dict[str, dict[str, Any]] = {}

        self._deleting_polls: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Seeding helpers
    # -------------------------------------------------------------------------

    def add_vpc(self, cidr: str = "10.10.0.0/16", tags: dict[str, str] | None = None) -> str:
        vpc_id = _new_id("vpc")
        self.vpcs[vpc_id] = {
            "VpcId": vpc_id,
            "CidrBlock": cidr,
            "State": "available",
            "Tags": aws_tags(tags or {}),
        }
        # Every VPC comes with a main route table and a default security group
        self.add_route_table(vpc_id, main=True)
        self.add_security_group(vpc_id, "default")
        return vpc_id

    def add_subnet(
        self,
        vpc_id: str,
        zone: str = "us-west-2a",
        public: bool = False,
        tags: dict[str, str] | None = None,
    ) -> str:
        subnet_id = _new_id("subnet")
        all_tags = dict(tags or {})
        if public:
            all_tags["kubernetes.io/role/public-elb"] = "1"
        self.subnets[subnet_id] = {
            "SubnetId": subnet_id,
            "VpcId": vpc_id,
            "AvailabilityZone": zone,
            "Tags": aws_tags(all_tags),
        }
        return subnet_id

    def add_internet_gateway(self, vpc_id: str | None, tags: dict[str, str] | None = None) -> str:
        igw_id = _new_id("igw")
        attachments = [{"VpcId": vpc_id, "State": "available"}] if vpc_id else []
        self.internet_gateways[igw_id] = {
            "InternetGatewayId": igw_id,
            "Attachments": attachments,
            "Tags": aws_tags(tags or {}),
        }
        return igw_id

    def add_address(
        self, tags: dict[str, str] | None = None, association_id: str | None = None
    ) -> str:
        allocation_id = _new_id("eipalloc")
        address: dict[str, Any] = {
            "AllocationId": allocation_id,
            "PublicIp": f"203.0.113.{len(self.addresses) + 1}",
            "Domain": "vpc",
            "Tags": aws_tags(tags or {}),
        }
        if association_id:
            address["AssociationId"] = association_id
        self.addresses[allocation_id] = address
        return allocation_id

    def add_nat_gateway(
        self,
        vpc_id: str,
        subnet_id: str,
        allocation_id: str | None = None,
        state: str = "available",
        tags: dict[str, str] | None = None,
    ) -> str:
        nat_id = _new_id("nat")
        nat: dict[str, Any] = {
            "NatGatewayId": nat_id,
            "VpcId": vpc_id,
            "SubnetId": subnet_id,
            "State": state,
            "NatGatewayAddresses": [],
            "Tags": aws_tags(tags or {}),
        }
        if allocation_id:
            association_id = _new_id("eipassoc")
            self.addresses[allocation_id]["AssociationId"] = association_id
            nat["NatGatewayAddresses"].append(
                {"AllocationId": allocation_id, "AssociationId": association_id}
            )
        self.nat_gateways[nat_id] = nat
        return nat_id

    def add_route_table(
        self,
        vpc_id: str,
        main: bool = False,
        subnet_ids: list[str] | None = None,
        tags: dict[str, str] | None = None,
    ) -> str:
        rt_id = _new_id("rtb")
        associations: list[dict[str, Any]] = []
        if main:
            associations.append(
                {"RouteTableAssociationId": _new_id("rtbassoc"), "Main": True}
            )
        for subnet_id in subnet_ids or []:
            associations.append(
                {
                    "RouteTableAssociationId": _new_id("rtbassoc"),
                    "Main": False,
                    "SubnetId": subnet_id,
                }
            )
        self.route_tables[rt_id] = {
            "RouteTableId": rt_id,
            "VpcId": vpc_id,
            "Associations": associations,
            "Tags": aws_tags(tags or {}),
        }
        return rt_id

    def add_security_group(
        self,
        vpc_id: str,
        name: str,
        tags: dict[str, str] | None = None,
        ingress_from: list[str] | None = None,
    ) -> str:
        """Add a group; ingress_from lists group ids allowed in on port 443."""
        group_id = _new_id("sg")
        permissions = [
            {
                "IpProtocol": "tcp",
                "FromPort": 443,
                "ToPort": 443,
                "UserIdGroupPairs": [{"GroupId": g, "UserId": "123456789012"} for g in ingress_from],
            }
        ] if ingress_from else []
        self.security_groups[group_id] = {
            "GroupId": group_id,
            "GroupName": name,
            "VpcId": vpc_id,
            "Tags": aws_tags(tags or {}),
            "IpPermissions": permissions,
        }
        return group_id

    def add_vpc_endpoint(self, vpc_id: str, state: str = "available") -> str:
        endpoint_id = _new_id("vpce")
        self.vpc_endpoints[endpoint_id] = {
            "VpcEndpointId": endpoint_id,
            "VpcId": vpc_id,
            "State": state,
        }
        return endpoint_id

    # -------------------------------------------------------------------------
    # VPCs
    # -------------------------------------------------------------------------

    def describe_vpcs(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_vpcs", kwargs)
        vpcs = [
            copy.deepcopy(v)
            for v in self.vpcs.values()
            if matches_filters(v, kwargs.get("Filters"), {"vpc-id": v["VpcId"]})
        ]
        return {"Vpcs": vpcs}

    def delete_vpc(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_vpc", kwargs)
        vpc_id = kwargs["VpcId"]
        if vpc_id not in self.vpcs:
            raise client_error("InvalidVpcID.NotFound", "DeleteVpc")
        blockers = (
            [s for s in self.subnets.values() if s["VpcId"] == vpc_id]
            + [
                g
                for g in self.security_groups.values()
                if g["VpcId"] == vpc_id and g["GroupName"] != "default"
            ]
            + [
                rt
                for rt in self.route_tables.values()
                if rt["VpcId"] == vpc_id and not _is_main(rt)
            ]
            + [
                igw
                for igw in self.internet_gateways.values()
                if any(a["VpcId"] == vpc_id for a in igw["Attachments"])
            ]
        )
        if blockers:
            raise client_error("DependencyViolation", "DeleteVpc", f"vpc {vpc_id} has dependencies")
        del self.vpcs[vpc_id]
        for table_id in [rt for rt, v in self.route_tables.items() if v["VpcId"] == vpc_id]:
            del self.route_tables[table_id]
        for group_id in [g for g, v in self.security_groups.items() if v["VpcId"] == vpc_id]:
            del self.security_groups[group_id]
        return {}

    # -------------------------------------------------------------------------
    # Subnets
    # -------------------------------------------------------------------------

    def describe_subnets(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_subnets", kwargs)
        subnets = [
            copy.deepcopy(s)
            for s in self.subnets.values()
            if matches_filters(s, kwargs.get("Filters"), {"vpc-id": s["VpcId"]})
        ]
        return {"Subnets": subnets}

    def delete_subnet(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_subnet", kwargs)
        subnet_id = kwargs["SubnetId"]
        if subnet_id not in self.subnets:
            raise client_error("InvalidSubnetID.NotFound", "DeleteSubnet")
        if any(
            n["SubnetId"] == subnet_id and n["State"] != "deleted"
            for n in self.nat_gateways.values()
        ):
            raise client_error("DependencyViolation", "DeleteSubnet", "NAT gateway in subnet")
        del self.subnets[subnet_id]
        return {}

    # -------------------------------------------------------------------------
    # Internet gateways
    # -------------------------------------------------------------------------

    def describe_internet_gateways(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_internet_gateways", kwargs)
        gateways = [
            copy.deepcopy(g)
            for g in self.internet_gateways.values()
            if matches_filters(
                g,
                kwargs.get("Filters"),
                {"attachment.vpc-id": [a["VpcId"] for a in g["Attachments"]]},
            )
        ]
        return {"InternetGateways": gateways}

    def detach_internet_gateway(self, **kwargs: Any) -> dict[str, Any]:
        self._record("detach_internet_gateway", kwargs)
        igw = self.internet_gateways.get(kwargs["InternetGatewayId"])
        if igw is None:
            raise client_error("InvalidInternetGatewayID.NotFound", "DetachInternetGateway")
        before = len(igw["Attachments"])
        igw["Attachments"] = [a for a in igw["Attachments"] if a["VpcId"] != kwargs["VpcId"]]
        if len(igw["Attachments"]) == before:
            raise client_error("Gateway.NotAttached", "DetachInternetGateway")
        return {}

    def delete_internet_gateway(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_internet_gateway", kwargs)
        igw_id = kwargs["InternetGatewayId"]
        igw = self.internet_gateways.get(igw_id)
        if igw is None:
            raise client_error("InvalidInternetGatewayID.NotFound", "DeleteInternetGateway")
        if igw["Attachments"]:
            raise client_error("DependencyViolation", "DeleteInternetGateway", "still attached")
        del self.internet_gateways[igw_id]
        return {}

    # -------------------------------------------------------------------------
    # NAT gateways and elastic IPs
    # -------------------------------------------------------------------------

    def describe_nat_gateways(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_nat_gateways", kwargs)
        self._advance_nat_deletions()
        gateways = [
            copy.deepcopy(n)
            for n in self.nat_gateways.values()
            if matches_filters(
                n, kwargs.get("Filters"), {"vpc-id": n["VpcId"], "state": n["State"]}
            )
        ]
        return {"NatGateways": gateways}

    def delete_nat_gateway(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_nat_gateway", kwargs)
        nat_id = kwargs["NatGatewayId"]
        nat = self.nat_gateways.get(nat_id)
        if nat is None or nat["State"] == "deleted":
            raise client_error("NatGatewayNotFound", "DeleteNatGateway")
        nat["State"] = "deleting"
        self._deleting_polls[nat_id] = 0
        return {"NatGatewayId": nat_id}

    def _advance_nat_deletions(self) -> None:
        for nat_id, nat in self.nat_gateways.items():
            if nat["State"] != "deleting":
                continue
            polls = self._deleting_polls.get(nat_id, 0)
            if polls >= self.nat_deletion_polls:
                nat["State"] = "deleted"
                for mapping in nat["NatGatewayAddresses"]:
                    address = self.addresses.get(mapping["AllocationId"])
                    if address is not None:
                        address.pop("AssociationId", None)
                # Deleted gateways no longer report their address linkage
                nat["NatGatewayAddresses"] = []
            else:
                self._deleting_polls[nat_id] = polls + 1

    def describe_addresses(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_addresses", kwargs)
        addresses = [
            copy.deepcopy(a)
            for a in self.addresses.values()
            if matches_filters(a, kwargs.get("Filters"), {"domain": a["Domain"]})
            and (
                "AllocationIds" not in kwargs or a["AllocationId"] in kwargs["AllocationIds"]
            )
        ]
        return {"Addresses": addresses}

    def release_address(self, **kwargs: Any) -> dict[str, Any]:
        self._record("release_address", kwargs)
        allocation_id = kwargs["AllocationId"]
        address = self.addresses.get(allocation_id)
        if address is None:
            raise client_error("InvalidAllocationID.NotFound", "ReleaseAddress")
        if address.get("AssociationId"):
            raise client_error("InvalidIPAddress.InUse", "ReleaseAddress")
        del self.addresses[allocation_id]
        return {}

    # -------------------------------------------------------------------------
    # Route tables
    # -------------------------------------------------------------------------

    def describe_route_tables(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_route_tables", kwargs)
        tables = [
            copy.deepcopy(rt)
            for rt in self.route_tables.values()
            if matches_filters(rt, kwargs.get("Filters"), {"vpc-id": rt["VpcId"]})
        ]
        return {"RouteTables": tables}

    def disassociate_route_table(self, **kwargs: Any) -> dict[str, Any]:
        self._record("disassociate_route_table", kwargs)
        association_id = kwargs["AssociationId"]
        for table in self.route_tables.values():
            for association in table["Associations"]:
                if association["RouteTableAssociationId"] == association_id:
                    table["Associations"].remove(association)
                    return {}
        raise client_error("InvalidAssociationID.NotFound", "DisassociateRouteTable")

    def delete_route_table(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_route_table", kwargs)
        table_id = kwargs["RouteTableId"]
        table = self.route_tables.get(table_id)
        if table is None:
            raise client_error("InvalidRouteTableID.NotFound", "DeleteRouteTable")
        if table["Associations"]:
            raise client_error("DependencyViolation", "DeleteRouteTable", "still associated")
        del self.route_tables[table_id]
        return {}

    # -------------------------------------------------------------------------
    # Security groups
    # -------------------------------------------------------------------------

    def describe_security_groups(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_security_groups", kwargs)
        groups = []
        for group in self.security_groups.values():
            referenced = [
                pair["GroupId"]
                for perm in group["IpPermissions"]
                for pair in perm.get("UserIdGroupPairs", [])
            ]
            fields = {
                "vpc-id": group["VpcId"],
                "group-name": group["GroupName"],
                "group-id": group["GroupId"],
                "ip-permission.group-id": referenced,
            }
            if matches_filters(group, kwargs.get("Filters"), fields):
                groups.append(copy.deepcopy(group))
        return {"SecurityGroups": groups}

    def revoke_security_group_ingress(self, **kwargs: Any) -> dict[str, Any]:
        self._record("revoke_security_group_ingress", kwargs)
        group = self.security_groups.get(kwargs["GroupId"])
        if group is None:
            raise client_error("InvalidGroup.NotFound", "RevokeSecurityGroupIngress")
        revoked = {
            pair["GroupId"]
            for perm in kwargs["IpPermissions"]
            for pair in perm.get("UserIdGroupPairs", [])
        }
        remaining = []
        for perm in group["IpPermissions"]:
            pairs = [p for p in perm.get("UserIdGroupPairs", []) if p["GroupId"] not in revoked]
            if pairs or perm.get("IpRanges"):
                remaining.append({**perm, "UserIdGroupPairs": pairs})
        group["IpPermissions"] = remaining
        return {"Return": True}

    def delete_security_group(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_security_group", kwargs)
        group_id = kwargs["GroupId"]
        group = self.security_groups.get(group_id)
        if group is None:
            raise client_error("InvalidGroup.NotFound", "DeleteSecurityGroup")
        if group["GroupName"] == "default":
            raise client_error("CannotDelete", "DeleteSecurityGroup")
        for other in self.security_groups.values():
            if other["GroupId"] == group_id:
                continue
            for perm in other["IpPermissions"]:
                if any(p["GroupId"] == group_id for p in perm.get("UserIdGroupPairs", [])):
                    raise client_error(
                        "DependencyViolation",
                        "DeleteSecurityGroup",
                        f"resource {group_id} has a dependent object",
                    )
        del self.security_groups[group_id]
        return {}

    # -------------------------------------------------------------------------
    # VPC endpoints
    # -------------------------------------------------------------------------

    def describe_vpc_endpoints(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_vpc_endpoints", kwargs)
        for endpoint_id, endpoint in self.vpc_endpoints.items():
            if endpoint["State"] == "deleting":
                polls = self._deleting_polls.get(endpoint_id, 0)
                if polls >= self.endpoint_deletion_polls:
                    endpoint["State"] = "deleted"
                else:
                    self._deleting_polls[endpoint_id] = polls + 1
        endpoints = [
            copy.deepcopy(e)
            for e in self.vpc_endpoints.values()
            if matches_filters(e, kwargs.get("Filters"), {"vpc-id": e["VpcId"]})
        ]
        return {"VpcEndpoints": endpoints}

    def delete_vpc_endpoints(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_vpc_endpoints", kwargs)
        unsuccessful = []
        for endpoint_id in kwargs["VpcEndpointIds"]:
            endpoint = self.vpc_endpoints.get(endpoint_id)
            if endpoint is None:
                unsuccessful.append(
                    {
                        "ResourceId": endpoint_id,
                        "Error": {"Code": "InvalidVpcEndpoint.NotFound", "Message": "not found"},
                    }
                )
                continue
            endpoint["State"] = "deleting"
            self._deleting_polls[endpoint_id] = 0
        return {"Unsuccessful": unsuccessful}


def _is_main(route_table: dict[str, Any]) -> bool:
    return any(a.get("Main") for a in route_table["Associations"])
