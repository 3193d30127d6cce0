"""Tag-based discovery of cluster resources.

Listings may be narrowed with EC2 tag filters, but every result is checked
again with tags.matches() before it is trusted. Zero matches is a normal
outcome (ABSENT), not an error. Failures of the primary listing call are
wrapped with the operation name; failures while enumerating sub-resources
only leave that part of the snapshot empty.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

from .clients import FileStorageClient, NetworkClient
from .models import DEFAULT_PERFORMANCE_MODE, DEFAULT_THROUGHPUT_MODE
from .state import (
    ABSENT,
    Discovered,
    Found,
    LifecycleState,
    MountTarget,
    StorageState,
    VPCState,
)
from .tags import (
    PUBLIC_SUBNET_ROLE_TAG,
    ResourceType,
    matches,
    tag_filters,
    tags_from_aws,
)
from .tracing import NoopTracer, Span, Tracer

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Raised when a primary listing call fails or the result is ambiguous."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class ResourceKind(str, Enum):
    """Resource kinds discovery knows how to snapshot."""

    VPC = "vpc"
    STORAGE = "storage"


class Discovery:
    """Builds fresh snapshots of a cluster's network and storage."""

    def __init__(
        self,
        network: NetworkClient,
        storage: FileStorageClient,
        tracer: Tracer | None = None,
    ) -> None:
        self._network = network
        self._storage = storage
        self._tracer = tracer or NoopTracer()

    def discover(self, kind: ResourceKind | str, cluster_name: str) -> Discovered[Any]:
        """Discover one resource kind for a cluster."""
        match ResourceKind(kind):
            case ResourceKind.VPC:
                return self.discover_vpc(cluster_name)
            case ResourceKind.STORAGE:
                return self.discover_storage(cluster_name)

    # -------------------------------------------------------------------------
    # VPC
    # -------------------------------------------------------------------------

    def discover_vpc(self, cluster_name: str) -> Discovered[VPCState]:
        """Find the cluster VPC and enumerate what it contains.

        Raises:
            DiscoveryError: If DescribeVpcs fails or more than one VPC matches.
        """
        with self._tracer.span("discovery.vpc", cluster_name=cluster_name) as span:
            try:
                response = self._network.describe_vpcs(
                    Filters=tag_filters(cluster_name, ResourceType.VPC)
                )
            except ClientError as e:
                raise DiscoveryError("DescribeVpcs", str(e)) from e

            vpcs = [
                v
                for v in response.get("Vpcs", [])
                if matches(tags_from_aws(v.get("Tags")), cluster_name, ResourceType.VPC)
            ]
            span.set_attribute("vpc_count", len(vpcs))

            if not vpcs:
                span.set_attribute("found", False)
                logger.info("No VPC found for cluster", extra={"cluster_name": cluster_name})
                return ABSENT

            if len(vpcs) > 1:
                ids = [v["VpcId"] for v in vpcs]
                raise DiscoveryError(
                    "DescribeVpcs",
                    f"multiple VPCs found for cluster {cluster_name}: {', '.join(ids)}",
                )

            vpc = vpcs[0]
            vpc_id = vpc["VpcId"]
            vpc_filter = [{"Name": "vpc-id", "Values": [vpc_id]}]

            public: list[str] = []
            private: list[str] = []
            zones: list[str] = []
            for subnet in self._best_effort(
                span, "DescribeSubnets", lambda: self._network.describe_subnets(Filters=vpc_filter)
            ).get("Subnets", []):
                if PUBLIC_SUBNET_ROLE_TAG in tags_from_aws(subnet.get("Tags")):
                    public.append(subnet["SubnetId"])
                else:
                    private.append(subnet["SubnetId"])
                zone = subnet.get("AvailabilityZone")
                if zone and zone not in zones:
                    zones.append(zone)

            igws = self._best_effort(
                span,
                "DescribeInternetGateways",
                lambda: self._network.describe_internet_gateways(
                    Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
                ),
            ).get("InternetGateways", [])

            nat_ids = [
                n["NatGatewayId"]
                for n in self._best_effort(
                    span,
                    "DescribeNatGateways",
                    lambda: self._network.describe_nat_gateways(
                        Filters=[*vpc_filter, {"Name": "state", "Values": ["available"]}]
                    ),
                ).get("NatGateways", [])
            ]

            route_table_ids = [
                rt["RouteTableId"]
                for rt in self._best_effort(
                    span,
                    "DescribeRouteTables",
                    lambda: self._network.describe_route_tables(Filters=vpc_filter),
                ).get("RouteTables", [])
            ]

            security_group_ids = [
                sg["GroupId"]
                for sg in self._best_effort(
                    span,
                    "DescribeSecurityGroups",
                    lambda: self._network.describe_security_groups(Filters=vpc_filter),
                ).get("SecurityGroups", [])
            ]

            state = VPCState(
                vpc_id=vpc_id,
                cidr_block=vpc.get("CidrBlock", ""),
                public_subnet_ids=tuple(public),
                private_subnet_ids=tuple(private),
                availability_zones=tuple(zones),
                internet_gateway_id=igws[0]["InternetGatewayId"] if igws else "",
                nat_gateway_ids=tuple(nat_ids),
                route_table_ids=tuple(route_table_ids),
                security_group_ids=tuple(security_group_ids),
            )
            span.set_attributes(
                found=True,
                vpc_id=vpc_id,
                public_subnet_count=len(public),
                private_subnet_count=len(private),
                nat_gateway_count=len(nat_ids),
            )
            logger.info(
                "Discovered VPC",
                extra={"cluster_name": cluster_name, "vpc_id": vpc_id},
            )
            return Found(state)

    # -------------------------------------------------------------------------
    # File storage
    # -------------------------------------------------------------------------

    def discover_storage(self, cluster_name: str) -> Discovered[StorageState]:
        """Find the cluster's EFS file system and its mount targets.

        Raises:
            DiscoveryError: If DescribeFileSystems fails or more than one matches.
        """
        with self._tracer.span("discovery.storage", cluster_name=cluster_name) as span:
            file_systems: list[dict[str, Any]] = []
            kwargs: dict[str, Any] = {}
            try:
                while True:
                    response = self._storage.describe_file_systems(**kwargs)
                    file_systems.extend(response.get("FileSystems", []))
                    marker = response.get("NextMarker")
                    if not marker:
                        break
                    kwargs["Marker"] = marker
            except ClientError as e:
                raise DiscoveryError("DescribeFileSystems", str(e)) from e

            owned = [
                fs
                for fs in file_systems
                if matches(tags_from_aws(fs.get("Tags")), cluster_name, ResourceType.EFS)
            ]
            span.set_attribute("file_system_count", len(owned))

            if not owned:
                span.set_attribute("found", False)
                return ABSENT

            if len(owned) > 1:
                ids = [fs["FileSystemId"] for fs in owned]
                raise DiscoveryError(
                    "DescribeFileSystems",
                    f"multiple EFS file systems found for cluster {cluster_name}: {', '.join(ids)}",
                )

            fs = owned[0]
            fs_id = fs["FileSystemId"]
            mount_targets = tuple(
                MountTarget(
                    mount_target_id=mt["MountTargetId"],
                    subnet_id=mt.get("SubnetId", ""),
                    ip_address=mt.get("IpAddress", ""),
                    lifecycle_state=mt.get("LifeCycleState", ""),
                )
                for mt in self._best_effort(
                    span,
                    "DescribeMountTargets",
                    lambda: self._storage.describe_mount_targets(FileSystemId=fs_id),
                ).get("MountTargets", [])
            )

            state = StorageState(
                file_system_id=fs_id,
                lifecycle_state=_lifecycle(fs.get("LifeCycleState", "")),
                performance_mode=fs.get("PerformanceMode") or DEFAULT_PERFORMANCE_MODE,
                throughput_mode=fs.get("ThroughputMode") or DEFAULT_THROUGHPUT_MODE,
                provisioned_throughput_mibps=float(fs.get("ProvisionedThroughputInMibps") or 0),
                encrypted=bool(fs.get("Encrypted", False)),
                kms_key_id=fs.get("KmsKeyId", "") or "",
                mount_targets=mount_targets,
            )
            span.set_attributes(
                found=True,
                file_system_id=fs_id,
                lifecycle_state=str(fs.get("LifeCycleState", "")),
                mount_target_count=len(mount_targets),
            )
            return Found(state)

    def _best_effort(
        self,
        span: Span,
        operation: str,
        call: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        try:
            return call()
        except ClientError as e:
            span.record_error(e)
            logger.warning(
                "Sub-resource listing failed, continuing without it",
                extra={"operation": operation, "error": str(e)},
            )
            return {}


def _lifecycle(value: str) -> LifecycleState | str:
    try:
        return LifecycleState(value)
    except ValueError:
        return value
