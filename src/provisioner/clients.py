"""Narrow cloud client interfaces and boto3 construction.

Each Protocol lists exactly the AWS calls the engine makes against one
service family. Method names, keyword arguments and response shapes are
boto3's, so a real boto3 client satisfies the Protocol as-is and test
doubles only need to script the handful of calls below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Adaptive client-side retries cover throttling; dependency conflicts are
# handled by the engine's own retry policy.
_BOTO_CONFIG = BotoConfig(retries={"max_attempts": 10, "mode": "adaptive"})

# Codes that mean the target is already in the state we want
_ALREADY_GONE_CODES = frozenset({"Gateway.NotAttached"})

DEPENDENCY_VIOLATION = "DependencyViolation"


class NetworkClient(Protocol):
    """EC2 networking calls: VPCs and everything that lives inside them."""

    def describe_vpcs(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_vpc(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_subnets(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_subnet(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_internet_gateways(self, **kwargs: Any) -> dict[str, Any]: ...

    def detach_internet_gateway(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_internet_gateway(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_nat_gateways(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_nat_gateway(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_addresses(self, **kwargs: Any) -> dict[str, Any]: ...

    def release_address(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_route_tables(self, **kwargs: Any) -> dict[str, Any]: ...

    def disassociate_route_table(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_route_table(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_security_groups(self, **kwargs: Any) -> dict[str, Any]: ...

    def revoke_security_group_ingress(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_security_group(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_vpc_endpoints(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_vpc_endpoints(self, **kwargs: Any) -> dict[str, Any]: ...


class FileStorageClient(Protocol):
    """EFS calls."""

    def describe_file_systems(self, **kwargs: Any) -> dict[str, Any]: ...

    def create_file_system(self, **kwargs: Any) -> dict[str, Any]: ...

    def update_file_system(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_file_system(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_mount_targets(self, **kwargs: Any) -> dict[str, Any]: ...

    def create_mount_target(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_mount_target(self, **kwargs: Any) -> dict[str, Any]: ...


class LoadBalancerClient(Protocol):
    """Classic ELB calls, used for load balancers Kubernetes created."""

    def describe_load_balancers(self, **kwargs: Any) -> dict[str, Any]: ...

    def describe_tags(self, **kwargs: Any) -> dict[str, Any]: ...

    def delete_load_balancer(self, **kwargs: Any) -> dict[str, Any]: ...


@dataclass(frozen=True)
class CloudClients:
    """The client set one engine run works against."""

    network: NetworkClient
    storage: FileStorageClient
    load_balancers: LoadBalancerClient


def create_clients(region: str) -> CloudClients:
    """Build boto3 clients for a region using the default credential chain."""
    if not region:
        raise ValueError("region is required to create AWS clients")

    session = boto3.session.Session(region_name=region)
    logger.info("Creating AWS clients", extra={"region": region})
    return CloudClients(
        network=session.client("ec2", config=_BOTO_CONFIG),
        storage=session.client("efs", config=_BOTO_CONFIG),
        load_balancers=session.client("elb", config=_BOTO_CONFIG),
    )


def error_code(error: BaseException) -> str:
    """Return the AWS error code of a ClientError, or "" for anything else."""
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return ""


def is_not_found(error: BaseException) -> bool:
    """True when the error means the target no longer exists.

    Covers the EC2 "<Kind>.NotFound" codes as well as the service-specific
    "NatGatewayNotFound", "FileSystemNotFound" and "LoadBalancerNotFound".
    """
    code = error_code(error)
    return bool(code) and (code.endswith("NotFound") or code in _ALREADY_GONE_CODES)


def is_dependency_violation(error: BaseException) -> bool:
    """True for the transient conflict raised while dependents still exist."""
    return error_code(error) == DEPENDENCY_VIOLATION
