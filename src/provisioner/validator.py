"""Structural validation of the cluster document.

Runs before any cloud call. Checks happen in a fixed order and stop at the
first violation so the reported message is deterministic.
"""

from __future__ import annotations

import logging

from .models import (
    AWSConfig,
    ClusterDocument,
    EndpointAccess,
    NodeGroup,
    PerformanceMode,
    StorageConfig,
    ThroughputMode,
    VALID_TAINT_EFFECTS,
)
from .version import K8sVersion, VersionFormatError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDER = "aws"


class ConfigValidationError(Exception):
    """Raised when the cluster document is structurally invalid."""

    pass


def validate_cluster(document: ClusterDocument | AWSConfig) -> None:
    """Validate a cluster document or its AWS section.

    Raises:
        ConfigValidationError: On the first violation found.
    """
    if isinstance(document, ClusterDocument):
        if document.provider != SUPPORTED_PROVIDER:
            raise ConfigValidationError(
                f"unsupported provider {document.provider!r} (supported: {SUPPORTED_PROVIDER})"
            )
        if document.amazon_web_services is None:
            raise ConfigValidationError("amazon_web_services configuration is required")
        aws = document.amazon_web_services
    else:
        aws = document

    _validate_aws(aws)
    logger.debug("Cluster document passed validation", extra={"region": aws.region})


def _validate_aws(aws: AWSConfig) -> None:
    if not aws.region:
        raise ConfigValidationError("AWS region is required")

    if aws.kubernetes_version:
        try:
            K8sVersion.parse(aws.kubernetes_version)
        except VersionFormatError as e:
            raise ConfigValidationError(str(e)) from e

    if aws.vpc_cidr_block and "/" not in aws.vpc_cidr_block:
        raise ConfigValidationError(
            f"invalid VPC CIDR block format: {aws.vpc_cidr_block} (must include /prefix)"
        )

    if aws.eks_endpoint_access:
        valid = [e.value for e in EndpointAccess]
        if aws.eks_endpoint_access not in valid:
            raise ConfigValidationError(
                f"invalid eks_endpoint_access {aws.eks_endpoint_access!r} "
                f"(must be one of: {', '.join(valid)})"
            )

    if not aws.node_groups:
        raise ConfigValidationError("at least one node group is required")

    for name, node_group in aws.node_groups.items():
        _validate_node_group(name, node_group)

    if aws.efs is not None and aws.efs.enabled:
        _validate_storage(aws.efs)


def _validate_node_group(name: str, node_group: NodeGroup) -> None:
    if not node_group.instance:
        raise ConfigValidationError(f"node group {name}: instance type is required")

    min_nodes, max_nodes = node_group.min_nodes, node_group.max_nodes
    if min_nodes is not None and min_nodes < 0:
        raise ConfigValidationError(f"node group {name}: min_nodes cannot be negative")
    if max_nodes is not None and max_nodes < 0:
        raise ConfigValidationError(f"node group {name}: max_nodes cannot be negative")
    if min_nodes is not None and max_nodes is not None and min_nodes > max_nodes:
        raise ConfigValidationError(
            f"node group {name}: min_nodes ({min_nodes}) cannot be greater than "
            f"max_nodes ({max_nodes})"
        )

    # Positions are 1-based to match how people count list items in YAML
    for position, taint in enumerate(node_group.taints, start=1):
        if not taint.key:
            raise ConfigValidationError(f"node group {name}: taint {position} is missing key")
        if taint.effect not in VALID_TAINT_EFFECTS:
            raise ConfigValidationError(
                f"node group {name}: taint {position} has invalid effect {taint.effect} "
                f"(must be one of: {', '.join(VALID_TAINT_EFFECTS)})"
            )


def _validate_storage(storage: StorageConfig) -> None:
    if storage.performance_mode:
        valid = [m.value for m in PerformanceMode]
        if storage.performance_mode not in valid:
            raise ConfigValidationError(
                f"efs: invalid performance_mode {storage.performance_mode!r} "
                f"(must be one of: {', '.join(valid)})"
            )

    if storage.throughput_mode:
        valid = [m.value for m in ThroughputMode]
        if storage.throughput_mode not in valid:
            raise ConfigValidationError(
                f"efs: invalid throughput_mode {storage.throughput_mode!r} "
                f"(must be one of: {', '.join(valid)})"
            )

    if (
        storage.throughput_mode == ThroughputMode.PROVISIONED.value
        and storage.provisioned_mbps <= 0
    ):
        raise ConfigValidationError(
            "efs: provisioned_mbps must be greater than 0 when throughput_mode is provisioned"
        )

    if storage.kms_key_id and not storage.encrypted:
        raise ConfigValidationError("efs: kms_key_id requires encrypted to be true")
