"""Cluster ownership tags.

Every object this tool creates carries three marker tags: managed-by,
cluster-name and resource-type. The marker triple is the only link between a
cloud object and a logical cluster, so discovery trusts nothing else.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

TAG_PREFIX = "nic.nebari.dev"

TAG_MANAGED_BY = f"{TAG_PREFIX}/managed-by"
TAG_CLUSTER_NAME = f"{TAG_PREFIX}/cluster-name"
TAG_RESOURCE_TYPE = f"{TAG_PREFIX}/resource-type"
TAG_VERSION = f"{TAG_PREFIX}/version"
TAG_NODE_POOL = f"{TAG_PREFIX}/node-pool"

MANAGED_BY_VALUE = "nic"
TAG_SCHEMA_VERSION = "0.1.0"

# Subnets carrying this tag are treated as public
PUBLIC_SUBNET_ROLE_TAG = "kubernetes.io/role/public-elb"


class ResourceType(str, Enum):
    """Values of the resource-type marker tag."""

    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet-gateway"
    NAT_GATEWAY = "nat-gateway"
    ROUTE_TABLE = "route-table"
    SECURITY_GROUP = "security-group"
    ELASTIC_IP = "elastic-ip"
    EFS = "efs"
    EKS_CLUSTER = "eks-cluster"
    NODE_POOL = "node-pool"
    IAM_ROLE = "iam-role"
    LAUNCH_TEMPLATE = "launch-template"


def matches(
    tags: Mapping[str, str] | None,
    cluster_name: str,
    resource_type: ResourceType | str,
) -> bool:
    """Return True if the tags mark the object as owned by the cluster.

    All three markers must be present and exactly equal to the expected
    values. A missing or different marker means the object is not ours.
    """
    if not tags:
        return False
    expected_type = _type_value(resource_type)
    return (
        tags.get(TAG_MANAGED_BY) == MANAGED_BY_VALUE
        and tags.get(TAG_CLUSTER_NAME) == cluster_name
        and tags.get(TAG_RESOURCE_TYPE) == expected_type
    )


def _type_value(resource_type: ResourceType | str) -> str:
    if isinstance(resource_type, ResourceType):
        return resource_type.value
    return str(resource_type)


def base_tags(cluster_name: str, resource_type: ResourceType | str) -> dict[str, str]:
    """Marker tags every created object carries."""
    return {
        TAG_MANAGED_BY: MANAGED_BY_VALUE,
        TAG_CLUSTER_NAME: cluster_name,
        TAG_RESOURCE_TYPE: ResourceType(resource_type).value,
        TAG_VERSION: TAG_SCHEMA_VERSION,
    }


def merge_tags(user_tags: Mapping[str, str] | None, tool_tags: Mapping[str, str]) -> dict[str, str]:
    """Merge user tags with tool tags. Tool markers always win."""
    merged = dict(user_tags or {})
    merged.update(tool_tags)
    return merged


def tag_filters(cluster_name: str, resource_type: ResourceType | str) -> list[dict[str, Any]]:
    """EC2 describe filters narrowing a listing to the cluster's marker triple.

    The filter is only a pre-selection; results are always re-checked with
    matches().
    """
    return [
        {"Name": f"tag:{TAG_MANAGED_BY}", "Values": [MANAGED_BY_VALUE]},
        {"Name": f"tag:{TAG_CLUSTER_NAME}", "Values": [cluster_name]},
        {"Name": f"tag:{TAG_RESOURCE_TYPE}", "Values": [ResourceType(resource_type).value]},
    ]


def cluster_filter(cluster_name: str) -> dict[str, Any]:
    """Filter on the cluster-name marker alone, used by the orphan sweep."""
    return {"Name": f"tag:{TAG_CLUSTER_NAME}", "Values": [cluster_name]}


def tags_from_aws(tag_list: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    """Convert an AWS [{"Key": ..., "Value": ...}] list into a dict."""
    result: dict[str, str] = {}
    for tag in tag_list or ():
        key = tag.get("Key")
        if key is not None:
            result[key] = tag.get("Value", "")
    return result


def tags_to_aws(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def resource_name(cluster_name: str, resource_type: ResourceType | str, suffix: str = "") -> str:
    """Build a consistent resource name: cluster-type[-suffix]."""
    name = f"{cluster_name}-{ResourceType(resource_type).value}"
    if suffix:
        name = f"{name}-{suffix}"
    return name
