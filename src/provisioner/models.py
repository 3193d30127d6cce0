"""Pydantic models for the declarative cluster document.

Parsing is lenient: unknown keys are ignored and field values are only
type-coerced here. Structural rules (required fields, ranges, enumerations)
are enforced by validator.validate_cluster so that the first violation is
reported with a stable, field-named message.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator


class EndpointAccess(str, Enum):
    """EKS API endpoint exposure."""

    PUBLIC = "public"
    PRIVATE = "private"
    PUBLIC_AND_PRIVATE = "public-and-private"


class PerformanceMode(str, Enum):
    GENERAL_PURPOSE = "generalPurpose"
    MAX_IO = "maxIO"


class ThroughputMode(str, Enum):
    BURSTING = "bursting"
    PROVISIONED = "provisioned"
    ELASTIC = "elastic"


VALID_TAINT_EFFECTS = ("NoSchedule", "NoExecute", "PreferNoSchedule")

DEFAULT_PERFORMANCE_MODE = PerformanceMode.GENERAL_PURPOSE.value
DEFAULT_THROUGHPUT_MODE = ThroughputMode.BURSTING.value
DEFAULT_STORAGE_CLASS_NAME = "efs-sc"


class Taint(BaseModel):
    """Kubernetes taint applied to a node group."""

    model_config = {"extra": "ignore"}

    key: str = ""
    value: str = ""
    effect: str = ""


class NodeGroup(BaseModel):
    """Node group sizing and placement.

    min_nodes and max_nodes are None when the document leaves them unset.
    """

    model_config = {"extra": "ignore"}

    instance: str = ""
    min_nodes: int | None = None
    max_nodes: int | None = None
    taints: list[Taint] = Field(default_factory=list)
    gpu: bool = False
    ami_type: str = ""
    single_subnet: bool = False
    permissions_boundary: str = ""
    spot: bool = False


class StorageConfig(BaseModel):
    """Shared file storage (EFS) settings.

    performance_mode, encrypted and kms_key_id are fixed when the file
    system is created. throughput_mode and provisioned_mbps can be changed
    later.
    """

    model_config = {"extra": "ignore"}

    enabled: bool = False
    performance_mode: str = ""
    throughput_mode: str = ""
    provisioned_mbps: int = 0
    encrypted: bool = False
    kms_key_id: str = ""
    storage_class_name: str = DEFAULT_STORAGE_CLASS_NAME

    @property
    def effective_performance_mode(self) -> str:
        return self.performance_mode or DEFAULT_PERFORMANCE_MODE

    @property
    def effective_throughput_mode(self) -> str:
        return self.throughput_mode or DEFAULT_THROUGHPUT_MODE


class AWSConfig(BaseModel):
    """AWS provider section of the cluster document."""

    model_config = {"extra": "ignore"}

    region: str = ""
    kubernetes_version: str = ""
    availability_zones: list[str] = Field(default_factory=list)
    node_groups: dict[str, NodeGroup] = Field(default_factory=dict)
    eks_endpoint_access: str = ""
    eks_public_access_cidrs: list[str] = Field(default_factory=list)
    eks_kms_arn: str = ""
    existing_subnet_ids: list[str] = Field(default_factory=list)
    existing_security_group_id: str = ""
    vpc_cidr_block: str = ""
    permissions_boundary: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    efs: StorageConfig | None = None

    @field_validator("node_groups", "tags", mode="before")
    @classmethod
    def none_as_empty(cls, v: object) -> object:
        """YAML keys with no value load as None."""
        return {} if v is None else v

    @field_validator("kubernetes_version", mode="before")
    @classmethod
    def version_must_be_quoted(cls, v: object) -> object:
        # Unquoted 1.30 loads from YAML as the float 1.3
        if isinstance(v, int | float) and not isinstance(v, bool):
            raise ValueError(
                f'kubernetes_version must be a quoted string such as "1.34", got number {v}'
            )
        return v


class ClusterDocument(BaseModel):
    """Top-level cluster document."""

    model_config = {"extra": "ignore"}

    project_name: Annotated[str, Field(min_length=1)]
    provider: str = "aws"
    domain: str = ""
    amazon_web_services: AWSConfig | None = None

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()


def endpoint_access_flags(value: str) -> tuple[bool, bool]:
    """Map an endpoint access setting to (public_access, private_access).

    Unset keeps both endpoints enabled, which nodes in private subnets need.
    """
    match value:
        case EndpointAccess.PRIVATE.value:
            return False, True
        case EndpointAccess.PUBLIC.value:
            return True, False
        case _:
            return True, True
