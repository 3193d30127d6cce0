"""Snapshots of cloud-side state produced by discovery.

Snapshots are built fresh for each operation and never cached; the cloud
account is the only source of truth. Discovery returns either Found(state)
or ABSENT, which callers consume with a match statement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class LifecycleState(str, Enum):
    """EFS file system lifecycle states."""

    CREATING = "creating"
    AVAILABLE = "available"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"


@dataclass(frozen=True)
class VPCState:
    """A discovered cluster VPC and its sub-resources."""

    vpc_id: str
    cidr_block: str
    public_subnet_ids: tuple[str, ...] = ()
    private_subnet_ids: tuple[str, ...] = ()
    availability_zones: tuple[str, ...] = ()
    internet_gateway_id: str = ""
    nat_gateway_ids: tuple[str, ...] = ()
    route_table_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class MountTarget:
    mount_target_id: str
    subnet_id: str
    ip_address: str = ""
    lifecycle_state: str = ""


@dataclass(frozen=True)
class StorageState:
    """A discovered EFS file system.

    performance_mode, encrypted and kms_key_id are fixed at creation.
    """

    file_system_id: str
    lifecycle_state: LifecycleState | str
    performance_mode: str
    throughput_mode: str
    provisioned_throughput_mibps: float = 0.0
    encrypted: bool = False
    kms_key_id: str = ""
    mount_targets: tuple[MountTarget, ...] = ()

    @property
    def is_stable(self) -> bool:
        return self.lifecycle_state == LifecycleState.AVAILABLE

    @property
    def mounted_subnet_ids(self) -> frozenset[str]:
        return frozenset(mt.subnet_id for mt in self.mount_targets)


@dataclass(frozen=True)
class Found(Generic[T]):
    """Discovery located exactly one matching resource."""

    state: T


class _Absent:
    """Discovery found nothing tagged for the cluster."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()

Absent = _Absent

Discovered = Found[T] | _Absent


@dataclass
class DeletionStage:
    """One ordered phase of a deletion plan: a set of same-kind resources."""

    name: str
    resource_type: str
    resource_ids: list[str] = field(default_factory=list)


@dataclass
class DeletionPlan:
    """Ordered stages a deletion would run, in execution order."""

    cluster_name: str
    vpc_id: str | None = None
    stages: list[DeletionStage] = field(default_factory=list)

    @property
    def total_resources(self) -> int:
        return sum(len(s.resource_ids) for s in self.stages)

    def stage(self, name: str) -> DeletionStage | None:
        for s in self.stages:
            if s.name == name:
                return s
        return None
