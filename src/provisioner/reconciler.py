"""Desired/actual reconciliation for cluster file storage.

Reconciliation never deletes. A disabled storage section is a no-op even if
a file system exists; removal belongs to the deletion orchestrator.

For an existing, available file system the diff has two tiers:

1. Immutable fields (performance mode, encryption, KMS key) are compared
   first. Any mismatch is rejected with a field-named error; they are never
   patched in place.
2. Mutable fields (throughput mode and provisioned throughput) trigger an
   UpdateFileSystem call when they differ.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

from .clients import FileStorageClient
from .config import EngineConfig
from .models import StorageConfig, ThroughputMode
from .retry import WaitTimeoutError, wait_until
from .state import (
    Discovered,
    Found,
    LifecycleState,
    MountTarget,
    StorageState,
    VPCState,
)
from .status import StatusLevel, StatusSink, emit
from .tags import ResourceType, base_tags, merge_tags, resource_name, tags_to_aws
from .tracing import NoopTracer, Tracer

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """Base class for reconciliation failures."""

    pass


class ImmutableFieldError(ReconcileError):
    """Raised when a field fixed at creation differs from the desired value."""

    def __init__(self, field_name: str, message: str) -> None:
        self.field_name = field_name
        super().__init__(message)


class ReconcileStateError(ReconcileError):
    """Raised when the resource is not in a state that can be reconciled."""

    pass


class StorageOperationError(ReconcileError):
    """Raised when a storage write or wait fails. Names the operation and resource."""

    def __init__(self, operation: str, resource_id: str, message: str) -> None:
        self.operation = operation
        self.resource_id = resource_id
        super().__init__(f"{operation} ({resource_id}) failed: {message}")


class ReconcileAction(str, Enum):
    NONE = "none"
    CREATE = "create"
    UPDATE = "update"


@dataclass
class ReconcileResult:
    """Outcome of one storage reconciliation."""

    action: ReconcileAction
    state: StorageState | None = None
    mount_targets_created: int = 0

    @property
    def changed(self) -> bool:
        return self.action != ReconcileAction.NONE or self.mount_targets_created > 0


def check_immutable_fields(actual: StorageState, desired: StorageConfig) -> None:
    """Reject changes to fields fixed at file system creation.

    Each field is checked on its own so any one of them can fail alone.

    Raises:
        ImmutableFieldError: Naming the first differing field.
    """
    desired_mode = desired.effective_performance_mode
    if actual.performance_mode != desired_mode:
        raise ImmutableFieldError(
            "performance_mode",
            f"EFS performance mode is immutable (current: {actual.performance_mode}, "
            f"desired: {desired_mode}). Delete and recreate the file system to change it",
        )

    if actual.encrypted != desired.encrypted:
        raise ImmutableFieldError(
            "encrypted",
            f"EFS encryption setting is immutable (current: {actual.encrypted}, "
            f"desired: {desired.encrypted}). Delete and recreate the file system to change it",
        )

    # An unset key means the AWS managed key, whatever ARN the cloud reports
    if actual.encrypted and desired.kms_key_id and actual.kms_key_id != desired.kms_key_id:
        raise ImmutableFieldError(
            "kms_key_id",
            f"EFS KMS key is immutable (current: {actual.kms_key_id}, "
            f"desired: {desired.kms_key_id}). Delete and recreate the file system to change it",
        )


def needs_throughput_update(actual: StorageState, desired: StorageConfig) -> bool:
    """True when the mutable throughput settings differ.

    An unset desired throughput mode means "bursting", the cloud default.
    """
    desired_mode = desired.effective_throughput_mode
    if actual.throughput_mode != desired_mode:
        return True
    if desired_mode == ThroughputMode.PROVISIONED.value:
        return actual.provisioned_throughput_mibps != float(desired.provisioned_mbps)
    return False


class StorageReconciler:
    """Brings the cluster's EFS file system in line with the document."""

    def __init__(
        self,
        storage: FileStorageClient,
        config: EngineConfig | None = None,
        status: StatusSink | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._storage = storage
        self._config = config or EngineConfig()
        self._status = status
        self._tracer = tracer or NoopTracer()

    async def reconcile(
        self,
        desired: StorageConfig | None,
        cluster_name: str,
        vpc: VPCState,
        actual: Discovered[StorageState],
        user_tags: dict[str, str] | None = None,
    ) -> ReconcileResult:
        """Reconcile desired storage settings against the discovered state.

        Raises:
            ImmutableFieldError: If a creation-time field would change.
            ReconcileStateError: If the file system is not available.
            StorageOperationError: If a create, update or wait fails.
        """
        with self._tracer.span("reconcile.storage", cluster_name=cluster_name) as span:
            if desired is None or not desired.enabled:
                span.set_attribute("enabled", False)
                logger.info("File storage disabled, nothing to reconcile")
                return ReconcileResult(action=ReconcileAction.NONE)

            span.set_attribute("enabled", True)
            match actual:
                case Found(state=current):
                    span.set_attributes(found=True, file_system_id=current.file_system_id)
                    return await self._reconcile_existing(desired, vpc, current)
                case _:
                    span.set_attribute("found", False)
                    return await self._create(desired, cluster_name, vpc, user_tags or {})

    async def _reconcile_existing(
        self,
        desired: StorageConfig,
        vpc: VPCState,
        current: StorageState,
    ) -> ReconcileResult:
        if not current.is_stable:
            state = getattr(current.lifecycle_state, "value", current.lifecycle_state)
            raise ReconcileStateError(
                f"EFS file system {current.file_system_id} is in state {state}, "
                "cannot reconcile"
            )

        check_immutable_fields(current, desired)

        action = ReconcileAction.NONE
        result_state = current
        if needs_throughput_update(current, desired):
            result_state = self._update_throughput(current, desired)
            action = ReconcileAction.UPDATE

        created = self._create_missing_mount_targets(result_state, vpc)
        if created:
            result_state = _with_mount_targets(result_state, created)

        if action == ReconcileAction.NONE and not created:
            emit(
                self._status,
                StatusLevel.INFO,
                "EFS file system is up to date",
                resource="efs",
                action="reconcile",
                file_system_id=current.file_system_id,
            )

        return ReconcileResult(
            action=action, state=result_state, mount_targets_created=len(created)
        )

    def _update_throughput(self, current: StorageState, desired: StorageConfig) -> StorageState:
        mode = desired.effective_throughput_mode
        kwargs: dict[str, Any] = {"FileSystemId": current.file_system_id, "ThroughputMode": mode}
        if mode == ThroughputMode.PROVISIONED.value:
            kwargs["ProvisionedThroughputInMibps"] = float(desired.provisioned_mbps)

        emit(
            self._status,
            StatusLevel.PROGRESS,
            "Updating EFS throughput",
            resource="efs",
            action="update",
            file_system_id=current.file_system_id,
            throughput_mode=mode,
        )
        try:
            self._storage.update_file_system(**kwargs)
        except ClientError as e:
            raise StorageOperationError("UpdateFileSystem", current.file_system_id, str(e)) from e
        logger.info(
            "Updated EFS throughput",
            extra={"file_system_id": current.file_system_id, "throughput_mode": mode},
        )
        return replace(
            current,
            throughput_mode=mode,
            provisioned_throughput_mibps=kwargs.get(
                "ProvisionedThroughputInMibps", current.provisioned_throughput_mibps
            ),
        )

    async def _create(
        self,
        desired: StorageConfig,
        cluster_name: str,
        vpc: VPCState,
        user_tags: dict[str, str],
    ) -> ReconcileResult:
        name = resource_name(cluster_name, ResourceType.EFS)
        tags = merge_tags(user_tags, base_tags(cluster_name, ResourceType.EFS))
        tags["Name"] = name

        kwargs: dict[str, Any] = {
            "CreationToken": name,
            "PerformanceMode": desired.effective_performance_mode,
            "ThroughputMode": desired.effective_throughput_mode,
            "Encrypted": desired.encrypted,
            "Tags": tags_to_aws(tags),
        }
        if desired.encrypted and desired.kms_key_id:
            kwargs["KmsKeyId"] = desired.kms_key_id
        if (
            desired.effective_throughput_mode == ThroughputMode.PROVISIONED.value
            and desired.provisioned_mbps > 0
        ):
            kwargs["ProvisionedThroughputInMibps"] = float(desired.provisioned_mbps)

        emit(self._status, StatusLevel.PROGRESS, "Creating EFS file system", "efs", "create")
        try:
            response = self._storage.create_file_system(**kwargs)
        except ClientError as e:
            raise StorageOperationError("CreateFileSystem", name, str(e)) from e
        fs_id = response["FileSystemId"]
        logger.info("Created EFS file system", extra={"file_system_id": fs_id, "name": name})

        await self._wait_for_available(fs_id)

        state = StorageState(
            file_system_id=fs_id,
            lifecycle_state=LifecycleState.AVAILABLE,
            performance_mode=kwargs["PerformanceMode"],
            throughput_mode=kwargs["ThroughputMode"],
            provisioned_throughput_mibps=kwargs.get("ProvisionedThroughputInMibps", 0.0),
            encrypted=desired.encrypted,
            kms_key_id=response.get("KmsKeyId", "") or "",
        )
        created = self._create_missing_mount_targets(state, vpc)
        state = _with_mount_targets(state, created)

        emit(
            self._status,
            StatusLevel.SUCCESS,
            "EFS file system ready",
            resource="efs",
            action="create",
            file_system_id=fs_id,
            mount_targets=len(created),
        )
        return ReconcileResult(
            action=ReconcileAction.CREATE, state=state, mount_targets_created=len(created)
        )

    async def _wait_for_available(self, fs_id: str) -> None:
        async def is_available() -> bool:
            try:
                response = self._storage.describe_file_systems(FileSystemId=fs_id)
            except ClientError as e:
                raise StorageOperationError("DescribeFileSystems", fs_id, str(e)) from e
            systems = response.get("FileSystems", [])
            if not systems:
                return False
            state = systems[0].get("LifeCycleState")
            if state == LifecycleState.ERROR.value:
                raise ReconcileStateError(f"EFS file system {fs_id} entered error state")
            return state == LifecycleState.AVAILABLE.value

        try:
            await wait_until(
                is_available,
                timeout_seconds=self._config.file_system_timeout_seconds,
                poll_interval_seconds=self._config.poll_interval_seconds,
                description=f"EFS file system {fs_id} to become available",
            )
        except WaitTimeoutError as e:
            raise StorageOperationError("WaitFileSystemAvailable", fs_id, str(e)) from e

    def _create_missing_mount_targets(
        self, state: StorageState, vpc: VPCState
    ) -> list[MountTarget]:
        """Create mount targets in private subnets that lack one. Never deletes."""
        missing = [s for s in vpc.private_subnet_ids if s not in state.mounted_subnet_ids]
        if not missing:
            return []

        security_groups = list(vpc.security_group_ids[:1])
        created: list[MountTarget] = []
        for subnet_id in missing:
            kwargs: dict[str, Any] = {"FileSystemId": state.file_system_id, "SubnetId": subnet_id}
            if security_groups:
                kwargs["SecurityGroups"] = security_groups
            try:
                response = self._storage.create_mount_target(**kwargs)
            except ClientError as e:
                raise StorageOperationError(
                    "CreateMountTarget",
                    state.file_system_id,
                    f"failed to create mount target in subnet {subnet_id}: {e}",
                ) from e
            created.append(
                MountTarget(
                    mount_target_id=response.get("MountTargetId", ""),
                    subnet_id=subnet_id,
                    ip_address=response.get("IpAddress", ""),
                    lifecycle_state=response.get("LifeCycleState", ""),
                )
            )
            logger.info(
                "Created mount target",
                extra={"file_system_id": state.file_system_id, "subnet_id": subnet_id},
            )
        return created


class VpcReconciler:
    """Checks a discovered VPC against the document's network settings."""

    def verify(self, vpc_cidr_block: str, actual: Discovered[VPCState]) -> None:
        """Reject a CIDR change on an existing VPC.

        Raises:
            ImmutableFieldError: If the CIDR differs from the discovered VPC.
        """
        match actual:
            case Found(state=vpc) if vpc_cidr_block and vpc.cidr_block != vpc_cidr_block:
                raise ImmutableFieldError(
                    "vpc_cidr_block",
                    f"VPC CIDR block is immutable (current: {vpc.cidr_block}, "
                    f"desired: {vpc_cidr_block})",
                )
            case _:
                return


def _with_mount_targets(state: StorageState, created: list[MountTarget]) -> StorageState:
    return replace(state, mount_targets=state.mount_targets + tuple(created))

