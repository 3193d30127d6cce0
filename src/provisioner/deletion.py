"""Dependency-ordered teardown of a cluster's network and storage.

AWS refuses to delete a resource while something still references it, so
deletion runs in fixed stages and each stage finishes (including async
completion for NAT gateways, VPC endpoints and mount targets) before the next
one starts:

    load balancers -> k8s ELB security groups -> file storage
    -> VPC endpoints -> NAT gateways (+ elastic IPs) -> internet gateway
    -> route tables -> subnets -> security groups -> VPC

The first two stages remove what the Kubernetes cloud controller created on
the cluster's behalf; those objects carry the kubernetes.io/cluster/<name>
tag, not our marker tags, and their network interfaces live in our subnets.

After the primary stages, an orphan sweep keyed only by the cluster-name tag
releases unassociated elastic IPs and re-initiates deletion of leftover NAT
gateways. The sweep runs even when a primary stage failed, so a re-run after
a partial failure converges. Every stage treats "not found" as success.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

from .clients import CloudClients, is_dependency_violation, is_not_found
from .config import (
    ELB_TAG_BATCH_SIZE,
    K8S_CLUSTER_TAG_PREFIX,
    K8S_ELB_SECURITY_GROUP_PREFIX,
    EngineConfig,
)
from .discovery import Discovery, DiscoveryError
from .retry import RetryExhaustedError, WaitTimeoutError, retry_async, wait_until
from .state import DeletionPlan, DeletionStage, Found, LifecycleState, VPCState
from .status import StatusLevel, StatusSink, emit
from .tags import TAG_CLUSTER_NAME, cluster_filter, tags_from_aws
from .tracing import NoopTracer, Tracer

logger = logging.getLogger(__name__)

NAT_TERMINAL_STATES = frozenset({"deleted", "failed"})
ENDPOINT_GONE_STATES = frozenset({"deleted", "rejected", "failed", "expired"})


class Stage(str, Enum):
    """Deletion stages in execution order."""

    LOAD_BALANCERS = "load-balancers"
    LOAD_BALANCER_SECURITY_GROUPS = "load-balancer-security-groups"
    FILE_STORAGE = "file-storage"
    VPC_ENDPOINTS = "vpc-endpoints"
    NAT_GATEWAYS = "nat-gateways"
    ELASTIC_IPS = "elastic-ips"
    INTERNET_GATEWAY = "internet-gateway"
    ROUTE_TABLES = "route-tables"
    SUBNETS = "subnets"
    SECURITY_GROUPS = "security-groups"
    VPC = "vpc"
    ORPHAN_ELASTIC_IPS = "orphan-elastic-ips"
    ORPHAN_NAT_GATEWAYS = "orphan-nat-gateways"


class DeletionError(Exception):
    """Raised when a deletion stage fails. Names the stage and the resource."""

    def __init__(self, stage: Stage, resource_id: str, message: str) -> None:
        self.stage = stage
        self.resource_id = resource_id
        super().__init__(f"{stage.value} ({resource_id}): {message}")


@dataclass
class DeletionReport:
    """What a deletion run did."""

    cluster_name: str
    vpc_id: str | None = None
    deleted: dict[str, list[str]] = field(default_factory=dict)
    elastic_ips_released: list[str] = field(default_factory=list)
    elastic_ips_skipped: int = 0
    nat_gateways_pending: int = 0
    rules_revoked: int = 0
    warnings: list[str] = field(default_factory=list)

    def record(self, stage: Stage, resource_id: str) -> None:
        self.deleted.setdefault(stage.value, []).append(resource_id)

    def deleted_in(self, stage: Stage) -> list[str]:
        return self.deleted.get(stage.value, [])

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message, extra={"cluster_name": self.cluster_name})


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _vpc_filter(vpc_id: str) -> list[dict[str, Any]]:
    return [{"Name": "vpc-id", "Values": [vpc_id]}]


class DeletionOrchestrator:
    """Deletes everything that belongs to one cluster.

    At most one destructive run per cluster may be active at a time; the
    caller is responsible for that.
    """

    def __init__(
        self,
        clients: CloudClients,
        config: EngineConfig | None = None,
        status: StatusSink | None = None,
        tracer: Tracer | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._network = clients.network
        self._storage = clients.storage
        self._elb = clients.load_balancers
        self._config = config or EngineConfig()
        self._status = status
        self._tracer = tracer or NoopTracer()
        self._cancel_event = cancel_event
        self._discovery = Discovery(clients.network, clients.storage, self._tracer)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def delete_all(self, cluster_name: str) -> DeletionReport:
        """Delete every resource of the cluster, then sweep orphans.

        Raises:
            DeletionError: From the first failing stage. The orphan sweep has
                already run by the time it propagates.
            OperationCancelledError: If the cancel event fired during a wait.
        """
        report = DeletionReport(cluster_name=cluster_name)
        emit(self._status, StatusLevel.INFO, f"Destroying cluster {cluster_name}", action="destroy")

        with self._tracer.span("deletion.delete_all", cluster_name=cluster_name) as span:
            primary_error: DeletionError | None = None
            try:
                await self.cleanup_downstream(cluster_name, report)
                await self.delete_file_storage(cluster_name, report)
                await self.delete_network(cluster_name, report)
            except DeletionError as e:
                primary_error = e
                logger.error(
                    "Deletion stage failed, running orphan sweep before reporting",
                    extra={"stage": e.stage.value, "resource_id": e.resource_id, "error": str(e)},
                )

            try:
                await self.sweep_orphans(cluster_name, report)
            except DeletionError as e:
                if primary_error is None:
                    raise
                report.warn(f"orphan sweep failed after earlier error: {e}")

            span.set_attributes(
                vpc_found=report.vpc_id is not None,
                resources_deleted=sum(len(ids) for ids in report.deleted.values()),
                elastic_ips_released=len(report.elastic_ips_released),
                nat_gateways_pending=report.nat_gateways_pending,
            )

            if primary_error is not None:
                emit(
                    self._status,
                    StatusLevel.ERROR,
                    f"Destroy failed: {primary_error}",
                    resource=primary_error.stage.value,
                    action="destroy",
                )
                raise primary_error

        emit(
            self._status,
            StatusLevel.SUCCESS,
            f"Cluster {cluster_name} destroyed",
            action="destroy",
            nat_gateways_pending=report.nat_gateways_pending,
        )
        return report

    async def plan(self, cluster_name: str) -> DeletionPlan:
        """Describe what delete_all would remove, without changing anything."""
        with self._tracer.span("deletion.plan", cluster_name=cluster_name) as span:
            plan = DeletionPlan(cluster_name=cluster_name)

            plan.stages.append(
                DeletionStage(
                    Stage.LOAD_BALANCERS.value,
                    "load-balancer",
                    self._list_downstream_load_balancers(cluster_name),
                )
            )
            plan.stages.append(
                DeletionStage(
                    Stage.LOAD_BALANCER_SECURITY_GROUPS.value,
                    "security-group",
                    [sg["GroupId"] for sg in self._list_downstream_security_groups(cluster_name)],
                )
            )

            storage_ids: list[str] = []
            match self._discover(Stage.FILE_STORAGE, cluster_name, self._discovery.discover_storage):
                case Found(state=fs):
                    storage_ids = [mt.mount_target_id for mt in fs.mount_targets]
                    storage_ids.append(fs.file_system_id)
            plan.stages.append(DeletionStage(Stage.FILE_STORAGE.value, "efs", storage_ids))

            match self._discover(Stage.VPC, cluster_name, self._discovery.discover_vpc):
                case Found(state=vpc):
                    plan.vpc_id = vpc.vpc_id
                    plan.stages.extend(self._plan_network(cluster_name, vpc))

            plan.stages.append(
                DeletionStage(
                    Stage.ORPHAN_ELASTIC_IPS.value,
                    "elastic-ip",
                    [
                        a["AllocationId"]
                        for a in self._list_cluster_addresses(cluster_name, Stage.ORPHAN_ELASTIC_IPS)
                        if not a.get("AssociationId")
                    ],
                )
            )
            plan.stages.append(
                DeletionStage(
                    Stage.ORPHAN_NAT_GATEWAYS.value,
                    "nat-gateway",
                    [
                        n["NatGatewayId"]
                        for n in self._list_cluster_nat_gateways(cluster_name)
                        if n.get("State") not in NAT_TERMINAL_STATES
                    ],
                )
            )

            span.set_attributes(vpc_found=plan.vpc_id is not None, total=plan.total_resources)
            return plan

    def _plan_network(self, cluster_name: str, vpc: VPCState) -> list[DeletionStage]:
        vpc_id = vpc.vpc_id
        return [
            DeletionStage(
                Stage.VPC_ENDPOINTS.value,
                "vpc-endpoint",
                [e["VpcEndpointId"] for e in self._list_endpoints(vpc_id)],
            ),
            DeletionStage(
                Stage.NAT_GATEWAYS.value,
                "nat-gateway",
                [
                    n["NatGatewayId"]
                    for n in self._list_vpc_nat_gateways(vpc_id)
                    if n.get("State") != "deleted"
                ],
            ),
            DeletionStage(
                Stage.ELASTIC_IPS.value,
                "elastic-ip",
                [
                    a["AllocationId"]
                    for a in self._list_cluster_addresses(cluster_name, Stage.ELASTIC_IPS)
                ],
            ),
            DeletionStage(
                Stage.INTERNET_GATEWAY.value,
                "internet-gateway",
                [g["InternetGatewayId"] for g in self._list_internet_gateways(vpc_id)],
            ),
            DeletionStage(
                Stage.ROUTE_TABLES.value,
                "route-table",
                [rt["RouteTableId"] for rt in self._list_route_tables(vpc_id) if not _is_main(rt)],
            ),
            DeletionStage(
                Stage.SUBNETS.value,
                "subnet",
                [s["SubnetId"] for s in self._list_subnets(vpc_id)],
            ),
            DeletionStage(
                Stage.SECURITY_GROUPS.value,
                "security-group",
                [
                    sg["GroupId"]
                    for sg in self._list_security_groups(vpc_id)
                    if sg.get("GroupName") != "default"
                ],
            ),
            DeletionStage(Stage.VPC.value, "vpc", [vpc_id]),
        ]

    # -------------------------------------------------------------------------
    # Downstream artifacts (Kubernetes-created load balancers)
    # -------------------------------------------------------------------------

    async def cleanup_downstream(self, cluster_name: str, report: DeletionReport) -> None:
        """Delete load balancers and ELB security groups Kubernetes created."""
        stage = Stage.LOAD_BALANCERS
        with self._tracer.span("deletion.load_balancers", cluster_name=cluster_name) as span:
            names = self._list_downstream_load_balancers(cluster_name)
            span.set_attribute("count", len(names))
            if not names:
                self._zero_work(stage, "No Kubernetes load balancers found")
            else:
                self._start(stage, f"Deleting {len(names)} Kubernetes load balancers")
                for name in names:
                    self._delete(
                        stage,
                        name,
                        "delete load balancer",
                        self._elb.delete_load_balancer,
                        LoadBalancerName=name,
                    )
                    report.record(stage, name)
                self._done(stage, f"Deleted {len(names)} Kubernetes load balancers")

        stage = Stage.LOAD_BALANCER_SECURITY_GROUPS
        with self._tracer.span("deletion.load_balancer_security_groups") as span:
            groups = self._list_downstream_security_groups(cluster_name)
            span.set_attribute("count", len(groups))
            if not groups:
                self._zero_work(stage, "No Kubernetes ELB security groups found")
                return

            self._start(stage, f"Deleting {len(groups)} Kubernetes ELB security groups")
            for group in groups:
                group_id = group["GroupId"]
                report.rules_revoked += self.revoke_referencing_rules(group_id)
                await self.delete_security_group_with_retry(group_id)
                report.record(stage, group_id)
            self._done(stage, f"Deleted {len(groups)} Kubernetes ELB security groups")

    def _list_downstream_load_balancers(self, cluster_name: str) -> list[str]:
        stage = Stage.LOAD_BALANCERS
        tag_key = f"{K8S_CLUSTER_TAG_PREFIX}{cluster_name}"

        names: list[str] = []
        kwargs: dict[str, Any] = {}
        while True:
            response = self._describe(
                stage, cluster_name, self._elb.describe_load_balancers, **kwargs
            )
            names.extend(lb["LoadBalancerName"] for lb in response.get("LoadBalancerDescriptions", []))
            marker = response.get("NextMarker")
            if not marker:
                break
            kwargs["Marker"] = marker

        owned: list[str] = []
        for batch in _chunks(names, ELB_TAG_BATCH_SIZE):
            response = self._describe(
                stage, cluster_name, self._elb.describe_tags, LoadBalancerNames=batch
            )
            for description in response.get("TagDescriptions", []):
                if tag_key in tags_from_aws(description.get("Tags")):
                    owned.append(description["LoadBalancerName"])
        return owned

    def _list_downstream_security_groups(self, cluster_name: str) -> list[dict[str, Any]]:
        tag_key = f"{K8S_CLUSTER_TAG_PREFIX}{cluster_name}"
        response = self._describe(
            Stage.LOAD_BALANCER_SECURITY_GROUPS,
            cluster_name,
            self._network.describe_security_groups,
            Filters=[{"Name": "group-name", "Values": [f"{K8S_ELB_SECURITY_GROUP_PREFIX}*"]}],
        )
        return [
            sg
            for sg in response.get("SecurityGroups", [])
            if sg.get("GroupName", "").startswith(K8S_ELB_SECURITY_GROUP_PREFIX)
            and tag_key in tags_from_aws(sg.get("Tags"))
        ]

    def revoke_referencing_rules(self, group_id: str) -> int:
        """Revoke every ingress rule in other groups that references group_id.

        A rule referencing a group blocks its deletion, and such rules
        outlive the load balancer that created them.

        Returns:
            Number of permissions revoked.
        """
        stage = Stage.LOAD_BALANCER_SECURITY_GROUPS
        response = self._describe(
            stage,
            group_id,
            self._network.describe_security_groups,
            Filters=[{"Name": "ip-permission.group-id", "Values": [group_id]}],
        )

        revoked = 0
        for referencing in response.get("SecurityGroups", []):
            referencing_id = referencing["GroupId"]
            if referencing_id == group_id:
                continue

            permissions: list[dict[str, Any]] = []
            for permission in referencing.get("IpPermissions", []):
                pairs = [
                    {k: v for k, v in pair.items() if k in ("GroupId", "UserId")}
                    for pair in permission.get("UserIdGroupPairs", [])
                    if pair.get("GroupId") == group_id
                ]
                if not pairs:
                    continue
                rule: dict[str, Any] = {
                    "IpProtocol": permission.get("IpProtocol", "-1"),
                    "UserIdGroupPairs": pairs,
                }
                for port_key in ("FromPort", "ToPort"):
                    if port_key in permission:
                        rule[port_key] = permission[port_key]
                permissions.append(rule)

            if not permissions:
                continue

            self._delete(
                stage,
                referencing_id,
                f"revoke rules referencing {group_id}",
                self._network.revoke_security_group_ingress,
                GroupId=referencing_id,
                IpPermissions=permissions,
            )
            revoked += len(permissions)
            logger.info(
                "Revoked referencing ingress rules",
                extra={
                    "group_id": group_id,
                    "referencing_group_id": referencing_id,
                    "rule_count": len(permissions),
                },
            )
        return revoked

    async def delete_security_group_with_retry(self, group_id: str) -> None:
        """Delete a security group, retrying while dependents drain.

        Raises:
            DeletionError: On a non-transient error, or once attempts run out.
            OperationCancelledError: If the cancel event fired while waiting.
        """
        stage = Stage.LOAD_BALANCER_SECURITY_GROUPS

        async def attempt() -> None:
            try:
                self._network.delete_security_group(GroupId=group_id)
            except ClientError as e:
                if is_not_found(e):
                    return
                raise

        try:
            await retry_async(
                attempt,
                is_retryable=is_dependency_violation,
                max_attempts=self._config.sg_delete_max_attempts,
                delay_seconds=self._config.sg_delete_retry_delay_seconds,
                cancel_event=self._cancel_event,
                description=f"delete security group {group_id}",
            )
        except RetryExhaustedError as e:
            raise DeletionError(
                stage,
                group_id,
                f"failed to delete security group {group_id} after {e.attempts} attempts: "
                f"{e.last_error}",
            ) from e
        except ClientError as e:
            raise DeletionError(
                stage, group_id, f"failed to delete security group {group_id}: {e}"
            ) from e

    # -------------------------------------------------------------------------
    # File storage
    # -------------------------------------------------------------------------

    async def delete_file_storage(self, cluster_name: str, report: DeletionReport) -> None:
        """Delete the cluster's EFS mount targets, then the file system."""
        stage = Stage.FILE_STORAGE
        with self._tracer.span("deletion.file_storage", cluster_name=cluster_name) as span:
            match self._discover(stage, cluster_name, self._discovery.discover_storage):
                case Found(state=fs):
                    pass
                case _:
                    span.set_attribute("found", False)
                    self._zero_work(stage, "No EFS file system found")
                    return

            fs_id = fs.file_system_id
            span.set_attributes(found=True, file_system_id=fs_id)
            if fs.lifecycle_state in (LifecycleState.DELETING, LifecycleState.DELETED):
                self._zero_work(stage, f"EFS file system {fs_id} is already being deleted")
                return

            self._start(stage, f"Deleting EFS file system {fs_id}")
            for mount_target in self._list_mount_targets(fs_id):
                mt_id = mount_target["MountTargetId"]
                self._delete(
                    stage,
                    mt_id,
                    "delete mount target",
                    self._storage.delete_mount_target,
                    MountTargetId=mt_id,
                )
                report.record(stage, mt_id)

            async def mount_targets_gone() -> bool:
                return not self._list_mount_targets(fs_id)

            await self._wait(
                stage, fs_id, mount_targets_gone, self._config.file_system_timeout_seconds
            )

            self._delete(
                stage,
                fs_id,
                "delete file system",
                self._storage.delete_file_system,
                FileSystemId=fs_id,
            )
            report.record(stage, fs_id)
            self._done(stage, f"Deleted EFS file system {fs_id}")

    def _list_mount_targets(self, fs_id: str) -> list[dict[str, Any]]:
        try:
            response = self._storage.describe_mount_targets(FileSystemId=fs_id)
        except ClientError as e:
            if is_not_found(e):
                return []
            raise DeletionError(
                Stage.FILE_STORAGE, fs_id, f"failed to describe mount targets: {e}"
            ) from e
        return [
            mt
            for mt in response.get("MountTargets", [])
            if mt.get("LifeCycleState") != LifecycleState.DELETED.value
        ]

    # -------------------------------------------------------------------------
    # Primary network graph
    # -------------------------------------------------------------------------

    async def delete_network(self, cluster_name: str, report: DeletionReport) -> None:
        """Delete the cluster VPC and its contents in dependency order.

        A cluster without a VPC is not an error; there is nothing to delete.
        """
        match self._discover(Stage.VPC, cluster_name, self._discovery.discover_vpc):
            case Found(state=vpc):
                pass
            case _:
                self._zero_work(Stage.VPC, f"No VPC found for cluster {cluster_name}")
                return

        vpc_id = vpc.vpc_id
        report.vpc_id = vpc_id
        with self._tracer.span("deletion.network", cluster_name=cluster_name, vpc_id=vpc_id):
            await self._delete_endpoints(vpc_id, report)
            await self._delete_nat_gateways(cluster_name, vpc_id, report)
            self._delete_internet_gateways(vpc_id, report)
            self._delete_route_tables(vpc_id, report)
            self._delete_subnets(vpc_id, report)
            self._delete_security_groups(vpc_id, report)

            stage = Stage.VPC
            self._start(stage, f"Deleting VPC {vpc_id}")
            self._delete(stage, vpc_id, "delete VPC", self._network.delete_vpc, VpcId=vpc_id)
            report.record(stage, vpc_id)
            self._done(stage, f"Deleted VPC {vpc_id}")

    def _list_endpoints(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.VPC_ENDPOINTS,
            vpc_id,
            self._network.describe_vpc_endpoints,
            Filters=_vpc_filter(vpc_id),
        )
        return [
            e
            for e in response.get("VpcEndpoints", [])
            if str(e.get("State", "")).lower() not in ENDPOINT_GONE_STATES
        ]

    async def _delete_endpoints(self, vpc_id: str, report: DeletionReport) -> None:
        stage = Stage.VPC_ENDPOINTS
        with self._tracer.span("deletion.vpc_endpoints", vpc_id=vpc_id) as span:
            endpoints = self._list_endpoints(vpc_id)
            span.set_attribute("count", len(endpoints))
            if not endpoints:
                self._zero_work(stage, "No VPC endpoints found")
                return

            self._start(stage, f"Deleting {len(endpoints)} VPC endpoints")
            to_delete = [
                e["VpcEndpointId"]
                for e in endpoints
                if str(e.get("State", "")).lower() != "deleting"
            ]
            if to_delete:
                response = self._delete(
                    stage,
                    vpc_id,
                    "delete VPC endpoints",
                    self._network.delete_vpc_endpoints,
                    VpcEndpointIds=to_delete,
                )
                for item in (response or {}).get("Unsuccessful", []):
                    error = item.get("Error", {})
                    if str(error.get("Code", "")).endswith("NotFound"):
                        continue
                    raise DeletionError(
                        stage,
                        item.get("ResourceId", vpc_id),
                        f"failed to delete VPC endpoint: {error.get('Message', error)}",
                    )

            async def endpoints_gone() -> bool:
                return not self._list_endpoints(vpc_id)

            await self._wait(stage, vpc_id, endpoints_gone, self._config.endpoint_timeout_seconds)
            for endpoint_id in (e["VpcEndpointId"] for e in endpoints):
                report.record(stage, endpoint_id)
            self._done(stage, f"Deleted {len(endpoints)} VPC endpoints")

    def _list_vpc_nat_gateways(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.NAT_GATEWAYS,
            vpc_id,
            self._network.describe_nat_gateways,
            Filters=_vpc_filter(vpc_id),
        )
        return response.get("NatGateways", [])

    async def _delete_nat_gateways(
        self, cluster_name: str, vpc_id: str, report: DeletionReport
    ) -> None:
        stage = Stage.NAT_GATEWAYS
        with self._tracer.span("deletion.nat_gateways", vpc_id=vpc_id) as span:
            # Capture before deleting: once a gateway reaches "deleted" its
            # address association is no longer visible.
            captured = {
                a["AllocationId"]
                for a in self._list_cluster_addresses(cluster_name, Stage.ELASTIC_IPS)
            }
            span.set_attribute("elastic_ips_captured", len(captured))

            tracked: list[str] = []
            for nat in self._list_vpc_nat_gateways(vpc_id):
                nat_id = nat["NatGatewayId"]
                state = nat.get("State")
                if state == "deleted":
                    continue
                tracked.append(nat_id)
                if state == "deleting":
                    continue
                self._delete(
                    stage,
                    nat_id,
                    "delete NAT gateway",
                    self._network.delete_nat_gateway,
                    NatGatewayId=nat_id,
                )

            span.set_attribute("nat_gateway_count", len(tracked))
            if tracked:
                self._start(stage, f"Waiting for {len(tracked)} NAT gateways to be deleted")

                async def all_deleted() -> bool:
                    states = {
                        n["NatGatewayId"]: n.get("State")
                        for n in self._list_vpc_nat_gateways(vpc_id)
                    }
                    return all(states.get(i, "deleted") in NAT_TERMINAL_STATES for i in tracked)

                await self._wait(
                    stage, vpc_id, all_deleted, self._config.nat_gateway_timeout_seconds
                )
                for nat_id in tracked:
                    report.record(stage, nat_id)
                self._done(stage, f"Deleted {len(tracked)} NAT gateways")
            else:
                self._zero_work(stage, "No NAT gateways found")

            if captured:
                self._release_addresses(cluster_name, Stage.ELASTIC_IPS, report, only=captured)

    def _list_cluster_addresses(self, cluster_name: str, stage: Stage) -> list[dict[str, Any]]:
        response = self._describe(
            stage,
            cluster_name,
            self._network.describe_addresses,
            Filters=[{"Name": "domain", "Values": ["vpc"]}, cluster_filter(cluster_name)],
        )
        return [
            a
            for a in response.get("Addresses", [])
            if a.get("AllocationId")
            and tags_from_aws(a.get("Tags")).get(TAG_CLUSTER_NAME) == cluster_name
        ]

    def _release_addresses(
        self,
        cluster_name: str,
        stage: Stage,
        report: DeletionReport,
        only: set[str] | None = None,
    ) -> None:
        """Release unassociated cluster elastic IPs. Individual failures only warn."""
        released = skipped = 0
        for address in self._list_cluster_addresses(cluster_name, stage):
            allocation_id = address["AllocationId"]
            if only is not None and allocation_id not in only:
                continue
            if address.get("AssociationId"):
                skipped += 1
                logger.info(
                    "Elastic IP still associated, skipping",
                    extra={
                        "allocation_id": allocation_id,
                        "association_id": address["AssociationId"],
                    },
                )
                continue
            try:
                self._network.release_address(AllocationId=allocation_id)
            except ClientError as e:
                if not is_not_found(e):
                    report.warn(f"failed to release elastic IP {allocation_id}: {e}")
                continue
            released += 1
            report.elastic_ips_released.append(allocation_id)
            report.record(stage, allocation_id)

        report.elastic_ips_skipped += skipped
        if released or skipped:
            emit(
                self._status,
                StatusLevel.INFO,
                f"Released {released} elastic IPs ({skipped} still associated)",
                resource=stage.value,
                action="release",
                released=released,
                skipped=skipped,
            )

    def _list_internet_gateways(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.INTERNET_GATEWAY,
            vpc_id,
            self._network.describe_internet_gateways,
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}],
        )
        return response.get("InternetGateways", [])

    def _delete_internet_gateways(self, vpc_id: str, report: DeletionReport) -> None:
        stage = Stage.INTERNET_GATEWAY
        gateways = self._list_internet_gateways(vpc_id)
        if not gateways:
            self._zero_work(stage, "No internet gateway found")
            return

        for gateway in gateways:
            igw_id = gateway["InternetGatewayId"]
            self._start(stage, f"Deleting internet gateway {igw_id}")
            self._delete(
                stage,
                igw_id,
                "detach internet gateway",
                self._network.detach_internet_gateway,
                InternetGatewayId=igw_id,
                VpcId=vpc_id,
            )
            self._delete(
                stage,
                igw_id,
                "delete internet gateway",
                self._network.delete_internet_gateway,
                InternetGatewayId=igw_id,
            )
            report.record(stage, igw_id)
            self._done(stage, f"Deleted internet gateway {igw_id}")

    def _list_route_tables(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.ROUTE_TABLES,
            vpc_id,
            self._network.describe_route_tables,
            Filters=_vpc_filter(vpc_id),
        )
        return response.get("RouteTables", [])

    def _delete_route_tables(self, vpc_id: str, report: DeletionReport) -> None:
        stage = Stage.ROUTE_TABLES
        # The main table goes away with the VPC
        tables = [rt for rt in self._list_route_tables(vpc_id) if not _is_main(rt)]
        if not tables:
            self._zero_work(stage, "No route tables to delete")
            return

        self._start(stage, f"Deleting {len(tables)} route tables")
        for table in tables:
            table_id = table["RouteTableId"]
            for association in table.get("Associations", []):
                association_id = association.get("RouteTableAssociationId")
                if association.get("Main") or not association_id:
                    continue
                try:
                    self._network.disassociate_route_table(AssociationId=association_id)
                except ClientError as e:
                    if not is_not_found(e):
                        report.warn(
                            f"failed to disassociate route table {table_id} "
                            f"({association_id}): {e}"
                        )
            self._delete(
                stage,
                table_id,
                "delete route table",
                self._network.delete_route_table,
                RouteTableId=table_id,
            )
            report.record(stage, table_id)
        self._done(stage, f"Deleted {len(tables)} route tables")

    def _list_subnets(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.SUBNETS, vpc_id, self._network.describe_subnets, Filters=_vpc_filter(vpc_id)
        )
        return response.get("Subnets", [])

    def _delete_subnets(self, vpc_id: str, report: DeletionReport) -> None:
        stage = Stage.SUBNETS
        subnets = self._list_subnets(vpc_id)
        if not subnets:
            self._zero_work(stage, "No subnets found")
            return

        self._start(stage, f"Deleting {len(subnets)} subnets")
        for subnet in subnets:
            subnet_id = subnet["SubnetId"]
            self._delete(
                stage, subnet_id, "delete subnet", self._network.delete_subnet, SubnetId=subnet_id
            )
            report.record(stage, subnet_id)
        self._done(stage, f"Deleted {len(subnets)} subnets")

    def _list_security_groups(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.SECURITY_GROUPS,
            vpc_id,
            self._network.describe_security_groups,
            Filters=_vpc_filter(vpc_id),
        )
        return response.get("SecurityGroups", [])

    def _delete_security_groups(self, vpc_id: str, report: DeletionReport) -> None:
        stage = Stage.SECURITY_GROUPS
        # The default group cannot be deleted; it goes away with the VPC
        groups = [
            sg for sg in self._list_security_groups(vpc_id) if sg.get("GroupName") != "default"
        ]
        if not groups:
            self._zero_work(stage, "No security groups to delete")
            return

        self._start(stage, f"Deleting {len(groups)} security groups")
        for group in groups:
            group_id = group["GroupId"]
            self._delete(
                stage,
                group_id,
                "delete security group",
                self._network.delete_security_group,
                GroupId=group_id,
            )
            report.record(stage, group_id)
        self._done(stage, f"Deleted {len(groups)} security groups")

    # -------------------------------------------------------------------------
    # Orphan sweep
    # -------------------------------------------------------------------------

    async def sweep_orphans(self, cluster_name: str, report: DeletionReport) -> None:
        """Clean up cluster-tagged leftovers of earlier, partial runs."""
        with self._tracer.span("deletion.orphan_sweep", cluster_name=cluster_name) as span:
            self._release_addresses(cluster_name, Stage.ORPHAN_ELASTIC_IPS, report)

            stage = Stage.ORPHAN_NAT_GATEWAYS
            pending = 0
            for nat in self._list_cluster_nat_gateways(cluster_name):
                nat_id = nat["NatGatewayId"]
                state = nat.get("State")
                if state in NAT_TERMINAL_STATES:
                    continue
                pending += 1
                if state in ("available", "pending"):
                    self._delete(
                        stage,
                        nat_id,
                        "delete NAT gateway",
                        self._network.delete_nat_gateway,
                        NatGatewayId=nat_id,
                    )
                    report.record(stage, nat_id)

            report.nat_gateways_pending = pending
            span.set_attributes(
                nat_gateways_pending=pending,
                elastic_ips_released=len(report.elastic_ips_released),
            )
            if pending:
                emit(
                    self._status,
                    StatusLevel.WARNING,
                    f"{pending} NAT gateways still deleting; their elastic IPs are released "
                    "on the next run",
                    resource=stage.value,
                    action="delete",
                    pending=pending,
                )

    def _list_cluster_nat_gateways(self, cluster_name: str) -> list[dict[str, Any]]:
        response = self._describe(
            Stage.ORPHAN_NAT_GATEWAYS,
            cluster_name,
            self._network.describe_nat_gateways,
            Filters=[cluster_filter(cluster_name)],
        )
        return [
            n
            for n in response.get("NatGateways", [])
            if tags_from_aws(n.get("Tags")).get(TAG_CLUSTER_NAME) == cluster_name
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _discover(self, stage: Stage, cluster_name: str, discover: Callable[[str], Any]) -> Any:
        try:
            return discover(cluster_name)
        except DiscoveryError as e:
            raise DeletionError(stage, cluster_name, str(e)) from e

    def _describe(
        self, stage: Stage, resource_id: str, call: Callable[..., dict[str, Any]], **kwargs: Any
    ) -> dict[str, Any]:
        try:
            return call(**kwargs)
        except ClientError as e:
            operation = e.operation_name or getattr(call, "__name__", "describe")
            raise DeletionError(stage, resource_id, f"{operation} failed: {e}") from e

    def _delete(
        self,
        stage: Stage,
        resource_id: str,
        action: str,
        call: Callable[..., dict[str, Any]],
        **kwargs: Any,
    ) -> dict[str, Any] | None:
        """Run a mutating call. "Not found" counts as already done."""
        try:
            response = call(**kwargs)
        except ClientError as e:
            if is_not_found(e):
                logger.info(
                    "Resource already gone",
                    extra={"stage": stage.value, "resource_id": resource_id, "action": action},
                )
                return None
            raise DeletionError(stage, resource_id, f"failed to {action} {resource_id}: {e}") from e
        logger.info(
            "Deleted resource" if action.startswith("delete") else "Updated resource",
            extra={"stage": stage.value, "resource_id": resource_id, "action": action},
        )
        return response

    async def _wait(
        self,
        stage: Stage,
        resource_id: str,
        check: Callable[[], Any],
        timeout_seconds: float,
    ) -> None:
        try:
            await wait_until(
                check,
                timeout_seconds=timeout_seconds,
                poll_interval_seconds=self._config.poll_interval_seconds,
                cancel_event=self._cancel_event,
                description=f"{stage.value} deletion",
            )
        except WaitTimeoutError as e:
            raise DeletionError(stage, resource_id, str(e)) from e

    def _start(self, stage: Stage, message: str) -> None:
        emit(self._status, StatusLevel.PROGRESS, message, resource=stage.value, action="delete")

    def _done(self, stage: Stage, message: str) -> None:
        emit(self._status, StatusLevel.SUCCESS, message, resource=stage.value, action="delete")

    def _zero_work(self, stage: Stage, message: str) -> None:
        emit(self._status, StatusLevel.INFO, message, resource=stage.value, action="delete")


def _is_main(route_table: dict[str, Any]) -> bool:
    return any(a.get("Main") for a in route_table.get("Associations", []))
