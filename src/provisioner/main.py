"""Engine entry points: logging setup and the deploy/destroy flows.

Flows:
    create path:  validate -> discover VPC -> discover storage -> reconcile
    destroy path: delete_all (or plan for a dry run)
    upgrade path: version gate, then the create path

SIGTERM and SIGINT set a cancel event; waits inside the engine observe it and
stop with OperationCancelledError instead of polling on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .clients import CloudClients, create_clients
from .config import EngineConfig
from .deletion import DeletionOrchestrator, DeletionReport
from .discovery import Discovery
from .models import ClusterDocument
from .reconciler import ReconcileResult, StorageReconciler, VpcReconciler
from .state import DeletionPlan, Found
from .status import LoggingStatusSink, StatusLevel, StatusSink, emit
from .tracing import LoggingTracer, Tracer
from .validator import validate_cluster

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: EngineConfig) -> None:
    """Configure JSON (default) or plain text logging on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    if config.json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(config.logging_level)

    # Reduce noise from the AWS SDK
    for noisy in ("boto3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def cluster_name_of(document: ClusterDocument) -> str:
    return document.project_name


def _clients_for(document: ClusterDocument, config: EngineConfig) -> CloudClients:
    aws = document.amazon_web_services
    region = (aws.region if aws else "") or config.region
    return create_clients(region)


def install_signal_handlers(cancel_event: asyncio.Event) -> None:
    """Set cancel_event on SIGTERM or SIGINT."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))


async def deploy_storage(
    document: ClusterDocument,
    clients: CloudClients,
    config: EngineConfig,
    status: StatusSink | None = None,
    tracer: Tracer | None = None,
) -> ReconcileResult:
    """Validate the document and reconcile the cluster's shared file storage.

    Raises:
        ConfigValidationError: If the document is invalid.
        RuntimeError: If the cluster VPC does not exist yet.
        ReconcileError: If reconciliation is refused or fails.
    """
    validate_cluster(document)
    aws = document.amazon_web_services
    assert aws is not None
    cluster_name = cluster_name_of(document)

    discovery = Discovery(clients.network, clients.storage, tracer)
    discovered_vpc = discovery.discover_vpc(cluster_name)
    VpcReconciler().verify(aws.vpc_cidr_block, discovered_vpc)

    match discovered_vpc:
        case Found(state=vpc):
            pass
        case _:
            raise RuntimeError(
                f"no VPC found for cluster {cluster_name}; the network must exist "
                "before file storage can be reconciled"
            )

    reconciler = StorageReconciler(clients.storage, config, status, tracer)
    result = await reconciler.reconcile(
        aws.efs,
        cluster_name,
        vpc,
        discovery.discover_storage(cluster_name),
        user_tags=aws.tags,
    )
    emit(
        status,
        StatusLevel.SUCCESS,
        f"File storage reconciled ({result.action.value})",
        resource="efs",
        action="reconcile",
    )
    return result


async def destroy(
    document: ClusterDocument,
    clients: CloudClients,
    config: EngineConfig,
    status: StatusSink | None = None,
    tracer: Tracer | None = None,
    cancel_event: asyncio.Event | None = None,
) -> DeletionReport:
    orchestrator = DeletionOrchestrator(clients, config, status, tracer, cancel_event)
    return await orchestrator.delete_all(cluster_name_of(document))


async def plan_destroy(
    document: ClusterDocument,
    clients: CloudClients,
    config: EngineConfig,
    tracer: Tracer | None = None,
) -> DeletionPlan:
    orchestrator = DeletionOrchestrator(clients, config, tracer=tracer)
    return await orchestrator.plan(cluster_name_of(document))


async def run_destroy(
    document: ClusterDocument,
    config: EngineConfig,
    dry_run: bool = False,
) -> DeletionReport | DeletionPlan:
    """Destroy (or plan destroying) a cluster against real AWS clients."""
    clients = _clients_for(document, config)
    tracer = LoggingTracer()
    if dry_run:
        return await plan_destroy(document, clients, config, tracer)

    cancel_event = asyncio.Event()
    install_signal_handlers(cancel_event)
    return await destroy(document, clients, config, LoggingStatusSink(), tracer, cancel_event)


async def run_deploy_storage(document: ClusterDocument, config: EngineConfig) -> ReconcileResult:
    clients = _clients_for(document, config)
    return await deploy_storage(document, clients, config, LoggingStatusSink(), LoggingTracer())


def run() -> None:
    """Entry point for the provisioner CLI."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    run()
