"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockAWSAccount  # noqa: E402

from provisioner.config import EngineConfig  # noqa: E402
from provisioner.models import ClusterDocument  # noqa: E402
from provisioner.status import CollectingStatusSink  # noqa: E402
from provisioner.tracing import LoggingTracer  # noqa: E402

CLUSTER_NAME = "demo"


@pytest.fixture
def account() -> MockAWSAccount:
    """A fresh in-memory AWS account."""
    return MockAWSAccount()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration with waits shortened for tests."""
    return EngineConfig(
        region="us-west-2",
        nat_gateway_timeout_seconds=5,
        endpoint_timeout_seconds=5,
        file_system_timeout_seconds=5,
        poll_interval_seconds=0.01,
        sg_delete_max_attempts=3,
        sg_delete_retry_delay_seconds=0.01,
    )


@pytest.fixture
def status_sink() -> CollectingStatusSink:
    return CollectingStatusSink()


@pytest.fixture
def tracer() -> LoggingTracer:
    return LoggingTracer(keep_finished=True)


def document_data(**aws_overrides: object) -> dict:
    """Raw data of a valid cluster document; AWS fields can be overridden."""
    aws: dict = {
        "region": "us-west-2",
        "kubernetes_version": "1.34",
        "vpc_cidr_block": "10.10.0.0/16",
        "node_groups": {
            "general": {"instance": "m5.xlarge", "min_nodes": 1, "max_nodes": 3},
            "user": {
                "instance": "m5.2xlarge",
                "min_nodes": 0,
                "max_nodes": 5,
                "taints": [{"key": "dedicated", "value": "user", "effect": "NoSchedule"}],
            },
        },
        "tags": {"team": "platform"},
        "efs": {"enabled": True},
    }
    aws.update(aws_overrides)
    return {"project_name": CLUSTER_NAME, "provider": "aws", "amazon_web_services": aws}


@pytest.fixture
def cluster_document() -> ClusterDocument:
    return ClusterDocument.model_validate(document_data())
