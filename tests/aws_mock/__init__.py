"""AWS API mock for integration testing.

In-memory implementations of the EC2, EFS and classic ELB calls the engine
makes, with the same method names, keyword arguments and response shapes as
boto3. They enforce AWS's dependency rules so a wrong deletion order fails
the same way it would in a real account.

Key Features:
- In-memory state for VPC networking, EFS and load balancers
- Asynchronous deletion (NAT gateways, VPC endpoints, mount targets)
- Error injection for testing failure scenarios
- Call recording for ordering assertions

Usage:
    from aws_mock import MockAWSAccount

    account = MockAWSAccount()
    seeded = account.seed_cluster("demo")
    report = await DeletionOrchestrator(account.clients, config).delete_all("demo")
    assert account.resources_of(seeded) == []
"""

from .account import MockAWSAccount, SeededCluster
from .base import MockClientBase, aws_tags, client_error
from .ec2 import MockEC2Client
from .efs import MockEFSClient
from .elb import MockELBClient

__all__ = [
    "MockAWSAccount",
    "MockClientBase",
    "MockEC2Client",
    "MockEFSClient",
    "MockELBClient",
    "SeededCluster",
    "aws_tags",
    "client_error",
]
