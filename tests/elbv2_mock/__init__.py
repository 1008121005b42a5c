"""ELBv2 API Mock for Integration Testing.

This module provides an in-memory implementation of the boto3 ``elbv2``
client that enables synthesis tests without AWS connectivity.

Key Features:
- In-memory state for load balancers, target groups, listeners and rules
- Tags, attributes, capacity reservations and extra listener certificates
- Server-side constraints: ResourceInUse on referenced target groups,
  deletion protection, PriorityInUse, TooManyRules, DescribeTags ARN limit
- Call recording, with mutating calls recorded separately
- Error injection for testing failure scenarios

Usage:
    from elbv2_mock import MockELBV2Client

    client = MockELBV2Client()
    deployer = StackDeployer(config, client, metrics)
    deployer.deploy(stack)

    # Assert on mock state
    assert len(client.load_balancers) == 1
    assert client.call_names(mutating_only=True) == [...]
"""

from .client import DEFAULT_VPC_ID, MockELBV2Client, MockPaginator
from .errors import InjectedError, client_error

__all__ = [
    "DEFAULT_VPC_ID",
    "InjectedError",
    "MockELBV2Client",
    "MockPaginator",
    "client_error",
]
