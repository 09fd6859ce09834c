"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for remote_mock and helpers imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from helpers import CLUSTER_STACK  # noqa: E402

from stack_controller.config import Config, RetryPolicy  # noqa: E402

FIXTURES_DIR = tests_path / "fixtures"


@pytest.fixture
def nexus_template_path() -> Path:
    """Nexus on ECS template with short-form intrinsics."""
    return FIXTURES_DIR / "nexus.yml"


@pytest.fixture
def nexus_parameters() -> dict[str, str]:
    """Parameter values for the Nexus template."""
    return {
        "ClusterStackName": CLUSTER_STACK,
        "SubnetIds": "subnet-a,subnet-b",
        "HostedZoneName": "example.com.",
        "CertificateArn": "arn:aws:acm:us-east-1:123456789012:certificate/abc",
    }


@pytest.fixture
def cluster_exports() -> dict[str, str]:
    """Exports published by the cluster stack the Nexus template imports from."""
    return {
        f"{CLUSTER_STACK}-VpcId": "vpc-0123",
        f"{CLUSTER_STACK}-EcsLoadBalancerSecurityGroupId": "sg-cluster",
        f"{CLUSTER_STACK}-MountPath": "/mnt/efs",
        f"{CLUSTER_STACK}-EcsServiceRole": "ecs-service-role",
        f"{CLUSTER_STACK}-ClusterName": "cluster-1",
    }


@pytest.fixture
def fast_config(tmp_path: Path) -> Config:
    """Configuration with short timeouts and no backoff delay."""
    return Config(
        stack_name="nexus",
        state_file=tmp_path / "state.json",
        remote_file=tmp_path / "remote.json",
        max_concurrency=4,
        action_timeout_seconds=5,
        readiness_timeout_seconds=1,
        retry=RetryPolicy(
            max_attempts=3,
            backoff_base_seconds=0.0,
            max_backoff_seconds=0.01,
            poll_interval_seconds=0.001,
        ),
    )
