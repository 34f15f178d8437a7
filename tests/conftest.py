"""Pytest configuration and fixtures."""

import pytest

from config import CloudConfig

from fakes import FakeCloud, build_engine, make_node, make_service


@pytest.fixture
def cloud_config():
    """Cloud configuration with fast job polling."""
    return CloudConfig(
        zone="ap2a",
        user_id="usr-test",
        cluster_id="prod",
        default_vxnet="vxnet-default",
        job_poll_interval=0.01,
        job_timeout=1.0,
    )


@pytest.fixture
def tagged_config():
    return CloudConfig(
        zone="ap2a",
        user_id="usr-test",
        cluster_id="prod",
        default_vxnet="vxnet-default",
        tag_ids=("tag-k8s",),
        job_poll_interval=0.01,
        job_timeout=1.0,
    )


@pytest.fixture
def cloud():
    """In-memory cloud shared by the fake executors."""
    return FakeCloud(user_id="usr-test")


@pytest.fixture
def engine(cloud_config, cloud):
    return build_engine(cloud_config, cloud)


@pytest.fixture
def service():
    return make_service()


@pytest.fixture
def nodes():
    return [make_node("i-aaaa0001", "10.0.0.1"), make_node("i-aaaa0002", "10.0.0.2")]
