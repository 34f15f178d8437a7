"""QingCloud executors."""

from executors.qingcloud.client import QingCloudClient
from executors.qingcloud.executor import (
    QingCloudEIPAPI,
    QingCloudJobAPI,
    QingCloudLoadBalancerExecutor,
    QingCloudSecurityGroupExecutor,
    QingCloudTagAPI,
)

__all__ = [
    "QingCloudClient",
    "QingCloudEIPAPI",
    "QingCloudJobAPI",
    "QingCloudLoadBalancerExecutor",
    "QingCloudSecurityGroupExecutor",
    "QingCloudTagAPI",
    "new_engine",
]


def new_engine(config, on_phase=None):
    """Build a LoadBalancerEngine wired to the QingCloud API."""
    from loadbalancer import LoadBalancerEngine

    client = QingCloudClient(config)
    return LoadBalancerEngine(
        config=config,
        lb_executor=QingCloudLoadBalancerExecutor(client),
        sg_executor=QingCloudSecurityGroupExecutor(client),
        eip_api=QingCloudEIPAPI(client),
        job_api=QingCloudJobAPI(client),
        tag_api=QingCloudTagAPI(client),
        on_phase=on_phase,
    )
