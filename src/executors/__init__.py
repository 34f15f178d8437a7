"""
Executors package.

Executors are the thin cloud API wrappers the convergence engine drives
(QingCloud IaaS by default).
"""

from executors.base import (
    EIPAPI,
    JobAPI,
    LoadBalancerExecutor,
    SecurityGroupExecutor,
    TagAPI,
)

__all__ = [
    "EIPAPI",
    "JobAPI",
    "LoadBalancerExecutor",
    "SecurityGroupExecutor",
    "TagAPI",
]
