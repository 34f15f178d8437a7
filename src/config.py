"""
Configuration module for the load balancer controller.

Loads configuration from environment variables. The cloud configuration is
immutable and handed to the convergence engine at construction time.
"""

import os
from dataclasses import dataclass, field
from typing import Tuple


def _split_list(value: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


@dataclass(frozen=True)
class CloudConfig:
    """QingCloud account, cluster and API configuration."""

    zone: str = "ap2a"
    user_id: str = ""
    cluster_id: str = "kubernetes"
    default_vxnet: str = ""
    tag_ids: Tuple[str, ...] = ()
    api_endpoint: str = "https://api.qingcloud.com/iaas/"
    access_key_id: str = ""
    secret_access_key: str = field(default="", repr=False)  # Never log secret
    job_poll_interval: float = 3.0  # seconds
    job_timeout: float = 300.0  # seconds
    eip_bandwidth: int = 4  # Mbps
    eip_billing_mode: str = "traffic"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        secret = os.getenv("QC_SECRET_ACCESS_KEY", "")
        if not secret:
            raise ValueError(
                "QC_SECRET_ACCESS_KEY environment variable must be set. "
                "API credentials cannot be empty."
            )

        return cls(
            zone=os.getenv("QC_ZONE", "ap2a"),
            user_id=os.getenv("QC_USER_ID", ""),
            cluster_id=os.getenv("CLUSTER_ID", "kubernetes"),
            default_vxnet=os.getenv("DEFAULT_VXNET", ""),
            tag_ids=_split_list(os.getenv("QC_TAG_IDS", "")),
            api_endpoint=os.getenv("QC_API_ENDPOINT", "https://api.qingcloud.com/iaas/"),
            access_key_id=os.getenv("QC_ACCESS_KEY_ID", ""),
            secret_access_key=secret,
            job_poll_interval=float(os.getenv("JOB_POLL_INTERVAL", "3")),
            job_timeout=float(os.getenv("JOB_TIMEOUT", "300")),
            eip_bandwidth=int(os.getenv("EIP_BANDWIDTH", "4")),
            eip_billing_mode=os.getenv("EIP_BILLING_MODE", "traffic"),
        )


@dataclass
class ControllerConfig:
    """Reconciliation worker configuration."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 600.0  # overall deadline per call, seconds

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "600")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )
