"""
Desired state builder.

Derives the DesiredLoadBalancer for one reconciliation call from a Service,
its backend Nodes, the Service annotations and the cloud configuration.
"""

import hashlib
import logging
import re
from typing import List, Optional, Sequence

from config import CloudConfig
from errors import ValidationError
from k8s import Node, Service
from models import BackendNode, DesiredLoadBalancer, EIPSpec, EIPStrategy, Listener
from validation import (
    ANNOTATION_EIP_IDS,
    ANNOTATION_EIP_STRATEGY,
    ANNOTATION_LB_TYPE,
    ANNOTATION_SOURCE_RANGES,
    ANNOTATION_VXNET_ID,
    EIP_ID_PATTERN,
    validate_annotations,
)

logger = logging.getLogger(__name__)

NAME_PREFIX = "k8s_lb"
MAX_NAME_LENGTH = 64
_DIGEST_LENGTH = 8

SUPPORTED_PROTOCOLS = ("tcp", "udp")
DEFAULT_SOURCE = "0.0.0.0/0"


def load_balancer_name(cluster_id: str, namespace: str, name: str) -> str:
    """
    Derive the cloud resource name of a Service's load balancer.

    Namespace and name are DNS labels and never contain '_', so the joined
    form is unique per (cluster, namespace, name). Overlong names keep a
    prefix and get a digest of the full name appended.
    """
    full = f"{NAME_PREFIX}_{cluster_id}_{namespace}_{name}"
    if len(full) <= MAX_NAME_LENGTH:
        return full
    digest = hashlib.sha256(full.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    return f"{full[: MAX_NAME_LENGTH - _DIGEST_LENGTH - 1]}_{digest}"


def service_load_balancer_name(cfg: CloudConfig, service: Service) -> str:
    return load_balancer_name(
        cfg.cluster_id, service.metadata.namespace, service.metadata.name
    )


def _split(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


def parse_eip_spec(annotations: dict) -> EIPSpec:
    """Parse the EIP strategy and reuse ids from annotations."""
    ids = _split(annotations.get(ANNOTATION_EIP_IDS, ""))
    for eip_id in ids:
        if not re.match(EIP_ID_PATTERN, eip_id):
            raise ValidationError(f"Malformed EIP id '{eip_id}'")

    raw_strategy = annotations.get(ANNOTATION_EIP_STRATEGY)
    if raw_strategy is None:
        strategy = EIPStrategy.REUSE if ids else EIPStrategy.ALLOCATE
    else:
        try:
            strategy = EIPStrategy(raw_strategy)
        except ValueError:
            raise ValidationError(f"Unknown EIP strategy '{raw_strategy}'")

    if strategy == EIPStrategy.REUSE and not ids:
        raise ValidationError(
            f"EIP strategy 'reuse' requires annotation {ANNOTATION_EIP_IDS}"
        )
    # deduplicate, keeping annotation order
    return EIPSpec(strategy=strategy, ids=tuple(dict.fromkeys(ids)))


def build_listeners(service: Service) -> List[Listener]:
    listeners = []
    seen = set()
    for port in service.spec.ports:
        protocol = port.protocol.lower()
        if protocol not in SUPPORTED_PROTOCOLS:
            raise ValidationError(
                f"Unsupported protocol '{port.protocol}' on port {port.port}"
            )
        if not port.node_port:
            raise ValidationError(f"Port {port.port} has no nodePort assigned")
        if (protocol, port.port) in seen:
            raise ValidationError(f"Duplicate port {protocol}/{port.port}")
        seen.add((protocol, port.port))
        listeners.append(Listener(protocol=protocol, port=port.port, node_port=port.node_port))
    return listeners


def build_backends(nodes: Optional[Sequence[Node]]) -> List[BackendNode]:
    backends = {}
    for node in nodes or ():
        backends[node.instance_id] = BackendNode(
            node_id=node.instance_id, private_ip=node.internal_ip
        )
    return sorted(backends.values(), key=lambda b: b.node_id)


def build_desired(
    cfg: CloudConfig,
    service: Service,
    nodes: Optional[Sequence[Node]] = None,
) -> DesiredLoadBalancer:
    """
    Build the desired load balancer for a Service.

    Raises:
        ValidationError: If the Service has no ports or carries malformed
            load balancer annotations.
    """
    annotations = service.annotations
    is_valid, error = validate_annotations(annotations)
    if not is_valid:
        raise ValidationError(f"Invalid annotations on {service.key}: {error}")

    listeners = build_listeners(service)
    if not listeners:
        raise ValidationError(f"Service {service.key} exposes no ports")

    source_ranges = list(service.spec.load_balancer_source_ranges)
    if not source_ranges:
        source_ranges = _split(annotations.get(ANNOTATION_SOURCE_RANGES, ""))

    desired = DesiredLoadBalancer(
        cluster_id=cfg.cluster_id,
        namespace=service.metadata.namespace,
        service_name=service.metadata.name,
        name=service_load_balancer_name(cfg, service),
        lb_type=int(annotations.get(ANNOTATION_LB_TYPE, "0")),
        listeners=tuple(listeners),
        backends=tuple(build_backends(nodes)),
        eip=parse_eip_spec(annotations),
        vxnet_id=annotations.get(ANNOTATION_VXNET_ID, cfg.default_vxnet),
        source_ranges=tuple(source_ranges or [DEFAULT_SOURCE]),
        tag_ids=tuple(cfg.tag_ids),
    )
    logger.debug(
        f"Desired load balancer for {service.key}: {desired.name}, "
        f"{len(desired.listeners)} listener(s), {len(desired.backends)} backend(s), "
        f"eip strategy {desired.eip.strategy.value}"
    )
    return desired
