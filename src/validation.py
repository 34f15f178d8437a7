"""
Annotation Validation - JSON schema checks for load balancer annotations.

Annotation values are plain strings on the Service, so each recognized key is
described by a string schema and validated before desired state is built.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = "service.beta.kubernetes.io/qingcloud-load-balancer-"

ANNOTATION_EIP_IDS = ANNOTATION_PREFIX + "eip-ids"
ANNOTATION_EIP_STRATEGY = ANNOTATION_PREFIX + "eip-strategy"
ANNOTATION_LB_TYPE = ANNOTATION_PREFIX + "type"
ANNOTATION_VXNET_ID = ANNOTATION_PREFIX + "vxnet-id"
ANNOTATION_SOURCE_RANGES = ANNOTATION_PREFIX + "source-ranges"

EIP_ID_PATTERN = r"^eip-[0-9a-z]{8}$"

_CIDR = r"[0-9]{1,3}(\.[0-9]{1,3}){3}/[0-9]{1,2}"

ANNOTATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        ANNOTATION_EIP_IDS: {
            "type": "string",
            "pattern": r"^\s*eip-[0-9a-z]{8}\s*(,\s*eip-[0-9a-z]{8}\s*)*$",
        },
        ANNOTATION_EIP_STRATEGY: {"type": "string", "enum": ["reuse", "allocate"]},
        ANNOTATION_LB_TYPE: {"type": "string", "enum": ["0", "1", "2", "3"]},
        ANNOTATION_VXNET_ID: {"type": "string", "pattern": r"^vxnet-[0-9a-z]+$"},
        ANNOTATION_SOURCE_RANGES: {
            "type": "string",
            "pattern": rf"^\s*{_CIDR}\s*(,\s*{_CIDR}\s*)*$",
        },
    },
}


def validate_annotations(annotations: Dict[str, str]) -> Tuple[bool, Optional[str]]:
    """
    Validate the load balancer annotations of a Service.

    Unrelated annotations are ignored.

    Args:
        annotations: The Service annotations

    Returns:
        Tuple of (is_valid, error_message)
    """
    relevant = {k: v for k, v in annotations.items() if k.startswith(ANNOTATION_PREFIX)}
    try:
        validator = Draft7Validator(ANNOTATION_SCHEMA)
        errors = sorted(validator.iter_errors(relevant), key=lambda e: list(e.path))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
