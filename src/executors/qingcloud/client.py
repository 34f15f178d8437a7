"""
QingCloud IaaS API client.

Signs requests with HmacSHA256 (signature version 1), sends them with
aiohttp and maps API return codes onto the error taxonomy.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import aiohttp

from config import CloudConfig
from errors import (
    ConflictError,
    LoadBalancerError,
    NotFoundError,
    TransientCloudError,
    ValidationError,
)

logger = logging.getLogger(__name__)

API_VERSION = "1"

# ret_code values returned by the IaaS API
RET_OK = 0
RET_INVALID_PARAMS = (1100, 1400)
RET_NOT_FOUND = 2100
RET_IN_USE = 2400
RET_BUSY = (2500, 5000, 5100, 5200, 5300)


def flatten_params(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """
    Flatten nested params into the API's dotted form.

    Lists become 1-based indexes ("eips.1"), dicts become dotted keys
    ("listeners.1.listener_port"). None values are dropped.
    """
    flat: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            flat.extend(flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value, start=1):
                if isinstance(item, dict):
                    flat.extend(flatten_params(item, f"{name}.{i}"))
                else:
                    flat.append((f"{name}.{i}", str(item)))
        elif isinstance(value, bool):
            flat.append((name, "1" if value else "0"))
        else:
            flat.append((name, str(value)))
    return flat


def _quote(value: str) -> str:
    return quote(value, safe="-_.~")


def classify_error(ret_code: int, message: str) -> LoadBalancerError:
    """Map an API ret_code to a typed error."""
    if ret_code == RET_NOT_FOUND:
        return NotFoundError(message, code=ret_code)
    if ret_code in RET_INVALID_PARAMS:
        return ValidationError(message, code=ret_code)
    if ret_code == RET_IN_USE:
        return ConflictError(message, code=ret_code)
    if ret_code in RET_BUSY:
        return TransientCloudError(message, code=ret_code)
    return LoadBalancerError(message, code=ret_code)


class QingCloudClient:
    """Minimal signed client for the QingCloud IaaS API."""

    def __init__(self, config: CloudConfig, request_timeout: int = 30):
        self.config = config
        self.request_timeout = request_timeout
        self._path = urlparse(config.api_endpoint).path or "/"

    def sign(self, flat: List[Tuple[str, str]]) -> str:
        """Build the signed query string for a flattened parameter list."""
        query = "&".join(f"{_quote(k)}={_quote(v)}" for k, v in sorted(flat))
        string_to_sign = f"GET\n{self._path}\n{query}"
        digest = hmac.new(
            self.config.secret_access_key.encode("utf-8"),
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        signature = base64.b64encode(digest).strip().decode("utf-8")
        return f"{query}&signature={_quote(signature)}"

    def build_url(self, action: str, params: Optional[Dict[str, Any]] = None) -> str:
        common = {
            "action": action,
            "zone": self.config.zone,
            "access_key_id": self.config.access_key_id,
            "time_stamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "version": API_VERSION,
            "signature_method": "HmacSHA256",
            "signature_version": "1",
        }
        flat = flatten_params(common) + flatten_params(params or {})
        return f"{self.config.api_endpoint}?{self.sign(flat)}"

    async def call(self, action: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Invoke an API action.

        Returns:
            The decoded response body.

        Raises:
            TransientCloudError: On transport errors, timeouts, HTTP 5xx and
                busy return codes.
            NotFoundError, ValidationError, ConflictError, LoadBalancerError:
                According to the API return code.
        """
        url = self.build_url(action, params)
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        logger.debug(f"QingCloud API call: {action}")

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status >= 500:
                        raise TransientCloudError(
                            f"{action} failed: HTTP {response.status}",
                            code=response.status,
                        )
                    if response.status != 200:
                        raise LoadBalancerError(
                            f"{action} failed: HTTP {response.status} - "
                            f"{await response.text()}",
                            code=response.status,
                        )
                    body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientCloudError(f"{action} failed: {e}") from e

        ret_code = body.get("ret_code", RET_OK)
        if ret_code != RET_OK:
            message = body.get("message", f"{action} failed with ret_code {ret_code}")
            raise classify_error(ret_code, message)
        return body
