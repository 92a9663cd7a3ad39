"""Single-attempt HTTP transport for gateway calls.

Retries are not done here: the orchestrator owns the retry loop so the attempt
count can be written to the transaction row and the audit trail.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .exceptions import GatewayTimeoutError, NetworkError

logger = logging.getLogger(__name__)

USER_AGENT = "QRPayments-POS/1.0"


@dataclass
class GatewayCallResult:
    """Outcome of one HTTP exchange that produced a response."""
    response: Dict[str, Any]
    response_time_ms: int
    http_status: int


class GatewayHttpClient:
    """
    Thin wrapper over ``httpx.AsyncClient``.

    Any response the gateway sends back, including 4xx/5xx, is returned to the
    caller; only transport failures raise.

    Example:
        async with GatewayHttpClient() as client:
            result = await client.call(url, "POST", payload, header, 15000)
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "GatewayHttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"User-Agent": USER_AGENT})
        return self._client

    async def aclose(self) -> None:
        """Close the underlying client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _decode_body(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {"raw_body": response.text}
        if isinstance(body, dict):
            return body
        return {"body": body}

    async def call(
        self,
        endpoint: str,
        method: str,
        payload: Optional[Dict[str, Any]],
        auth_header: str,
        timeout_ms: int,
        header_name: str = "Authorization",
    ) -> GatewayCallResult:
        """Perform one signed request.

        Args:
            endpoint: Absolute URL.
            method: HTTP method.
            payload: JSON body; ignored for GET.
            auth_header: Header value built by the gateway's signer.
            timeout_ms: Whole-request timeout in milliseconds.
            header_name: Header carrying ``auth_header``.

        Returns:
            GatewayCallResult with the decoded body, timing and HTTP status.

        Raises:
            GatewayTimeoutError: If no response arrived within ``timeout_ms``.
            NetworkError: On any other transport failure.
        """
        method = method.upper()
        headers = {
            header_name: auth_header,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        started = time.perf_counter()
        try:
            response = await self._get_client().request(
                method,
                endpoint,
                json=payload if method != "GET" else None,
                headers=headers,
                timeout=timeout_ms / 1000.0,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway timeout {method} {endpoint} after {timeout_ms}ms")
            raise GatewayTimeoutError(
                f"Request timeout after {timeout_ms}ms",
                {"endpoint": endpoint, "method": method},
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"Gateway network error {method} {endpoint}: {e}")
            raise NetworkError(
                f"Network error: {e}",
                {"endpoint": endpoint, "method": method},
            ) from e

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.debug(f"{method} {endpoint} -> {response.status_code} in {elapsed_ms}ms")
        return GatewayCallResult(
            response=self._decode_body(response),
            response_time_ms=elapsed_ms,
            http_status=response.status_code,
        )
