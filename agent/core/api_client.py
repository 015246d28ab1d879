"""
Client for the issuing service's deployment API.

Every response is wrapped as ``{"code": 1, "msg": "...", "data": ...}``;
any other code is an application-level failure.
"""

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ValidationError

from config import settings
from models.certificate import CallbackRequest, CertData, ValidationMethod

logger = logging.getLogger(__name__)

SUCCESS_CODE = 1
MAX_RESPONSE_BYTES = 10 * 1024 * 1024
ERROR_BODY_PREVIEW = 200
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class APIError(Exception):
    """The deployment API failed or rejected a request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        raw_body: str = "",
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.raw_body = raw_body[:ERROR_BODY_PREVIEW]
        super().__init__(message)


class SubmitResult(BaseModel):
    order_id: int
    status: str = ""


def validate_base_url(base_url: str) -> str:
    """
    Require HTTPS, except for loopback hosts used in development.

    Raises:
        APIError: for empty, malformed or plain-HTTP remote URLs
    """
    parsed = urlparse(base_url.strip())
    if not parsed.scheme or not parsed.hostname:
        raise APIError(f"Invalid API URL: {base_url!r}")
    if parsed.scheme == "https":
        return base_url.strip().rstrip("/")
    if parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS:
        return base_url.strip().rstrip("/")
    raise APIError(f"API URL must use HTTPS: {base_url}")


class DeploymentAPIClient:
    """
    Async client for certificate query, CSR submission and callbacks.

    Only the idempotent query is retried here; submissions and callbacks
    are attempted once and retried, if at all, by their callers.
    """

    def __init__(
        self,
        base_url: str = "",
        token: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
    ):
        self.base_url = base_url
        self.token = token
        self.transport = transport
        self.max_retries = max_retries if max_retries is not None else settings.api_max_retries
        self.retry_delay = retry_delay

    def configure(self, base_url: str, token: str) -> None:
        """Point the client at the endpoint and token from the current configuration."""
        self.base_url = base_url
        self.token = token

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "User-Agent": "certbind-agent",
        }

    async def _send(self, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
            return await client.request(method, url, headers=self._headers(), **kwargs)

    async def _request(self, method: str, path: str, timeout: float, retries: int = 0, **kwargs) -> Any:
        """
        Send a request and unwrap the response envelope.

        Transport errors and 5xx responses are retried ``retries`` times
        with exponential backoff (1s, 2s, 4s, ...).

        Returns:
            The envelope's ``data`` member

        Raises:
            APIError: on transport failure, HTTP error, oversized or malformed body, or code != 1
        """
        if not self.token:
            raise APIError("API token is not configured")
        url = validate_base_url(self.base_url) + path

        last_error: Optional[APIError] = None
        for attempt in range(retries + 1):
            if attempt:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(f"Retrying {method} {path} in {delay:.0f}s (attempt {attempt + 1}/{retries + 1})")
                await asyncio.sleep(delay)
            try:
                response = await self._send(method, url, timeout, **kwargs)
            except httpx.TimeoutException as e:
                last_error = APIError(f"Request to {path} timed out: {e}")
                continue
            except httpx.RequestError as e:
                last_error = APIError(f"Request to {path} failed: {e}")
                continue

            if response.status_code >= 500:
                last_error = APIError(
                    f"Server error {response.status_code} from {path}",
                    status_code=response.status_code,
                    raw_body=response.text,
                )
                continue
            return self._unwrap(response, path)

        raise last_error

    @staticmethod
    def _unwrap(response: httpx.Response, path: str) -> Any:
        if len(response.content) > MAX_RESPONSE_BYTES:
            raise APIError(f"Response from {path} exceeds {MAX_RESPONSE_BYTES} bytes", status_code=response.status_code)
        if response.status_code != 200:
            raise APIError(
                f"HTTP {response.status_code} from {path}", status_code=response.status_code, raw_body=response.text
            )
        try:
            body = response.json()
        except ValueError:
            raise APIError(f"Invalid JSON from {path}", status_code=response.status_code, raw_body=response.text)
        if not isinstance(body, dict):
            raise APIError(f"Unexpected response from {path}", raw_body=response.text)

        code = body.get("code")
        if code != SUCCESS_CODE:
            raise APIError(
                f"API error from {path}: {body.get('msg') or 'unknown error'}",
                status_code=response.status_code,
                code=code,
                raw_body=response.text,
            )
        return body.get("data")

    async def get_certificate(self, order_id: int) -> CertData:
        """
        Fetch the current state of an order.

        Raises:
            APIError: if the order is unknown or the request fails
        """
        data = await self._request(
            "GET",
            "",
            timeout=settings.api_query_timeout,
            retries=self.max_retries,
            params={"order_id": order_id},
        )
        items = data if isinstance(data, list) else [data] if data else []
        if not items:
            raise APIError(f"Order {order_id} not found")
        try:
            return CertData.model_validate(items[0])
        except ValidationError as e:
            raise APIError(f"Malformed certificate data for order {order_id}: {e}")

    async def submit_csr(
        self,
        domain: str,
        csr_pem: str,
        order_id: int = 0,
        validation_method: Optional[ValidationMethod] = None,
    ) -> SubmitResult:
        """
        Submit a CSR, creating a new order or reissuing an existing one.

        Returns:
            SubmitResult with the (possibly new) order id and its status
        """
        payload: dict = {"domain": domain, "csr": csr_pem}
        if order_id > 0:
            payload["order_id"] = order_id
        if validation_method is not None:
            payload["validation_method"] = validation_method.value

        data = await self._request("POST", "", timeout=settings.api_submit_timeout, json=payload)
        try:
            result = SubmitResult.model_validate(data or {})
        except ValidationError as e:
            raise APIError(f"Malformed CSR submission response: {e}")
        if result.order_id <= 0:
            raise APIError("CSR submission returned no order id")
        return result

    async def callback(self, request: CallbackRequest) -> None:
        """Report a deployment outcome."""
        await self._request(
            "POST", "/callback", timeout=settings.api_submit_timeout, json=request.model_dump(mode="json")
        )
