"""Feishu open platform client for the relay.

Wraps the three outbound calls the relay makes: the internal tenant access
token exchange, message sends and image uploads. Every call is bounded by the
client timeout and failures are raised as CredentialError (token exchange) or
UpstreamError (everything else); nothing here retries.
"""

import time
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from relay.errors import CredentialError, UpstreamError
from relay.integrations.feishu.models import OutboundMessage, TenantAccessToken
from relay.observability.metrics import upstream_latency_seconds, upstream_requests_total
from relay.observability.tracing import get_tracer


tracer = get_tracer(__name__)

TOKEN_PATH = "/auth/v3/tenant_access_token/internal"
SEND_PATH = "/message/v3/send"
IMAGE_PATH = "/im/v1/images"

# Platform codes returned with HTTP 200 when the bearer token is missing,
# invalid or expired.
AUTH_ERROR_CODES = frozenset({99991661, 99991663, 99991668})


class FeishuClient:
    """Async client for the Feishu message and image APIs."""

    def __init__(
        self,
        base_url: str,
        app_id: str,
        app_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Open API root, e.g. https://open.feishu.cn/open-apis
            app_id: Application identifier for the token exchange
            app_secret: Application secret for the token exchange
            timeout: Per-call timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.app_id = app_id
        self._app_secret = app_secret
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_tenant_access_token(self) -> TenantAccessToken:
        """Exchange the app id/secret pair for a tenant access token.

        Raises:
            CredentialError: On network failure, timeout, non-success response
                or a body without a token string and integer lifetime
        """
        with tracer.start_as_current_span("feishu_tenant_access_token"):
            try:
                body = await self._request(
                    "tenant_access_token",
                    "POST",
                    TOKEN_PATH,
                    json={"app_id": self.app_id, "app_secret": self._app_secret},
                )
            except UpstreamError as e:
                raise CredentialError(
                    f"Token exchange failed: {e.message}",
                    http_status=401 if e.status_code == 401 else None,
                ) from e

            try:
                return TenantAccessToken.model_validate(body)
            except PydanticValidationError as e:
                raise CredentialError("Token exchange returned a malformed body") from e

    async def send_message(self, token: str, message: OutboundMessage) -> Dict[str, Any]:
        """Post a text or image message to the target chat."""
        with tracer.start_as_current_span("feishu_send_message") as span:
            span.set_attribute("msg_type", message.msg_type)
            return await self._request(
                f"send_{message.msg_type}",
                "POST",
                SEND_PATH,
                json=message.model_dump(),
                headers=_bearer(token),
            )

    async def upload_image(self, token: str, filename: str, content: bytes) -> str:
        """Upload image bytes and return the platform image key."""
        with tracer.start_as_current_span("feishu_upload_image") as span:
            span.set_attribute("image_bytes", len(content))
            body = await self._request(
                "upload_image",
                "POST",
                IMAGE_PATH,
                data={"image_type": "message"},
                files={"image": (filename, content)},
                headers=_bearer(token),
            )

        image_key = (body.get("data") or {}).get("image_key")
        if not isinstance(image_key, str) or not image_key:
            raise UpstreamError(
                "Image upload returned no image key",
                operation="upload_image",
                detail=body,
            )
        return image_key

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        start_time = time.perf_counter()
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            upstream_requests_total.labels(operation=operation, status="timeout").inc()
            raise UpstreamError(
                f"{operation} timed out", operation=operation, detail=str(e)
            ) from e
        except httpx.HTTPError as e:
            upstream_requests_total.labels(operation=operation, status="network_error").inc()
            raise UpstreamError(
                f"{operation} failed: {e}", operation=operation, detail=str(e)
            ) from e
        finally:
            upstream_latency_seconds.labels(operation=operation).observe(
                time.perf_counter() - start_time
            )

        body = _json_or_none(response)

        if response.is_error:
            upstream_requests_total.labels(operation=operation, status=str(response.status_code)).inc()
            raise UpstreamError(
                f"{operation} returned HTTP {response.status_code}",
                operation=operation,
                status_code=response.status_code,
                platform_code=body.get("code") if isinstance(body, dict) else None,
                detail=body if body is not None else response.text,
            )

        if not isinstance(body, dict):
            upstream_requests_total.labels(operation=operation, status="malformed").inc()
            raise UpstreamError(
                f"{operation} returned a non-JSON body",
                operation=operation,
                status_code=response.status_code,
                detail=response.text[:500],
            )

        code = body.get("code", 0)
        if code != 0:
            upstream_requests_total.labels(operation=operation, status="platform_error").inc()
            raise UpstreamError(
                f"{operation} rejected by platform: {body.get('msg', 'unknown error')}",
                operation=operation,
                status_code=response.status_code,
                platform_code=code,
                detail=body.get("msg"),
                unauthorized=code in AUTH_ERROR_CODES,
            )

        upstream_requests_total.labels(operation=operation, status="ok").inc()
        return body


def _bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
