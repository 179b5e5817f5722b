import asyncio
import logging
from typing import Any, Optional

import httpx

from bulkmend.api.v1.metrics import REMOTE_RETRIES
from bulkmend.db.models import Tenant
from bulkmend.domain.errors import BulkOperationError, RemoteRequestError
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

THROTTLED_CODE = "THROTTLED"

class PlatformClient:
    """
    GraphQL client for one tenant's Admin API.

    Rate limiting (HTTP 429 or a THROTTLED GraphQL error), 5xx responses and
    transport errors are retried with exponential backoff inside a bounded
    budget. Any other error response fails immediately.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.shop_domain = shop_domain
        self.api_version = api_version or settings.PLATFORM_API_VERSION
        self.endpoint = f"https://{shop_domain}/admin/api/{self.api_version}/graphql.json"
        self._access_token = access_token
        self.max_retries = max_retries if max_retries is not None else settings.REMOTE_MAX_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else settings.REMOTE_BACKOFF_BASE_SECONDS

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=settings.PLATFORM_HTTP_TIMEOUT_SECONDS)

    @classmethod
    def for_tenant(cls, tenant: Tenant, http: Optional[httpx.AsyncClient] = None) -> "PlatformClient":
        return cls(tenant.id, tenant.access_token, api_version=tenant.api_version, http=http)

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "X-Shopify-Access-Token": self._access_token,
            "Content-Type": "application/json",
        }

    def _delay(self, attempt: int, retry_after: Optional[str] = None) -> float:
        if retry_after:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                pass
        return self.backoff_base * (2 ** attempt)

    async def execute(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Runs a GraphQL document and returns its `data` object."""
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        for attempt in range(self.max_retries):
            try:
                resp = await self.http.post(self.endpoint, json=payload, headers=self._headers())
            except httpx.TransportError as e:
                delay = self._delay(attempt)
                REMOTE_RETRIES.labels(reason="transport").inc()
                logger.warning("Transport error from %s (attempt=%s, delay=%.1fs): %s", self.shop_domain, attempt, delay, e)
                await asyncio.sleep(delay)
                continue

            if resp.status_code == 429:
                delay = self._delay(attempt, resp.headers.get("Retry-After"))
                REMOTE_RETRIES.labels(reason="rate_limited").inc()
                logger.warning("Rate limited by %s (attempt=%s, delay=%.1fs)", self.shop_domain, attempt, delay)
                await asyncio.sleep(delay)
                continue

            if 500 <= resp.status_code < 600:
                delay = self._delay(attempt)
                REMOTE_RETRIES.labels(reason="server_error").inc()
                logger.warning(
                    "Server error %s from %s (attempt=%s, delay=%.1fs)",
                    resp.status_code, self.shop_domain, attempt, delay,
                )
                await asyncio.sleep(delay)
                continue

            if not resp.is_success:
                logger.error("GraphQL request to %s rejected with %s", self.shop_domain, resp.status_code)
                raise RemoteRequestError(
                    f"GraphQL request failed with status {resp.status_code}: {resp.text[:500]}",
                    status_code=resp.status_code,
                )

            body = resp.json()
            errors = body.get("errors") or []
            if errors:
                if any((err.get("extensions") or {}).get("code") == THROTTLED_CODE for err in errors):
                    delay = self._delay(attempt)
                    REMOTE_RETRIES.labels(reason="rate_limited").inc()
                    logger.warning("Query cost throttled by %s (attempt=%s, delay=%.1fs)", self.shop_domain, attempt, delay)
                    await asyncio.sleep(delay)
                    continue

                message = "; ".join(str(err.get("message", err)) for err in errors)
                logger.error("GraphQL errors from %s: %s", self.shop_domain, message)
                raise RemoteRequestError(f"GraphQL errors: {message}", status_code=resp.status_code)

            return body.get("data") or {}

        raise RemoteRequestError(
            f"Max retries ({self.max_retries}) exceeded for GraphQL request to {self.shop_domain}",
            retryable=True,
        )

def raise_for_user_errors(payload: dict[str, Any], operation: str) -> None:
    """Raises BulkOperationError when a mutation payload carries userErrors."""
    user_errors = payload.get("userErrors") or []
    if user_errors:
        first = user_errors[0]
        raise BulkOperationError(f"{operation} failed: {first.get('message', first)}", code=first.get("code"))
