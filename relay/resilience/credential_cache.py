"""
Tenant access token cache with single-flight refresh.

Many request handlers and dispatch tasks need a bearer token at the same
time. The cache hands out the stored credential while it is valid and, when
it is missing or expired, runs exactly one refresh that every concurrent
caller awaits and shares, success or failure.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from relay.errors import CredentialError
from relay.integrations.feishu.models import TenantAccessToken
from relay.observability.logging import get_logger
from relay.observability.metrics import token_invalidations_total, token_refresh_total
from relay.observability.tracing import get_tracer


logger = get_logger(__name__)
tracer = get_tracer(__name__)


class TokenSource(Protocol):
    async def fetch_tenant_access_token(self) -> TenantAccessToken: ...


@dataclass(frozen=True)
class Credential:
    """A bearer token and the monotonic time after which it must not be used."""
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at


class CredentialCache:
    """
    Shared tenant access token with single-flight refresh.

    Concurrent ensure() calls that find no valid credential all await the
    same in-flight refresh task, so the token endpoint sees one call per
    expiry no matter how many callers are waiting.
    """

    def __init__(
        self,
        source: TokenSource,
        safety_margin_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock

        self._credential: Optional[Credential] = None
        self._inflight: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

        self.refresh_count = 0
        self.last_error: Optional[str] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    async def ensure(self) -> Credential:
        """
        Return a credential valid at call time, refreshing at most once.

        Returns:
            Credential: The cached or freshly obtained credential

        Raises:
            CredentialError: If the shared refresh failed
        """
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock()):
            return credential

        async with self._lock:
            # Re-check under the lock: a refresh may have completed meanwhile
            credential = self._credential
            if credential is not None and credential.is_valid(self._clock()):
                return credential

            if self._inflight is None:
                self._inflight = asyncio.create_task(self._refresh_once())
            inflight = self._inflight

        # Waiters cancelled mid-refresh must not cancel it for everyone else
        return await asyncio.shield(inflight)

    def invalidate(self, token: Optional[str] = None) -> bool:
        """
        Force the next ensure() to refresh.

        Args:
            token: The token the upstream rejected. When given, the cache is
                only cleared if it still holds that token, so a burst of
                rejections for one stale token triggers a single refresh.

        Returns:
            bool: True if the cached credential was dropped
        """
        credential = self._credential
        if credential is None:
            return False
        if token is not None and credential.token != token:
            return False

        self._credential = None
        token_invalidations_total.inc()
        logger.info("Tenant access token invalidated")
        return True

    async def warm(self) -> bool:
        """Best-effort refresh at startup; failures are logged, not raised."""
        try:
            await self.ensure()
            return True
        except CredentialError as e:
            logger.warning("Initial tenant access token fetch failed", error=e.message)
            return False

    def status(self) -> Dict[str, Any]:
        """Snapshot for health reporting. Never exposes the token."""
        credential = self._credential
        now = self._clock()
        return {
            "has_token": credential is not None,
            "valid": credential is not None and credential.is_valid(now),
            "expires_in_seconds": (
                round(credential.expires_at - now, 1) if credential else None
            ),
            "refresh_in_progress": self._inflight is not None,
            "refresh_count": self.refresh_count,
            "last_error": self.last_error,
        }

    async def _refresh_once(self) -> Credential:
        try:
            return await self._refresh()
        finally:
            self._inflight = None

    async def _refresh(self) -> Credential:
        with tracer.start_as_current_span("credential_refresh") as span:
            try:
                response = await self._source.fetch_tenant_access_token()
            except CredentialError as e:
                self.last_error = e.message
                token_refresh_total.labels(status="failure").inc()
                span.set_attribute("error", e.message)
                logger.error("Tenant access token refresh failed", error=e.message)
                raise

            credential = Credential(
                token=response.tenant_access_token,
                expires_at=self._clock() + response.expire - self.safety_margin_seconds,
            )
            self._credential = credential
            self.refresh_count += 1
            self.last_error = None
            token_refresh_total.labels(status="success").inc()
            logger.info(
                "Tenant access token refreshed",
                lifetime_seconds=response.expire,
            )
            return credential
