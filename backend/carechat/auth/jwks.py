"""JwksKeyCache — time-bounded cache of the identity provider's signing keys.

Keys are fetched on first use, refreshed once the cached set is older than the
TTL, and refreshed early when a token names a key id the cache does not hold
(Cognito rotates keys). Forced refreshes are rate-limited so a stream of
tokens with bogus key ids cannot turn into a stream of HTTP requests.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Optional

import httpx
import jwt

from ..errors import IdentityProviderUnavailable

logger = logging.getLogger(__name__)


class JwksKeyCache:
    """Process-wide cache of ``kid -> PyJWK`` for one JWKS URL.

    Args:
        jwks_url: The ``.well-known/jwks.json`` endpoint.
        ttl_seconds: Age after which the key set is refetched.
        min_refresh_seconds: Minimum spacing between forced (kid-miss) fetches.
        timeout: HTTP timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        clock: Monotonic clock.
    """

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: float = 600,
        min_refresh_seconds: float = 12.0,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jwks_url = jwks_url
        self._ttl = ttl_seconds
        self._min_refresh = min_refresh_seconds
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._keys: Dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def key_ids(self):
        return sorted(self._keys)

    def _is_stale(self) -> bool:
        return self._fetched_at is None or self._clock() - self._fetched_at >= self._ttl

    async def get_key(self, kid: str) -> Optional[jwt.PyJWK]:
        """Return the signing key for ``kid``, or None if the provider has none.

        Raises:
            IdentityProviderUnavailable: The key set could not be fetched.
        """
        if self._is_stale():
            await self._refresh(force=False)
        key = self._keys.get(kid)
        if key is None:
            await self._refresh(force=True)
            key = self._keys.get(kid)
        return key

    async def _refresh(self, force: bool) -> None:
        async with self._lock:
            # Another task may have refreshed while we waited for the lock.
            if not force and not self._is_stale():
                return
            if (
                force
                and self._fetched_at is not None
                and self._clock() - self._fetched_at < self._min_refresh
            ):
                return
            self._keys = await self._fetch()
            self._fetched_at = self._clock()

    async def _fetch(self) -> Dict[str, jwt.PyJWK]:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(self.jwks_url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("[Identity] JWKS fetch from %s failed: %s", self.jwks_url, e)
            raise IdentityProviderUnavailable() from e

        try:
            key_set = jwt.PyJWKSet.from_dict(data)
        except jwt.exceptions.PyJWKSetError as e:
            logger.error("[Identity] JWKS from %s is unusable: %s", self.jwks_url, e)
            raise IdentityProviderUnavailable() from e

        keys = {k.key_id: k for k in key_set.keys if k.key_id}
        logger.info("[Identity] Loaded %d signing key(s) from %s", len(keys), self.jwks_url)
        return keys
