"""IdentityVerifier: validates Cognito-issued RS256 bearer tokens.

Flow:
1. Read the ``kid`` from the unverified token header
2. Look the key up in the JWKS cache (refetching on expiry or kid miss)
3. Verify signature, expiry, audience and issuer with PyJWT
4. Return the subject, email and username claims
"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from ..config import IdentitySettings
from ..errors import AuthenticationRequired, CredentialExpired, InvalidCredential
from .jwks import JwksKeyCache

logger = logging.getLogger(__name__)

ALGORITHMS = ["RS256"]


@dataclass(frozen=True)
class VerifiedClaims:
    """Identity extracted from a verified token."""
    subject_id: str
    email: str = ""
    username: str = ""


def extract_bearer_token(
    token_field: Optional[str], authorization: Optional[str]
) -> str:
    """Pick the credential: the explicit token field first, then the header.

    Raises:
        AuthenticationRequired: Neither source carries a token.
    """
    if token_field and token_field.strip():
        return token_field.strip()
    if authorization:
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    raise AuthenticationRequired()


class IdentityVerifier:
    """Verifies tokens for one user pool / app client."""

    def __init__(
        self,
        key_cache: JwksKeyCache,
        issuer: str,
        audience: str,
        leeway: int = 0,
    ) -> None:
        self._keys = key_cache
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway

    @classmethod
    def from_settings(cls, settings: IdentitySettings, transport=None) -> "IdentityVerifier":
        cache = JwksKeyCache(
            settings.jwks_url,
            ttl_seconds=settings.jwks_cache_ttl_seconds,
            min_refresh_seconds=settings.jwks_min_refresh_seconds,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        return cls(cache, settings.issuer, settings.client_id, settings.leeway_seconds)

    async def verify(self, token: str) -> VerifiedClaims:
        """Verify ``token`` and return its identity claims.

        Raises:
            CredentialExpired: The token's ``exp`` has passed.
            InvalidCredential: Any other verification failure.
            IdentityProviderUnavailable: The signing keys could not be fetched.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise InvalidCredential() from e

        kid = header.get("kid")
        if not kid:
            raise InvalidCredential("Token header has no key id")
        key = await self._keys.get_key(kid)
        if key is None:
            logger.warning("[Identity] Unknown signing key id %s", kid)
            raise InvalidCredential()

        try:
            claims = jwt.decode(
                token,
                key.key,
                algorithms=ALGORITHMS,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self._leeway,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise CredentialExpired() from e
        except jwt.PyJWTError as e:
            logger.info("[Identity] Token rejected: %s", e)
            raise InvalidCredential() from e

        return VerifiedClaims(
            subject_id=claims["sub"],
            email=claims.get("email", ""),
            username=claims.get("cognito:username") or claims.get("username", ""),
        )
