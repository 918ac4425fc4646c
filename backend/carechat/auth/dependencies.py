"""FastAPI dependencies that authenticate REST requests.

Both the verifier and the user directory are process-wide singletons set up by
the application lifespan (tests install their own with the ``set_*``
functions).
"""
import logging
from typing import Optional

from fastapi import Header
from starlette.concurrency import run_in_threadpool

from ..directory.schemas import UserRecord
from ..directory.service import UserDirectory
from ..errors import AccessDenied, UserNotFound
from .service import IdentityVerifier, extract_bearer_token

logger = logging.getLogger(__name__)

_verifier: Optional[IdentityVerifier] = None
_directory: Optional[UserDirectory] = None


def get_identity_verifier() -> IdentityVerifier:
    if _verifier is None:
        raise RuntimeError("IdentityVerifier has not been initialised")
    return _verifier


def set_identity_verifier(verifier: Optional[IdentityVerifier]) -> None:
    global _verifier
    _verifier = verifier


def get_user_directory() -> UserDirectory:
    if _directory is None:
        raise RuntimeError("UserDirectory has not been initialised")
    return _directory


def set_user_directory(directory: Optional[UserDirectory]) -> None:
    global _directory
    _directory = directory


async def authenticate(
    token_field: Optional[str],
    authorization: Optional[str],
    verifier: Optional[IdentityVerifier] = None,
    directory: Optional[UserDirectory] = None,
) -> UserRecord:
    """Resolve a credential to an internal user.

    The process-wide verifier and directory are used unless given.

    Raises:
        AuthenticationRequired: No credential supplied.
        InvalidCredential: Verification failed (``CredentialExpired`` if expired).
        IdentityProviderUnavailable: Keys could not be fetched.
        UserNotFound: The verified subject has no internal user.
    """
    token = extract_bearer_token(token_field, authorization)
    verifier = verifier or get_identity_verifier()
    directory = directory or get_user_directory()
    claims = await verifier.verify(token)
    user = await run_in_threadpool(directory.find_by_subject, claims.subject_id)
    if user is None:
        logger.info("[Identity] No user for subject %s", claims.subject_id)
        raise UserNotFound()
    return user


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
) -> UserRecord:
    """Dependency for messaging routes. Admin accounts cannot use messaging."""
    user = await authenticate(None, authorization)
    if user.role == "admin":
        raise AccessDenied("Admins cannot access messaging")
    return user
