"""
FastAPI dependencies for authentication.
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from db.schemas import PlatformUser
from . import utils
from .exceptions import InvalidTokenException, NotAuthenticatedException

# Bearer scheme for token authentication (errors are raised below, not by the scheme)
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> PlatformUser:
    """
    Dependency to get the current authenticated user.

    Users live in the platform's identity service; the token's "sub" claim
    is the user ID and the optional "email" / "name" claims are synced to
    the Stripe customer.

    Args:
        credentials: Bearer credentials from the Authorization header

    Returns:
        The authenticated PlatformUser

    Raises:
        NotAuthenticatedException: If no bearer token is sent
        InvalidTokenException: If token is invalid, expired or has no subject
    """
    if credentials is None:
        raise NotAuthenticatedException()

    payload = utils.decode_access_token(credentials.credentials)

    if payload is None:
        raise InvalidTokenException()

    user_id = payload.get("sub")
    if not user_id:
        raise InvalidTokenException()

    try:
        return PlatformUser(
            id=str(user_id),
            email=payload.get("email"),
            name=payload.get("name")
        )
    except ValidationError:
        raise InvalidTokenException()
