import os
from typing import Callable, Dict, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

# MUST MATCH resources_service.auth and the token issuer
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "college-resource-booking-secret-key")
ALGORITHM = "HS256"

# Roles allowed to review and manage any booking
STAFF_ROLES = ("admin", "staff")

security = HTTPBearer()


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Decode a JWT bearer token and extract user claims.

    The token is expected in the Authorization header as a Bearer token.

    Parameters
    ----------
    credentials : HTTPAuthorizationCredentials
        Authorization header parsed by FastAPI's HTTPBearer.

    Returns
    -------
    Dict[str, Any]
        A dictionary containing:
        - 'username' : str
        - 'role' : str
        - 'user_id' : int

    Raises
    ------
    HTTPException
        If the token is missing, invalid, or lacks any of the claims above.
    """
    token = credentials.credentials

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username = payload.get("sub")
        role = payload.get("role")
        user_id = payload.get("user_id")
        if username is None or role is None or user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return {"username": username, "role": role, "user_id": int(user_id)}


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Parameters
    ----------
    allowed_roles : str
        One or more role names that are permitted to access a route.

    Returns
    -------
    Callable
        A FastAPI dependency that checks the caller's role and raises
        HTTP 403 if access is not allowed.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency
