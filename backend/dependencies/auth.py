import os
import secrets

from fastapi import Header, HTTPException, status


def _parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def require_api_token(
    authorization: str | None = Header(default=None),
) -> str:
    """Accept any opaque bearer token, or exactly ASSEMBLY_API_TOKEN when set."""
    token = _parse_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    expected = os.getenv("ASSEMBLY_API_TOKEN")
    if expected and not secrets.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
        )
    return token
