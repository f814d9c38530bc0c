"""
Admin authentication for operator-only endpoints (lead export).

Performance notes:
- get_current_claims verifies JWTs locally with python-jose when
  SUPABASE_JWT_SECRET is set, avoiding a network round-trip to the Supabase
  Auth API on every request.
- Without the secret the Supabase Auth API is asked to resolve the token.

An operator is an admin when their token carries either
``app_metadata.role == "admin"`` (set through the Supabase dashboard) or a
top-level ``admin: true`` custom claim.
"""

import os
from fastapi import HTTPException, Header, Depends
from typing import Optional
from app.db import supabase

# ---------------------------------------------------------------------------
# Module-level JWT secret - loaded once at startup.
# Set SUPABASE_JWT_SECRET in your environment (Project Settings > API > JWT Secret).
# When not set the implementation falls back to the Supabase Auth API.
# ---------------------------------------------------------------------------
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


async def get_current_claims(authorization: Optional[str] = Header(None)) -> dict:
    """
    Extract and verify the JWT from the Authorization header.

    Args:
        authorization: Authorization header with format "Bearer <token>"

    Returns:
        The verified claims dict (always contains ``sub``).

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated"
        )

    # Extract token from "Bearer <token>" format
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication credentials"
        )

    token = parts[1]

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)

    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> dict:
    """
    Verify a Supabase JWT locally using python-jose and return its claims.

    Raises:
        HTTPException 401 on any verification failure.
    """
    from jose import jwt, JWTError, ExpiredSignatureError

    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},  # Supabase JWTs use 'authenticated' role, not a fixed audience
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")

    return payload


async def _verify_jwt_remotely(token: str) -> dict:
    """
    Resolve a JWT via the Supabase Auth API (fallback when no JWT secret is set).

    The returned dict mirrors the JWT claims we care about: sub and app_metadata.

    Raises:
        HTTPException 401 on any verification failure.
    """
    try:
        response = supabase.auth.get_user(token)

        if not response.user:
            raise HTTPException(
                status_code=401,
                detail="Invalid token"
            )

        return {
            "sub": response.user.id,
            "app_metadata": getattr(response.user, "app_metadata", None) or {},
        }

    except HTTPException:
        raise
    except Exception as e:
        if "expired" in str(e).lower():
            raise HTTPException(
                status_code=401,
                detail="Token expired"
            )

        raise HTTPException(
            status_code=401,
            detail="Invalid token"
        )


def is_admin(claims: dict) -> bool:
    app_metadata = claims.get("app_metadata") or {}
    return app_metadata.get("role") == "admin" or claims.get("admin") is True


async def require_admin(claims: dict = Depends(get_current_claims)) -> str:
    """
    Dependency for operator-only endpoints.

    Returns:
        The admin's user id.

    Raises:
        HTTPException: 403 when the caller is authenticated but not an admin
    """
    if not is_admin(claims):
        raise HTTPException(
            status_code=403,
            detail="Only administrators can export leads data"
        )
    return claims["sub"]
