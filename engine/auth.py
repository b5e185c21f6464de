"""
Clerk Authentication for FastAPI

Verifies Clerk-issued JWTs and turns the subject into a Caller. Every
identity the backend stores is a hash derived here from the verified
subject; client-supplied ids are never trusted.
"""

import hmac
import os
import logging
from typing import Optional

from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from jwt import PyJWKClient, PyJWKClientError
from pydantic import BaseModel

from .hashing import hash_chain, hash_graph, hash_notification, hash_report

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


class Caller(BaseModel):
    """Authenticated caller extracted from a Clerk JWT."""
    user_id: str
    display_name: Optional[str] = None

    @property
    def graph_id(self) -> str:
        return hash_graph(self.user_id)

    @property
    def notification_id(self) -> str:
        return hash_notification(self.user_id)

    @property
    def chain_id(self) -> str:
        return hash_chain(self.graph_id)

    @property
    def report_owner_id(self) -> str:
        return hash_report(self.user_id)


class ClerkConfig:
    """Clerk configuration loaded from environment."""

    def __init__(self):
        self.secret_key = os.environ.get("CLERK_SECRET_KEY")

        # e.g. https://your-app.clerk.accounts.dev
        self.issuer = os.environ.get("CLERK_ISSUER")
        self.jwks_url = f"{self.issuer}/.well-known/jwks.json" if self.issuer else None

        self.enabled = bool(self.secret_key or self.issuer)

        if not self.enabled:
            logger.warning(
                "Clerk authentication is DISABLED. "
                "Set CLERK_SECRET_KEY and CLERK_ISSUER environment variables to enable."
            )


# Global config instance
_config: Optional[ClerkConfig] = None


def get_clerk_config() -> ClerkConfig:
    """Get or create Clerk configuration."""
    global _config
    if _config is None:
        _config = ClerkConfig()
    return _config


# Cache the JWKS client to avoid repeated fetches
_jwks_client: Optional[PyJWKClient] = None


def get_jwks_client() -> Optional[PyJWKClient]:
    """Get or create JWKS client for verifying Clerk JWTs."""
    global _jwks_client
    config = get_clerk_config()

    if not config.jwks_url:
        return None

    if _jwks_client is None:
        _jwks_client = PyJWKClient(config.jwks_url, cache_keys=True)

    return _jwks_client


def caller_from_claims(payload: dict) -> Caller:
    """Build a Caller from verified token claims."""
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Token has no subject")

    display_name = payload.get("name") or payload.get("first_name")
    return Caller(user_id=subject, display_name=display_name)


def verify_clerk_token(token: str) -> Optional[Caller]:
    """
    Verify a Clerk JWT and extract the caller.

    Args:
        token: The JWT token from the Authorization header

    Returns:
        Caller if valid, None if auth is not configured

    Raises:
        HTTPException: If token is invalid or expired
    """
    config = get_clerk_config()

    if not config.enabled:
        logger.warning("Auth check skipped - Clerk not configured")
        return None

    jwks_client = get_jwks_client()
    if not jwks_client:
        logger.error("JWKS client not available")
        raise HTTPException(status_code=500, detail="Authentication not configured")

    try:
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "verify_iat": True,
                "require": ["exp", "iat", "sub"],
            }
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
    except PyJWKClientError as e:
        logger.error(f"JWKS client error: {e}")
        raise HTTPException(status_code=500, detail="Authentication service error")

    caller = caller_from_claims(payload)
    # Never log the raw subject
    logger.debug(f"Authenticated caller {caller.graph_id[:8]}...")
    return caller


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> Caller:
    """
    FastAPI dependency to get the current authenticated caller.

    Usage:
        @router.get("/notifications")
        async def list_notifications(caller: Caller = Depends(get_current_user)):
            ...
    """
    config = get_clerk_config()

    if not config.enabled:
        dev_mode = os.environ.get("DEV_MODE", "false").lower() == "true"
        if dev_mode:
            logger.warning("DEV_MODE: Returning mock caller")
            return Caller(user_id="dev_user_123", display_name="Dev User")
        raise HTTPException(
            status_code=503,
            detail="Authentication not configured. Set CLERK_SECRET_KEY and CLERK_ISSUER."
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    caller = verify_clerk_token(credentials.credentials)
    if not caller:
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return caller


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    """
    FastAPI dependency guarding maintenance endpoints (scheduled cleanup).

    Compares the X-Admin-Key header against ADMIN_API_KEY.
    """
    expected = os.environ.get("ADMIN_API_KEY")
    if not expected:
        raise HTTPException(status_code=503, detail="Admin access not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=403, detail="Admin key required")
