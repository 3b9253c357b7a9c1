"""
NextAuth.js JWT verification for FastAPI.

The dashboard signs in through NextAuth.js and forwards its session JWT as a
bearer token. Users are created here on first sight; the billing engine never
creates users itself, it only resolves Stripe objects against this table.
"""
from typing import Any, Dict
from datetime import datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.base import get_db
from app.models import User
import logging

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def verify_nextauth_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode a NextAuth.js JWT (HS256 with NEXTAUTH_SECRET).

    Expected claims: sub (OAuth provider id), email, and optionally name and
    provider.
    """
    if not settings.nextauth_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="NextAuth secret not configured",
        )

    try:
        return jwt.decode(
            token,
            settings.nextauth_secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authorization token",
        ) from exc


def sync_user_from_claims(db: Session, claims: Dict[str, Any]) -> User:
    """
    Find the user for verified claims, creating it on first login.

    Email is the join key the webhook handler's email tier also relies on,
    so it is stored lowercased.
    """
    oauth_provider_id = claims.get("sub")
    email = (claims.get("email") or "").strip().lower()
    if not oauth_provider_id or not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing required claims",
        )

    is_admin = email in {e.lower() for e in settings.admin_emails}
    user = db.query(User).filter(User.email == email).first()

    if user is None:
        user = User(
            oauth_provider=claims.get("provider") or "google",
            oauth_provider_id=oauth_provider_id,
            email=email,
            full_name=claims.get("name"),
            is_active=True,
            is_superuser=is_admin,
            last_login_at=datetime.utcnow(),
        )
        db.add(user)
        logger.info(f"Created user {email} on first login")
    else:
        user.oauth_provider_id = oauth_provider_id
        if claims.get("name"):
            user.full_name = claims["name"]
        if is_admin and not user.is_superuser:
            user.is_superuser = True
        user.last_login_at = datetime.utcnow()

    db.commit()
    db.refresh(user)
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the current authenticated user from a NextAuth.js JWT.

    Raises:
        HTTPException: 401 for missing or invalid tokens, 403 for inactive users
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    if credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication scheme",
        )

    claims = verify_nextauth_token(credentials.credentials)
    user = sync_user_from_claims(db, claims)

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    return user
