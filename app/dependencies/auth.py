from fastapi import Header, HTTPException, status, Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import jwt  # PyJWT
import logging
import os
import requests
import time
from typing import Optional
from app.db.session import get_db
from app.models.user import User
from app.models.user_role import ADMIN_ROLE, UserRole

logger = logging.getLogger(__name__)

# Cache for JWKS (Public Keys)
JWKS_CACHE = None
JWKS_CACHE_TIMESTAMP = None
JWKS_CACHE_TTL = 3600  # Cache for 1 hour
JWKS_STALE_LIMIT = 86400  # Serve a stale copy for up to a day if Supabase is unreachable

ASYMMETRIC_ALGORITHMS = ("ES256", "RS256")


def _jwks_url(supabase_url: str) -> str:
    return f"{supabase_url.rstrip('/')}/auth/v1/.well-known/jwks.json"


def get_jwks(supabase_url: str, force_refresh: bool = False):
    """
    Fetch JWKS from Supabase with caching and retries.
    Only successful fetches are cached so a failure can be retried next request.
    """
    global JWKS_CACHE, JWKS_CACHE_TIMESTAMP

    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and not force_refresh:
        if time.time() - JWKS_CACHE_TIMESTAMP < JWKS_CACHE_TTL:
            return JWKS_CACHE

    max_retries = 3
    last_error = None
    for attempt in range(max_retries):
        try:
            r = requests.get(_jwks_url(supabase_url), timeout=10)
            r.raise_for_status()
            JWKS_CACHE = r.json()
            JWKS_CACHE_TIMESTAMP = time.time()
            logger.info("[AUTH] Fetched JWKS with %d keys", len(JWKS_CACHE.get("keys", [])))
            return JWKS_CACHE
        except requests.exceptions.RequestException as e:
            last_error = str(e)
            logger.warning("[AUTH] JWKS fetch failed (attempt %d/%d): %s", attempt + 1, max_retries, last_error)
            if attempt < max_retries - 1:
                time.sleep(1)

    logger.error("[AUTH] Failed to fetch JWKS after %d attempts: %s", max_retries, last_error)

    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP:
        cache_age = time.time() - JWKS_CACHE_TIMESTAMP
        if cache_age < JWKS_STALE_LIMIT:
            logger.warning("[AUTH] Using stale JWKS cache (age: %.0fs)", cache_age)
            return JWKS_CACHE
    return None


def _signing_key(token: str, algo: str):
    if algo == "HS256":
        secret = os.getenv("SUPABASE_JWT_SECRET")
        if not secret:
            logger.error("[AUTH] SUPABASE_JWT_SECRET is missing")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: SUPABASE_JWT_SECRET not set"
            )
        return secret

    supabase_url = os.getenv("SUPABASE_URL")
    if not supabase_url:
        logger.error("[AUTH] SUPABASE_URL is missing for %s verification", algo)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: SUPABASE_URL not set"
        )

    if not get_jwks(supabase_url):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service temporarily unavailable. Please try again in a moment."
        )

    try:
        # PyJWT picks the key matching the token's kid
        jwks_client = jwt.PyJWKClient(_jwks_url(supabase_url))
        return jwks_client.get_signing_key_from_jwt(token).key
    except jwt.PyJWTError as e:
        logger.warning("[AUTH] No signing key for token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token signature"
        )


def verify_supabase_token(authorization: Optional[str] = Header(None)) -> dict:
    """
    Verify a Supabase access token and return its claims.
    Supports HS256 (project secret) and ES256/RS256 (project JWKS).
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header"
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid header format. Expected 'Bearer <token>'"
        )

    token = authorization[len("Bearer "):].strip()
    if not token or token.lower() in ("null", "undefined", "none") or len(token.split(".")) != 3:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format"
        )

    try:
        algo = jwt.get_unverified_header(token).get("alg")
    except jwt.DecodeError as e:
        logger.warning("[AUTH] Failed to decode token header: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token header"
        )

    if algo != "HS256" and algo not in ASYMMETRIC_ALGORITHMS:
        logger.warning("[AUTH] Unsupported algorithm: %s", algo)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unsupported token algorithm: {algo}"
        )

    key = _signing_key(token, algo)
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[algo],
            audience="authenticated",
            options={"verify_aud": True}
        )
    except jwt.PyJWTError as e:
        logger.warning("[AUTH] %s verification failed: %s", algo, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token signature"
        )

    return payload


def _sync_user(db: Session, supabase_user_id: str, email: str) -> User:
    """Find the backend user for a Supabase identity, creating it on first sight."""
    user = db.query(User).filter(User.supabase_id == supabase_user_id).first()
    if user:
        return user

    user = db.query(User).filter(User.email.ilike(email)).first()
    if user:
        if not user.supabase_id:
            user.supabase_id = supabase_user_id
            db.commit()
            logger.info("[AUTH] Linked supabase_id to user %s", user.id)
        return user

    user = User(email=email, supabase_id=supabase_user_id, is_active=True)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Created by a concurrent request for the same identity
        db.rollback()
        user = db.query(User).filter(User.supabase_id == supabase_user_id).first()
        if user is None:
            raise
        return user

    db.refresh(user)
    logger.info("[AUTH] Created user %s for %s", user.id, email)
    return user


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> int:
    """
    FastAPI dependency that verifies the Supabase token and returns the backend user ID.
    Users are created lazily on their first authenticated request.
    """
    payload = verify_supabase_token(authorization)

    email = payload.get("email")
    supabase_user_id = payload.get("sub")
    if not email or not supabase_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing email or user ID claim"
        )

    try:
        user = _sync_user(db, supabase_user_id, email)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[AUTH] Database error while syncing user: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable. Please try again in a moment."
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled"
        )
    return user.id


def is_admin(db: Session, user_id: int) -> bool:
    return db.query(UserRole.id).filter(
        UserRole.user_id == user_id,
        UserRole.role == ADMIN_ROLE,
    ).first() is not None


def require_admin(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> int:
    """Dependency for /admin routes: the caller's user ID, or 403."""
    if not is_admin(db, user_id):
        logger.warning("[AUTH] Non-admin user %s denied admin access", user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user_id
