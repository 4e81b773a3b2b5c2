"""
JWT Utilities
Tokens are issued by the identity service; the ride core only verifies them
and turns the claims into an Actor.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ridecore.config import Settings
from ridecore.models.ride_schema import Actor, ActorRole

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_HOURS = 24 * 7  # 7 days

# Roles a token may carry; "system" is never issued to clients
TOKEN_ROLES = (ActorRole.PASSENGER, ActorRole.DRIVER, ActorRole.ADMIN)

security = HTTPBearer()


def create_access_token(
    data: dict,
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create JWT access token

    Args:
        data: claims, at least user_id and role
        settings: supplies the signing key and algorithm
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str, settings: Settings) -> Optional[dict]:
    """Decoded payload, or None if the token is invalid or expired"""
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Token verification failed: {str(e)}")
        return None


def actor_from_payload(payload: Optional[dict]) -> Optional[Actor]:
    if not payload:
        return None
    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or role not in {r.value for r in TOKEN_ROLES}:
        return None
    return Actor(user_id=str(user_id), role=ActorRole(role))


async def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Resolve the caller of a protected route

    Raises:
        HTTPException: 401 if the token is missing, invalid or lacks a usable role
    """
    payload = verify_token(credentials.credentials, request.app.state.settings)
    actor = actor_from_payload(payload)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return actor


async def require_passenger(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.PASSENGER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Passenger access required",
        )
    return actor



async def require_driver(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.DRIVER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Driver access required",
        )
    return actor
