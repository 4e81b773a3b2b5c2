"""
WebSocket Authentication Utility
Handles JWT authentication for WebSocket connections
"""

import logging

from fastapi import WebSocket

from ridecore.config import Settings
from ridecore.models.ride_schema import Actor
from ridecore.utils.jwt_utils import actor_from_payload, verify_token

logger = logging.getLogger(__name__)


class WebSocketAuthError(Exception):
    pass


async def authenticate_websocket(websocket: WebSocket, settings: Settings) -> Actor:
    """
    Authenticate WebSocket connection using JWT token

    The token is read from the ?token= query parameter, falling back to an
    "Authorization: Bearer" header.

    Raises:
        WebSocketAuthError: if the token is missing or invalid
    """
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]

    if not token:
        logger.warning("WebSocket connection rejected: Missing authentication token")
        raise WebSocketAuthError("Missing authentication token")

    actor = actor_from_payload(verify_token(token, settings))
    if actor is None:
        logger.warning("WebSocket connection rejected: Invalid or expired token")
        raise WebSocketAuthError("Invalid or expired token")

    logger.info(f"WebSocket authenticated: user_id={actor.user_id}, role={actor.role.value}")
    return actor
