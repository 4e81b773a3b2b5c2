"""
WebSocket connection manager for live ride updates.

Clients subscribe to a ride (or, as a driver, to their pending requests) and
receive a fresh snapshot every time the record store commits a matching change.
Each subscription is a store Subscription drained by one forwarding task; all
of them are closed when the socket goes away.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from ridecore.errors import RideError
from ridecore.models.events import (
    ErrorEvent,
    LocationUpdateMessage,
    PendingRidesEvent,
    RideSnapshotEvent,
)
from ridecore.models.ride_schema import ACTIVE_STATUSES, Actor, ActorRole, RideStatus
from ridecore.services.dispatch_engine import DispatchEngine
from ridecore.sockets.ws_auth import WebSocketAuthError, authenticate_websocket
from ridecore.store.change_feed import QuerySnapshot, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# CONFIGURATION
# =============================================================================

HEARTBEAT_INTERVAL_SECONDS = 15
SEND_TIMEOUT_SECONDS = 5

PENDING_CHANNEL = "pending"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ride_channel(ride_id: str) -> str:
    return f"ride:{ride_id}"


def error_event(message: str, code: Optional[str] = None) -> dict:
    return ErrorEvent(message=message, error=code).model_dump()


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ClientConnection:
    """One authenticated socket and the subscriptions it owns"""

    websocket: WebSocket
    actor: Actor
    engine: DispatchEngine
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    is_alive: bool = True
    subscriptions: Dict[str, asyncio.Task] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.actor.user_id

    @property
    def role(self) -> str:
        return self.actor.role.value


# =============================================================================
# CONNECTION MANAGER
# =============================================================================


class ConnectionManager:
    """Tracks one live socket per user"""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._connections_lock = asyncio.Lock()

    async def connect(
        self, websocket: WebSocket, actor: Actor, engine: DispatchEngine
    ) -> ClientConnection:
        """Accept and register a new WebSocket connection."""
        if actor.user_id in self._connections:
            logger.info(
                f"Closing existing connection for user {actor.user_id} (new connection)"
            )
            await self.disconnect(actor.user_id, reason="New connection established")

        await websocket.accept()
        connection = ClientConnection(websocket=websocket, actor=actor, engine=engine)

        async with self._connections_lock:
            self._connections[actor.user_id] = connection

        logger.info(f"WebSocket connected: user_id={actor.user_id}, role={connection.role}")
        return connection

    async def disconnect(
        self,
        user_id: str,
        reason: str = "Client disconnected",
        connection: Optional[ClientConnection] = None,
    ) -> None:
        """Close every subscription of the connection and drop it."""
        async with self._connections_lock:
            current = self._connections.get(user_id)
            if connection is None or current is connection:
                connection = self._connections.pop(user_id, None)

        if connection is None:
            return

        connection.is_alive = False
        await self.unsubscribe_all(connection)

        try:
            await connection.websocket.close(
                code=status.WS_1000_NORMAL_CLOSURE, reason=reason
            )
        except (RuntimeError, WebSocketDisconnect):
            # already closed by the client
            pass

        logger.info(f"WebSocket disconnected: user_id={user_id}, reason={reason}")

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        connection: ClientConnection,
        channel: str,
        subscription: Subscription,
        render: Callable[[QuerySnapshot], dict],
    ) -> bool:
        """Start forwarding snapshots; returns False if the channel is already open"""
        if channel in connection.subscriptions:
            subscription.close()
            return False
        task = asyncio.create_task(
            self._forward(connection, channel, subscription, render),
            name=f"ws-{connection.user_id}-{channel}",
        )
        # a task cancelled before its first step never enters the async with
        task.add_done_callback(lambda _: subscription.close())
        connection.subscriptions[channel] = task
        logger.info(f"User {connection.user_id} subscribed to {channel}")
        return True

    async def _forward(
        self,
        connection: ClientConnection,
        channel: str,
        subscription: Subscription,
        render: Callable[[QuerySnapshot], dict],
    ) -> None:
        async with subscription:
            async for snapshot in subscription:
                if not await self.send(connection, render(snapshot)):
                    break
        if connection.subscriptions.get(channel) is asyncio.current_task():
            del connection.subscriptions[channel]

    async def unsubscribe(self, connection: ClientConnection, channel: str) -> bool:
        task = connection.subscriptions.pop(channel, None)
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"User {connection.user_id} unsubscribed from {channel}")
        return True

    async def unsubscribe_all(self, connection: ClientConnection) -> None:
        for channel in list(connection.subscriptions):
            await self.unsubscribe(connection, channel)

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send(
        self,
        connection: ClientConnection,
        message: dict,
        timeout: float = SEND_TIMEOUT_SECONDS,
    ) -> bool:
        """Send a message with timeout protection; marks the connection dead on failure"""
        if not connection.is_alive:
            return False

        try:
            async with connection.write_lock:
                await asyncio.wait_for(
                    connection.websocket.send_json(message), timeout=timeout
                )
            return True

        except asyncio.TimeoutError:
            logger.warning(f"Send timeout for user {connection.user_id}, marking as stale")
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug(f"WebSocket not connected for {connection.user_id}: {str(e)}")

        connection.is_alive = False
        return False

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        counts = {role.value: 0 for role in ActorRole if role != ActorRole.SYSTEM}
        for conn in self._connections.values():
            counts[conn.role] = counts.get(conn.role, 0) + 1
        return {
            "active_connections": len(self._connections),
            "active_subscriptions": sum(
                len(conn.subscriptions) for conn in self._connections.values()
            ),
            "connections_by_role": counts,
        }


# =============================================================================
# EVENT HANDLERS
# =============================================================================

Handler = Callable[[ConnectionManager, ClientConnection, dict], Awaitable[Optional[dict]]]


def _render_ride(ride_id: str) -> Callable[[QuerySnapshot], dict]:
    def render(snapshot: QuerySnapshot) -> dict:
        ride = snapshot.rides[0].to_dict() if snapshot.rides else None
        return RideSnapshotEvent(ride_id=ride_id, ride=ride, timestamp=_now_iso()).model_dump()

    return render


def _render_pending(snapshot: QuerySnapshot) -> dict:
    return PendingRidesEvent(
        rides=[ride.to_dict() for ride in snapshot.rides], timestamp=_now_iso()
    ).model_dump()


async def handle_subscribe_ride(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    """Stream snapshots of one ride the user is a party to"""
    ride_id = data.get("ride_id")
    if not ride_id:
        return error_event("Missing ride_id")

    # raises Forbidden / NotFound before anything is subscribed
    await connection.engine.get_ride(ride_id, connection.actor)

    subscription = connection.engine.store.watch(ride_id)
    if not manager.subscribe(connection, ride_channel(ride_id), subscription, _render_ride(ride_id)):
        return {"event_type": "subscribed", "channel": ride_channel(ride_id), "message": "Already subscribed"}
    return {"event_type": "subscribed", "channel": ride_channel(ride_id)}


async def handle_subscribe_pending(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    """Driver's incoming ride requests"""
    if connection.actor.role != ActorRole.DRIVER:
        return error_event("Only drivers can subscribe to pending requests", "forbidden")

    driver_id = connection.user_id
    subscription = connection.engine.store.subscribe(
        lambda ride: ride.driver_id == driver_id and ride.status == RideStatus.PENDING,
        driver_id=driver_id,
        statuses=[RideStatus.PENDING],
    )
    manager.subscribe(connection, PENDING_CHANNEL, subscription, _render_pending)
    return {"event_type": "subscribed", "channel": PENDING_CHANNEL}


async def handle_unsubscribe(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    ride_id = data.get("ride_id")
    channel = ride_channel(ride_id) if ride_id else data.get("channel")
    if not channel:
        return error_event("Missing ride_id or channel")

    await manager.unsubscribe(connection, channel)
    return {"event_type": "unsubscribed", "channel": channel}


async def handle_location_update(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    """Real driver GPS; subscribers see it through their ride snapshot"""
    if connection.actor.role != ActorRole.DRIVER:
        logger.warning(f"Non-driver {connection.user_id} attempted location update")
        return error_event("Only drivers can send location updates", "forbidden")

    try:
        message = LocationUpdateMessage.model_validate(data)
    except PydanticValidationError:
        return error_event("Missing or invalid ride_id, latitude or longitude", "validation_error")

    await connection.engine.update_driver_location(
        message.ride_id, connection.actor, message.location()
    )
    return None


async def handle_ping(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> dict:
    """Handle ping event - respond with pong for heartbeat."""
    return {"event_type": "pong", "timestamp": _now_iso()}


EVENT_HANDLERS: Dict[str, Handler] = {
    "subscribe_ride": handle_subscribe_ride,
    "subscribe_pending": handle_subscribe_pending,
    "unsubscribe": handle_unsubscribe,
    "location_update": handle_location_update,
    "ping": handle_ping,
}


async def dispatch_event(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    event_type = data.get("event_type") or data.get("type")
    if not event_type:
        return error_event("Missing event_type")

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        return error_event(f"Unknown event type: {event_type}")

    try:
        return await handler(manager, connection, data)
    except RideError as e:
        return error_event(e.message, e.code)


# =============================================================================
# WEBSOCKET ENDPOINT
# =============================================================================


@router.websocket("/ride")
async def websocket_endpoint(websocket: WebSocket):
    """Main WebSocket endpoint for real-time ride updates."""
    state = websocket.app.state
    manager: ConnectionManager = state.connections
    engine: DispatchEngine = state.engine

    try:
        actor = await authenticate_websocket(websocket, state.settings)
    except WebSocketAuthError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return

    connection = await manager.connect(websocket, actor, engine)

    try:
        active = [
            ride
            for ride in await engine.list_rides(actor)
            if ride.status in ACTIVE_STATUSES
        ]
        await manager.send(
            connection,
            {
                "event_type": "connected",
                "message": "Connected to ride updates",
                "user_id": actor.user_id,
                "role": actor.role.value,
                "active_rides": [{"ride_id": r.id, "status": r.status.value} for r in active],
                "timestamp": _now_iso(),
            },
        )

        while connection.is_alive:
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(), timeout=HEARTBEAT_INTERVAL_SECONDS
                )
            except asyncio.TimeoutError:
                continue

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                await manager.send(connection, error_event("Invalid JSON format"))
                continue
            if not isinstance(data, dict):
                await manager.send(connection, error_event("Message must be a JSON object"))
                continue

            response = await dispatch_event(manager, connection, data)
            if response:
                await manager.send(connection, response)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally: {actor.user_id}")

    finally:
        await manager.disconnect(actor.user_id, reason="Connection ended", connection=connection)
