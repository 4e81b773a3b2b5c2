"""
Ride Core - FastAPI Entry Point
Wires the record store, trip estimator and dispatch engine into the HTTP and
WebSocket surface.
"""

import logging
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ridecore.config import Settings
from ridecore.database import connect_db, disconnect_db
from ridecore.errors import RideError
from ridecore.logging_config import configure_logging
from ridecore.routes import admin_routes, driver_routes, ride_routes
from ridecore.services.dispatch_engine import DispatchEngine, SettlementHook
from ridecore.services.estimator import TripEstimator
from ridecore.services.simulation import PositionSimulator
from ridecore.sockets import ride_socket
from ridecore.store.base import RideStore
from ridecore.store.memory_store import InMemoryRideStore
from ridecore.store.mongo_store import MongoRideStore
from ridecore.store.user_directory import MongoUserDirectory, UserDirectory
from ridecore.utils.maps_utils import (
    GoogleReverseGeocoder,
    GoogleRoutesProvider,
    RouteProvider,
    StraightLineRouteProvider,
)

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def build_route_provider(settings: Settings) -> RouteProvider:
    """
    Straight-line routes are for development and must be asked for explicitly;
    the Google provider raises ValueError without an API key.
    """
    if settings.routing_provider == "straight_line":
        logger.warning("Using straight-line routes, trip metrics are approximate")
        return StraightLineRouteProvider()
    if settings.routing_provider != "google":
        raise ValueError(
            f"Unknown ROUTING_PROVIDER {settings.routing_provider!r}, expected google or straight_line"
        )
    return GoogleRoutesProvider(
        settings.google_maps_api_key, timeout=settings.provider_timeout_seconds
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RideStore] = None,
    users: Optional[UserDirectory] = None,
    provider: Optional[RouteProvider] = None,
    geocoder: Optional[GoogleReverseGeocoder] = None,
    settlement_hook: Optional[SettlementHook] = None,
) -> FastAPI:
    """
    Build the application. Collaborators not passed in are created from settings.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    uses_mongo = store is None and settings.store_backend == "mongo"
    if store is None:
        store = (
            MongoRideStore(
                relay=settings.change_relay,
                poll_interval_seconds=settings.change_poll_interval_seconds,
            )
            if uses_mongo
            else InMemoryRideStore()
        )
    if users is None and uses_mongo:
        users = MongoUserDirectory()
    if geocoder is None and settings.google_maps_api_key:
        geocoder = GoogleReverseGeocoder(
            settings.google_maps_api_key, timeout=settings.provider_timeout_seconds
        )

    estimator = TripEstimator(
        provider or build_route_provider(settings),
        rate_per_km=settings.rate_per_km,
        max_attempts=settings.route_max_attempts,
        backoff_seconds=settings.route_retry_backoff_seconds,
    )
    engine = DispatchEngine(
        store,
        estimator,
        users=users,
        geocoder=geocoder,
        simulator=(
            PositionSimulator(settings.simulation_tick_ms)
            if settings.simulate_positions
            else None
        ),
        completion_grace_seconds=settings.completion_grace_seconds,
        settlement_hook=settlement_hook,
    )

    app = FastAPI(
        title="Ride Core API",
        description="Ride lifecycle and dispatch service",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.connections = ride_socket.ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Update with specific origins in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests with timing"""
        start_time = time.time()
        logger.info(f"Request: {request.method} {request.url.path}")

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(f"Completed in {process_time:.2f}s - Status: {response.status_code}")
        return response

    @app.exception_handler(RideError)
    async def ride_error_handler(request: Request, exc: RideError):
        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()]
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": "validation_error",
                "message": f"Missing or invalid fields: {', '.join(fields)}",
            },
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "internal_error",
                "message": "Internal server error",
            },
        )

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting Ride Core API...")
        if uses_mongo:
            connect_db(settings)
        await store.start()
        await engine.recover()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down Ride Core API...")
        await engine.shutdown()
        await store.close()
        await estimator.aclose()
        if uses_mongo:
            disconnect_db()

    @app.get("/")
    async def root():
        """API health check"""
        return {"success": True, "message": "Ride Core API is running", "version": API_VERSION}

    @app.get("/health")
    async def health_check():
        """Detailed health check"""
        return {
            "success": True,
            "status": "healthy",
            "store": type(store).__name__,
            "subscriptions": store.subscriber_count,
        }

    app.include_router(ride_routes.router, prefix="/rides", tags=["Rides"])
    app.include_router(driver_routes.router, prefix="/drivers", tags=["Drivers"])
    app.include_router(admin_routes.router, prefix="/admin", tags=["Admin"])
    app.include_router(ride_socket.router, prefix="/ws", tags=["WebSocket"])

    return app


if __name__ == "__main__":
    import uvicorn

    # uvicorn ridecore.main:create_app --factory
    uvicorn.run("ridecore.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
