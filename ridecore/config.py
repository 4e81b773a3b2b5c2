"""
Service Configuration
Reads settings from the environment (a local .env file is honoured)
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    store_backend: str = "mongo"
    mongo_uri: str = "mongodb://localhost:27017/ridecore"
    change_relay: str = "change_stream"
    change_poll_interval_seconds: float = 1.0
    jwt_secret_key: str = "your-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    google_maps_api_key: str = ""
    routing_provider: str = "google"
    rate_per_km: float = 5.0
    completion_grace_seconds: float = 2.0
    simulate_positions: bool = True
    simulation_tick_ms: int = 1000
    route_max_attempts: int = 3
    route_retry_backoff_seconds: float = 0.5
    provider_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults"""
        defaults = cls()
        return cls(
            store_backend=os.getenv("STORE_BACKEND", defaults.store_backend),
            mongo_uri=os.getenv("MONGO_URI", defaults.mongo_uri),
            change_relay=os.getenv("CHANGE_RELAY", defaults.change_relay),
            change_poll_interval_seconds=float(
                os.getenv("CHANGE_POLL_INTERVAL_SECONDS", defaults.change_poll_interval_seconds)
            ),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", defaults.jwt_secret_key),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", defaults.jwt_algorithm),
            google_maps_api_key=os.getenv("GOOGLE_MAPS_API_KEY", ""),
            routing_provider=os.getenv("ROUTING_PROVIDER", defaults.routing_provider),
            rate_per_km=float(os.getenv("RATE_PER_KM", defaults.rate_per_km)),
            completion_grace_seconds=float(
                os.getenv("COMPLETION_GRACE_SECONDS", defaults.completion_grace_seconds)
            ),
            simulate_positions=_env_bool(
                "SIMULATE_POSITIONS", defaults.simulate_positions
            ),
            simulation_tick_ms=int(
                os.getenv("SIMULATION_TICK_MS", defaults.simulation_tick_ms)
            ),
            route_max_attempts=int(
                os.getenv("ROUTE_MAX_ATTEMPTS", defaults.route_max_attempts)
            ),
            route_retry_backoff_seconds=float(
                os.getenv(
                    "ROUTE_RETRY_BACKOFF_SECONDS", defaults.route_retry_backoff_seconds
                )
            ),
            provider_timeout_seconds=float(
                os.getenv("PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds)
            ),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )
