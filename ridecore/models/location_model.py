from pydantic import BaseModel, Field

from ridecore.models.ride_schema import Coordinate


class LocationUpdate(BaseModel):
    """Driver GPS fix"""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude coordinate")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude coordinate")

    def location(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)
