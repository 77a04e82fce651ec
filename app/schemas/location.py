from datetime import datetime
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field


class LocationUpdateRequest(BaseModel):
    # loosely typed on purpose: numbers may arrive as strings, validation
    # happens in the ingest service so bad input maps to 400
    model_config = ConfigDict(populate_by_name=True)

    user_id: Any = Field(default=None, alias="userId")
    lat: Any = None
    lng: Any = None
    accuracy: Any = None


class NearbyUserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    distance_meters: float
    last_updated: datetime


class LocationUpdateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    nearby: List[NearbyUserOut]
    proximity_count: int = Field(alias="proximityCount")
    notified: bool


class LocationIgnoredResponse(BaseModel):
    success: bool = False
    message: str
    nearby: List[NearbyUserOut] = []


class NearbyResponse(BaseModel):
    users: List[NearbyUserOut]

