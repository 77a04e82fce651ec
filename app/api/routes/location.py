from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.api.deps import get_ingest_service
from app.schemas.location import (
    LocationIgnoredResponse,
    LocationUpdateRequest,
    LocationUpdateResponse,
    NearbyResponse,
    NearbyUserOut,
)
from app.services.location_ingest import (
    LocationIngestService,
    QualityRejection,
    UpstreamFailure,
    ValidationFailure,
)

router = APIRouter()


def _nearby_out(users) -> list[NearbyUserOut]:
    return [NearbyUserOut.model_validate(u) for u in users]


# ------------------------------------------------------------------
# UPDATE
# ------------------------------------------------------------------

@router.post("/update")
async def update_location(
    payload: LocationUpdateRequest,
    service: LocationIngestService = Depends(get_ingest_service),
):
    result = await service.handle_report(payload.user_id, payload.lat, payload.lng, payload.accuracy)

    if isinstance(result, ValidationFailure):
        return JSONResponse(status_code=400, content={"success": False, "error": result.message})

    if isinstance(result, UpstreamFailure):
        return JSONResponse(status_code=500, content={"success": False, "error": result.message})

    if isinstance(result, QualityRejection):
        body = LocationIgnoredResponse(message=result.message, nearby=_nearby_out(result.nearby))
        return JSONResponse(content=body.model_dump(mode="json"))

    body = LocationUpdateResponse(
        nearby=_nearby_out(result.nearby),
        proximity_count=result.proximity_count,
        notified=result.notified,
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


# ------------------------------------------------------------------
# NEARBY
# ------------------------------------------------------------------

@router.get("/nearby")
async def nearby_users(
    user_id: str | None = Query(default=None, alias="userId"),
    lat: str | None = None,
    lng: str | None = None,
    service: LocationIngestService = Depends(get_ingest_service),
):
    result = await service.nearby(user_id, lat, lng)

    if isinstance(result, ValidationFailure):
        return JSONResponse(status_code=400, content={"error": result.message})

    if isinstance(result, UpstreamFailure):
        return JSONResponse(status_code=500, content={"error": result.message})

    body = NearbyResponse(users=_nearby_out(result.users))
    return JSONResponse(content=body.model_dump(mode="json"))
