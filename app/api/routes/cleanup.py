from datetime import timedelta

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_ingest_service
from app.core.config import CLEANUP_RETENTION_SECONDS
from app.services.location_ingest import LocationIngestService, UpstreamFailure

router = APIRouter()


@router.delete("/cleanup")
async def cleanup_stale_locations(
    service: LocationIngestService = Depends(get_ingest_service),
):
    result = await service.cleanup(timedelta(seconds=CLEANUP_RETENTION_SECONDS))

    if isinstance(result, UpstreamFailure):
        return JSONResponse(status_code=500, content={"success": False, "error": result.message})

    return {"success": True, "removed": result.removed}
