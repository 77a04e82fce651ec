from fastapi import APIRouter

from app.api.routes import cleanup
from app.api.routes import location
from app.api.routes import push

api_router = APIRouter()

api_router.include_router(location.router, prefix="/location", tags=["location"])
api_router.include_router(cleanup.router, tags=["cleanup"])
api_router.include_router(push.router, prefix="/push", tags=["push"])


@api_router.get("/")
def api_info():
    return {
        "message": "Proximity Alerts API",
        "endpoints": {
            "POST /location/update": "Update user location and check for nearby users",
            "GET /location/nearby": "Get nearby users for a given location",
            "DELETE /cleanup": "Remove stale location records (cron job)",
            "POST /push/register": "Register an Expo push token for proximity alerts",
        },
        "documentation": "See README.md for setup and usage instructions",
    }
