from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from app.core.db import get_db
from app.models.push_token import PushToken
from app.services.location_ingest import is_valid_user_id
from app.services.location_store import dialect_insert
from app.services.notifications import is_expo_token

router = APIRouter()


class PushRegisterRequest(BaseModel):
    user_id: str = Field(alias="userId")
    token: str  # Expo push token


@router.post("/register")
def register_push_token(
    payload: PushRegisterRequest,
    db: Session = Depends(get_db),
):
    if not is_valid_user_id(payload.user_id):
        raise HTTPException(status_code=400, detail="Invalid userId format")

    if not is_expo_token(payload.token):
        raise HTTPException(status_code=400, detail="Invalid Expo push token format")

    # single statement so concurrent first registrations cannot collide
    stmt = dialect_insert(db.get_bind())(PushToken).values(
        user_id=payload.user_id,
        expo_push_token=payload.token,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[PushToken.user_id],
        set_={"expo_push_token": stmt.excluded.expo_push_token, "updated_at": func.now()},
    )
    db.execute(stmt)
    db.commit()

    logger.info(f"Registered push token | user={payload.user_id}")
    return {"ok": True}
