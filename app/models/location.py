from sqlalchemy import CheckConstraint, Column, DateTime, Float, Index, Integer, String

from app.core.db import Base
from app.core.proximity_config import CONSECUTIVE_THRESHOLD


class Location(Base):
    __tablename__ = "locations"

    user_id = Column(String(128), primary_key=True, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)

    # naive UTC
    last_updated = Column(DateTime, nullable=False)

    proximity_count = Column(Integer, nullable=False, default=0)
    last_notified_at = Column(DateTime, nullable=True)

    # bumped on every committed counter write, compared by conditional updates
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            f"proximity_count >= 0 AND proximity_count <= {CONSECUTIVE_THRESHOLD}",
            name="locations_proximity_count_check",
        ),
        Index("idx_locations_position", "lat", "lng"),
        Index("idx_locations_last_updated", "last_updated"),
    )
