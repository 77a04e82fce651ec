from loguru import logger
from sqlalchemy.engine import Engine

from app.core.db import engine as default_engine, Base

# Import all models so SQLAlchemy registers them
from app.models.location import Location
from app.models.push_token import PushToken

def init_db(engine: Engine | None = None):
    logger.info("Creating database tables")
    Base.metadata.create_all(bind=engine or default_engine)
    logger.info("Database tables created")
