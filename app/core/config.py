import os
from dotenv import load_dotenv
from loguru import logger

load_dotenv()

def _get_env(key: str, default: str | None = None) -> str:
    val = os.getenv(key, default)
    if val is None:
        raise RuntimeError(f"Missing required env var: {key}")
    return val

def _get_bool(key: str, default: str) -> bool:
    return _get_env(key, default).lower() in ("1", "true", "yes")

APP_ENV = _get_env("APP_ENV", "local")
DATABASE_URL = _get_env("DATABASE_URL", "sqlite:///./proximity.db")
LOG_LEVEL = _get_env("LOG_LEVEL", "DEBUG")
LOG_FILE = _get_env("LOG_FILE", "logs/app.log")

# "sql" searches the locations table directly, "supabase" calls the nearby_locations RPC
PROXIMITY_BACKEND = _get_env("PROXIMITY_BACKEND", "sql").lower()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

EXPO_PUSH_URL = _get_env("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
NOTIFICATIONS_ENABLED = _get_bool("NOTIFICATIONS_ENABLED", "true")

CLEANUP_RETENTION_SECONDS = int(_get_env("CLEANUP_RETENTION_SECONDS", "3600"))
CLEANUP_INTERVAL_MINUTES = int(_get_env("CLEANUP_INTERVAL_MINUTES", "0"))

logger.debug(
    f"Config loaded: APP_ENV={APP_ENV}, PROXIMITY_BACKEND={PROXIMITY_BACKEND}, LOG_LEVEL={LOG_LEVEL}"
)
