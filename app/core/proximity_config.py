# --------------------------------------------------
# GPS QUALITY
# --------------------------------------------------

# Reports with a horizontal accuracy worse than this (meters) are ignored
MAX_GPS_ACCURACY = 50

# --------------------------------------------------
# PROXIMITY SEARCH
# --------------------------------------------------

MAX_DISTANCE_METERS = 100

# Records not updated within this window are not considered nearby
INACTIVE_AFTER_SECONDS = 120

NEARBY_LIMIT = 10

# --------------------------------------------------
# HYSTERESIS
# --------------------------------------------------

# Consecutive detections required before alerting
CONSECUTIVE_THRESHOLD = 2

NOTIFICATION_COOLDOWN_SECONDS = 60

# --------------------------------------------------
# CONSISTENCY
# --------------------------------------------------

# How many times a conflicting counter write is retried before giving up
WRITE_CONFLICT_RETRIES = 1

# --------------------------------------------------
# VALIDATION
# --------------------------------------------------

USER_ID_PATTERN = r"^[A-Za-z0-9_-]{3,128}$"
