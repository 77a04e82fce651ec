from typing import Optional

from app.core.proximity_config import MAX_GPS_ACCURACY


def admit(accuracy: Optional[float], max_accuracy: float = MAX_GPS_ACCURACY) -> bool:
    # missing accuracy is trusted
    if accuracy is None:
        return True
    return accuracy <= max_accuracy
