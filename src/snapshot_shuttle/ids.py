import uuid
from datetime import datetime, timezone
from typing import Final

SNAPSHOT_ID_TIME_FORMAT: Final[str] = "%Y%m%dT%H%M%S"
SUFFIX_LENGTH: Final[int] = 8


def make_snapshot_id(now: datetime) -> str:
    """
    Build a snapshot id from a clock reading.

    The compact UTC timestamp prefix makes ids sort lexically by creation
    time; the random suffix separates runs started within the same second.
    """
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{now.strftime(SNAPSHOT_ID_TIME_FORMAT)}-{uuid.uuid4().hex[:SUFFIX_LENGTH]}"
