"""Room token generation and validation.

Room ids look like ``YYYYMMDD-HHMMSS-xxxx``: local creation time plus a
four character base36 suffix. Any non-empty string is accepted by the server;
this format is only what clients generate.
"""

import re
import secrets
from datetime import datetime

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
SUFFIX_LENGTH = 4

_ROOM_ID_PATTERN = re.compile(r"^\d{8}-\d{6}-[a-z0-9]{4}$")


def generate_room_id(now: datetime | None = None) -> str:
    """Generate a new room id.

    Args:
        now: Timestamp to embed (defaults to the current local time)

    Returns:
        Room id in ``YYYYMMDD-HHMMSS-xxxx`` form
    """
    now = now or datetime.now()
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{now:%Y%m%d}-{now:%H%M%S}-{suffix}"


def is_valid_room_id(room_id: str) -> bool:
    return bool(_ROOM_ID_PATTERN.match(room_id))


def extract_timestamp_from_room_id(room_id: str) -> datetime | None:
    """Recover the creation time embedded in a generated room id.

    Returns None for ids not in the generated format or with an impossible
    date (e.g. month 13).
    """
    if not is_valid_room_id(room_id):
        return None

    date_part, time_part, _ = room_id.split("-")
    try:
        return datetime.strptime(date_part + time_part, "%Y%m%d%H%M%S")
    except ValueError:
        return None
