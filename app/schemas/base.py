"""
UTC datetime serialization for response schemas.

Timestamps are stored as naive UTC. These annotations render them with a
Z suffix so clients do not read them as local time.
"""

from datetime import datetime
from typing import Annotated

from pydantic import PlainSerializer


def _as_utc_z(dt: datetime | None) -> str | None:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ") if dt else None


# Usage: expires_at: UTCDatetime instead of expires_at: datetime
UTCDatetime = Annotated[datetime, PlainSerializer(_as_utc_z, return_type=str)]

UTCDatetimeOptional = Annotated[datetime | None, PlainSerializer(_as_utc_z, return_type=str | None)]
