from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, JsonValue

# Dynamic record payloads stay as tagged JSON values at the wire boundary.
Payload = dict[str, JsonValue]


class SyncModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (sqlite drops tzinfo on round-trip)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
