from bridgesync.models.base import SyncModel


class FieldFallbackStatus(SyncModel):
    entity_type: str
    level: int
    retry_count: int
    original_fields: list[str]
    current_fields: list[str]
    invalid_fields: list[str]
    cached_invalid_fields: list[str]
