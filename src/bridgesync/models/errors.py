from typing import Any

from bridgesync.models.base import SyncModel


class ErrorInfo(SyncModel):
    type: str
    message: str
    status: int | None = None
    code: str | None = None
    endpoint: str | None = None
    method: str | None = None
    details: dict[str, Any] = {}
