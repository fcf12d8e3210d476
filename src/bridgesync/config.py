"""Client configuration backed by env vars and the local config table.

Uses pydantic-settings ``BaseSettings`` sub-configs grouped under a top-level
``BridgeSyncConfig``.  Every value can be set via:

  1. env vars                 (per-section prefix, highest priority)
  2. persisted override rows  (``save_config_value`` / ``load_config``)
  3. field defaults           (lowest priority)

Call ``load_config(db)`` after the local database is opened to sync the
persisted overrides into the in-memory singleton.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bridgesync.backoff import BackoffPolicy

# ---------------------------------------------------------------------------
# Single flat store of raw persisted values (async -> sync bridge)
# ---------------------------------------------------------------------------
_override_values: dict[str, str] = {}


class OverrideSource(PydanticBaseSettingsSource):
    """Reads values from ``_override_values`` using a per-class key map."""

    def get_field_value(
        self, field: Any, field_name: str
    ) -> tuple[Any, str, bool]:
        key_map: dict[str, str] = getattr(self.settings_cls, "_KEY_MAP", {})
        for key, name in key_map.items():
            if name == field_name and key in _override_values:
                return _override_values[key], field_name, False
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name in self.settings_cls.model_fields:
            val, _, _ = self.get_field_value(None, field_name)
            if val is not None:
                d[field_name] = val
        return d


class _Settings(BaseSettings):
    """Base for all sub-configs: env > persisted overrides > defaults."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, OverrideSource(settings_cls))


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------


class TransportConfig(_Settings):
    model_config = {"env_prefix": "BRIDGESYNC_HTTP_"}

    _KEY_MAP: ClassVar[dict[str, str]] = {
        "http_base_url": "base_url",
        "http_timeout": "timeout",
        "http_max_retries": "max_retries",
        "http_retry_delay": "retry_delay",
    }

    base_url: str = "http://localhost:8000"
    timeout: float = 30.0
    max_retries: int = 2
    retry_delay: float = 3.0

    def retry_policy(self) -> BackoffPolicy:
        return BackoffPolicy(base_delay=self.retry_delay, max_attempts=self.max_retries)


class SyncSettings(_Settings):
    model_config = {"env_prefix": "BRIDGESYNC_SYNC_"}

    _KEY_MAP: ClassVar[dict[str, str]] = {
        "sync_device_id": "device_id",
        "sync_user_id": "user_id",
        "sync_app_type": "app_type",
        "sync_mode": "mode",
        "sync_models": "models",
        "sync_batch_size": "batch_size",
        "sync_smart_pull_limit": "smart_pull_limit",
        "sync_check_interval": "check_interval",
    }

    device_id: str = "default"
    user_id: int | None = None
    app_type: str | None = None
    mode: Literal["batch", "smart"] = "batch"
    # Comma separated entity types; empty means "everything the server offers".
    models: str = ""
    batch_size: int = 100
    smart_pull_limit: int = 100
    check_interval: float = 300.0
    database_url: str = "sqlite+aiosqlite:///bridgesync.db"

    @property
    def model_list(self) -> list[str] | None:
        items = [m.strip() for m in self.models.split(",") if m.strip()]
        return items or None


class BackoffConfig(_Settings):
    model_config = {"env_prefix": "BRIDGESYNC_BACKOFF_"}

    _KEY_MAP: ClassVar[dict[str, str]] = {
        "backoff_base_delay": "base_delay",
        "backoff_max_attempts": "max_attempts",
        "backoff_jitter": "jitter",
    }

    base_delay: float = 3.0
    max_attempts: int = 5
    jitter: float = 0.0

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(base_delay=self.base_delay, max_attempts=self.max_attempts, jitter=self.jitter)


class FallbackConfig(_Settings):
    model_config = {"env_prefix": "BRIDGESYNC_FALLBACK_"}

    _KEY_MAP: ClassVar[dict[str, str]] = {
        "fallback_invalid_field_pattern": "invalid_field_pattern",
        "fallback_max_concurrent_resolutions": "max_concurrent_resolutions",
    }

    invalid_field_pattern: str = r"Invalid field ['\"]([^'\"]+)['\"]"
    max_concurrent_resolutions: int = 4


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

_SECTIONS: dict[str, type[BaseSettings]] = {
    "transport": TransportConfig,
    "sync": SyncSettings,
    "backoff": BackoffConfig,
    "fallback": FallbackConfig,
}

# Reverse lookup: override key -> section name
_KEY_TO_SECTION: dict[str, str] = {}
for _section_name, _cls in _SECTIONS.items():
    for _key in getattr(_cls, "_KEY_MAP", {}):
        _KEY_TO_SECTION[_key] = _section_name


class BridgeSyncConfig(BaseModel):
    transport: TransportConfig = TransportConfig()
    sync: SyncSettings = SyncSettings()
    backoff: BackoffConfig = BackoffConfig()
    fallback: FallbackConfig = FallbackConfig()


# Module-level singleton
config = BridgeSyncConfig()


# ---------------------------------------------------------------------------
# Reload helpers
# ---------------------------------------------------------------------------

def _reload_section(section_name: str) -> None:
    setattr(config, section_name, _SECTIONS[section_name]())


def _reload_all() -> None:
    for section_name in _SECTIONS:
        _reload_section(section_name)


def reset_config() -> None:
    """Drop all overrides and rebuild from env + defaults."""
    _override_values.clear()
    _reload_all()


# ---------------------------------------------------------------------------
# DB <-> memory sync
# ---------------------------------------------------------------------------

async def load_config(db: AsyncSession) -> None:
    """Load all persisted overrides into the in-memory singleton."""
    from bridgesync.db.models import ConfigEntry

    result = await db.execute(select(ConfigEntry))
    _override_values.clear()
    for row in result.scalars().all():
        _override_values[row.key] = row.value
    _reload_all()


async def save_config_value(db: AsyncSession, key: str, value: str) -> None:
    """Write a single override to the DB and refresh its section.

    The caller is responsible for calling ``await db.commit()``.
    """
    from bridgesync.db.models import ConfigEntry

    if key not in _KEY_TO_SECTION:
        raise KeyError(f"Unknown config key: {key}")

    result = await db.execute(select(ConfigEntry).where(ConfigEntry.key == key))
    row = result.scalar_one_or_none()
    if row:
        row.value = value
    else:
        db.add(ConfigEntry(key=key, value=value))

    _override_values[key] = value
    _reload_section(_KEY_TO_SECTION[key])
