"""Runtime settings read from the environment.

Entrypoints load ``.env`` (``python-dotenv``, never overriding the process
environment) and then call ``SyncSettings.from_env()``. Library code receives
a ``SyncSettings`` instance explicitly; fields can also be passed by name,
which is how tests and the web app build one.

Variables
---------
``DATABASE_URL``
    SQLAlchemy URL of the transaction store.
``FS_MAX_RETRIES``
    Extra source attempts after a retryable failure (default ``0``).
``FS_RETRY_BASE_DELAY``
    Seconds before the first retry; doubles per attempt, capped at 60 s.
``FS_UPDATE_CATEGORY_ON_RESCRAPE``
    Whether cache/source categories may overwrite a stored non-manual category
    on re-ingest (default on).
``FS_RECURRING_EXCLUDED_CATEGORIES``
    Comma-separated categories never considered recurring (default
    ``Bank,Income``).
``FS_REPLAY_DIR``
    Directory of ``<vendor>.json`` captures served by the replay source.
``FS_DEFAULT_SYNC_DAYS``
    Look-back window when a sync request has no start date (default 30).

Empty variables count as unset.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MAX_RETRY_DELAY_SECONDS = 60.0
DEFAULT_RECURRING_EXCLUDED_CATEGORIES: tuple[str, ...] = ("Bank", "Income")


def backoff_delay(base: float, attempt: int) -> float:
    """Wait before retry number ``attempt`` (1-based): ``base * 2**(attempt-1)``, capped."""

    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), MAX_RETRY_DELAY_SECONDS)


class SyncSettings(BaseSettings):
    model_config = SettingsConfigDict(
        frozen=True,
        populate_by_name=True,
        env_ignore_empty=True,
        extra="ignore",
    )

    database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")
    max_retries: int = Field(default=0, ge=0, validation_alias="FS_MAX_RETRIES")
    retry_base_delay: float = Field(default=5.0, ge=0, validation_alias="FS_RETRY_BASE_DELAY")
    update_category_on_rescrape: bool = Field(
        default=True, validation_alias="FS_UPDATE_CATEGORY_ON_RESCRAPE"
    )
    recurring_excluded_categories: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_RECURRING_EXCLUDED_CATEGORIES,
        validation_alias="FS_RECURRING_EXCLUDED_CATEGORIES",
    )
    replay_dir: Path | None = Field(default=None, validation_alias="FS_REPLAY_DIR")
    default_sync_days: int = Field(default=30, ge=1, validation_alias="FS_DEFAULT_SYNC_DAYS")

    @field_validator("recurring_excluded_categories", mode="before")
    @classmethod
    def _split_csv(cls, v: Any) -> Any:
        if isinstance(v, str):
            return tuple(part.strip() for part in v.split(",") if part.strip())
        return v

    @classmethod
    def from_env(cls) -> SyncSettings:
        """Settings from the process environment; raises ``ValidationError`` (a ``ValueError``)."""

        return cls()


__all__ = [
    "DEFAULT_RECURRING_EXCLUDED_CATEGORIES",
    "MAX_RETRY_DELAY_SECONDS",
    "SyncSettings",
    "backoff_delay",
]
