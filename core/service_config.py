"""
Visit detection settings provider.

Loads visit thresholds from the app settings document with environment
variable overrides, validates them and caches the result in process.
The cache is dropped by ``invalidate()`` (called on every settings update),
so threshold changes apply to the next ping without a restart.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from visits.settings import VisitDetectionSettings

logger = logging.getLogger(__name__)

# VisitDetectionSettings field -> AppSettings document field
SETTINGS_FIELD_MAP: dict[str, str] = {
    "required_hits": "visit_required_hits",
    "hit_window_minutes": "visit_hit_window_minutes",
    "min_radius_meters": "visit_min_radius_meters",
    "max_radius_meters": "visit_max_radius_meters",
    "accuracy_multiplier": "visit_accuracy_multiplier",
    "accuracy_reject_meters": "visit_accuracy_reject_meters",
    "max_search_radius_meters": "visit_max_search_radius_meters",
    "candidate_stale_minutes": "visit_candidate_stale_minutes",
    "end_visit_after_minutes": "visit_end_after_minutes",
    "notes_snapshot_max_chars": "visit_notes_snapshot_max_chars",
    "notification_cooldown_hours": "visit_notification_cooldown_hours",
}

ENV_PREFIX = "VISIT_"

SettingsLoader = Callable[[], Awaitable[dict[str, Any]]]


def env_var_name(field_name: str) -> str:
    """Environment variable that overrides a settings field."""
    return f"{ENV_PREFIX}{field_name.upper()}"


def _apply_env_overrides(values: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to raw settings values.

    Environment variables take precedence over database settings.
    """
    merged = dict(values)
    for field_name in SETTINGS_FIELD_MAP:
        env_value = os.getenv(env_var_name(field_name), "").strip()
        if env_value:
            merged[field_name] = env_value
    return merged


async def load_settings_from_db() -> dict[str, Any]:
    """Read stored thresholds from the app settings document.

    Returns only the fields that are explicitly set; missing fields fall
    back to the model defaults.
    """
    from db.models import AppSettings

    doc = await AppSettings.find_one()
    if doc is None:
        return {}
    values: dict[str, Any] = {}
    for field_name, doc_field in SETTINGS_FIELD_MAP.items():
        value = getattr(doc, doc_field, None)
        if value is not None:
            values[field_name] = value
    return values


class SettingsProvider:
    """Serves the current VisitDetectionSettings with explicit invalidation."""

    def __init__(self, loader: SettingsLoader | None = None) -> None:
        self._loader = loader or load_settings_from_db
        self._cached: VisitDetectionSettings | None = None
        self._lock = asyncio.Lock()

    async def current(self) -> VisitDetectionSettings:
        """
        Get the current visit detection settings.

        Falls back to defaults (plus environment overrides) when the stored
        settings cannot be loaded or fail validation. Fallback results are
        not cached, so the next call retries the store.
        """
        cached = self._cached
        if cached is not None:
            return cached

        async with self._lock:
            if self._cached is not None:
                return self._cached

            try:
                stored = await self._loader()
            except Exception as e:
                logger.warning(
                    "Failed to load visit settings from DB, using defaults: %s",
                    e,
                )
                return self._defaults()

            try:
                settings = VisitDetectionSettings(**_apply_env_overrides(stored))
            except PydanticValidationError:
                logger.exception("Stored visit settings are invalid, using defaults")
                return self._defaults()

            self._cached = settings
            logger.debug("Loaded visit detection settings: %s", settings)
            return settings

    def invalidate(self) -> None:
        """Drop the cached settings so the next current() reloads them."""
        self._cached = None

    @staticmethod
    def _defaults() -> VisitDetectionSettings:
        try:
            return VisitDetectionSettings(**_apply_env_overrides({}))
        except PydanticValidationError:
            logger.exception("Visit settings environment overrides are invalid")
            return VisitDetectionSettings()


settings_provider = SettingsProvider()


def clear_config_cache() -> None:
    """
    Clear the settings cache.

    Called on settings update.
    """
    settings_provider.invalidate()


async def update_visit_settings(
    changes: dict[str, Any],
    *,
    provider: SettingsProvider | None = None,
) -> VisitDetectionSettings:
    """
    Validate and persist visit threshold changes.

    Args:
        changes: Mapping of VisitDetectionSettings field names to new values.
        provider: Provider to invalidate; defaults to the process-wide one.

    Returns:
        The validated settings now in effect (before env overrides).

    Raises:
        ValidationError: If a field is unknown or the merged settings are invalid.
    """
    from db.models import AppSettings

    unknown = sorted(set(changes) - set(SETTINGS_FIELD_MAP))
    if unknown:
        msg = f"Unknown visit settings: {', '.join(unknown)}"
        raise ValidationError(msg, {"fields": unknown})

    provider = provider or settings_provider
    stored = await load_settings_from_db()
    try:
        validated = VisitDetectionSettings(**{**stored, **changes})
    except PydanticValidationError as exc:
        msg = "Invalid visit settings"
        raise ValidationError(msg, {"errors": exc.errors()}) from exc

    doc = await AppSettings.find_one()
    if doc is None:
        doc = AppSettings()
    for field_name in changes:
        setattr(doc, SETTINGS_FIELD_MAP[field_name], getattr(validated, field_name))
    doc.updated_at = datetime.now(UTC)
    await doc.save()

    provider.invalidate()
    logger.info("Updated visit settings: %s", ", ".join(sorted(changes)))
    return validated
