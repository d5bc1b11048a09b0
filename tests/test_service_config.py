from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

import db.models
from core import service_config
from core.exceptions import ValidationError
from core.service_config import SettingsProvider, update_visit_settings
from visits.settings import VisitDetectionSettings


def _loader(values: dict | None = None, *, error: Exception | None = None) -> AsyncMock:
    if error is not None:
        return AsyncMock(side_effect=error)
    return AsyncMock(return_value=dict(values or {}))


@pytest.mark.asyncio
async def test_defaults_when_nothing_stored() -> None:
    provider = SettingsProvider(loader=_loader())

    settings = await provider.current()

    assert settings == VisitDetectionSettings()
    assert settings.required_hits == 2
    assert settings.hit_window_minutes == 15
    assert settings.min_radius_meters == 35
    assert settings.max_radius_meters == 150
    assert settings.accuracy_multiplier == 2.0
    assert settings.accuracy_reject_meters == 200
    assert settings.max_search_radius_meters == 200
    assert settings.candidate_stale_minutes == 60
    assert settings.end_visit_after_minutes == 45
    assert settings.notes_snapshot_max_chars == 20000
    assert settings.notification_cooldown_hours == 0


@pytest.mark.asyncio
async def test_current_is_cached_until_invalidated() -> None:
    loader = _loader({"required_hits": 3})
    provider = SettingsProvider(loader=loader)

    first = await provider.current()
    second = await provider.current()

    assert first.required_hits == 3
    assert second is first
    assert loader.await_count == 1

    loader.return_value = {"required_hits": 4}
    provider.invalidate()

    assert (await provider.current()).required_hits == 4
    assert loader.await_count == 2


@pytest.mark.asyncio
async def test_env_override_beats_stored_value(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VISIT_REQUIRED_HITS", "4")
    monkeypatch.setenv("VISIT_END_VISIT_AFTER_MINUTES", "90")
    provider = SettingsProvider(loader=_loader({"required_hits": 3}))

    settings = await provider.current()

    assert settings.required_hits == 4
    assert settings.end_visit_after_minutes == 90


@pytest.mark.asyncio
async def test_load_failure_falls_back_to_defaults_without_caching() -> None:
    loader = _loader(error=RuntimeError("db down"))
    provider = SettingsProvider(loader=loader)

    settings = await provider.current()
    await provider.current()

    assert settings == VisitDetectionSettings()
    assert loader.await_count == 2


@pytest.mark.asyncio
async def test_invalid_stored_settings_fall_back_to_defaults() -> None:
    provider = SettingsProvider(
        loader=_loader({"min_radius_meters": 100, "max_radius_meters": 50}),
    )

    assert await provider.current() == VisitDetectionSettings()


@pytest.mark.parametrize(
    "values",
    [
        {"min_radius_meters": 100, "max_radius_meters": 50},
        {"max_radius_meters": 250, "max_search_radius_meters": 200},
        {"required_hits": 0},
        {"hit_window_minutes": -1},
    ],
)
def test_settings_validation(values) -> None:
    with pytest.raises(ValueError):
        VisitDetectionSettings(**values)


def test_settings_are_immutable() -> None:
    settings = VisitDetectionSettings()
    with pytest.raises(ValueError):
        settings.required_hits = 5


class _FakeAppSettings:
    stored: SimpleNamespace | None = None

    def __init__(self) -> None:
        self.save = AsyncMock()
        type(self).created = self

    @classmethod
    async def find_one(cls):
        return cls.stored


@pytest.fixture
def fake_app_settings(monkeypatch: pytest.MonkeyPatch) -> type[_FakeAppSettings]:
    doc = SimpleNamespace(visit_required_hits=3, save=AsyncMock())
    _FakeAppSettings.stored = doc
    monkeypatch.setattr(db.models, "AppSettings", _FakeAppSettings)
    return _FakeAppSettings


@pytest.mark.asyncio
async def test_update_persists_and_invalidates(fake_app_settings) -> None:
    provider = SettingsProvider(loader=_loader({"required_hits": 3}))
    assert (await provider.current()).required_hits == 3

    updated = await update_visit_settings(
        {"end_visit_after_minutes": 30},
        provider=provider,
    )

    doc = fake_app_settings.stored
    assert updated.end_visit_after_minutes == 30
    assert updated.required_hits == 3
    assert doc.visit_end_after_minutes == 30
    assert doc.updated_at is not None
    doc.save.assert_awaited_once()
    assert provider._cached is None


@pytest.mark.asyncio
async def test_update_creates_document_when_missing(fake_app_settings) -> None:
    fake_app_settings.stored = None

    await update_visit_settings({"required_hits": 4}, provider=SettingsProvider())

    created = fake_app_settings.created
    assert created.visit_required_hits == 4
    created.save.assert_awaited_once()


@pytest.mark.asyncio
async def test_update_rejects_invalid_values(fake_app_settings) -> None:
    provider = SettingsProvider(loader=_loader())
    await provider.current()

    with pytest.raises(ValidationError):
        await update_visit_settings(
            {"max_radius_meters": 500},
            provider=provider,
        )

    fake_app_settings.stored.save.assert_not_awaited()
    assert provider._cached is not None


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(fake_app_settings) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await update_visit_settings({"bogus": 1})

    assert exc_info.value.details == {"fields": ["bogus"]}


def test_clear_config_cache_invalidates_shared_provider(monkeypatch) -> None:
    invalidate = MagicMock()
    monkeypatch.setattr(service_config.settings_provider, "invalidate", invalidate)

    service_config.clear_config_cache()

    invalidate.assert_called_once_with()
