"""Visit detection thresholds."""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, model_validator


class VisitDetectionSettings(BaseModel):
    """Validated, immutable set of thresholds used by the engine and sweeper.

    Invariants:
        max_radius_meters >= min_radius_meters
        max_search_radius_meters >= max_radius_meters
    """

    model_config = ConfigDict(frozen=True)

    required_hits: int = Field(default=2, ge=1)
    hit_window_minutes: int = Field(default=15, ge=1)
    min_radius_meters: float = Field(default=35.0, gt=0)
    max_radius_meters: float = Field(default=150.0, gt=0)
    accuracy_multiplier: float = Field(default=2.0, ge=0)
    # 0 disables accuracy rejection
    accuracy_reject_meters: float = Field(default=200.0, ge=0)
    max_search_radius_meters: float = Field(default=200.0, gt=0)
    candidate_stale_minutes: int = Field(default=60, ge=1)
    end_visit_after_minutes: int = Field(default=45, ge=1)
    notes_snapshot_max_chars: int = Field(default=20000, ge=1)
    # < 0 disables visit-started notifications, 0 always notifies
    notification_cooldown_hours: int = 0

    @model_validator(mode="after")
    def check_radius_bounds(self) -> VisitDetectionSettings:
        if self.max_radius_meters < self.min_radius_meters:
            msg = "max_radius_meters must be >= min_radius_meters"
            raise ValueError(msg)
        if self.max_search_radius_meters < self.max_radius_meters:
            msg = "max_search_radius_meters must be >= max_radius_meters"
            raise ValueError(msg)
        return self

    @property
    def hit_window(self) -> timedelta:
        return timedelta(minutes=self.hit_window_minutes)

    @property
    def candidate_stale_after(self) -> timedelta:
        return timedelta(minutes=self.candidate_stale_minutes)

    @property
    def end_visit_after(self) -> timedelta:
        return timedelta(minutes=self.end_visit_after_minutes)

    @property
    def accuracy_rejection_enabled(self) -> bool:
        return self.accuracy_reject_meters > 0
