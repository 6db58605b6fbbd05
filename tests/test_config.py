"""Tests for settings and per-run configuration."""
import pytest
from pydantic import ValidationError

from screening_match.config.settings import Settings
from screening_match.models.matching import MatchingConfig, MatchingConfigOverrides
from screening_match.storage.database import normalize_database_url


def test_settings_read_waitlist_env(monkeypatch):
    monkeypatch.setenv("WAITLIST_BATCH_SIZE", "20")
    monkeypatch.setenv("WAITLIST_PARALLEL", "true")
    monkeypatch.setenv("WAITLIST_EXPIRY_DAYS", "14")

    config = MatchingConfig.from_settings(Settings(_env_file=None))

    assert config.patients_per_screening_type == 20
    assert config.enable_parallel_processing is True
    assert config.allocation_expiry_days == 14


def test_settings_defaults(monkeypatch):
    for name in ("WAITLIST_BATCH_SIZE", "WAITLIST_MAX_TOTAL", "WAITLIST_PARALLEL", "WAITLIST_CONCURRENT",
                 "WAITLIST_DEMOGRAPHIC_TARGETING", "WAITLIST_GEOGRAPHIC_TARGETING", "WAITLIST_EXPIRY_DAYS"):
        monkeypatch.delenv(name, raising=False)

    config = MatchingConfig.from_settings(Settings(_env_file=None))

    assert config == MatchingConfig(
        patients_per_screening_type=50,
        max_total_patients=500,
        enable_parallel_processing=False,
        max_concurrent_screening_types=5,
        enable_demographic_targeting=True,
        enable_geographic_targeting=True,
        allocation_expiry_days=30,
    )


def test_merged_applies_only_given_fields():
    base = MatchingConfig()

    merged = base.merged({"max_total_patients": 10, "enable_geographic_targeting": False})

    assert merged.max_total_patients == 10
    assert merged.enable_geographic_targeting is False
    assert merged.patients_per_screening_type == base.patients_per_screening_type
    assert base.max_total_patients == 500


def test_merged_accepts_override_model_and_none():
    base = MatchingConfig()

    assert base.merged(None) == base
    assert base.merged(MatchingConfigOverrides(allocation_expiry_days=7)).allocation_expiry_days == 7


@pytest.mark.parametrize("overrides", [
    {"patients_per_screening_type": 101},
    {"max_total_patients": 0},
    {"max_concurrent_screening_types": 0},
    {"allocation_expiry_days": 366},
    {"batch": 5},
])
def test_out_of_range_overrides_rejected(overrides):
    with pytest.raises(ValidationError):
        MatchingConfig().merged(overrides)


@pytest.mark.parametrize("url,expected", [
    ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
    ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
    ("sqlite+aiosqlite:///./data/x.db", "sqlite+aiosqlite:///./data/x.db"),
])
def test_normalize_database_url(url, expected):
    assert normalize_database_url(url) == expected
