from __future__ import annotations

import pytest
from pydantic import ValidationError

from task_marketplace.config.settings import Settings


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKETPLACE_DEFAULT_MAX_DISTANCE_KM", "12.5")
    monkeypatch.setenv("MARKETPLACE_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("MARKETPLACE_DEFAULT_MATCHING_STRATEGY", "LOCATION_ONLY")

    settings = Settings()

    assert settings.default_max_distance_km == 12.5
    assert settings.storage_backend == "memory"
    assert settings.default_matching_strategy == "LOCATION_ONLY"


def test_database_url_falls_back_to_plain_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MARKETPLACE_DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/marketplace")

    assert Settings(database_url="").resolved_database_url() == "postgresql://localhost/marketplace"
    assert Settings(database_url="postgresql://db/x").resolved_database_url() == "postgresql://db/x"


def test_invalid_radius_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(default_max_distance_km=0)
