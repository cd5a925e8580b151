"""Tests for settings loading."""

import json

import pytest

from utils.config_loader import ScraperSettings, load_config_file, load_settings
from utils.error_handling import ConfigurationError


def test_defaults():
    settings = ScraperSettings()

    assert settings.base_url == "https://htreviews.org"
    assert settings.max_concurrent_brands == 1
    assert settings.max_retries == 3
    assert settings.retry_base_delay == 0.0


def test_environment_variables_are_read(monkeypatch):
    monkeypatch.setenv("SCRAPER_MAX_CONCURRENT_PRODUCTS", "4")
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db:5432/catalog")

    settings = ScraperSettings()

    assert settings.max_concurrent_products == 4
    assert settings.database_url == "postgresql://user:pw@db:5432/catalog"


def test_file_values_are_overridden_by_explicit_arguments(tmp_path):
    config = tmp_path / "scraper.json"
    config.write_text(
        json.dumps({"scraper": {"max_retries": 5, "max_concurrent_brands": 2}}),
        encoding="utf-8",
    )

    settings = load_settings(str(config), max_retries=7, max_concurrent_brands=None)

    assert settings.max_retries == 7
    assert settings.max_concurrent_brands == 2


def test_invalid_values_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        load_settings(max_concurrent_brands=0)


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config_file(str(tmp_path / "missing.json"))


def test_non_object_file_raises(tmp_path):
    config = tmp_path / "list.json"
    config.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config_file(str(config))
