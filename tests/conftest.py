"""Shared fixtures for the scraper test-suite."""

import pytest

from catalog_pages import BASE_URL
from utils.config_loader import ScraperSettings


@pytest.fixture
def settings() -> ScraperSettings:
    return ScraperSettings(
        base_url=BASE_URL,
        max_retries=3,
        retry_base_delay=0.0,
        checkpoint_dir=None,
        log_file=None,
    )
