import pytest

from sentiment.config import Settings


@pytest.fixture
def settings():
    # fast cadence so session tests finish quickly; spacing rules unchanged
    return Settings(SAMPLE_INTERVAL=0.01)


@pytest.fixture
def fixed_settings():
    return Settings()
