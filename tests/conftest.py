"""Shared pytest fixtures for Splitstay tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_api_globals():
    """Reset cached settings to avoid cross-test contamination.

    Guest sessions live on each app's own registry; only the settings
    cache is process-wide.
    """
    from splitstay.api import deps

    deps.get_settings.cache_clear()
    yield
    deps.get_settings.cache_clear()
