import os

import pytest

from flowbills.core.config import get_settings
from flowbills.utils.alerting import alert_tracker

os.environ.setdefault("JWT_SECRET", "test-secret-for-flowbills-unit-tests")


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests patch env vars; never let a cached Settings leak between them.
    get_settings.cache_clear()
    alert_tracker.reset()
    yield
    get_settings.cache_clear()
    alert_tracker.reset()
