import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from core.service_config import SETTINGS_FIELD_MAP, env_var_name, settings_provider


@pytest.fixture(autouse=True)
def _default_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for field_name in SETTINGS_FIELD_MAP:
        monkeypatch.delenv(env_var_name(field_name), raising=False)
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/15")
    settings_provider.invalidate()
    yield
    settings_provider.invalidate()
