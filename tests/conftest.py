import os
from typing import Generator

import pytest

import config as _config_mod
import integrations.http as http_mod


@pytest.fixture(autouse=True)
def reset_config(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
  """Start every test with an empty config cache and a fresh User-Agent cache."""
  monkeypatch.setattr(_config_mod, '_config', {})
  monkeypatch.setattr(http_mod, '_ua_cache', None)
  yield


@pytest.fixture
def require_env(request: pytest.FixtureRequest) -> None:
  """Skip the test if any env vars listed in @pytest.mark.require_env are unset."""
  marker = request.node.get_closest_marker('require_env')
  if marker is None:
    return
  for var in marker.args:
    if not os.environ.get(var, '').strip():
      pytest.skip(f'{var!r} not set')
