import pytest

import hsvanguards.config

@pytest.fixture
def saved_options():
  """ Restore every module-level option that config and argv can touch. """
  saved = []
  for (module, section) in hsvanguards.config._sections():
    for param in dir(module):
      if param.isupper() or param in ("_CONFIG_FILE", "_RETRY_LIMIT"):
        saved.append((module, param, getattr(module, param)))
  yield
  for (module, param, val) in saved:
    setattr(module, param, val)
