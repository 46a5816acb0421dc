# integrations/http.py
#
# Shared HTTP utilities for integrations.
#
# user_agent: identifies outbound requests as cyclecast/<version>.
# error_snippet: short, single-line excerpt of a failed response body for
# use in log entries.

import importlib.metadata

import requests

_ua_cache: str | None = None


def user_agent() -> str:
  """Return the User-Agent string for outbound requests (cached).

  Falls back to 'cyclecast/dev' when the package metadata is unavailable,
  e.g. when running from a source checkout that was never installed.
  """
  global _ua_cache
  if _ua_cache is None:
    try:
      version = importlib.metadata.version('cyclecast')
    except importlib.metadata.PackageNotFoundError:
      version = 'dev'
    _ua_cache = f'cyclecast/{version}'
  return _ua_cache


def error_snippet(response: requests.Response, limit: int = 200) -> str:
  """Return the response body collapsed to one line and cut to `limit` chars.

  Returns '' when the body is empty.
  """
  text = ' '.join((response.text or '').split())
  if len(text) > limit:
    return text[: limit - 3] + '...'
  return text
