# integrations/messaging.py
#
# Messaging API client: posts a message to one target channel.
#   send_message(): text-only (JSON body) or text plus file attachments
#                    (multipart form body).
#
# The endpoint is {api_base}/channels/{target}/messages. The caller-supplied
# credential is sent verbatim as the Authorization header value; it is never
# included in exception messages.
#
# Optional config.toml keys ([messaging]):
#   api_base: API root (default https://discord.com/api/v9)
#   timeout:  per-request timeout in seconds (default 10)

import mimetypes
from contextlib import ExitStack
from pathlib import Path
from urllib.parse import quote

import requests

from integrations.http import error_snippet, user_agent

_DEFAULT_API_BASE = 'https://discord.com/api/v9'
_DEFAULT_TIMEOUT = 10.0

# Upstream error code for "Missing Permissions" (e.g. attach-files denied).
_MISSING_PERMISSION_CODE = 50013


def _get_api_base() -> str:
  """Return the configured API root without a trailing slash.

  Imports config inside the function so the module can be imported without a
  config file present (e.g. in tests that don't exercise the API).
  """
  import config as _config_mod

  return _config_mod.get_optional('messaging', 'api_base', _DEFAULT_API_BASE).rstrip('/')


def _get_timeout() -> float:
  import config as _config_mod

  raw = _config_mod.get_optional('messaging', 'timeout', str(_DEFAULT_TIMEOUT))
  try:
    return max(1.0, float(raw))
  except ValueError:
    return _DEFAULT_TIMEOUT


def _get_headers(credential: str) -> dict[str, str]:
  return {
    'Authorization': credential,
    'User-Agent': user_agent(),
  }


def _message_url(target: str) -> str:
  # Escaped so a target can never change the request path or add a query.
  return f'{_get_api_base()}/channels/{quote(target.strip(), safe="")}/messages'


# --- Errors ---


class DeliveryError(Exception):
  """Raised when the messaging API answers a send with a non-2xx status.

  `detail` is a truncated excerpt of the response body; `code` is the
  upstream JSON error code when the body carried one.
  """

  def __init__(self, status_code: int, detail: str = '', code: int | None = None) -> None:
    self.status_code = status_code
    self.detail = detail
    self.code = code
    super().__init__(f'{status_code} {detail}'.rstrip())

  @property
  def is_missing_permission(self) -> bool:
    return self.status_code == 403 or self.code == _MISSING_PERMISSION_CODE


def _raise_for_delivery(r: requests.Response) -> None:
  if r.ok:
    return
  code: int | None = None
  try:
    body = r.json()
  except ValueError:
    body = None
  if isinstance(body, dict) and isinstance(body.get('code'), int):
    code = body['code']
  raise DeliveryError(r.status_code, error_snippet(r), code)


# --- Sending ---


def send_message(
  credential: str,
  target: str,
  content: str,
  attachments: list[Path] | None = None,
) -> None:
  """Post `content` to `target`, with `attachments` as files when given.

  Passing an attachments list (even an empty one) sends a multipart form with
  a `content` field and one `files[i]` part per file; passing None sends a
  plain JSON body.

  Makes exactly one request. Raises DeliveryError on a non-2xx response;
  network-level failures propagate as requests exceptions.
  """
  url = _message_url(target)
  headers = _get_headers(credential)
  timeout = _get_timeout()

  if attachments is None:
    r = requests.post(url, json={'content': content}, headers=headers, timeout=timeout)
    _raise_for_delivery(r)
    return

  with ExitStack() as stack:
    files = []
    for i, path in enumerate(attachments):
      mime = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
      fh = stack.enter_context(open(path, 'rb'))
      files.append((f'files[{i}]', (path.name, fh, mime)))
    r = requests.post(url, data={'content': content}, files=files, headers=headers, timeout=timeout)
  _raise_for_delivery(r)
