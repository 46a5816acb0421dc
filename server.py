# server.py
#
# Dashboard HTTP server and process entrypoint for cyclecast.
#
# The dashboard lets a whitelisted user save broadcast configs, upload images,
# and start/stop the single recurring broadcast job. The browser polls
# /api/automation/status and renders the rolling log as a terminal.
#
# Requests are authenticated twice: a shared secret (X-Dashboard-Secret
# header, or ?secret= for <img> tags and bookmarks) and an identity header
# (X-Forwarded-Email) set by the auth proxy in front of us, checked against
# [dashboard].allowed_emails. Only [dashboard].owner_email may save configs.
#
# Each request is served on its own thread; the dispatcher does its network
# I/O on APScheduler's thread pool, so start/stop/status never wait on it.

import argparse
import email.message
import email.parser
import json
import mimetypes
import secrets
import signal
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from apscheduler.schedulers.background import BackgroundScheduler

import config as _config_mod
import instance_lock
import integrations.uploads as uploads
from dispatcher import DispatchController, FallbackPolicy, JobParameters
from integrations.http import user_agent
from store import ConfigStore, validate_record

_IDENTITY_HEADER = 'X-Forwarded-Email'
_SECRET_HEADER = 'X-Dashboard-Secret'

_MAX_JSON_BODY = 64 * 1024  # 64 KB
_MAX_UPLOAD_BODY = 10 * 1024 * 1024  # 10 MB across all files in one request

_DASHBOARD_PAGE = Path(__file__).parent / 'static' / 'dashboard.html'


def parse_start_request(payload: Any) -> JobParameters:
  """Validate a start request body and build the job parameters.

  Expects {credential, message, targets, interval_seconds, attachment_refs?}.
  Raises ValueError with a user-facing message on the first problem found.
  """
  if not isinstance(payload, dict):
    raise ValueError('Request body must be a JSON object')
  if 'interval_seconds' not in payload:
    raise ValueError('Delay must be at least 1 second')
  fields = validate_record(payload)
  return JobParameters(
    credential=fields['credential'],
    message_body=fields['message'],
    targets=tuple(fields['targets']),
    interval_seconds=fields['interval_seconds'],
    attachment_refs=tuple(fields['attachment_refs']),
  )


def _parse_record_id(raw: str) -> int | None:
  # ASCII only: str.isdigit() also accepts characters such as '²' that int() rejects.
  if raw.isascii() and raw.isdigit():
    return int(raw)
  return None


def _make_dashboard_handler(
  controller: DispatchController,
  store: ConfigStore,
  secret: str,
  allowed_emails: set[str],
  owner_email: str,
) -> type:
  """Return a BaseHTTPRequestHandler subclass bound to the given collaborators."""

  class _DashboardHandler(BaseHTTPRequestHandler):
    _secret: str = secret

    # --- Routing ---

    def do_GET(self) -> None:  # noqa: N802
      parts = self._parts()
      if parts == []:
        self._serve_page()
        return
      identity = self._authorize()
      if identity is None:
        return
      if parts == ['api', 'automation', 'status']:
        self._respond_json(200, controller.status())
      elif parts == ['api', 'configs']:
        self._respond_json(200, store.list_for(identity))
      elif len(parts) == 3 and parts[:2] == ['api', 'configs']:
        self._get_config(identity, parts[2])
      elif len(parts) == 2 and parts[0] == 'uploads':
        self._serve_upload(parts[1])
      else:
        self._respond_json(404, {'message': 'Not found'})

    def do_POST(self) -> None:  # noqa: N802
      parts = self._parts()
      identity = self._authorize()
      if identity is None:
        return
      if parts == ['api', 'automation', 'start']:
        self._start()
      elif parts == ['api', 'automation', 'stop']:
        controller.stop()
        self._respond_json(200, {'message': 'Stopped'})
      elif parts == ['api', 'configs']:
        self._save_config(identity)
      elif parts == ['api', 'upload', 'images']:
        self._upload_images()
      else:
        self._respond_json(404, {'message': 'Not found'})

    def do_DELETE(self) -> None:  # noqa: N802
      parts = self._parts()
      identity = self._authorize()
      if identity is None:
        return
      if len(parts) == 3 and parts[:2] == ['api', 'configs']:
        self._delete_config(identity, parts[2])
      else:
        self._respond_json(404, {'message': 'Not found'})

    # --- Auth ---

    def _authorize(self) -> str | None:
      """Return the caller's identity, or send 401/403 and return None."""
      parsed = urlparse(self.path)
      header_secret = self.headers.get(_SECRET_HEADER, '')
      query_secret = parse_qs(parsed.query).get('secret', [''])[0]
      provided = header_secret or query_secret
      if not secrets.compare_digest(provided.encode(), self._secret.encode()):
        self._respond_json(401, {'message': 'Unauthorized'})
        return None
      identity = self.headers.get(_IDENTITY_HEADER, '').strip()
      if not identity or identity not in allowed_emails:
        print(f'Dashboard: rejected {self.command} {parsed.path} for {identity or "(no identity)"!r}')
        self._respond_json(403, {'message': 'Your account is not whitelisted'})
        return None
      return identity

    # --- Automation ---

    def _start(self) -> None:
      payload = self._read_json()
      if payload is None:
        return
      try:
        params = parse_start_request(payload)
      except ValueError as e:
        self._respond_json(400, {'message': str(e)})
        return
      controller.start(params)
      self._respond_json(200, {'message': 'Started'})

    # --- Configs ---

    def _get_config(self, identity: str, raw_id: str) -> None:
      record_id = _parse_record_id(raw_id)
      record = store.get(record_id) if record_id is not None else None
      if record is None:
        self._respond_json(404, {'message': 'Not found'})
      elif record['owner'] != identity:
        self._respond_json(403, {'message': 'Forbidden'})
      else:
        self._respond_json(200, record)

    def _save_config(self, identity: str) -> None:
      if not owner_email or identity != owner_email:
        self._respond_json(403, {'message': 'Owner access required'})
        return
      payload = self._read_json()
      if payload is None:
        return
      if not isinstance(payload, dict):
        self._respond_json(400, {'message': 'Request body must be a JSON object'})
        return
      try:
        record = store.save(identity, payload)
      except ValueError as e:
        self._respond_json(400, {'message': str(e)})
        return
      self._respond_json(200, record)

    def _delete_config(self, identity: str, raw_id: str) -> None:
      record_id = _parse_record_id(raw_id)
      record = store.get(record_id) if record_id is not None else None
      if record is not None and record['owner'] == identity:
        store.delete(record['id'])
      self._respond(204, b'', 'text/plain')

    # --- Uploads ---

    def _upload_images(self) -> None:
      content_type = self.headers.get('Content-Type', '')
      if 'multipart/form-data' not in content_type:
        self._respond_json(400, {'message': 'Expected multipart/form-data'})
        return
      body = self._read_body(_MAX_UPLOAD_BODY)
      if body is None:
        return
      # Prepend the Content-Type header to form a parseable MIME message,
      # then pull out every part named 'images'.
      raw = b'Content-Type: ' + content_type.encode() + b'\r\n\r\n' + body
      msg = email.parser.BytesParser().parsebytes(raw)
      files: list[tuple[str, bytes]] = []
      if msg.is_multipart():
        for part in msg.get_payload():  # type: ignore[union-attr]
          if not isinstance(part, email.message.Message):
            continue
          if part.get_param('name', header='content-disposition') != 'images':
            continue
          filename = part.get_filename()
          data = part.get_payload(decode=True)
          if filename and isinstance(data, bytes):
            files.append((filename, data))
      if not files:
        self._respond_json(400, {'message': 'No files uploaded'})
        return
      try:
        urls = [uploads.save('images', filename, data) for filename, data in files]
      except ValueError as e:
        self._respond_json(400, {'message': str(e)})
        return
      self._respond_json(200, {'urls': urls})

    def _serve_upload(self, name: str) -> None:
      path = uploads.path_for(name)
      if path is None:
        self._respond_json(404, {'message': 'Not found'})
        return
      mime = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
      self._respond(200, path.read_bytes(), mime)

    def _serve_page(self) -> None:
      self._respond(200, _DASHBOARD_PAGE.read_bytes(), 'text/html; charset=utf-8')

    # --- Helpers ---

    def _parts(self) -> list[str]:
      path = urlparse(self.path).path.strip('/')
      return path.split('/') if path else []

    def _read_body(self, limit: int) -> bytes | None:
      try:
        length = int(self.headers.get('Content-Length') or 0)
      except ValueError:
        length = -1
      if length < 0:
        self._respond_json(400, {'message': 'Invalid Content-Length'})
        return None
      if length > limit:
        self._respond_json(413, {'message': 'Request body too large'})
        return None
      return self.rfile.read(length)

    def _read_json(self) -> Any:
      body = self._read_body(_MAX_JSON_BODY)
      if body is None:
        return None
      try:
        return json.loads(body) if body else {}
      except json.JSONDecodeError:
        self._respond_json(400, {'message': 'Invalid JSON'})
        return None

    def _respond_json(self, code: int, payload: Any) -> None:
      self._respond(code, json.dumps(payload).encode(), 'application/json')

    def _respond(self, code: int, body: bytes, content_type: str) -> None:
      self.send_response(code)
      self.send_header('Content-Type', content_type)
      self.send_header('Content-Length', str(len(body)))
      self.end_headers()
      self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
      pass  # suppress default per-request access log lines

  return _DashboardHandler


def _start_dashboard_server(controller: DispatchController, store: ConfigStore) -> ThreadingHTTPServer:
  """Start the dashboard HTTP server in a background daemon thread.

  Reads [dashboard] config for port (default 8080) and bind address (default
  127.0.0.1). Auto-generates a shared secret if none is configured, persists
  it to config.toml, and logs it once so the user can open the dashboard.
  Raises OSError if the port is already in use.
  """
  port = _config_mod.get_optional_int('dashboard', 'port', 8080)
  bind = _config_mod.get_optional('dashboard', 'bind', '127.0.0.1')

  secret = _config_mod.get_optional('dashboard', 'secret')
  if not secret:
    secret = secrets.token_urlsafe(32)
    _config_mod.write_section_values('dashboard', {'secret': secret})
    print(f'Dashboard secret generated and saved to config.toml:\n  {secret}\nOpen the dashboard with ?secret=<secret>.')

  allowed = _config_mod.get_allowed_emails()
  if not allowed:
    print('Warning: [dashboard].allowed_emails is empty; every API request will be rejected.')

  handler = _make_dashboard_handler(controller, store, secret, allowed, _config_mod.get_owner_email())
  server = ThreadingHTTPServer((bind, port), handler)
  threading.Thread(target=server.serve_forever, daemon=True).start()
  print(f'Dashboard listening on http://{bind}:{port}/')
  return server


def _validate_startup() -> None:
  """Exit with a clear message if config.toml is missing, a directory, or empty."""
  config_path = Path('config.toml')
  if config_path.is_dir():
    print(
      f'Error: {config_path.resolve()} is a directory. '
      'Delete it, create a proper config.toml file there, and restart.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  if not config_path.exists():
    print(
      f'Error: config.toml not found at {config_path.resolve()}. Copy config.example.toml and fill in your values.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  if config_path.stat().st_size == 0:
    print('Error: config.toml is empty. Copy config.example.toml and fill in your values.', file=sys.stderr)
    raise SystemExit(1)


def _handle_sigterm(signum: int, frame: Any) -> None:
  raise KeyboardInterrupt


def main() -> None:
  parser = argparse.ArgumentParser(description='Recurring message broadcaster with a web dashboard.')
  parser.add_argument(
    '--fallback',
    choices=[p.value for p in FallbackPolicy],
    help='Override [dispatch].fallback: when a failed attachment send is retried as text only',
  )
  args = parser.parse_args()

  _validate_startup()
  _config_mod.load_config()
  try:
    fallback = FallbackPolicy(args.fallback or _config_mod.get_fallback_policy())
  except ValueError as e:
    print(f'Error: {e}', file=sys.stderr)
    raise SystemExit(1) from e

  instance_lock.acquire()
  signal.signal(signal.SIGTERM, _handle_sigterm)

  print(f'Starting {user_agent()} (attachment fallback: {fallback.value})')

  scheduler = BackgroundScheduler()
  scheduler.start()
  controller = DispatchController(scheduler, fallback=fallback)
  store = ConfigStore(Path(_config_mod.get_optional('storage', 'path', 'configs.json')))
  _start_dashboard_server(controller, store)

  try:
    while True:
      time.sleep(1)
  except KeyboardInterrupt:
    if controller.running:
      controller.stop()
    scheduler.shutdown(wait=False)


if __name__ == '__main__':
  main()
