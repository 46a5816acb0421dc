# store.py
#
# Saved broadcast configurations, keyed by owner identity.
#
# Records live in a single JSON file (default configs.json, see
# [storage].path). The whole file is rewritten on every change: write to a
# temp file next to it, then os.replace() so a crash never leaves a torn file.
# One lock serialises all access; record counts are small.

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_DEFAULT_NAME = 'Default Config'
_DEFAULT_INTERVAL = 60


def _clean_list(value: Any, field: str) -> list[str]:
  # Accepts a list of strings or a comma-separated string.
  if value is None:
    return []
  if isinstance(value, str):
    value = value.split(',')
  if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
    raise ValueError(f'{field} must be a list of strings')
  return [v.strip() for v in value if v.strip()]


def validate_record(payload: dict[str, Any]) -> dict[str, Any]:
  """Return the storable fields of a config payload, or raise ValueError."""
  credential = payload.get('credential')
  if not isinstance(credential, str) or not credential.strip():
    raise ValueError('Token is required')
  message = payload.get('message')
  if not isinstance(message, str) or not message.strip():
    raise ValueError('Message is required')
  targets = _clean_list(payload.get('targets'), 'targets')
  if not targets:
    raise ValueError('At least one target is required')
  interval = payload.get('interval_seconds', _DEFAULT_INTERVAL)
  if not isinstance(interval, int) or isinstance(interval, bool) or interval < 1:
    raise ValueError('Delay must be at least 1 second')
  name = payload.get('name') or _DEFAULT_NAME
  if not isinstance(name, str):
    raise ValueError('name must be a string')
  return {
    'name': name.strip() or _DEFAULT_NAME,
    'credential': credential.strip(),
    'message': message,
    'targets': targets,
    'interval_seconds': interval,
    'attachment_refs': _clean_list(payload.get('attachment_refs'), 'attachment_refs'),
  }


class ConfigStore:
  def __init__(self, path: Path) -> None:
    self._path = path
    self._lock = threading.Lock()

  def _read(self) -> dict[str, Any]:
    if not self._path.exists():
      return {'next_id': 1, 'records': []}
    with open(self._path) as f:
      return json.load(f)

  def _write(self, data: dict[str, Any]) -> None:
    self._path.parent.mkdir(parents=True, exist_ok=True)
    tmp = self._path.with_name(self._path.name + '.tmp')
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, self._path)

  def list_for(self, owner: str) -> list[dict[str, Any]]:
    """Return all records owned by `owner`, newest first."""
    with self._lock:
      records = self._read()['records']
    return sorted((r for r in records if r['owner'] == owner), key=lambda r: r['id'], reverse=True)

  def get(self, record_id: int) -> dict[str, Any] | None:
    with self._lock:
      for r in self._read()['records']:
        if r['id'] == record_id:
          return r
    return None

  def save(self, owner: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate and insert a new record for `owner`; returns the stored record."""
    fields = validate_record(payload)
    with self._lock:
      data = self._read()
      record = {
        'id': data['next_id'],
        'owner': owner,
        **fields,
        'created_at': datetime.now(timezone.utc).isoformat(timespec='seconds'),
      }
      data['next_id'] += 1
      data['records'].append(record)
      self._write(data)
    return record

  def delete(self, record_id: int) -> None:
    with self._lock:
      data = self._read()
      data['records'] = [r for r in data['records'] if r['id'] != record_id]
      self._write(data)
