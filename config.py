# config.py
#
# config.toml access for cyclecast.
#
# main() calls load_config() once; everything else reads the module-level
# cache. Modules under integrations/ import this module inside their
# functions, so tests can import them with no config.toml on disk.
#
# Sections: [dashboard], [dispatch], [messaging], [uploads], [storage].
# See config.example.toml for every key and its default.

import re
import sys
import tomllib
from pathlib import Path

_CONFIG_PATH = Path('config.toml')
_EXAMPLE_PATH = Path('config.example.toml')

_config: dict = {}

_FALLBACK_POLICIES: tuple[str, ...] = ('always', 'permission', 'never')


def load_config() -> None:
  """Read config.toml from the working directory into the cache.

  Exits 1 with a hint if the file is missing. A malformed file raises
  tomllib.TOMLDecodeError.
  """
  global _config
  if not _CONFIG_PATH.exists():
    print(
      f'Error: config.toml not found. Copy {_EXAMPLE_PATH} to config.toml and fill in your values.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  with open(_CONFIG_PATH, 'rb') as f:
    _config = tomllib.load(f)


def get_optional(section: str, key: str, default: str = '') -> str:
  """Return [section].key as a string, or default when unset."""
  value = _config.get(section, {}).get(key)
  if value is None:
    return default
  return str(value)


def get_optional_int(section: str, key: str, default: int) -> int:
  """Return [section].key as an int, or default when unset or not a number.

  An unparseable value prints a warning rather than failing startup.
  """
  raw = _config.get(section, {}).get(key)
  if raw is None:
    return default
  try:
    return int(raw)
  except (TypeError, ValueError):
    print(f'Warning: invalid [{section}].{key} {raw!r}, defaulting to {default}')
    return default


def get_fallback_policy() -> str:
  """Return [dispatch].fallback: 'always' (default), 'permission' or 'never'.

  Raises ValueError for any other value.
  """
  value = get_optional('dispatch', 'fallback', 'always')
  if value not in _FALLBACK_POLICIES:
    raise ValueError(
      f'Unknown fallback policy {value!r} in [dispatch].fallback; use one of {", ".join(_FALLBACK_POLICIES)}'
    )
  return value


def get_allowed_emails() -> set[str]:
  """Return the identities allowed to use the dashboard API.

  Reads the [dashboard].allowed_emails array; blank entries are dropped. An
  empty set locks everyone out.
  """
  value = _config.get('dashboard', {}).get('allowed_emails') or []
  return {str(e).strip() for e in value if str(e).strip()}


def get_owner_email() -> str:
  """Return the identity allowed to save configs, or '' if none is configured."""
  return get_optional('dashboard', 'owner_email').strip()


def write_section_values(section: str, values: dict[str, str | int]) -> None:
  """Persist `values` into [section] of config.toml and the cache.

  Edits the file line by line so comments and other sections survive. A key
  that is already set, or present but commented out, is overwritten in place;
  anything else is added at the end of the section.

  Raises FileNotFoundError without a config.toml, ValueError when the file
  has no [section] header.
  """
  if not _CONFIG_PATH.exists():
    raise FileNotFoundError(f'config.toml not found at {_CONFIG_PATH.resolve()}')

  lines = _CONFIG_PATH.read_text().splitlines(keepends=True)
  headers = [i for i, line in enumerate(lines) if line.strip().startswith('[')]
  try:
    start = next(i for i in headers if lines[i].strip() == f'[{section}]') + 1
  except StopIteration:
    raise ValueError(f'No [{section}] section found in config.toml') from None
  end = next((i for i in headers if i >= start), len(lines))

  body = lines[start:end]
  for key, value in values.items():
    rendered = f'{key} = ' + (f'"{value}"' if isinstance(value, str) else str(value)) + '\n'
    pattern = re.compile(rf'^#?\s*{re.escape(key)}\s*=')
    idx = next((j for j, line in enumerate(body) if pattern.match(line)), None)
    if idx is None:
      body.append(rendered)
    else:
      body[idx] = rendered

  lines[start:end] = body
  _CONFIG_PATH.write_text(''.join(lines))
  _config.setdefault(section, {}).update(values)
