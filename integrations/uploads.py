# integrations/uploads.py
#
# Local storage for uploaded attachment images.
#
# Uploaded files are written to the upload directory under a generated name
# and handed back to the browser as a reference of the form /uploads/<name>.
# The dispatcher later resolves those references back to file paths.
#
# References that do not start with /uploads/ are not ours: resolve() returns
# None for them and the dispatcher skips them.
#
# Optional config.toml keys ([uploads]):
#   path: upload directory (default "uploads", relative to the working dir)

import secrets
import time
from pathlib import Path

from exceptions import AttachmentUnavailableError

REF_PREFIX = '/uploads/'

_ALLOWED_SUFFIXES: frozenset[str] = frozenset({'.png', '.jpg', '.jpeg', '.gif', '.webp'})


def upload_dir() -> Path:
  """Return the upload directory, creating it if needed."""
  import config as _config_mod

  path = Path(_config_mod.get_optional('uploads', 'path', 'uploads'))
  path.mkdir(parents=True, exist_ok=True)
  return path


def save(field: str, filename: str, data: bytes) -> str:
  """Store uploaded bytes and return the /uploads/<name> reference.

  The stored name is '<field>-<epoch ms>-<random><suffix>'; only the suffix
  of the client-supplied filename is kept. Raises ValueError for suffixes
  that are not an accepted image type.
  """
  suffix = Path(filename).suffix.lower()
  if suffix not in _ALLOWED_SUFFIXES:
    allowed = ', '.join(sorted(_ALLOWED_SUFFIXES))
    raise ValueError(f'Unsupported file type {suffix or filename!r}; use one of {allowed}')
  name = f'{field}-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{suffix}'
  (upload_dir() / name).write_bytes(data)
  return f'{REF_PREFIX}{name}'


def path_for(name: str) -> Path | None:
  """Return the stored file for a bare upload name, or None if absent or unsafe."""
  if not name or '/' in name or '\\' in name or name.startswith('.'):
    return None
  path = upload_dir() / name
  return path if path.is_file() else None


def resolve(ref: str) -> Path | None:
  """Resolve an attachment reference to a local file.

  Returns None for references this store does not recognise. Raises
  AttachmentUnavailableError for /uploads/ references whose file is missing
  or that would escape the upload directory.
  """
  if not ref.startswith(REF_PREFIX):
    return None
  name = ref[len(REF_PREFIX) :]
  path = path_for(name)
  if path is None:
    raise AttachmentUnavailableError(f'attachment {name!r} not found')
  return path


def resolve_all(refs: list[str] | tuple[str, ...]) -> list[Path]:
  """Resolve every reference in order, dropping unrecognised ones."""
  paths: list[Path] = []
  for ref in refs:
    path = resolve(ref)
    if path is not None:
      paths.append(path)
  return paths
