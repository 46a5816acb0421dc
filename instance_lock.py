# instance_lock.py
#
# PID lock file that keeps a second cyclecast process from starting against
# the same working directory (and therefore the same config, uploads and
# saved configs).

import atexit
import os
import sys
from pathlib import Path

LOCK_PATH = Path('instance.lock')


def _pid_alive(pid: int) -> bool:
  try:
    os.kill(pid, 0)
  except ProcessLookupError:
    return False
  except PermissionError:
    return True  # exists, owned by another user
  return True


def acquire(path: Path = LOCK_PATH) -> None:
  """Claim the lock file for this process, or exit if another instance holds it.

  A lock naming a process that no longer exists (or an unreadable lock) is
  treated as stale and replaced. The lock is released at interpreter exit.
  """
  if path.exists():
    try:
      pid = int(path.read_text().strip())
    except ValueError:
      pid = 0
    if pid and pid != os.getpid() and _pid_alive(pid):
      print(f'FATAL: another instance is already running (pid {pid}, lock file {path}).', file=sys.stderr)
      raise SystemExit(1)
    print(f'Removing stale lock file {path}')
    path.unlink(missing_ok=True)
  path.write_text(str(os.getpid()))
  atexit.register(release, path)


def release(path: Path = LOCK_PATH) -> None:
  """Remove the lock file if it still belongs to this process."""
  try:
    if path.read_text().strip() == str(os.getpid()):
      path.unlink()
  except FileNotFoundError:
    pass
