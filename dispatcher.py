# dispatcher.py
#
# Recurring broadcast dispatcher: sends one message to a list of targets,
# over and over, at a fixed interval, and keeps a short rolling log of what
# happened for the dashboard to poll.
#
# One DispatchController is built at startup and shared with the dashboard
# server. It runs at most one job at a time. start() arms an APScheduler
# interval job whose first run fires immediately on the scheduler's thread
# pool, so start() itself never waits on the network; each run is one cycle,
# a single pass over every target in order. stop() removes the interval job
# and signals any in-flight cycle to stop before its next target.
#
# All mutable state (current job, log buffer, generation counter) is guarded
# by the controller lock. The lock is never held across network I/O.

import secrets
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

import integrations.messaging as messaging
import integrations.uploads as uploads
from exceptions import AttachmentUnavailableError

LogKind = Literal['info', 'success', 'error']
_LOG_KINDS: frozenset[str] = frozenset({'info', 'success', 'error'})

MAX_LOG_ENTRIES = 100
_PACING_DELAY = 1.0  # seconds between targets, to stay under upstream rate limits
_MAX_DIAGNOSTIC = 200  # chars of exception text kept in a log entry


# --- Log ---


@dataclass(frozen=True)
class LogEntry:
  id: str
  timestamp: str  # UTC ISO-8601, e.g. 2026-01-31T12:00:00.000Z
  kind: LogKind
  message: str

  def to_dict(self) -> dict[str, str]:
    return {'id': self.id, 'timestamp': self.timestamp, 'kind': self.kind, 'message': self.message}


def _timestamp() -> str:
  return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class LogBuffer:
  """Append-only log capped at `limit` entries; the oldest entries fall off first.

  Not thread-safe on its own. DispatchController serialises every call.
  """

  def __init__(self, limit: int = MAX_LOG_ENTRIES) -> None:
    self._entries: deque[LogEntry] = deque(maxlen=limit)

  def append(self, kind: LogKind, message: str) -> LogEntry:
    if kind not in _LOG_KINDS:
      raise ValueError(f'Unknown log kind {kind!r}')
    taken = {e.id for e in self._entries}
    entry_id = secrets.token_hex(4)
    while entry_id in taken:
      entry_id = secrets.token_hex(4)
    entry = LogEntry(id=entry_id, timestamp=_timestamp(), kind=kind, message=message)
    self._entries.append(entry)
    return entry

  def snapshot(self) -> list[LogEntry]:
    return list(self._entries)

  def clear(self) -> None:
    self._entries.clear()

  def __len__(self) -> int:
    return len(self._entries)


# --- Job ---


@dataclass(frozen=True)
class JobParameters:
  # Validated by the caller (see server.parse_start_request) before start().
  credential: str = field(repr=False)
  message_body: str
  targets: tuple[str, ...]
  interval_seconds: int
  attachment_refs: tuple[str, ...] = ()


class FallbackPolicy(Enum):
  # What to do when the attachment send for a target fails.
  ALWAYS = 'always'  # log an error, then send text only
  ON_PERMISSION = 'permission'  # text-only retry for missing-permission failures only
  NEVER = 'never'  # log an error and move on


@dataclass(eq=False)
class _Job:
  params: JobParameters
  generation: int
  stop_event: threading.Event = field(default_factory=threading.Event)
  cycle_lock: threading.Lock = field(default_factory=threading.Lock)
  timer: Job | None = None


SendFn = Callable[[str, str, str, list[Path] | None], None]
ResolveFn = Callable[[tuple[str, ...]], list[Path]]


def _clock() -> str:
  return datetime.now().strftime('%H:%M:%S')


def _describe(e: Exception) -> str:
  text = ' '.join(str(e).split()) or type(e).__name__
  if len(text) > _MAX_DIAGNOSTIC:
    text = text[: _MAX_DIAGNOSTIC - 3] + '...'
  return text


# --- Controller ---


class DispatchController:
  """Owns the single broadcast job: start, stop and status.

  `send` and `resolve` default to the real messaging client and upload store;
  tests substitute fakes. `pacing_delay` is the pause after each target.
  """

  def __init__(
    self,
    scheduler: BaseScheduler,
    *,
    send: SendFn = messaging.send_message,
    resolve: ResolveFn = uploads.resolve_all,
    fallback: FallbackPolicy = FallbackPolicy.ALWAYS,
    pacing_delay: float = _PACING_DELAY,
  ) -> None:
    self._scheduler = scheduler
    self._send = send
    self._resolve = resolve
    self._fallback = fallback
    self._pacing_delay = pacing_delay
    self._lock = threading.Lock()
    self._logs = LogBuffer()
    self._job: _Job | None = None
    # Bumped by every start(); cycles from an older generation may not log.
    self._generation = 0

  @property
  def running(self) -> bool:
    with self._lock:
      return self._job is not None

  def start(self, params: JobParameters) -> None:
    """Replace any current job with a new one and arm its timer.

    Returns as soon as the job is scheduled. The first cycle starts
    immediately on a scheduler thread; later cycles follow every
    params.interval_seconds.
    """
    with self._lock:
      self._cancel_locked()
      self._generation += 1
      job = _Job(params=params, generation=self._generation)
      self._logs.clear()
      self._log_locked(
        'info',
        f'Starting automation. Delay: {params.interval_seconds}s. Targets: {len(params.targets)}',
      )
      job.timer = self._scheduler.add_job(
        self._run_cycle,
        trigger='interval',
        seconds=params.interval_seconds,
        args=[job],
        id=f'dispatch.{job.generation}',
        name='dispatch cycle',
        next_run_time=datetime.now(timezone.utc),
        max_instances=1,
        coalesce=True,
        misfire_grace_time=None,
      )
      self._job = job

  def stop(self) -> None:
    """Cancel the current job, if any. Always logs a stop entry, even when idle."""
    with self._lock:
      self._cancel_locked()
      self._log_locked('info', 'Automation stopped.')

  def status(self) -> dict[str, Any]:
    with self._lock:
      return {
        'running': self._job is not None,
        'logs': [e.to_dict() for e in self._logs.snapshot()],
      }

  # --- Internals (call with self._lock held where noted) ---

  def _cancel_locked(self) -> None:
    job = self._job
    if job is None:
      return
    job.stop_event.set()
    if job.timer is not None:
      try:
        job.timer.remove()
      except JobLookupError:
        pass  # already gone, e.g. the scheduler was shut down
      job.timer = None
    self._job = None

  def _log_locked(self, kind: LogKind, message: str) -> None:
    self._logs.append(kind, message)
    print(f'[{_clock()}] {kind}: {message}')

  def _record(self, job: _Job, kind: LogKind, message: str) -> None:
    with self._lock:
      if job.generation != self._generation:
        return  # superseded by a newer start(); its log was cleared
      self._log_locked(kind, message)

  def _run_cycle(self, job: _Job) -> None:
    # One pass over every target. Invoked by the scheduler on each tick.
    if not job.cycle_lock.acquire(blocking=False):
      print(f'[{_clock()}] Previous cycle still running, skipping tick')
      return
    try:
      if job.stop_event.is_set():
        return
      self._record(job, 'info', 'Executing cycle...')
      for target in job.params.targets:
        if job.stop_event.is_set():
          break
        self._dispatch_target(job, target)
        if job.stop_event.wait(self._pacing_delay):
          break
    finally:
      job.cycle_lock.release()

  def _dispatch_target(self, job: _Job, target: str) -> None:
    params = job.params
    try:
      if params.attachment_refs:
        try:
          attachments = self._resolve(params.attachment_refs)
          self._send(params.credential, target, params.message_body, attachments)
        except (messaging.DeliveryError, AttachmentUnavailableError) as e:
          if not self._should_fall_back(job, target, e) or job.stop_event.is_set():
            return
        else:
          self._record(job, 'success', f'Sent to {target} with attachments')
          return

      try:
        self._send(params.credential, target, params.message_body, None)
      except messaging.DeliveryError as e:
        self._record(job, 'error', f'Failed {target}: {_describe(e)}')
        return
      self._record(job, 'success', f'Sent text to {target}')
    except Exception as e:  # noqa: BLE001
      self._record(job, 'error', f'Error {target}: {_describe(e)}')

  def _should_fall_back(self, job: _Job, target: str, e: Exception) -> bool:
    """Log a failed attachment send and return True if text-only should follow."""
    if (
      self._fallback is FallbackPolicy.ON_PERMISSION
      and isinstance(e, messaging.DeliveryError)
      and e.is_missing_permission
    ):
      self._record(job, 'info', f'No attachment permission in {target}, sending text only')
      return True
    self._record(job, 'error', f'Attachment send failed in {target}: {_describe(e)}')
    return self._fallback is FallbackPolicy.ALWAYS
