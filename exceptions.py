# exceptions.py
#
# Shared exception types used across dispatcher.py and integrations.
#
# Kept in a standalone module so that integrations can import directly
# without going through `dispatcher`, which avoids the dual-module identity
# problem that arises when server.py runs as __main__.


class AttachmentUnavailableError(Exception):
  """Raised when an upload reference cannot be turned into a local file.

  The dispatcher treats this as a failed attachment attempt for the current
  target (subject to the fallback policy) rather than a fatal error. Raised
  for references that look like uploads but whose file is missing, or that
  point outside the upload directory.
  """
