"""Error taxonomy for submissions.

Insufficient data is not an error; it travels in result metadata.
"""

from typing import Any


class ValidationError(ValueError):
  """Submission rejected before any job is dispatched."""


class ComputeError(RuntimeError):
  """One or more compute jobs failed."""

  def __init__(self, messages: list[str]) -> None:
    self.messages = list(messages)
    super().__init__('\n'.join(self.messages) or 'Computation failed')


class JobCancelled(Exception):
  """Raised inside a job when its cancellation token fires."""


class SubmissionTimeoutError(TimeoutError):
  """The submission-scoped watchdog fired before all jobs finished."""

  def __init__(self, timeout_s: float, pending: int) -> None:
    self.timeout_s = timeout_s
    self.pending = pending
    super().__init__(
      f'Submission timed out after {timeout_s:g}s with {pending} job(s) outstanding'
    )


class PersistenceError(RuntimeError):
  """A result sink call failed; finalization was aborted."""

  def __init__(
    self,
    message: str,
    tables: list[Any] | None = None,
    persisted: dict[str, Any] | None = None,
  ) -> None:
    self.tables = list(tables or [])
    self.persisted = dict(persisted or {})
    super().__init__(message)
