"""Job runner: executes compute jobs on a bounded worker pool.

Jobs receive an immutable JobSpec and hand back a JobOutcome envelope; a
failing job becomes an 'error' outcome instead of an exception.
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

from .compute import CancellationToken, run_job
from .data import JobOutcome, JobSpec
from .errors import JobCancelled


def execute_job(spec: JobSpec, token: CancellationToken) -> JobOutcome:
  """Run one job and wrap its result or error in an outcome message."""
  try:
    result = run_job(spec, token)
  except JobCancelled as e:
    return JobOutcome(
      job_id=spec.job_id,
      sequence=spec.sequence,
      label=spec.label,
      status='error',
      error=str(e),
    )
  except Exception as e:
    return JobOutcome(
      job_id=spec.job_id,
      sequence=spec.sequence,
      label=spec.label,
      status='error',
      error=f'{type(e).__name__}: {e}',
    )
  return JobOutcome(
    job_id=spec.job_id,
    sequence=spec.sequence,
    label=spec.label,
    status='success',
    result=result,
  )


class JobRunner:
  """Thread-pool runner scoped to a single submission.

  Args:
    max_workers: upper bound on concurrently running jobs.
  """

  def __init__(self, max_workers: int = 4) -> None:
    self.max_workers = max(1, int(max_workers))
    self.token = CancellationToken()
    self._executor = ThreadPoolExecutor(
      max_workers=self.max_workers, thread_name_prefix='npar-job'
    )
    self._futures: list[asyncio.Future] = []
    self._closed = False
    self.started_at: float | None = None

  @property
  def pending(self) -> int:
    """Number of submitted jobs not yet finished."""
    return sum(1 for f in self._futures if not f.done())

  def submit(self, spec: JobSpec) -> 'asyncio.Future[JobOutcome]':
    """Schedule a job; must be called from inside a running event loop."""
    if self._closed:
      raise RuntimeError('JobRunner is closed')
    if self.started_at is None:
      self.started_at = time.time()
    loop = asyncio.get_running_loop()
    fut = loop.run_in_executor(self._executor, execute_job, spec, self.token)
    self._futures.append(fut)
    return fut

  def cancel(self) -> None:
    """Stop every outstanding job. Safe to call more than once."""
    self.token.cancel()
    for f in self._futures:
      if not f.done():
        f.cancel()
    self.shutdown()

  def shutdown(self) -> None:
    if self._closed:
      return
    self._closed = True
    self._executor.shutdown(wait=False, cancel_futures=True)
