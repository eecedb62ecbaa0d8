"""Submission orchestration: validate, dispatch, count completions, aggregate once.

SubmissionState is an immutable value and `transition` is the only place it
changes. TestOrchestrator feeds events into it from the asyncio event loop:
job completions arrive as future callbacks, in any order, and aggregation
starts when the processed count matches the dispatched count.
"""

import asyncio
import functools
import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from .config import Config, load_config
from .data import (
  ChiSquareSubmission,
  JobOutcome,
  JobSpec,
  PairedSubmission,
  RawComputeResult,
  TestOptions,
  VariableRef,
)
from .errors import (
  ComputeError,
  PersistenceError,
  SubmissionTimeoutError,
  ValidationError,
)
from .providers import DataProvider
from .report import (
  ReportSection,
  build_chi_square_report,
  build_paired_report,
  chi_square_log_text,
  paired_log_text,
)
from .runlog import RunLogger
from .runner import JobRunner
from .sink import ResultSink

Submission = Union[PairedSubmission, ChiSquareSubmission]


class Phase(str, Enum):
  IDLE = 'idle'
  DISPATCHING = 'dispatching'
  AWAITING_RESULTS = 'awaiting_results'
  AGGREGATING = 'aggregating'
  COMPLETED = 'completed'
  CANCELLED = 'cancelled'
  FAILED = 'failed'


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.CANCELLED, Phase.FAILED})


@dataclass(frozen=True)
class SubmissionState:
  """Serializable snapshot of one submission's progress."""

  phase: Phase = Phase.IDLE
  expected: int = 0
  processed: int = 0
  outcomes: tuple[JobOutcome, ...] = ()
  errors: tuple[str, ...] = ()
  seen: frozenset[str] = frozenset()

  @property
  def is_terminal(self) -> bool:
    return self.phase in TERMINAL_PHASES

  def to_dict(self) -> dict[str, Any]:
    return {
      'phase': self.phase.value,
      'expected': self.expected,
      'processed': self.processed,
      'successes': len(self.outcomes),
      'errors': list(self.errors),
    }


# -----------------------
# Events
# -----------------------


@dataclass(frozen=True)
class Started:
  pass


@dataclass(frozen=True)
class Dispatched:
  expected: int


@dataclass(frozen=True)
class JobFinished:
  outcome: JobOutcome


@dataclass(frozen=True)
class Aggregated:
  pass


@dataclass(frozen=True)
class Cancelled:
  pass


@dataclass(frozen=True)
class Failed:
  reason: str


Event = Union[Started, Dispatched, JobFinished, Aggregated, Cancelled, Failed]


def check_result(result: Any) -> str | None:
  """Return a problem description for a malformed job result, else None."""
  if not isinstance(result, RawComputeResult):
    return f'unexpected result type {type(result).__name__}'
  rf = result.ranks_frequencies
  if rf is not None:
    counted = rf.negative.n + rf.positive.n + rf.ties
    if not (counted == rf.total == result.n):
      return f'inconsistent counts (negative+positive+ties={counted}, total={rf.total}, N={result.n})'
  return None


def transition(state: SubmissionState, event: Event) -> SubmissionState:
  """Pure state transition. Ignored events return `state` itself."""
  if isinstance(event, Started):
    if state.phase is not Phase.IDLE and not state.is_terminal:
      raise RuntimeError(f'Cannot start a submission while {state.phase.value}')
    return SubmissionState(phase=Phase.DISPATCHING)

  if isinstance(event, Dispatched):
    if state.phase is not Phase.DISPATCHING:
      return state
    if event.expected <= 0:
      return replace(state, phase=Phase.FAILED, errors=state.errors + ('No jobs to run',))
    return replace(state, phase=Phase.AWAITING_RESULTS, expected=event.expected)

  if isinstance(event, JobFinished):
    outcome = event.outcome
    # late (after cancel/aggregation) or duplicate messages
    if state.phase is not Phase.AWAITING_RESULTS or outcome.job_id in state.seen:
      return state
    outcomes, errors = state.outcomes, state.errors
    if outcome.ok:
      problem = check_result(outcome.result)
    else:
      problem = outcome.error or 'Unknown error'
    if problem is None:
      outcomes = outcomes + (outcome,)
    else:
      errors = errors + (f'Calculation failed for {outcome.label}: {problem}',)
    processed = state.processed + 1
    phase = state.phase
    if processed >= state.expected:
      phase = Phase.AGGREGATING if outcomes else Phase.FAILED
    return replace(
      state,
      phase=phase,
      processed=processed,
      outcomes=outcomes,
      errors=errors,
      seen=state.seen | {outcome.job_id},
    )

  if isinstance(event, Aggregated):
    if state.phase is not Phase.AGGREGATING:
      return state
    return replace(state, phase=Phase.COMPLETED)

  if isinstance(event, Cancelled):
    if state.is_terminal:
      return state
    return replace(state, phase=Phase.CANCELLED, outcomes=(), errors=())

  if isinstance(event, Failed):
    if state.is_terminal:
      return state
    return replace(state, phase=Phase.FAILED, errors=state.errors + (event.reason,))

  raise TypeError(f'Unknown event: {event!r}')


# -----------------------
# Validation & job planning
# -----------------------


def validate_paired(submission: PairedSubmission) -> None:
  """Reject a paired submission before anything is dispatched."""
  if not submission.pairs:
    raise ValidationError('Please select at least one variable pair to analyze.')
  if not (submission.test_type.wilcoxon or submission.test_type.sign):
    raise ValidationError('Please select at least one test type.')
  seen: set[tuple[int, int]] = set()
  for i, (a, b) in enumerate(submission.pairs, 1):
    if a.column_index == b.column_index:
      raise ValidationError(
        f'Pair {i} uses {a.name} twice; the variables of a pair must differ.'
      )
    for v in (a, b):
      if v.type != 'numeric':
        raise ValidationError(
          f'{v.name} is a string variable; paired tests need numeric variables.'
        )
    key = (a.column_index, b.column_index)
    if key in seen:
      raise ValidationError(f'Pair {a.name} - {b.name} appears more than once.')
    seen.add(key)


def validate_chi_square(submission: ChiSquareSubmission) -> None:
  if not submission.variables:
    raise ValidationError('Please select at least one variable to analyze.')
  columns = [v.column_index for v in submission.variables]
  if len(set(columns)) != len(columns):
    raise ValidationError('Each variable may be selected only once.')

  rng = submission.expected_range
  if not rng.get_from_data:
    if rng.lower is None or rng.upper is None:
      raise ValidationError('Both lower and upper range values are required.')
    if int(rng.lower) != rng.lower or int(rng.upper) != rng.upper:
      raise ValidationError('Range bounds must be integers.')
    if rng.lower > rng.upper:
      raise ValidationError(
        f'Lower bound {rng.lower} is greater than upper bound {rng.upper}.'
      )

  ev = submission.expected_value
  if not ev.all_categories_equal:
    if not ev.values:
      raise ValidationError('Please enter at least one expected value.')
    if any(v <= 0 for v in ev.values):
      raise ValidationError('Expected values must be greater than 0.')
    if not rng.get_from_data and len(ev.values) != rng.width:
      raise ValidationError(
        f'{len(ev.values)} expected values given for {rng.width} categories in range.'
      )


def validate(submission: Submission) -> None:
  if isinstance(submission, PairedSubmission):
    validate_paired(submission)
  elif isinstance(submission, ChiSquareSubmission):
    validate_chi_square(submission)
  else:
    raise ValidationError(f'Unsupported submission type: {type(submission).__name__}')


def distinct_variables(submission: Submission) -> list[VariableRef]:
  """Variables referenced by a submission, first occurrence wins."""
  if isinstance(submission, PairedSubmission):
    candidates = [v for pair in submission.pairs for v in pair]
  else:
    candidates = list(submission.variables)
  out: list[VariableRef] = []
  seen: set[int] = set()
  for v in candidates:
    if v.column_index not in seen:
      seen.add(v.column_index)
      out.append(v)
  return out


def _job_id(sequence: int, kind: str, *variables: VariableRef) -> str:
  raw = '|'.join([str(sequence), kind, *(f'{v.column_index}:{v.name}' for v in variables)])
  return hashlib.sha1(raw.encode('utf-8')).hexdigest()[:16]


def plan_jobs(
  submission: Submission,
  options: TestOptions,
  data: dict[int, tuple[Any, ...]],
) -> list[JobSpec]:
  """One job per pair per selected test family, one chi-square job per
  variable, plus one descriptive job per distinct variable when requested."""
  specs: list[JobSpec] = []

  def add(kind: str, v1: VariableRef, v2: VariableRef | None = None) -> None:
    seq = len(specs)
    variables = (v1,) if v2 is None else (v1, v2)
    specs.append(
      JobSpec(
        job_id=_job_id(seq, kind, *variables),
        sequence=seq,
        kind=kind,
        variable1=v1,
        data1=data[v1.column_index],
        options=options,
        variable2=v2,
        data2=data[v2.column_index] if v2 is not None else None,
      )
    )

  if isinstance(submission, PairedSubmission):
    for a, b in submission.pairs:
      if options.wilcoxon:
        add('wilcoxon', a, b)
      if options.sign:
        add('sign', a, b)
  else:
    for v in submission.variables:
      add('chi_square', v)

  if options.descriptive or options.quartiles:
    for v in distinct_variables(submission):
      add('descriptive', v)
  return specs


# -----------------------
# Orchestrator
# -----------------------


@dataclass
class SubmissionCallbacks:
  """Optional caller hooks; all run on the event loop thread."""

  on_progress: Callable[[int, int], None] | None = None
  on_complete: Callable[['SubmissionOutcome'], None] | None = None
  on_error: Callable[[Exception], None] | None = None
  on_cancelled: Callable[[], None] | None = None


@dataclass
class SubmissionOutcome:
  """What a finished submission hands back to the caller."""

  phase: Phase
  sections: list[ReportSection] = field(default_factory=list)
  errors: list[str] = field(default_factory=list)
  statistic_ids: list[Any] = field(default_factory=list)

  @property
  def tables(self) -> list:
    return [t for s in self.sections for t in s.tables]


class TestOrchestrator:
  """Runs one submission at a time against an injected provider and sink.

  Args:
    provider: source of case-aligned variable data.
    sink: destination for log, analytic and statistic records.
    config: runtime settings; defaults to `load_config()`.
    runner_factory: builds a fresh job runner per submission.
    logger: structured event logger.
    callbacks: caller hooks for progress, completion, errors and cancellation.
  """

  __test__ = False

  def __init__(
    self,
    provider: DataProvider,
    sink: ResultSink,
    config: Config | None = None,
    runner_factory: Callable[[], Any] | None = None,
    logger: RunLogger | None = None,
    callbacks: SubmissionCallbacks | None = None,
  ) -> None:
    self.provider = provider
    self.sink = sink
    self.config = config or load_config()
    self._runner_factory = runner_factory or (
      lambda: JobRunner(max_workers=self.config.max_workers)
    )
    self.logger = logger or RunLogger(enabled=False)
    self.callbacks = callbacks or SubmissionCallbacks()
    self._state = SubmissionState()
    self._runner: Any | None = None
    self._settled: asyncio.Event | None = None

  @property
  def state(self) -> SubmissionState:
    return self._state

  @property
  def phase(self) -> Phase:
    return self._state.phase

  # ---------- Public API ----------

  def submit(self, submission: Submission) -> 'asyncio.Task[SubmissionOutcome]':
    """Validate synchronously, then run the submission as an asyncio task.

    Raises:
      ValidationError: the submission is rejected; nothing is dispatched.
    """
    if self._state.phase is not Phase.IDLE and not self._state.is_terminal:
      raise RuntimeError('A submission is already in progress')
    validate(submission)
    loop = asyncio.get_running_loop()
    self._apply(Started())
    self._settled = asyncio.Event()
    return loop.create_task(self._run(submission))

  def on_job_result(self, outcome: JobOutcome) -> None:
    """Record one job outcome; late or duplicate messages are ignored."""
    before = self._state
    self._apply(JobFinished(outcome))
    after = self._state
    if after is before:
      return

    if after.errors != before.errors:
      self.logger.event(
        'job_error',
        label=outcome.label,
        error=after.errors[-1],
        processed=after.processed,
        expected=after.expected,
      )
    else:
      self.logger.event(
        'job_done',
        label=outcome.label,
        processed=after.processed,
        expected=after.expected,
        insufficient=sorted(outcome.result.metadata.insufficient_type),
      )
    if self.callbacks.on_progress:
      self.callbacks.on_progress(after.processed, after.expected)
    if after.phase in (Phase.AGGREGATING, Phase.FAILED) and self._settled:
      self._settled.set()

  def cancel(self, reason: str = 'cancelled by caller') -> None:
    """Stop the current submission from any non-terminal phase."""
    if self._state.is_terminal:
      return
    self._apply(Cancelled())
    if self._runner is not None:
      self._runner.cancel()
    self.logger.event('cancel', reason=reason)
    if self._settled is not None:
      self._settled.set()

  # ---------- Internals ----------

  def _apply(self, event: Event) -> None:
    self._state = transition(self._state, event)

  def _is_cancelled(self) -> bool:
    return self._state.phase is Phase.CANCELLED

  async def _run(self, submission: Submission) -> SubmissionOutcome:
    try:
      return await self._execute(submission)
    except asyncio.CancelledError:
      self.cancel(reason='task cancelled')
      raise

  async def _execute(self, submission: Submission) -> SubmissionOutcome:
    options = submission.to_options(self.config.tie_correction)
    variables = distinct_variables(submission)
    self.logger.event(
      'submit',
      kind='paired' if isinstance(submission, PairedSubmission) else 'chi_square',
      variables=[v.name for v in variables],
    )

    try:
      columns = await asyncio.gather(
        *(self.provider.get_variable_data(v) for v in variables)
      )
    except Exception as e:
      if self._is_cancelled():
        return self._finish_cancelled()
      self._fail(ComputeError([f'Failed to load data: {e}']))

    if self._is_cancelled():
      return self._finish_cancelled()

    data = {v.column_index: tuple(col) for v, col in zip(variables, columns)}
    specs = plan_jobs(submission, options, data)
    runner = self._runner_factory()
    self._runner = runner
    self._apply(Dispatched(len(specs)))
    self.logger.event('dispatch', expected=len(specs))
    for spec in specs:
      fut = runner.submit(spec)
      fut.add_done_callback(functools.partial(self._on_future_done, spec))

    try:
      await asyncio.wait_for(self._settled.wait(), timeout=self.config.timeout_s)
    except asyncio.TimeoutError:
      pending = self._state.expected - self._state.processed
      err = SubmissionTimeoutError(self.config.timeout_s or 0.0, pending)
      self.logger.event('timeout', reason=str(err))
      self.cancel(reason='timeout')
      if self.callbacks.on_cancelled:
        self.callbacks.on_cancelled()
      self._notify_error(err)
      self._discard()
      raise err from None

    if self._is_cancelled():
      return self._finish_cancelled()
    runner.shutdown()
    if self._state.phase is Phase.FAILED:
      self._fail(ComputeError(list(self._state.errors)))
    return await self._aggregate(submission)

  def _on_future_done(self, spec: JobSpec, fut: asyncio.Future) -> None:
    if fut.cancelled():
      return
    exc = fut.exception()
    if exc is not None:
      outcome = JobOutcome(
        job_id=spec.job_id,
        sequence=spec.sequence,
        label=spec.label,
        status='error',
        error=f'{type(exc).__name__}: {exc}',
      )
    else:
      outcome = fut.result()
    self.on_job_result(outcome)

  async def _aggregate(self, submission: Submission) -> SubmissionOutcome:
    ordered = sorted(self._state.outcomes, key=lambda o: o.sequence)
    results = [o.result for o in ordered]
    errors = list(self._state.errors)

    if isinstance(submission, PairedSubmission):
      sections = build_paired_report(
        results, submission.test_type, submission.display_statistics
      )
      log_text = paired_log_text(submission)
      title = 'Two Related Samples Test'
    else:
      sections = build_chi_square_report(results, submission)
      log_text = chi_square_log_text(submission)
      title = 'Chi-Square Test'
    self.logger.event(
      'aggregate', results=len(results), errors=len(errors), sections=len(sections)
    )

    persisted: dict[str, Any] = {'log_id': None, 'analytic_id': None, 'statistic_ids': []}
    try:
      persisted['log_id'] = await self.sink.add_log(log_text)
      if self._is_cancelled():
        return self._finish_cancelled()
      persisted['analytic_id'] = await self.sink.add_analytic(
        persisted['log_id'], {'title': title, 'note': '\n'.join(errors)}
      )
      for section in sections:
        if self._is_cancelled():
          return self._finish_cancelled()
        persisted['statistic_ids'].append(
          await self.sink.add_statistic(persisted['analytic_id'], section.to_statistic())
        )
    except Exception as e:
      tables = [t for s in sections for t in s.tables]
      self._fail(
        PersistenceError(f'Error saving results: {e}', tables=tables, persisted=persisted),
        cause=e,
      )

    if self._is_cancelled():
      return self._finish_cancelled()
    self._apply(Aggregated())
    outcome = SubmissionOutcome(
      phase=Phase.COMPLETED,
      sections=sections,
      errors=errors,
      statistic_ids=list(persisted['statistic_ids']),
    )
    self.logger.event(
      'persist',
      log_id=persisted['log_id'],
      analytic_id=persisted['analytic_id'],
      statistics=len(persisted['statistic_ids']),
    )
    if self.callbacks.on_complete:
      self.callbacks.on_complete(outcome)
    self._discard()
    return outcome

  def _fail(self, err: Exception, cause: BaseException | None = None) -> None:
    """Move to FAILED, notify the caller and raise `err`."""
    self._apply(Failed(str(err)))
    self.logger.event('failed', reason=str(err))
    if self._runner is not None:
      self._runner.cancel()
    self._notify_error(err)
    self._discard()
    raise err from cause

  def _finish_cancelled(self) -> SubmissionOutcome:
    if self.callbacks.on_cancelled:
      self.callbacks.on_cancelled()
    self._discard()
    return SubmissionOutcome(phase=Phase.CANCELLED)

  def _notify_error(self, err: Exception) -> None:
    if self.callbacks.on_error:
      self.callbacks.on_error(err)

  def _discard(self) -> None:
    """Drop per-submission data, keeping only the final phase."""
    self._state = SubmissionState(phase=self._state.phase)
    self._runner = None
