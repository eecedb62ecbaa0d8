"""npar command-line interface.

Runs related-samples and Chi-square tests over a CSV file and writes results
through a result sink.
"""

import argparse
import asyncio
import dataclasses
import datetime
import json
import os
import re
import sys

from tabulate import tabulate

from .config import load_config
from .data import (
  ChiSquareSubmission,
  DisplayStatistics,
  ExpectedRange,
  ExpectedValue,
  PairedSubmission,
  TestType,
)
from .errors import ComputeError, PersistenceError, SubmissionTimeoutError, ValidationError
from .orchestrator import TestOrchestrator
from .providers import DataFrameProvider
from .report import render_text
from .runlog import RunLogger
from .sink import HttpResultSink, JsonlResultSink


def _safe_name(s: str) -> str:
  """Make a filesystem-safe name from a variable or file name."""
  if s is None:
    return 'unknown'
  return re.sub(r'[^A-Za-z0-9._-]+', '-', s)


def _timestamp() -> str:
  return datetime.datetime.now().strftime('%Y%m%d_%H%M%S')


def _parse_pair(text: str) -> tuple[str, str]:
  left, sep, right = text.partition(':')
  if not sep or not left or not right:
    raise argparse.ArgumentTypeError(f'expected VAR1:VAR2, got {text!r}')
  return left, right


def _parse_expected(text: str) -> tuple[float, ...]:
  try:
    return tuple(float(v) for v in text.split(',') if v.strip())
  except ValueError as e:
    raise argparse.ArgumentTypeError(f'expected comma-separated numbers, got {text!r}') from e


def _runtime(args: argparse.Namespace):
  """Config with CLI overrides applied."""
  cfg = load_config()
  overrides = {}
  if args.workers is not None:
    overrides['max_workers'] = args.workers
  if args.timeout is not None:
    overrides['timeout_s'] = args.timeout if args.timeout > 0 else None
  if args.no_tie_correction:
    overrides['tie_correction'] = False
  if overrides:
    cfg = dataclasses.replace(cfg, **overrides)
  return cfg


def _make_sink(args: argparse.Namespace, cfg):
  if args.sink_url or cfg.sink_url:
    return HttpResultSink(base_url=args.sink_url or cfg.sink_url, token=cfg.sink_token)
  return JsonlResultSink(args.out)


def _run(args: argparse.Namespace, provider: DataFrameProvider, submission) -> int:
  """Run one submission, print its tables and write run info."""
  cfg = _runtime(args)
  os.makedirs(args.out, exist_ok=True)
  logger = RunLogger(
    path=os.path.join(args.out, 'run.log.jsonl'),
    enabled=not args.quiet,
    stdout_format=cfg.log_format,
  )
  orch = TestOrchestrator(provider, _make_sink(args, cfg), config=cfg, logger=logger)

  async def _go():
    return await orch.submit(submission)

  try:
    outcome = asyncio.run(_go())
  except ValidationError as e:
    print(f'Invalid request: {e}', file=sys.stderr)
    return 2
  except (ComputeError, SubmissionTimeoutError) as e:
    print(f'Analysis failed: {e}', file=sys.stderr)
    return 1
  except PersistenceError as e:
    print(f'Analysis finished but results were not saved: {e}', file=sys.stderr)
    if e.tables:
      print('\n\n'.join(t.to_markdown() for t in e.tables))
    return 1
  except KeyboardInterrupt:
    orch.cancel(reason='interrupted')
    print('Cancelled', file=sys.stderr)
    return 130
  finally:
    logger.close()

  print(render_text(outcome.sections))
  for err in outcome.errors:
    print(f'warning: {err}', file=sys.stderr)

  info = {
    'data': os.path.abspath(args.data),
    'timestamp': _timestamp(),
    'workers': cfg.max_workers,
    'tie_correction': cfg.tie_correction,
    'statistics': outcome.statistic_ids,
    'errors': outcome.errors,
  }
  with open(os.path.join(args.out, 'run_info.json'), 'w') as f:
    json.dump(info, f, indent=2, default=str)
  print(f'Artifacts written under {args.out}')
  return 0


def _auto_out(args: argparse.Namespace, kind: str) -> None:
  if args.out is None:
    base = f'{kind}-{_safe_name(os.path.splitext(os.path.basename(args.data))[0])}-{_timestamp()}'
    args.out = os.path.join('results', base)


def cmd_related(args: argparse.Namespace) -> int:
  """CLI: Wilcoxon and/or sign test over variable pairs."""
  provider = DataFrameProvider.from_csv(args.data)
  pairs = tuple((provider.variable(a), provider.variable(b)) for a, b in args.pair)
  submission = PairedSubmission(
    pairs=pairs,
    test_type=TestType(wilcoxon=args.wilcoxon, sign=args.sign),
    display_statistics=DisplayStatistics(
      descriptive=args.descriptive, quartiles=args.quartiles
    ),
  )
  _auto_out(args, 'related')
  return _run(args, provider, submission)


def cmd_chisquare(args: argparse.Namespace) -> int:
  """CLI: Chi-square goodness-of-fit for one or more variables."""
  provider = DataFrameProvider.from_csv(args.data)
  variables = tuple(provider.variable(name) for name in args.var)
  if args.range:
    rng = ExpectedRange(get_from_data=False, lower=args.range[0], upper=args.range[1])
  else:
    rng = ExpectedRange()
  if args.expected:
    ev = ExpectedValue(all_categories_equal=False, values=args.expected)
  else:
    ev = ExpectedValue()
  submission = ChiSquareSubmission(
    variables=variables,
    expected_range=rng,
    expected_value=ev,
    display_statistics=DisplayStatistics(
      descriptive=args.descriptive, quartiles=args.quartiles
    ),
  )
  _auto_out(args, 'chisquare')
  return _run(args, provider, submission)


def cmd_variables(args: argparse.Namespace) -> int:
  """CLI: list the variables inferred from a CSV file."""
  provider = DataFrameProvider.from_csv(args.data)
  rows = [
    [v.column_index, v.name, v.type, v.measure, v.decimals]
    for v in provider.variables()
  ]
  print(
    tabulate(
      rows, headers=['#', 'Name', 'Type', 'Measure', 'Decimals'], tablefmt='github'
    )
  )
  return 0


def _add_common(p: argparse.ArgumentParser) -> None:
  p.add_argument('--data', type=str, required=True, help='CSV file with one column per variable')
  p.add_argument('--descriptive', action='store_true', help='Also report descriptive statistics')
  p.add_argument('--quartiles', action='store_true', help='Also report quartiles')
  p.add_argument(
    '--out',
    type=str,
    default=None,
    help='Output directory (auto-named if omitted)',
  )
  p.add_argument('--workers', type=int, default=None, help='Worker pool size (NPAR_MAX_WORKERS)')
  p.add_argument(
    '--timeout', type=float, default=None, help='Submission timeout in seconds; 0 disables'
  )
  p.add_argument(
    '--no-tie-correction',
    action='store_true',
    help='Skip the tie correction in the Wilcoxon variance',
  )
  p.add_argument(
    '--sink-url', type=str, default=None, help='Post results to this result store URL'
  )
  p.add_argument('--quiet', action='store_true', help='Disable per-job stdout logs')


def main(argv: list[str] | None = None) -> int:
  """Entry point for npar CLI."""
  ap = argparse.ArgumentParser(
    prog='npar', description='Nonparametric test engine'
  )
  sub = ap.add_subparsers(dest='cmd', required=True)

  r = sub.add_parser('related', help='Two related samples: Wilcoxon and sign tests')
  r.add_argument(
    '--pair',
    type=_parse_pair,
    action='append',
    required=True,
    help='Variable pair as VAR1:VAR2 (repeatable)',
  )
  r.add_argument('--wilcoxon', action='store_true', help='Run the Wilcoxon signed-rank test')
  r.add_argument('--sign', action='store_true', help='Run the sign test')
  _add_common(r)
  r.set_defaults(func=cmd_related)

  c = sub.add_parser('chisquare', help='Chi-square goodness-of-fit')
  c.add_argument('--var', action='append', required=True, help='Test variable (repeatable)')
  c.add_argument(
    '--range',
    type=int,
    nargs=2,
    metavar=('LOWER', 'UPPER'),
    default=None,
    help='Use every integer in [LOWER, UPPER] as a category',
  )
  c.add_argument(
    '--expected',
    type=_parse_expected,
    default=None,
    help='Comma-separated expected weights, one per category',
  )
  _add_common(c)
  c.set_defaults(func=cmd_chisquare)

  v = sub.add_parser('variables', help='List variables in a CSV file')
  v.add_argument('--data', type=str, required=True, help='CSV file')
  v.set_defaults(func=cmd_variables)

  args = ap.parse_args(argv)
  try:
    return args.func(args)
  except KeyError as e:
    print(f'error: {e.args[0] if e.args else e}', file=sys.stderr)
    return 2


if __name__ == '__main__':
  sys.exit(main())
