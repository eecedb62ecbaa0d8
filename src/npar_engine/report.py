"""Result formatting for nonparametric tests.

Turns raw compute results into generic nested-column tables, groups them into
report sections for the result sink, and renders them as text.
"""

import json
from dataclasses import dataclass, field
from collections.abc import Iterable, Sequence
from typing import Any

import pandas as pd
from tabulate import tabulate

from .data import (
  ChiSquareSubmission,
  DisplayStatistics,
  PairedSubmission,
  RawComputeResult,
  TestType,
  VariableRef,
)

_ROW_LABELS: dict[str, tuple[str, str, str, str]] = {
  'wilcoxon': ('Negative Ranks', 'Positive Ranks', 'Ties', 'Total'),
  'sign': ('Negative Differences', 'Positive Differences', 'Ties', 'Total'),
}

_COMPONENTS = {'wilcoxon': 'Wilcoxon Test', 'sign': 'Sign Test'}

_INSUFFICIENT_NOTES = {
  'empty': 'no valid cases remain after excluding missing values and zero differences',
  'single': 'only one valid case is available',
  'no_difference': 'negative and positive differences balance exactly',
}

# Wording that differs from the paired tests
_KIND_NOTES = {
  ('chi_square', 'empty'): (
    'fewer than two categories or an expected count of zero; no statistic computed'
  ),
  ('descriptive', 'empty'): 'no valid cases remain after excluding missing values',
}


# -----------------------
# Table model
# -----------------------


@dataclass
class ColumnHeader:
  """One column, or a column group when it has children."""

  header: str
  key: str
  children: list['ColumnHeader'] = field(default_factory=list)

  def to_dict(self) -> dict[str, Any]:
    d: dict[str, Any] = {'header': self.header, 'key': self.key}
    if self.children:
      d['children'] = [c.to_dict() for c in self.children]
    return d


@dataclass
class FormattedTable:
  """Generic table: header tree plus keyed row cells."""

  title: str
  column_headers: list[ColumnHeader]
  rows: list[dict[str, Any]] = field(default_factory=list)
  footnotes: list[str] = field(default_factory=list)

  def to_dict(self) -> dict[str, Any]:
    d: dict[str, Any] = {
      'title': self.title,
      'columnHeaders': [h.to_dict() for h in self.column_headers],
      'rows': self.rows,
    }
    if self.footnotes:
      d['footnotes'] = self.footnotes
    return d

  def leaf_columns(self) -> list[tuple[str, str]]:
    """(display label, key) for every leaf column, group names prefixed."""
    out: list[tuple[str, str]] = []
    for h in self.column_headers:
      if h.children:
        for c in h.children:
          out.append((f'{h.header} {c.header}'.strip(), c.key))
      else:
        out.append((h.header or h.key, h.key))
    return out

  def to_dataframe(self) -> pd.DataFrame:
    cols = self.leaf_columns()
    records = []
    for row in self.rows:
      rec = {}
      for label, key in cols:
        v = row.get(key)
        if isinstance(v, list):
          v = ' / '.join(str(x) for x in v)
        rec[label] = v
      records.append(rec)
    return pd.DataFrame(records, columns=[label for label, _ in cols])

  def to_markdown(self) -> str:
    df = self.to_dataframe().astype(object).fillna('')
    return tabulate(df, headers='keys', tablefmt='github', showindex=False)


@dataclass
class ReportSection:
  """One result sink statistic: a titled group of tables."""

  title: str
  components: str
  tables: list[FormattedTable]

  @property
  def description(self) -> str:
    notes: list[str] = []
    for t in self.tables:
      notes.extend(n for n in t.footnotes if n not in notes)
    return '\n'.join(notes)

  def to_statistic(self) -> dict[str, Any]:
    """Payload for ResultSink.add_statistic."""
    return {
      'title': self.title,
      'output_data': json.dumps(
        {'tables': [t.to_dict() for t in self.tables]}, default=str
      ),
      'components': self.components,
      'description': self.description,
    }


# -----------------------
# Cell formatting
# -----------------------


def format_number(value: float | None, precision: int) -> str | None:
  if value is None:
    return None
  return f'{value:.{max(0, precision)}f}'


def format_p_value(p_value: float | None) -> str | None:
  """Three decimals, or '<.001' for very small p-values."""
  if p_value is None:
    return None
  if p_value < 0.001:
    return '<.001'
  return f'{p_value:.3f}'


def format_df(df: float | None) -> int | str | None:
  if df is None:
    return None
  if float(df).is_integer():
    return int(df)
  return f'{df:.3f}'


def pair_label(variable1: VariableRef, variable2: VariableRef | None) -> str:
  if variable2 is None:
    return variable1.display_name
  return f'{variable1.display_name} - {variable2.display_name}'


def insufficient_data_notes(results: Iterable[RawComputeResult]) -> list[str]:
  """Footnotes for every result that carries an insufficient-data flag."""
  notes: list[str] = []
  for r in results:
    if not r.metadata.has_insufficient_data:
      continue
    subject = pair_label(r.variable1, r.variable2)
    for flag in sorted(r.metadata.insufficient_type):
      text = _KIND_NOTES.get((r.kind, flag)) or _INSUFFICIENT_NOTES.get(flag, flag)
      note = f'{subject}: {text}.'
      if note not in notes:
        notes.append(note)
  return notes


def _of_kind(results: Iterable[RawComputeResult], kind: str) -> list[RawComputeResult]:
  return [r for r in results if r.kind == kind]


# -----------------------
# Paired test tables
# -----------------------


def format_ranks_frequencies_table(
  results: Sequence[RawComputeResult], kind: str
) -> FormattedTable:
  """Ranks (Wilcoxon) or Frequencies (Sign) table, four rows per pair."""
  rs = [r for r in _of_kind(results, kind) if r.ranks_frequencies is not None]
  with_ranks = kind == 'wilcoxon'
  headers = [
    ColumnHeader('', 'rowHeader'),
    ColumnHeader('', 'type'),
    ColumnHeader('N', 'N'),
  ]
  if with_ranks:
    headers += [
      ColumnHeader('Mean Rank', 'MeanRank'),
      ColumnHeader('Sum of Ranks', 'SumOfRanks'),
    ]
  table = FormattedTable(
    title='Ranks' if with_ranks else 'Frequencies', column_headers=headers
  )

  neg_label, pos_label, ties_label, total_label = _ROW_LABELS[kind]
  for r in rs:
    rf = r.ranks_frequencies
    label = pair_label(r.variable1, r.variable2)
    for type_label, group in ((neg_label, rf.negative), (pos_label, rf.positive)):
      row: dict[str, Any] = {'rowHeader': [label], 'type': type_label, 'N': group.n}
      if with_ranks:
        row['MeanRank'] = format_number(group.mean_rank, 2)
        row['SumOfRanks'] = format_number(group.sum_of_ranks, 2)
      table.rows.append(row)
    table.rows.append({'rowHeader': [label], 'type': ties_label, 'N': rf.ties})
    table.rows.append({'rowHeader': [label], 'type': total_label, 'N': rf.total})

  table.footnotes = insufficient_data_notes(rs)
  return table


def format_test_statistics_table(
  results: Sequence[RawComputeResult], kind: str
) -> FormattedTable:
  """One row per statistic, one column per pair."""
  rs = _of_kind(results, kind)
  table = FormattedTable(
    title='Test Statistics', column_headers=[ColumnHeader('', 'rowHeader')]
  )
  z_row: dict[str, Any] = {'rowHeader': ['Z']}
  p_row: dict[str, Any] = {'rowHeader': ['Asymp. Sig. (2-tailed)']}
  exact_row: dict[str, Any] = {'rowHeader': ['Exact Sig. (2-tailed)']}
  show_exact = False

  for i, r in enumerate(rs):
    key = f'pair_{i}'
    table.column_headers.append(
      ColumnHeader(pair_label(r.variable1, r.variable2), key)
    )
    ts = r.test_statistic
    z_row[key] = format_number(ts.z, 3) if ts else None
    p_row[key] = format_p_value(ts.p_value) if ts else None
    # binomial p is reported for small samples only
    n_used = (
      r.ranks_frequencies.negative.n + r.ranks_frequencies.positive.n
      if r.ranks_frequencies
      else 0
    )
    if ts and ts.exact_p_value is not None and n_used <= 25:
      exact_row[key] = format_p_value(ts.exact_p_value)
      show_exact = True
    else:
      exact_row[key] = None

  table.rows += [z_row, p_row]
  if show_exact:
    table.rows.append(exact_row)
  table.footnotes = insufficient_data_notes(rs)
  return table


def format_descriptive_statistics_table(
  results: Sequence[RawComputeResult], display: DisplayStatistics
) -> FormattedTable:
  """One row per distinct variable (by column position)."""
  headers = [ColumnHeader('', 'rowHeader'), ColumnHeader('N', 'N')]
  if display.descriptive:
    headers += [
      ColumnHeader('Mean', 'Mean'),
      ColumnHeader('Std. Deviation', 'StdDev'),
      ColumnHeader('Minimum', 'Min'),
      ColumnHeader('Maximum', 'Max'),
    ]
  if display.quartiles:
    headers.append(
      ColumnHeader(
        'Percentiles',
        'percentiles',
        children=[
          ColumnHeader('25th', 'Percentile25'),
          ColumnHeader('50th (Median)', 'Percentile50'),
          ColumnHeader('75th', 'Percentile75'),
        ],
      )
    )
  table = FormattedTable(title='Descriptive Statistics', column_headers=headers)

  seen: set[int] = set()
  used: list[RawComputeResult] = []
  for r in _of_kind(results, 'descriptive'):
    if r.descriptive is None or r.variable1.column_index in seen:
      continue
    seen.add(r.variable1.column_index)
    used.append(r)
    d = r.descriptive
    dec = r.variable1.decimals
    row: dict[str, Any] = {'rowHeader': [r.variable1.display_name], 'N': d.n}
    if display.descriptive:
      row['Mean'] = format_number(d.mean, dec + 2)
      row['StdDev'] = format_number(d.std_dev, dec + 3)
      row['Min'] = format_number(d.minimum, dec)
      row['Max'] = format_number(d.maximum, dec)
    if display.quartiles:
      row['Percentile25'] = format_number(d.percentile_25, dec)
      row['Percentile50'] = format_number(d.percentile_50, dec)
      row['Percentile75'] = format_number(d.percentile_75, dec)
    table.rows.append(row)
  table.footnotes = insufficient_data_notes(used)
  return table


# -----------------------
# Chi-square tables
# -----------------------


def _format_category(value: Any, variable: VariableRef) -> str:
  if variable.value_labels:
    return variable.label_for(value)
  if isinstance(value, float):
    return format_number(value, variable.decimals)
  return str(value)


def format_frequencies_tables(
  results: Sequence[RawComputeResult], specified_range: bool
) -> list[FormattedTable]:
  """Observed/expected/residual tables.

  Categories from data give one table per variable; a specified range gives a
  single table with one column group per variable.
  """
  rs = [r for r in _of_kind(results, 'chi_square') if r.frequencies is not None]
  if not specified_range:
    return [_frequencies_table(r) for r in rs]
  return [_range_frequencies_table(rs)]


def _frequencies_table(r: RawComputeResult) -> FormattedTable:
  fq = r.frequencies
  table = FormattedTable(
    title=r.variable1.display_name,
    column_headers=[
      ColumnHeader('', 'rowHeader'),
      ColumnHeader('Observed N', 'observedN'),
      ColumnHeader('Expected N', 'expectedN'),
      ColumnHeader('Residual', 'residual'),
    ],
  )
  for cat, obs, exp, res in zip(fq.categories, fq.observed, fq.expected, fq.residual):
    table.rows.append(
      {
        'rowHeader': [r.variable1.label_for(cat)],
        'observedN': obs,
        'expectedN': format_number(exp, 1),
        'residual': format_number(res, 1),
      }
    )
  table.rows.append(
    {'rowHeader': ['Total'], 'observedN': fq.n, 'expectedN': '', 'residual': ''}
  )
  table.footnotes = insufficient_data_notes([r])
  return table


def _range_frequencies_table(rs: list[RawComputeResult]) -> FormattedTable:
  table = FormattedTable(
    title='Frequencies', column_headers=[ColumnHeader('', 'rowHeader')]
  )
  for i, r in enumerate(rs):
    table.column_headers.append(
      ColumnHeader(
        r.variable1.display_name,
        f'var_{i}',
        children=[
          ColumnHeader('Category', f'category{i}'),
          ColumnHeader('Observed N', f'observedN{i}'),
          ColumnHeader('Expected N', f'expectedN{i}'),
          ColumnHeader('Residual', f'residual{i}'),
        ],
      )
    )
  width = max((len(r.frequencies.categories) for r in rs), default=0)
  for pos in range(width):
    row: dict[str, Any] = {'rowHeader': [str(pos + 1)]}
    for i, r in enumerate(rs):
      fq = r.frequencies
      if pos >= len(fq.categories):
        continue
      obs = fq.observed[pos]
      row[f'category{i}'] = (
        _format_category(fq.categories[pos], r.variable1) if obs else ''
      )
      row[f'observedN{i}'] = obs
      row[f'expectedN{i}'] = format_number(fq.expected[pos], 1)
      row[f'residual{i}'] = format_number(fq.residual[pos], 1)
    table.rows.append(row)
  total: dict[str, Any] = {'rowHeader': ['Total']}
  for i, r in enumerate(rs):
    total[f'observedN{i}'] = r.frequencies.n
  table.rows.append(total)
  table.footnotes = insufficient_data_notes(rs)
  return table


def format_chi_square_statistics_table(
  results: Sequence[RawComputeResult],
) -> FormattedTable:
  rs = _of_kind(results, 'chi_square')
  table = FormattedTable(
    title='Test Statistics', column_headers=[ColumnHeader('', 'rowHeader')]
  )
  chi_row: dict[str, Any] = {'rowHeader': ['Chi-Square']}
  df_row: dict[str, Any] = {'rowHeader': ['df']}
  p_row: dict[str, Any] = {'rowHeader': ['Asymp. Sig.']}
  for i, r in enumerate(rs):
    key = f'var_{i}'
    table.column_headers.append(ColumnHeader(r.variable1.display_name, key))
    cs = r.chi_square
    chi_row[key] = format_number(cs.chi_square, 3) if cs else None
    df_row[key] = format_df(cs.df) if cs else None
    p_row[key] = format_p_value(cs.p_value) if cs else None
  table.rows += [chi_row, df_row, p_row]
  table.footnotes = insufficient_data_notes(rs)
  return table


# -----------------------
# Report assembly
# -----------------------


def build_paired_report(
  results: Sequence[RawComputeResult],
  test_type: TestType,
  display: DisplayStatistics,
) -> list[ReportSection]:
  """Sections in sink order: descriptives, then each selected test family."""
  sections: list[ReportSection] = []
  if display.requested:
    sections.append(
      ReportSection(
        'Descriptive Statistics',
        'Descriptive Statistics',
        [format_descriptive_statistics_table(results, display)],
      )
    )
  for kind, selected in (('wilcoxon', test_type.wilcoxon), ('sign', test_type.sign)):
    if not selected:
      continue
    ranks = format_ranks_frequencies_table(results, kind)
    sections.append(ReportSection(ranks.title, _COMPONENTS[kind], [ranks]))
    sections.append(
      ReportSection(
        'Test Statistics',
        _COMPONENTS[kind],
        [format_test_statistics_table(results, kind)],
      )
    )
  return sections


def build_chi_square_report(
  results: Sequence[RawComputeResult], submission: ChiSquareSubmission
) -> list[ReportSection]:
  sections: list[ReportSection] = []
  display = submission.display_statistics
  if display.requested:
    sections.append(
      ReportSection(
        'Descriptive Statistics',
        'Descriptive Statistics',
        [format_descriptive_statistics_table(results, display)],
      )
    )
  specified = not submission.expected_range.get_from_data
  sections.append(
    ReportSection(
      'Frequencies',
      'Chi-Square Test',
      format_frequencies_tables(results, specified),
    )
  )
  sections.append(
    ReportSection(
      'Test Statistics',
      'Chi-Square Test',
      [format_chi_square_statistics_table(results)],
    )
  )
  return sections


def paired_log_text(submission: PairedSubmission) -> str:
  """Command-style log line for a paired submission."""
  left = ' '.join(a.name for a, _ in submission.pairs)
  right = ' '.join(b.name for _, b in submission.pairs)
  lines = ['NPAR TESTS']
  if submission.test_type.wilcoxon:
    lines.append(f'  /WILCOXON={left} WITH {right} (PAIRED)')
  if submission.test_type.sign:
    lines.append(f'  /SIGN={left} WITH {right} (PAIRED)')
  lines += _statistics_lines(submission.display_statistics)
  lines.append('  /MISSING ANALYSIS.')
  return '\n'.join(lines)


def chi_square_log_text(submission: ChiSquareSubmission) -> str:
  names = ' '.join(v.name for v in submission.variables)
  rng = submission.expected_range
  if not rng.get_from_data:
    names += f'({int(rng.lower)},{int(rng.upper)})'
  ev = submission.expected_value
  expected = (
    'EQUAL'
    if ev.all_categories_equal or not ev.values
    else ' '.join(f'{v:g}' for v in ev.values)
  )
  lines = ['NPAR TESTS', f'  /CHISQUARE={names}', f'  /EXPECTED={expected}']
  lines += _statistics_lines(submission.display_statistics)
  lines.append('  /MISSING ANALYSIS.')
  return '\n'.join(lines)


def _statistics_lines(display: DisplayStatistics) -> list[str]:
  if not display.requested:
    return []
  parts = ['  /STATISTICS']
  if display.descriptive:
    parts.append('DESCRIPTIVES')
  if display.quartiles:
    parts.append('QUARTILES')
  return [' '.join(parts)]


def render_text(sections: Iterable[ReportSection]) -> str:
  """Plain-text rendering of every table, with footnotes."""
  blocks: list[str] = []
  for s in sections:
    for t in s.tables:
      block = [f'## {s.components}: {t.title}', '', t.to_markdown()]
      if t.footnotes:
        block += [''] + [f'* {n}' for n in t.footnotes]
      blocks.append('\n'.join(block))
  return '\n\n'.join(blocks)
