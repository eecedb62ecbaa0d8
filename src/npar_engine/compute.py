"""Compute jobs for nonparametric tests.

Every job is a pure function of its input sequences and options and returns a
RawComputeResult. Too little data is reported through result metadata flags
('empty', 'single', 'no_difference'); it never raises.

Conventions:
- Casewise deletion: a case is dropped when either value is missing.
- Paired differences are d = x - y, so 'negative' means var1 < var2.
- Two-tailed normal p-values are 2 * (1 - Phi(|Z|)), computed as 2 * sf(|Z|).
- Percentiles use the (n + 1)p weighted average (numpy method='weibull').
"""

import math
import threading
from collections import Counter
from collections.abc import Sequence
from numbers import Real
from typing import Any

import numpy as np
from scipy import stats

from .data import (
  ChiSquareStatistic,
  DescriptiveStats,
  ExpectedRange,
  ExpectedValue,
  Frequencies,
  JobSpec,
  RankGroup,
  RanksFrequencies,
  RawComputeResult,
  ResultMetadata,
  TestStatistic,
  VariableRef,
)
from .errors import JobCancelled

# Sequence loops poll the token once per this many items.
_CANCEL_CHECK_EVERY = 1024


class CancellationToken:
  """Flag shared by all jobs of one submission, checked cooperatively."""

  def __init__(self) -> None:
    self._event = threading.Event()

  def cancel(self) -> None:
    self._event.set()

  @property
  def cancelled(self) -> bool:
    return self._event.is_set()

  def raise_if_cancelled(self) -> None:
    if self._event.is_set():
      raise JobCancelled('Job cancelled')


# -----------------------
# Value cleaning
# -----------------------


def is_missing(value: Any, variable: VariableRef) -> bool:
  """True for the system-missing sentinel or a user-defined missing code."""
  if value is None:
    return True
  if isinstance(value, float) and math.isnan(value):
    return True
  if isinstance(value, str) and not value.strip():
    return True
  return bool(variable.missing_values) and value in variable.missing_values


def _as_number(value: Any) -> float | None:
  """Return a finite float for numeric input, else None."""
  if isinstance(value, bool):
    return None
  if isinstance(value, Real):
    f = float(value)
  elif isinstance(value, str):
    try:
      f = float(value.strip())
    except ValueError:
      return None
  else:
    return None
  return f if math.isfinite(f) else None


def numeric_values(
  variable: VariableRef,
  data: Sequence[Any],
  token: CancellationToken | None = None,
) -> np.ndarray:
  """Valid numeric values of one variable."""
  out: list[float] = []
  for i, v in enumerate(data):
    if token is not None and i % _CANCEL_CHECK_EVERY == 0:
      token.raise_if_cancelled()
    if is_missing(v, variable):
      continue
    x = _as_number(v)
    if x is not None:
      out.append(x)
  return np.asarray(out, dtype=float)


def paired_values(
  variable1: VariableRef,
  data1: Sequence[Any],
  variable2: VariableRef,
  data2: Sequence[Any],
  token: CancellationToken | None = None,
) -> tuple[np.ndarray, np.ndarray]:
  """Apply casewise deletion to two case-aligned sequences."""
  xs: list[float] = []
  ys: list[float] = []
  for i, (a, b) in enumerate(zip(data1, data2)):
    if token is not None and i % _CANCEL_CHECK_EVERY == 0:
      token.raise_if_cancelled()
    if is_missing(a, variable1) or is_missing(b, variable2):
      continue
    x, y = _as_number(a), _as_number(b)
    if x is None or y is None:
      continue
    xs.append(x)
    ys.append(y)
  return np.asarray(xs, dtype=float), np.asarray(ys, dtype=float)


def rank_with_ties(
  values: Sequence[float] | np.ndarray,
  token: CancellationToken | None = None,
) -> tuple[np.ndarray, list[int]]:
  """Rank ascending; tied values share the mean of the ranks they span.

  Returns:
    ranks aligned with `values`, and the size of every tie group (t > 1).
  """
  arr = np.asarray(values, dtype=float)
  n = len(arr)
  order = np.argsort(arr, kind='mergesort')
  ranks = np.empty(n, dtype=float)
  tie_groups: list[int] = []
  i = 0
  while i < n:
    if token is not None:
      token.raise_if_cancelled()
    j = i
    while j + 1 < n and arr[order[j + 1]] == arr[order[i]]:
      j += 1
    # positions i..j hold ranks i+1..j+1
    ranks[order[i : j + 1]] = (i + j + 2) / 2.0
    if j > i:
      tie_groups.append(j - i + 1)
    i = j + 1
  return ranks, tie_groups


def _metadata(
  variable1: VariableRef, variable2: VariableRef | None = None
) -> ResultMetadata:
  return ResultMetadata(
    variable1_name=variable1.name,
    variable2_name=variable2.name if variable2 is not None else None,
  )


def _two_tailed_p(z: float) -> float:
  return min(1.0, float(2.0 * stats.norm.sf(abs(z))))


# -----------------------
# Paired tests
# -----------------------


def wilcoxon_signed_rank(
  variable1: VariableRef,
  data1: Sequence[Any],
  variable2: VariableRef,
  data2: Sequence[Any],
  tie_correction: bool = True,
  token: CancellationToken | None = None,
) -> RawComputeResult:
  """Wilcoxon signed-rank test with the normal approximation.

  W is the positive rank sum. With `tie_correction`, the variance is
  Nr(Nr+1)(2Nr+1)/24 - sum(t^3 - t)/48 over tie groups of |d|.
  """
  x, y = paired_values(variable1, data1, variable2, data2, token)
  n = len(x)
  d = x - y
  nonzero = d[d != 0]
  n_r = len(nonzero)
  meta = _metadata(variable1, variable2)
  result = RawComputeResult(
    kind='wilcoxon', variable1=variable1, variable2=variable2, n=n, metadata=meta
  )

  if n_r == 0:
    meta.flag('empty')
    result.ranks_frequencies = RanksFrequencies(
      negative=RankGroup(), positive=RankGroup(), ties=n, total=n
    )
    return result

  ranks, tie_groups = rank_with_ties(np.abs(nonzero), token)
  neg = nonzero < 0
  neg_n = int(neg.sum())
  pos_n = n_r - neg_n
  neg_sum = float(ranks[neg].sum())
  pos_sum = float(ranks[~neg].sum())
  result.ranks_frequencies = RanksFrequencies(
    negative=RankGroup(neg_n, neg_sum / neg_n if neg_n else None, neg_sum),
    positive=RankGroup(pos_n, pos_sum / pos_n if pos_n else None, pos_sum),
    ties=n - n_r,
    total=n,
  )

  if n_r == 1:
    meta.flag('single')
  if math.isclose(neg_sum, pos_sum):
    meta.flag('no_difference')

  mean_w = n_r * (n_r + 1) / 4.0
  var_w = n_r * (n_r + 1) * (2 * n_r + 1) / 24.0
  if tie_correction:
    var_w -= sum(t**3 - t for t in tie_groups) / 48.0
  if var_w > 0:
    z = (pos_sum - mean_w) / math.sqrt(var_w)
    result.test_statistic = TestStatistic(z=z, p_value=_two_tailed_p(z))
  else:
    result.test_statistic = TestStatistic(z=None, p_value=None)
  return result


def sign_test(
  variable1: VariableRef,
  data1: Sequence[Any],
  variable2: VariableRef,
  data2: Sequence[Any],
  token: CancellationToken | None = None,
) -> RawComputeResult:
  """Sign test: normal approximation plus the exact binomial p-value."""
  x, y = paired_values(variable1, data1, variable2, data2, token)
  n_total = len(x)
  d = x - y
  pos = int((d > 0).sum())
  neg = int((d < 0).sum())
  n = pos + neg
  meta = _metadata(variable1, variable2)
  result = RawComputeResult(
    kind='sign',
    variable1=variable1,
    variable2=variable2,
    n=n_total,
    ranks_frequencies=RanksFrequencies(
      negative=RankGroup(neg), positive=RankGroup(pos), ties=n_total - n, total=n_total
    ),
    metadata=meta,
  )
  if n == 0:
    meta.flag('empty')
    return result
  if n == 1:
    meta.flag('single')
  if pos == neg:
    meta.flag('no_difference')

  z = (max(pos, neg) - n / 2.0) / (math.sqrt(n) / 2.0)
  exact = float(stats.binomtest(min(pos, neg), n, 0.5).pvalue)
  result.test_statistic = TestStatistic(
    z=z, p_value=_two_tailed_p(z), exact_p_value=min(1.0, exact)
  )
  return result


# -----------------------
# Single-variable tests
# -----------------------


def _category(value: Any, variable: VariableRef) -> Any | None:
  """Normalize a raw value into a Chi-square category key."""
  if variable.type == 'string':
    return str(value)
  x = _as_number(value)
  if x is None:
    return None
  return int(x) if x.is_integer() else x


def _category_sort_key(value: Any) -> tuple[int, Any]:
  if isinstance(value, (int, float)):
    return (0, value)
  return (1, str(value))


def chi_square_goodness_of_fit(
  variable: VariableRef,
  data: Sequence[Any],
  expected_range: ExpectedRange,
  expected_value: ExpectedValue,
  token: CancellationToken | None = None,
) -> RawComputeResult:
  """Chi-square goodness-of-fit against uniform or weighted expectations.

  Under a specified range every integer in [lower, upper] is a category,
  values are truncated to integers and cases outside the range are excluded.
  Explicit expected values are relative weights scaled to N.
  """
  if not expected_range.get_from_data:
    lower, upper = int(expected_range.lower), int(expected_range.upper)
  counts: Counter = Counter()
  for i, v in enumerate(data):
    if token is not None and i % _CANCEL_CHECK_EVERY == 0:
      token.raise_if_cancelled()
    if is_missing(v, variable):
      continue
    if expected_range.get_from_data:
      c = _category(v, variable)
      if c is not None:
        counts[c] += 1
    else:
      x = _as_number(v)
      if x is None:
        continue
      c = math.trunc(x)
      if lower <= c <= upper:
        counts[c] += 1

  if expected_range.get_from_data:
    categories = sorted(counts, key=_category_sort_key)
  else:
    categories = list(range(lower, upper + 1))
  observed = [int(counts.get(c, 0)) for c in categories]
  n = sum(observed)
  k = len(categories)

  if expected_value.all_categories_equal or not expected_value.values:
    expected = [n / k] * k if k else []
  else:
    weights = list(expected_value.values)
    if len(weights) != k:
      raise ValueError(
        f'{variable.name}: {len(weights)} expected values given for {k} categories'
      )
    total_w = float(sum(weights))
    expected = [n * w / total_w for w in weights]
  residual = [o - e for o, e in zip(observed, expected)]

  meta = _metadata(variable)
  result = RawComputeResult(
    kind='chi_square',
    variable1=variable,
    n=n,
    frequencies=Frequencies(
      categories=categories,
      observed=observed,
      expected=expected,
      residual=residual,
      n=n,
    ),
    metadata=meta,
  )
  if n == 0 or k < 2 or any(e == 0 for e in expected):
    meta.flag('empty')
    return result

  chi = float(sum((o - e) ** 2 / e for o, e in zip(observed, expected)))
  df = k - 1
  result.chi_square = ChiSquareStatistic(
    chi_square=chi, df=df, p_value=float(stats.chi2.sf(chi, df))
  )
  return result


def descriptive_statistics(
  variable: VariableRef,
  data: Sequence[Any],
  quartiles: bool = False,
  token: CancellationToken | None = None,
) -> RawComputeResult:
  """N, mean, sample standard deviation, range and optional quartiles."""
  vals = numeric_values(variable, data, token)
  n = len(vals)
  meta = _metadata(variable)
  desc = DescriptiveStats(n=n)
  result = RawComputeResult(
    kind='descriptive', variable1=variable, n=n, descriptive=desc, metadata=meta
  )
  if n == 0:
    meta.flag('empty')
    return result

  desc.mean = float(vals.mean())
  desc.minimum = float(vals.min())
  desc.maximum = float(vals.max())
  if n > 1:
    desc.std_dev = float(vals.std(ddof=1))
  else:
    meta.flag('single')
  if quartiles:
    p25, p50, p75 = np.percentile(vals, [25, 50, 75], method='weibull')
    desc.percentile_25 = float(p25)
    desc.percentile_50 = float(p50)
    desc.percentile_75 = float(p75)
  return result


def run_job(
  spec: JobSpec, token: CancellationToken | None = None
) -> RawComputeResult:
  """Dispatch a job payload to its algorithm."""
  if token is not None:
    token.raise_if_cancelled()
  opts = spec.options
  if spec.kind in ('wilcoxon', 'sign'):
    if spec.variable2 is None or spec.data2 is None:
      raise ValueError(f'{spec.kind} job needs two variables')
    if spec.kind == 'wilcoxon':
      return wilcoxon_signed_rank(
        spec.variable1,
        spec.data1,
        spec.variable2,
        spec.data2,
        tie_correction=opts.tie_correction,
        token=token,
      )
    return sign_test(
      spec.variable1, spec.data1, spec.variable2, spec.data2, token=token
    )
  if spec.kind == 'chi_square':
    return chi_square_goodness_of_fit(
      spec.variable1,
      spec.data1,
      opts.expected_range,
      opts.expected_value,
      token=token,
    )
  if spec.kind == 'descriptive':
    return descriptive_statistics(
      spec.variable1, spec.data1, quartiles=opts.quartiles, token=token
    )
  raise ValueError(f'Unknown job kind: {spec.kind}')
