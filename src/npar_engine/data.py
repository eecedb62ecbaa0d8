"""Core data structures for the nonparametric test engine.

Defines variables, submissions, job payloads, and raw compute results.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

MeasurementLevel = Literal['nominal', 'ordinal', 'scale', 'unknown']
VariableType = Literal['numeric', 'string']
InsufficientType = Literal['empty', 'single', 'no_difference']
JobKind = Literal['wilcoxon', 'sign', 'chi_square', 'descriptive']
JobStatus = Literal['success', 'error']


@dataclass(frozen=True)
class VariableRef:
  """Reference to one dataset column; read-only for the life of a submission."""

  name: str
  label: str = ''
  type: VariableType = 'numeric'
  measure: MeasurementLevel = 'scale'
  decimals: int = 2
  column_index: int = 0
  missing_values: tuple[Any, ...] = ()
  value_labels: tuple[tuple[Any, str], ...] = ()

  @property
  def display_name(self) -> str:
    """Label if set, else name."""
    return self.label or self.name

  def label_for(self, value: Any) -> str:
    """Return the value label for a category, falling back to the value."""
    for v, text in self.value_labels:
      if v == value:
        return text
    return str(value)


@dataclass(frozen=True)
class TestType:
  """Paired test families to run."""

  __test__ = False

  wilcoxon: bool = False
  sign: bool = False


@dataclass(frozen=True)
class DisplayStatistics:
  """Auxiliary statistics to display."""

  descriptive: bool = False
  quartiles: bool = False

  @property
  def requested(self) -> bool:
    return self.descriptive or self.quartiles


@dataclass(frozen=True)
class ExpectedRange:
  """Category range policy for Chi-square.

  get_from_data: use the distinct observed values as categories.
  lower/upper: inclusive bounds when get_from_data is False; whole-number
    floats are accepted and truncated to int.
  """

  get_from_data: bool = True
  lower: float | None = None
  upper: float | None = None

  @property
  def width(self) -> int:
    if self.get_from_data or self.lower is None or self.upper is None:
      return 0
    return int(self.upper) - int(self.lower) + 1


@dataclass(frozen=True)
class ExpectedValue:
  """Expected frequency policy for Chi-square.

  values are relative weights, one per category, scaled to N.
  """

  all_categories_equal: bool = True
  values: tuple[float, ...] = ()


@dataclass(frozen=True)
class TestOptions:
  """Options handed to every compute job of a submission."""

  __test__ = False

  wilcoxon: bool = False
  sign: bool = False
  chi_square: bool = False
  descriptive: bool = False
  quartiles: bool = False
  expected_range: ExpectedRange = field(default_factory=ExpectedRange)
  expected_value: ExpectedValue = field(default_factory=ExpectedValue)
  tie_correction: bool = True


@dataclass(frozen=True)
class PairedSubmission:
  """Two-related-samples request: ordered variable pairs plus options."""

  pairs: tuple[tuple[VariableRef, VariableRef], ...]
  test_type: TestType = field(default_factory=TestType)
  display_statistics: DisplayStatistics = field(
    default_factory=DisplayStatistics
  )

  def to_options(self, tie_correction: bool = True) -> TestOptions:
    return TestOptions(
      wilcoxon=self.test_type.wilcoxon,
      sign=self.test_type.sign,
      descriptive=self.display_statistics.descriptive,
      quartiles=self.display_statistics.quartiles,
      tie_correction=tie_correction,
    )


@dataclass(frozen=True)
class ChiSquareSubmission:
  """Single-variable goodness-of-fit request."""

  variables: tuple[VariableRef, ...]
  expected_range: ExpectedRange = field(default_factory=ExpectedRange)
  expected_value: ExpectedValue = field(default_factory=ExpectedValue)
  display_statistics: DisplayStatistics = field(
    default_factory=DisplayStatistics
  )

  def to_options(self, tie_correction: bool = True) -> TestOptions:
    return TestOptions(
      chi_square=True,
      descriptive=self.display_statistics.descriptive,
      quartiles=self.display_statistics.quartiles,
      expected_range=self.expected_range,
      expected_value=self.expected_value,
      tie_correction=tie_correction,
    )


# -----------------------
# Raw compute results
# -----------------------


@dataclass
class RankGroup:
  """Count and rank summary for one sign of difference."""

  n: int = 0
  mean_rank: float | None = None
  sum_of_ranks: float | None = None


@dataclass
class RanksFrequencies:
  negative: RankGroup
  positive: RankGroup
  ties: int
  total: int


@dataclass
class TestStatistic:
  """Normal-approximation statistic for a paired test."""

  __test__ = False

  z: float | None
  p_value: float | None
  exact_p_value: float | None = None


@dataclass
class DescriptiveStats:
  n: int
  mean: float | None = None
  std_dev: float | None = None
  minimum: float | None = None
  maximum: float | None = None
  percentile_25: float | None = None
  percentile_50: float | None = None
  percentile_75: float | None = None


@dataclass
class Frequencies:
  """Observed vs expected counts per Chi-square category."""

  categories: list[Any]
  observed: list[int]
  expected: list[float]
  residual: list[float]
  n: int


@dataclass
class ChiSquareStatistic:
  chi_square: float
  df: int
  p_value: float


@dataclass
class ResultMetadata:
  has_insufficient_data: bool = False
  insufficient_type: set[str] = field(default_factory=set)
  variable1_name: str = ''
  variable2_name: str | None = None

  def flag(self, kind: InsufficientType) -> None:
    self.insufficient_type.add(kind)
    self.has_insufficient_data = True


@dataclass
class RawComputeResult:
  """Output of one compute job."""

  kind: JobKind
  variable1: VariableRef
  n: int
  variable2: VariableRef | None = None
  descriptive: DescriptiveStats | None = None
  ranks_frequencies: RanksFrequencies | None = None
  test_statistic: TestStatistic | None = None
  frequencies: Frequencies | None = None
  chi_square: ChiSquareStatistic | None = None
  metadata: ResultMetadata = field(default_factory=ResultMetadata)

  def to_dict(self) -> dict[str, Any]:
    d = asdict(self)
    d['metadata']['insufficient_type'] = sorted(
      self.metadata.insufficient_type
    )
    return d


# -----------------------
# Job messages
# -----------------------


@dataclass(frozen=True)
class JobSpec:
  """Immutable payload sent to a compute job."""

  job_id: str
  sequence: int
  kind: JobKind
  variable1: VariableRef
  data1: tuple[Any, ...]
  options: TestOptions
  variable2: VariableRef | None = None
  data2: tuple[Any, ...] | None = None

  @property
  def label(self) -> str:
    if self.variable2 is None:
      return f'{self.kind}:{self.variable1.name}'
    return f'{self.kind}:{self.variable1.name}-{self.variable2.name}'


@dataclass(frozen=True)
class JobOutcome:
  """Message returned by a compute job: result on success, error text otherwise."""

  job_id: str
  sequence: int
  label: str
  status: JobStatus
  result: RawComputeResult | None = None
  error: str | None = None

  @property
  def ok(self) -> bool:
    return self.status == 'success'
