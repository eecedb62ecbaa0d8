import json

from npar_engine.compute import (
  chi_square_goodness_of_fit,
  descriptive_statistics,
  sign_test,
  wilcoxon_signed_rank,
)
from npar_engine.data import (
  ChiSquareSubmission,
  DisplayStatistics,
  ExpectedRange,
  ExpectedValue,
  PairedSubmission,
  TestType,
  VariableRef,
)
from npar_engine.report import (
  build_chi_square_report,
  insufficient_data_notes,
  build_paired_report,
  chi_square_log_text,
  format_descriptive_statistics_table,
  format_p_value,
  format_ranks_frequencies_table,
  format_test_statistics_table,
  paired_log_text,
  render_text,
)

A = VariableRef(name='pre', label='Before', column_index=0, decimals=0)
B = VariableRef(name='post', column_index=1, decimals=0)
X = [1, 3, 5, 2, 6]
Y = [2, 2, 4, 2, 1]


def test_format_p_value():
  assert format_p_value(0.0004) == '<.001'
  assert format_p_value(0.27312) == '0.273'
  assert format_p_value(None) is None


def test_ranks_table_rows():
  t = format_ranks_frequencies_table([wilcoxon_signed_rank(A, X, B, Y)], 'wilcoxon')
  assert t.title == 'Ranks'
  assert [r['type'] for r in t.rows] == [
    'Negative Ranks',
    'Positive Ranks',
    'Ties',
    'Total',
  ]
  assert t.rows[0]['rowHeader'] == ['Before - post']
  assert t.rows[1]['SumOfRanks'] == '8.00'
  assert t.rows[3]['N'] == 5


def test_sign_frequencies_table_has_no_rank_columns():
  t = format_ranks_frequencies_table([sign_test(A, X, B, Y)], 'sign')
  assert t.title == 'Frequencies'
  assert [h.key for h in t.column_headers] == ['rowHeader', 'type', 'N']
  assert t.rows[0]['type'] == 'Negative Differences'


def test_test_statistics_table_one_column_per_pair():
  r1 = sign_test(A, X, B, Y)
  r2 = sign_test(B, Y, A, X)
  t = format_test_statistics_table([r1, r2], 'sign')
  assert [h.key for h in t.column_headers] == ['rowHeader', 'pair_0', 'pair_1']
  assert t.rows[0]['rowHeader'] == ['Z']
  assert t.rows[0]['pair_0'] == '1.000'
  assert t.rows[2]['rowHeader'] == ['Exact Sig. (2-tailed)']
  assert t.rows[2]['pair_0'] == '0.625'


def test_insufficient_data_becomes_footnote():
  r = wilcoxon_signed_rank(A, [1, 2], B, [1, 2])
  t = format_test_statistics_table([r], 'wilcoxon')
  assert t.rows[0]['pair_0'] is None
  assert len(t.footnotes) == 1
  assert 'Before - post' in t.footnotes[0]


def test_descriptive_table_dedupes_variables_and_nests_percentiles():
  rs = [
    descriptive_statistics(A, X, quartiles=True),
    descriptive_statistics(B, Y, quartiles=True),
    descriptive_statistics(A, X, quartiles=True),
  ]
  t = format_descriptive_statistics_table(rs, DisplayStatistics(True, True))
  assert len(t.rows) == 2
  assert t.column_headers[-1].key == 'percentiles'
  assert [c.key for c in t.column_headers[-1].children] == [
    'Percentile25',
    'Percentile50',
    'Percentile75',
  ]
  assert t.rows[0]['Mean'] == '3.40'
  df = t.to_dataframe()
  assert 'Percentiles 25th' in df.columns


def test_paired_report_sections_and_statistic_payload():
  rs = [
    wilcoxon_signed_rank(A, X, B, Y),
    sign_test(A, X, B, Y),
    descriptive_statistics(A, X),
    descriptive_statistics(B, Y),
  ]
  sections = build_paired_report(rs, TestType(True, True), DisplayStatistics(True))
  assert [(s.components, s.title) for s in sections] == [
    ('Descriptive Statistics', 'Descriptive Statistics'),
    ('Wilcoxon Test', 'Ranks'),
    ('Wilcoxon Test', 'Test Statistics'),
    ('Sign Test', 'Frequencies'),
    ('Sign Test', 'Test Statistics'),
  ]
  payload = sections[1].to_statistic()
  tables = json.loads(payload['output_data'])['tables']
  assert tables[0]['columnHeaders'][0] == {'header': '', 'key': 'rowHeader'}
  text = render_text(sections)
  assert '## Sign Test: Frequencies' in text
  assert 'Negative Ranks' in text


def test_chi_square_report_uniform_and_range():
  grp = VariableRef(name='grp', type='string', measure='nominal', column_index=2)
  data = ['A'] * 10 + ['B'] * 10 + ['C'] * 5 + ['D'] * 5
  sub = ChiSquareSubmission(variables=(grp,))
  r = chi_square_goodness_of_fit(grp, data, sub.expected_range, sub.expected_value)
  sections = build_chi_square_report([r], sub)
  freq = sections[0].tables[0]
  assert freq.title == 'grp'
  assert freq.rows[0] == {
    'rowHeader': ['A'],
    'observedN': 10,
    'expectedN': '7.5',
    'residual': '2.5',
  }
  stats = sections[1].tables[0].rows
  assert stats[0]['var_0'] == '3.333'
  assert stats[1]['var_0'] == 3

  score = VariableRef(name='score', column_index=3, decimals=0)
  ranged = ChiSquareSubmission(
    variables=(score,),
    expected_range=ExpectedRange(get_from_data=False, lower=1, upper=3),
  )
  rr = chi_square_goodness_of_fit(score, [1, 1, 2], ranged.expected_range, ExpectedValue())
  table = build_chi_square_report([rr], ranged)[0].tables[0]
  assert table.title == 'Frequencies'
  assert table.rows[0]['category0'] == '1'
  assert table.rows[2]['category0'] == ''
  assert table.rows[-1] == {'rowHeader': ['Total'], 'observedN0': 3}


def test_log_text():
  sub = PairedSubmission(
    pairs=((A, B),),
    test_type=TestType(wilcoxon=True, sign=True),
    display_statistics=DisplayStatistics(descriptive=True, quartiles=True),
  )
  assert paired_log_text(sub) == (
    'NPAR TESTS\n'
    '  /WILCOXON=pre WITH post (PAIRED)\n'
    '  /SIGN=pre WITH post (PAIRED)\n'
    '  /STATISTICS DESCRIPTIVES QUARTILES\n'
    '  /MISSING ANALYSIS.'
  )
  chi = ChiSquareSubmission(
    variables=(B,),
    expected_range=ExpectedRange(get_from_data=False, lower=1, upper=2),
    expected_value=ExpectedValue(all_categories_equal=False, values=(1, 3)),
  )
  assert chi_square_log_text(chi).splitlines()[1:3] == [
    '  /CHISQUARE=post(1,2)',
    '  /EXPECTED=1 3',
  ]


def test_empty_footnote_wording_depends_on_kind():
  grp = VariableRef(name='grp', type='string', measure='nominal', column_index=2)
  chi = chi_square_goodness_of_fit(grp, ['x', 'x'], ExpectedRange(), ExpectedValue())
  desc = descriptive_statistics(A, [None, None])
  paired = wilcoxon_signed_rank(A, [1, 2], B, [1, 2])
  chi_note, desc_note, paired_note = insufficient_data_notes([chi, desc, paired])
  assert chi_note.startswith('grp: fewer than two categories')
  assert 'zero differences' not in chi_note
  assert desc_note == 'Before: no valid cases remain after excluding missing values.'
  assert paired_note.endswith('excluding missing values and zero differences.')
