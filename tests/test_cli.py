import json
import os

import pytest

from npar_engine.cli import main
from npar_engine.sink import load_jsonl

CSV = """pre,post,grp
1,2,x
3,2,y
5,4,x
2,2,z
6,1,x
4,7,y
"""


@pytest.fixture
def csv_path(tmp_path, monkeypatch):
  monkeypatch.delenv('NPAR_SINK_URL', raising=False)
  path = tmp_path / 'scores.csv'
  path.write_text(CSV)
  return str(path)


def test_related_writes_results(csv_path, tmp_path, capsys):
  out = str(tmp_path / 'run')
  code = main(
    ['related', '--data', csv_path, '--pair', 'pre:post', '--wilcoxon', '--sign',
     '--descriptive', '--out', out, '--quiet']
  )
  assert code == 0
  rows = load_jsonl(os.path.join(out, 'results.jsonl'))
  assert [r['type'] for r in rows[:2]] == ['log', 'analytic']
  assert sum(1 for r in rows if r['type'] == 'statistic') == 5
  with open(os.path.join(out, 'run_info.json')) as f:
    info = json.load(f)
  assert info['errors'] == []
  printed = capsys.readouterr().out
  assert 'Wilcoxon Test: Ranks' in printed


def test_chisquare_with_range(csv_path, tmp_path):
  out = str(tmp_path / 'chi')
  code = main(
    ['chisquare', '--data', csv_path, '--var', 'post', '--range', '1', '4',
     '--expected', '1,1,1,1', '--out', out, '--quiet']
  )
  assert code == 0
  rows = load_jsonl(os.path.join(out, 'results.jsonl'))
  assert rows[1]['title'] == 'Chi-Square Test'


def test_invalid_pair_returns_usage_error(csv_path, tmp_path, capsys):
  code = main(
    ['related', '--data', csv_path, '--pair', 'pre:pre', '--wilcoxon',
     '--out', str(tmp_path / 'bad'), '--quiet']
  )
  assert code == 2
  assert 'Invalid request' in capsys.readouterr().err


def test_unknown_variable(csv_path, capsys):
  code = main(['related', '--data', csv_path, '--pair', 'pre:nope', '--sign'])
  assert code == 2
  assert 'nope' in capsys.readouterr().err


def test_variables_lists_columns(csv_path, capsys):
  assert main(['variables', '--data', csv_path]) == 0
  out = capsys.readouterr().out
  assert 'grp' in out and 'nominal' in out
