import json

from npar_engine.runlog import RunLogger


def test_pretty_lines_for_job_and_stop_events(capsys):
  logger = RunLogger(stdout_format='pretty')
  logger.event(
    'job_done', label='wilcoxon:a-b', processed=1, expected=2, insufficient=['single']
  )
  logger.event('job_error', label='sign:a-b', processed=2, expected=2, error='x' * 200)
  logger.event('timeout', reason='Submission timed out')
  logger.event('dispatch', expected=2)
  out = capsys.readouterr().out
  lines = out.splitlines()
  assert '\033[' not in out
  assert lines[0].endswith('ok  wilcoxon:a-b  1/2  [single]')
  assert 'ERROR  sign:a-b  2/2  xxx' in lines[1]
  assert lines[1].endswith('...')
  assert 'x' * 100 not in lines[1]
  assert lines[2].endswith('TIMEOUT  Submission timed out')
  assert lines[3].endswith('dispatch  {"expected": 2}')


def test_file_gets_json_even_when_console_is_pretty(tmp_path, capsys):
  path = tmp_path / 'run.log.jsonl'
  logger = RunLogger(path=str(path), stdout_format='pretty')
  logger.event('cancel', reason='cancelled by caller')
  logger.close()
  assert json.loads(path.read_text()) == {'event': 'cancel', 'reason': 'cancelled by caller'}
  assert 'CANCEL  cancelled by caller' in capsys.readouterr().out


def test_disabled_logger_is_silent(tmp_path, capsys):
  path = tmp_path / 'run.log.jsonl'
  logger = RunLogger(path=str(path), enabled=False)
  logger.event('submit', kind='paired')
  logger.close()
  assert not path.exists()
  assert capsys.readouterr().out == ''
