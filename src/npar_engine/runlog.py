"""Structured run logging for submissions.

Every event goes to a JSONL file (when a path is given) and to the console as
either raw JSON or a compact human-readable line.
"""

import json
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Any, TextIO

_ANSI = {'grey': '90', 'red': '31', 'green': '32', 'yellow': '33', 'magenta': '35'}
_ERROR_WIDTH = 96
_STOP_EVENTS = frozenset({'cancel', 'timeout', 'failed'})


def _wants_color() -> bool:
  return (
    sys.stdout.isatty()
    and 'NO_COLOR' not in os.environ
    and os.environ.get('TERM', 'dumb') != 'dumb'
  )


@dataclass(slots=True)
class RunLogger:
  """Tee logger for orchestrator events.

  stdout_format is "json", "pretty" or "auto" (pretty on a TTY).
  """

  path: str | None = None
  enabled: bool = True
  stdout_format: str = 'auto'
  _fh: TextIO | None = field(init=False, default=None)
  _t0: float = field(init=False, default_factory=time.monotonic)
  _pretty: bool = field(init=False, default=False)
  _color: bool = field(init=False, default=False)

  def __post_init__(self) -> None:
    if self.enabled and self.path:
      self._fh = open(self.path, 'a', encoding='utf-8')
    if self.stdout_format == 'auto':
      self._pretty = sys.stdout.isatty()
    else:
      self._pretty = self.stdout_format == 'pretty'
    self._color = self._pretty and _wants_color()

  def event(self, name: str, **fields: Any) -> None:
    self.log({'event': name, **fields})

  def log(self, record: dict[str, Any]) -> None:
    """Append `record` to the file and echo it to stdout."""
    if not self.enabled:
      return
    line = json.dumps(record, ensure_ascii=False, default=str)
    if self._fh is not None:
      self._fh.write(line + '\n')
      self._fh.flush()
    print(self._pretty_line(record) if self._pretty else line, flush=True)

  def close(self) -> None:
    if self._fh is not None:
      self._fh.close()
      self._fh = None

  # ---------- Pretty formatting ----------

  def _pretty_line(self, r: dict[str, Any]) -> str:
    name = r.get('event', 'info')
    head = self._paint(f'+{time.monotonic() - self._t0:6.2f}s', 'grey')
    progress = f'{r.get("processed", "?")}/{r.get("expected", "?")}'

    if name == 'job_done':
      flags = ','.join(r.get('insufficient') or [])
      body = f'{self._paint("ok", "green")}  {r.get("label", "-")}  {progress}'
      if flags:
        body += '  ' + self._paint(f'[{flags}]', 'yellow')
    elif name == 'job_error':
      err = str(r.get('error', 'unknown error'))
      if len(err) > _ERROR_WIDTH:
        err = err[: _ERROR_WIDTH - 3] + '...'
      body = f'{self._paint("ERROR", "red")}  {r.get("label", "-")}  {progress}  {err}'
    elif name in _STOP_EVENTS:
      body = f'{self._paint(name.upper(), "magenta")}  {r.get("reason", "")}'.rstrip()
    else:
      rest = {k: v for k, v in r.items() if k != 'event'}
      body = f'{name}  {json.dumps(rest, ensure_ascii=False, default=str)}'
    return f'{head} {body}'

  def _paint(self, text: str, color: str) -> str:
    if not self._color:
      return text
    return f'\033[{_ANSI[color]}m{text}\033[0m'
