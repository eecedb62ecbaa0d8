"""Result sink adapters.

A sink persists one submission as log -> analytic -> statistics. Calls are
async and awaited in that order by the orchestrator.
"""

import asyncio
import json
import os
from typing import Any, Protocol

import requests

from .config import load_config


class ResultSink(Protocol):
  """Contract for persisting formatted results."""

  async def add_log(self, log_text: str) -> Any: ...

  async def add_analytic(self, log_id: Any, analytic: dict[str, Any]) -> Any: ...

  async def add_statistic(
    self, analytic_id: Any, statistic: dict[str, Any]
  ) -> Any: ...


# -----------------------
# In-memory sink
# -----------------------


class InMemoryResultSink:
  """Keeps records in lists; handy for tests and embedding."""

  def __init__(self) -> None:
    self.logs: list[dict[str, Any]] = []
    self.analytics: list[dict[str, Any]] = []
    self.statistics: list[dict[str, Any]] = []
    self.calls: list[str] = []

  async def add_log(self, log_text: str) -> int:
    self.calls.append('add_log')
    self.logs.append({'id': len(self.logs) + 1, 'log': log_text})
    return len(self.logs)

  async def add_analytic(self, log_id: Any, analytic: dict[str, Any]) -> int:
    self.calls.append('add_analytic')
    self.analytics.append({'id': len(self.analytics) + 1, 'log_id': log_id, **analytic})
    return len(self.analytics)

  async def add_statistic(self, analytic_id: Any, statistic: dict[str, Any]) -> int:
    self.calls.append('add_statistic')
    self.statistics.append(
      {'id': len(self.statistics) + 1, 'analytic_id': analytic_id, **statistic}
    )
    return len(self.statistics)


# -----------------------
# JSONL sink
# -----------------------


class JsonlResultSink:
  """Appends every record as one JSON line to `<out_dir>/results.jsonl`."""

  def __init__(self, out_dir: str, filename: str = 'results.jsonl') -> None:
    os.makedirs(out_dir, exist_ok=True)
    self.path = os.path.join(out_dir, filename)
    self._next_id = 1

  def _append(self, record_type: str, record: dict[str, Any]) -> int:
    rid = self._next_id
    self._next_id += 1
    with open(self.path, 'a', encoding='utf-8') as f:
      f.write(json.dumps({'type': record_type, 'id': rid, **record}) + '\n')
      f.flush()
      os.fsync(f.fileno())  # ensure records survive Ctrl-C
    return rid

  async def add_log(self, log_text: str) -> int:
    return await asyncio.to_thread(self._append, 'log', {'log': log_text})

  async def add_analytic(self, log_id: Any, analytic: dict[str, Any]) -> int:
    return await asyncio.to_thread(
      self._append, 'analytic', {'log_id': log_id, **analytic}
    )

  async def add_statistic(self, analytic_id: Any, statistic: dict[str, Any]) -> int:
    return await asyncio.to_thread(
      self._append, 'statistic', {'analytic_id': analytic_id, **statistic}
    )


def load_jsonl(path: str) -> list[dict]:
  """Load JSONL from a file."""
  rows: list[dict] = []
  with open(path, 'r', encoding='utf-8') as f:
    for line in f:
      if line.strip():
        rows.append(json.loads(line))
  return rows


# -----------------------
# HTTP sink
# -----------------------


class HttpResultSink:
  """Result store client over HTTP; one POST per record, no retries."""

  def __init__(
    self,
    base_url: str | None = None,
    token: str | None = None,
    timeout: float = 30.0,
  ) -> None:
    """Create a sink.

    Args:
      base_url: Store root URL. If omitted, read NPAR_SINK_URL via `load_config()`.
      token: Bearer token. If omitted, read NPAR_SINK_TOKEN.
      timeout: Per-request timeout in seconds.
    """
    cfg = load_config()
    self.base_url = (base_url or cfg.sink_url or '').rstrip('/')
    self.token = token or cfg.sink_token
    self.timeout = timeout
    if not self.base_url:
      raise RuntimeError('NPAR_SINK_URL missing; set it in environment or .env')

  def _post(self, path: str, payload: dict[str, Any]) -> Any:
    headers = {'Content-Type': 'application/json'}
    if self.token:
      headers['Authorization'] = f'Bearer {self.token}'
    resp = requests.post(
      f'{self.base_url}/{path}', headers=headers, json=payload, timeout=self.timeout
    )
    resp.raise_for_status()  # will raise on 4xx/5xx
    data = resp.json()
    if isinstance(data, dict):
      return data.get('id')
    return data

  async def add_log(self, log_text: str) -> Any:
    return await asyncio.to_thread(self._post, 'logs', {'log': log_text})

  async def add_analytic(self, log_id: Any, analytic: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
      self._post, 'analytics', {'log_id': log_id, **analytic}
    )

  async def add_statistic(self, analytic_id: Any, statistic: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
      self._post, 'statistics', {'analytic_id': analytic_id, **statistic}
    )
