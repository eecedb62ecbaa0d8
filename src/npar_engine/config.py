"""Configuration loader for the nonparametric test engine.

Reads environment variables (optionally from .env) and exposes a typed config.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
  raw = os.getenv(name)
  if raw is None:
    return default
  return raw.strip().lower() in {'1', 'true', 'yes', 'on'}


@dataclass(frozen=True)
class Config:
  """Holds runtime configuration loaded from environment."""

  max_workers: int = 4
  timeout_s: float | None = 120.0
  sink_url: str | None = None
  sink_token: str | None = None
  tie_correction: bool = True
  log_format: str = 'auto'  # "auto" | "json" | "pretty"


def load_config() -> Config:
  """Load configuration from environment variables."""
  timeout_raw = os.getenv('NPAR_TIMEOUT_S', '120')
  timeout = float(timeout_raw) if timeout_raw.strip() else 0.0
  return Config(
    max_workers=int(os.getenv('NPAR_MAX_WORKERS', str(min(4, os.cpu_count() or 1)))),
    timeout_s=timeout if timeout > 0 else None,
    sink_url=os.getenv('NPAR_SINK_URL'),
    sink_token=os.getenv('NPAR_SINK_TOKEN'),
    tie_correction=_env_bool('NPAR_TIE_CORRECTION', True),
    log_format=os.getenv('NPAR_LOG_FORMAT', 'auto'),
  )
