import asyncio

import pandas as pd
import pytest

from npar_engine.config import load_config
from npar_engine.data import VariableRef
from npar_engine.providers import DataFrameProvider, StaticDataProvider


def test_dataframe_provider_infers_variables():
  df = pd.DataFrame({'pre': [1, 2, 3], 'post': [1.5, None, 2.0], 'grp': ['a', 'b', None]})
  p = DataFrameProvider(df)
  vs = p.variables()
  assert [(v.name, v.type, v.measure, v.decimals) for v in vs] == [
    ('pre', 'numeric', 'scale', 0),
    ('post', 'numeric', 'scale', 2),
    ('grp', 'string', 'nominal', 0),
  ]
  assert p.variable('post').column_index == 1
  with pytest.raises(KeyError):
    p.variable('nope')


def test_dataframe_provider_maps_missing_to_none():
  df = pd.DataFrame({'post': [1.5, None, 2.0]})
  p = DataFrameProvider(df)
  data = asyncio.run(p.get_variable_data(p.variable('post')))
  assert data == [1.5, None, 2.0]


def test_static_provider_records_requests():
  p = StaticDataProvider({0: [1, 2]})
  v = VariableRef(name='a', column_index=0)
  assert asyncio.run(p.get_variable_data(v)) == [1, 2]
  assert p.requests == [0]
  with pytest.raises(KeyError):
    asyncio.run(p.get_variable_data(VariableRef(name='b', column_index=3)))


def test_load_config_from_env(monkeypatch):
  monkeypatch.setenv('NPAR_MAX_WORKERS', '3')
  monkeypatch.setenv('NPAR_TIMEOUT_S', '0')
  monkeypatch.setenv('NPAR_TIE_CORRECTION', 'false')
  cfg = load_config()
  assert cfg.max_workers == 3
  assert cfg.timeout_s is None
  assert cfg.tie_correction is False
