"""Data providers: case-aligned column values for a variable.

Missing values are returned as None.
"""

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import pandas as pd

from .data import VariableRef


class DataProvider(Protocol):
  async def get_variable_data(self, variable: VariableRef) -> Sequence[Any]: ...


class StaticDataProvider:
  """Serves columns from a mapping keyed by column index."""

  def __init__(self, columns: Mapping[int, Sequence[Any]]) -> None:
    self.columns = {int(k): list(v) for k, v in columns.items()}
    self.requests: list[int] = []

  async def get_variable_data(self, variable: VariableRef) -> Sequence[Any]:
    self.requests.append(variable.column_index)
    if variable.column_index not in self.columns:
      raise KeyError(f'No data for column {variable.column_index} ({variable.name})')
    return list(self.columns[variable.column_index])


class DataFrameProvider:
  """Serves columns of a pandas DataFrame by position."""

  def __init__(self, df: pd.DataFrame) -> None:
    self.df = df

  @classmethod
  def from_csv(cls, path: str, **kwargs: Any) -> 'DataFrameProvider':
    return cls(pd.read_csv(path, **kwargs))

  def variables(self) -> list[VariableRef]:
    """Infer a VariableRef for every column."""
    out: list[VariableRef] = []
    for idx, name in enumerate(self.df.columns):
      col = self.df[name]
      if pd.api.types.is_numeric_dtype(col) and not pd.api.types.is_bool_dtype(col):
        decimals = 0 if pd.api.types.is_integer_dtype(col) else 2
        out.append(
          VariableRef(name=str(name), type='numeric', measure='scale', decimals=decimals, column_index=idx)
        )
      else:
        out.append(
          VariableRef(name=str(name), type='string', measure='nominal', decimals=0, column_index=idx)
        )
    return out

  def variable(self, name: str) -> VariableRef:
    for v in self.variables():
      if v.name == name:
        return v
    raise KeyError(f'Column {name!r} not found. Available: {list(self.df.columns)}')

  async def get_variable_data(self, variable: VariableRef) -> Sequence[Any]:
    col = self.df.iloc[:, variable.column_index]
    return [None if pd.isna(v) else v for v in col.tolist()]
