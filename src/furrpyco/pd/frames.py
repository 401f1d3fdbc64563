"""
DataFrame-binding members of the map family. Elements produce DataFrames (or Series, or dicts), which get bound
together in input order:
 - parallel_map_dfr -- row-binding. A Series or a dict of scalars counts as a single row. With `id_column`, each
   element's rows are tagged with the element's index, in a leading column of that name,
 - parallel_map_dfc -- column-binding. A Series is one column (named after the element index when unnamed), a dict
   maps column names to values (lists, or scalars making up a single row).
"""

from typing import Any, Callable, Iterable, Optional

import pandas as pd
from pandas.api.types import is_list_like

from furrpyco.pa.mapping import parallel_map


def _as_rows(i: int, value: Any) -> pd.DataFrame:
    if isinstance(value, pd.DataFrame):
        return value
    if isinstance(value, pd.Series):
        return value.to_frame().T
    if isinstance(value, dict):
        return pd.DataFrame([value])
    raise ValueError(f"element {i} produced {type(value).__name__}, cannot bind it as rows")


def _as_columns(i: int, value: Any) -> pd.DataFrame:
    if isinstance(value, pd.DataFrame):
        return value
    if isinstance(value, pd.Series):
        return (value if value.name is not None else value.rename(i)).to_frame()
    if isinstance(value, dict):
        if not any(is_list_like(v) for v in value.values()):
            return pd.DataFrame([value])
        return pd.DataFrame(value)
    raise ValueError(f"element {i} produced {type(value).__name__}, cannot bind it as columns")


def parallel_map_dfr(
    items: Iterable[Any], f: Callable[[Any], Any], id_column: Optional[str] = None, **kwargs: Any
) -> pd.DataFrame:
    frames = []
    for i, value in enumerate(parallel_map(items, f, **kwargs)):
        frame = _as_rows(i, value)
        if id_column is not None:
            frame = frame.copy()
            frame.insert(0, id_column, i)
        frames.append(frame)
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)


def parallel_map_dfc(items: Iterable[Any], f: Callable[[Any], Any], **kwargs: Any) -> pd.DataFrame:
    columns = [_as_columns(i, value) for i, value in enumerate(parallel_map(items, f, **kwargs))]
    if not columns:
        return pd.DataFrame()
    return pd.concat(columns, axis=1)
