"""
Typed members of the map family: like `parallel_map`, but returning a numpy array of a fixed dtype instead of a list.

 - parallel_map_dbl -- float64, elements must produce real numbers,
 - parallel_map_int -- int64, elements must produce integers (bools count),
 - parallel_map_lgl -- bool, elements must produce booleans,
 - parallel_map_chr -- str, elements must produce strings.

An element producing something else is a ValueError naming its index -- no silent coercion of e.g. "1" into 1.0.
"""

import numbers
from typing import Any, Callable, Iterable

import numpy as np

from furrpyco.pa.mapping import parallel_map

_kinds: dict[str, tuple[Any, Any]] = {
    "dbl": (np.float64, numbers.Real),
    "int": (np.int64, numbers.Integral),
    "lgl": (np.bool_, (bool, np.bool_)),
    "chr": (np.str_, str),
}


def _typed(values: list[Any], kind: str) -> np.ndarray:
    dtype, accepted = _kinds[kind]
    for i, value in enumerate(values):
        if not isinstance(value, accepted):
            raise ValueError(f"element {i} produced {value!r}, which is not a {kind} scalar")
    return np.array(values, dtype=dtype)


def parallel_map_dbl(items: Iterable[Any], f: Callable[[Any], Any], **kwargs: Any) -> np.ndarray:
    return _typed(parallel_map(items, f, **kwargs), "dbl")


def parallel_map_int(items: Iterable[Any], f: Callable[[Any], Any], **kwargs: Any) -> np.ndarray:
    return _typed(parallel_map(items, f, **kwargs), "int")


def parallel_map_lgl(items: Iterable[Any], f: Callable[[Any], Any], **kwargs: Any) -> np.ndarray:
    return _typed(parallel_map(items, f, **kwargs), "lgl")


def parallel_map_chr(items: Iterable[Any], f: Callable[[Any], Any], **kwargs: Any) -> np.ndarray:
    return _typed(parallel_map(items, f, **kwargs), "chr")
